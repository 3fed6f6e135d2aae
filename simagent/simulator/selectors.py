from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence

from .elements import Element
from .errors import SimAgentError, usage_error

SELECTOR_FLAGS = "--index|--id|--label|--contains"

SCORE_LABEL_EXACT = 90
SCORE_VALUE_EXACT = 75
SCORE_NEARBY_EXACT = 55
SCORE_CONTAINS = 45
SCORE_VISIBLE = 24
SCORE_ONSCREEN = 10
SCORE_INTERACTIVE = 15
SCORE_HAS_LABEL = 8

# Chrome sits in the top band of the screen (status bar + navigation bar).
SYSTEM_CHROME_MAX_Y = 180.0
SYSTEM_CHROME_ROW_TOLERANCE = 20.0
RIGHT_INTENT_TOKENS = ("add", "done", "ok", "allow", "choose", "select")
LEFT_INTENT_TOKENS = ("cancel", "close", "back", "dismiss")

BACK_INTENT_TOKENS = ("back", "close", "dismiss")
CHECK_INTENT_TOKENS = ("check", "checkbox")
CHECK_NEARBY_HINTS = ("agree", "accept", "terms", "consent", "debug")
BACK_CORNER_MAX_X = 120.0
SMALL_CONTROL_MAX_PT = 64.0


@dataclass(frozen=True)
class SelectorQuery:
    index: Optional[int] = None
    id: str = ""
    label: str = ""
    contains: str = ""

    def count(self) -> int:
        return sum(
            [
                self.index is not None,
                bool(self.id.strip()),
                bool(self.label.strip()),
                bool(self.contains.strip()),
            ]
        )

    @property
    def text_query(self) -> str:
        return (self.label.strip() or self.contains.strip()).lower()

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.index is not None:
            out["index"] = self.index
        if self.id.strip():
            out["id"] = self.id.strip()
        if self.label.strip():
            out["label"] = self.label.strip()
        if self.contains.strip():
            out["contains"] = self.contains.strip()
        return out

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> SelectorQuery:
        data = data or {}
        index = data.get("index")
        if isinstance(index, bool) or (index is not None and not isinstance(index, int)):
            raise usage_error(f"selector index must be an integer, got {index!r}")
        return cls(
            index=index,
            id=str(data.get("id") or ""),
            label=str(data.get("label") or ""),
            contains=str(data.get("contains") or ""),
        )


def require_single_selector(query: SelectorQuery) -> None:
    count = query.count()
    if count == 0:
        raise usage_error(f"selector is required: {SELECTOR_FLAGS}")
    if count > 1:
        raise usage_error(f"choose only one selector: {SELECTOR_FLAGS}", {"selector": query.to_dict()})


def pick_element(elements: Sequence[Element], *, index: Optional[int] = None, id: str = "") -> Element:
    if index is not None:
        for elem in elements:
            if elem.index == index:
                return elem
        raise SimAgentError(code="ELEMENT_NOT_FOUND", message=f"element index not found: {index}")
    wanted = id.strip()
    if wanted:
        for elem in elements:
            if elem.id == wanted:
                return elem
        raise SimAgentError(code="ELEMENT_NOT_FOUND", message=f"element id not found: {wanted}")
    raise usage_error("index or id is required")


def _score_text_match(elem: Element, *, label: str, contains: str) -> int:
    score = 0
    if label:
        if elem.label.strip().lower() == label:
            score += SCORE_LABEL_EXACT
        if elem.value.strip().lower() == label:
            score += SCORE_VALUE_EXACT
        if elem.nearby_label.strip().lower() == label:
            score += SCORE_NEARBY_EXACT
        if score == 0:
            return 0
    if contains:
        if contains not in elem.searchable_text():
            return 0
        score += SCORE_CONTAINS

    if elem.visible:
        score += SCORE_VISIBLE
    if not elem.offscreen:
        score += SCORE_ONSCREEN
    if elem.interactive:
        score += SCORE_INTERACTIVE
    if elem.label.strip():
        score += SCORE_HAS_LABEL
    return score


def pick_element_by_text(elements: Sequence[Element], *, label: str = "", contains: str = "") -> Element:
    """
    Best enabled element for a label or substring query.

    Label queries need an exact (case-insensitive) hit on label, value or nearby label; contains
    queries need a substring hit. Ties go to the lowest index.
    """
    label_q = label.strip().lower()
    contains_q = contains.strip().lower()
    if not label_q and not contains_q:
        raise usage_error("label or contains is required")

    scored: list[tuple[int, Element]] = []
    for elem in elements:
        if not elem.enabled:
            continue
        score = _score_text_match(elem, label=label_q, contains=contains_q)
        if score > 0:
            scored.append((score, elem))

    if not scored:
        if label_q:
            raise SimAgentError(code="ELEMENT_NOT_FOUND", message=f"element label not found: {label.strip()}")
        raise SimAgentError(code="ELEMENT_NOT_FOUND", message=f"element text not found: {contains.strip()}")
    scored.sort(key=lambda item: (-item[0], item[1].index))
    return scored[0][1]


def pick_element_by_selectors(elements: Sequence[Element], query: SelectorQuery) -> Element:
    require_single_selector(query)
    if query.index is not None or query.id.strip():
        return pick_element(elements, index=query.index, id=query.id)
    return pick_element_by_text(elements, label=query.label, contains=query.contains)


def _contains_any(text: str, tokens: Sequence[str]) -> bool:
    return any(token in text for token in tokens)


def pick_system_fallback_element(elements: Sequence[Element], query: SelectorQuery) -> Optional[Element]:
    """
    Guess a system chrome control (navigation bar buttons) for confirm/dismiss style queries.

    Right-intent words pick the rightmost control of the topmost row, left-intent words the
    leftmost.
    """
    text = query.text_query
    if not text:
        return None
    right_intent = _contains_any(text, RIGHT_INTENT_TOKENS)
    left_intent = _contains_any(text, LEFT_INTENT_TOKENS)
    if not right_intent and not left_intent:
        return None

    best: Optional[Element] = None
    for elem in elements:
        if not elem.enabled or not elem.visible:
            continue
        if elem.frame.y > SYSTEM_CHROME_MAX_Y:
            continue
        if not elem.interactive and "navigation" not in elem.role.lower():
            continue
        if best is None or elem.center.y < best.center.y:
            best = elem
            continue
        if abs(elem.center.y - best.center.y) <= SYSTEM_CHROME_ROW_TOLERANCE:
            if right_intent and elem.center.x > best.center.x:
                best = elem
            if left_intent and elem.center.x < best.center.x:
                best = elem
    return best


def pick_intent_fallback_element(elements: Sequence[Element], query: SelectorQuery) -> Optional[Element]:
    text = query.text_query
    if not text:
        return None
    want_back = _contains_any(text, BACK_INTENT_TOKENS)
    want_check = _contains_any(text, CHECK_INTENT_TOKENS)
    if not want_back and not want_check:
        return None

    scored: list[tuple[int, Element]] = []
    for elem in elements:
        if not elem.enabled or not elem.visible or not elem.interactive:
            continue
        score = 0
        if text in elem.searchable_text():
            score += 60
        if want_back:
            if elem.center.y <= SYSTEM_CHROME_MAX_Y:
                score += 25
            if elem.center.x <= BACK_CORNER_MAX_X:
                score += 20
        if want_check:
            if "switch" in elem.role.lower():
                score += 45
            if elem.frame.w <= SMALL_CONTROL_MAX_PT and elem.frame.h <= SMALL_CONTROL_MAX_PT:
                score += 22
            if _contains_any(elem.nearby_label.lower(), CHECK_NEARBY_HINTS):
                score += 28
        if not elem.label.strip():
            score += 10
        if score > 0:
            scored.append((score, elem))

    if not scored:
        return None
    scored.sort(key=lambda item: (-item[0], item[1].index))
    return scored[0][1]
