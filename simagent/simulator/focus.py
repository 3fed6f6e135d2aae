from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence

from .elements import ElementSet, Element, FramePoint, is_text_input_role
from .errors import SimAgentError, render_error, wrap_error_code
from .idb_client import BACKSPACE_KEY_CODE
from .observation import capture_elements

DEFAULT_FOCUS_RETRIES = 2
FOCUS_SETTLE_S = 0.12
FOCUS_TRUST_RADIUS_PT = 24.0

DEFAULT_CLEAR_KEYS = 72
MAX_CLEAR_KEYS = 220


class FocusState(str, Enum):
    IDLE = "idle"
    TAP_SENT = "tap_sent"
    VERIFYING = "verifying"
    TRUSTED = "trusted"
    UNTRUSTED = "untrusted"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class FocusAttempt:
    attempt: int
    state: FocusState
    tap_point: FramePoint
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "attempt": self.attempt,
            "state": self.state.value,
            "tapPoint": self.tap_point.to_dict(),
        }
        if self.reason:
            out["reason"] = self.reason
        return out


@dataclass(frozen=True)
class FocusResult:
    element: Element
    tap_point: FramePoint
    attempts: int
    history: tuple[FocusAttempt, ...] = field(default_factory=tuple)


def focus_point_for_element(elem: Element) -> FramePoint:
    """
    Text fields are tapped near their leading edge so the caret lands inside the text rather than
    on a trailing clear button; everything else is tapped at its center.
    """
    center = elem.center
    if not is_text_input_role(elem.role) or elem.frame.w <= 0:
        return center
    inset = max(8.0, min(elem.frame.w * 0.2, 28.0))
    x = elem.frame.x + inset
    if x > elem.frame.right - 8:
        x = center.x
    return FramePoint(x=x, y=center.y)


def clear_point_for_element(elem: Element) -> FramePoint:
    center = elem.center
    if not is_text_input_role(elem.role) or elem.frame.w <= 0:
        return center
    inset = max(8.0, min(elem.frame.w * 0.15, 24.0))
    x = elem.frame.right - inset
    if x < elem.frame.x + 6:
        x = center.x
    return FramePoint(x=x, y=center.y)


def estimate_clear_backspaces(value: str) -> int:
    n = len(value)
    if n <= 0:
        return DEFAULT_CLEAR_KEYS
    if n < 16:
        return 24
    if n < 40:
        return n + 12
    return min(n + 16, MAX_CLEAR_KEYS)


def can_trust_focus(elements: Sequence[Element], target: Element) -> bool:
    """
    Focus is trusted when the focused element is the target (by id, or by proximity when the
    target has no id). A snapshot where nothing reports focus is trusted as well.
    """
    point = target.center
    has_focused = False
    for elem in elements:
        if not elem.focused:
            continue
        has_focused = True
        if not target.id.strip() and elem.center.distance_to(point) <= FOCUS_TRUST_RADIUS_PT:
            return True
        if elem.id == target.id:
            return True
    return not has_focused


def find_best_verification_target(elements: Sequence[Element], target: Element) -> Optional[Element]:
    if target.id.strip():
        for elem in elements:
            if elem.id == target.id:
                return elem

    point = target.center
    best: Optional[Element] = None
    best_distance = float("inf")
    for elem in elements:
        if not is_text_input_role(elem.role):
            continue
        distance = elem.center.distance_to(point)
        if distance < best_distance:
            best = elem
            best_distance = distance
    return best


def find_focused_text_input(elements: Sequence[Element]) -> Optional[Element]:
    for elem in elements:
        if elem.enabled and elem.focused and is_text_input_role(elem.role):
            return elem
    return None


def focus_element_with_retry(device: Any, elem: Element, retries: int = DEFAULT_FOCUS_RETRIES) -> FocusResult:
    """
    Tap `elem` and confirm from a fresh snapshot that it (and not a neighbour) took focus.

    Each attempt re-locates the target in the new snapshot and retaps at its recomputed focus
    point. Raises TYPE_FOCUS_FAILED once `retries` attempts are used up.
    """
    attempts = retries if retries > 0 else 1
    target = elem
    tap_point = focus_point_for_element(target)
    history: list[FocusAttempt] = []
    last_reason = ""
    last_error: Optional[SimAgentError] = None
    last_snapshot: Optional[ElementSet] = None

    for attempt in range(1, attempts + 1):
        try:
            device.tap(tap_point.x, tap_point.y)
        except SimAgentError as e:
            last_error = wrap_error_code(e, "IDB_UI_FAILED", "focus tap failed")
            history.append(FocusAttempt(attempt, FocusState.TAP_SENT, tap_point, last_error.message))
            continue

        time.sleep(FOCUS_SETTLE_S)
        try:
            snapshot = capture_elements(device)
        except SimAgentError as e:
            last_error = e
            history.append(FocusAttempt(attempt, FocusState.VERIFYING, tap_point, e.message))
            continue
        last_snapshot = snapshot

        matched = find_best_verification_target(snapshot.elements, target)
        if matched is None:
            last_reason = "target element not found after tap"
            history.append(FocusAttempt(attempt, FocusState.UNTRUSTED, tap_point, last_reason))
            continue

        used_point = tap_point
        target = matched
        tap_point = focus_point_for_element(target)
        if can_trust_focus(snapshot.elements, matched):
            history.append(FocusAttempt(attempt, FocusState.TRUSTED, used_point))
            return FocusResult(element=target, tap_point=tap_point, attempts=attempt, history=tuple(history))
        last_reason = "focus moved to different element"
        history.append(FocusAttempt(attempt, FocusState.UNTRUSTED, used_point, last_reason))

    details: dict[str, Any] = {
        "selectorId": elem.id.strip(),
        "attempts": attempts,
        "state": FocusState.EXHAUSTED.value,
        "history": [h.to_dict() for h in history],
    }
    if last_reason:
        details["reason"] = last_reason
    if last_error is not None:
        details["lastError"] = render_error(last_error)
    if last_snapshot is not None:
        details["interactive"] = last_snapshot.interactive_count
    raise SimAgentError(
        code="TYPE_FOCUS_FAILED",
        message="failed to verify focus target after retries",
        details=details,
    )


def clear_focused_input(device: Any, count: int) -> int:
    """Send `count` backspaces, as one key-sequence when the injector supports it."""
    keys = count if count > 0 else DEFAULT_CLEAR_KEYS
    try:
        device.key_sequence([BACKSPACE_KEY_CODE] * keys)
        return keys
    except SimAgentError:
        # Some idb releases reject key-sequence; single key presses still work there.
        pass
    for _ in range(keys):
        try:
            device.key(BACKSPACE_KEY_CODE)
        except SimAgentError as e:
            raise wrap_error_code(e, "IDB_UI_FAILED", "clear text failed") from e
    return keys


def clear_element(device: Any, focused: FocusResult, *, min_backspaces: int = 0) -> int:
    point = clear_point_for_element(focused.element)
    try:
        device.tap(point.x, point.y)
    except SimAgentError as e:
        raise wrap_error_code(e, "IDB_UI_FAILED", "clear tap failed") from e
    count = max(min_backspaces, estimate_clear_backspaces(focused.element.value))
    return clear_focused_input(device, count)
