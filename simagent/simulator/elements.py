from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Any, Iterable, Iterator, Optional, Sequence

from .errors import SimAgentError, usage_error

INTERACTIVE_ROLE_HINTS = ("button", "textfield", "securetextfield", "switch", "slider", "cell", "link")
TEXT_INPUT_ROLE_HINTS = ("textfield", "securetextfield", "searchfield", "textarea", "textview")

NEARBY_LABEL_RADIUS_PT = 220.0

ORDER_READING = "reading"
ORDER_Z = "z"
ORDER_STABLE = "stable"
ELEMENT_ORDERS = (ORDER_READING, ORDER_Z, ORDER_STABLE)

DEFAULT_SOURCE = ("idb", "describe-all")

_ID_KEYS = ("id", "identifier", "uid", "axPath", "path", "accessibilityIdentifier")
_ROLE_KEYS = ("role", "type", "elementType", "axRole", "roleDescription", "AXRole", "wdType")
_LABEL_KEYS = ("label", "name", "title", "placeholder", "accessibilityLabel", "axLabel", "AXLabel", "wdLabel")
_VALUE_KEYS = ("value", "text", "axValue", "AXValue", "displayValue", "wdValue", "selectedText")
_ENABLED_KEYS = ("enabled", "isEnabled")
_FOCUSED_KEYS = ("focused", "isFocused", "hasFocus", "AXFocused")
_RECT_CONTAINER_KEYS = ("frame", "bounds", "rect")
_RECT_X_KEYS = ("x", "left", "originX")
_RECT_Y_KEYS = ("y", "top", "originY")
_RECT_W_KEYS = ("w", "width")
_RECT_H_KEYS = ("h", "height")

_TRUE_STRINGS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_STRINGS = {"0", "f", "F", "FALSE", "false", "False"}


@dataclass(frozen=True)
class FramePoint:
    x: float
    y: float

    def distance_to(self, other: FramePoint) -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y}


@dataclass(frozen=True)
class FrameRect:
    x: float
    y: float
    w: float
    h: float

    @property
    def right(self) -> float:
        return self.x + self.w

    @property
    def bottom(self) -> float:
        return self.y + self.h

    @property
    def area(self) -> float:
        return self.w * self.h

    @property
    def center(self) -> FramePoint:
        return FramePoint(x=self.x + self.w / 2, y=self.y + self.h / 2)

    def is_empty(self) -> bool:
        return self.w <= 0 or self.h <= 0

    def intersects(self, other: FrameRect) -> bool:
        return self.x < other.right and other.x < self.right and self.y < other.bottom and other.y < self.bottom

    def contains(self, other: FrameRect) -> bool:
        return (
            other.x >= self.x
            and other.y >= self.y
            and other.right <= self.right
            and other.bottom <= self.bottom
        )

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}


@dataclass(frozen=True)
class Element:
    index: int
    id: str
    role: str
    label: str
    value: str
    frame: FrameRect
    enabled: bool = True
    focused: bool = False
    visible: bool = True
    offscreen: bool = False
    nearby_label: str = ""
    source: tuple[str, str] = DEFAULT_SOURCE
    # Discovery rank in the raw tree; only used for z ordering.
    order: int = 0

    @property
    def center(self) -> FramePoint:
        return self.frame.center

    @property
    def interactive(self) -> bool:
        return is_interactive_role(self.role)

    @property
    def text_input(self) -> bool:
        return is_text_input_role(self.role)

    @property
    def secure(self) -> bool:
        return is_secure_text_role(self.role)

    def searchable_text(self) -> str:
        parts = [self.label, self.value, self.nearby_label, self.role]
        return " ".join(p.strip() for p in parts if p.strip()).lower()

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"index": self.index, "id": self.id}
        if self.role:
            out["role"] = self.role
        if self.label:
            out["label"] = self.label
        if self.value:
            out["value"] = self.value
        if self.nearby_label:
            out["nearbyLabel"] = self.nearby_label
        out["enabled"] = self.enabled
        if self.focused:
            out["focused"] = True
        out["visible"] = self.visible
        out["offscreen"] = self.offscreen
        out["frame"] = self.frame.to_dict()
        out["center"] = self.center.to_dict()
        out["source"] = {"tool": self.source[0], "method": self.source[1]}
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Element:
        frame_raw = data.get("frame") or {}
        source_raw = data.get("source") or {}
        return cls(
            index=int(data.get("index") or 0),
            id=str(data.get("id") or ""),
            role=str(data.get("role") or ""),
            label=str(data.get("label") or ""),
            value=str(data.get("value") or ""),
            nearby_label=str(data.get("nearbyLabel") or ""),
            enabled=bool(data.get("enabled", True)),
            focused=bool(data.get("focused", False)),
            visible=bool(data.get("visible", True)),
            offscreen=bool(data.get("offscreen", False)),
            frame=FrameRect(
                x=float(frame_raw.get("x") or 0),
                y=float(frame_raw.get("y") or 0),
                w=float(frame_raw.get("w") or 0),
                h=float(frame_raw.get("h") or 0),
            ),
            source=(
                str(source_raw.get("tool") or DEFAULT_SOURCE[0]),
                str(source_raw.get("method") or DEFAULT_SOURCE[1]),
            ),
            order=int(data.get("index") or 0),
        )


@dataclass(frozen=True)
class ElementSet:
    elements: tuple[Element, ...]
    all_count: int
    interactive_count: int
    screen: FrameRect = FrameRect(0, 0, 0, 0)

    def __iter__(self) -> Iterator[Element]:
        return iter(self.elements)

    def __len__(self) -> int:
        return len(self.elements)


@dataclass(frozen=True)
class NormalizeOptions:
    order: str = ORDER_READING
    interactive_only: bool = False
    min_area: float = 0.0
    include_roles: frozenset[str] = frozenset()
    exclude_roles: frozenset[str] = frozenset()


@dataclass(frozen=True)
class Transform:
    screen_w: float
    screen_h: float
    screenshot_w: int = 0
    screenshot_h: int = 0
    scale: float = 1.0

    @property
    def screen_center(self) -> FramePoint:
        return FramePoint(x=self.screen_w / 2, y=self.screen_h / 2)

    def to_points(self, x: float, y: float) -> tuple[float, float]:
        if self.scale <= 0:
            raise SimAgentError(
                code="COORD_TRANSFORM_FAILED",
                message="transform scale must be > 0 to convert px coordinates",
                details={"scale": self.scale},
            )
        return x / self.scale, y / self.scale

    def to_dict(self) -> dict[str, Any]:
        return {
            "screen": {"w": self.screen_w, "h": self.screen_h, "unit": "pt"},
            "screenshot": {"w": self.screenshot_w, "h": self.screenshot_h, "unit": "px"},
            "scale": self.scale,
            "safeArea": {"top": 0.0, "bottom": 0.0, "left": 0.0, "right": 0.0, "unit": "pt"},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transform:
        screen = data.get("screen") or {}
        screenshot = data.get("screenshot") or {}
        return cls(
            screen_w=float(screen.get("w") or 0),
            screen_h=float(screen.get("h") or 0),
            screenshot_w=int(screenshot.get("w") or 0),
            screenshot_h=int(screenshot.get("h") or 0),
            scale=float(data.get("scale") or 0),
        )


def _role_matches(role: str, hints: Iterable[str]) -> bool:
    key = role.strip().lower()
    if not key:
        return False
    return any(hint in key for hint in hints)


def is_interactive_role(role: str) -> bool:
    return _role_matches(role, INTERACTIVE_ROLE_HINTS)


def is_text_input_role(role: str) -> bool:
    return _role_matches(role, TEXT_INPUT_ROLE_HINTS)


def is_secure_text_role(role: str) -> bool:
    return "securetextfield" in role.strip().lower()


def _scalar_string(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value).strip()
    return text or None


def first_string(node: dict[str, Any], keys: Sequence[str]) -> str:
    for key in keys:
        text = _scalar_string(node.get(key))
        if text is not None:
            return text
    return ""


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        parsed = float(value)
    elif isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(parsed) or math.isinf(parsed):
        return None
    return parsed


def _first_float(node: dict[str, Any], keys: Sequence[str]) -> Optional[float]:
    for key in keys:
        parsed = _as_float(node.get(key))
        if parsed is not None:
            return parsed
    return None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    return None


def first_bool(node: dict[str, Any], keys: Sequence[str], *, default: bool) -> bool:
    for key in keys:
        parsed = _as_bool(node.get(key))
        if parsed is not None:
            return parsed
    return default


def rect_from_any(value: Any) -> Optional[FrameRect]:
    if not isinstance(value, dict):
        return None
    x = _first_float(value, _RECT_X_KEYS)
    y = _first_float(value, _RECT_Y_KEYS)
    w = _first_float(value, _RECT_W_KEYS)
    h = _first_float(value, _RECT_H_KEYS)
    if x is None or y is None or w is None or h is None:
        return None
    return FrameRect(x=x, y=y, w=w, h=h)


def find_rect(node: dict[str, Any]) -> Optional[FrameRect]:
    for key in _RECT_CONTAINER_KEYS:
        rect = rect_from_any(node.get(key))
        if rect is not None:
            return rect
    return rect_from_any(node)


def _walk_mappings(node: Any, path: str) -> Iterator[tuple[str, dict[str, Any]]]:
    if isinstance(node, dict):
        yield path, node
        for key, child in node.items():
            yield from _walk_mappings(child, f"{path}/{key}")
    elif isinstance(node, list):
        for i, child in enumerate(node):
            yield from _walk_mappings(child, f"{path}/{i}")


def element_from_candidate(node: dict[str, Any], *, path: str, order: int) -> Optional[Element]:
    frame = find_rect(node)
    if frame is None or frame.is_empty():
        return None
    label = first_string(node, _LABEL_KEYS)
    value = first_string(node, _VALUE_KEYS)
    return Element(
        index=0,
        id=first_string(node, _ID_KEYS) or f"axpath:{path or '/'}",
        role=first_string(node, _ROLE_KEYS),
        label=label or value,
        value=value,
        frame=frame,
        enabled=first_bool(node, _ENABLED_KEYS, default=True),
        focused=first_bool(node, _FOCUSED_KEYS, default=False),
        order=order,
    )


def infer_screen_rect(raw: Any, elements: Sequence[Element]) -> FrameRect:
    """
    Screen bounds used for visibility: the root node's own rect, else the bounding box of every
    non-degenerate element frame. An empty rect means "unknown screen, treat all as visible".
    """
    if isinstance(raw, dict):
        root = find_rect(raw)
        if root is not None and not root.is_empty():
            return root

    frames = [e.frame for e in elements if not e.frame.is_empty()]
    if not frames:
        return FrameRect(0, 0, 0, 0)
    min_x = min(f.x for f in frames)
    min_y = min(f.y for f in frames)
    max_x = max(f.right for f in frames)
    max_y = max(f.bottom for f in frames)
    if max_x <= min_x or max_y <= min_y:
        return FrameRect(0, 0, 0, 0)
    return FrameRect(x=min_x, y=min_y, w=max_x - min_x, h=max_y - min_y)


def classify_visibility(frame: FrameRect, screen: FrameRect) -> tuple[bool, bool]:
    """Return (visible, offscreen) for an element frame against the screen rect."""
    if frame.is_empty():
        return False, True
    if screen.is_empty():
        return True, False
    if not screen.intersects(frame):
        return False, True
    return True, not screen.contains(frame)


def sort_elements(elements: Sequence[Element], order: str) -> list[Element]:
    if order == ORDER_READING:
        return sorted(elements, key=lambda e: (e.center.y, e.center.x, e.id))
    if order == ORDER_Z:
        return sorted(elements, key=lambda e: e.order)
    if order == ORDER_STABLE:
        return sorted(elements, key=lambda e: e.id)
    raise usage_error(f"invalid element order: {order}", {"allowed": list(ELEMENT_ORDERS)})


def add_nearby_labels(elements: Sequence[Element]) -> list[Element]:
    out: list[Element] = []
    for elem in elements:
        if elem.label.strip():
            out.append(elem)
            continue
        best: Optional[Element] = None
        best_distance = NEARBY_LABEL_RADIUS_PT
        for other in elements:
            if other is elem or not other.visible or not other.label.strip():
                continue
            distance = elem.center.distance_to(other.center)
            if distance <= best_distance and (best is None or distance < best_distance):
                best = other
                best_distance = distance
        out.append(replace(elem, nearby_label=best.label.strip()) if best is not None else elem)
    return out


def normalize_elements(raw: Any, options: Optional[NormalizeOptions] = None) -> ElementSet:
    """
    Flatten a raw accessibility snapshot into indexed elements.

    Every mapping anywhere in the tree is a candidate; it is kept when a positive-size rect can be
    read from it. Filtering happens before visibility is classified, and indices are assigned after
    sorting so they are always dense 1..N in the requested order.
    """
    opts = options or NormalizeOptions()
    include = {r.strip().lower() for r in opts.include_roles if r.strip()}
    exclude = {r.strip().lower() for r in opts.exclude_roles if r.strip()}

    candidates: list[Element] = []
    all_count = 0
    interactive_count = 0
    for order, (path, node) in enumerate(_walk_mappings(raw, ""), 1):
        elem = element_from_candidate(node, path=path, order=order)
        if elem is None:
            continue
        if opts.min_area > 0 and elem.frame.area < opts.min_area:
            continue
        role_key = elem.role.strip().lower()
        if include and role_key not in include:
            continue
        if role_key in exclude:
            continue
        if not elem.enabled:
            continue

        all_count += 1
        if elem.interactive:
            interactive_count += 1
        elif opts.interactive_only:
            continue
        candidates.append(elem)

    screen = infer_screen_rect(raw, candidates)
    classified = []
    for elem in candidates:
        visible, offscreen = classify_visibility(elem.frame, screen)
        classified.append(replace(elem, visible=visible, offscreen=offscreen))

    ordered = sort_elements(classified, opts.order)
    indexed = [replace(elem, index=i) for i, elem in enumerate(ordered, 1)]
    return ElementSet(
        elements=tuple(add_nearby_labels(indexed)),
        all_count=all_count,
        interactive_count=interactive_count,
        screen=screen,
    )


def count_live_interactive(elements: Iterable[Element]) -> int:
    return sum(1 for e in elements if e.enabled and e.visible and e.interactive)


def derive_transform(
    raw: Any,
    elements: Sequence[Element],
    screenshot_size: Optional[tuple[int, int]] = None,
) -> Transform:
    shot_w, shot_h = screenshot_size or (0, 0)

    max_w = max((e.frame.right for e in elements), default=0.0)
    max_h = max((e.frame.bottom for e in elements), default=0.0)
    if (max_w <= 0 or max_h <= 0) and isinstance(raw, dict):
        root = find_rect(raw)
        if root is not None and not root.is_empty():
            max_w = max_w if max_w > 0 else root.w
            max_h = max_h if max_h > 0 else root.h
    if max_w <= 0 and shot_w > 0:
        max_w = float(shot_w)
    if max_h <= 0 and shot_h > 0:
        max_h = float(shot_h)

    scale = 1.0
    if shot_w > 0 and max_w > 0:
        scale = shot_w / max_w
    elif shot_h > 0 and max_h > 0:
        scale = shot_h / max_h
    return Transform(
        screen_w=max(max_w, 0.0),
        screen_h=max(max_h, 0.0),
        screenshot_w=shot_w,
        screenshot_h=shot_h,
        scale=scale,
    )
