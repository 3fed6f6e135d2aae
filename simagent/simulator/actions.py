from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence

from .elements import Element, FramePoint, Transform
from .errors import SimAgentError, render_error, usage_error, wrap_error_code
from .focus import (
    DEFAULT_CLEAR_KEYS,
    DEFAULT_FOCUS_RETRIES,
    clear_element,
    focus_element_with_retry,
    focus_point_for_element,
)
from .observation import capture_elements
from .selectors import (
    SelectorQuery,
    pick_element_by_selectors,
    pick_intent_fallback_element,
    pick_system_fallback_element,
    require_single_selector,
)
from .text_input import prepare_typed_text, submit_text_input, verify_type_result
from .waiter import DEFAULT_WAIT_INTERVAL_S, DEFAULT_WAIT_TIMEOUT_S, wait_for_condition

SWIPE_DIRECTIONS = ("up", "down", "left", "right")
DEFAULT_SWIPE_DISTANCE_PT = 220.0
# Center of a 393x852pt iPhone screen; used when no transform is known.
DEFAULT_SWIPE_START = FramePoint(x=196.0, y=426.0)


@dataclass(frozen=True)
class Resolution:
    element: Element
    by: str
    scan: str


def _selector_kind(query: SelectorQuery) -> str:
    if query.index is not None:
        return "index"
    if query.id.strip():
        return "id"
    if query.label.strip():
        return "label"
    return "contains"


def resolve_element(
    device: Any,
    query: SelectorQuery,
    cached: Optional[Sequence[Element]] = None,
) -> Resolution:
    """
    Resolve one selector to one element.

    The cached element set (last frame) is tried first, then a live snapshot, then the intent and
    system-chrome fallbacks against that same live snapshot. The resolver error from the last
    direct attempt is raised when all of them miss.
    """
    require_single_selector(query)
    kind = _selector_kind(query)

    miss: Optional[SimAgentError] = None
    if cached is not None:
        try:
            return Resolution(element=pick_element_by_selectors(cached, query), by=kind, scan="cache")
        except SimAgentError as e:
            miss = e

    try:
        snapshot = capture_elements(device)
    except SimAgentError as live_err:
        if miss is None:
            raise
        details = dict(miss.details or {})
        details["liveError"] = render_error(live_err)
        raise SimAgentError(code=miss.code, message=miss.message, details=details) from live_err

    try:
        return Resolution(element=pick_element_by_selectors(snapshot.elements, query), by=kind, scan="live")
    except SimAgentError as e:
        miss = e

    fallback = pick_intent_fallback_element(snapshot.elements, query)
    if fallback is not None:
        return Resolution(element=fallback, by="intent-fallback", scan="live")
    fallback = pick_system_fallback_element(snapshot.elements, query)
    if fallback is not None:
        return Resolution(element=fallback, by="system-fallback", scan="live")
    raise miss


def _has_selector(query: Optional[SelectorQuery]) -> bool:
    return query is not None and query.count() > 0


def _send_tap(device: Any, point: FramePoint) -> None:
    try:
        device.tap(point.x, point.y)
    except SimAgentError as e:
        raise wrap_error_code(e, "IDB_UI_FAILED", "tap failed") from e


def tap(
    device: Any,
    *,
    query: Optional[SelectorQuery] = None,
    x: Optional[float] = None,
    y: Optional[float] = None,
    unit: str = "pt",
    cached: Optional[Sequence[Element]] = None,
    transform: Optional[Transform] = None,
) -> dict[str, Any]:
    has_coords = x is not None or y is not None
    if _has_selector(query) and has_coords:
        raise usage_error("use either coordinates or a selector, not both")

    result: dict[str, Any] = {"ok": True, "action": "tap"}
    if _has_selector(query):
        resolution = resolve_element(device, query, cached)
        point = focus_point_for_element(resolution.element)
        result["by"] = resolution.by
        result.update(query.to_dict())
        result["elementId"] = resolution.element.id
        if resolution.by.endswith("-fallback"):
            result["fallback"] = resolution.by
    else:
        if x is None or y is None:
            raise usage_error("tap needs <x> <y> or one selector: --index|--id|--label|--contains")
        if unit not in ("pt", "px"):
            raise usage_error("--unit must be pt or px")
        if unit == "px":
            if transform is None:
                raise SimAgentError(
                    code="COORD_TRANSFORM_FAILED",
                    message="px coordinates need a transform; run `simagent frame` first",
                )
            x, y = transform.to_points(x, y)
        point = FramePoint(x=float(x), y=float(y))
        result["by"] = "coord"

    _send_tap(device, point)
    result["targetPt"] = point.to_dict()
    return result


def type_text(
    device: Any,
    text: str,
    *,
    into: Optional[SelectorQuery] = None,
    replace: bool = False,
    ascii_mode: bool = False,
    paste_mode: bool = False,
    verify: bool = False,
    focus_retries: int = DEFAULT_FOCUS_RETRIES,
    cached: Optional[Sequence[Element]] = None,
) -> dict[str, Any]:
    """
    Type into the focused field, or focus `into` first.

    With `replace` the field is cleared after focus is verified. Dropped characters are retyped
    by the reconciliation loop; `verify` adds a final read-back check.
    """
    if focus_retries < 1:
        raise usage_error("--focus-retries must be >= 1")
    if replace and into is None:
        raise usage_error("--replace requires --into")
    if into is not None and into.count() != 1:
        raise usage_error("--into requires exactly one selector", {"selector": into.to_dict()})

    prepared, mode = prepare_typed_text(text, ascii_mode=ascii_mode, paste_mode=paste_mode)
    if not prepared:
        raise usage_error("text is required")

    result: dict[str, Any] = {"ok": True, "action": "type", "text": prepared, "inputMode": mode}
    focused = None
    if into is not None:
        resolution = resolve_element(device, into, cached)
        focused = focus_element_with_retry(device, resolution.element, focus_retries)
        result["into"] = into.to_dict()
        result["by"] = resolution.by
        result["elementId"] = focused.element.id
        result["focusAttempts"] = focused.attempts
        if replace:
            result["cleared"] = clear_element(device, focused)

    state = submit_text_input(device, prepared, focused)
    result["reconcileRounds"] = state.rounds
    if ascii_mode:
        result["ascii"] = True
    if paste_mode:
        result["paste"] = True
    if replace:
        result["replace"] = True
    result["verified"] = verify
    if verify:
        result["verify"] = verify_type_result(device, prepared, focused)
    return result


def clear(
    device: Any,
    query: SelectorQuery,
    *,
    max_backspaces: Optional[int] = DEFAULT_CLEAR_KEYS,
    cached: Optional[Sequence[Element]] = None,
) -> dict[str, Any]:
    """
    Focus a field and delete its content.

    The backspace count is the larger of `max_backspaces` and an estimate from the field's
    current value length; `None` uses the estimate alone.
    """
    if max_backspaces is not None and max_backspaces <= 0:
        raise usage_error("--max-backspaces must be > 0")
    resolution = resolve_element(device, query, cached)
    focused = focus_element_with_retry(device, resolution.element, DEFAULT_FOCUS_RETRIES)
    count = clear_element(device, focused, min_backspaces=max_backspaces or 0)
    return {
        "ok": True,
        "action": "clear",
        "backspaces": count,
        "selector": query.to_dict(),
        "elementId": focused.element.id,
    }


def swipe(
    device: Any,
    direction: str,
    *,
    query: Optional[SelectorQuery] = None,
    distance: float = DEFAULT_SWIPE_DISTANCE_PT,
    cached: Optional[Sequence[Element]] = None,
    transform: Optional[Transform] = None,
) -> dict[str, Any]:
    direction = direction.strip().lower()
    if direction not in SWIPE_DIRECTIONS:
        raise usage_error("direction must be up|down|left|right", {"direction": direction})
    if distance <= 0:
        raise usage_error("--distance must be > 0")

    start = DEFAULT_SWIPE_START
    if transform is not None:
        center = transform.screen_center
        start = FramePoint(
            x=center.x if transform.screen_w > 0 else start.x,
            y=center.y if transform.screen_h > 0 else start.y,
        )
    if _has_selector(query):
        start = resolve_element(device, query, cached).element.center

    dx, dy = {
        "up": (0.0, -distance),
        "down": (0.0, distance),
        "left": (-distance, 0.0),
        "right": (distance, 0.0),
    }[direction]
    end = FramePoint(x=start.x + dx, y=start.y + dy)
    try:
        device.swipe(start.x, start.y, end.x, end.y)
    except SimAgentError as e:
        raise wrap_error_code(e, "IDB_UI_FAILED", "swipe failed") from e
    return {
        "ok": True,
        "action": "swipe",
        "direction": direction,
        "distance": distance,
        "fromPt": start.to_dict(),
        "toPt": end.to_dict(),
    }


def wait(
    device: Any,
    *,
    has_text: str = "",
    interactive_min: Optional[int] = None,
    timeout_s: float = DEFAULT_WAIT_TIMEOUT_S,
    interval_s: float = DEFAULT_WAIT_INTERVAL_S,
) -> dict[str, Any]:
    if interactive_min is not None and interactive_min < 0:
        interactive_min = None
    return wait_for_condition(
        device,
        has_text=has_text,
        interactive_min=interactive_min,
        timeout_s=timeout_s,
        interval_s=interval_s,
    )


def press_button(device: Any, name: str) -> dict[str, Any]:
    button = name.strip().upper()
    if not button:
        raise usage_error("button name is required (HOME|LOCK|SIRI|SIDE_BUTTON|APPLE_PAY)")
    try:
        device.button(button)
    except SimAgentError as e:
        raise wrap_error_code(e, "IDB_UI_FAILED", "button press failed") from e
    return {"ok": True, "action": "button", "button": button}
