from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional

from mcp.server.fastmcp import FastMCP

from . import actions
from .config import load_elements_and_transform, load_settings, parse_duration
from .errors import SimAgentError, error_envelope, usage_error
from .flow_runner import load_flow
from .flow_runner import run_flow as _run_flow
from .frame import FrameOptions
from .frame import capture_frame as _capture_frame
from .idb_client import IdbClient, ensure_binary
from .selectors import SelectorQuery
from .targets import list_targets as _list_targets
from .targets import resolve_target

mcp = FastMCP(
    "simagent-ui-control",
    instructions=(
        "Drive an iOS simulator through idb with verified actions. "
        "Call capture_frame to see indexed elements, then tap/type_text/clear_text/swipe by selector, "
        "wait_for to synchronize, and run_flow for multi-step scripts. Every tool returns "
        "{ok: true, ...} or {ok: false, error: {code, message, details}}."
    ),
)


def _device(target: str) -> tuple[IdbClient, dict[str, Any]]:
    settings = load_settings()
    ensure_binary(settings.idb_bin)
    resolved = resolve_target(
        target or settings.target,
        config_dir=settings.config_dir,
        xcrun_bin=settings.xcrun_bin,
        timeout_s=settings.timeout_s,
    )
    client = IdbClient(
        resolved.udid,
        timeout_s=settings.timeout_s,
        idb_bin=settings.idb_bin,
        xcrun_bin=settings.xcrun_bin,
    )
    return client, resolved.to_dict()


def _cached_elements(use_last_frame: bool) -> Optional[list[Any]]:
    if not use_last_frame:
        return None
    try:
        elements, _ = load_elements_and_transform(load_settings().config_dir)
    except SimAgentError:
        return None
    return elements


def _selector(index: Optional[int], id: str, label: str, contains: str) -> SelectorQuery:
    return SelectorQuery(index=index, id=id, label=label, contains=contains)


def _envelope(fn: Callable[[], dict[str, Any]]) -> dict[str, Any]:
    try:
        return fn()
    except SimAgentError as e:
        return error_envelope(e)


@mcp.tool()
def list_targets() -> dict[str, Any]:
    """
    List available simulators (booted first).
    """

    def run() -> dict[str, Any]:
        settings = load_settings()
        targets = _list_targets(xcrun_bin=settings.xcrun_bin, timeout_s=settings.timeout_s)
        return {"ok": True, "targets": [t.to_dict() for t in targets]}

    return _envelope(run)


@mcp.tool()
def capture_frame(
    target: str = "",
    out_dir: str = "",
    interactive_only: bool = True,
    stable: bool = False,
    include_elements: bool = True,
) -> dict[str, Any]:
    """
    Capture screenshot + ui tree + indexed elements and record them as the last frame.

    Element indices from this frame can be used as selectors until the next capture.
    """

    def run() -> dict[str, Any]:
        settings = load_settings()
        device, resolved = _device(target)
        options = FrameOptions(
            out_dir=Path(out_dir).expanduser() if out_dir else None,
            interactive_only=interactive_only,
            stable=stable,
        )
        result = _capture_frame(
            device,
            options,
            target=resolved,
            config_dir=settings.config_dir,
            artifacts_dir=settings.artifacts_dir,
        )
        if include_elements:
            elements, _ = load_elements_and_transform(settings.config_dir)
            result["elements"] = [e.to_dict() for e in elements]
        return result

    return _envelope(run)


@mcp.tool()
def tap(
    target: str = "",
    index: Optional[int] = None,
    id: str = "",
    label: str = "",
    contains: str = "",
    x: Optional[float] = None,
    y: Optional[float] = None,
) -> dict[str, Any]:
    """
    Tap one element (exactly one of index/id/label/contains) or point coordinates x/y.
    """

    def run() -> dict[str, Any]:
        device, _ = _device(target)
        query = _selector(index, id, label, contains)
        if query.count() > 0:
            return actions.tap(device, query=query, cached=_cached_elements(True))
        return actions.tap(device, x=x, y=y)

    return _envelope(run)


@mcp.tool()
def type_text(
    text: str,
    target: str = "",
    index: Optional[int] = None,
    id: str = "",
    label: str = "",
    contains: str = "",
    replace: bool = False,
    ascii: bool = False,
    verify: bool = True,
    focus_retries: int = 2,
) -> dict[str, Any]:
    """
    Type text. With a selector the element is focused (and verified) first; dropped characters
    are retyped automatically.
    """

    def run() -> dict[str, Any]:
        device, _ = _device(target)
        query = _selector(index, id, label, contains)
        return actions.type_text(
            device,
            text,
            into=query if query.count() > 0 else None,
            replace=replace,
            ascii_mode=ascii,
            verify=verify,
            focus_retries=focus_retries,
            cached=_cached_elements(query.count() > 0),
        )

    return _envelope(run)


@mcp.tool()
def clear_text(
    target: str = "",
    index: Optional[int] = None,
    id: str = "",
    label: str = "",
    contains: str = "",
    max_backspaces: int = 72,
) -> dict[str, Any]:
    """
    Focus a text field and delete its content.
    """

    def run() -> dict[str, Any]:
        device, _ = _device(target)
        return actions.clear(
            device,
            _selector(index, id, label, contains),
            max_backspaces=max_backspaces,
            cached=_cached_elements(True),
        )

    return _envelope(run)


@mcp.tool()
def swipe(
    direction: str = "up",
    target: str = "",
    index: Optional[int] = None,
    id: str = "",
    distance: float = 220.0,
) -> dict[str, Any]:
    """
    Swipe up|down|left|right from screen center, or from an element given by index/id.
    """

    def run() -> dict[str, Any]:
        device, _ = _device(target)
        query = _selector(index, id, "", "")
        return actions.swipe(
            device,
            direction,
            query=query if query.count() > 0 else None,
            distance=distance,
            cached=_cached_elements(query.count() > 0),
        )

    return _envelope(run)


@mcp.tool()
def wait_for(
    target: str = "",
    has_text: str = "",
    interactive_min: Optional[int] = None,
    timeout: str = "20s",
    interval: str = "700ms",
) -> dict[str, Any]:
    """
    Poll the ui tree until has_text is visible and/or interactive_min controls exist.
    """

    def run() -> dict[str, Any]:
        device, _ = _device(target)
        try:
            timeout_s = parse_duration(timeout)
            interval_s = parse_duration(interval)
        except ValueError as e:
            raise usage_error(str(e)) from e
        return actions.wait(
            device,
            has_text=has_text,
            interactive_min=interactive_min,
            timeout_s=timeout_s,
            interval_s=interval_s,
        )

    return _envelope(run)


@mcp.tool()
def press_button(name: str, target: str = "") -> dict[str, Any]:
    """
    Press a hardware button (HOME, LOCK, SIRI, SIDE_BUTTON, APPLE_PAY).
    """
    return _envelope(lambda: actions.press_button(_device(target)[0], name))


@mcp.tool()
def run_flow(flow_path: str, target: str = "", resume_from: int = 1) -> dict[str, Any]:
    """
    Run a flow JSON file. On failure the error details include the step to resume from and the
    artifacts captured at the failure.
    """

    def run() -> dict[str, Any]:
        device, _ = _device(target)
        return _run_flow(
            device,
            load_flow(flow_path),
            resume_from=resume_from,
            cached=_cached_elements(True),
            artifacts_dir=load_settings().artifacts_dir,
        )

    return _envelope(run)


if __name__ == "__main__":
    mcp.run(transport="stdio")
