from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from . import actions
from .config import load_json_file, parse_duration, write_json_file
from .elements import Element
from .errors import SimAgentError, render_error, usage_error, wrap_error
from .observation import read_snapshot
from .selectors import SelectorQuery
from .waiter import DEFAULT_WAIT_INTERVAL_S, DEFAULT_WAIT_TIMEOUT_S


class FlowAction(str, Enum):
    TAP = "tap"
    TYPE = "type"
    CLEAR = "clear"
    SWIPE = "swipe"
    WAIT = "wait"


@dataclass(frozen=True)
class FlowWait:
    has_text: str = ""
    interactive_min: Optional[int] = None
    timeout: str = ""
    interval: str = ""


@dataclass(frozen=True)
class FlowStep:
    """One declarative step. `action` keeps the raw string so unknown actions fail when reached."""

    action: str
    name: str = ""
    selectors: SelectorQuery = SelectorQuery()
    text: str = ""
    into: Optional[bool] = None
    verify: bool = False
    replace: bool = False
    ascii: bool = False
    paste: bool = False
    direction: str = ""
    distance: float = 0.0
    x: Optional[float] = None
    y: Optional[float] = None
    wait: FlowWait = FlowWait()


@dataclass(frozen=True)
class Flow:
    name: str
    steps: tuple[FlowStep, ...]
    path: str = ""


@dataclass
class _RunContext:
    device: Any
    cached: Optional[Sequence[Element]] = None
    results: list[dict[str, Any]] = field(default_factory=list)


def _timestamp() -> str:
    return datetime.now().strftime("%Y%m%d-%H%M%S-%f")


def _opt_str(raw: dict[str, Any], key: str, *, context: str) -> str:
    value = raw.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise usage_error(f"{context}: '{key}' must be a string")
    return value.strip()


def _opt_bool(raw: dict[str, Any], key: str, *, context: str) -> Optional[bool]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise usage_error(f"{context}: '{key}' must be true or false")
    return value


def _opt_int(raw: dict[str, Any], key: str, *, context: str) -> Optional[int]:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise usage_error(f"{context}: '{key}' must be an integer")
    return value


def _opt_float(raw: dict[str, Any], key: str, *, context: str) -> Optional[float]:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise usage_error(f"{context}: '{key}' must be a number")
    return float(value)


def _opt_duration(raw: dict[str, Any], key: str, *, context: str) -> str:
    value = raw.get(key)
    if value is None:
        return ""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise usage_error(f"{context}: '{key}' must be a duration like \"700ms\" or \"20s\"")
    return str(value).strip()


def _parse_wait(raw: dict[str, Any], *, context: str) -> FlowWait:
    nested = raw.get("wait") or {}
    if not isinstance(nested, dict):
        raise usage_error(f"{context}: 'wait' must be an object")
    inner_context = f"{context}: wait"
    interactive_min = _opt_int(nested, "interactiveMin", context=inner_context)
    if interactive_min is None:
        interactive_min = _opt_int(raw, "interactiveMin", context=context)
    return FlowWait(
        has_text=_opt_str(nested, "hasText", context=inner_context) or _opt_str(raw, "hasText", context=context),
        interactive_min=interactive_min,
        timeout=_opt_duration(nested, "timeout", context=inner_context)
        or _opt_duration(raw, "timeout", context=context),
        interval=_opt_duration(nested, "interval", context=inner_context)
        or _opt_duration(raw, "interval", context=context),
    )


def parse_flow_step(raw: Any, *, context: str) -> FlowStep:
    if not isinstance(raw, dict):
        raise usage_error(f"{context}: step must be an object")
    selectors_raw = raw.get("selectors")
    if selectors_raw is not None and not isinstance(selectors_raw, dict):
        raise usage_error(f"{context}: 'selectors' must be an object")
    try:
        selectors = SelectorQuery.from_dict(selectors_raw)
    except SimAgentError as e:
        raise usage_error(f"{context}: {e.message}") from e

    return FlowStep(
        action=_opt_str(raw, "action", context=context).lower(),
        name=_opt_str(raw, "name", context=context),
        selectors=selectors,
        text=_opt_str(raw, "text", context=context),
        into=_opt_bool(raw, "into", context=context),
        verify=bool(_opt_bool(raw, "verify", context=context)),
        replace=bool(_opt_bool(raw, "replace", context=context)),
        ascii=bool(_opt_bool(raw, "ascii", context=context)),
        paste=bool(_opt_bool(raw, "paste", context=context)),
        direction=_opt_str(raw, "direction", context=context).lower(),
        distance=_opt_float(raw, "distance", context=context) or 0.0,
        x=_opt_float(raw, "x", context=context),
        y=_opt_float(raw, "y", context=context),
        wait=_parse_wait(raw, context=context),
    )


def parse_flow(data: dict[str, Any], *, context: str = "flow") -> Flow:
    steps_raw = data.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise usage_error("flow file must include at least one step")
    steps = tuple(
        parse_flow_step(step, context=f"{context}: steps[{idx}]") for idx, step in enumerate(steps_raw, 1)
    )
    return Flow(name=str(data.get("name") or "").strip(), steps=steps, path=context)


def load_flow(path: str | Path) -> Flow:
    try:
        data = load_json_file(path)
    except (OSError, ValueError) as e:
        raise wrap_error("IO_ERROR", "failed to read flow file", e) from e
    return parse_flow(data, context=str(path))


def _run_tap(ctx: _RunContext, step: FlowStep) -> dict[str, Any]:
    if step.x is not None and step.y is not None:
        return actions.tap(ctx.device, x=step.x, y=step.y)
    if step.selectors.count() != 1:
        raise usage_error("flow tap requires x/y or exactly one selector")
    return actions.tap(ctx.device, query=step.selectors, cached=ctx.cached)


def _run_type(ctx: _RunContext, step: FlowStep) -> dict[str, Any]:
    if not step.text:
        raise usage_error("flow type requires text")
    selector_count = step.selectors.count()
    into = step.into if step.into is not None else selector_count == 1
    if into and selector_count != 1:
        raise usage_error("flow type into requires exactly one selector")
    return actions.type_text(
        ctx.device,
        step.text,
        into=step.selectors if into else None,
        replace=step.replace,
        ascii_mode=step.ascii,
        paste_mode=step.paste,
        verify=step.verify,
        cached=ctx.cached,
    )


def _run_clear(ctx: _RunContext, step: FlowStep) -> dict[str, Any]:
    if step.selectors.count() != 1:
        raise usage_error("flow clear requires exactly one selector")
    return actions.clear(ctx.device, step.selectors, max_backspaces=None, cached=ctx.cached)


def _run_swipe(ctx: _RunContext, step: FlowStep) -> dict[str, Any]:
    query = step.selectors if step.selectors.count() == 1 else None
    return actions.swipe(
        ctx.device,
        step.direction or "up",
        query=query,
        distance=step.distance if step.distance > 0 else actions.DEFAULT_SWIPE_DISTANCE_PT,
        cached=ctx.cached,
    )


def _duration_or_default(raw: str, default: float, *, field_name: str) -> float:
    if not raw:
        return default
    try:
        return parse_duration(raw)
    except ValueError as e:
        raise usage_error(f"invalid flow wait {field_name}: {raw}") from e


def _run_wait(ctx: _RunContext, step: FlowStep) -> dict[str, Any]:
    return actions.wait(
        ctx.device,
        has_text=step.wait.has_text,
        interactive_min=step.wait.interactive_min,
        timeout_s=_duration_or_default(step.wait.timeout, DEFAULT_WAIT_TIMEOUT_S, field_name="timeout"),
        interval_s=_duration_or_default(step.wait.interval, DEFAULT_WAIT_INTERVAL_S, field_name="interval"),
    )


_STEP_HANDLERS: dict[FlowAction, Callable[[_RunContext, FlowStep], dict[str, Any]]] = {
    FlowAction.TAP: _run_tap,
    FlowAction.TYPE: _run_type,
    FlowAction.CLEAR: _run_clear,
    FlowAction.SWIPE: _run_swipe,
    FlowAction.WAIT: _run_wait,
}


def execute_flow_step(ctx: _RunContext, step: FlowStep) -> dict[str, Any]:
    try:
        action = FlowAction(step.action)
    except ValueError as e:
        raise usage_error(f"unsupported flow action: {step.action}") from e
    result = dict(_STEP_HANDLERS[action](ctx, step))
    result.pop("ok", None)
    return result


def capture_failure_artifacts(device: Any, out_dir: Path) -> dict[str, Any]:
    """Best-effort screenshot + raw tree for a failed step. Never raises."""
    out: dict[str, Any] = {"outDir": str(out_dir)}
    try:
        out_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        out["error"] = str(e)
        return out

    try:
        out["screenshot"] = str(device.screenshot(out_dir / "screen.png"))
    except (SimAgentError, OSError) as e:
        out["screenshotError"] = render_error(e)

    try:
        raw = json.loads(read_snapshot(device))
        out["uiRaw"] = str(write_json_file(out_dir / "ui.raw.json", raw))
    except (SimAgentError, ValueError) as e:
        out["uiRawError"] = render_error(e)
    return out


def run_flow(
    device: Any,
    flow: Flow,
    *,
    resume_from: int = 1,
    cached: Optional[Sequence[Element]] = None,
    artifacts_dir: Optional[Path] = None,
    log: Optional[Callable[[str], None]] = None,
) -> dict[str, Any]:
    """
    Run flow steps in order starting at the 1-based `resume_from`.

    The first failing step stops the run: failure artifacts are captured and FLOW_STEP_FAILED is
    raised with the step number to resume from once the cause is fixed.
    """
    if resume_from < 1:
        raise usage_error("--resume-from must be >= 1")
    if resume_from > len(flow.steps):
        raise usage_error(
            "--resume-from exceeds number of steps",
            {"resumeFrom": resume_from, "steps": len(flow.steps)},
        )

    ctx = _RunContext(device=device, cached=cached)
    total = len(flow.steps)
    for idx in range(resume_from, total + 1):
        step = flow.steps[idx - 1]
        display_name = step.name or f"step_{idx}"
        if log is not None:
            log(f"[{idx}/{total}] {display_name} ({step.action or '?'})")
        try:
            result = execute_flow_step(ctx, step)
        except SimAgentError as e:
            root = artifacts_dir or Path("artifacts")
            out_dir = root / f"flow-failure-{_timestamp()}-step-{idx:02d}"
            artifacts = capture_failure_artifacts(device, out_dir)
            if log is not None:
                log(f"  failed: [{e.code}] {e.message}; artifacts in {out_dir}")
            raise SimAgentError(
                code="FLOW_STEP_FAILED",
                message=f"flow step {idx} failed",
                details={
                    "step": idx,
                    "name": step.name,
                    "action": step.action,
                    "resumeFrom": idx,
                    "error": render_error(e),
                    "artifacts": artifacts,
                },
            ) from e
        result["step"] = idx
        result["name"] = step.name
        ctx.results.append(result)

    return {
        "ok": True,
        "action": "flow-run",
        "name": flow.name,
        "file": flow.path,
        "resumeFrom": resume_from,
        "steps": ctx.results,
    }
