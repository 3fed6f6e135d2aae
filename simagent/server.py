#!/usr/bin/env python3
"""
HTTP server exposing the simagent action surface.
"""

from __future__ import annotations

import os
from typing import Any, Callable, Optional

from flask import Flask, jsonify, request

from simagent.simulator import actions
from simagent.simulator.config import load_settings, parse_duration
from simagent.simulator.errors import SimAgentError, error_envelope, usage_error
from simagent.simulator.flow_runner import parse_flow, run_flow
from simagent.simulator.idb_client import IdbClient, ensure_binary
from simagent.simulator.selectors import SelectorQuery
from simagent.simulator.targets import resolve_target

app = Flask(__name__)

_STATUS_BY_CODE = {
    "USAGE": 400,
    "ELEMENT_NOT_FOUND": 404,
    "TARGET_NOT_FOUND": 404,
    "NO_BOOTED_DEVICE": 404,
    "WAIT_TIMEOUT": 408,
}


def _device_for(body: dict[str, Any]) -> Any:
    settings = load_settings()
    ensure_binary(settings.idb_bin)
    target = resolve_target(
        str(body.get("target") or settings.target),
        config_dir=settings.config_dir,
        xcrun_bin=settings.xcrun_bin,
        timeout_s=settings.timeout_s,
    )
    return IdbClient(
        target.udid,
        timeout_s=settings.timeout_s,
        idb_bin=settings.idb_bin,
        xcrun_bin=settings.xcrun_bin,
    )


def _body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise usage_error("request body must be a JSON object")
    return data


def _selector(body: dict[str, Any]) -> SelectorQuery:
    raw = body.get("selectors")
    if raw is not None and not isinstance(raw, dict):
        raise usage_error("'selectors' must be an object")
    return SelectorQuery.from_dict(raw)


def _duration(body: dict[str, Any], key: str, default: float) -> float:
    value = body.get(key)
    if value in (None, ""):
        return default
    try:
        return parse_duration(value)
    except ValueError as e:
        raise usage_error(f"invalid {key}: {value}") from e


def _int(body: dict[str, Any], key: str, default: Optional[int]) -> Optional[int]:
    value = body.get(key)
    if value in (None, ""):
        return default
    if isinstance(value, bool):
        raise usage_error(f"invalid {key}: {value}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise usage_error(f"invalid {key}: {value}") from e


def _float(body: dict[str, Any], key: str, default: Optional[float]) -> Optional[float]:
    value = body.get(key)
    if value in (None, ""):
        return default
    if isinstance(value, bool):
        raise usage_error(f"invalid {key}: {value}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise usage_error(f"invalid {key}: {value}") from e


def _respond(handler: Callable[[dict[str, Any]], dict[str, Any]]):
    try:
        body = _body()
        return jsonify(handler(body))
    except SimAgentError as e:
        return jsonify(error_envelope(e)), _STATUS_BY_CODE.get(e.code, 500)
    except Exception as e:
        return jsonify(error_envelope(e)), 500


@app.route('/health', methods=['GET'])
def health():
    """Health check endpoint."""
    return jsonify({"status": "ok"})


@app.route('/ui/tap', methods=['POST'])
def ui_tap():
    """Tap coordinates ({"x", "y"}) or one selector ({"selectors": {...}})."""

    def run(body: dict[str, Any]) -> dict[str, Any]:
        query = _selector(body)
        if query.count() > 0:
            return actions.tap(_device_for(body), query=query)
        return actions.tap(_device_for(body), x=_float(body, "x", None), y=_float(body, "y", None))

    return _respond(run)


@app.route('/ui/type', methods=['POST'])
def ui_type():
    """Type text, focusing the selected element first when selectors are given."""

    def run(body: dict[str, Any]) -> dict[str, Any]:
        query = _selector(body)
        into = body.get("into")
        if into is None:
            into = query.count() > 0
        return actions.type_text(
            _device_for(body),
            str(body.get("text") or ""),
            into=query if into else None,
            replace=bool(body.get("replace")),
            ascii_mode=bool(body.get("ascii")),
            paste_mode=bool(body.get("paste")),
            verify=bool(body.get("verify")),
            focus_retries=_int(body, "focusRetries", 2),
        )

    return _respond(run)


@app.route('/ui/clear', methods=['POST'])
def ui_clear():
    """Clear a text field."""

    def run(body: dict[str, Any]) -> dict[str, Any]:
        return actions.clear(
            _device_for(body),
            _selector(body),
            max_backspaces=_int(body, "maxBackspaces", 72),
        )

    return _respond(run)


@app.route('/ui/swipe', methods=['POST'])
def ui_swipe():
    """Swipe up|down|left|right from screen center or a selected element."""

    def run(body: dict[str, Any]) -> dict[str, Any]:
        query = _selector(body)
        return actions.swipe(
            _device_for(body),
            str(body.get("direction") or "up"),
            query=query if query.count() > 0 else None,
            distance=_float(body, "distance", actions.DEFAULT_SWIPE_DISTANCE_PT),
        )

    return _respond(run)


@app.route('/ui/wait', methods=['POST'])
def ui_wait():
    """Wait for text and/or an interactive element count."""

    def run(body: dict[str, Any]) -> dict[str, Any]:
        return actions.wait(
            _device_for(body),
            has_text=str(body.get("hasText") or ""),
            interactive_min=_int(body, "interactiveMin", None),
            timeout_s=_duration(body, "timeout", 20.0),
            interval_s=_duration(body, "interval", 0.7),
        )

    return _respond(run)


@app.route('/ui/button', methods=['POST'])
def ui_button():
    """Press a hardware button."""
    return _respond(lambda body: actions.press_button(_device_for(body), str(body.get("name") or "")))


@app.route('/ui/flow/run', methods=['POST'])
def ui_flow_run():
    """Run an inline flow ({"flow": {"name", "steps": [...]}, "resumeFrom": 1})."""

    def run(body: dict[str, Any]) -> dict[str, Any]:
        flow_raw = body.get("flow")
        if not isinstance(flow_raw, dict):
            raise usage_error("'flow' must be an object with 'steps'")
        flow = parse_flow(flow_raw, context="request")
        return run_flow(
            _device_for(body),
            flow,
            resume_from=_int(body, "resumeFrom", 1),
            artifacts_dir=load_settings().artifacts_dir,
        )

    return _respond(run)


if __name__ == '__main__':
    port = int(os.getenv('SIMAGENT_PORT', 5060))
    app.run(host='127.0.0.1', port=port, debug=False)
