from __future__ import annotations

import json
from dataclasses import replace
from typing import Any, Optional

from .elements import ElementSet, NormalizeOptions, count_live_interactive, normalize_elements
from .errors import SimAgentError, wrap_error, wrap_error_code


def parse_snapshot(stdout: str) -> Any:
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise wrap_error("IDB_UI_FAILED", "failed to parse ui tree json", e) from e


def read_snapshot(device: Any) -> str:
    try:
        return device.describe_all()
    except SimAgentError as e:
        raise wrap_error_code(e, "IDB_UI_FAILED", "failed to capture ui tree") from e


def capture_elements(device: Any, options: Optional[NormalizeOptions] = None) -> ElementSet:
    """
    Take a fresh snapshot and normalize it in reading order.

    `interactive_count` on the result counts enabled, visible, interactive elements, which is what
    waits and failure details report.
    """
    raw = parse_snapshot(read_snapshot(device))
    snapshot = normalize_elements(raw, options or NormalizeOptions())
    return replace(snapshot, interactive_count=count_live_interactive(snapshot.elements))
