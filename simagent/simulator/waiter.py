from __future__ import annotations

import time
from typing import Any, Optional, Sequence

from .elements import Element
from .errors import SimAgentError, render_error, usage_error
from .observation import capture_elements

DEFAULT_WAIT_TIMEOUT_S = 20.0
DEFAULT_WAIT_INTERVAL_S = 0.7
MAX_MATCH_SAMPLES = 3


def matching_text_samples(elements: Sequence[Element], needle: str, limit: int = MAX_MATCH_SAMPLES) -> list[str]:
    if not needle:
        return []
    out: list[str] = []
    for elem in elements:
        if not elem.enabled:
            continue
        if needle in elem.searchable_text():
            out.append(f"{elem.label} {elem.value}".strip())
            if len(out) >= limit:
                break
    return out


def wait_for_condition(
    device: Any,
    *,
    has_text: str = "",
    interactive_min: Optional[int] = None,
    timeout_s: float = DEFAULT_WAIT_TIMEOUT_S,
    interval_s: float = DEFAULT_WAIT_INTERVAL_S,
) -> dict[str, Any]:
    """
    Poll fresh snapshots until every given condition holds.

    Conditions: some enabled element's text contains `has_text` (case-insensitive) and at least
    `interactive_min` enabled, visible, interactive elements exist. Snapshot failures are recorded
    and polling continues. Raises WAIT_TIMEOUT once `timeout_s` has elapsed.
    """
    needle = has_text.strip().lower()
    if not needle and interactive_min is None:
        raise usage_error("wait requires --has-text or --interactive-min")
    if timeout_s <= 0:
        raise usage_error("wait timeout must be > 0")
    if interval_s <= 0:
        raise usage_error("wait interval must be > 0")

    started = time.monotonic()
    attempts = 0
    last_interactive = 0
    last_matches: list[str] = []
    last_error: Optional[SimAgentError] = None

    while True:
        attempts += 1
        try:
            snapshot = capture_elements(device)
        except SimAgentError as e:
            last_error = e
        else:
            last_error = None
            last_interactive = snapshot.interactive_count
            last_matches = matching_text_samples(snapshot.elements, needle)
            interactive_ok = interactive_min is None or snapshot.interactive_count >= interactive_min
            text_ok = not needle or bool(last_matches)
            if interactive_ok and text_ok:
                result: dict[str, Any] = {
                    "ok": True,
                    "action": "wait",
                    "attempts": attempts,
                    "elapsedMs": int((time.monotonic() - started) * 1000),
                    "interactive": snapshot.interactive_count,
                }
                if needle:
                    result["hasText"] = has_text
                    result["matches"] = last_matches
                return result

        elapsed = time.monotonic() - started
        if elapsed >= timeout_s:
            details: dict[str, Any] = {
                "attempts": attempts,
                "elapsedMs": int(elapsed * 1000),
                "interactive": last_interactive,
                "interactiveMin": interactive_min if interactive_min is not None else -1,
            }
            if needle:
                details["hasText"] = has_text
                details["lastMatches"] = last_matches
            if last_error is not None:
                details["lastError"] = render_error(last_error)
            raise SimAgentError(code="WAIT_TIMEOUT", message="wait condition not met before timeout", details=details)
        time.sleep(interval_s)
