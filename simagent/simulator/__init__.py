"""
iOS simulator UI automation engine built on idb and simctl.

Each action works from a fresh accessibility snapshot and verifies its own effect:
- selectors resolve against normalized, indexed elements (with fallbacks after a live miss)
- focus is confirmed from the next snapshot before typing
- typed text is read back and any dropped suffix is retyped
"""

from .actions import clear, press_button, resolve_element, swipe, tap, type_text, wait
from .errors import SimAgentError, error_envelope, render_error
from .flow_runner import load_flow, run_flow
from .idb_client import IdbClient

__all__ = [
    "IdbClient",
    "SimAgentError",
    "clear",
    "error_envelope",
    "load_flow",
    "press_button",
    "render_error",
    "resolve_element",
    "run_flow",
    "swipe",
    "tap",
    "type_text",
    "wait",
]
