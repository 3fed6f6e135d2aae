"""Tests for verified UI actions."""
import sys
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from simagent.simulator import actions
from simagent.simulator.elements import Transform
from simagent.simulator.errors import SimAgentError
from simagent.simulator.observation import capture_elements
from simagent.simulator.selectors import SelectorQuery

from fakes import FakeSimulator, app_root, button


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Skip settle delays."""
    monkeypatch.setattr(time, "sleep", lambda s: None)


@pytest.fixture
def sim():
    """Login screen simulator."""
    return FakeSimulator()


def test_resolve_prefers_cached_elements(sim):
    """A hit in the cached frame does not need a live snapshot."""
    cached = list(capture_elements(sim))
    calls = sim.describe_calls

    resolution = actions.resolve_element(sim, SelectorQuery(label="Next"), cached)

    assert resolution.element.id == "next"
    assert resolution.scan == "cache"
    assert resolution.by == "label"
    assert sim.describe_calls == calls


def test_resolve_falls_back_to_live_snapshot(sim):
    """A cache miss is retried against the live tree."""
    stale = list(capture_elements(FakeSimulator([app_root(), button("old", "Old", x=0, y=100)])))
    resolution = actions.resolve_element(sim, SelectorQuery(id="next"), stale)

    assert resolution.element.id == "next"
    assert resolution.scan == "live"


def test_resolve_uses_system_fallback():
    """A missing confirm label falls back to the nav bar control."""
    sim = FakeSimulator([app_root(), button("cancel", "Cancel", x=16, y=50), button("save", "Save", x=260, y=50)])
    resolution = actions.resolve_element(sim, SelectorQuery(label="Done"))

    assert resolution.element.id == "save"
    assert resolution.by == "system-fallback"


def test_resolve_miss_raises_resolver_error(sim):
    """With no fallback the direct miss is raised."""
    with pytest.raises(SimAgentError) as exc:
        actions.resolve_element(sim, SelectorQuery(label="Profile"))
    assert exc.value.code == "ELEMENT_NOT_FOUND"


def test_resolve_attaches_live_error_to_cache_miss(sim):
    """When the live snapshot fails the cache miss carries the live error."""
    cached = list(capture_elements(sim))
    sim.script = [SimAgentError(code="TIMEOUT", message="command timed out")]

    with pytest.raises(SimAgentError) as exc:
        actions.resolve_element(sim, SelectorQuery(label="Profile"), cached)
    assert exc.value.code == "ELEMENT_NOT_FOUND"
    assert exc.value.details["liveError"]["code"] == "IDB_UI_FAILED"


def test_tap_by_label(sim):
    """Selector taps hit the element center."""
    result = actions.tap(sim, query=SelectorQuery(label="next"))

    assert result["by"] == "label"
    assert result["elementId"] == "next"
    assert sim.taps == [(196.0, 722.0)]


def test_tap_pixels_use_transform(sim):
    """Pixel coordinates are divided by the frame scale."""
    result = actions.tap(sim, x=300, y=600, unit="px", transform=Transform(393, 852, 1179, 2556, 3.0))

    assert result["by"] == "coord"
    assert result["targetPt"] == {"x": 100.0, "y": 200.0}


def test_tap_pixels_without_transform(sim):
    """Pixel taps need a transform."""
    with pytest.raises(SimAgentError) as exc:
        actions.tap(sim, x=1, y=1, unit="px")
    assert exc.value.code == "COORD_TRANSFORM_FAILED"


def test_tap_rejects_selector_and_coordinates(sim):
    """Coordinates and a selector are mutually exclusive."""
    with pytest.raises(SimAgentError) as exc:
        actions.tap(sim, query=SelectorQuery(index=1), x=1, y=1)
    assert exc.value.code == "USAGE"


def test_type_into_field(sim):
    """Typing into a field focuses, types and reconciles."""
    result = actions.type_text(sim, "me@example.com", into=SelectorQuery(label="Email"), verify=True)

    assert result["elementId"] == "email"
    assert result["focusAttempts"] == 1
    assert result["reconcileRounds"] == 1
    assert result["verify"]["elementId"] == "email"
    assert sim.find("email")["value"] == "me@example.com"


def test_type_replace_clears_first(sim):
    """Replace clears the old value before typing."""
    sim.find("email")["value"] = "old@example.com"
    result = actions.type_text(sim, "new@example.com", into=SelectorQuery(id="email"), replace=True)

    assert result["cleared"] == 24
    assert result["replace"] is True
    assert sim.find("email")["value"] == "new@example.com"


def test_type_ascii_mode(sim):
    """ASCII mode filters the text before typing."""
    result = actions.type_text(sim, "１２3abc", into=SelectorQuery(id="email"), ascii_mode=True)

    assert result["text"] == "3abc"
    assert result["inputMode"] == "ascii"
    assert sim.find("email")["value"] == "3abc"


def test_type_usage_errors(sim):
    """Replace needs a target, and focus retries must be positive."""
    with pytest.raises(SimAgentError) as replace:
        actions.type_text(sim, "x", replace=True)
    assert replace.value.message == "--replace requires --into"

    with pytest.raises(SimAgentError) as retries:
        actions.type_text(sim, "x", focus_retries=0)
    assert retries.value.code == "USAGE"

    with pytest.raises(SimAgentError) as empty:
        actions.type_text(sim, "   ")
    assert empty.value.message == "text is required"


def test_clear_action(sim):
    """Clear sends at least the requested backspaces."""
    sim.find("email")["value"] = "abc"
    result = actions.clear(sim, SelectorQuery(id="email"))

    assert result["backspaces"] == 72
    assert sim.find("email")["value"] == ""


def test_swipe_from_center(sim):
    """Swipes start at the screen center by default."""
    result = actions.swipe(sim, "up")

    assert result["fromPt"] == {"x": 196.0, "y": 426.0}
    assert result["toPt"] == {"x": 196.0, "y": 206.0}
    assert sim.swipes == [(196.0, 426.0, 196.0, 206.0)]


def test_swipe_from_element(sim):
    """A selector moves the swipe start to the element center."""
    result = actions.swipe(sim, "left", query=SelectorQuery(id="next"), distance=100)
    assert result["fromPt"] == {"x": 196.0, "y": 722.0}
    assert result["toPt"] == {"x": 96.0, "y": 722.0}


def test_swipe_rejects_direction(sim):
    """Only the four directions are allowed."""
    with pytest.raises(SimAgentError) as exc:
        actions.swipe(sim, "sideways")
    assert exc.value.code == "USAGE"


def test_press_button(sim):
    """Button names are upper-cased."""
    assert actions.press_button(sim, "home")["button"] == "HOME"
    assert sim.buttons == ["HOME"]


def test_wait_treats_negative_minimum_as_unset(sim):
    """A negative interactive minimum means no count condition."""
    with pytest.raises(SimAgentError) as exc:
        actions.wait(sim, interactive_min=-1)
    assert exc.value.code == "USAGE"

