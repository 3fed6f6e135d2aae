"""Tests for focus verification and field clearing."""
import sys
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from simagent.simulator.elements import Element, FrameRect
from simagent.simulator.errors import SimAgentError
from simagent.simulator.focus import (
    can_trust_focus,
    clear_element,
    clear_focused_input,
    clear_point_for_element,
    estimate_clear_backspaces,
    find_best_verification_target,
    focus_element_with_retry,
    focus_point_for_element,
)
from simagent.simulator.observation import capture_elements

from fakes import FakeSimulator


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Skip settle delays."""
    monkeypatch.setattr(time, "sleep", lambda s: None)


def _live(sim, id):
    return next(e for e in capture_elements(sim) if e.id == id)


def _field(id, *, focused=False, x=20.0):
    return Element(index=1, id=id, role="TextField", label="", value="", frame=FrameRect(x, 300, 353, 44), focused=focused)


def test_focus_point_leans_left_for_text_fields():
    """Text fields are tapped near the leading edge, buttons at the center."""
    field = _field("email")
    point = focus_point_for_element(field)
    assert point.x == pytest.approx(20 + 28)
    assert point.y == pytest.approx(322)

    btn = Element(index=2, id="b", role="Button", label="Go", value="", frame=FrameRect(0, 0, 100, 40))
    assert focus_point_for_element(btn).x == pytest.approx(50)


def test_estimate_clear_backspaces():
    """Estimates scale with the current value length."""
    assert estimate_clear_backspaces("") == 72
    assert estimate_clear_backspaces("abc") == 24
    assert estimate_clear_backspaces("x" * 20) == 32
    assert estimate_clear_backspaces("x" * 500) == 220


def test_can_trust_focus():
    """Focus elsewhere is untrusted; no focus reported at all is trusted."""
    target = _field("email")
    assert can_trust_focus([_field("email", focused=True)], target)
    assert not can_trust_focus([_field("password", focused=True)], target)
    assert can_trust_focus([_field("email"), _field("password")], target)


def test_focus_succeeds_on_first_attempt():
    """Focus is confirmed from the next snapshot."""
    sim = FakeSimulator()
    result = focus_element_with_retry(sim, _live(sim, "email"))

    assert result.attempts == 1
    assert result.element.id == "email"
    assert result.history[-1].state.value == "trusted"
    assert sim.focused_id == "email"


def test_focus_trusted_when_nothing_reports_focus():
    """Trees without focus flags do not block typing."""
    sim = FakeSimulator()
    sim.report_focus = False
    assert focus_element_with_retry(sim, _live(sim, "email")).attempts == 1


def test_focus_exhausts_retries_when_focus_lands_elsewhere():
    """Focus stolen by a neighbour fails after every attempt is used."""
    sim = FakeSimulator()
    sim.focus_redirect = {"email": "password"}

    with pytest.raises(SimAgentError) as exc:
        focus_element_with_retry(sim, _live(sim, "email"), retries=3)

    err = exc.value
    assert err.code == "TYPE_FOCUS_FAILED"
    assert err.details["attempts"] == 3
    assert err.details["state"] == "exhausted"
    assert err.details["reason"] == "focus moved to different element"
    assert len(err.details["history"]) == 3
    assert len(sim.taps) == 3


def test_focus_recovers_after_tap_failure():
    """A failed tap uses up one attempt and the next one can still succeed."""
    sim = FakeSimulator()
    sim.fail_taps = 1
    result = focus_element_with_retry(sim, _live(sim, "email"))

    assert result.attempts == 2
    assert result.history[0].state.value == "tap_sent"


def test_clear_focused_input_falls_back_to_single_keys():
    """When key-sequence is rejected each backspace is sent on its own."""
    sim = FakeSimulator()
    sim.fail_key_sequence = True
    sim.focused_id = "email"
    sim.find("email")["value"] = "abc"

    assert clear_focused_input(sim, 5) == 5
    assert sim.keys == 5
    assert sim.find("email")["value"] == ""


def test_clear_element_uses_estimate():
    """Clearing taps the trailing edge and sends enough backspaces for the value."""
    sim = FakeSimulator()
    sim.find("email")["value"] = "old@example.com"
    focused = focus_element_with_retry(sim, _live(sim, "email"))

    assert clear_element(sim, focused) == 24
    assert sim.find("email")["value"] == ""
    assert sim.taps[-1][0] > 300


def test_clear_point_trailing_edge_only_for_text_fields():
    """Fields are cleared from the trailing edge; other roles are tapped at the center."""
    assert clear_point_for_element(_field("email")).x == pytest.approx(20 + 353 - 24)

    btn = Element(index=2, id="b", role="Button", label="Go", value="", frame=FrameRect(0, 0, 100, 40))
    point = clear_point_for_element(btn)
    assert (point.x, point.y) == (pytest.approx(50), pytest.approx(20))


def test_verification_target_nearest_to_center():
    """Without an id the nearest text input is measured from the target's center."""
    target = _field("")
    near_edge = Element(index=1, id="a", role="TextField", label="", value="", frame=FrameRect(40, 300, 40, 44))
    near_center = Element(index=2, id="b", role="TextField", label="", value="", frame=FrameRect(180, 300, 40, 44))

    assert find_best_verification_target([near_edge, near_center], target).id == "b"
