"""Tests for chunked typing and typed-text reconciliation."""
import sys
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from simagent.simulator.errors import SimAgentError
from simagent.simulator.focus import focus_element_with_retry
from simagent.simulator.observation import capture_elements
from simagent.simulator.stability import all_strings_equal
from simagent.simulator.text_input import (
    prepare_typed_text,
    split_into_input_chunks,
    submit_text_input,
    typed_missing_suffix,
    verify_type_result,
)

from fakes import FakeSimulator


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Skip chunk and settle delays."""
    monkeypatch.setattr(time, "sleep", lambda s: None)


def _focus(sim, id):
    elem = next(e for e in capture_elements(sim) if e.id == id)
    return focus_element_with_retry(sim, elem)


def test_prepare_typed_text_ascii():
    """ASCII mode drops characters outside printable ASCII."""
    assert prepare_typed_text("１２3-abc", ascii_mode=True) == ("3-abc", "ascii")


def test_prepare_typed_text_ascii_empty():
    """Text with nothing left after ASCII filtering is rejected."""
    with pytest.raises(SimAgentError) as exc:
        prepare_typed_text("あいう", ascii_mode=True)
    assert exc.value.code == "TYPE_ASCII_EMPTY"


def test_prepare_typed_text_modes():
    """Paste and ASCII flags combine into one mode label."""
    assert prepare_typed_text(" hi ")[1] == "type"
    assert prepare_typed_text("hi", paste_mode=True)[1] == "paste"
    assert prepare_typed_text("hi", ascii_mode=True, paste_mode=True)[1] == "paste-ascii"
    assert prepare_typed_text(" hi ")[0] == "hi"


def test_all_strings_equal():
    """Equality over every sample."""
    assert all_strings_equal(["aa", "aa", "aa"])
    assert not all_strings_equal(["aa", "bb"])
    assert all_strings_equal([])


def test_split_into_input_chunks():
    """Fixed-size chunks with a short tail."""
    assert split_into_input_chunks("090-0000-0000", 4) == ["090-", "0000", "-000", "0"]
    assert split_into_input_chunks("abc", 4) == ["abc"]
    assert split_into_input_chunks("", 4) == []


def test_typed_missing_suffix():
    """The missing tail of a dropped entry."""
    assert typed_missing_suffix("090-0000-0000", "090-0000-00") == ("00", True)


def test_typed_missing_suffix_exact():
    """Nothing is missing when the field matches."""
    assert typed_missing_suffix("090-0000-0000", "090-0000-0000") == ("", True)


def test_typed_missing_suffix_mismatch():
    """A field that diverges is not comparable."""
    assert typed_missing_suffix("090-0000-0000", "091-0000")[1] is False


def test_typed_missing_suffix_ignores_spaces():
    """Whitespace inserted by the field does not count."""
    assert typed_missing_suffix("090-0000-0000", "090 -0000-00") == ("00", True)


def test_submit_retypes_dropped_suffix():
    """Characters dropped by the injector are resubmitted."""
    sim = FakeSimulator()
    focused = _focus(sim, "email")
    sim.truncate_at = 10

    state = submit_text_input(sim, "hello@example.com", focused)

    assert sim.find("email")["value"] == "hello@example.com"
    assert state.rounds == 2
    assert sim.texts == ["hell", "o@ex", "ampl", "e.co", "m", "ple.", "com"]


def test_submit_complete_on_first_read():
    """A clean entry needs a single read-back."""
    sim = FakeSimulator()
    state = submit_text_input(sim, "abc", _focus(sim, "email"))

    assert state.rounds == 1
    assert state.observed == "abc"


def test_submit_rejects_diverging_value():
    """A field that rewrote the text is reported as incomplete."""
    sim = FakeSimulator()
    focused = _focus(sim, "email")
    sim.rewrite_value = str.upper

    with pytest.raises(SimAgentError) as exc:
        submit_text_input(sim, "abc", focused)
    assert exc.value.code == "TYPE_INCOMPLETE"
    assert exc.value.details["observed"] == "ABC"


def test_submit_skips_reconcile_for_secure_fields():
    """Secure fields cannot be read back."""
    sim = FakeSimulator()
    state = submit_text_input(sim, "hunter22", _focus(sim, "password"))

    assert state.rounds == 0
    assert sim.texts == ["hunt", "er22"]


def test_submit_finds_focused_field_without_focus_result():
    """Without a focus result the currently focused field is reconciled."""
    sim = FakeSimulator()
    sim.focused_id = "email"
    sim.truncate_at = 2

    state = submit_text_input(sim, "abcdef")
    assert sim.find("email")["value"] == "abcdef"
    assert state.rounds == 2


def test_verify_type_result():
    """Verification reads the text back from the focused field."""
    sim = FakeSimulator()
    focused = _focus(sim, "email")
    submit_text_input(sim, "a b", focused)

    result = verify_type_result(sim, "a b", focused)
    assert result["elementId"] == "email"


def test_verify_type_result_fails_when_text_missing():
    """Text that is nowhere in the tree fails verification."""
    sim = FakeSimulator()
    with pytest.raises(SimAgentError) as exc:
        verify_type_result(sim, "not there")
    assert exc.value.code == "TYPE_VERIFY_FAILED"
