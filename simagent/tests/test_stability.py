"""Tests for stable ui sampling."""
import json
import sys
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from simagent.simulator.errors import SimAgentError
from simagent.simulator.stability import capture_stable_ui_samples, capture_ui_sample, hash_element_set

from fakes import FakeSimulator, button, login_screen


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Skip sampling intervals."""
    monkeypatch.setattr(time, "sleep", lambda s: None)


def test_stable_samples_match():
    """An unchanged screen yields identical hashes."""
    samples = capture_stable_ui_samples(FakeSimulator(), samples=3, interval_s=0.25)

    assert len(samples) == 3
    assert len({s.hash for s in samples}) == 1


def test_unstable_samples_raise_with_hashes():
    """A screen that changes between samples is reported with every hash."""
    sim = FakeSimulator()
    moved = login_screen()[:-1] + [button("next", "Next", x=136, y=650)]
    sim.script = [login_screen(), moved]

    with pytest.raises(SimAgentError) as exc:
        capture_stable_ui_samples(sim, samples=3, interval_s=0.25)

    err = exc.value
    assert err.code == "FRAME_UNSTABLE"
    assert len(err.details["hashes"]) == 3
    assert err.details["interval"] == "250ms"


def test_stable_sampling_needs_two_samples():
    """One sample cannot show stability."""
    with pytest.raises(SimAgentError) as exc:
        capture_stable_ui_samples(FakeSimulator(), samples=1, interval_s=0)
    assert exc.value.code == "USAGE"


def test_hash_ignores_subpixel_jitter():
    """Frames are compared at 0.1pt."""
    a = capture_ui_sample(FakeSimulator([button("b", "Go", x=10.01, y=20)]))
    b = capture_ui_sample(FakeSimulator([button("b", "Go", x=10.02, y=20)]))
    c = capture_ui_sample(FakeSimulator([button("b", "Go", x=10.5, y=20)]))

    assert a.hash == b.hash
    assert a.hash != c.hash
    assert hash_element_set(a.elements.elements) == a.hash


def test_unparseable_sample_is_kept_raw():
    """Non-JSON output is preserved instead of failing the sample."""
    sim = FakeSimulator()
    sim.script = ["not json"]
    sample = capture_ui_sample(sim)

    assert sample.raw == {"raw": "not json"}
    assert len(sample.elements) == 0


def test_sample_raw_is_the_parsed_tree():
    """The raw tree is kept for ui.raw.json."""
    sim = FakeSimulator()
    sample = capture_ui_sample(sim)
    assert sample.raw == json.loads(json.dumps(sim.tree()))
