from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from .elements import Element, ElementSet, NormalizeOptions, normalize_elements
from .errors import SimAgentError, usage_error
from .observation import read_snapshot

MIN_STABLE_SAMPLES = 2


@dataclass(frozen=True)
class UISample:
    raw: Any
    elements: ElementSet
    hash: str


def _flag(value: bool) -> str:
    return "true" if value else "false"


def hash_element_set(elements: Sequence[Element]) -> str:
    """
    Fingerprint of the parts of an element set that matter for acting on it.

    Frames are rounded to 0.1pt so sub-pixel layout jitter does not count as a change.
    """
    h = hashlib.sha256()
    for elem in elements:
        line = "|".join(
            [
                elem.id,
                elem.role.strip().lower(),
                elem.label.strip(),
                elem.value.strip(),
                f"{elem.frame.x:.1f}",
                f"{elem.frame.y:.1f}",
                f"{elem.frame.w:.1f}",
                f"{elem.frame.h:.1f}",
                _flag(elem.enabled),
                _flag(elem.visible),
                _flag(elem.offscreen),
            ]
        )
        h.update((line + "\n").encode("utf-8"))
    return h.hexdigest()


def all_strings_equal(values: Sequence[str]) -> bool:
    if len(values) <= 1:
        return True
    return all(v == values[0] for v in values[1:])


def capture_ui_sample(device: Any, options: Optional[NormalizeOptions] = None) -> UISample:
    """Snapshot + normalize + hash. Unparseable output is kept verbatim under {"raw": ...}."""
    stdout = read_snapshot(device)
    try:
        raw: Any = json.loads(stdout)
    except json.JSONDecodeError:
        raw = {"raw": stdout}
    elements = normalize_elements(raw, options or NormalizeOptions())
    return UISample(raw=raw, elements=elements, hash=hash_element_set(elements.elements))


def capture_stable_ui_samples(
    device: Any,
    *,
    samples: int,
    interval_s: float,
    options: Optional[NormalizeOptions] = None,
) -> list[UISample]:
    """
    Take `samples` snapshots `interval_s` apart and require them all to hash the same.

    Raises FRAME_UNSTABLE with every hash when any two differ.
    """
    if samples < MIN_STABLE_SAMPLES:
        raise usage_error(f"stable sampling needs at least {MIN_STABLE_SAMPLES} samples", {"samples": samples})

    out: list[UISample] = []
    for i in range(samples):
        out.append(capture_ui_sample(device, options))
        if i + 1 < samples and interval_s > 0:
            time.sleep(interval_s)

    hashes = [s.hash for s in out]
    if not all_strings_equal(hashes):
        raise SimAgentError(
            code="FRAME_UNSTABLE",
            message="ui tree changed during stable sampling",
            details={"hashes": hashes, "samples": samples, "interval": f"{int(round(interval_s * 1000))}ms"},
        )
    return out
