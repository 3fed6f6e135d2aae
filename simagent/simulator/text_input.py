from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional

from .elements import Element
from .errors import SimAgentError, wrap_error_code
from .focus import FocusResult, find_best_verification_target, find_focused_text_input
from .observation import capture_elements

DEFAULT_CHUNK_SIZE = 4
CHUNK_DELAY_S = 0.06
RECONCILE_SETTLE_S = 0.09
MAX_RECONCILE_ROUNDS = 4

INPUT_MODE_TYPE = "type"
INPUT_MODE_ASCII = "ascii"
INPUT_MODE_PASTE = "paste"
INPUT_MODE_PASTE_ASCII = "paste-ascii"


def ascii_only(text: str) -> str:
    return "".join(ch for ch in text if 32 <= ord(ch) <= 126)


def prepare_typed_text(text: str, *, ascii_mode: bool = False, paste_mode: bool = False) -> tuple[str, str]:
    """Return (text to submit, input mode label)."""
    out = text.strip()
    if ascii_mode:
        out = ascii_only(out)
        if not out.strip():
            raise SimAgentError(code="TYPE_ASCII_EMPTY", message="text became empty after ASCII normalization")

    if paste_mode and ascii_mode:
        mode = INPUT_MODE_PASTE_ASCII
    elif paste_mode:
        mode = INPUT_MODE_PASTE
    elif ascii_mode:
        mode = INPUT_MODE_ASCII
    else:
        mode = INPUT_MODE_TYPE
    return out, mode


def split_into_input_chunks(text: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[str]:
    if not text:
        return []
    if chunk_size <= 0 or len(text) <= chunk_size:
        return [text]
    return [text[i : i + chunk_size] for i in range(0, len(text), chunk_size)]


def _comparable(text: str) -> tuple[str, list[int]]:
    chars: list[str] = []
    positions: list[int] = []
    for i, ch in enumerate(text):
        if ch.isspace():
            continue
        chars.append(ch)
        positions.append(i)
    return "".join(chars), positions


def typed_missing_suffix(intended: str, observed: str) -> tuple[str, bool]:
    """
    Compare what the field shows against what was meant to be typed, ignoring whitespace.

    Returns (missing, comparable). `comparable` is False when `observed` is not a prefix of
    `intended`; otherwise `missing` is the tail of `intended` (original spacing kept) still to type.
    """
    want, positions = _comparable(intended)
    seen, _ = _comparable(observed)
    if len(seen) > len(want) or not want.startswith(seen):
        return "", False
    if len(seen) == len(want):
        return "", True
    return intended[positions[len(seen)] :], True


def normalize_text_for_match(text: str) -> str:
    return "".join(text.split()).lower()


def element_has_typed_text(elem: Element, typed_norm: str) -> bool:
    if not typed_norm:
        return False
    return any(typed_norm in normalize_text_for_match(candidate) for candidate in (elem.value, elem.label))


@dataclass
class TypedTextState:
    intended: str
    chunk_size: int = DEFAULT_CHUNK_SIZE
    observed: str = ""
    rounds: int = 0

    @property
    def comparable(self) -> str:
        return _comparable(self.intended)[0]

    def missing(self) -> tuple[str, bool]:
        return typed_missing_suffix(self.intended, self.observed)


def type_text_in_chunks(device: Any, text: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    chunks = split_into_input_chunks(text, chunk_size)
    for chunk in chunks:
        try:
            device.text(chunk)
        except SimAgentError as e:
            raise wrap_error_code(e, "IDB_UI_FAILED", "text input failed") from e
        if len(chunks) > 1:
            time.sleep(CHUNK_DELAY_S)
    return len(chunks)


def submit_text_input(
    device: Any,
    text: str,
    focused: Optional[FocusResult] = None,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> TypedTextState:
    """
    Type `text` and re-type whatever the injector dropped.

    After the first submission the target field is re-read up to MAX_RECONCILE_ROUNDS times. A
    value that is a whitespace-insensitive prefix of the intended text gets its missing suffix
    resubmitted; anything else is TYPE_INCOMPLETE. Secure fields cannot be read back and are
    accepted as typed.
    """
    state = TypedTextState(intended=text, chunk_size=chunk_size)
    if not text.strip():
        return state
    type_text_in_chunks(device, text, chunk_size)

    target: Optional[Element] = focused.element if focused is not None else None
    if target is None:
        target = find_focused_text_input(capture_elements(device).elements)
    if target is None or target.secure:
        return state

    for attempt in range(1, MAX_RECONCILE_ROUNDS + 1):
        state.rounds = attempt
        time.sleep(RECONCILE_SETTLE_S)
        snapshot = capture_elements(device)
        matched = find_best_verification_target(snapshot.elements, target)
        if matched is None:
            matched = find_focused_text_input(snapshot.elements)
        if matched is None:
            raise SimAgentError(
                code="TYPE_VERIFY_FAILED",
                message="typed text verification target not found",
                details={"intended": text, "attempt": attempt},
            )
        target = matched
        if matched.secure:
            return state

        state.observed = matched.value.strip() or matched.label.strip()
        missing, comparable = state.missing()
        if not comparable:
            raise SimAgentError(
                code="TYPE_INCOMPLETE",
                message="typed text does not match target value prefix",
                details={
                    "intended": text,
                    "observed": state.observed,
                    "attempt": attempt,
                    "elementId": matched.id,
                },
            )
        if not missing:
            return state
        type_text_in_chunks(device, missing, chunk_size)

    missing, _ = state.missing()
    if missing:
        raise SimAgentError(
            code="TYPE_INCOMPLETE",
            message="typed text remains incomplete after retries",
            details={"intended": text, "observed": state.observed, "missing": missing},
        )
    return state


def verify_type_result(device: Any, typed: str, focused: Optional[FocusResult] = None) -> dict[str, Any]:
    """
    Confirm from a fresh snapshot that `typed` landed somewhere.

    The focused target is checked first; a secure field counts as verified when its (masked)
    value changed. Otherwise any element whose label or value contains the text will do.
    """
    snapshot = capture_elements(device)
    typed_norm = normalize_text_for_match(typed)

    if focused is not None:
        target = find_best_verification_target(snapshot.elements, focused.element)
        if target is not None:
            if element_has_typed_text(target, typed_norm):
                return {"elementId": target.id, "label": target.label, "value": target.value}
            value = target.value.strip()
            if target.secure and value and value != focused.element.value.strip():
                return {"elementId": target.id, "label": target.label, "value": target.value}

    for elem in snapshot.elements:
        if element_has_typed_text(elem, typed_norm):
            return {"elementId": elem.id, "label": elem.label, "value": elem.value}

    raise SimAgentError(
        code="TYPE_VERIFY_FAILED",
        message="typed text could not be verified from latest ui tree",
        details={"typed": typed, "interactive": snapshot.interactive_count},
    )
