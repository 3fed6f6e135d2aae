from __future__ import annotations

from typing import Any, Optional


class SimAgentError(RuntimeError):
    """
    Typed failure carried through every layer of the automation engine.

    `code` is a stable machine-readable identifier (e.g. ELEMENT_NOT_FOUND), `details` is a
    JSON-serializable mapping with whatever context the failing site had on hand.
    """

    def __init__(self, *, code: str, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


def usage_error(message: str, details: Optional[dict[str, Any]] = None) -> SimAgentError:
    return SimAgentError(code="USAGE", message=message, details=details)


def wrap_error(code: str, message: str, err: BaseException) -> SimAgentError:
    return SimAgentError(code=code, message=message, details={"cause": str(err)})


def to_error(err: BaseException) -> SimAgentError:
    if isinstance(err, SimAgentError):
        return err
    return SimAgentError(code="UNKNOWN", message=str(err) or type(err).__name__)


def wrap_error_code(err: BaseException, code: str, message: str) -> SimAgentError:
    """
    Re-code a lower-level failure for a known call site.

    A failure that already carries `code` passes through untouched; otherwise the original code and
    message survive as `causeCode` / `causeMessage` next to the original details.
    """
    inner = to_error(err)
    if inner.code == code:
        return inner
    details: dict[str, Any] = dict(inner.details or {})
    details["causeCode"] = inner.code
    details["causeMessage"] = inner.message
    return SimAgentError(code=code, message=message, details=details)


def render_error(err: BaseException) -> dict[str, Any]:
    app_err = to_error(err)
    out: dict[str, Any] = {"code": app_err.code, "message": app_err.message}
    if app_err.details:
        out["details"] = app_err.details
    return out


def error_envelope(err: BaseException) -> dict[str, Any]:
    return {"ok": False, "error": render_error(err)}
