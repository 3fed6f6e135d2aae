from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from .errors import SimAgentError

ENV_FILE_VAR = "SIMAGENT_ENV_FILE"

_load_attempted = False
_loaded_from: Optional[Path] = None


def dotenv_candidates(cwd: Optional[Path] = None) -> list[Path]:
    """The working directory's .env, then the one at the checkout root."""
    here = (cwd or Path.cwd()).resolve() / ".env"
    # simagent/simulator/env.py -> checkout root is two levels up
    checkout = Path(__file__).resolve().parents[2] / ".env"
    return [here] if here == checkout else [here, checkout]


def parse_dotenv_line(raw_line: str) -> Optional[tuple[str, str]]:
    line = raw_line.strip()
    if not line or line.startswith("#"):
        return None
    if line.startswith("export "):
        line = line[len("export ") :].lstrip()
    key, sep, value = line.partition("=")
    key = key.strip()
    if not sep or not key:
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return key, value[1:-1]
    comment_at = value.find(" #")
    if comment_at >= 0:
        value = value[:comment_at].rstrip()
    return key, value


def load_dotenv(path: str | Path, *, override: bool = False) -> dict[str, str]:
    """
    Apply KEY=VALUE lines from `path` to os.environ.

    Blank lines, `#` comments and a leading `export ` are accepted; values may be quoted, and
    unquoted values may end in ` # comment`. Variables already in the environment win unless
    `override`. Returns the keys that were set.
    """
    dotenv_path = Path(path).expanduser()
    if dotenv_path.is_dir():
        raise SimAgentError(code="IO_ERROR", message=f".env path is a directory: {dotenv_path}")
    try:
        text = dotenv_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SimAgentError(code="IO_ERROR", message=f"read {dotenv_path}: {e}") from e

    loaded: dict[str, str] = {}
    for raw_line in text.splitlines():
        parsed = parse_dotenv_line(raw_line)
        if parsed is None:
            continue
        key, value = parsed
        if not override and key in os.environ:
            continue
        os.environ[key] = value
        loaded[key] = value
    return loaded


def ensure_dotenv_loaded() -> Optional[Path]:
    """
    Load settings from a .env once per process and return the file used, if any.

    $SIMAGENT_ENV_FILE names the file explicitly (and must exist); otherwise the first existing
    file from `dotenv_candidates()` is read.
    """
    global _load_attempted, _loaded_from
    if _load_attempted:
        return _loaded_from
    _load_attempted = True

    explicit = os.environ.get(ENV_FILE_VAR, "").strip()
    if explicit:
        _loaded_from = Path(explicit).expanduser()
        load_dotenv(_loaded_from)
        return _loaded_from
    for candidate in dotenv_candidates():
        if candidate.is_file():
            load_dotenv(candidate)
            _loaded_from = candidate
            break
    return _loaded_from


def env_str(name: str, default: str = "") -> str:
    ensure_dotenv_loaded()
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()
