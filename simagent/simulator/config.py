from __future__ import annotations

import json
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .elements import Element, Transform
from .env import env_str
from .errors import SimAgentError, wrap_error

DEFAULT_TIMEOUT = "10s"

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def load_json_file(path: str | Path) -> dict[str, Any]:
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"JSON file not found: {file_path}")
    if file_path.is_dir():
        raise IsADirectoryError(f"Expected a JSON file but found a directory: {file_path}")

    raw = file_path.read_text(encoding="utf-8")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {file_path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Expected top-level JSON object in {file_path}")
    return data


def require_key(obj: dict[str, Any], key: str, *, context: str) -> Any:
    if key not in obj:
        raise ValueError(f"Missing required key '{key}' in {context}")
    return obj[key]


def write_json_file(path: str | Path, payload: Any) -> Path:
    file_path = Path(path)
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    except OSError as e:
        raise wrap_error("IO_ERROR", f"failed to write {file_path}", e) from e
    return file_path


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Accepts bare numbers (seconds) and Go-style strings such as "250ms", "1.5s" or "1m30s".
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"invalid duration: {value!r}")

    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


@dataclass(frozen=True)
class Settings:
    config_dir: Path
    artifacts_dir: Path
    timeout_s: float
    target: str
    idb_bin: str
    xcrun_bin: str


def load_settings() -> Settings:
    timeout_raw = env_str("SIMAGENT_TIMEOUT", DEFAULT_TIMEOUT)
    try:
        timeout_s = parse_duration(timeout_raw)
    except ValueError as e:
        raise SimAgentError(code="USAGE", message=f"SIMAGENT_TIMEOUT is invalid: {timeout_raw}") from e
    return Settings(
        config_dir=Path(env_str("SIMAGENT_CONFIG_DIR", str(Path.home() / ".config" / "simagent"))).expanduser(),
        artifacts_dir=Path(
            env_str("SIMAGENT_ARTIFACTS_DIR", str(Path(tempfile.gettempdir()) / "simagent"))
        ).expanduser(),
        timeout_s=timeout_s,
        target=env_str("SIMAGENT_TARGET"),
        idb_bin=env_str("SIMAGENT_IDB_BIN", "idb"),
        xcrun_bin=env_str("SIMAGENT_XCRUN_BIN", "xcrun"),
    )


def _read_state_file(path: Path) -> Optional[dict[str, Any]]:
    if not path.exists():
        return None
    try:
        return load_json_file(path)
    except (OSError, ValueError) as e:
        raise wrap_error("IO_ERROR", f"failed to read {path}", e) from e


def load_default_target(config_dir: Path) -> Optional[dict[str, Any]]:
    data = _read_state_file(config_dir / "config.json") or {}
    target = data.get("defaultTarget")
    if not isinstance(target, dict) or not str(target.get("udid") or "").strip():
        return None
    return target


def save_default_target(config_dir: Path, target: dict[str, Any]) -> Path:
    path = config_dir / "config.json"
    data = _read_state_file(path) or {}
    data["defaultTarget"] = target
    return write_json_file(path, data)


@dataclass(frozen=True)
class LastFrame:
    out_dir: str
    target: str
    created_at: str
    artifacts: dict[str, str]

    @property
    def elements_path(self) -> str:
        return self.artifacts.get("elements", "")

    @property
    def transform_path(self) -> str:
        return self.artifacts.get("transform", "")

    def to_dict(self) -> dict[str, Any]:
        return {
            "outDir": self.out_dir,
            "target": self.target,
            "createdAt": self.created_at,
            "artifacts": dict(self.artifacts),
        }


def save_last_frame(config_dir: Path, *, out_dir: Path, target: str, artifacts: dict[str, str]) -> LastFrame:
    frame = LastFrame(
        out_dir=str(out_dir),
        target=target,
        created_at=datetime.now(timezone.utc).isoformat(),
        artifacts=artifacts,
    )
    write_json_file(config_dir / "last_frame.json", frame.to_dict())
    return frame


def load_last_frame(config_dir: Path) -> LastFrame:
    data = _read_state_file(config_dir / "last_frame.json")
    if data is None:
        raise SimAgentError(code="NO_LAST_FRAME", message="no last frame found; run `simagent frame` first")
    artifacts = data.get("artifacts")
    return LastFrame(
        out_dir=str(data.get("outDir") or ""),
        target=str(data.get("target") or ""),
        created_at=str(data.get("createdAt") or ""),
        artifacts={str(k): str(v) for k, v in artifacts.items()} if isinstance(artifacts, dict) else {},
    )


def load_elements_file(path: str | Path) -> list[Element]:
    try:
        data = load_json_file(path)
        rows = require_key(data, "elements", context=str(path))
    except (OSError, ValueError) as e:
        raise wrap_error("IO_ERROR", f"failed to read elements from {path}", e) from e
    if not isinstance(rows, list):
        raise SimAgentError(code="IO_ERROR", message=f"'elements' must be a list in {path}")
    return [Element.from_dict(row) for row in rows if isinstance(row, dict)]


def load_elements_and_transform(
    config_dir: Path, from_path: str = ""
) -> tuple[list[Element], Optional[Transform]]:
    """
    Load the cached element set plus its transform.

    `from_path` points at an elements.json; otherwise the last recorded frame is used. The
    transform is read from transform.json beside the elements file and is None when missing.
    """
    if from_path:
        elements_path = Path(from_path)
        transform_path = elements_path.parent / "transform.json"
    else:
        frame = load_last_frame(config_dir)
        if not frame.elements_path:
            raise SimAgentError(
                code="NO_LAST_FRAME",
                message="last frame has no elements; run `simagent frame` with --ui",
            )
        elements_path = Path(frame.elements_path)
        transform_path = Path(frame.transform_path) if frame.transform_path else elements_path.parent / "transform.json"

    elements = load_elements_file(elements_path)
    if not transform_path.exists():
        return elements, None
    try:
        transform = Transform.from_dict(load_json_file(transform_path))
    except (OSError, ValueError) as e:
        raise wrap_error("IO_ERROR", f"failed to read transform from {transform_path}", e) from e
    return elements, transform
