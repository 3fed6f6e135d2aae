from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .config import load_default_target
from .errors import SimAgentError, wrap_error, wrap_error_code
from .idb_client import run_command


@dataclass(frozen=True)
class SimTarget:
    name: str
    udid: str
    runtime: str
    state: str
    available: bool

    @property
    def booted(self) -> bool:
        return self.state.lower() == "booted"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "udid": self.udid,
            "runtime": self.runtime,
            "state": self.state,
            "available": self.available,
        }


def parse_simctl_devices(stdout: str) -> list[SimTarget]:
    try:
        payload = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise wrap_error("SIMCTL_FAILED", "invalid simctl devices json", e) from e

    devices = payload.get("devices") if isinstance(payload, dict) else None
    targets: list[SimTarget] = []
    for runtime, rows in (devices or {}).items():
        if not isinstance(rows, list):
            continue
        for row in rows:
            if not isinstance(row, dict):
                continue
            targets.append(
                SimTarget(
                    name=str(row.get("name") or ""),
                    udid=str(row.get("udid") or ""),
                    runtime=str(runtime),
                    state=str(row.get("state") or ""),
                    available=bool(row.get("isAvailable")) or bool(row.get("available")),
                )
            )

    targets.sort(key=lambda t: (not t.booted, t.runtime, t.name, t.udid))
    return targets


def list_targets(*, xcrun_bin: str = "xcrun", timeout_s: float = 10.0) -> list[SimTarget]:
    try:
        result = run_command([xcrun_bin, "simctl", "list", "devices", "--json"], timeout_s=timeout_s)
    except SimAgentError as e:
        raise wrap_error_code(e, "SIMCTL_FAILED", "failed to list simulators") from e
    return parse_simctl_devices(result.stdout)


def pick_target(targets: list[SimTarget], spec: str) -> SimTarget:
    wanted = spec.strip() or "booted"
    if wanted == "booted":
        for target in targets:
            if target.booted:
                return target
        raise SimAgentError(code="NO_BOOTED_DEVICE", message="no booted simulator found")

    for target in targets:
        if target.udid.lower() == wanted.lower():
            return target
    raise SimAgentError(code="TARGET_NOT_FOUND", message=f"target not found: {wanted}")


def resolve_target(
    spec: str,
    *,
    config_dir: Optional[Path] = None,
    xcrun_bin: str = "xcrun",
    timeout_s: float = 10.0,
) -> SimTarget:
    """
    Resolve `booted` or a UDID to a simulator. An empty spec falls back to the saved default
    target, then to `booted`.
    """
    wanted = spec.strip()
    if not wanted and config_dir is not None:
        default = load_default_target(config_dir)
        if default is not None:
            wanted = str(default["udid"]).strip()
    return pick_target(list_targets(xcrun_bin=xcrun_bin, timeout_s=timeout_s), wanted)
