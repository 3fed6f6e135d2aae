from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .errors import SimAgentError, wrap_error_code

BACKSPACE_KEY_CODE = "42"


@dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    stdout: str
    stderr: str
    exit_code: int


def run_command(args: Sequence[str], *, timeout_s: float) -> CommandResult:
    """
    Run an external tool and map every failure mode onto a typed error.

    Non-zero exits raise COMMAND_FAILED, a missing binary COMMAND_NOT_FOUND, and an expired
    timeout TIMEOUT. Nothing is retried here.
    """
    argv = [str(a) for a in args]
    display = " ".join(argv)
    try:
        proc = subprocess.run(argv, capture_output=True, text=True, timeout=timeout_s)
    except subprocess.TimeoutExpired as e:
        stderr = e.stderr.decode("utf-8", "replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
        raise SimAgentError(
            code="TIMEOUT",
            message=f"command timed out: {display}",
            details={"stderr": stderr.strip(), "timeoutMs": int(timeout_s * 1000)},
        ) from e
    except FileNotFoundError as e:
        raise SimAgentError(
            code="COMMAND_NOT_FOUND",
            message=f"command not found: {argv[0]}",
            details={"command": display},
        ) from e

    if proc.returncode != 0:
        raise SimAgentError(
            code="COMMAND_FAILED",
            message=f"command failed ({proc.returncode}): {display}",
            details={
                "stderr": proc.stderr.strip(),
                "stdout": proc.stdout.strip(),
                "exitCode": proc.returncode,
            },
        )
    return CommandResult(args=tuple(argv), stdout=proc.stdout, stderr=proc.stderr, exit_code=proc.returncode)


def coord_arg(value: float) -> str:
    return str(int(round(value)))


def ensure_binary(name: str) -> str:
    path = shutil.which(name)
    if not path:
        raise SimAgentError(
            code="IDB_NOT_FOUND",
            message=f"{name} is not on PATH; install fb-idb and idb-companion",
            details={"binary": name},
        )
    return path


class IdbClient:
    """
    Blocking wrapper around `idb ui ...` and `xcrun simctl` for one simulator.

    Every call is bounded by `timeout_s`. Methods raise SimAgentError with the transport code
    (COMMAND_FAILED / COMMAND_NOT_FOUND / TIMEOUT); callers re-code them for their call site.
    """

    def __init__(
        self,
        udid: str,
        *,
        timeout_s: float = 10.0,
        idb_bin: str = "idb",
        xcrun_bin: str = "xcrun",
    ) -> None:
        if not udid:
            raise ValueError("udid is required")
        self.udid = udid
        self.timeout_s = timeout_s
        self.idb_bin = idb_bin
        self.xcrun_bin = xcrun_bin

    def idb(self, *args: str) -> CommandResult:
        return run_command([self.idb_bin, *args, "--udid", self.udid], timeout_s=self.timeout_s)

    def simctl(self, *args: str) -> CommandResult:
        return run_command([self.xcrun_bin, "simctl", *args], timeout_s=self.timeout_s)

    def describe_all(self) -> str:
        """Raw `describe-all --json` output; parsing is left to the caller."""
        return self.idb("ui", "describe-all", "--json").stdout

    def tap(self, x: float, y: float) -> None:
        self.idb("ui", "tap", coord_arg(x), coord_arg(y))

    def text(self, text: str) -> None:
        self.idb("ui", "text", text)

    def swipe(self, x1: float, y1: float, x2: float, y2: float) -> None:
        self.idb("ui", "swipe", coord_arg(x1), coord_arg(y1), coord_arg(x2), coord_arg(y2))

    def key(self, code: str) -> None:
        self.idb("ui", "key", code)

    def key_sequence(self, codes: Sequence[str]) -> None:
        self.idb("ui", "key-sequence", *codes)

    def button(self, name: str) -> None:
        self.idb("ui", "button", name)

    def screenshot(self, path: str | Path) -> Path:
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.simctl("io", self.udid, "screenshot", str(out))
        except SimAgentError as e:
            raise wrap_error_code(e, "SIMCTL_FAILED", "screenshot failed") from e
        return out

    def open_url(self, url: str) -> None:
        self.simctl("openurl", self.udid, url)

    def launch(self, bundle_id: str, args: Sequence[str] = ()) -> str:
        return self.simctl("launch", self.udid, bundle_id, *args).stdout.strip()

    def terminate(self, bundle_id: str) -> None:
        self.simctl("terminate", self.udid, bundle_id)

    def list_apps(self) -> str:
        return self.simctl("listapps", self.udid).stdout
