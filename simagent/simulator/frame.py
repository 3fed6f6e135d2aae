from __future__ import annotations

import struct
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from .config import save_last_frame, write_json_file
from .elements import ELEMENT_ORDERS, ORDER_READING, ElementSet, NormalizeOptions, derive_transform
from .errors import SimAgentError, render_error, usage_error, wrap_error_code
from .stability import MIN_STABLE_SAMPLES, capture_stable_ui_samples, capture_ui_sample

IMAGE_FORMATS = ("png", "jpg")

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
# JPEG start-of-frame markers that carry the image size.
_JPEG_SOF_MARKERS = {0xC0, 0xC1, 0xC2, 0xC3, 0xC5, 0xC6, 0xC7, 0xC9, 0xCA, 0xCB, 0xCD, 0xCE, 0xCF}


@dataclass(frozen=True)
class FrameOptions:
    out_dir: Optional[Path] = None
    screenshot: bool = True
    ui: bool = True
    interactive_only: bool = True
    stable: bool = False
    stable_samples: int = 3
    stable_interval_s: float = 0.25
    order: str = ORDER_READING
    image_format: str = "png"
    min_area: float = 0.0
    include_roles: frozenset[str] = frozenset()
    exclude_roles: frozenset[str] = frozenset()

    def normalize_options(self) -> NormalizeOptions:
        return NormalizeOptions(
            order=self.order,
            interactive_only=self.interactive_only,
            min_area=self.min_area,
            include_roles=self.include_roles,
            exclude_roles=self.exclude_roles,
        )

    def validate(self) -> None:
        if self.order not in ELEMENT_ORDERS:
            raise usage_error("--order must be reading|z|stable")
        if self.image_format not in IMAGE_FORMATS:
            raise usage_error("--format must be png|jpg")
        if self.min_area < 0:
            raise usage_error("--min-area must be >= 0")
        if self.stable and not self.ui:
            raise usage_error("--stable requires --ui")
        if self.stable and self.stable_samples < MIN_STABLE_SAMPLES:
            raise usage_error(f"--stable-samples must be >= {MIN_STABLE_SAMPLES}")
        if self.stable and self.stable_interval_s < 0:
            raise usage_error("--stable-interval must be >= 0")


def _png_size(data: bytes) -> Optional[tuple[int, int]]:
    if len(data) < 24 or not data.startswith(_PNG_SIGNATURE) or data[12:16] != b"IHDR":
        return None
    width, height = struct.unpack(">II", data[16:24])
    return width, height


def _jpeg_size(data: bytes) -> Optional[tuple[int, int]]:
    if not data.startswith(b"\xff\xd8"):
        return None
    pos = 2
    while pos + 4 <= len(data):
        if data[pos] != 0xFF:
            pos += 1
            continue
        marker = data[pos + 1]
        if marker in (0xD8, 0x01) or 0xD0 <= marker <= 0xD7:
            pos += 2
            continue
        (length,) = struct.unpack(">H", data[pos + 2 : pos + 4])
        if marker in _JPEG_SOF_MARKERS and pos + 9 <= len(data):
            height, width = struct.unpack(">HH", data[pos + 5 : pos + 9])
            return width, height
        pos += 2 + length
    return None


def read_image_size(path: str | Path) -> Optional[tuple[int, int]]:
    """(width, height) in pixels from a PNG or JPEG header, None when unreadable."""
    try:
        with open(path, "rb") as f:
            data = f.read(64 * 1024)
    except OSError:
        return None
    return _png_size(data) or _jpeg_size(data)


def default_frame_dir(artifacts_dir: Path) -> Path:
    return artifacts_dir / f"frame-{datetime.now().strftime('%Y%m%d-%H%M%S-%f')}"


def capture_frame(
    device: Any,
    options: FrameOptions,
    *,
    target: dict[str, Any],
    config_dir: Path,
    artifacts_dir: Path,
    log: Optional[Callable[[str], None]] = None,
) -> dict[str, Any]:
    """
    Capture screenshot + accessibility tree + normalized elements + transform into one directory
    and record it as the last frame.

    Without --stable a failed tree capture does not fail the frame: the error is written to
    ui.raw.json and the element list is empty. With --stable any capture or stability failure
    is raised.
    """
    options.validate()
    out_dir = options.out_dir or default_frame_dir(artifacts_dir)
    try:
        out_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise SimAgentError(code="IO_ERROR", message=f"failed to create {out_dir}", details={"cause": str(e)}) from e

    artifacts: dict[str, str] = {}
    screenshot_size: Optional[tuple[int, int]] = None
    if options.screenshot:
        shot_path = out_dir / f"screen.{options.image_format}"
        try:
            device.screenshot(shot_path)
        except SimAgentError as e:
            raise wrap_error_code(e, "SIMCTL_FAILED", "failed to capture screenshot") from e
        screenshot_size = read_image_size(shot_path)
        artifacts["screenshot"] = str(shot_path)

    raw: Any = None
    snapshot = ElementSet(elements=(), all_count=0, interactive_count=0)
    if options.ui:
        raw_path = out_dir / "ui.raw.json"
        norm = options.normalize_options()
        if options.stable:
            samples = capture_stable_ui_samples(
                device,
                samples=options.stable_samples,
                interval_s=options.stable_interval_s,
                options=norm,
            )
            for i, sample in enumerate(samples, 1):
                artifacts[f"uiSample{i:02d}"] = str(write_json_file(out_dir / f"ui.sample-{i:02d}.raw.json", sample.raw))
            raw = samples[-1].raw
            snapshot = samples[-1].elements
        else:
            try:
                sample = capture_ui_sample(device, norm)
            except SimAgentError as e:
                if log is not None:
                    log(f"idb ui describe-all failed: [{e.code}] {e.message}")
                raw = {"error": render_error(e)}
            else:
                raw = sample.raw
                snapshot = sample.elements
        artifacts["uiRaw"] = str(write_json_file(raw_path, raw))

    transform = derive_transform(raw, snapshot.elements, screenshot_size)
    artifacts["transform"] = str(write_json_file(out_dir / "transform.json", transform.to_dict()))
    artifacts["elements"] = str(
        write_json_file(
            out_dir / "elements.json",
            {
                "allCount": snapshot.all_count,
                "interactiveCount": snapshot.interactive_count,
                "elements": [e.to_dict() for e in snapshot.elements],
            },
        )
    )

    save_last_frame(config_dir, out_dir=out_dir, target=str(target.get("udid") or ""), artifacts=artifacts)
    return {
        "ok": True,
        "action": "frame",
        "target": target,
        "outDir": str(out_dir),
        "artifacts": {k: Path(v).name for k, v in artifacts.items()},
        "counts": {"all": snapshot.all_count, "interactive": snapshot.interactive_count},
        "transform": transform.to_dict(),
    }
