"""Raspberry Pi camera parameters and the pipe protocol used to drive it."""

import base64
import math
import os
from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Callable, NoReturn

_UNSUPPORTED = "server was compiled without support for the Raspberry Pi Camera"


def _unsupported() -> NoReturn:
    raise RuntimeError(_UNSUPPORTED)


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return format(Decimal(repr(value)).normalize(), "f")


@dataclass
class Params:
    """A set of camera parameters."""

    camera_id: int = field(default=0, metadata={"key": "CameraID"})
    width: int = field(default=0, metadata={"key": "Width"})
    height: int = field(default=0, metadata={"key": "Height"})
    h_flip: bool = field(default=False, metadata={"key": "HFlip"})
    v_flip: bool = field(default=False, metadata={"key": "VFlip"})
    brightness: float = field(default=0.0, metadata={"key": "Brightness"})
    contrast: float = field(default=0.0, metadata={"key": "Contrast"})
    saturation: float = field(default=0.0, metadata={"key": "Saturation"})
    sharpness: float = field(default=0.0, metadata={"key": "Sharpness"})
    exposure: str = field(default="", metadata={"key": "Exposure"})
    awb: str = field(default="", metadata={"key": "AWB"})
    denoise: str = field(default="", metadata={"key": "Denoise"})
    shutter: int = field(default=0, metadata={"key": "Shutter"})
    metering: str = field(default="", metadata={"key": "Metering"})
    gain: float = field(default=0.0, metadata={"key": "Gain"})
    ev: float = field(default=0.0, metadata={"key": "EV"})
    roi: str = field(default="", metadata={"key": "ROI"})
    hdr: bool = field(default=False, metadata={"key": "HDR"})
    tuning_file: str = field(default="", metadata={"key": "TuningFile"})
    mode: str = field(default="", metadata={"key": "Mode"})
    fps: float = field(default=0.0, metadata={"key": "FPS"})
    idr_period: int = field(default=0, metadata={"key": "IDRPeriod"})
    bitrate: int = field(default=0, metadata={"key": "Bitrate"})
    profile: str = field(default="", metadata={"key": "Profile"})
    level: str = field(default="", metadata={"key": "Level"})
    af_mode: str = field(default="", metadata={"key": "AfMode"})
    af_range: str = field(default="", metadata={"key": "AfRange"})
    af_speed: str = field(default="", metadata={"key": "AfSpeed"})
    lens_position: float = field(default=0.0, metadata={"key": "LensPosition"})
    af_window: str = field(default="", metadata={"key": "AfWindow"})
    text_overlay_enable: bool = field(default=False, metadata={"key": "TextOverlayEnable"})
    text_overlay: str = field(default="", metadata={"key": "TextOverlay"})

    def serialize(self) -> bytes:
        """Encode the parameters as space-separated Key:value entries."""
        entries = []
        for f in fields(self):
            value = getattr(self, f.name)
            if f.type is bool:
                text = "1" if value else "0"
            elif f.type is int:
                text = str(int(value))
            elif f.type is float:
                text = _format_float(float(value))
            elif f.type is str:
                text = base64.b64encode(value.encode("utf-8")).decode("ascii")
            else:
                raise TypeError(f"unhandled type for field {f.name}")
            entries.append(f"{f.metadata['key']}:{text}")
        return " ".join(entries).encode("ascii")


class Pipe:
    """An OS pipe carrying length-prefixed messages."""

    def __init__(self) -> None:
        self.read_fd, self.write_fd = os.pipe()

    def _read_exact(self, size: int) -> bytes:
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = os.read(self.read_fd, remaining)
            if not chunk:
                raise EOFError("pipe closed before the message was complete")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def read(self) -> bytes:
        """Read one message: a 4-byte little-endian length, then the data."""
        size = int.from_bytes(self._read_exact(4), "little")
        return self._read_exact(size)

    def _write_all(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = os.write(self.write_fd, view)
            view = view[written:]

    def write(self, data: bytes) -> None:
        """Write one message with its 4-byte little-endian length prefix."""
        self._write_all(len(data).to_bytes(4, "little"))
        self._write_all(bytes(data))

    def close(self) -> None:
        """Close both ends of the pipe."""
        for fd in (self.read_fd, self.write_fd):
            try:
                os.close(fd)
            except OSError:
                pass


class RPICamera:
    """A Raspberry Pi camera reader; this build has no camera support."""

    def __init__(
        self,
        params: Params,
        on_data: Callable[[float, list], None],
    ) -> None:
        _unsupported()

    def close(self) -> None:
        """Release the camera; unavailable in this build."""
        _unsupported()

    def reload_params(self, params: Params) -> None:
        """Apply new camera parameters; unavailable in this build."""
        _unsupported()