from __future__ import annotations

import contextlib
import enum
from dataclasses import dataclass, field
from pathlib import Path


class MediaType(enum.Enum):
    IMAGE = "image"
    VIDEO = "video"
    UNKNOWN = "unknown"


class Delivery(enum.Enum):
    ATTACH = "attach"
    LINK_ONLY = "link_only"


@dataclass(frozen=True, slots=True)
class StreamInfo:
    duration_seconds: float
    video_bitrate_bps: int
    audio_bitrate_bps: int


@dataclass(frozen=True, slots=True)
class ConversionAttempt:
    attempt_number: int
    target_size_bytes: int
    produced_file: Path
    produced_size_bytes: int | None
    # quality for images, bitrate (bits/sec) for videos
    parameter: int


@dataclass(slots=True)
class ConversionResult:
    """Final artifact of a conversion. The caller owns ``path`` from here on."""

    path: Path
    extension: str
    media_type: MediaType
    size_bytes: int
    attempts: list[ConversionAttempt] = field(default_factory=list)

    @property
    def filename(self) -> str:
        return f"{self.path.stem}.{self.extension}"

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def discard(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
