from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

# ---- defaults (tuned for Discord attachment limits) ----

MIB = 1024 * 1024
SIZE_CEILING_BYTES = 8 * MIB
BITRATE_STEP = 1024  # bits/sec
MIN_VIDEO_BITRATE = 100 * 1024  # bits/sec
MAX_FPS = 30

IMAGE_ATTEMPTS = 3
IMAGE_QUALITY_START = 90
IMAGE_QUALITY_STEP = 5
VIDEO_ATTEMPTS = 2

# video attempts aim 1 and 2 MiB under the ceiling
MIN_CEILING_BYTES = (VIDEO_ATTEMPTS + 1) * MIB

DEFAULT_WORK_ROOT = "data/media"
DEFAULT_MAX_CONCURRENT = 2
DEFAULT_BLANK_FRAME = "assets/blank.webp"


def env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def env_str(name: str) -> str | None:
    raw = os.getenv(name)
    raw = raw.strip() if isinstance(raw, str) else None
    return raw or None


def env_bool(name: str, default: bool) -> bool:
    raw = env_str(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class MediaConfig:
    work_root: Path
    size_ceiling_bytes: int = SIZE_CEILING_BYTES
    # False: files already under the ceiling pass through untouched ("compress").
    # True: everything is re-encoded to the target container ("convert").
    reencode_small: bool = False
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    # second frame of favoritized images; generated with ffmpeg when missing
    blank_frame: Path = Path(DEFAULT_BLANK_FRAME)

    @staticmethod
    def from_env() -> "MediaConfig":
        return MediaConfig(
            work_root=Path(os.getenv("MEDIA_WORK_DIR", DEFAULT_WORK_ROOT)),
            size_ceiling_bytes=env_int("MEDIA_MAX_BYTES", SIZE_CEILING_BYTES, minimum=MIN_CEILING_BYTES),
            reencode_small=env_bool("MEDIA_REENCODE_SMALL", False),
            max_concurrent=env_int("MEDIA_MAX_CONCURRENT", DEFAULT_MAX_CONCURRENT),
            ffmpeg_bin=env_str("MEDIA_FFMPEG_BIN") or "ffmpeg",
            ffprobe_bin=env_str("MEDIA_FFPROBE_BIN") or "ffprobe",
            blank_frame=Path(env_str("MEDIA_BLANK_WEBP") or DEFAULT_BLANK_FRAME),
        )
