from __future__ import annotations

import logging
from pathlib import Path

from media.errors import MediaError, ProbeFailure
from media.models import MediaType, StreamInfo
from media.process import Runner, run_process

log = logging.getLogger(__name__)

IMAGE_FORMATS = (
    "jpeg", "jpg", "png", "bmp", "gif", "tiff", "webp",
    "jxl", "heic", "heif", "avif", "svg",
)
VIDEO_FORMATS = ("mp4", "mkv", "mov", "avi", "flv", "wmv", "webm", "mpeg")

PLAIN_OUTPUT = "default=noprint_wrappers=1:nokey=1"


def classify_format(format_name: str) -> MediaType:
    """Bucket an ffprobe ``format_name`` string such as ``mov,mp4,m4a,3gp,3g2,mj2``.

    Image tokens win when both kinds appear.
    """
    format_name = (format_name or "").strip().lower()
    if not format_name:
        return MediaType.UNKNOWN
    if any(token in format_name for token in IMAGE_FORMATS):
        return MediaType.IMAGE
    if any(token in format_name for token in VIDEO_FORMATS):
        return MediaType.VIDEO
    return MediaType.UNKNOWN


def format_name_args(path: Path, ffprobe: str = "ffprobe") -> list[str]:
    return [
        ffprobe, "-v", "error",
        "-show_entries", "format=format_name",
        "-of", PLAIN_OUTPUT,
        str(path),
    ]


def stream_entry_args(path: Path, stream: str, entry: str, ffprobe: str = "ffprobe") -> list[str]:
    return [
        ffprobe, "-v", "error",
        "-select_streams", stream,
        "-show_entries", f"stream={entry}",
        "-of", PLAIN_OUTPUT,
        str(path),
    ]


def classify(path: Path, runner: Runner = run_process, *, ffprobe: str = "ffprobe") -> MediaType:
    """Best-effort classification; any probe problem yields ``UNKNOWN``."""
    try:
        result = runner("ffprobe", format_name_args(path, ffprobe))
    except MediaError as exc:
        log.warning("Format probe failed for %s: %s", path, exc)
        return MediaType.UNKNOWN
    if not result.ok:
        log.info("Format probe for %s exited %d: %s", path, result.returncode, result.stderr_text().strip())
        return MediaType.UNKNOWN
    try:
        format_name = result.stdout.decode("utf-8").strip()
    except UnicodeDecodeError:
        return MediaType.UNKNOWN

    media_type = classify_format(format_name)
    log.info("Format of %s: %r -> %s", path.name, format_name, media_type.value)
    return media_type


def get_stream_entry(
    path: Path,
    stream: str,
    entry: str,
    runner: Runner = run_process,
    *,
    ffprobe: str = "ffprobe",
) -> str:
    try:
        result = runner("ffprobe", stream_entry_args(path, stream, entry, ffprobe))
    except MediaError as exc:
        raise ProbeFailure(f"ffprobe error: {exc}") from exc
    if not result.ok:
        raise ProbeFailure(f"ffprobe error ({stream} {entry})", stderr=result.stderr_text().strip())
    return result.stdout_text().strip()


def _parse_number(raw: str, cast: type, label: str) -> float | int:
    # ffprobe prints "N/A" when the container does not carry the field.
    value = raw.splitlines()[0].strip() if raw else ""
    try:
        return cast(value)
    except ValueError as exc:
        raise ProbeFailure(f"Could not read {label} from ffprobe output: {raw!r}") from exc


def probe_stream_info(path: Path, runner: Runner = run_process, *, ffprobe: str = "ffprobe") -> StreamInfo:
    """Read video/audio bitrate and duration. Every field is required."""
    video_raw = get_stream_entry(path, "v:0", "bit_rate", runner, ffprobe=ffprobe)
    audio_raw = get_stream_entry(path, "a:0", "bit_rate", runner, ffprobe=ffprobe)
    duration_raw = get_stream_entry(path, "v:0", "duration", runner, ffprobe=ffprobe)

    info = StreamInfo(
        duration_seconds=float(_parse_number(duration_raw, float, "duration")),
        video_bitrate_bps=int(_parse_number(video_raw, int, "video bitrate")),
        audio_bitrate_bps=int(_parse_number(audio_raw, int, "audio bitrate")),
    )
    log.info(
        "Stream info for %s: %.2fs, video %dk, audio %dk",
        path.name,
        info.duration_seconds,
        info.video_bitrate_bps // 1024,
        info.audio_bitrate_bps // 1024,
    )
    return info
