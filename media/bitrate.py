from __future__ import annotations

from media.config import BITRATE_STEP, MIN_VIDEO_BITRATE


def estimate_media_size(video_bitrate: int, audio_bitrate: int, duration_seconds: float) -> float:
    """Projected output size in bytes for the given stream bitrates."""
    return (video_bitrate + audio_bitrate) * duration_seconds / 8


def estimate_video_bitrate(
    starting_bitrate: int,
    audio_bitrate: int,
    duration_seconds: float,
    target_size_bits: int,
    *,
    step: int = BITRATE_STEP,
    floor: int = MIN_VIDEO_BITRATE,
) -> int:
    """Highest video bitrate (bits/sec) whose projected size fits ``target_size_bits``.

    Scans down from ``starting_bitrate`` in ``step`` decrements. The result
    never goes below ``floor``; when even the floor overshoots the target the
    floor is returned and the size check after encoding decides. A starting
    bitrate already at or under the floor is returned as is.
    """
    if step <= 0:
        raise ValueError("step must be positive")
    if starting_bitrate <= floor:
        return starting_bitrate

    bitrate = starting_bitrate
    while bitrate > floor and (bitrate + audio_bitrate) * duration_seconds > target_size_bits:
        bitrate -= step
    return max(bitrate, floor)
