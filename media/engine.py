"""Media Conversion Engine.

Takes an arbitrary image or video, converts it into something Discord can
display inline (animated WebP or H.265 MP4) and keeps re-encoding with lower
quality/bitrate until the result fits under the size ceiling or the attempt
budget runs out.

All work is blocking; cogs call :meth:`MediaConverter.convert_async`, which
pushes it onto a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from media.bitrate import estimate_video_bitrate
from media.config import (
    IMAGE_ATTEMPTS,
    IMAGE_QUALITY_START,
    IMAGE_QUALITY_STEP,
    MAX_FPS,
    MIB,
    VIDEO_ATTEMPTS,
    MediaConfig,
)
from media.errors import (
    EncodeFailure,
    FilesystemFailure,
    MediaError,
    MissingInputError,
    RetryBudgetExhausted,
    UnsupportedMediaType,
)
from media.files import TempWorkspace
from media.models import ConversionAttempt, ConversionResult, MediaType, StreamInfo
from media.probe import classify, probe_stream_info
from media.process import ProcessResult, Runner, run_process

log = logging.getLogger(__name__)

IMAGE_EXTENSION = "webp"
VIDEO_EXTENSION = "mp4"


def image_quality(attempt: int) -> int:
    return IMAGE_QUALITY_START - attempt * IMAGE_QUALITY_STEP


def video_target_size(ceiling: int, attempt: int) -> int:
    """Each attempt aims one more MiB under the ceiling to leave muxing headroom."""
    return ceiling - (attempt + 1) * MIB


def image_encode_args(input_path: Path, output_path: Path, quality: int, ffmpeg: str = "ffmpeg") -> list[str]:
    return [
        ffmpeg, "-y",
        "-i", str(input_path),
        "-vf", f"fps={MAX_FPS}",
        "-vcodec", "libwebp",
        "-lossless", "1",
        "-compression_level", "6",
        "-loop", "0",
        "-preset", "picture",
        "-an",
        "-vsync", "vfr",
        "-f", "webp",
        "-q:v", str(quality),
        str(output_path),
    ]


def video_encode_args(
    input_path: Path,
    output_path: Path,
    bitrate: int,
    *,
    cap_fps: bool,
    ffmpeg: str = "ffmpeg",
) -> list[str]:
    args = [
        ffmpeg, "-y",
        "-i", str(input_path),
        "-c:v", "libx265",
        "-preset", "medium",
        "-f", "mp4",
    ]
    if cap_fps:
        args += ["-vf", f"fps={MAX_FPS}"]
    args += ["-b:v", f"{bitrate // 1024}k", str(output_path)]
    return args


class MediaConverter:
    def __init__(self, config: MediaConfig, runner: Runner = run_process) -> None:
        self.config = config
        self.runner = runner

    async def convert_async(self, input_path: Path, *, reencode_small: bool | None = None) -> ConversionResult:
        return await asyncio.to_thread(self.convert, input_path, reencode_small=reencode_small)

    def convert(self, input_path: Path, *, reencode_small: bool | None = None) -> ConversionResult:
        """Convert ``input_path`` into an uploadable artifact.

        ``reencode_small`` overrides the configured policy for files that are
        already under the ceiling. On success the returned file belongs to
        the caller; on failure every temp file made here is already gone.
        """
        input_path = Path(input_path)
        if not input_path.is_file():
            raise MissingInputError(f"Input file does not exist: {input_path}")
        if reencode_small is None:
            reencode_small = self.config.reencode_small

        media_type = classify(input_path, self.runner, ffprobe=self.config.ffprobe_bin)
        if media_type is MediaType.UNKNOWN:
            raise UnsupportedMediaType()

        workspace = TempWorkspace(self.config.work_root)
        try:
            if not reencode_small:
                passthrough = self._passthrough(input_path, media_type, workspace)
                if passthrough is not None:
                    return passthrough
            if media_type is MediaType.IMAGE:
                result = self._convert_image(input_path, workspace)
            else:
                result = self._convert_video(input_path, workspace)
            workspace.release(result.path)
            return result
        finally:
            workspace.cleanup()

    def _file_size(self, path: Path) -> int:
        try:
            return path.stat().st_size
        except OSError as exc:
            raise FilesystemFailure(f"Failed to read size of {path}: {exc}") from exc

    def _passthrough(
        self, input_path: Path, media_type: MediaType, workspace: TempWorkspace
    ) -> ConversionResult | None:
        size = self._file_size(input_path)
        if size > self.config.size_ceiling_bytes:
            return None
        log.info("%s is already small enough (%d bytes); passing through", input_path.name, size)
        default_ext = IMAGE_EXTENSION if media_type is MediaType.IMAGE else VIDEO_EXTENSION
        extension = input_path.suffix.lstrip(".").lower() or default_ext
        output = workspace.release(workspace.copy_in(input_path, extension))
        return ConversionResult(output, extension, media_type, size)

    def _convert_image(self, input_path: Path, workspace: TempWorkspace) -> ConversionResult:
        ceiling = self.config.size_ceiling_bytes
        attempts: list[ConversionAttempt] = []
        last_error: MediaError | None = None

        for attempt in range(IMAGE_ATTEMPTS):
            quality = image_quality(attempt)
            output = workspace.new_path(IMAGE_EXTENSION, input_path.stem)
            log.info("Compressing image %s (attempt %d, quality %d)", input_path.name, attempt + 1, quality)
            result = self.runner(
                "ffmpeg", image_encode_args(input_path, output, quality, self.config.ffmpeg_bin)
            )
            done = self._check_attempt(
                result, output, attempt, ceiling, quality, attempts, workspace, MediaType.IMAGE
            )
            if isinstance(done, ConversionResult):
                return done
            last_error = done or last_error

        raise self._exhausted("image", attempts, last_error)

    def _convert_video(self, input_path: Path, workspace: TempWorkspace) -> ConversionResult:
        ceiling = self.config.size_ceiling_bytes
        info = probe_stream_info(input_path, self.runner, ffprobe=self.config.ffprobe_bin)
        attempts: list[ConversionAttempt] = []
        last_error: MediaError | None = None

        for attempt in range(VIDEO_ATTEMPTS):
            target = video_target_size(ceiling, attempt)
            bitrate, cap_fps = self._plan_video(info, target)
            output = workspace.new_path(VIDEO_EXTENSION, input_path.stem)
            log.info(
                "Compressing video %s (attempt %d, target %d bytes): %dk -> %dk%s",
                input_path.name,
                attempt + 1,
                target,
                info.video_bitrate_bps // 1024,
                bitrate // 1024,
                f", fps capped to {MAX_FPS}" if cap_fps else "",
            )
            result = self.runner(
                "ffmpeg",
                video_encode_args(input_path, output, bitrate, cap_fps=cap_fps, ffmpeg=self.config.ffmpeg_bin),
            )
            done = self._check_attempt(
                result, output, attempt, target, bitrate, attempts, workspace, MediaType.VIDEO,
            )
            if isinstance(done, ConversionResult):
                return done
            last_error = done or last_error

        raise self._exhausted("video", attempts, last_error)

    @staticmethod
    def _plan_video(info: StreamInfo, target_size_bytes: int) -> tuple[int, bool]:
        bitrate = estimate_video_bitrate(
            info.video_bitrate_bps,
            info.audio_bitrate_bps,
            info.duration_seconds,
            target_size_bytes * 8,
        )
        return bitrate, bitrate < info.video_bitrate_bps

    def _check_attempt(
        self,
        result: ProcessResult,
        output: Path,
        attempt: int,
        target: int,
        parameter: int,
        attempts: list[ConversionAttempt],
        workspace: TempWorkspace,
        media_type: MediaType,
    ) -> ConversionResult | MediaError | None:
        """Record one attempt and either finish or clear the way for the next one.

        Returns the final result, the encode error of a failed run, or None
        when the output was simply too big.
        """
        ceiling = self.config.size_ceiling_bytes

        if not result.ok:
            attempts.append(ConversionAttempt(attempt, target, output, None, parameter))
            workspace.discard(output)
            log.warning("Encode attempt %d failed with status %d", attempt + 1, result.returncode)
            return EncodeFailure("Compression failed:", stderr=result.stderr_text().strip())

        size = self._file_size(output)
        attempts.append(ConversionAttempt(attempt, target, output, size, parameter))
        if size > ceiling:
            log.info("Attempt %d produced %d bytes (> %d); retrying", attempt + 1, size, ceiling)
            workspace.discard(output)
            return None

        extension = IMAGE_EXTENSION if media_type is MediaType.IMAGE else VIDEO_EXTENSION
        log.info("Attempt %d produced %d bytes; done", attempt + 1, size)
        return ConversionResult(output, extension, media_type, size, list(attempts))

    @staticmethod
    def _exhausted(
        kind: str, attempts: list[ConversionAttempt], last_error: MediaError | None
    ) -> RetryBudgetExhausted:
        sizes = [a.produced_size_bytes for a in attempts if a.produced_size_bytes is not None]
        last_size = sizes[-1] if sizes else None
        exc = RetryBudgetExhausted(kind, len(attempts), last_size=last_size, last_error=last_error)
        log.warning("%s", exc)
        return exc
