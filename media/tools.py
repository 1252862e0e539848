"""One-shot converters behind /webp, /jxl, /favoritize and /ffmpeg.

Unlike the engine these never retry: they run one tool, read the output and
delete every file they touched, whatever happens.
"""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Sequence

from media.errors import EncodeFailure, FilesystemFailure, MediaError
from media.files import TempWorkspace, safe_name
from media.process import ProcessResult, Runner, run_process

log = logging.getLogger(__name__)


def webp_args(input_path: Path, output_path: Path) -> tuple[str, list[str]]:
    if input_path.suffix.lower() == ".gif":
        return "gif2webp", [
            "gif2webp", "-v", str(input_path),
            "-mixed", "-mt", "-m", "6",
            "-o", str(output_path),
        ]
    return "img2webp", [
        "img2webp", "-v", "-sharp_yuv", str(input_path),
        "-lossless", "-m", "6",
        "-o", str(output_path),
    ]


def jxl_args(input_path: Path, output_path: Path) -> list[str]:
    return ["cjxl", "-v", str(input_path), "-e", "10", str(output_path)]


def ffmpeg_args(inputs: Sequence[Path], flags: str, output_path: Path, ffmpeg: str = "ffmpeg") -> list[str]:
    args = [ffmpeg]
    for path in inputs:
        args += ["-i", str(path)]
    if flags.strip():
        try:
            args += shlex.split(flags)
        except ValueError as exc:
            raise MediaError(f"Could not parse ffmpeg flags: {exc}") from exc
    args.append(str(output_path))
    return args


def favoritable_args(input_path: Path, output_path: Path) -> list[str]:
    return [
        "img2webp", "-v", "-sharp_yuv", "-loop", "0", str(input_path),
        "-d", "1", "-lossless", "-q", "100", "-m", "6",
        "-o", str(output_path),
    ]


def webpmux_args(frame_path: Path, blank_frame: Path, output_path: Path) -> list[str]:
    return [
        "webpmux",
        "-frame", str(frame_path), "+0+0+0+0",
        "-frame", str(blank_frame), "+0+0+0+0",
        "-loop", "1",
        "-o", str(output_path),
    ]


def blank_frame_args(output_path: Path, ffmpeg: str = "ffmpeg") -> list[str]:
    return [
        ffmpeg, "-y", "-f", "lavfi", "-i", "color=c=black@0.0:s=1x1,format=rgba",
        "-frames:v", "1", "-c:v", "libwebp", "-lossless", "1",
        str(output_path),
    ]


def _require_ok(result: ProcessResult) -> None:
    if not result.ok:
        raise EncodeFailure(result.stderr_text().strip() or f"exit status {result.returncode}")


def _collect(result: ProcessResult, output_path: Path) -> bytes:
    _require_ok(result)
    try:
        return output_path.read_bytes()
    except OSError as exc:
        raise FilesystemFailure(f"Tool finished but produced no output: {exc}") from exc


def convert_to_webp(
    data: bytes,
    filename: str,
    work_root: Path,
    runner: Runner = run_process,
) -> tuple[bytes, str]:
    name = safe_name(filename, "image.png")
    with TempWorkspace(work_root) as workspace:
        source = workspace.write(data, name)
        output = workspace.new_path("webp", Path(name).stem)
        tag, args = webp_args(source, output)
        payload = _collect(runner(tag, args), output)
    return payload, f"{Path(name).stem}.webp"


def convert_to_jxl(
    data: bytes,
    filename: str,
    work_root: Path,
    runner: Runner = run_process,
) -> tuple[bytes, str]:
    name = safe_name(filename, "image.png")
    with TempWorkspace(work_root) as workspace:
        source = workspace.write(data, name)
        output = workspace.new_path("jxl", Path(name).stem)
        payload = _collect(runner("cjxl", jxl_args(source, output)), output)
    return payload, f"{Path(name).stem}.jxl"


def ensure_blank_frame(path: Path, runner: Runner = run_process, *, ffmpeg: str = "ffmpeg") -> Path:
    """Make sure the transparent 1x1 WebP appended by favoritize exists."""
    path = Path(path)
    if path.is_file():
        return path
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FilesystemFailure(f"Failed to create {path.parent}: {exc}") from exc
    log.info("Generating blank frame at %s", path)
    _require_ok(runner("ffmpeg", blank_frame_args(path, ffmpeg)))
    return path


def convert_to_favoritable(
    data: bytes,
    filename: str,
    work_root: Path,
    runner: Runner = run_process,
    *,
    blank_frame: Path,
    ffmpeg: str = "ffmpeg",
) -> tuple[bytes, str]:
    """Turn an image into a two-frame looping WebP.

    Discord treats animated images like GIFs, so the result can be added to
    the GIF favorites. The second frame is a single transparent pixel blended
    over the first, so the picture looks unchanged.
    """
    name = safe_name(filename, "image.png")
    blank = ensure_blank_frame(blank_frame, runner, ffmpeg=ffmpeg)
    with TempWorkspace(work_root) as workspace:
        source = workspace.write(data, name)
        frame = workspace.new_path("webp", Path(name).stem)
        _require_ok(runner("img2webp", favoritable_args(source, frame)))
        output = workspace.new_path("webp", Path(name).stem)
        payload = _collect(runner("webpmux", webpmux_args(frame, blank, output)), output)
    return payload, f"{Path(name).stem}.webp"


def run_ffmpeg(
    inputs: Sequence[tuple[bytes, str]],
    flags: str,
    output_name: str,
    work_root: Path,
    runner: Runner = run_process,
    *,
    ffmpeg: str = "ffmpeg",
) -> tuple[bytes, str]:
    """Run ffmpeg with user supplied flags over ``inputs`` (data, filename) pairs."""
    output_name = safe_name(output_name, "output.mp4")
    if not Path(output_name).suffix:
        raise MediaError("The output name needs an extension so ffmpeg can pick a format.")
    with TempWorkspace(work_root) as workspace:
        paths = [workspace.write(data, name) for data, name in inputs]
        output = workspace.new_path(Path(output_name).suffix, Path(output_name).stem)
        payload = _collect(runner("ffmpeg", ffmpeg_args(paths, flags, output, ffmpeg)), output)
    log.info("ffmpeg produced %s (%d bytes)", output_name, len(payload))
    return payload, output_name
