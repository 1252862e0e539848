from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Sequence

import pytest

from media import files
from media.config import MIB, MediaConfig
from media.engine import MediaConverter, image_quality, video_target_size
from media.errors import (
    EncodeFailure,
    FilesystemFailure,
    MissingInputError,
    ProbeFailure,
    RetryBudgetExhausted,
    UnsupportedMediaType,
)
from media.models import MediaType
from media.process import ProcessResult


class FakeTools:
    """Answers ffprobe queries and makes ffmpeg "write" outputs of scripted sizes."""

    def __init__(
        self,
        format_name: str,
        sizes: Sequence[int] = (),
        *,
        failing: Sequence[int] = (),
        video_bitrate: bytes = b"20000000",
        audio_bitrate: bytes = b"128000",
        duration: bytes = b"10.0",
    ) -> None:
        self.format_name = format_name
        self.sizes = list(sizes)
        self.failing = set(failing)
        self.streams = {
            ("v:0", "bit_rate"): video_bitrate,
            ("a:0", "bit_rate"): audio_bitrate,
            ("v:0", "duration"): duration,
        }
        self.encodes: list[list[str]] = []

    def __call__(self, tag: str, args: Sequence[str]) -> ProcessResult:
        args = list(args)
        if tag == "ffprobe":
            if "format=format_name" in args:
                return ProcessResult(0, self.format_name.encode() + b"\n", b"")
            stream = args[args.index("-select_streams") + 1]
            entry = args[args.index("-show_entries") + 1].split("=", 1)[1]
            value = self.streams.get((stream, entry))
            if value is None:
                return ProcessResult(1, b"", b"Stream specifier matches no streams.")
            return ProcessResult(0, value + b"\n", b"")

        attempt = len(self.encodes)
        self.encodes.append(args)
        if attempt in self.failing:
            return ProcessResult(1, b"", b"Error while opening encoder")
        Path(args[-1]).write_bytes(b"\0" * self.sizes[attempt])
        return ProcessResult(0, b"", b"")


def _leftovers(root: Path) -> list[Path]:
    return sorted(root.iterdir()) if root.exists() else []


def _make(tmp_path: Path, tools: FakeTools, ceiling: int = 1000, **kwargs) -> MediaConverter:
    cfg = MediaConfig(work_root=tmp_path / "work", size_ceiling_bytes=ceiling, **kwargs)
    return MediaConverter(cfg, runner=tools)


def _input(tmp_path: Path, name: str, size: int) -> Path:
    path = tmp_path / name
    path.write_bytes(b"\1" * size)
    return path


def test_schedules() -> None:
    assert [image_quality(i) for i in range(3)] == [90, 85, 80]
    assert video_target_size(8 * MIB, 0) == 7 * MIB
    assert video_target_size(8 * MIB, 1) == 6 * MIB


def test_small_image_passes_through(tmp_path: Path) -> None:
    tools = FakeTools("png_pipe")
    source = _input(tmp_path, "cat.png", 100)

    result = _make(tmp_path, tools).convert(source)

    assert tools.encodes == []
    assert result.media_type is MediaType.IMAGE
    assert result.extension == "png"
    assert result.size_bytes == 100
    assert result.attempts == []
    assert result.path != source and result.path.read_bytes() == source.read_bytes()
    assert source.exists()
    assert _leftovers(tmp_path / "work") == [result.path]


def test_reencode_small_always_converts(tmp_path: Path) -> None:
    tools = FakeTools("png_pipe", sizes=[80])
    source = _input(tmp_path, "cat.png", 100)

    result = _make(tmp_path, tools).convert(source, reencode_small=True)

    assert len(tools.encodes) == 1
    assert result.extension == "webp"
    assert result.path.suffix == ".webp"
    assert result.size_bytes == 80
    assert [a.parameter for a in result.attempts] == [90]


def test_configured_policy_is_the_default(tmp_path: Path) -> None:
    tools = FakeTools("gif", sizes=[80])
    source = _input(tmp_path, "dance.gif", 100)

    result = _make(tmp_path, tools, reencode_small=True).convert(source)

    assert result.extension == "webp"
    assert len(tools.encodes) == 1


def test_image_quality_steps_down_until_it_fits(tmp_path: Path) -> None:
    tools = FakeTools("png_pipe", sizes=[3000, 1500, 900])
    source = _input(tmp_path, "big.png", 5000)

    result = _make(tmp_path, tools).convert(source)

    qualities = [args[args.index("-q:v") + 1] for args in tools.encodes]
    assert qualities == ["90", "85", "80"]
    assert [a.produced_size_bytes for a in result.attempts] == [3000, 1500, 900]
    assert result.size_bytes == 900
    assert _leftovers(tmp_path / "work") == [result.path]


def test_image_exhaustion_cleans_everything(tmp_path: Path) -> None:
    tools = FakeTools("jpeg_pipe", sizes=[2000, 2000, 1001])
    source = _input(tmp_path, "huge.jpg", 5000)

    with pytest.raises(RetryBudgetExhausted) as excinfo:
        _make(tmp_path, tools).convert(source)

    assert excinfo.value.kind == "image"
    assert excinfo.value.attempts == 3
    assert excinfo.value.last_size == 1001
    assert len(tools.encodes) == 3
    assert _leftovers(tmp_path / "work") == []
    assert source.exists()


def test_delete_failures_do_not_mask_exhaustion(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    def _stuck_delete(path: Path) -> None:
        raise FilesystemFailure(f"Failed to delete {path}: Permission denied")

    monkeypatch.setattr(files, "safe_delete", _stuck_delete)
    tools = FakeTools("jpeg_pipe", sizes=[2000, 2000, 1001])
    source = _input(tmp_path, "huge.jpg", 5000)

    with caplog.at_level(logging.WARNING, logger="media.files"):
        with pytest.raises(RetryBudgetExhausted) as excinfo:
            _make(tmp_path, tools).convert(source)

    assert excinfo.value.attempts == 3
    assert "Could not remove temp file" in caplog.text
    assert len(tools.encodes) == 3


def test_encode_failure_uses_up_an_attempt(tmp_path: Path) -> None:
    tools = FakeTools("png_pipe", sizes=[0, 500], failing=[0])
    source = _input(tmp_path, "big.png", 5000)

    result = _make(tmp_path, tools).convert(source)

    assert len(result.attempts) == 2
    assert result.attempts[0].produced_size_bytes is None
    assert result.attempts[1].parameter == 85
    assert _leftovers(tmp_path / "work") == [result.path]


def test_all_encodes_failing_reports_last_error(tmp_path: Path) -> None:
    tools = FakeTools("png_pipe", failing=[0, 1, 2])
    source = _input(tmp_path, "big.png", 5000)

    with pytest.raises(RetryBudgetExhausted) as excinfo:
        _make(tmp_path, tools).convert(source)

    assert isinstance(excinfo.value.last_error, EncodeFailure)
    assert "Error while opening encoder" in excinfo.value.last_error.stderr
    assert excinfo.value.last_size is None
    assert _leftovers(tmp_path / "work") == []


def test_video_targets_and_fps_cap(tmp_path: Path) -> None:
    ceiling = 3 * MIB
    tools = FakeTools("mov,mp4,m4a,3gp,3g2,mj2", sizes=[ceiling + 10, 500])
    source = _input(tmp_path, "clip.mov", ceiling + 1)

    result = _make(tmp_path, tools, ceiling=ceiling).convert(source)

    assert result.media_type is MediaType.VIDEO
    assert result.extension == "mp4"
    assert [a.target_size_bytes for a in result.attempts] == [2 * MIB, 1 * MIB]
    first, second = tools.encodes
    assert first[first.index("-c:v") + 1] == "libx265"
    assert first[first.index("-vf") + 1] == "fps=30"
    assert first[first.index("-b:v") + 1] == f"{result.attempts[0].parameter // 1024}k"
    assert result.attempts[1].parameter < result.attempts[0].parameter
    for bitrate, attempt in zip((a.parameter for a in result.attempts), result.attempts):
        assert (bitrate + 128_000) * 10.0 <= attempt.target_size_bytes * 8
    assert _leftovers(tmp_path / "work") == [result.path]


def test_video_without_bitrate_drop_keeps_frame_rate(tmp_path: Path) -> None:
    tools = FakeTools("matroska,webm", sizes=[400], video_bitrate=b"100000", duration=b"1.0")
    source = _input(tmp_path, "tiny.webm", 500)

    result = _make(tmp_path, tools, ceiling=3 * MIB).convert(source, reencode_small=True)

    (args,) = tools.encodes
    assert "-vf" not in args
    assert args[args.index("-b:v") + 1] == "97k"
    assert result.attempts[0].parameter == 100_000


def test_video_exhaustion_after_two_attempts(tmp_path: Path) -> None:
    ceiling = 3 * MIB
    tools = FakeTools("mp4", sizes=[ceiling + 1, ceiling + 1])
    source = _input(tmp_path, "long.mp4", ceiling + 1)

    with pytest.raises(RetryBudgetExhausted) as excinfo:
        _make(tmp_path, tools, ceiling=ceiling).convert(source)

    assert excinfo.value.kind == "video"
    assert excinfo.value.attempts == 2
    assert len(tools.encodes) == 2
    assert _leftovers(tmp_path / "work") == []


def test_video_probe_failure_propagates(tmp_path: Path) -> None:
    tools = FakeTools("mp4", audio_bitrate=None)  # type: ignore[arg-type]
    source = _input(tmp_path, "silent.mp4", 500)

    with pytest.raises(ProbeFailure):
        _make(tmp_path, tools, ceiling=3 * MIB).convert(source, reencode_small=True)

    assert tools.encodes == []
    assert _leftovers(tmp_path / "work") == []


def test_unknown_format_is_unsupported(tmp_path: Path) -> None:
    tools = FakeTools("wav")
    source = _input(tmp_path, "song.wav", 100)

    with pytest.raises(UnsupportedMediaType, match="Unsupported file type"):
        _make(tmp_path, tools).convert(source)

    assert tools.encodes == []
    assert _leftovers(tmp_path / "work") == []


def test_missing_input(tmp_path: Path) -> None:
    with pytest.raises(MissingInputError):
        _make(tmp_path, FakeTools("png_pipe")).convert(tmp_path / "nope.png")


def test_convert_async_runs_off_loop(tmp_path: Path) -> None:
    tools = FakeTools("png_pipe", sizes=[10])
    source = _input(tmp_path, "cat.png", 100)

    result = asyncio.run(_make(tmp_path, tools).convert_async(source, reencode_small=True))

    assert result.extension == "webp"
    result.discard()
    assert _leftovers(tmp_path / "work") == []
