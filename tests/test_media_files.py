from __future__ import annotations

import logging
from pathlib import Path

import pytest

from media import files
from media.errors import FilesystemFailure
from media.files import TempWorkspace, safe_name


def test_safe_name_strips_paths() -> None:
    assert safe_name("../../secret.txt") == "secret.txt"
    assert safe_name("C:\\Users\\me\\clip.mp4") == "clip.mp4"
    assert safe_name("", "fallback.bin") == "fallback.bin"
    assert safe_name("..", "fallback.bin") == "fallback.bin"


def test_workspace_names_never_collide(tmp_path: Path) -> None:
    workspace = TempWorkspace(tmp_path)
    paths = {workspace.new_path("mp4", "clip") for _ in range(50)}

    assert len(paths) == 50
    assert all(path.name.endswith("_clip.mp4") for path in paths)


def test_workspace_cleanup_keeps_released_files(tmp_path: Path) -> None:
    with TempWorkspace(tmp_path) as workspace:
        scratch = workspace.write(b"a", "in.png")
        keep = workspace.release(workspace.write(b"b", "out.webp"))
        assert workspace.live == [scratch]

    assert not scratch.exists()
    assert keep.read_bytes() == b"b"


def test_workspace_cleanup_runs_on_error(tmp_path: Path) -> None:
    created: list[Path] = []
    try:
        with TempWorkspace(tmp_path) as workspace:
            created.append(workspace.write(b"x", "in.gif"))
            raise RuntimeError("encoder crashed")
    except RuntimeError:
        pass

    assert created and not created[0].exists()


def test_failed_discard_is_retried_by_cleanup(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    real_delete = files.safe_delete
    failures = ["busy"]

    def _flaky_delete(path: Path) -> None:
        if failures:
            failures.pop()
            raise FilesystemFailure(f"Failed to delete {path}: busy")
        real_delete(path)

    monkeypatch.setattr(files, "safe_delete", _flaky_delete)
    workspace = TempWorkspace(tmp_path)
    path = workspace.write(b"x", "attempt.webp")

    with caplog.at_level(logging.WARNING, logger="media.files"):
        workspace.discard(path)

    assert path.exists()
    assert "Could not discard temp file" in caplog.text
    workspace.cleanup()
    assert not path.exists()
