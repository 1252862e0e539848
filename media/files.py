from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path

from media.errors import FilesystemFailure

log = logging.getLogger(__name__)


def safe_name(name: str, default: str = "file") -> str:
    """Reduce a user supplied filename to a bare, non-empty basename."""
    cleaned = Path((name or "").replace("\\", "/")).name.strip()
    if cleaned in {"", ".", ".."}:
        return default
    return cleaned


def safe_delete(path: Path) -> bool:
    """Delete ``path`` if it exists. Returns whether anything was removed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise FilesystemFailure(f"Failed to delete {path}: {exc}") from exc
    return True


class TempWorkspace:
    """Temp files for one pipeline run.

    Paths live directly under ``root`` and carry a uuid prefix, so concurrent
    runs sharing a root never collide. Everything created here is deleted by
    :meth:`cleanup` unless it was handed over with :meth:`release`.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._owned: list[Path] = []

    def __enter__(self) -> "TempWorkspace":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cleanup()

    @property
    def live(self) -> list[Path]:
        return [path for path in self._owned if path.exists()]

    def new_path(self, extension: str, stem: str = "media") -> Path:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemFailure(f"Failed to create work dir {self.root}: {exc}") from exc
        stem = Path(safe_name(stem, "media")).stem or "media"
        suffix = f".{extension.lstrip('.')}" if extension else ""
        path = self.root / f"{uuid.uuid4().hex}_{stem}{suffix}"
        self._owned.append(path)
        return path

    def write(self, data: bytes, filename: str) -> Path:
        name = safe_name(filename)
        path = self.new_path(Path(name).suffix, Path(name).stem)
        try:
            path.write_bytes(data)
        except OSError as exc:
            raise FilesystemFailure(f"Failed to write {path}: {exc}") from exc
        return path

    def copy_in(self, source: Path, extension: str) -> Path:
        path = self.new_path(extension, source.stem)
        try:
            shutil.copyfile(source, path)
        except OSError as exc:
            raise FilesystemFailure(f"Failed to copy {source}: {exc}") from exc
        return path

    def discard(self, path: Path) -> None:
        """Delete an intermediate file now.

        A failed delete is logged and the path stays owned, so :meth:`cleanup`
        tries again and the pipeline's own outcome is what propagates.
        """
        try:
            safe_delete(path)
        except FilesystemFailure:
            log.warning("Could not discard temp file %s", path, exc_info=True)
            return
        if path in self._owned:
            self._owned.remove(path)

    def release(self, path: Path) -> Path:
        """Hand ``path`` over to the caller; cleanup will leave it alone."""
        if path in self._owned:
            self._owned.remove(path)
        return path

    def cleanup(self) -> None:
        # Runs on error paths too: never let a delete failure replace the
        # exception that is already propagating.
        for path in list(self._owned):
            try:
                safe_delete(path)
            except FilesystemFailure:
                log.warning("Could not remove temp file %s", path, exc_info=True)
            self._owned.remove(path)
