"""Run external command line tools (ffmpeg, ffprobe, img2webp, cjxl, ...).

Both pipes are drained by their own reader thread while the child runs so a
chatty encoder can never block on a full stderr buffer.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from dataclasses import dataclass
from typing import IO, Callable, Sequence

from media.errors import ProcessSpawnError

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProcessResult:
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


# (tag, argv) -> ProcessResult; swapped out for fakes in tests.
Runner = Callable[[str, Sequence[str]], ProcessResult]


def command_to_string(args: Sequence[str]) -> str:
    return shlex.join(str(arg) for arg in args)


def _drain(tag: str, stream: IO[bytes], sink: list[bytes], name: str) -> None:
    for line in iter(stream.readline, b""):
        sink.append(line)
        log.debug("[%s:%s] %s", tag, name, line.decode("utf-8", errors="replace").rstrip())
    stream.close()


def run_process(tag: str, args: Sequence[str]) -> ProcessResult:
    """Run ``args`` to completion and capture its output.

    A non-zero exit is returned, not raised; the caller decides what it
    means. Only a failure to start the program raises ``ProcessSpawnError``.
    """
    argv = [str(arg) for arg in args]
    log.info("[%s] %s", tag, command_to_string(argv))

    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as exc:
        raise ProcessSpawnError(argv[0] if argv else tag, str(exc)) from exc

    assert proc.stdout is not None and proc.stderr is not None
    out_chunks: list[bytes] = []
    err_chunks: list[bytes] = []
    readers = [
        threading.Thread(target=_drain, args=(tag, proc.stdout, out_chunks, "out"), daemon=True),
        threading.Thread(target=_drain, args=(tag, proc.stderr, err_chunks, "err"), daemon=True),
    ]
    for reader in readers:
        reader.start()
    for reader in readers:
        reader.join()
    returncode = proc.wait()

    if returncode != 0:
        log.info("[%s] exited with status %d", tag, returncode)
    return ProcessResult(returncode, b"".join(out_chunks), b"".join(err_chunks))
