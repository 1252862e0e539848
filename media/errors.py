"""Errors raised by the media pipeline.

Every error carries a human readable message; the command layer shows
``str(exc)`` to the invoking user.
"""

from __future__ import annotations


class MediaError(RuntimeError):
    """Base class for expected media pipeline failures."""


class MissingInputError(MediaError):
    pass


class UnsupportedMediaType(MediaError):
    def __init__(self, message: str = "Unsupported file type.") -> None:
        super().__init__(message)


class ProcessSpawnError(MediaError):
    """The external tool could not be started at all (missing binary, permissions)."""

    def __init__(self, program: str, reason: str) -> None:
        super().__init__(f"Failed to execute {program}: {reason}")
        self.program = program


class ProbeFailure(MediaError):
    def __init__(self, message: str, *, stderr: str = "") -> None:
        super().__init__(f"{message}\n{stderr}".strip() if stderr else message)
        self.stderr = stderr


class EncodeFailure(MediaError):
    def __init__(self, message: str, *, stderr: str = "") -> None:
        super().__init__(f"{message}\n{stderr}".strip() if stderr else message)
        self.stderr = stderr


class FilesystemFailure(MediaError):
    pass


class RetryBudgetExhausted(MediaError):
    def __init__(
        self,
        kind: str,
        attempts: int,
        *,
        last_size: int | None = None,
        last_error: MediaError | None = None,
    ) -> None:
        message = f"Ran out of attempts while compressing {kind} ({attempts} tried)."
        if last_size is not None:
            message += f" Last output was {last_size} bytes."
        if last_error is not None:
            message += f"\nLast error: {last_error}"
        super().__init__(message)
        self.kind = kind
        self.attempts = attempts
        self.last_size = last_size
        self.last_error = last_error
