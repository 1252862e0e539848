"""Media conversion package."""

from media.config import MediaConfig
from media.delivery import decide_delivery, effective_ceiling
from media.engine import MediaConverter
from media.errors import (
    EncodeFailure,
    FilesystemFailure,
    MediaError,
    MissingInputError,
    ProbeFailure,
    ProcessSpawnError,
    RetryBudgetExhausted,
    UnsupportedMediaType,
)
from media.models import ConversionAttempt, ConversionResult, Delivery, MediaType, StreamInfo
from media.process import ProcessResult, run_process

__all__ = [
    "ConversionAttempt",
    "ConversionResult",
    "Delivery",
    "EncodeFailure",
    "FilesystemFailure",
    "MediaConfig",
    "MediaConverter",
    "MediaError",
    "MediaType",
    "MissingInputError",
    "ProbeFailure",
    "ProcessResult",
    "ProcessSpawnError",
    "RetryBudgetExhausted",
    "StreamInfo",
    "UnsupportedMediaType",
    "decide_delivery",
    "effective_ceiling",
    "run_process",
]
