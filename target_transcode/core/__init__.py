"""Core search, chunking and queue modules."""

from .errors import (
    TranscodeError,
    MeasurementFailed,
    EncodeFailed,
    TargetUnreachable,
    SceneDetectionUnavailable,
    PartialChunkFailure,
    TaskCancelled,
    TaskConfigError,
    TaskStateError,
    UnknownTask,
)

__all__ = [
    "TranscodeError",
    "MeasurementFailed",
    "EncodeFailed",
    "TargetUnreachable",
    "SceneDetectionUnavailable",
    "PartialChunkFailure",
    "TaskCancelled",
    "TaskConfigError",
    "TaskStateError",
    "UnknownTask",
]
