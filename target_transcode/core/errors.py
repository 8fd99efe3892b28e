"""
Error taxonomy for target_transcode.

Fatal errors (MeasurementFailed, EncodeFailed, PartialChunkFailure) move a
task to FAILED. SceneDetectionUnavailable is recovered inside the scene
splitter. TargetUnreachable is never raised out of the search; it is attached
to the search result as a warning.
"""

from typing import List, Optional


class TranscodeError(Exception):
    """Base exception for target_transcode errors"""
    def __init__(self, message, command: Optional[List[str]] = None, output: Optional[str] = None):
        self.message = message
        self.command = command
        self.output = output
        super().__init__(self.message)


class MeasurementFailed(TranscodeError): pass
class EncodeFailed(TranscodeError): pass
class SceneDetectionUnavailable(TranscodeError): pass
class TaskCancelled(TranscodeError): pass


class TargetUnreachable(TranscodeError):
    """No quality parameter within bounds reached the target score."""
    def __init__(self, message, target: float, fallback: int, best_score: Optional[float] = None):
        super().__init__(message)
        self.target = target
        self.fallback = fallback
        self.best_score = best_score


class PartialChunkFailure(TranscodeError):
    """A chunk of a chunked task failed; the whole task is abandoned."""
    def __init__(self, message, chunk_index: int, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.chunk_index = chunk_index
        self.cause = cause


class TaskConfigError(TranscodeError, ValueError): pass
class TaskStateError(TranscodeError): pass


class UnknownTask(TranscodeError, KeyError):
    def __str__(self):
        return self.message
