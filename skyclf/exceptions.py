"""
Error taxonomy shared by the registry, the inference engine and the
training orchestrator.

"Not ready" (no model loaded, nothing trained yet) is deliberately absent:
it is an expected state and is reported as ``None``, never raised. A
non-zero training exit code is recorded on the job, never raised either.
"""

from typing import Optional


class SkyClfError(Exception):
    """Base exception for all SkyClf errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConflictError(SkyClfError):
    """Raised when a training start/stop request contradicts the current state."""

    pass


class RemoteFailure(SkyClfError):
    """Raised when a container platform call fails."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class ModelDataError(SkyClfError):
    """Raised when an exported model version is malformed."""

    pass


class ImagePreprocessError(SkyClfError):
    """Raised when an input image cannot be turned into a model tensor."""

    pass


class InferenceError(SkyClfError):
    """Raised when the loaded session fails to run."""

    pass


class EngineClosedError(SkyClfError):
    """Raised when the inference engine is used after close()."""

    pass
