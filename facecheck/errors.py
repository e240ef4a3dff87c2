"""
Error Types

Exceptions raised by the storage and backend layers. Recoverable failures in the
scanning pipeline are logged and reported through result dictionaries instead.
"""


class FaceCheckError(Exception):
    """Base class for all FaceCheck errors."""


class StorageNotInitializedError(FaceCheckError):
    """A local store was used before initialize() was called."""


class InvalidImageError(FaceCheckError):
    """Image data could not be decoded."""


class RemoteBackendError(FaceCheckError):
    """A call to the hosted backend failed."""

    def __init__(self, operation: str, cause: Exception = None):
        self.operation = operation
        self.cause = cause
        message = f"Backend operation '{operation}' failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
