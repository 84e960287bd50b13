from .errors import (
    GraphMemoryError,
    InternalError,
    NotFoundError,
    OperationFailedError,
    ValidationFailedError,
)

__all__ = [
    "GraphMemoryError",
    "InternalError",
    "NotFoundError",
    "OperationFailedError",
    "ValidationFailedError",
]
