from .api import (
    ApiClient,
    ApiError,
    AuthError,
    BusyError,
    ConflictError,
    NotFoundError,
    TransportError,
    ValidationError,
)

__all__ = [
    "ApiClient",
    "ApiError",
    "AuthError",
    "BusyError",
    "ConflictError",
    "NotFoundError",
    "TransportError",
    "ValidationError",
]
