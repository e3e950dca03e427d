from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class ProductServiceError(Exception):
    """Base exception for the product service."""


class ConfigurationError(ProductServiceError):
    """Raised when the environment is missing or holds an invalid setting."""


class ConnectionManagerError(ProductServiceError):
    """Base exception for datastore connection failures."""


class TransientConnectionError(ConnectionManagerError):
    """A single connection attempt failed. Retried by the manager."""

    def __init__(self, attempt: int, reason: str):
        super().__init__(f"Connection attempt {attempt} failed: {reason}")
        self.attempt = attempt
        self.reason = reason


class FatalConnectionError(ConnectionManagerError):
    """Every connection attempt failed. The process cannot continue."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(f"All {attempts} connection attempts failed")
        self.attempts = attempts
        self.last_error = last_error


class PostConnectDriverError(ConnectionManagerError):
    """The deployment lost every writable server after the connection was
    established.

    Recorded on the manager and surfaced through /health only.
    """

    def __init__(self, topology_type: Optional[str], reason: str):
        super().__init__(f"Lost connection to {topology_type or 'deployment'}: {reason}")
        self.topology_type = topology_type
        self.reason = reason


class DatabaseUnavailableError(ConnectionManagerError):
    """The datastore was needed while no connection was established."""


async def database_unavailable_handler(request: Request, exc: DatabaseUnavailableError):
    return JSONResponse(status_code=503, content={"detail": "Database unavailable"})
