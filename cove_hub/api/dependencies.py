"""
FastAPI dependencies and error mapping for the hub API.
"""

from fastapi import HTTPException, Request, status

from ..daemon import HubDaemon
from ..exceptions import (
    AlreadyRunning,
    AuthError,
    CommandError,
    CommandRateLimited,
    DaemonNotReady,
    DriverConnectionError,
    DriverTimeout,
    InvalidCommand,
    InvalidTransition,
    PairingError,
    UnknownDevice,
    UnknownEntity,
    UnsupportedProtocol,
)
from ..storage import StorageError

# Most specific first
_STATUS_CODES: list[tuple[type[Exception], int]] = [
    (UnknownDevice, status.HTTP_404_NOT_FOUND),
    (UnknownEntity, status.HTTP_404_NOT_FOUND),
    (UnsupportedProtocol, status.HTTP_400_BAD_REQUEST),
    (InvalidCommand, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (CommandRateLimited, status.HTTP_429_TOO_MANY_REQUESTS),
    (CommandError, status.HTTP_409_CONFLICT),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (PairingError, status.HTTP_409_CONFLICT),
    (AlreadyRunning, status.HTTP_409_CONFLICT),
    (DriverTimeout, status.HTTP_504_GATEWAY_TIMEOUT),
    (DriverConnectionError, status.HTTP_502_BAD_GATEWAY),
    (AuthError, status.HTTP_502_BAD_GATEWAY),
    (DaemonNotReady, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def get_daemon(request: Request) -> HubDaemon:
    """
    FastAPI dependency that provides the running hub daemon.

    Raises:
        HTTPException: 503 if the application has no daemon attached
    """
    daemon = getattr(request.app.state, "daemon", None)
    if daemon is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Hub daemon is not available",
        )
    return daemon


def to_http_error(error: Exception) -> HTTPException:
    """Translate a hub or storage error into an HTTP error."""
    for exc_type, code in _STATUS_CODES:
        if isinstance(error, exc_type):
            return HTTPException(status_code=code, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
