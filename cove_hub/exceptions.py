"""
Exceptions raised by the hub core and protocol drivers.

Driver-level failures (connection, auth, pairing, timeouts) are caught by the
driver manager, reflected in the device status and re-raised to the caller.
Storage failures live in ``cove_hub.storage.exceptions``.
"""

from typing import Optional


class HubError(Exception):
    """Base exception for all hub errors."""

    pass


class DriverConnectionError(HubError, ConnectionError):
    """Raised when a driver cannot reach or talk to a device."""

    def __init__(self, device_id: str, detail: str):
        self.device_id = device_id
        self.detail = detail
        super().__init__(f"Connection to {device_id} failed: {detail}")


class AuthError(HubError):
    """Raised when device credentials are invalid or missing."""

    def __init__(self, device_id: str, detail: str = "invalid or missing credentials"):
        self.device_id = device_id
        self.detail = detail
        super().__init__(f"Authentication with {device_id} failed: {detail}")


class AlreadyConnected(HubError):
    """Raised by a driver asked to connect while its session is live."""

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Device already connected: {device_id}")


class PairingError(HubError):
    """Raised when a pairing attempt does not produce a paired device."""

    def __init__(self, reason: str, device_id: Optional[str] = None):
        self.reason = reason
        self.device_id = device_id
        if device_id:
            super().__init__(f"Pairing {device_id} failed: {reason}")
        else:
            super().__init__(f"Pairing failed: {reason}")


class UnsupportedProtocol(HubError):
    """Raised when no driver factory is registered for a protocol tag."""

    def __init__(self, protocol: str):
        self.protocol = protocol
        super().__init__(f"No driver registered for protocol: {protocol}")


class UnknownDevice(HubError):
    """Raised when a device id is not in the registry."""

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Unknown device: {device_id}")


class DriverTimeout(HubError):
    """Raised when a driver operation exceeds its time bound."""

    def __init__(self, device_id: str, operation: str, timeout: float):
        self.device_id = device_id
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            f"Driver {operation} for {device_id} timed out after {timeout:.2f}s"
        )


class InvalidTransition(HubError):
    """Raised when a status change or record update is not permitted."""

    def __init__(self, device_id: str, current: str, requested: str):
        self.device_id = device_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Invalid transition for {device_id}: {current} -> {requested}"
        )


class AlreadyRunning(HubError):
    """Raised when start() is called on a running daemon."""

    def __init__(self):
        super().__init__("Hub daemon is already running")


class DaemonNotReady(HubError):
    """Raised when the daemon cannot serve a request in its current state."""

    def __init__(self, state: str, operation: str):
        self.state = state
        self.operation = operation
        super().__init__(f"Cannot {operation} while daemon is {state}")


class UnknownEntity(HubError):
    """Raised when an entity key is not registered for a device."""

    def __init__(self, device_id: str, key: str):
        self.device_id = device_id
        self.key = key
        super().__init__(f"Unknown entity: {device_id}:{key}")


class InvalidCommand(HubError):
    """Raised when a command value does not fit the entity's capability."""

    def __init__(self, device_id: str, key: str, detail: str):
        self.device_id = device_id
        self.key = key
        self.detail = detail
        super().__init__(f"Invalid command for {device_id}:{key}: {detail}")


class CommandError(HubError):
    """Raised when a device cannot carry out a command."""

    def __init__(self, device_id: str, key: str, detail: str):
        self.device_id = device_id
        self.key = key
        self.detail = detail
        super().__init__(f"Command for {device_id}:{key} failed: {detail}")


class CommandRateLimited(CommandError):
    """Raised when an entity receives more commands than its rate allows."""

    def __init__(self, device_id: str, key: str, limit: int, window: float):
        self.limit = limit
        self.window = window
        super().__init__(device_id, key, f"more than {limit} commands in {window:g}s")
