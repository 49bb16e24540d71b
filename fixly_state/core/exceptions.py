"""Coordination layer exception hierarchy."""


class FixlyStateError(Exception):
    """Base exception for all coordination-layer errors."""


class StoreUnavailable(FixlyStateError):
    """Key-value store could not be reached or timed out."""

    def __init__(self, operation: str, key: str = "", reason: str = ""):
        self.operation = operation
        self.key = key
        self.reason = reason
        message = f"Store unavailable during {operation}"
        if key:
            message += f" ({key})"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class InvalidKeyComponent(FixlyStateError, ValueError):
    """A key component is empty or contains the namespace separator."""
