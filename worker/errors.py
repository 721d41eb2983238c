"""
Exception types for the notification worker.

Only ConfigError is allowed to reach the process boundary. Everything else is
caught inside the pipeline and ends up in the audit log.
"""

from typing import Optional


class ComTowerError(Exception):
    """Base class for worker errors."""


class ConfigError(ComTowerError):
    """Settings are missing or unusable. Fatal at startup."""


class BridgeError(ComTowerError):
    """The Signal bridge rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SendTimeout(BridgeError):
    """A bridge call exceeded its timeout."""


class SendCancelled(ComTowerError):
    """A send was superseded by a newer event for the same recipient."""
