from __future__ import annotations


class ManagerError(Exception):
    """Base class for all relay manager errors."""


class ValidationError(ManagerError):
    """User input was malformed or incomplete."""


class TransportError(ManagerError):
    """A registry, cloud session or storage backend could not be reached."""


class CorruptCacheError(ManagerError):
    """Persisted cache data could not be decoded."""


class NotConnectedError(ManagerError):
    """No cloud account is connected for this session."""


class ProvisionError(ManagerError):
    """Provisioning a managed server did not finish."""

    def __init__(self, message: str, server_id: str | None = None):
        super().__init__(message)
        self.server_id = server_id


class ProvisionTimeoutError(ProvisionError):
    """No install progress was observed in time."""


class ProvisionFailedError(ProvisionError):
    """The cloud host reported that installation failed."""
