from __future__ import annotations


class ControllerError(RuntimeError):
    """Base class for errors raised by the ingress controller."""


class ConfigError(ControllerError):
    """Raised when the controller configuration is invalid."""


class ProviderSyncError(ControllerError):
    """Raised when the cloud resource inventory could not be retrieved.

    Fatal on the startup pass; retried by the provider-sync queue afterwards.
    """


class ShutdownInProgressError(ControllerError):
    """Raised by ``stop()`` when a previous shutdown is already underway."""


class ChannelClosed(ControllerError):
    """Raised by ``RingChannel.get`` once the channel is closed and drained."""
