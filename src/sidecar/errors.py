"""Base exceptions for the pairing sidecar."""

from typing import Any


class SidecarError(Exception):
    """Base exception for all sidecar errors."""

    pass


class ConfigError(SidecarError):
    """Configuration file contains an invalid value."""

    pass


class ConfigMissingError(SidecarError):
    """Bearer token not present in the environment."""

    pass


class ChannelError(SidecarError):
    """Gateway connection could not be opened or failed."""

    pass


class ChannelClosedError(ChannelError):
    """Gateway connection closed while waiting on it."""

    pass


class RpcTimeoutError(SidecarError):
    """No matching response or event arrived in time."""

    pass


class RpcError(SidecarError):
    """Gateway answered a request with ok=false."""

    def __init__(self, method: str, error: Any):
        self.method = method
        self.error = error
        super().__init__(f"RPC error from {method}: {error}")


class HandshakeError(SidecarError):
    """Handshake could not produce a usable session."""

    pass


class AuthDeniedError(HandshakeError):
    """Connect succeeded but no scopes were granted."""

    pass


class CryptoError(SidecarError):
    """Key handling or signing failed."""

    pass
