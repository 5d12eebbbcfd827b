"""Exceptions raised by :mod:`xsense_cloud`."""

from __future__ import annotations


class XSenseError(Exception):
    """Base class for all errors raised by this package."""


class BootstrapError(XSenseError):
    """Raised when the vendor client configuration cannot be fetched or decoded."""


class AuthenticationFailed(XSenseError):
    """Raised when the password handshake with the identity provider fails."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Authentication failed: {reason}")
        self.reason = reason


class RefreshFailed(XSenseError):
    """Raised when the session cannot be refreshed.

    The session is discarded; callers must :meth:`~CredentialManager.login`
    again.
    """

    def __init__(self, cause: BaseException | str) -> None:
        super().__init__(f"Session refresh failed: {cause}")
        self.cause = cause


class ApiError(XSenseError):
    """Raised when the API answers with a non-success result code."""

    def __init__(self, code: object, message: str) -> None:
        super().__init__(f"{message} (code: {code})")
        self.code = code
        self.message = message


class FormatError(XSenseError, ValueError):
    """Raised for malformed secrets or payloads."""


class TransportError(XSenseError, ConnectionError):
    """Raised when the MQTT broker connection cannot be established.

    Carries the last :class:`aiomqtt.MqttError` message so callers do not
    need to import ``aiomqtt`` to report streaming failures.
    """
