"""oauthloop exception hierarchy.

All oauthloop exceptions inherit from OAuthLoopError. Failures of an
authorization, exchange or refresh flow are FlowError variants and are
delivered through an AsyncResultHandle rather than raised; the closed set
of variants is tagged with an ErrorKind so callers can dispatch on it.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Tag identifying the variant of a FlowError."""

    PROTOCOL = "protocol"
    NETWORK = "network"
    CANCELED = "canceled"


class OAuthLoopError(Exception):
    """Base exception for all oauthloop errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize oauthloop exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (status_code, flow_id, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


class InvalidStateError(OAuthLoopError):
    """An object was used in a state that does not allow the operation.

    Raised when reading the result of a pending handle, starting a
    coordinator twice, or binding a redirect server twice.
    """


class FlowError(OAuthLoopError):
    """Failure of an authorization, exchange or refresh flow."""

    kind: ErrorKind


class ProtocolError(FlowError):
    """The provider callback was an error, incomplete, or had a foreign state."""

    kind = ErrorKind.PROTOCOL


class NetworkError(FlowError):
    """Transport failure or non-2xx response from the token endpoint.

    A ``status_code`` of ``None`` means no HTTP response was received.
    """

    kind = ErrorKind.NETWORK

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider_error: str | None = None,
        provider_error_description: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize network error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        status_code : int, optional
            HTTP status code, or None for a transport-level failure.
        provider_error : str, optional
            The ``error`` field of the provider's JSON error body.
        provider_error_description : str, optional
            The ``error_description`` field of the provider's JSON error body.
        **context : Any
            Additional context.
        """
        super().__init__(message, status_code=status_code, **context)
        self.status_code = status_code
        self.provider_error = provider_error
        self.provider_error_description = provider_error_description


class CanceledError(FlowError):
    """The flow was disposed, canceled, or timed out before completing."""

    kind = ErrorKind.CANCELED
