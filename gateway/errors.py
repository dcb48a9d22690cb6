# gateway/errors.py
"""Gateway error taxonomy.

Every per-request failure is raised as a ``GatewayError`` subclass and
rendered by the exception handler in ``main.py`` as a JSON body carrying at
least an ``error`` string.
"""
from typing import Any


class GatewayError(Exception):
    status_code: int = 500

    def __init__(
        self,
        error: str,
        message: str | None = None,
        code: int | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message or error)
        self.error = error
        self.message = message
        self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.message is not None:
            body["message"] = self.message
        if self.code is not None:
            body["code"] = self.code
        return body


class ClientInputError(GatewayError):
    """Malformed client input. Raised before any network call."""

    status_code = 400


class PayloadTooLarge(ClientInputError):
    status_code = 413


class GatewayConstructionError(GatewayError):
    """The gateway failed to build its own upstream URL or request."""

    status_code = 500


class UpstreamUnreachable(GatewayError):
    """Connection failure or timeout talking to an upstream."""

    status_code = 502


class UpstreamProtocolError(GatewayError):
    """Upstream answered, but not with something the gateway can use."""

    status_code = 502


class StreamingFailure(Exception):
    """Upstream broke after the client response was committed.

    Not a GatewayError: there is no status left to send, so it is logged and
    raised out of the body iterator to terminate the connection.
    """


class ClientDisconnected(Exception):
    """The inbound client went away while the upstream call was in flight."""


class ConfigurationError(RuntimeError):
    """Missing or invalid backend configuration. Fatal at startup."""
