"""Error taxonomy for the webhook dispatch pipeline.

Each error carries the HTTP status the gateway answers with. A dropped
event is not an error and has no entry here (see ``webhook.classifier.Drop``).
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for errors that terminate a webhook request."""

    status_code = 500

    def __init__(self, message: str, detail: str | None = None) -> None:
        self.message = message
        self.detail = detail
        super().__init__(message)


class AuthenticationError(GatewayError):
    """Proof-of-origin missing or invalid. Never retried."""

    status_code = 401


class NotConfiguredError(GatewayError):
    """No credential record covers the event's project."""

    status_code = 404


class BuildError(GatewayError):
    """The processing context could not be assembled."""

    status_code = 400


class MalformedEventError(BuildError):
    """The inbound event lacks a field its processing mode requires."""

    status_code = 400


class AgentNotConfiguredError(BuildError):
    """The coding agent's own API key has not been stored."""

    status_code = 500


class DispatchTransportError(GatewayError):
    """The execution unit was unreachable or answered with a malformed body."""

    status_code = 500


class ExecutionFailure(GatewayError):
    """The execution unit ran and reported failure."""

    status_code = 500
