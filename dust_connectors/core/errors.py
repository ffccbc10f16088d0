from __future__ import annotations


class ConnectorsError(Exception):
    """Base error for the connectors service."""


class ConfigurationError(ConnectorsError):
    """Missing or invalid required environment/secret."""


class InvalidRequestError(ConnectorsError):
    """Caller supplied an invalid request."""


class NotFoundError(ConnectorsError):
    """Connector or provider resource does not exist."""


class ConnectorStateError(ConnectorsError):
    """Operation not allowed in the connector's current state."""


class ProviderError(ConnectorsError):
    """Non-transient provider failure (bad request, unknown provider error)."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransientProviderError(ProviderError):
    """Network, rate-limit or 5xx failure; safe to retry."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.status_code = status_code
        self.retry_after = retry_after


class AuthExpiredError(ProviderError):
    """Credential no longer valid; the connector needs re-authorization."""


class OAuthTargetMismatchError(InvalidRequestError):
    """A new connection points at a different external account."""


class ExternalRevokeError(ConnectorsError):
    """External authorization revoke failed after local rows were removed."""

    def __init__(self, message: str, *, connection_id: str, team_id: str | None = None) -> None:
        super().__init__(message)
        self.connection_id = connection_id
        self.team_id = team_id


class ProviderNotSupportedError(InvalidRequestError):
    """The requested connector provider is not implemented by this service."""
