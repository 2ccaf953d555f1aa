"""
Token endpoint error taxonomy (RFC 6749 §5.2). Each exception carries the OAuth error code it maps to.
Only the token endpoint orchestrator turns these into HTTP responses.
"""


class OAuthError(Exception):
    error = "invalid_request"
    status_code = 400

    def __init__(self, description: str | None = None):
        super().__init__(description or self.error)
        self.description = description

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequest(OAuthError):
    error = "invalid_request"


class InvalidClient(OAuthError):
    error = "invalid_client"


class ClientNotFound(InvalidClient):
    def __init__(self, client_id: str):
        super().__init__("Unknown client")
        self.client_id = client_id


class Unauthorized(InvalidClient):
    """Client secret did not match."""

    def __init__(self, description: str | None = "Invalid client credentials"):
        super().__init__(description)


class InvalidGrant(OAuthError):
    error = "invalid_grant"


class CodeReplayed(InvalidGrant):
    """An authorization code was presented after it had been consumed."""


class UnauthorizedClient(OAuthError):
    error = "unauthorized_client"


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"


class InvalidScope(OAuthError):
    error = "invalid_scope"


class KeyUnavailable(Exception):
    """No active signing key. Server misconfiguration; never retried."""
