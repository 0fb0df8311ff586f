"""OAuth error types.

Every protocol-level failure is an ``OAuthError`` carrying its RFC 6749 error
code and the HTTP status the endpoints answer with. Routes serialize these as
``{"error": ..., "error_description": ...}``; anything else that escapes a
handler is an internal fault and becomes a generic 500.
"""


class OAuthError(Exception):
    """Base class for errors reported to OAuth clients."""

    error = "invalid_request"
    status_code = 400

    def __init__(self, description: str = ""):
        super().__init__(description or self.error)
        self.description = description

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequest(OAuthError):
    error = "invalid_request"


class InvalidClient(OAuthError):
    error = "invalid_client"
    status_code = 401


class InvalidGrant(OAuthError):
    error = "invalid_grant"


class InvalidScope(OAuthError):
    error = "invalid_scope"


class UnauthorizedClient(OAuthError):
    error = "unauthorized_client"


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"


class UnsupportedResponseType(OAuthError):
    error = "unsupported_response_type"


class InvalidClientMetadata(OAuthError):
    """RFC 7591 registration error."""

    error = "invalid_client_metadata"


class InvalidRedirectUri(OAuthError):
    """RFC 7591 registration error."""

    error = "invalid_redirect_uri"


class InvalidToken(OAuthError):
    """RFC 6750 bearer token error."""

    error = "invalid_token"
    status_code = 401


class InsufficientScope(OAuthError):
    """RFC 6750 bearer token error."""

    error = "insufficient_scope"
    status_code = 403


class DuplicateClientId(Exception):
    """Raised when a client_id is already registered."""
