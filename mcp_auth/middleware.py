"""Bearer token enforcement for protected resources.

`authenticate_bearer()` is the framework-agnostic check; `BearerMiddleware`
adapts it to Starlette. On success the verified `AuthInfo` is attached to
`request.state.auth` for the downstream handler; on failure the handler is
never called.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from mcp_auth.errors import InsufficientScope, InvalidToken, OAuthError
from mcp_auth.provider import OAuthProvider
from mcp_auth.tokens import AuthInfo, format_scopes

if TYPE_CHECKING:
    from starlette.types import ASGIApp


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token from an `Authorization: Bearer <token>` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    if not token or " " in token:
        return None
    return token


def authenticate_bearer(
    provider: OAuthProvider,
    authorization: str | None,
    required_scopes: Iterable[str] = (),
) -> AuthInfo:
    """Verify a bearer credential.

    Raises InvalidToken for a missing, malformed, unknown or expired token
    and InsufficientScope when the token lacks a required scope.
    """
    token = extract_bearer_token(authorization)
    if token is None:
        raise InvalidToken("Missing or malformed bearer token")
    info = provider.verify_access_token(token)
    if info is None:
        raise InvalidToken("Invalid or expired token")
    missing = set(required_scopes) - info.scopes
    if missing:
        raise InsufficientScope(f"Token lacks scope: {format_scopes(missing)}")
    return info


def get_auth_info(request: Request) -> AuthInfo | None:
    """The AuthInfo attached by BearerMiddleware, if any."""
    return getattr(request.state, "auth", None)


class BearerMiddleware(BaseHTTPMiddleware):
    """Rejects requests without a valid bearer token.

    Responds 401 (`invalid_token`) or 403 (`insufficient_scope`) with an
    RFC 6750 `WWW-Authenticate` challenge. Paths starting with any of
    `exclude_paths` pass through untouched.
    """

    def __init__(
        self,
        app: ASGIApp,
        provider: OAuthProvider,
        exclude_paths: list[str] | None = None,
        required_scopes: list[str] | None = None,
        resource_metadata_url: str | None = None,
    ):
        super().__init__(app)
        self.provider = provider
        self.exclude_paths = exclude_paths or ["/health"]
        self.required_scopes = list(required_scopes or [])
        self.resource_metadata_url = resource_metadata_url

    def _www_authenticate_header(self, error: OAuthError | None = None) -> str:
        """Build the WWW-Authenticate challenge (RFC 6750, RFC 9728)."""
        params = []
        if self.resource_metadata_url:
            params.append(f'resource_metadata="{self.resource_metadata_url}"')
        if error is not None:
            params.append(f'error="{error.error}"')
            if isinstance(error, InsufficientScope) and self.required_scopes:
                params.append(f'scope="{format_scopes(self.required_scopes)}"')
        if not params:
            return "Bearer"
        return "Bearer " + ", ".join(params)

    async def dispatch(self, request: Request, call_next):
        """Validate the bearer token before passing the request on."""
        if any(request.url.path.startswith(p) for p in self.exclude_paths):
            return await call_next(request)

        authorization = request.headers.get("authorization")
        try:
            info = authenticate_bearer(
                self.provider, authorization, self.required_scopes
            )
        except OAuthError as e:
            # A request with no credentials at all gets a bare challenge
            challenge_error = e if authorization else None
            return JSONResponse(
                e.to_dict(),
                status_code=e.status_code,
                headers={
                    "WWW-Authenticate": self._www_authenticate_header(
                        challenge_error
                    )
                },
            )

        request.state.auth = info
        return await call_next(request)
