"""HTTP endpoints for the authorization server.

`OAuthRouter` is a stateless translation layer between Starlette requests and
`OAuthProvider` calls:

1. Discovery metadata (RFC 8414, RFC 9728)
2. Authorization endpoint with PKCE (OAuth 2.1)
3. Token endpoint for the authorization_code and refresh_token grants
4. Token revocation (RFC 7009)
5. Dynamic Client Registration (RFC 7591), when enabled

Protocol failures are answered with RFC-shaped `{error, error_description}`
bodies (or an error redirect from /oauth/authorize). Anything else is logged
and answered with a generic 500.
"""

from __future__ import annotations

import base64
import binascii
import functools
import logging
import urllib.parse
from dataclasses import dataclass, field
from typing import Any

from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from mcp_auth.audit import audit_event
from mcp_auth.codes import CODE_CHALLENGE_METHOD, is_valid_code_challenge
from mcp_auth.errors import (
    InvalidClient,
    InvalidClientMetadata,
    InvalidRequest,
    OAuthError,
    UnsupportedGrantType,
    UnsupportedResponseType,
)
from mcp_auth.provider import OAuthProvider
from mcp_auth.tokens import TokenPair, format_scopes, parse_scopes

logger = logging.getLogger(__name__)

AUTHORIZE_PATH = "/oauth/authorize"
TOKEN_PATH = "/oauth/token"
REVOKE_PATH = "/oauth/revoke"
REGISTER_PATH = "/oauth/register"

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

SERVER_ERROR = {
    "error": "server_error",
    "error_description": "Internal server error",
}


def error_response(
    error: OAuthError,
    headers: dict[str, str] | None = None,
    request: Request | None = None,
) -> JSONResponse:
    headers = dict(headers or {})
    # RFC 6749 §5.2: a failed Basic client login gets a Basic challenge
    if isinstance(error, InvalidClient) and request is not None:
        if request.headers.get("authorization", "").lower().startswith("basic "):
            headers["WWW-Authenticate"] = 'Basic realm="oauth"'
    return JSONResponse(error.to_dict(), status_code=error.status_code, headers=headers)


def oauth_endpoint(handler):
    """Turn stray OAuthErrors into JSON and internal faults into a 500."""

    @functools.wraps(handler)
    async def wrapper(self, request: Request) -> Response:
        try:
            return await handler(self, request)
        except OAuthError as e:
            return error_response(e, request=request)
        except Exception:
            logger.exception(
                "Unhandled error in %s %s", request.method, request.url.path
            )
            return JSONResponse(SERVER_ERROR, status_code=500)

    return wrapper


def build_redirect_url(redirect_uri: str, params: dict[str, str]) -> str:
    """Append params to redirect_uri, keeping any query it already has."""
    parsed = urllib.parse.urlparse(redirect_uri)
    query_params = urllib.parse.parse_qs(parsed.query)
    for key, value in params.items():
        query_params[key] = [value]
    new_query = urllib.parse.urlencode(query_params, doseq=True)
    return urllib.parse.urlunparse(
        (
            parsed.scheme,
            parsed.netloc,
            parsed.path,
            parsed.params,
            new_query,
            parsed.fragment,
        )
    )


def _string_params(data: Any) -> dict[str, str]:
    """Keep only string-valued parameters; anything else counts as absent."""
    if not isinstance(data, dict):
        raise InvalidRequest("Request body must be an object")
    return {k: v for k, v in data.items() if isinstance(v, str)}


async def read_params(request: Request) -> dict[str, str]:
    """Read OAuth parameters from the query string (GET) or body (POST).

    POST bodies may be form-encoded or JSON.
    """
    if request.method == "GET":
        return dict(request.query_params)
    try:
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            data = await request.json()
        else:
            form = await request.form()
            data = dict(form)
    except (ValueError, MultiPartException, HTTPException):
        raise InvalidRequest("Invalid request body")
    return _string_params(data)


def client_credentials(
    request: Request, params: dict[str, str]
) -> tuple[str | None, str | None]:
    """Extract client credentials (client_secret_basic or client_secret_post)."""
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("basic "):
        try:
            decoded = base64.b64decode(auth_header[6:], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            raise InvalidClient("Malformed Basic authorization header")
        client_id, sep, client_secret = decoded.partition(":")
        if not sep:
            raise InvalidClient("Malformed Basic authorization header")
        client_id = urllib.parse.unquote_plus(client_id)
        client_secret = urllib.parse.unquote_plus(client_secret)
        if params.get("client_id") and params["client_id"] != client_id:
            raise InvalidRequest("client_id does not match Basic credentials")
        return client_id, client_secret
    return params.get("client_id"), params.get("client_secret")


def _require(params: dict[str, str], *names: str) -> None:
    for name in names:
        if not params.get(name):
            raise InvalidRequest(f"{name} required")


@dataclass
class OAuthRouter:
    """Mounts the OAuth endpoints for an `OAuthProvider`.

    Usage:
        router = OAuthRouter(provider, issuer_url="https://auth.example.com")
        app = Starlette(routes=router.get_routes())
    """

    provider: OAuthProvider
    issuer_url: str
    resource_url: str | None = None
    scopes_supported: list[str] = field(default_factory=list)
    service_documentation: str | None = None
    allow_dynamic_registration: bool = True

    def __post_init__(self):
        self.issuer_url = self.issuer_url.rstrip("/")
        if self.resource_url:
            self.resource_url = self.resource_url.rstrip("/")

    @property
    def resource(self) -> str:
        return self.resource_url or self.issuer_url

    def get_excluded_paths(self) -> list[str]:
        """Paths the bearer middleware must leave public."""
        return ["/health", "/.well-known/", "/oauth/"]

    def get_resource_metadata_url(self) -> str:
        """Protected Resource Metadata URL advertised in WWW-Authenticate."""
        return f"{self.issuer_url}/.well-known/oauth-protected-resource"

    def authorization_server_metadata(self) -> dict[str, Any]:
        """RFC 8414 metadata document."""
        auth_methods = ["client_secret_post", "client_secret_basic"]
        metadata: dict[str, Any] = {
            "issuer": self.issuer_url,
            "authorization_endpoint": f"{self.issuer_url}{AUTHORIZE_PATH}",
            "token_endpoint": f"{self.issuer_url}{TOKEN_PATH}",
            "revocation_endpoint": f"{self.issuer_url}{REVOKE_PATH}",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": [CODE_CHALLENGE_METHOD],
            "token_endpoint_auth_methods_supported": auth_methods,
            "revocation_endpoint_auth_methods_supported": auth_methods,
            "scopes_supported": list(self.scopes_supported),
            "service_documentation": self.service_documentation,
        }
        if self.allow_dynamic_registration:
            metadata["registration_endpoint"] = f"{self.issuer_url}{REGISTER_PATH}"
        return metadata

    def protected_resource_metadata(self) -> dict[str, Any]:
        """RFC 9728 metadata document."""
        return {
            "resource": self.resource,
            "authorization_servers": [self.issuer_url],
            "scopes_supported": list(self.scopes_supported),
            "bearer_methods_supported": ["header"],
        }

    def get_routes(self) -> list[Route]:
        routes = [
            Route(
                "/.well-known/oauth-authorization-server",
                self.oauth_metadata,
                methods=["GET"],
            ),
            Route(
                "/.well-known/oauth-protected-resource",
                self.oauth_protected_resource,
                methods=["GET"],
            ),
            Route(AUTHORIZE_PATH, self.authorize, methods=["GET", "POST"]),
            Route(TOKEN_PATH, self.token, methods=["POST"]),
            Route(REVOKE_PATH, self.revoke, methods=["POST"]),
        ]
        if self.allow_dynamic_registration:
            routes.append(Route(REGISTER_PATH, self.register, methods=["POST"]))
        return routes

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    @oauth_endpoint
    async def oauth_metadata(self, request: Request) -> JSONResponse:
        return JSONResponse(self.authorization_server_metadata())

    @oauth_endpoint
    async def oauth_protected_resource(self, request: Request) -> JSONResponse:
        return JSONResponse(self.protected_resource_metadata())

    # -------------------------------------------------------------------------
    # Authorization endpoint
    # -------------------------------------------------------------------------

    @oauth_endpoint
    async def authorize(self, request: Request) -> Response:
        """Handle an authorization request and redirect back to the client.

        There is no consent screen: a valid request is approved immediately.
        Errors go back to the client's redirect_uri, except when the client
        or redirect_uri cannot be trusted, which gets a 400 JSON response.
        """
        params = await read_params(request)
        client_id = params.get("client_id")
        redirect_uri = params.get("redirect_uri")
        state = params.get("state")

        if not self.provider.is_safe_redirect(client_id, redirect_uri):
            audit_event(
                "oauth.authorization.denied",
                "failure",
                client_id=client_id,
                error="invalid_request",
                reason="unknown client or unregistered redirect_uri",
            )
            raise InvalidRequest("Unknown client or unregistered redirect_uri")

        try:
            if params.get("response_type") != "code":
                raise UnsupportedResponseType("response_type must be 'code'")
            code_challenge = params.get("code_challenge")
            if not code_challenge:
                raise InvalidRequest("code_challenge required (PKCE)")
            if not is_valid_code_challenge(code_challenge):
                raise InvalidRequest("code_challenge is malformed")
            method = params.get("code_challenge_method")
            if method != CODE_CHALLENGE_METHOD:
                raise InvalidRequest("code_challenge_method must be S256")

            record = self.provider.handle_authorize(
                client_id,
                redirect_uri,
                code_challenge,
                parse_scopes(params.get("scope")),
                method,
            )
        except OAuthError as e:
            result = {"error": e.error, "error_description": e.description}
        else:
            result = {"code": record.code}

        if state:
            result["state"] = state
        return RedirectResponse(
            url=build_redirect_url(redirect_uri, result), status_code=302
        )

    # -------------------------------------------------------------------------
    # Token endpoint
    # -------------------------------------------------------------------------

    @oauth_endpoint
    async def token(self, request: Request) -> JSONResponse:
        """Handle authorization_code and refresh_token grants."""
        try:
            params = await read_params(request)
            grant_type = params.get("grant_type")
            if grant_type == "authorization_code":
                pair = await self._authorization_code_grant(request, params)
            elif grant_type == "refresh_token":
                pair = await self._refresh_token_grant(request, params)
            elif not grant_type:
                raise InvalidRequest("grant_type required")
            else:
                raise UnsupportedGrantType(f"Unsupported: {grant_type}")
        except OAuthError as e:
            return error_response(e, headers=NO_STORE_HEADERS, request=request)

        return JSONResponse(
            pair.to_response(),
            headers=NO_STORE_HEADERS,
        )

    async def _authorization_code_grant(
        self, request: Request, params: dict[str, str]
    ) -> TokenPair:
        client_id, client_secret = client_credentials(request, params)
        _require(params, "code", "redirect_uri", "code_verifier")
        return await self.provider.exchange_code(
            client_id,
            client_secret,
            params["code"],
            params["code_verifier"],
            params["redirect_uri"],
        )

    async def _refresh_token_grant(
        self, request: Request, params: dict[str, str]
    ) -> TokenPair:
        client_id, client_secret = client_credentials(request, params)
        _require(params, "refresh_token")
        scopes = parse_scopes(params.get("scope")) or None
        return await self.provider.refresh_token(
            client_id, client_secret, params["refresh_token"], scopes
        )

    # -------------------------------------------------------------------------
    # Revocation endpoint
    # -------------------------------------------------------------------------

    @oauth_endpoint
    async def revoke(self, request: Request) -> Response:
        """Revoke a token (RFC 7009).

        Answers 200 whether or not the token existed, so the status code
        never reveals token validity.
        """
        params = await read_params(request)
        client_id, client_secret = client_credentials(request, params)
        _require(params, "token")
        await self.provider.authenticate_client(client_id, client_secret)
        self.provider.revoke(
            params["token"], params.get("token_type_hint"), client_id
        )
        return Response(status_code=200, headers=NO_STORE_HEADERS)

    # -------------------------------------------------------------------------
    # Dynamic Client Registration
    # -------------------------------------------------------------------------

    @oauth_endpoint
    async def register(self, request: Request) -> JSONResponse:
        """Handle Dynamic Client Registration (RFC 7591)."""
        try:
            body = await request.json()
        except ValueError:
            raise InvalidRequest("Invalid JSON")
        if not isinstance(body, dict):
            raise InvalidClientMetadata("Client metadata must be a JSON object")

        redirect_uris = body.get("redirect_uris")
        if not isinstance(redirect_uris, list):
            raise InvalidClientMetadata("redirect_uris must be a list")

        scope = body.get("scope")
        if scope is not None and not isinstance(scope, str):
            raise InvalidClientMetadata("scope must be a space-delimited string")

        grant_types = body.get("grant_types")
        if grant_types is not None and not isinstance(grant_types, list):
            raise InvalidClientMetadata("grant_types must be a list")

        client_name = body.get("client_name")
        if client_name is not None and not isinstance(client_name, str):
            raise InvalidClientMetadata("client_name must be a string")

        auth_method = body.get("token_endpoint_auth_method", "client_secret_post")
        if auth_method not in ("client_secret_post", "client_secret_basic"):
            raise InvalidClientMetadata(
                f"Unsupported token_endpoint_auth_method: {auth_method}"
            )

        registered = await self.provider.register_client(
            redirect_uris=redirect_uris,
            scopes=parse_scopes(scope) if scope is not None else None,
            client_name=client_name,
            grant_types=grant_types,
        )
        client = registered.client
        return JSONResponse(
            {
                "client_id": client.client_id,
                "client_secret": registered.client_secret,
                "client_id_issued_at": int(client.issued_at),
                "client_secret_expires_at": 0,
                "redirect_uris": sorted(client.redirect_uris),
                "client_name": client.client_name,
                "scope": format_scopes(client.allowed_scopes),
                "grant_types": sorted(client.grant_types),
                "response_types": ["code"],
                "token_endpoint_auth_method": auth_method,
            },
            status_code=201,
            headers=NO_STORE_HEADERS,
        )
