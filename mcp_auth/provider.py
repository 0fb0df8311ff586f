"""OAuth 2.1 authorization server state machine.

`OAuthProvider` composes the three stores and applies the protocol rules of
the authorization-code grant (with PKCE) and the refresh-token grant:

    Issued --consume--> Consumed --issue tokens--> TokenIssued

There is no way back from Consumed. A code that was consumed by a request
which later failed (wrong client, redirect_uri mismatch) stays consumed and
the client has to restart the authorization flow.

Client authentication runs bcrypt, which is CPU bound, so it is pushed to a
worker thread to keep the event loop responsive. Store mutations themselves
are synchronous and lock-protected.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from starlette.concurrency import run_in_threadpool

from mcp_auth.audit import audit_event, safe_token_id
from mcp_auth.clients import (
    Client,
    ClientRegistry,
    RegisteredClient,
    redirect_uri_problem,
)
from mcp_auth.codes import (
    CODE_CHALLENGE_METHOD,
    AuthorizationCode,
    AuthorizationCodeStore,
)
from mcp_auth.errors import (
    InvalidClient,
    InvalidClientMetadata,
    InvalidGrant,
    InvalidRedirectUri,
    InvalidRequest,
    InvalidScope,
    UnauthorizedClient,
)
from mcp_auth.models import SUPPORTED_GRANT_TYPES, AuthServerConfig
from mcp_auth.tokens import AuthInfo, TokenPair, TokenStore

logger = logging.getLogger(__name__)


@dataclass
class OAuthProvider:
    """Orchestrates client, code and token stores.

    Usage:
        provider = OAuthProvider.from_config(config)
        code = provider.handle_authorize(client_id, redirect_uri, challenge, [])
        pair = await provider.exchange_code(
            client_id, client_secret, code.code, verifier, redirect_uri
        )
        info = provider.verify_access_token(pair.access_token.token)
    """

    clients: ClientRegistry
    codes: AuthorizationCodeStore
    tokens: TokenStore
    # Scopes a dynamically registered client may ask for
    scopes_supported: list[str] = field(default_factory=list)

    @classmethod
    def from_config(
        cls,
        config: AuthServerConfig,
        clock: Callable[[], float] = time.time,
    ) -> OAuthProvider:
        """Build a provider and register the configured clients."""
        registry = ClientRegistry(bcrypt_rounds=config.bcrypt_rounds)
        for client_id, client_config in config.clients.items():
            if client_config.client_secret_hash:
                registry.add(
                    Client(
                        client_id=client_id,
                        hashed_secret=client_config.client_secret_hash,
                        redirect_uris=frozenset(client_config.redirect_uris),
                        allowed_scopes=frozenset(client_config.scopes),
                        client_name=client_config.client_name,
                        grant_types=frozenset(client_config.grant_types),
                    )
                )
            elif client_config.client_secret:
                registry.register(
                    client_id=client_id,
                    client_secret=client_config.client_secret,
                    redirect_uris=client_config.redirect_uris,
                    scopes=client_config.scopes,
                    client_name=client_config.client_name,
                    grant_types=client_config.grant_types,
                )
            else:
                raise ValueError(f"Client '{client_id}' has no secret configured")

        return cls(
            clients=registry,
            codes=AuthorizationCodeStore(ttl=config.code_ttl, clock=clock),
            tokens=TokenStore(
                access_token_ttl=config.access_token_ttl,
                refresh_token_ttl=config.refresh_token_ttl,
                clock=clock,
            ),
            scopes_supported=list(config.scopes_supported),
        )

    # -------------------------------------------------------------------------
    # Client authentication
    # -------------------------------------------------------------------------

    async def authenticate_client(
        self, client_id: str | None, client_secret: str | None
    ) -> str:
        """Verify client credentials off the event loop.

        Returns the client_id; raises InvalidClient on any failure.
        """
        ok = await run_in_threadpool(self.clients.authenticate, client_id, client_secret)
        if not ok:
            raise InvalidClient("Client authentication failed")
        return client_id

    def is_safe_redirect(self, client_id: str | None, redirect_uri: str | None) -> bool:
        """Whether errors for this request may be sent to redirect_uri."""
        if not client_id:
            return False
        return self.clients.validate_redirect_uri(client_id, redirect_uri)

    # -------------------------------------------------------------------------
    # Authorization code grant
    # -------------------------------------------------------------------------

    def handle_authorize(
        self,
        client_id: str | None,
        redirect_uri: str | None,
        code_challenge: str | None,
        scopes: Iterable[str] = (),
        code_challenge_method: str = CODE_CHALLENGE_METHOD,
    ) -> AuthorizationCode:
        """Validate an authorization request and issue a code."""
        requested = list(scopes)
        try:
            if not client_id or self.clients.get(client_id) is None:
                raise InvalidRequest("Unknown client_id")
            if not self.clients.validate_redirect_uri(client_id, redirect_uri):
                raise InvalidRequest("redirect_uri is not registered for this client")
            if not self.clients.allows_grant(client_id, "authorization_code"):
                raise UnauthorizedClient(
                    "Client is not allowed to use the authorization_code grant"
                )
            if not code_challenge:
                raise InvalidRequest("code_challenge required (PKCE)")
            if code_challenge_method != CODE_CHALLENGE_METHOD:
                raise InvalidRequest("code_challenge_method must be S256")
            granted = self.clients.resolve_scopes(client_id, requested)
            if granted is None:
                raise InvalidScope("One or more requested scopes are not allowed")
        except (InvalidRequest, UnauthorizedClient, InvalidScope) as e:
            audit_event(
                "oauth.authorization.denied",
                "failure",
                client_id=client_id,
                error=e.error,
                scopes=requested,
            )
            raise

        record = self.codes.issue(client_id, redirect_uri, code_challenge, granted)
        audit_event(
            "oauth.authorization.granted",
            client_id=client_id,
            code=safe_token_id(record.code),
            scopes=granted,
        )
        return record

    async def exchange_code(
        self,
        client_id: str | None,
        client_secret: str | None,
        code: str | None,
        code_verifier: str | None,
        redirect_uri: str | None,
    ) -> TokenPair:
        """Exchange an authorization code for an access/refresh token pair.

        Steps run in order and any failure aborts without issuing tokens:
        authenticate the client, consume the code (PKCE check), check the
        code belongs to this client, check the redirect_uri binding. The
        last two run after consumption, so a failure there burns the code.
        """
        try:
            await self.authenticate_client(client_id, client_secret)
            record = self.codes.consume(code, code_verifier)
            if record.client_id != client_id:
                raise InvalidGrant("Invalid authorization code")
            if redirect_uri != record.redirect_uri:
                raise InvalidGrant("redirect_uri does not match authorization request")
        except (InvalidClient, InvalidGrant) as e:
            audit_event(
                "oauth.token.failed",
                "failure",
                client_id=client_id,
                grant_type="authorization_code",
                error=e.error,
                reason=e.description,
            )
            raise

        pair = self.tokens.issue_pair(record.client_id, record.scopes)
        audit_event(
            "oauth.token.issued",
            client_id=client_id,
            grant_type="authorization_code",
            token=safe_token_id(pair.access_token.token),
            scopes=pair.access_token.scopes,
        )
        return pair

    # -------------------------------------------------------------------------
    # Refresh token grant
    # -------------------------------------------------------------------------

    async def refresh_token(
        self,
        client_id: str | None,
        client_secret: str | None,
        refresh_token: str | None,
        scopes: Iterable[str] | None = None,
    ) -> TokenPair:
        """Rotate a refresh token into a new access/refresh pair.

        The refresh token must belong to the authenticating client; that is
        checked inside the atomic rotation so a foreign client cannot burn
        someone else's token.
        """
        try:
            await self.authenticate_client(client_id, client_secret)
            if not self.clients.allows_grant(client_id, "refresh_token"):
                raise UnauthorizedClient(
                    "Client is not allowed to use the refresh_token grant"
                )
            pair = self.tokens.rotate_refresh_token(
                refresh_token, client_id=client_id, scopes=scopes
            )
        except (InvalidClient, InvalidGrant, InvalidScope, UnauthorizedClient) as e:
            audit_event(
                "oauth.token.refresh_failed",
                "failure",
                client_id=client_id,
                token=safe_token_id(refresh_token),
                error=e.error,
            )
            raise

        audit_event(
            "oauth.token.refreshed",
            client_id=client_id,
            old_token=safe_token_id(refresh_token),
            token=safe_token_id(pair.access_token.token),
            scopes=pair.access_token.scopes,
        )
        return pair

    # -------------------------------------------------------------------------
    # Resource server side
    # -------------------------------------------------------------------------

    def verify_access_token(self, token: str | None) -> AuthInfo | None:
        info = self.tokens.verify_access_token(token)
        if info is None:
            audit_event(
                "oauth.token.validation_failed",
                "warning",
                token=safe_token_id(token),
            )
        return info

    def revoke(
        self,
        token: str | None,
        token_type_hint: str | None = None,
        client_id: str | None = None,
    ) -> None:
        """Revoke a token. Never fails for unknown or already revoked tokens."""
        removed = self.tokens.revoke(token, token_type_hint, client_id)
        audit_event(
            "oauth.token.revoked",
            client_id=client_id,
            token=safe_token_id(token),
            removed=removed,
        )

    # -------------------------------------------------------------------------
    # Dynamic client registration (RFC 7591)
    # -------------------------------------------------------------------------

    async def register_client(
        self,
        redirect_uris: list[str],
        scopes: Iterable[str] | None = None,
        client_name: str | None = None,
        grant_types: Iterable[str] | None = None,
    ) -> RegisteredClient:
        """Validate client metadata and register a new client.

        Omitted scopes default to every supported scope.
        """
        if not redirect_uris:
            raise InvalidRedirectUri("At least one redirect_uri is required")
        for uri in redirect_uris:
            if not isinstance(uri, str):
                raise InvalidRedirectUri("redirect_uris must be strings")
            problem = redirect_uri_problem(uri)
            if problem:
                raise InvalidRedirectUri(f"{uri}: {problem}")

        requested = list(scopes) if scopes is not None else list(self.scopes_supported)
        unknown = sorted(set(requested) - set(self.scopes_supported))
        if unknown:
            raise InvalidClientMetadata(f"Unsupported scope: {' '.join(unknown)}")

        grants = list(grant_types) if grant_types is not None else SUPPORTED_GRANT_TYPES
        unsupported = sorted(set(grants) - set(SUPPORTED_GRANT_TYPES))
        if unsupported:
            raise InvalidClientMetadata(
                f"Unsupported grant_type: {' '.join(unsupported)}"
            )

        return await run_in_threadpool(
            self.clients.register,
            redirect_uris=redirect_uris,
            scopes=requested,
            client_name=client_name,
            grant_types=grants,
        )

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def purge_expired(self) -> dict[str, int]:
        """Sweep expired codes and tokens from every store."""
        removed = {
            "codes": self.codes.purge_expired(),
            "tokens": self.tokens.purge_expired(),
        }
        if any(removed.values()):
            audit_event("oauth.sweep", **removed)
        return removed

    async def run_sweeper(self, interval: float) -> None:
        """Purge expired records every `interval` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                self.purge_expired()
            except Exception:
                logger.exception("Expiry sweep failed")

    def stats(self) -> dict[str, int]:
        return {
            "clients": len(self.clients),
            "authorization_codes": len(self.codes),
            **self.tokens.stats(),
        }
