"""Access and refresh token storage.

Tokens are opaque random strings. Expired tokens are indistinguishable from
unknown ones to callers; they are dropped lazily on lookup and by
`purge_expired()`.

Refresh tokens always rotate: every successful use invalidates the presented
token and returns a brand new one.
"""

from __future__ import annotations

import secrets
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace

from mcp_auth.errors import InvalidGrant, InvalidScope

DEFAULT_ACCESS_TOKEN_TTL = 3600
DEFAULT_REFRESH_TOKEN_TTL = 86400


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def format_scopes(scopes: Iterable[str]) -> str:
    """Render scopes as the space-delimited string OAuth uses on the wire."""
    return " ".join(sorted(scopes))


def parse_scopes(scope: str | None) -> list[str]:
    """Split a space-delimited scope parameter."""
    if not scope:
        return []
    return scope.split()


@dataclass(frozen=True)
class AccessToken:
    token: str
    client_id: str
    scopes: frozenset[str]
    issued_at: float
    expires_at: float
    # Refresh token issued alongside this access token
    refresh_token: str | None = None


@dataclass(frozen=True)
class RefreshToken:
    token: str
    client_id: str
    scopes: frozenset[str]
    issued_at: float
    expires_at: float
    # Access token issued alongside this refresh token
    access_token: str | None = None


@dataclass(frozen=True)
class AuthInfo:
    """What a resource handler learns about a verified bearer token."""

    token: str
    client_id: str
    scopes: frozenset[str]
    expires_at: float

    def to_dict(self) -> dict:
        return {
            "client_id": self.client_id,
            "scopes": sorted(self.scopes),
            "expires_at": int(self.expires_at),
        }


@dataclass(frozen=True)
class TokenPair:
    access_token: AccessToken
    refresh_token: RefreshToken

    def to_response(self) -> dict:
        """Serialize as an RFC 6749 §5.1 token response."""
        expires_in = int(self.access_token.expires_at - self.access_token.issued_at)
        return {
            "access_token": self.access_token.token,
            "token_type": "Bearer",
            "expires_in": expires_in,
            "refresh_token": self.refresh_token.token,
            "scope": format_scopes(self.access_token.scopes),
        }


class TokenStore:
    """Thread-safe in-memory token store."""

    def __init__(
        self,
        access_token_ttl: int = DEFAULT_ACCESS_TOKEN_TTL,
        refresh_token_ttl: int = DEFAULT_REFRESH_TOKEN_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.clock = clock
        self._access: dict[str, AccessToken] = {}
        self._refresh: dict[str, RefreshToken] = {}
        self._lock = threading.Lock()

    def _new_access_token(
        self,
        client_id: str,
        scopes: Iterable[str],
        refresh_token: str | None = None,
    ) -> AccessToken:
        now = self.clock()
        token = generate_token()
        while token in self._access:
            token = generate_token()
        record = AccessToken(
            token=token,
            client_id=client_id,
            scopes=frozenset(scopes),
            issued_at=now,
            expires_at=now + self.access_token_ttl,
            refresh_token=refresh_token,
        )
        self._access[token] = record
        return record

    def _new_refresh_token(
        self,
        client_id: str,
        scopes: Iterable[str],
        access_token: str | None = None,
    ) -> RefreshToken:
        now = self.clock()
        token = generate_token()
        while token in self._refresh:
            token = generate_token()
        record = RefreshToken(
            token=token,
            client_id=client_id,
            scopes=frozenset(scopes),
            issued_at=now,
            expires_at=now + self.refresh_token_ttl,
            access_token=access_token,
        )
        self._refresh[token] = record
        return record

    def issue_access_token(self, client_id: str, scopes: Iterable[str]) -> AccessToken:
        with self._lock:
            return self._new_access_token(client_id, scopes)

    def issue_refresh_token(
        self,
        client_id: str,
        scopes: Iterable[str],
        access_token: str | None = None,
    ) -> RefreshToken:
        with self._lock:
            return self._new_refresh_token(client_id, scopes, access_token)

    def issue_pair(self, client_id: str, scopes: Iterable[str]) -> TokenPair:
        """Issue an access token and a refresh token linked to it."""
        scopes = frozenset(scopes)
        with self._lock:
            return self._new_pair(client_id, scopes, scopes)

    def _new_pair(
        self,
        client_id: str,
        access_scopes: frozenset[str],
        refresh_scopes: frozenset[str],
    ) -> TokenPair:
        access = self._new_access_token(client_id, access_scopes)
        refresh = self._new_refresh_token(client_id, refresh_scopes, access.token)
        access = replace(access, refresh_token=refresh.token)
        self._access[access.token] = access
        return TokenPair(access_token=access, refresh_token=refresh)

    def verify_access_token(self, token: str | None) -> AuthInfo | None:
        """Return AuthInfo for a live access token, None otherwise."""
        if not token:
            return None
        with self._lock:
            record = self._access.get(token)
            if record is None:
                return None
            if self.clock() > record.expires_at:
                del self._access[token]
                return None
        return AuthInfo(
            token=record.token,
            client_id=record.client_id,
            scopes=record.scopes,
            expires_at=record.expires_at,
        )

    def rotate_refresh_token(
        self,
        old_token: str | None,
        client_id: str | None = None,
        scopes: Iterable[str] | None = None,
    ) -> TokenPair:
        """Exchange a refresh token for a new access/refresh pair.

        The old token is removed and the new pair is issued under a single
        lock acquisition, so concurrent rotations of one token yield exactly
        one success. When `client_id` is given, a token owned by another
        client is rejected without being consumed. `scopes` may narrow the
        new access token; the new refresh token keeps the original grant.

        Raises InvalidGrant for unknown, expired, already rotated or foreign
        tokens and InvalidScope when `scopes` exceeds the original grant.
        """
        failure = InvalidGrant("Invalid refresh token")
        if not old_token:
            raise failure

        with self._lock:
            record = self._refresh.get(old_token)
            if record is None:
                raise failure
            if self.clock() > record.expires_at:
                del self._refresh[old_token]
                raise failure
            if client_id is not None and record.client_id != client_id:
                raise failure

            access_scopes = record.scopes
            if scopes is not None:
                requested = frozenset(scopes)
                if requested and not requested <= record.scopes:
                    raise InvalidScope("Requested scope exceeds original grant")
                if requested:
                    access_scopes = requested

            del self._refresh[old_token]
            return self._new_pair(record.client_id, access_scopes, record.scopes)

    def revoke(
        self,
        token: str | None,
        token_type_hint: str | None = None,
        client_id: str | None = None,
    ) -> bool:
        """Revoke an access or refresh token (RFC 7009).

        Idempotent: unknown or already revoked tokens are ignored. Revoking
        either token of a pair also revokes the other one. When
        `client_id` is given, tokens owned by other clients are left alone.
        Returns True if anything was removed.
        """
        if not token:
            return False

        if token_type_hint == "refresh_token":
            tables = (self._refresh, self._access)
        else:
            tables = (self._access, self._refresh)

        with self._lock:
            for table in tables:
                record = table.get(token)
                if record is None:
                    continue
                if client_id is not None and record.client_id != client_id:
                    return False
                del table[token]
                if isinstance(record, RefreshToken) and record.access_token:
                    self._access.pop(record.access_token, None)
                elif isinstance(record, AccessToken) and record.refresh_token:
                    self._refresh.pop(record.refresh_token, None)
                return True
        return False

    def purge_expired(self) -> int:
        """Drop expired tokens. Returns how many were removed."""
        now = self.clock()
        removed = 0
        with self._lock:
            for table in (self._access, self._refresh):
                expired = [t for t, r in table.items() if now > r.expires_at]
                for token in expired:
                    del table[token]
                removed += len(expired)
        return removed

    def stats(self) -> dict[str, int]:
        return {
            "access_tokens": len(self._access),
            "refresh_tokens": len(self._refresh),
        }
