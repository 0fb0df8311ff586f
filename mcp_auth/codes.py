"""Authorization codes bound to a PKCE challenge.

Codes are single use. `AuthorizationCodeStore.consume()` is the only place
a code is marked consumed, and it does so under the store lock so that two
concurrent exchanges of the same code can never both succeed.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from mcp_auth.audit import audit_event, safe_token_id
from mcp_auth.errors import InvalidGrant

DEFAULT_CODE_TTL = 600

CODE_CHALLENGE_METHOD = "S256"

# RFC 7636 §4.1: 43-128 characters from the unreserved set
_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
# base64url(SHA-256) without padding is always 43 characters
_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-_]{43}$")


def compute_code_challenge(code_verifier: str) -> str:
    """S256 transform: base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_code_challenge(code_verifier: str, code_challenge: str) -> bool:
    """Constant-time PKCE check."""
    try:
        computed = compute_code_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed, code_challenge)


def is_valid_code_verifier(code_verifier: str | None) -> bool:
    return bool(code_verifier) and _VERIFIER_RE.match(code_verifier) is not None


def is_valid_code_challenge(code_challenge: str | None) -> bool:
    return bool(code_challenge) and _CHALLENGE_RE.match(code_challenge) is not None


@dataclass
class AuthorizationCode:
    """Stored authorization code with its PKCE challenge."""

    code: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    scopes: frozenset[str]
    issued_at: float
    expires_at: float
    code_challenge_method: str = CODE_CHALLENGE_METHOD
    consumed: bool = False


class AuthorizationCodeStore:
    """Thread-safe in-memory authorization code store."""

    def __init__(
        self,
        ttl: int = DEFAULT_CODE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self.clock = clock
        self._codes: dict[str, AuthorizationCode] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._codes)

    def issue(
        self,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        scopes: Iterable[str],
    ) -> AuthorizationCode:
        """Create and store a fresh, unconsumed code."""
        now = self.clock()
        with self._lock:
            code = secrets.token_urlsafe(32)
            while code in self._codes:
                code = secrets.token_urlsafe(32)
            record = AuthorizationCode(
                code=code,
                client_id=client_id,
                redirect_uri=redirect_uri,
                code_challenge=code_challenge,
                scopes=frozenset(scopes),
                issued_at=now,
                expires_at=now + self.ttl,
            )
            self._codes[code] = record
        return record

    def consume(self, code: str | None, code_verifier: str | None) -> AuthorizationCode:
        """Redeem a code exactly once.

        Raises InvalidGrant if the code is unknown, expired, already
        consumed, or the verifier is malformed or does not match the stored
        challenge. Every failure carries the same description. A wrong
        verifier leaves the code unconsumed.
        """
        failure = InvalidGrant("Invalid authorization code")
        if not code or not code_verifier:
            raise failure

        with self._lock:
            record = self._codes.get(code)
            if record is None:
                reason = "unknown"
            elif self.clock() > record.expires_at:
                del self._codes[code]
                reason = "expired"
            elif record.consumed:
                reason = "already consumed"
            elif not is_valid_code_verifier(code_verifier):
                reason = "malformed verifier"
            elif not verify_code_challenge(code_verifier, record.code_challenge):
                reason = "pkce mismatch"
            else:
                record.consumed = True
                return record

        audit_event(
            "oauth.token.failed",
            "failure",
            code=safe_token_id(code),
            reason=reason,
        )
        raise failure

    def purge_expired(self) -> int:
        """Drop expired codes. Returns how many were removed."""
        now = self.clock()
        with self._lock:
            expired = [c for c, r in self._codes.items() if now > r.expires_at]
            for code in expired:
                del self._codes[code]
        return len(expired)
