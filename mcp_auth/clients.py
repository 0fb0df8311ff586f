"""Registered OAuth clients.

The registry owns every client record. Secrets are stored only as bcrypt
hashes; `authenticate()` is the single place a raw secret is compared.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
import urllib.parse
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

import bcrypt

from mcp_auth.audit import audit_event
from mcp_auth.errors import DuplicateClientId
from mcp_auth.models import SUPPORTED_GRANT_TYPES

logger = logging.getLogger(__name__)

DEFAULT_BCRYPT_ROUNDS = 12

# bcrypt only looks at the first 72 bytes of its input
BCRYPT_MAX_SECRET_BYTES = 72


def hash_secret(secret: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    """Hash a client secret with bcrypt."""
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(secret.encode("utf-8"), salt).decode("utf-8")


def generate_client_id() -> str:
    return f"client_{secrets.token_urlsafe(16)}"


def generate_client_secret() -> str:
    return secrets.token_urlsafe(32)


def redirect_uri_problem(uri: str) -> str | None:
    """Return why a redirect URI cannot be registered, or None if it can.

    Redirect URIs must be absolute and must not carry a fragment
    (RFC 6749 §3.1.2).
    """
    parsed = urllib.parse.urlparse(uri)
    if not parsed.scheme or not parsed.netloc:
        return "must be an absolute URI"
    if parsed.fragment or uri.endswith("#"):
        return "must not contain a fragment"
    return None


@dataclass(frozen=True)
class Client:
    """A registered OAuth client. Never holds the raw secret."""

    client_id: str
    hashed_secret: str
    redirect_uris: frozenset[str]
    allowed_scopes: frozenset[str]
    client_name: str | None = None
    grant_types: frozenset[str] = frozenset(SUPPORTED_GRANT_TYPES)
    issued_at: float = field(default_factory=time.time)


@dataclass
class RegisteredClient:
    """Result of a registration: the stored client plus its raw secret.

    The raw secret is only ever available here, once.
    """

    client: Client
    client_secret: str


class ClientRegistry:
    """Thread-safe in-memory client registry."""

    def __init__(self, bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS):
        self.bcrypt_rounds = bcrypt_rounds
        self._clients: dict[str, Client] = {}
        self._lock = threading.Lock()
        self._dummy_hash: str | None = None

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._clients

    def get(self, client_id: str) -> Client | None:
        return self._clients.get(client_id)

    def client_ids(self) -> list[str]:
        return sorted(self._clients)

    def add(self, client: Client) -> Client:
        """Store a client record whose secret is already hashed."""
        with self._lock:
            if client.client_id in self._clients:
                raise DuplicateClientId(client.client_id)
            self._clients[client.client_id] = client
        return client

    def register(
        self,
        redirect_uris: Iterable[str],
        scopes: Iterable[str] = (),
        client_secret: str | None = None,
        client_id: str | None = None,
        client_name: str | None = None,
        grant_types: Iterable[str] | None = None,
    ) -> RegisteredClient:
        """Create and store a new client.

        A client_id and secret are generated when not supplied. The secret is
        bcrypt-hashed before storage and returned to the caller exactly once.
        Raises DuplicateClientId if the client_id is already taken.
        """
        raw_secret = client_secret or generate_client_secret()
        client = Client(
            client_id=client_id or generate_client_id(),
            hashed_secret=hash_secret(raw_secret, self.bcrypt_rounds),
            redirect_uris=frozenset(redirect_uris),
            allowed_scopes=frozenset(scopes),
            client_name=client_name,
            grant_types=frozenset(
                SUPPORTED_GRANT_TYPES if grant_types is None else grant_types
            ),
        )
        self.add(client)
        audit_event(
            "oauth.client.registered",
            client_id=client.client_id,
            scopes=client.allowed_scopes,
        )
        return RegisteredClient(client=client, client_secret=raw_secret)

    def rotate_secret(self, client_id: str) -> str:
        """Replace a client's secret and return the new raw secret."""
        new_secret = generate_client_secret()
        hashed = hash_secret(new_secret, self.bcrypt_rounds)
        with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                raise KeyError(client_id)
            self._clients[client_id] = replace(client, hashed_secret=hashed)
        audit_event("oauth.client.secret_rotated", client_id=client_id)
        return new_secret

    def _compare_against_dummy(self, client_secret: str) -> None:
        # Unknown clients cost one bcrypt check like known ones
        if self._dummy_hash is None:
            self._dummy_hash = hash_secret(
                generate_client_secret(), self.bcrypt_rounds
            )
        bcrypt.checkpw(client_secret.encode("utf-8"), self._dummy_hash.encode())

    def authenticate(self, client_id: str | None, client_secret: str | None) -> bool:
        """Verify client credentials. Fails closed on any error."""
        if not client_id or not client_secret:
            audit_event(
                "oauth.client.authentication_failed",
                "failure",
                client_id=client_id,
                reason="missing credentials",
            )
            return False

        try:
            client = self._clients.get(client_id)
            if client is None:
                self._compare_against_dummy(client_secret)
                ok = False
            else:
                ok = bcrypt.checkpw(
                    client_secret.encode("utf-8"),
                    client.hashed_secret.encode("utf-8"),
                )
        except Exception:
            logger.exception("Client authentication error for %s", client_id)
            ok = False

        if ok:
            audit_event("oauth.client.authenticated", client_id=client_id)
        else:
            audit_event(
                "oauth.client.authentication_failed",
                "failure",
                client_id=client_id,
                reason="invalid credentials",
            )
        return ok

    def validate_redirect_uri(self, client_id: str, redirect_uri: str | None) -> bool:
        """Exact string match against the client's registered redirect URIs."""
        client = self._clients.get(client_id)
        if client is None or not redirect_uri:
            return False
        return redirect_uri in client.redirect_uris

    def resolve_scopes(
        self, client_id: str, requested_scopes: Iterable[str]
    ) -> frozenset[str] | None:
        """Return the scopes a grant will carry, or None if not allowed.

        An empty request means the client's full allowed set.
        """
        client = self._clients.get(client_id)
        if client is None:
            return None
        requested = frozenset(requested_scopes)
        if not requested:
            return client.allowed_scopes
        if not requested <= client.allowed_scopes:
            return None
        return requested

    def validate_scopes(self, client_id: str, requested_scopes: Iterable[str]) -> bool:
        """Every requested scope must be in the client's allowed set."""
        return self.resolve_scopes(client_id, requested_scopes) is not None

    def allows_grant(self, client_id: str, grant_type: str) -> bool:
        client = self._clients.get(client_id)
        return client is not None and grant_type in client.grant_types
