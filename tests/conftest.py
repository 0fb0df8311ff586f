"""Pytest fixtures for mcp_auth tests."""

import urllib.parse

import pytest
import yaml
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from mcp_auth.clients import ClientRegistry
from mcp_auth.codes import AuthorizationCodeStore, compute_code_challenge
from mcp_auth.middleware import get_auth_info
from mcp_auth.models import AuthServerConfig, ClientConfig
from mcp_auth.provider import OAuthProvider
from mcp_auth.tokens import TokenStore

# RFC 7636 Appendix B verifier
VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
CHALLENGE = compute_code_challenge(VERIFIER)
OTHER_VERIFIER = "x" * 43

ISSUER = "https://auth.example.com"
REDIRECT_URI = "https://app/cb"


class FakeClock:
    """Controllable replacement for time.time()."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    """Registry with c1 (read, write) and c2 (read), cheap bcrypt cost."""
    reg = ClientRegistry(bcrypt_rounds=4)
    reg.register(
        client_id="c1",
        client_secret="s1",
        redirect_uris=[REDIRECT_URI],
        scopes=["read", "write"],
    )
    reg.register(
        client_id="c2",
        client_secret="s2",
        redirect_uris=["https://other/cb"],
        scopes=["read"],
    )
    return reg


@pytest.fixture
def provider(registry, clock):
    return OAuthProvider(
        clients=registry,
        codes=AuthorizationCodeStore(clock=clock),
        tokens=TokenStore(clock=clock),
        scopes_supported=["read", "write"],
    )


@pytest.fixture
def auth_config():
    return AuthServerConfig(
        issuer_url=ISSUER,
        scopes_supported=["read", "write"],
        service_documentation="https://docs.example.com",
        bcrypt_rounds=4,
        sweep_interval=0,
        clients={
            "c1": ClientConfig(
                client_secret="s1",
                redirect_uris=[REDIRECT_URI],
                scopes=["read", "write"],
            ),
            "c2": ClientConfig(
                client_secret="s2",
                redirect_uris=["https://other/cb"],
                scopes=["read"],
            ),
        },
    )


async def whoami(request: Request) -> JSONResponse:
    return JSONResponse(get_auth_info(request).to_dict())


@pytest.fixture
def protected_routes():
    return [Route("/api/whoami", whoami, methods=["GET"])]


@pytest.fixture
def sample_config_yaml(tmp_path):
    """Write a sample config file and return its path."""
    config = {
        "issuer_url": ISSUER,
        "scopes_supported": ["read", "write"],
        "bcrypt_rounds": 4,
        "clients": {
            "c1": {
                "client_secret": "s1",
                "client_name": "Test App",
                "redirect_uris": [REDIRECT_URI],
                "scopes": ["read", "write"],
            }
        },
    }
    config_file = tmp_path / "config.yaml"
    config_file.write_text(yaml.dump(config))
    return config_file


def query_of(location: str) -> dict[str, str]:
    """Parse the query string of a redirect Location header."""
    parsed = urllib.parse.urlparse(location)
    return dict(urllib.parse.parse_qsl(parsed.query))
