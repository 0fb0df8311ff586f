"""MCP Auth - OAuth 2.1 authorization server with PKCE and bearer token enforcement."""

from mcp_auth.app import create_app
from mcp_auth.clients import Client, ClientRegistry
from mcp_auth.codes import AuthorizationCode, AuthorizationCodeStore
from mcp_auth.config import load_config, validate_config
from mcp_auth.middleware import BearerMiddleware, get_auth_info
from mcp_auth.models import AuthServerConfig, ClientConfig
from mcp_auth.provider import OAuthProvider
from mcp_auth.routes import OAuthRouter
from mcp_auth.tokens import AuthInfo, TokenStore

__all__ = [
    "AuthInfo",
    "AuthServerConfig",
    "AuthorizationCode",
    "AuthorizationCodeStore",
    "BearerMiddleware",
    "Client",
    "ClientConfig",
    "ClientRegistry",
    "OAuthProvider",
    "OAuthRouter",
    "TokenStore",
    "create_app",
    "get_auth_info",
    "load_config",
    "validate_config",
]
