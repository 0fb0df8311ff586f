"""Configuration loading for the MCP auth server."""

import os
import re
from pathlib import Path

import yaml

from mcp_auth.clients import BCRYPT_MAX_SECRET_BYTES, redirect_uri_problem
from mcp_auth.models import SUPPORTED_GRANT_TYPES, AuthServerConfig


def _substitute_env_vars(obj):
    """Recursively substitute ${VAR} with environment variables."""
    if isinstance(obj, str):
        pattern = r"\$\{([^}]+)\}"
        return re.sub(pattern, lambda m: os.environ.get(m.group(1), m.group(0)), obj)
    elif isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    return obj


def load_config(path: str | Path) -> AuthServerConfig:
    """Load configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    data = _substitute_env_vars(data)
    return AuthServerConfig(**data)


def validate_config(config: AuthServerConfig) -> list[str]:
    """Validate configuration and return list of errors."""
    errors = []
    supported = set(config.scopes_supported)

    for client_id, client in config.clients.items():
        if client.client_secret and client.client_secret_hash:
            errors.append(
                f"Client '{client_id}' sets both client_secret and client_secret_hash"
            )
        elif not client.client_secret and not client.client_secret_hash:
            errors.append(f"Client '{client_id}' has no client_secret")

        if client.client_secret and (
            len(client.client_secret.encode("utf-8")) > BCRYPT_MAX_SECRET_BYTES
        ):
            errors.append(
                f"Client '{client_id}' secret is longer than "
                f"{BCRYPT_MAX_SECRET_BYTES} bytes"
            )

        if not client.redirect_uris:
            errors.append(f"Client '{client_id}' has no redirect_uris")
        for uri in client.redirect_uris:
            problem = redirect_uri_problem(uri)
            if problem:
                errors.append(
                    f"Client '{client_id}' redirect_uri '{uri}' {problem}"
                )

        if supported:
            for scope in client.scopes:
                if scope not in supported:
                    errors.append(
                        f"Client '{client_id}' has scope '{scope}' "
                        "not listed in scopes_supported"
                    )

        for grant_type in client.grant_types:
            if grant_type not in SUPPORTED_GRANT_TYPES:
                errors.append(
                    f"Client '{client_id}' has unsupported grant type '{grant_type}'"
                )

    return errors
