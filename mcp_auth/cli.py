"""CLI commands for mcp-auth."""

from pathlib import Path

import click

from mcp_auth.config import load_config, validate_config

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "mcp-auth"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"


def get_config_path(config: str | None) -> Path:
    """Get config file path, falling back to the default location."""
    if config:
        return Path(config)
    return DEFAULT_CONFIG_FILE


def config_option():
    """Decorator for --config option."""
    return click.option(
        "--config", "-c",
        default=None,
        type=click.Path(exists=False),
        help=f"Config file path (default: {DEFAULT_CONFIG_FILE})"
    )


def _load(config: str | None):
    try:
        return load_config(get_config_path(config))
    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except Exception as e:
        click.echo(f"Error: Invalid config: {e}", err=True)
        raise SystemExit(1)


@click.group()
def main():
    """MCP OAuth 2.1 authorization server CLI."""
    pass


@main.command()
@config_option()
def check(config: str | None):
    """Validate configuration file."""
    cfg = _load(config)
    errors = validate_config(cfg)
    if errors:
        for error in errors:
            click.echo(f"Error: {error}", err=True)
        raise SystemExit(1)
    click.echo("Configuration is valid.")


@main.command()
@config_option()
@click.option("--verbose", "-v", is_flag=True, help="Show redirect URIs and scopes")
def clients(config: str | None, verbose: bool):
    """List configured OAuth clients."""
    cfg = _load(config)
    if not cfg.clients:
        click.echo("No clients configured.")
        return
    for client_id, client in cfg.clients.items():
        if not verbose:
            click.echo(client_id)
            continue
        name = f" ({client.client_name})" if client.client_name else ""
        click.echo(f"{client_id}{name}")
        for uri in client.redirect_uris:
            click.echo(f"  redirect_uri: {uri}")
        click.echo(f"  scopes: {' '.join(client.scopes) or '(none)'}")


@main.command("hash-secret")
@click.argument("secret")
@click.option("--rounds", "-r", default=12, type=click.IntRange(4, 31), help="bcrypt cost factor")
def hash_secret_cmd(secret: str, rounds: int):
    """Print a bcrypt hash for use as client_secret_hash."""
    from mcp_auth.clients import BCRYPT_MAX_SECRET_BYTES, hash_secret

    if len(secret.encode("utf-8")) > BCRYPT_MAX_SECRET_BYTES:
        click.echo(
            f"Error: secret is longer than {BCRYPT_MAX_SECRET_BYTES} bytes", err=True
        )
        raise SystemExit(1)
    click.echo(hash_secret(secret, rounds))


@main.command()
@config_option()
@click.option("--host", "-h", default="127.0.0.1", help="Host to bind")
@click.option("--port", "-p", default=8000, type=int, help="Port to listen on")
@click.option("--env-file", "-e", default=".env", type=click.Path(), help="Path to .env file (default: .env)")
def serve(config: str | None, host: str, port: int, env_file: str):  # pragma: no cover
    """Start the authorization server."""
    import uvicorn
    from dotenv import load_dotenv

    from mcp_auth.app import create_app
    from mcp_auth.audit import configure_logging

    # Load environment variables from .env file
    load_dotenv(env_file)

    configure_logging()
    cfg = _load(config)
    errors = validate_config(cfg)
    if errors:
        for error in errors:
            click.echo(f"Error: {error}", err=True)
        raise SystemExit(1)

    app = create_app(cfg)
    uvicorn.run(app, host=host, port=port)
