"""Configuration models for the MCP auth server."""

from pydantic import BaseModel, ConfigDict, Field, field_validator

SUPPORTED_GRANT_TYPES = ["authorization_code", "refresh_token"]


class ClientConfig(BaseModel):
    """Configuration for a statically registered OAuth client.

    Exactly one of `client_secret` (raw, hashed at startup) or
    `client_secret_hash` (a precomputed bcrypt hash) should be set;
    `validate_config()` reports clients that violate this.
    """

    client_secret: str | None = None
    client_secret_hash: str | None = None
    redirect_uris: list[str]
    scopes: list[str] = []
    client_name: str | None = None
    grant_types: list[str] = Field(
        default_factory=lambda: list(SUPPORTED_GRANT_TYPES)
    )


class AuthServerConfig(BaseModel):
    """Root configuration for the authorization server."""

    model_config = ConfigDict(extra="forbid")

    issuer_url: str
    resource_url: str | None = None
    scopes_supported: list[str] = []
    service_documentation: str | None = None
    code_ttl: int = Field(default=600, gt=0)
    access_token_ttl: int = Field(default=3600, gt=0)
    refresh_token_ttl: int = Field(default=86400, gt=0)
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    sweep_interval: int = Field(default=60, ge=0)
    allow_dynamic_registration: bool = True
    clients: dict[str, ClientConfig] = {}

    @field_validator("issuer_url", "resource_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return value.rstrip("/")

    @property
    def resource(self) -> str:
        """Protected resource identifier (defaults to the issuer)."""
        return self.resource_url or self.issuer_url
