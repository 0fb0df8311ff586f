"""Tests for configuration loading."""

import pytest
import yaml
from pydantic import ValidationError

from mcp_auth.models import AuthServerConfig, ClientConfig


def _write(tmp_path, data):
    config_file = tmp_path / "config.yaml"
    config_file.write_text(yaml.dump(data))
    return config_file


class TestLoadConfig:
    """Tests for load_config function."""

    def test_load_config_from_yaml_file(self, sample_config_yaml):
        """load_config should parse a YAML file into AuthServerConfig."""
        from mcp_auth.config import load_config

        config = load_config(sample_config_yaml)

        assert config.issuer_url == "https://auth.example.com"
        assert config.scopes_supported == ["read", "write"]
        assert config.bcrypt_rounds == 4
        client = config.clients["c1"]
        assert client.client_secret == "s1"
        assert client.client_name == "Test App"
        assert client.redirect_uris == ["https://app/cb"]
        assert client.grant_types == ["authorization_code", "refresh_token"]

    def test_defaults(self, tmp_path):
        from mcp_auth.config import load_config

        config = load_config(_write(tmp_path, {"issuer_url": "https://auth/"}))

        assert config.issuer_url == "https://auth"
        assert config.resource == "https://auth"
        assert config.code_ttl == 600
        assert config.access_token_ttl == 3600
        assert config.refresh_token_ttl == 86400
        assert config.bcrypt_rounds == 12
        assert config.sweep_interval == 60
        assert config.allow_dynamic_registration is True
        assert config.clients == {}

    def test_load_config_rejects_unknown_keys(self, tmp_path):
        """load_config should validate against the AuthServerConfig schema."""
        from mcp_auth.config import load_config

        config_file = _write(
            tmp_path, {"issuer_url": "https://auth", "invalid_key": "value"}
        )

        with pytest.raises(ValidationError):
            load_config(config_file)

    def test_load_config_requires_issuer(self, tmp_path):
        from mcp_auth.config import load_config

        with pytest.raises(ValidationError):
            load_config(_write(tmp_path, {"clients": {}}))

    def test_empty_file_is_missing_issuer(self, tmp_path):
        from mcp_auth.config import load_config

        config_file = tmp_path / "config.yaml"
        config_file.write_text("")

        with pytest.raises(ValidationError):
            load_config(config_file)

    @pytest.mark.parametrize(
        "key,value",
        [
            ("code_ttl", 0),
            ("access_token_ttl", -1),
            ("bcrypt_rounds", 3),
            ("bcrypt_rounds", 32),
            ("sweep_interval", -1),
        ],
    )
    def test_numeric_bounds(self, tmp_path, key, value):
        from mcp_auth.config import load_config

        config_file = _write(tmp_path, {"issuer_url": "https://auth", key: value})

        with pytest.raises(ValidationError):
            load_config(config_file)

    def test_load_config_substitutes_env_vars(self, tmp_path, monkeypatch):
        """load_config should substitute ${VAR} with environment variables."""
        from mcp_auth.config import load_config

        monkeypatch.setenv("TEST_CLIENT_SECRET", "secret123")
        monkeypatch.setenv("TEST_ISSUER", "https://auth.example.org")

        config_file = _write(
            tmp_path,
            {
                "issuer_url": "${TEST_ISSUER}",
                "clients": {
                    "c1": {
                        "client_secret": "${TEST_CLIENT_SECRET}",
                        "redirect_uris": ["${TEST_ISSUER}/cb"],
                    }
                },
            },
        )

        config = load_config(config_file)

        assert config.issuer_url == "https://auth.example.org"
        assert config.clients["c1"].client_secret == "secret123"
        assert config.clients["c1"].redirect_uris == ["https://auth.example.org/cb"]

    def test_load_config_missing_env_var_left_in_place(self, tmp_path, monkeypatch):
        from mcp_auth.config import load_config

        monkeypatch.delenv("NONEXISTENT_VAR", raising=False)
        config_file = _write(
            tmp_path,
            {
                "issuer_url": "https://auth",
                "clients": {
                    "c1": {
                        "client_secret": "${NONEXISTENT_VAR}",
                        "redirect_uris": ["https://app/cb"],
                    }
                },
            },
        )

        config = load_config(config_file)

        assert config.clients["c1"].client_secret == "${NONEXISTENT_VAR}"

    def test_load_config_from_path_string(self, sample_config_yaml):
        """load_config should accept path as string."""
        from mcp_auth.config import load_config

        config = load_config(str(sample_config_yaml))

        assert "c1" in config.clients

    def test_load_config_file_not_found(self):
        """load_config should raise on missing file."""
        from mcp_auth.config import load_config

        with pytest.raises(FileNotFoundError):
            load_config("/nonexistent/path/config.yaml")


class TestConfigValidation:
    """Tests for validate_config."""

    def _config(self, **client_fields) -> AuthServerConfig:
        fields = {"client_secret": "s1", "redirect_uris": ["https://app/cb"]}
        fields.update(client_fields)
        return AuthServerConfig(
            issuer_url="https://auth",
            scopes_supported=["read", "write"],
            clients={"c1": ClientConfig(**fields)},
        )

    def test_valid_config(self, sample_config_yaml):
        from mcp_auth.config import load_config, validate_config

        assert validate_config(load_config(sample_config_yaml)) == []

    def test_missing_secret(self):
        from mcp_auth.config import validate_config

        errors = validate_config(self._config(client_secret=None))

        assert errors == ["Client 'c1' has no client_secret"]

    def test_both_secret_and_hash(self):
        from mcp_auth.clients import hash_secret
        from mcp_auth.config import validate_config

        errors = validate_config(
            self._config(client_secret_hash=hash_secret("s1", rounds=4))
        )

        assert len(errors) == 1
        assert "both" in errors[0]

    def test_hash_only_is_valid(self):
        from mcp_auth.clients import hash_secret
        from mcp_auth.config import validate_config

        config = self._config(
            client_secret=None, client_secret_hash=hash_secret("s1", rounds=4)
        )

        assert validate_config(config) == []

    def test_secret_too_long(self):
        from mcp_auth.config import validate_config

        errors = validate_config(self._config(client_secret="x" * 73))

        assert any("72 bytes" in e for e in errors)

    def test_no_redirect_uris(self):
        from mcp_auth.config import validate_config

        errors = validate_config(self._config(redirect_uris=[]))

        assert errors == ["Client 'c1' has no redirect_uris"]

    @pytest.mark.parametrize(
        "uri,problem",
        [
            ("/relative/cb", "absolute"),
            ("https://app/cb#frag", "fragment"),
        ],
    )
    def test_bad_redirect_uri(self, uri, problem):
        from mcp_auth.config import validate_config

        errors = validate_config(self._config(redirect_uris=[uri]))

        assert len(errors) == 1
        assert uri in errors[0]
        assert problem in errors[0]

    def test_scope_not_supported(self):
        from mcp_auth.config import validate_config

        errors = validate_config(self._config(scopes=["read", "admin"]))

        assert len(errors) == 1
        assert "'admin'" in errors[0]

    def test_scopes_unchecked_without_scopes_supported(self):
        from mcp_auth.config import validate_config

        config = AuthServerConfig(
            issuer_url="https://auth",
            clients={
                "c1": ClientConfig(
                    client_secret="s1",
                    redirect_uris=["https://app/cb"],
                    scopes=["anything"],
                )
            },
        )

        assert validate_config(config) == []

    def test_unsupported_grant_type(self):
        from mcp_auth.config import validate_config

        errors = validate_config(
            self._config(grant_types=["authorization_code", "password"])
        )

        assert errors == ["Client 'c1' has unsupported grant type 'password'"]
