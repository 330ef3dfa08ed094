"""Tests for configuration loading."""

import pytest

from chunkvault.config import Config, load_config

ENV_VARS = (
    "HOST",
    "PORT",
    "ENVIRONMENT",
    "CORS_ORIGINS",
    "API_KEY",
    "DB_PATH",
    "BUSY_TIMEOUT_MS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of these tests."""
    for name in ENV_VARS:
        monkeypatch.delenv(f"CHUNKVAULT_{name}", raising=False)


class TestDefaults:
    """Tests for built-in defaults."""

    def test_defaults_without_file(self):
        config = load_config()

        assert isinstance(config, Config)
        assert config.server.host == "0.0.0.0"
        assert config.server.port == 3000
        assert config.server.environment == "development"
        assert config.server.cors_origins == ["*"]
        assert config.auth.api_key == ""
        assert config.storage.db_path == "~/.chunkvault/chunks.db"
        assert config.storage.busy_timeout_ms == 5000

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "nope.yaml")

        assert config.server.port == 3000

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        config = load_config(path)

        assert config.storage.busy_timeout_ms == 5000


class TestYamlLoading:
    """Tests for reading a YAML config file."""

    def test_sections_are_read(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            """
server:
  host: 127.0.0.1
  port: 8080
  environment: production
  cors_origins:
    - https://app.example.com
auth:
  api_key: file-secret
storage:
  db_path: /var/lib/chunkvault/chunks.db
  busy_timeout_ms: 250
"""
        )

        config = load_config(path)

        assert config.server.host == "127.0.0.1"
        assert config.server.port == 8080
        assert config.server.environment == "production"
        assert config.server.cors_origins == ["https://app.example.com"]
        assert config.auth.api_key == "file-secret"
        assert config.storage.db_path == "/var/lib/chunkvault/chunks.db"
        assert config.storage.busy_timeout_ms == 250

    def test_partial_section_keeps_other_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("server:\n  port: 9000\n")

        config = load_config(path)

        assert config.server.port == 9000
        assert config.server.host == "0.0.0.0"
        assert config.storage.db_path == "~/.chunkvault/chunks.db"

    def test_comma_separated_origins(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text('server:\n  cors_origins: "https://a.test, https://b.test"\n')

        config = load_config(path)

        assert config.server.cors_origins == ["https://a.test", "https://b.test"]


class TestEnvOverrides:
    """Tests for CHUNKVAULT_* environment overrides."""

    def test_env_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("CHUNKVAULT_PORT", "4000")
        monkeypatch.setenv("CHUNKVAULT_API_KEY", "env-secret")
        monkeypatch.setenv("CHUNKVAULT_DB_PATH", "/tmp/chunks.db")
        monkeypatch.setenv("CHUNKVAULT_BUSY_TIMEOUT_MS", "100")
        monkeypatch.setenv("CHUNKVAULT_CORS_ORIGINS", "https://a.test,https://b.test")

        config = load_config()

        assert config.server.port == 4000
        assert config.auth.api_key == "env-secret"
        assert config.storage.db_path == "/tmp/chunks.db"
        assert config.storage.busy_timeout_ms == 100
        assert config.server.cors_origins == ["https://a.test", "https://b.test"]

    def test_env_wins_over_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("auth:\n  api_key: file-secret\nserver:\n  environment: staging\n")
        monkeypatch.setenv("CHUNKVAULT_API_KEY", "env-secret")

        config = load_config(path)

        assert config.auth.api_key == "env-secret"
        assert config.server.environment == "staging"

    def test_empty_env_value_is_ignored(self, monkeypatch):
        monkeypatch.setenv("CHUNKVAULT_HOST", "")

        config = load_config()

        assert config.server.host == "0.0.0.0"
