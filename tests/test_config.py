"""Tests for configuration loading and validation."""

import pytest
import yaml

from outline_manager.config import load_config
from outline_manager.exceptions import ConfigError


def _write_config(tmp_path, data: dict) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(data))
    return str(path)


class TestLoadConfig:
    def test_minimal_valid_config(self, tmp_path):
        data = {"digitalocean": {"token": "tok"}}
        config = load_config(_write_config(tmp_path, data))
        assert config.digitalocean.token == "tok"
        assert config.digitalocean.account_id == "digitalocean"
        assert config.gcp is None
        assert config.lightsail is None
        assert config.install.timeout_seconds == 300
        assert config.install.poll_interval_seconds == 3
        assert config.providers.ignore_missing_on_delete is True

    def test_missing_file_raises(self):
        with pytest.raises(ConfigError, match="not found"):
            load_config("/nonexistent/file.yaml")

    def test_no_provider_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="No cloud provider"):
            load_config(_write_config(tmp_path, {"logging": {"level": "DEBUG"}}))

    def test_missing_token_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="digitalocean.token"):
            load_config(_write_config(tmp_path, {"digitalocean": {"machine_size": "s-1vcpu-1gb"}}))

    def test_gcp_requires_credentials(self, tmp_path):
        data = {"gcp": {"project_id": "p", "client_id": "c"}}
        with pytest.raises(ConfigError, match="gcp.refresh_token"):
            load_config(_write_config(tmp_path, data))

    def test_lightsail_requires_key_pair(self, tmp_path):
        data = {"lightsail": {"access_key_id": "AKIA"}}
        with pytest.raises(ConfigError, match="lightsail"):
            load_config(_write_config(tmp_path, data))

    def test_poll_interval_must_be_positive(self, tmp_path):
        data = {"digitalocean": {"token": "t"}, "install": {"poll_interval_seconds": 0}}
        with pytest.raises(ConfigError, match="poll_interval_seconds"):
            load_config(_write_config(tmp_path, data))

    def test_poll_interval_below_timeout(self, tmp_path):
        data = {"digitalocean": {"token": "t"}, "install": {"poll_interval_seconds": 10, "timeout_seconds": 10}}
        with pytest.raises(ConfigError, match="less than"):
            load_config(_write_config(tmp_path, data))

    def test_env_var_interpolation(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_DO_TOKEN", "env-token")
        data = {"digitalocean": {"token": "${TEST_DO_TOKEN}"}}
        config = load_config(_write_config(tmp_path, data))
        assert config.digitalocean.token == "env-token"

    def test_env_var_missing_raises(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SURELY_MISSING_VAR", raising=False)
        data = {"digitalocean": {"token": "${SURELY_MISSING_VAR}"}}
        with pytest.raises(ConfigError, match="SURELY_MISSING_VAR"):
            load_config(_write_config(tmp_path, data))

    def test_full_config(self, tmp_path):
        data = {
            "digitalocean": {"account_id": "do-main", "token": "t", "ssh_public_key": "ssh-ed25519 AAAA", "image": "img:1"},
            "gcp": {"project_id": "p", "refresh_token": "r", "client_id": "c", "machine_type": "e2-small"},
            "lightsail": {"access_key_id": "AKIA", "secret_access_key": "s", "bundle_id": "micro_2_0"},
            "providers": {"ignore_missing_on_delete": False},
            "install": {"timeout_seconds": 600, "poll_interval_seconds": 5},
            "management": {"timeout": 10, "health_timeout": 5},
            "storage": {"path": "/tmp/state.json"},
            "logging": {"level": "DEBUG", "format": "text"},
        }
        config = load_config(_write_config(tmp_path, data))
        assert config.digitalocean.account_id == "do-main"
        assert config.digitalocean.ssh_public_key == "ssh-ed25519 AAAA"
        assert config.gcp.machine_type == "e2-small"
        assert config.lightsail.bundle_id == "micro_2_0"
        assert config.providers.ignore_missing_on_delete is False
        assert config.install.timeout_seconds == 600
        assert config.management.health_timeout == 5
        assert config.storage.path == "/tmp/state.json"
        assert config.logging.format == "text"

    def test_unknown_keys_ignored(self, tmp_path):
        data = {"digitalocean": {"token": "t", "colour": "blue"}, "extra": 1}
        assert load_config(_write_config(tmp_path, data)).digitalocean.token == "t"

    def test_invalid_log_format(self, tmp_path):
        data = {"digitalocean": {"token": "t"}, "logging": {"format": "xml"}}
        with pytest.raises(ConfigError, match="logging.format"):
            load_config(_write_config(tmp_path, data))

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("just a string")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(str(path))
