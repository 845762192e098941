"""Tests for the generated install user data."""

import shlex

import pytest

from outline_manager import install_scripts
from outline_manager.exceptions import InvalidTokenError


class TestDigitalOcean:
    def test_minimal_script(self):
        script = install_scripts.digitalocean_user_data("dop_v1_abc", "My Server")
        assert script.startswith("#!/bin/bash -eu\n")
        assert "export DO_ACCESS_TOKEN=dop_v1_abc\n" in script
        assert "export SB_DEFAULT_SERVER_NAME='My Server'\n" in script
        assert "SB_IMAGE" not in script
        assert script.endswith(f"curl -sSL {install_scripts.DIGITALOCEAN_INSTALLER_URL} | bash\n")

    def test_optional_settings(self):
        script = install_scripts.digitalocean_user_data(
            "tok", "s", image="quay.io/outline/shadowbox:daily",
            metrics_url="https://metrics.example", sentry_api_url="https://sentry.example/api",
        )
        assert "export SB_IMAGE=quay.io/outline/shadowbox:daily\n" in script
        assert "export WATCHTOWER_REFRESH_SECONDS=30\n" in script
        assert "export SB_METRICS_URL=https://metrics.example\n" in script
        assert "export SENTRY_API_URL=https://sentry.example/api\n" in script

    def test_server_name_cannot_break_out(self):
        name = "x'; rm -rf /; echo '"
        script = install_scripts.digitalocean_user_data("tok", name)
        assert f"export SB_DEFAULT_SERVER_NAME={shlex.quote(name)}\n" in script
        assert shlex.split(script.splitlines()[2]) == ["export", f"SB_DEFAULT_SERVER_NAME={name}"]

    @pytest.mark.parametrize("token", ["", "has space", "semi;colon", "quote'"])
    def test_bad_tokens_rejected(self, token):
        with pytest.raises(InvalidTokenError):
            install_scripts.digitalocean_user_data(token, "s")

    def test_token_whitespace_trimmed(self):
        assert install_scripts.sanitize_digitalocean_token("  abc-123_x/y \n") == "abc-123_x/y"


class TestGcp:
    def test_script_has_no_credentials(self):
        script = install_scripts.gcp_user_data("Office")
        assert "export SB_DEFAULT_SERVER_NAME=Office\n" in script
        assert "ACCESS" not in script
        assert install_scripts.GCP_INSTALLER_URL in script


class TestLightsail:
    def test_script_exports_key_pair(self):
        script = install_scripts.lightsail_user_data("Office", "AKIAEXAMPLE", "abc/def+ghi=")
        assert "export ACCESS_KEY=AKIAEXAMPLE\n" in script
        assert "export SECRET_KEY=abc/def+ghi=\n" in script
        assert install_scripts.LIGHTSAIL_INSTALLER_URL in script

    def test_bad_secret_rejected(self):
        with pytest.raises(InvalidTokenError):
            install_scripts.lightsail_user_data("s", "AKIA", "bad secret")
