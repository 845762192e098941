"""Cloud-init user data that installs the Outline server on a new machine.

Each script exports the settings its provider's installer needs, then fetches
and runs that installer. The installer reports its outcome back through
provider metadata, which is what install polling reads.
"""

from __future__ import annotations

import re
import shlex

from .exceptions import InvalidTokenError

_INSTALLER_BASE_URL = "https://raw.githubusercontent.com/Jigsaw-Code/outline-server/master/src/server_manager/install_scripts"
DIGITALOCEAN_INSTALLER_URL = f"{_INSTALLER_BASE_URL}/do_install_server.sh"
GCP_INSTALLER_URL = f"{_INSTALLER_BASE_URL}/gcp_install_server.sh"
LIGHTSAIL_INSTALLER_URL = f"{_INSTALLER_BASE_URL}/lightsail_install_server.sh"

# Automatic update interval used when a custom server image is installed.
WATCHTOWER_REFRESH_SECONDS = 30

_DIGITALOCEAN_TOKEN = re.compile(r"^[A-Za-z0-9_/-]+$")
_AWS_CREDENTIAL = re.compile(r"^[A-Za-z0-9+/=]+$")

_SHEBANG = "#!/bin/bash -eu\n"


def sanitize_digitalocean_token(token: str) -> str:
    token = token.strip()
    if not _DIGITALOCEAN_TOKEN.match(token):
        raise InvalidTokenError("Invalid DigitalOcean token")
    return token


def _run_installer(url: str) -> str:
    return f"curl -sSL {url} | bash\n"


def digitalocean_user_data(
    access_token: str,
    server_name: str,
    image: str = "",
    metrics_url: str = "",
    sentry_api_url: str = "",
) -> str:
    script = _SHEBANG + f"export DO_ACCESS_TOKEN={sanitize_digitalocean_token(access_token)}\n"
    if image:
        script += f"export SB_IMAGE={shlex.quote(image)}\n"
        script += f"export WATCHTOWER_REFRESH_SECONDS={WATCHTOWER_REFRESH_SECONDS}\n"
    if sentry_api_url:
        script += f"export SENTRY_API_URL={shlex.quote(sentry_api_url)}\n"
    if metrics_url:
        script += f"export SB_METRICS_URL={shlex.quote(metrics_url)}\n"
    script += f"export SB_DEFAULT_SERVER_NAME={shlex.quote(server_name)}\n"
    return script + _run_installer(DIGITALOCEAN_INSTALLER_URL)


def gcp_user_data(server_name: str) -> str:
    # GCP instances authenticate to the metadata server, so no credentials are embedded
    return (
        _SHEBANG
        + f"export SB_DEFAULT_SERVER_NAME={shlex.quote(server_name)}\n"
        + _run_installer(GCP_INSTALLER_URL)
    )


def lightsail_user_data(server_name: str, access_key_id: str, secret_access_key: str) -> str:
    """The installer tags its own instance, so it needs the account's key pair."""
    for value in (access_key_id, secret_access_key):
        if not _AWS_CREDENTIAL.match(value):
            raise InvalidTokenError("Invalid AWS access key")
    return (
        _SHEBANG
        + f"export SERVER_NAME={shlex.quote(server_name)}\n"
        + f"export ACCESS_KEY={access_key_id}\n"
        + f"export SECRET_KEY={secret_access_key}\n"
        + _run_installer(LIGHTSAIL_INSTALLER_URL)
    )
