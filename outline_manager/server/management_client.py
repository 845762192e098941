"""REST client for an installed server's management API.

The API is served over HTTPS with a self-signed certificate, so requests are
pinned to the SHA-256 fingerprint the install script published instead of
being verified against a CA.
"""

from __future__ import annotations

import logging
from typing import Any

import requests
from requests.adapters import HTTPAdapter

from ..config import ManagementConfig
from ..exceptions import ServerApiError

logger = logging.getLogger(__name__)


class FingerprintAdapter(HTTPAdapter):
    """Transport adapter that accepts exactly one certificate, by SHA-256 fingerprint."""

    def __init__(self, fingerprint: str, **kwargs):
        self._fingerprint = fingerprint
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["assert_fingerprint"] = self._fingerprint
        return super().init_poolmanager(*args, **kwargs)


class ManagementApiClient:
    """Thin wrapper around the management API of one server."""

    def __init__(self, api_url: str, certificate_fingerprint: str, config: ManagementConfig | None = None):
        config = config or ManagementConfig()
        self._base = api_url if api_url.endswith("/") else api_url + "/"
        self._session = requests.Session()
        self._session.headers["Content-Type"] = "application/json"
        # Trust comes from the pinned fingerprint, not from a CA chain
        self._session.verify = False
        self._session.mount("https://", FingerprintAdapter(certificate_fingerprint))
        self._timeout = config.timeout
        self._health_timeout = config.health_timeout

    @property
    def api_url(self) -> str:
        return self._base

    # ── Server ──────────────────────────────────────────────────────

    def get_server_config(self) -> dict[str, Any]:
        return self._get("server").json()

    def is_healthy(self) -> bool:
        """True if the server answers a config request within the health timeout."""
        try:
            self._request("GET", "server", timeout=self._health_timeout)
        except ServerApiError as exc:
            logger.warning("Health check failed: %s", exc, extra={"status_code": exc.status_code})
            return False
        return True

    def set_name(self, name: str) -> None:
        self._put("name", json={"name": name})

    def set_metrics_enabled(self, enabled: bool) -> None:
        self._put("metrics/enabled", json={"metricsEnabled": enabled})

    def set_port_for_new_access_keys(self, port: int) -> None:
        self._put("server/port-for-new-access-keys", json={"port": port})

    # ── Access keys ─────────────────────────────────────────────────

    def list_access_keys(self) -> list[dict[str, Any]]:
        return self._get("access-keys").json().get("accessKeys", [])

    def add_access_key(self) -> dict[str, Any]:
        return self._post("access-keys").json()

    def rename_access_key(self, access_key_id: str, name: str) -> None:
        self._put(f"access-keys/{access_key_id}/name", json={"name": name})

    def remove_access_key(self, access_key_id: str) -> None:
        self._delete(f"access-keys/{access_key_id}")

    # ── Metrics ─────────────────────────────────────────────────────

    def get_data_usage(self) -> dict[str, int]:
        """Bytes transferred per access key id over the last 30 days."""
        return self._get("metrics/transfer").json().get("bytesTransferredByUserId", {})

    # ── Internal HTTP helpers ───────────────────────────────────────

    def _get(self, path: str) -> requests.Response:
        return self._request("GET", path)

    def _post(self, path: str, json: Any = None) -> requests.Response:
        return self._request("POST", path, json=json)

    def _put(self, path: str, json: Any = None) -> requests.Response:
        return self._request("PUT", path, json=json)

    def _delete(self, path: str) -> requests.Response:
        return self._request("DELETE", path)

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self._base}{path}"
        kwargs.setdefault("timeout", self._timeout)
        logger.debug("%s %s", method, path)

        try:
            resp = self._session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise ServerApiError(f"Management API request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise ServerApiError(
                f"HTTP {resp.status_code} on {method} {path}: {resp.text}",
                status_code=resp.status_code,
                response_body=resp.text,
            )

        return resp
