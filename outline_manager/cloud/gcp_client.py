"""REST client for Google Compute Engine, authenticated with an OAuth refresh token."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any

import requests

from ..config import GcpConfig
from ..exceptions import CloudApiError, CloudNetworkError
from .models import GcpInstance, GcpOperation, GcpZone

logger = logging.getLogger(__name__)

COMPUTE_URL = "https://compute.googleapis.com/compute/v1"
TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh the access token this long before Google says it expires.
_TOKEN_EXPIRY_MARGIN_SECONDS = 60


class GcpClient:
    """Compute Engine calls scoped to one project."""

    def __init__(self, config: GcpConfig):
        self._config = config
        self._project = f"{COMPUTE_URL}/projects/{config.project_id}"
        self._session = requests.Session()
        self._session.headers["Content-Type"] = "application/json"
        self._session.headers["Accept"] = "application/json"
        self._timeout = config.timeout
        self._access_token: str | None = None
        self._token_expiry = 0.0

    # ── Instances ───────────────────────────────────────────────────

    def create_instance(self, zone: str, data: dict[str, Any]) -> GcpOperation:
        resp = self._request("POST", f"/zones/{zone}/instances", json=data)
        return _parse_operation(resp.json())

    def get_instance(self, zone: str, instance_id: str) -> GcpInstance:
        resp = self._request("GET", f"/zones/{zone}/instances/{instance_id}")
        return _parse_instance(resp.json())

    def delete_instance(self, zone: str, instance_name: str) -> GcpOperation:
        logger.info("Requesting deletion of instance %s in %s", instance_name, zone)
        resp = self._request("DELETE", f"/zones/{zone}/instances/{instance_name}")
        return _parse_operation(resp.json())

    def list_instances(self, zone: str, filter: str | None = None) -> list[GcpInstance]:
        params = {"filter": filter} if filter else {}
        items = self._list_all(f"/zones/{zone}/instances", params)
        return [_parse_instance(raw) for raw in items]

    def get_guest_attributes(self, zone: str, instance_id: str, namespace: str) -> dict[str, str]:
        """Return the guest attributes under ``namespace`` as a key/value mapping.

        Compute Engine answers 404 until the guest writes its first attribute.
        """
        resp = self._request(
            "GET",
            f"/zones/{zone}/instances/{instance_id}/getGuestAttributes",
            params={"queryPath": namespace},
        )
        items = (resp.json().get("queryValue") or {}).get("items", [])
        return {item["key"]: item.get("value", "") for item in items if "key" in item}

    def wait_zone_operation(self, zone: str, operation: str) -> GcpOperation:
        """Block until the operation is DONE or the server-side wait (~2 min) elapses."""
        resp = self._request("POST", f"/zones/{zone}/operations/{operation}/wait")
        return _parse_operation(resp.json())

    # ── Networking ──────────────────────────────────────────────────

    def list_firewalls(self, name: str) -> list[dict[str, Any]]:
        return self._list_all("/global/firewalls", {"filter": f'name="{name}"'})

    def create_firewall(self, data: dict[str, Any]) -> GcpOperation:
        resp = self._request("POST", "/global/firewalls", json=data)
        return _parse_operation(resp.json())

    def create_static_ip(self, region: str, name: str, address: str | None = None) -> GcpOperation:
        """Reserve a static IP; passing an ephemeral ``address`` promotes it."""
        data: dict[str, Any] = {"name": name}
        if address:
            data["address"] = address
        resp = self._request("POST", f"/regions/{region}/addresses", json=data)
        return _parse_operation(resp.json())

    def delete_static_ip(self, region: str, name: str) -> GcpOperation:
        logger.info("Requesting release of static IP %s in %s", name, region)
        resp = self._request("DELETE", f"/regions/{region}/addresses/{name}")
        return _parse_operation(resp.json())

    # ── Zones ───────────────────────────────────────────────────────

    def list_zones(self) -> list[GcpZone]:
        return [_parse_zone(raw) for raw in self._list_all("/zones", {})]

    # ── Internal HTTP helpers ───────────────────────────────────────

    def _list_all(self, path: str, params: dict[str, str]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page_params = dict(params)
        while True:
            body = self._request("GET", path, params=page_params).json()
            items.extend(body.get("items", []))
            token = body.get("nextPageToken")
            if not token:
                return items
            page_params = {**params, "pageToken": token}

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self._project}{path}"
        kwargs.setdefault("timeout", self._timeout)
        logger.debug("%s %s params=%s", method, path, kwargs.get("params"))

        resp = self._send(method, url, **kwargs)
        if resp.status_code == 401:
            # Access token revoked or expired early; refresh once and retry
            self._access_token = None
            resp = self._send(method, url, **kwargs)

        if resp.status_code >= 400:
            raise CloudApiError(
                f"HTTP {resp.status_code} on {method} {path}: {_error_message(resp)}",
                status_code=resp.status_code,
                response_body=resp.text,
            )
        return resp

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        headers = {"Authorization": f"Bearer {self._get_access_token()}"}
        try:
            return self._session.request(method, url, headers=headers, **kwargs)
        except requests.RequestException as exc:
            raise CloudNetworkError(f"GCP request failed: {exc}") from exc

    def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expiry:
            return self._access_token

        data = {
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
            "refresh_token": self._config.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            resp = self._session.post(TOKEN_URL, data=data, timeout=self._timeout,
                                      headers={"Content-Type": "application/x-www-form-urlencoded"})
        except requests.RequestException as exc:
            raise CloudNetworkError(f"GCP token refresh failed: {exc}") from exc
        if resp.status_code >= 400:
            raise CloudApiError(
                f"HTTP {resp.status_code} refreshing GCP access token: {resp.text}",
                status_code=resp.status_code,
                response_body=resp.text,
            )

        body = resp.json()
        self._access_token = body["access_token"]
        self._token_expiry = time.monotonic() + int(body.get("expires_in", 3600)) - _TOKEN_EXPIRY_MARGIN_SECONDS
        return self._access_token


def _short_name(url_or_name: str) -> str:
    """Resource URLs such as .../zones/us-central1-a end in the short name."""
    return url_or_name.rsplit("/", 1)[-1]


def _error_message(resp: requests.Response) -> str:
    try:
        return resp.json().get("error", {}).get("message", resp.text)
    except (ValueError, AttributeError):
        return resp.text


def _parse_instance(raw: dict[str, Any]) -> GcpInstance:
    nat_ip = None
    for interface in raw.get("networkInterfaces", []):
        for access_config in interface.get("accessConfigs", []):
            if access_config.get("natIP"):
                nat_ip = access_config["natIP"]
                break
        if nat_ip:
            break

    created_at = None
    if raw.get("creationTimestamp"):
        try:
            created_at = datetime.fromisoformat(raw["creationTimestamp"])
        except ValueError:
            created_at = None

    return GcpInstance(
        id=str(raw["id"]),
        name=raw.get("name", ""),
        zone=_short_name(raw.get("zone", "")),
        status=raw.get("status", ""),
        labels=dict(raw.get("labels") or {}),
        nat_ip=nat_ip,
        created_at=created_at,
    )


def _parse_zone(raw: dict[str, Any]) -> GcpZone:
    return GcpZone(name=raw["name"], region=_short_name(raw.get("region", "")), status=raw.get("status", "DOWN"))


def _parse_operation(raw: dict[str, Any]) -> GcpOperation:
    error = None
    errors = (raw.get("error") or {}).get("errors") or []
    if errors:
        error = "; ".join(e.get("message", e.get("code", "")) for e in errors)
    return GcpOperation(
        name=raw.get("name", ""),
        status=raw.get("status", ""),
        target_id=str(raw.get("targetId", "")),
        zone=_short_name(raw["zone"]) if raw.get("zone") else None,
        error=error,
    )
