"""REST client for the DigitalOcean API v2."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any

import requests
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_fixed

from ..config import DigitalOceanConfig
from ..exceptions import CloudApiError, CloudNetworkError
from .models import Droplet, Region

logger = logging.getLogger(__name__)

_MAX_CREATE_ATTEMPTS = 10
_CREATE_RETRY_SECONDS = 5


def _is_account_finalizing(exc: BaseException) -> bool:
    """DigitalOcean rejects droplet creation for up to ~30s while it validates a new account."""
    return isinstance(exc, CloudApiError) and "finalizing" in str(exc).lower()


class DigitalOceanClient:
    """Thin wrapper around the DigitalOcean REST API.

    The token needs read and write scope.
    """

    def __init__(self, config: DigitalOceanConfig):
        self._base = config.api_url.rstrip("/")
        self._session = requests.Session()
        self._session.headers["Authorization"] = f"Bearer {config.token}"
        self._session.headers["Content-Type"] = "application/json"
        self._timeout = config.timeout

    # ── Account ─────────────────────────────────────────────────────

    def register_ssh_key(self, name: str, public_key: str) -> int:
        """Register a public key so DigitalOcean does not email a root password."""
        resp = self._post("/account/keys", json={"name": name, "public_key": public_key})
        return resp.json()["ssh_key"]["id"]

    # ── Regions ─────────────────────────────────────────────────────

    def list_regions(self) -> list[Region]:
        regions = self._get("/regions").json().get("regions", [])
        return [_parse_region(raw) for raw in regions]

    # ── Droplets ────────────────────────────────────────────────────

    def create_droplet(
        self,
        name: str,
        region: str,
        size: str,
        image: str,
        user_data: str,
        tags: list[str],
        ssh_key_ids: list[int] | None = None,
    ) -> Droplet:
        data = {
            "name": make_valid_droplet_name(name),
            "region": region,
            "size": size,
            "image": image,
            "ssh_keys": ssh_key_ids or [],
            "user_data": user_data,
            "tags": tags,
            "ipv6": True,
        }
        resp = self._create_droplet_request(data)
        return _parse_droplet(resp.json()["droplet"])

    @retry(
        retry=retry_if_exception(_is_account_finalizing),
        stop=stop_after_attempt(_MAX_CREATE_ATTEMPTS),
        wait=wait_fixed(_CREATE_RETRY_SECONDS),
        reraise=True,
    )
    def _create_droplet_request(self, data: dict[str, Any]) -> requests.Response:
        logger.info("Requesting droplet creation", extra={"operation": "create_droplet"})
        return self._post("/droplets", json=data)

    def get_droplet(self, droplet_id: int) -> Droplet:
        return _parse_droplet(self._get(f"/droplets/{droplet_id}").json()["droplet"])

    def delete_droplet(self, droplet_id: int) -> None:
        logger.info("Requesting deletion of droplet %s", droplet_id)
        self._delete(f"/droplets/{droplet_id}")

    def list_droplets_by_tag(self, tag: str) -> list[Droplet]:
        droplets: list[Droplet] = []
        page = 1
        while True:
            body = self._get("/droplets", params={"tag_name": tag, "page": page, "per_page": 200}).json()
            droplets.extend(_parse_droplet(raw) for raw in body.get("droplets", []))
            if not body.get("links", {}).get("pages", {}).get("next"):
                return droplets
            page += 1

    # ── Internal HTTP helpers ───────────────────────────────────────

    def _get(self, path: str, params: dict | None = None) -> requests.Response:
        return self._request("GET", path, params=params)

    def _post(self, path: str, json: Any = None) -> requests.Response:
        return self._request("POST", path, json=json)

    def _delete(self, path: str) -> requests.Response:
        return self._request("DELETE", path)

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self._base}{path}"
        kwargs.setdefault("timeout", self._timeout)
        logger.debug("%s %s params=%s", method, path, kwargs.get("params"))

        try:
            resp = self._session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise CloudNetworkError(f"DigitalOcean request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise CloudApiError(
                f"HTTP {resp.status_code} on {method} {path}: {_error_message(resp)}",
                status_code=resp.status_code,
                response_body=resp.text,
            )

        return resp


def make_valid_droplet_name(name: str) -> str:
    """Strip everything outside A-Z, a-z, 0-9 and '-'."""
    return re.sub(r"[^A-Za-z0-9-]", "", name)


def _error_message(resp: requests.Response) -> str:
    try:
        return resp.json().get("message", resp.text)
    except ValueError:
        return resp.text


def _parse_region(raw: dict[str, Any]) -> Region:
    return Region(
        slug=raw["slug"],
        name=raw.get("name", raw["slug"]),
        available=bool(raw.get("available", False)),
        sizes=tuple(raw.get("sizes", [])),
    )


def _parse_droplet(raw: dict[str, Any]) -> Droplet:
    size = raw.get("size") or {}
    public_ipv4 = None
    for network in (raw.get("networks") or {}).get("v4", []):
        if network.get("type") == "public":
            public_ipv4 = network.get("ip_address")
            break

    created_at = None
    if raw.get("created_at"):
        try:
            created_at = datetime.fromisoformat(raw["created_at"].replace("Z", "+00:00"))
        except ValueError:
            created_at = None

    return Droplet(
        id=int(raw["id"]),
        name=raw.get("name", ""),
        status=raw.get("status", "new"),
        region_slug=(raw.get("region") or {}).get("slug", ""),
        size_slug=size.get("slug", raw.get("size_slug", "")),
        tags=tuple(raw.get("tags") or ()),
        price_monthly=size.get("price_monthly"),
        transfer_terabytes=size.get("transfer"),
        public_ipv4=public_ipv4,
        created_at=created_at,
    )
