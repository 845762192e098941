"""Servers the user installed by hand and added by API URL and certificate."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Callable

from ..config import ManagementConfig
from ..storage import KeyValueStore
from ..trust import CertificateTrustStore
from .management_client import ManagementApiClient

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "manual-servers"


@dataclass(frozen=True)
class ManualServerConfig:
    api_url: str
    cert_sha256: str  # hex, as printed by the install script


class ManualServer:
    """An already-installed server; there is nothing to poll."""

    def __init__(
        self,
        config: ManualServerConfig,
        certificate_fingerprint: str,
        forget_callback: Callable[[ManualServerConfig], None],
        management_config: ManagementConfig | None = None,
    ):
        self._config = config
        self._fingerprint = certificate_fingerprint
        self._forget_callback = forget_callback
        self._management_config = management_config

    def __repr__(self) -> str:
        return f"ManualServer({self.id!r})"

    @property
    def id(self) -> str:
        return f"manual:{self._config.api_url}"

    @property
    def config(self) -> ManualServerConfig:
        return self._config

    @property
    def management_api_url(self) -> str:
        return self._config.api_url

    @property
    def certificate_fingerprint(self) -> str:
        return self._fingerprint

    def is_install_completed(self) -> bool:
        return True

    async def wait_on_install(self) -> None:
        return None

    def management_api(self) -> ManagementApiClient:
        return ManagementApiClient(self._config.api_url, self._fingerprint, self._management_config)

    def forget(self) -> None:
        """Remove this server from the stored list. The server itself is untouched."""
        self._forget_callback(self._config)


class ManualServerRepository:
    """Manual server configs persisted as a JSON list under one storage key."""

    def __init__(
        self,
        store: KeyValueStore,
        trust_store: CertificateTrustStore,
        storage_key: str = DEFAULT_STORAGE_KEY,
        management_config: ManagementConfig | None = None,
    ):
        self._store = store
        self._trust_store = trust_store
        self._storage_key = storage_key
        self._management_config = management_config

    def add_server(self, config: ManualServerConfig) -> ManualServer:
        """Trust the certificate and remember the server.

        Raises ValueError if ``cert_sha256`` is not a hex SHA-256 fingerprint.
        Servers are keyed by ``api_url``: adding a known URL again does not
        duplicate it, and a different certificate replaces the stored one.
        """
        server = self._make_server(config)
        configs = self._load()
        known = [c for c in configs if c.api_url == config.api_url]
        if known == [config]:
            return server
        configs = [c for c in configs if c.api_url != config.api_url] + [config]
        self._save(configs)
        logger.info("Added manual server %s", server.id, extra={"server_id": server.id})
        return server

    def list_servers(self) -> list[ManualServer]:
        servers = []
        for config in self._load():
            try:
                servers.append(self._make_server(config))
            except ValueError:
                logger.error("Skipping stored manual server %s: bad certificate fingerprint", config.api_url)
        return servers

    def find_server(self, config: ManualServerConfig) -> ManualServer | None:
        for server in self.list_servers():
            if server.management_api_url == config.api_url:
                return server
        return None

    def _make_server(self, config: ManualServerConfig) -> ManualServer:
        fingerprint = self._trust_store.trust_certificate(config.cert_sha256)
        return ManualServer(config, fingerprint, self._forget, self._management_config)

    def _forget(self, config: ManualServerConfig) -> None:
        remaining = [c for c in self._load() if c.api_url != config.api_url]
        if remaining:
            self._save(remaining)
        else:
            self._store.remove(self._storage_key)
        logger.info("Forgot manual server %s", config.api_url)

    def _load(self) -> list[ManualServerConfig]:
        raw = self._store.get(self._storage_key)
        if not raw:
            return []
        try:
            entries = json.loads(raw)
            return [ManualServerConfig(api_url=e["api_url"], cert_sha256=e["cert_sha256"]) for e in entries]
        except (ValueError, TypeError, KeyError):
            logger.error("Ignoring unreadable manual server list under %s", self._storage_key)
            return []

    def _save(self, configs: list[ManualServerConfig]) -> None:
        self._store.set(self._storage_key, json.dumps([asdict(c) for c in configs]))
