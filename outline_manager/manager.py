"""Entry point object tying the configured provider repositories together."""

from __future__ import annotations

import asyncio
import logging
from typing import Union

from .clock import Clock
from .config import AppConfig
from .exceptions import CloudApiError, OutlineManagerError
from .server import ManagedServerRepository
from .server.managed import ManagedServer
from .server.manual import ManualServer, ManualServerConfig, ManualServerRepository
from .storage import JsonFileStore, KeyValueStore
from .trust import CertificateTrustStore

logger = logging.getLogger(__name__)

Server = Union[ManagedServer, ManualServer]


class ServerManager:
    """Lists, creates and deletes servers across every configured provider."""

    def __init__(
        self,
        config: AppConfig,
        *,
        store: KeyValueStore | None = None,
        trust_store: CertificateTrustStore | None = None,
        clock: Clock | None = None,
        repositories: list[ManagedServerRepository] | None = None,
    ):
        self._config = config
        self._trust_store = trust_store or CertificateTrustStore()
        self._store = store if store is not None else JsonFileStore(config.storage.path)
        if repositories is None:
            repositories = self._build_repositories(config, self._trust_store, clock)
        self._repositories = {repo.provider: repo for repo in repositories}
        self._manual = ManualServerRepository(
            self._store, self._trust_store, management_config=config.management
        )

    @staticmethod
    def _build_repositories(
        config: AppConfig, trust_store: CertificateTrustStore, clock: Clock | None
    ) -> list[ManagedServerRepository]:
        """Instantiate one repository per configured provider section."""
        common = {
            "trust_store": trust_store,
            "install_config": config.install,
            "providers_config": config.providers,
            "management_config": config.management,
            "clock": clock,
        }
        repositories: list[ManagedServerRepository] = []
        if config.digitalocean is not None:
            from .cloud.digitalocean_client import DigitalOceanClient
            from .server.digitalocean import DigitalOceanServerRepository

            repositories.append(
                DigitalOceanServerRepository(DigitalOceanClient(config.digitalocean), config.digitalocean, **common)
            )
        if config.gcp is not None:
            from .cloud.gcp_client import GcpClient
            from .server.gcp import GcpServerRepository

            repositories.append(GcpServerRepository(GcpClient(config.gcp), config.gcp, **common))
        if config.lightsail is not None:
            from .cloud.lightsail_client import LightsailClient  # lazy import keeps boto3 off the DO/GCP path
            from .server.lightsail import LightsailServerRepository

            repositories.append(
                LightsailServerRepository(LightsailClient(config.lightsail), config.lightsail, **common)
            )
        return repositories

    @property
    def providers(self) -> list[str]:
        return list(self._repositories)

    @property
    def trust_store(self) -> CertificateTrustStore:
        return self._trust_store

    def repository(self, provider: str) -> ManagedServerRepository:
        try:
            return self._repositories[provider]
        except KeyError:
            raise OutlineManagerError(
                f"Provider '{provider}' is not configured (configured: {', '.join(self._repositories) or 'none'})"
            ) from None

    async def list_servers(self, fetch_from_host: bool = True) -> list[Server]:
        """Servers from every provider, then manual servers.

        A provider that fails to list is logged and skipped so the others
        are still shown.
        """
        repositories = list(self._repositories.values())
        results = await asyncio.gather(
            *(repo.list_servers(fetch_from_host) for repo in repositories), return_exceptions=True
        )
        servers: list[Server] = []
        for repo, result in zip(repositories, results):
            if isinstance(result, CloudApiError):
                logger.error(
                    "Failed to list servers: %s", result,
                    extra={"provider": repo.provider, "status_code": result.status_code},
                )
                continue
            if isinstance(result, BaseException):
                raise result
            servers.extend(result)
        servers.extend(self._manual.list_servers())
        return servers

    async def find_server(self, server_id: str, fetch_from_host: bool = True) -> Server | None:
        for server in await self.list_servers(fetch_from_host):
            if server.id == server_id:
                return server
        return None

    async def create_server(self, provider: str, location: str, name: str) -> ManagedServer:
        return await self.repository(provider).create_server(location, name)

    def add_manual_server(self, api_url: str, cert_sha256: str) -> ManualServer:
        return self._manual.add_server(ManualServerConfig(api_url=api_url, cert_sha256=cert_sha256))

    async def delete_server(self, server_id: str) -> None:
        """Delete a managed server's host, or forget a manual server."""
        server = await self.find_server(server_id)
        if server is None:
            raise OutlineManagerError(f"No server with id {server_id}")
        if isinstance(server, ManualServer):
            server.forget()
            return
        await server.get_host().delete()
