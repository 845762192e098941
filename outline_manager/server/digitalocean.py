"""Outline servers on DigitalOcean droplets.

The install script reports back by adding key-value tags to its own droplet
(see :mod:`outline_manager.cloud.tags`).
"""

from __future__ import annotations

import asyncio
import logging

from ..clock import Clock
from ..cloud import tags
from ..cloud.digitalocean_client import DigitalOceanClient
from ..cloud.models import Droplet
from ..config import DigitalOceanConfig, InstallConfig, ManagementConfig, ProvidersConfig
from ..install_scripts import digitalocean_user_data
from ..trust import CertificateTrustStore, normalize_fingerprint
from .install import InstallStatus
from .managed import CloudLocation, DataAmount, LocationOption, ManagedServer, ManagedServerHost, MonetaryCost

logger = logging.getLogger(__name__)


class DropletMetadata:
    """Install status read from a droplet's tags; refresh re-fetches the droplet."""

    def __init__(self, client: DigitalOceanClient, droplet: Droplet):
        self._client = client
        self._droplet = droplet

    @property
    def droplet(self) -> Droplet:
        return self._droplet

    async def refresh(self) -> None:
        self._droplet = await asyncio.to_thread(self._client.get_droplet, self._droplet.id)

    def read_install_status(self) -> InstallStatus:
        return InstallStatus(
            error=self._install_error(),
            certificate_fingerprint=self._certificate_fingerprint(),
            api_url=self._api_url(),
        )

    def _install_error(self) -> str | None:
        # The tag's presence is the marker; its value is only a description
        if tags.get_tag_payload(self._droplet.tags, tags.INSTALL_ERROR_TAG) is None:
            return None
        return tags.get_tag_value(self._droplet.tags, tags.INSTALL_ERROR_TAG) or ""

    def _certificate_fingerprint(self) -> str | None:
        # The tag payload is the hex encoding of the raw digest, i.e. the hex fingerprint
        payload = tags.get_tag_payload(self._droplet.tags, tags.CERTIFICATE_FINGERPRINT_TAG)
        if not payload:
            return None
        try:
            return normalize_fingerprint(payload)
        except ValueError:
            logger.error("Droplet %s has a malformed certificate tag", self._droplet.id)
            return None

    def _api_url(self) -> str | None:
        api_url = tags.get_tag_value(self._droplet.tags, tags.API_URL_TAG)
        if not api_url:
            # Droplets from older installers publish port and prefix separately
            port = tags.get_tag_value(self._droplet.tags, tags.DEPRECATED_API_PORT_TAG)
            if not port or not self._droplet.public_ipv4:
                return None
            api_url = f"https://{self._droplet.public_ipv4}:{port}/"
            prefix = tags.get_tag_value(self._droplet.tags, tags.DEPRECATED_API_PREFIX_TAG)
            if prefix:
                api_url += prefix + "/"
        if not api_url.endswith("/"):
            api_url += "/"
        return api_url


class DigitalOceanHost(ManagedServerHost):
    def __init__(self, client: DigitalOceanClient, droplet: Droplet, *, ignore_missing_on_delete: bool = True):
        super().__init__(ignore_missing_on_delete=ignore_missing_on_delete)
        self._client = client
        self._droplet = droplet

    def get_host_id(self) -> str:
        return str(self._droplet.id)

    def get_cloud_location(self) -> CloudLocation:
        return CloudLocation(id=self._droplet.region_slug, region=self._droplet.region_slug[:3].lower())

    def get_monthly_cost(self) -> MonetaryCost | None:
        if self._droplet.price_monthly is None:
            return None
        return MonetaryCost(usd=self._droplet.price_monthly)

    def get_monthly_outbound_transfer_limit(self) -> DataAmount | None:
        if self._droplet.transfer_terabytes is None:
            return None
        return DataAmount(terabytes=self._droplet.transfer_terabytes)

    async def _delete_resources(self) -> None:
        await self._tolerate_missing(
            f"droplet {self._droplet.id}",
            lambda: asyncio.to_thread(self._client.delete_droplet, self._droplet.id),
        )


class DigitalOceanServerRepository:
    """Creates and lists Outline droplets in one DigitalOcean account."""

    provider = "digitalocean"

    def __init__(
        self,
        client: DigitalOceanClient,
        config: DigitalOceanConfig,
        *,
        trust_store: CertificateTrustStore,
        install_config: InstallConfig | None = None,
        providers_config: ProvidersConfig | None = None,
        management_config: ManagementConfig | None = None,
        clock: Clock | None = None,
    ):
        self._client = client
        self._config = config
        self._trust_store = trust_store
        self._install_config = install_config or InstallConfig()
        self._providers_config = providers_config or ProvidersConfig()
        self._management_config = management_config
        self._clock = clock
        self._servers: list[ManagedServer] = []

    @property
    def account_id(self) -> str:
        return self._config.account_id

    async def create_server(self, location: str, name: str) -> ManagedServer:
        """Create a droplet in region ``location`` and start watching its install."""
        user_data = digitalocean_user_data(
            self._config.token,
            name,
            image=self._config.image,
            metrics_url=self._config.metrics_url,
            sentry_api_url=self._config.sentry_api_url,
        )
        ssh_key_ids = None
        if self._config.ssh_public_key:
            key_id = await asyncio.to_thread(
                self._client.register_ssh_key, f"{name} key", self._config.ssh_public_key
            )
            ssh_key_ids = [key_id]

        droplet = await asyncio.to_thread(
            self._client.create_droplet,
            name,
            location,
            self._config.machine_size,
            self._config.droplet_image,
            user_data,
            [tags.SHADOWBOX_TAG],
            ssh_key_ids,
        )
        logger.info("Created droplet %s in %s", droplet.id, location, extra={"provider": self.provider})
        server = self._make_server(droplet)
        self._servers.append(server)
        return server

    async def list_servers(self, fetch_from_host: bool = True) -> list[ManagedServer]:
        """Return the droplets tagged for Outline.

        With ``fetch_from_host=False`` the previously fetched servers are
        returned without contacting DigitalOcean.
        """
        if not fetch_from_host:
            return list(self._servers)
        droplets = await asyncio.to_thread(self._client.list_droplets_by_tag, tags.SHADOWBOX_TAG)
        servers = [self._make_server(droplet) for droplet in droplets]
        for stale in self._servers:
            stale.stop_polling()
        self._servers = servers
        return list(self._servers)

    async def list_locations(self) -> list[LocationOption]:
        """Available regions offering the configured size, grouped by city."""
        regions = await asyncio.to_thread(self._client.list_regions)
        by_city: dict[str, list[str]] = {}
        names: dict[str, str] = {}
        for region in regions:
            if not region.available or self._config.machine_size not in region.sizes:
                continue
            by_city.setdefault(region.city_id, []).append(region.slug)
            names.setdefault(region.city_id, region.name)
        return [
            LocationOption(region=city, location_ids=tuple(sorted(slugs)), name=names[city])
            for city, slugs in sorted(by_city.items())
        ]

    def _make_server(self, droplet: Droplet) -> ManagedServer:
        host = DigitalOceanHost(
            self._client, droplet, ignore_missing_on_delete=self._providers_config.ignore_missing_on_delete
        )
        return ManagedServer(
            f"{self._config.account_id}:{droplet.id}",
            host,
            DropletMetadata(self._client, droplet),
            trust_store=self._trust_store,
            install_config=self._install_config,
            management_config=self._management_config,
            clock=self._clock,
            name=droplet.name,
        )
