"""Outline servers on Amazon Lightsail instances.

The install script reports back by tagging its own instance with ``apiUrl``,
``certSha256`` or ``install-error``.
"""

from __future__ import annotations

import asyncio
import logging
import re

from ..clock import Clock
from ..cloud.lightsail_client import LightsailClient
from ..cloud.models import LightsailBundle, LightsailInstance
from ..config import InstallConfig, LightsailConfig, ManagementConfig, ProvidersConfig
from ..install_scripts import lightsail_user_data
from ..trust import CertificateTrustStore, normalize_fingerprint
from .install import InstallStatus
from .managed import CloudLocation, DataAmount, LocationOption, ManagedServer, ManagedServerHost, MonetaryCost

logger = logging.getLogger(__name__)

OUTLINE_TAG = "outline"
API_URL_TAG = "apiUrl"
CERTIFICATE_TAG = "certSha256"
INSTALL_ERROR_TAG = "install-error"


def static_ip_name(instance_name: str) -> str:
    return f"{instance_name}-ip"


def make_valid_instance_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "-", name.strip()) or "outline"


class InstanceTagsMetadata:
    def __init__(self, client: LightsailClient, instance: LightsailInstance):
        self._client = client
        self._instance = instance

    async def refresh(self) -> None:
        self._instance = await asyncio.to_thread(
            self._client.get_instance, self._instance.region, self._instance.name
        )

    def read_install_status(self) -> InstallStatus:
        found = self._instance.tags
        api_url = found.get(API_URL_TAG) or None
        if api_url and not api_url.endswith("/"):
            api_url += "/"
        fingerprint = found.get(CERTIFICATE_TAG) or None
        if fingerprint:
            try:
                fingerprint = normalize_fingerprint(fingerprint)
            except ValueError:
                logger.error("Instance %s has a malformed certificate tag", self._instance.name)
                fingerprint = None
        return InstallStatus(
            error=found.get(INSTALL_ERROR_TAG),
            certificate_fingerprint=fingerprint,
            api_url=api_url,
        )


class LightsailHost(ManagedServerHost):
    def __init__(
        self,
        client: LightsailClient,
        instance: LightsailInstance,
        bundle: LightsailBundle | None = None,
        *,
        ignore_missing_on_delete: bool = True,
    ):
        super().__init__(ignore_missing_on_delete=ignore_missing_on_delete)
        self._client = client
        self._instance = instance
        self._bundle = bundle

    def get_host_id(self) -> str:
        # Instance names are only unique within a region
        return f"{self._instance.region}/{self._instance.name}"

    def get_cloud_location(self) -> CloudLocation:
        return CloudLocation(id=self._instance.availability_zone or self._instance.region, region=self._instance.region)

    def get_monthly_cost(self) -> MonetaryCost | None:
        return MonetaryCost(usd=self._bundle.price) if self._bundle else None

    def get_monthly_outbound_transfer_limit(self) -> DataAmount | None:
        if self._bundle is None:
            return None
        return DataAmount(terabytes=self._bundle.transfer_per_month_gb / 1000)

    async def _delete_resources(self) -> None:
        region = self._instance.region
        ip_name = static_ip_name(self._instance.name)
        await self._tolerate_missing(
            f"static IP attachment {ip_name}",
            lambda: asyncio.to_thread(self._client.detach_static_ip, region, ip_name),
        )
        await self._tolerate_missing(
            f"static IP {ip_name}",
            lambda: asyncio.to_thread(self._client.release_static_ip, region, ip_name),
        )
        await self._tolerate_missing(
            f"instance {self._instance.name}",
            lambda: asyncio.to_thread(self._client.delete_instance, region, self._instance.name),
        )


class LightsailServerRepository:
    """Creates and lists Outline instances in one AWS account, across regions."""

    provider = "lightsail"

    def __init__(
        self,
        client: LightsailClient,
        config: LightsailConfig,
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
        """Create an instance in region ``location``.

        Lightsail opens ports per instance, so the firewall step follows
        instance creation. The static IP is allocated and attached last.
        """
        region = location
        instance_name = make_valid_instance_name(name)
        user_data = lightsail_user_data(name, self._config.access_key_id, self._config.secret_access_key)

        await asyncio.to_thread(
            self._client.create_instance,
            region,
            instance_name,
            f"{region}a",
            user_data,
            {OUTLINE_TAG: "true"},
        )
        await asyncio.to_thread(self._client.open_all_ports, region, instance_name)
        ip_name = static_ip_name(instance_name)
        await asyncio.to_thread(self._client.allocate_static_ip, region, ip_name)
        await asyncio.to_thread(self._client.attach_static_ip, region, ip_name, instance_name)

        instance = await asyncio.to_thread(self._client.get_instance, region, instance_name)
        logger.info("Created Lightsail instance %s in %s", instance_name, region, extra={"provider": self.provider})
        server = await self._make_server(instance)
        self._servers.append(server)
        return server

    async def list_servers(self, fetch_from_host: bool = True) -> list[ManagedServer]:
        if not fetch_from_host:
            return list(self._servers)
        regions = await asyncio.to_thread(self._client.get_regions)
        per_region = await asyncio.gather(
            *(asyncio.to_thread(self._client.list_instances, region.name) for region in regions)
        )
        servers = []
        for instances in per_region:
            for instance in instances:
                if OUTLINE_TAG in instance.tags:
                    servers.append(await self._make_server(instance))
        for stale in self._servers:
            stale.stop_polling()
        self._servers = servers
        return list(self._servers)

    async def list_locations(self) -> list[LocationOption]:
        regions = await asyncio.to_thread(self._client.get_regions)
        return [
            LocationOption(region=region.name, location_ids=(region.name,), name=region.display_name)
            for region in sorted(regions, key=lambda r: r.name)
        ]

    async def _make_server(self, instance: LightsailInstance) -> ManagedServer:
        bundle = None
        if instance.bundle_id:
            bundle = await asyncio.to_thread(self._client.get_bundle, instance.region, instance.bundle_id)
        host = LightsailHost(
            self._client,
            instance,
            bundle,
            ignore_missing_on_delete=self._providers_config.ignore_missing_on_delete,
        )
        return ManagedServer(
            f"{self._config.account_id}:{instance.region}/{instance.name}",
            host,
            InstanceTagsMetadata(self._client, instance),
            trust_store=self._trust_store,
            install_config=self._install_config,
            management_config=self._management_config,
            clock=self._clock,
            name=instance.name,
        )
