"""Outline servers on Google Compute Engine instances.

The install script reports back through guest attributes in the ``outline/``
namespace, which are enabled on the instance at creation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from ..clock import Clock
from ..cloud.gcp_client import GcpClient
from ..cloud.models import GcpInstance, GcpOperation
from ..config import GcpConfig, InstallConfig, ManagementConfig, ProvidersConfig
from ..exceptions import CloudApiError
from ..install_scripts import gcp_user_data
from ..trust import CertificateTrustStore, normalize_fingerprint
from .install import InstallStatus
from .managed import CloudLocation, LocationOption, ManagedServer, ManagedServerHost

logger = logging.getLogger(__name__)

GUEST_ATTRIBUTES_NAMESPACE = "outline/"
API_URL_ATTRIBUTE = "apiUrl"
CERTIFICATE_ATTRIBUTE = "certSha256"
INSTALL_ERROR_ATTRIBUTE = "install-error"

OUTLINE_LABEL = "outline"
# Names both the firewall and the network tag it targets
FIREWALL_NAME = "outline"


def region_of_zone(zone: str) -> str:
    """us-central1-a -> us-central1"""
    return zone.rsplit("-", 1)[0]


def _raise_for_operation(operation: GcpOperation, action: str) -> None:
    if operation.error:
        raise CloudApiError(f"Failed to {action}: {operation.error}")


class GuestAttributesMetadata:
    """Install status read from the instance's ``outline/`` guest attributes."""

    def __init__(self, client: GcpClient, zone: str, instance_id: str):
        self._client = client
        self._zone = zone
        self._instance_id = instance_id
        self._attributes: dict[str, str] = {}

    async def refresh(self) -> None:
        try:
            self._attributes = await asyncio.to_thread(
                self._client.get_guest_attributes, self._zone, self._instance_id, GUEST_ATTRIBUTES_NAMESPACE
            )
        except CloudApiError as exc:
            # 404 until the guest writes its first attribute
            if not exc.is_not_found:
                raise

    def read_install_status(self) -> InstallStatus:
        api_url = self._attributes.get(API_URL_ATTRIBUTE) or None
        if api_url and not api_url.endswith("/"):
            api_url += "/"
        return InstallStatus(
            error=self._attributes.get(INSTALL_ERROR_ATTRIBUTE),
            certificate_fingerprint=self._certificate_fingerprint(),
            api_url=api_url,
        )

    def _certificate_fingerprint(self) -> str | None:
        value = self._attributes.get(CERTIFICATE_ATTRIBUTE)
        if not value:
            return None
        try:
            return normalize_fingerprint(value)
        except ValueError:
            logger.error("Instance %s published a malformed certificate fingerprint", self._instance_id)
            return None


class GcpHost(ManagedServerHost):
    def __init__(self, client: GcpClient, instance: GcpInstance, *, ignore_missing_on_delete: bool = True):
        super().__init__(ignore_missing_on_delete=ignore_missing_on_delete)
        self._client = client
        self._instance = instance

    def get_host_id(self) -> str:
        return self._instance.id

    def get_cloud_location(self) -> CloudLocation:
        return CloudLocation(id=self._instance.zone, region=region_of_zone(self._instance.zone))

    async def _delete_resources(self) -> None:
        # The static IP is named after the instance and must be released first
        region = region_of_zone(self._instance.zone)
        await self._tolerate_missing(
            f"static IP {self._instance.name}",
            lambda: asyncio.to_thread(self._client.delete_static_ip, region, self._instance.name),
        )
        await self._tolerate_missing(
            f"instance {self._instance.name}",
            lambda: asyncio.to_thread(self._client.delete_instance, self._instance.zone, self._instance.name),
        )


class GcpServerRepository:
    """Creates and lists Outline instances in one GCP project."""

    provider = "gcp"

    def __init__(
        self,
        client: GcpClient,
        config: GcpConfig,
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
        """Create an instance in zone ``location``.

        Order: firewall (if absent), instance, static IP promotion.
        """
        zone = location
        await self._ensure_firewall()

        instance_name = f"outline-{int(time.time() * 1000)}"
        operation = await asyncio.to_thread(
            self._client.create_instance, zone, self._instance_request(instance_name, zone, name)
        )
        _raise_for_operation(operation, f"create instance {instance_name}")
        operation = await asyncio.to_thread(self._client.wait_zone_operation, zone, operation.name)
        _raise_for_operation(operation, f"create instance {instance_name}")

        instance = await asyncio.to_thread(self._client.get_instance, zone, operation.target_id or instance_name)
        logger.info("Created instance %s in %s", instance.name, zone, extra={"provider": self.provider})

        if instance.nat_ip:
            operation = await asyncio.to_thread(
                self._client.create_static_ip, region_of_zone(zone), instance.name, instance.nat_ip
            )
            _raise_for_operation(operation, f"reserve static IP {instance.nat_ip}")
        else:
            logger.warning("Instance %s has no external IP to promote", instance.name)

        server = self._make_server(instance)
        self._servers.append(server)
        return server

    async def list_servers(self, fetch_from_host: bool = True) -> list[ManagedServer]:
        if not fetch_from_host:
            return list(self._servers)
        zones = await asyncio.to_thread(self._client.list_zones)
        per_zone = await asyncio.gather(
            *(
                asyncio.to_thread(self._client.list_instances, zone.name, f"labels.{OUTLINE_LABEL}=true")
                for zone in zones
            )
        )
        servers = [self._make_server(instance) for instances in per_zone for instance in instances]
        for stale in self._servers:
            stale.stop_polling()
        self._servers = servers
        return list(self._servers)

    async def list_locations(self) -> list[LocationOption]:
        """Zones that are UP, grouped by region."""
        zones = await asyncio.to_thread(self._client.list_zones)
        by_region: dict[str, list[str]] = {}
        for zone in zones:
            if zone.status == "UP":
                by_region.setdefault(zone.region, []).append(zone.name)
        return [
            LocationOption(region=region, location_ids=tuple(sorted(names)), name=region)
            for region, names in sorted(by_region.items())
        ]

    async def _ensure_firewall(self) -> None:
        firewalls = await asyncio.to_thread(self._client.list_firewalls, FIREWALL_NAME)
        if firewalls:
            return
        logger.info("Creating firewall %s", FIREWALL_NAME, extra={"provider": self.provider})
        operation = await asyncio.to_thread(
            self._client.create_firewall,
            {
                "name": FIREWALL_NAME,
                "direction": "INGRESS",
                "priority": 1000,
                "targetTags": [FIREWALL_NAME],
                "allowed": [{"IPProtocol": "all"}],
                "sourceRanges": ["0.0.0.0/0"],
            },
        )
        _raise_for_operation(operation, f"create firewall {FIREWALL_NAME}")

    def _instance_request(self, instance_name: str, zone: str, server_name: str) -> dict[str, Any]:
        return {
            "name": instance_name,
            "machineType": f"zones/{zone}/machineTypes/{self._config.machine_type}",
            "disks": [{"boot": True, "initializeParams": {"sourceImage": self._config.source_image}}],
            # Empty accessConfigs allocates an ephemeral external IP
            "networkInterfaces": [{"network": "global/networks/default", "accessConfigs": [{}]}],
            "labels": {OUTLINE_LABEL: "true"},
            "tags": {"items": [FIREWALL_NAME]},
            "metadata": {
                "items": [
                    {"key": "enable-guest-attributes", "value": "TRUE"},
                    {"key": "user-data", "value": gcp_user_data(server_name)},
                ]
            },
        }

    def _make_server(self, instance: GcpInstance) -> ManagedServer:
        host = GcpHost(self._client, instance, ignore_missing_on_delete=self._providers_config.ignore_missing_on_delete)
        return ManagedServer(
            f"{self._config.account_id}:{instance.id}",
            host,
            GuestAttributesMetadata(self._client, instance.zone, instance.id),
            trust_store=self._trust_store,
            install_config=self._install_config,
            management_config=self._management_config,
            clock=self._clock,
            name=instance.name,
        )
