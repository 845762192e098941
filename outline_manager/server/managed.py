"""Servers the manager created on a cloud provider, and the hosts they run on."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from ..clock import Clock
from ..config import InstallConfig, ManagementConfig
from ..exceptions import CloudApiError, ServerNotReadyError
from ..trust import CertificateTrustStore
from .install import InstallMetadataSource, InstallState, InstallStateMachine, InstallStatus
from .management_client import ManagementApiClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DataAmount:
    terabytes: float


@dataclass(frozen=True)
class MonetaryCost:
    usd: float


@dataclass(frozen=True)
class CloudLocation:
    """Where a host runs: ``id`` is the datacenter or zone, ``region`` its enclosing region."""

    id: str
    region: str | None = None


@dataclass(frozen=True)
class LocationOption:
    """A region where servers can be created.

    ``location_ids`` are the concrete datacenters or zones in the region; any
    of them is accepted as the ``location`` argument of ``create_server``.
    """

    region: str
    location_ids: tuple[str, ...]
    name: str = ""


class ManagedServerHost:
    """Read-only provider view of the machine behind a ManagedServer, plus deletion.

    Subclasses implement the getters and ``_delete_resources``. Each deletion
    step should go through ``_tolerate_missing`` so a resource that is already
    gone does not abort the rest.
    """

    def __init__(self, *, ignore_missing_on_delete: bool = True):
        self._ignore_missing = ignore_missing_on_delete
        self._on_deleted: Callable[[], None] | None = None
        self._delete_lock = asyncio.Lock()
        self._deleted = False

    def set_deletion_callback(self, callback: Callable[[], None]) -> None:
        self._on_deleted = callback

    @property
    def is_deleted(self) -> bool:
        return self._deleted

    def get_host_id(self) -> str:
        raise NotImplementedError

    def get_cloud_location(self) -> CloudLocation:
        raise NotImplementedError

    def get_monthly_cost(self) -> MonetaryCost | None:
        return None

    def get_monthly_outbound_transfer_limit(self) -> DataAmount | None:
        return None

    async def delete(self) -> None:
        """Delete the cloud resources, then notify the owning server.

        Concurrent and repeated calls are serialized; once deletion has
        succeeded further calls return immediately.
        """
        async with self._delete_lock:
            if self._deleted:
                return
            await self._delete_resources()
            self._deleted = True
            logger.info("Deleted host %s", self.get_host_id())
            if self._on_deleted is not None:
                self._on_deleted()

    async def _delete_resources(self) -> None:
        raise NotImplementedError

    async def _tolerate_missing(self, description: str, step: Callable[[], Awaitable[object]]) -> None:
        try:
            await step()
        except CloudApiError as exc:
            if not (exc.is_not_found and self._ignore_missing):
                raise
            logger.info("%s: already gone", description, extra={"status_code": exc.status_code})


class ManagedServer:
    """A provider-created server whose install outcome is determined by polling.

    Construction starts the install state machine; if the metadata in hand
    already decides the outcome, no polling task is created.
    """

    def __init__(
        self,
        server_id: str,
        host: ManagedServerHost,
        source: InstallMetadataSource,
        *,
        trust_store: CertificateTrustStore,
        install_config: InstallConfig | None = None,
        management_config: ManagementConfig | None = None,
        clock: Clock | None = None,
        name: str = "",
    ):
        install_config = install_config or InstallConfig()
        self._id = server_id
        self._name = name
        self._host = host
        self._trust_store = trust_store
        self._management_config = management_config or ManagementConfig()
        self._management_api_url: str | None = None
        self._certificate_fingerprint: str | None = None

        host.set_deletion_callback(self._on_host_deleted)
        self._install = InstallStateMachine(
            source,
            self._on_install_success,
            timeout_seconds=install_config.timeout_seconds,
            poll_interval_seconds=install_config.poll_interval_seconds,
            clock=clock,
            name=server_id,
        )
        self._install.start()

    def __repr__(self) -> str:
        return f"ManagedServer({self._id!r}, state={self._install.state.name})"

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def install_state(self) -> InstallState:
        return self._install.state

    @property
    def install_failure_reason(self) -> str | None:
        return self._install.failure_reason

    @property
    def management_api_url(self) -> str | None:
        return self._management_api_url

    @property
    def certificate_fingerprint(self) -> str | None:
        return self._certificate_fingerprint

    def get_host(self) -> ManagedServerHost:
        return self._host

    def is_install_completed(self) -> bool:
        return self._install.is_install_completed()

    async def wait_on_install(self) -> None:
        await self._install.wait_on_install()

    def stop_polling(self) -> None:
        self._install.stop()

    def management_api(self) -> ManagementApiClient:
        if self._install.state is not InstallState.SUCCESS:
            raise ServerNotReadyError(
                f"Server {self._id} is not installed (install state {self._install.state.name})"
            )
        return ManagementApiClient(
            self._management_api_url, self._certificate_fingerprint, self._management_config
        )

    def _on_install_success(self, status: InstallStatus) -> None:
        self._certificate_fingerprint = self._trust_store.trust_certificate(status.certificate_fingerprint)
        self._management_api_url = status.api_url

    def _on_host_deleted(self) -> None:
        self._install.mark_deleted()
