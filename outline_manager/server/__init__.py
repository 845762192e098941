"""Server repositories and the provider-agnostic repository Protocol."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .managed import LocationOption, ManagedServer


@runtime_checkable
class ManagedServerRepository(Protocol):
    """Protocol that every cloud server repository must satisfy."""

    provider: str

    @property
    def account_id(self) -> str:
        ...

    async def create_server(self, location: str, name: str) -> ManagedServer:
        """Create a cloud instance and return its server without waiting for the install."""
        ...

    async def list_servers(self, fetch_from_host: bool = True) -> list[ManagedServer]:
        """Return Outline servers; with fetch_from_host=False, the last fetched list."""
        ...

    async def list_locations(self) -> list[LocationOption]:
        ...
