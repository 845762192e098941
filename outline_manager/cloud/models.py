"""Typed views of cloud provider API responses.

Raw JSON/SDK payloads are narrowed into these dataclasses inside the client
modules, so code above the client layer never handles provider dictionaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

# ── DigitalOcean ────────────────────────────────────────────────────


@dataclass(frozen=True)
class Droplet:
    """A DigitalOcean droplet as returned by GET /droplets/{id}."""

    id: int
    name: str
    status: str  # "new", "active", "off", "archive"
    region_slug: str
    size_slug: str
    tags: tuple[str, ...] = ()
    price_monthly: float | None = None
    transfer_terabytes: float | None = None
    public_ipv4: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class Region:
    """A DigitalOcean region, e.g. "nyc3"."""

    slug: str
    name: str
    available: bool
    sizes: tuple[str, ...] = ()

    @property
    def city_id(self) -> str:
        """The city prefix shared by sibling datacenters, e.g. "nyc" for nyc1/nyc3."""
        return self.slug[:3].lower()


# ── Google Cloud Platform ───────────────────────────────────────────


@dataclass(frozen=True)
class GcpInstance:
    """A Compute Engine VM instance."""

    id: str
    name: str
    zone: str  # short zone name, e.g. "us-central1-a"
    status: str
    labels: dict[str, str] = field(default_factory=dict)
    nat_ip: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class GcpZone:
    name: str
    region: str  # short region name, e.g. "us-central1"
    status: str  # "UP" or "DOWN"


@dataclass(frozen=True)
class GcpOperation:
    name: str
    status: str  # "PENDING", "RUNNING", "DONE"
    target_id: str = ""
    zone: str | None = None
    error: str | None = None

    @property
    def done(self) -> bool:
        return self.status == "DONE"


# ── Amazon Lightsail ────────────────────────────────────────────────


@dataclass(frozen=True)
class LightsailInstance:
    name: str
    region: str
    availability_zone: str
    state: str  # "pending", "running", "stopping", ...
    bundle_id: str = ""
    tags: dict[str, str] = field(default_factory=dict)
    public_ip: str | None = None
    is_static_ip: bool = False
    created_at: datetime | None = None


@dataclass(frozen=True)
class LightsailBundle:
    bundle_id: str
    price: float
    transfer_per_month_gb: float


@dataclass(frozen=True)
class LightsailRegion:
    name: str
    display_name: str
    availability_zones: tuple[str, ...] = ()
