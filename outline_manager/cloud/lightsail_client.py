"""AWS Lightsail client built on boto3."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError
from tenacity import retry, retry_if_exception_type, stop_after_delay, wait_fixed

from ..config import LightsailConfig
from ..exceptions import CloudApiError, CloudNetworkError
from .models import LightsailBundle, LightsailInstance, LightsailRegion

logger = logging.getLogger(__name__)

_OPERATION_POLL_SECONDS = 2
_OPERATION_TIMEOUT_SECONDS = 300


class _OperationPending(Exception):
    """Operation has not reached a terminal status yet - retry."""


class LightsailClient:
    """Lightsail calls for one AWS account, across all of its regions."""

    def __init__(self, config: LightsailConfig):
        self._config = config
        self._session = boto3.Session(
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name=config.region,
        )
        self._clients: dict[str, Any] = {}
        self._bundles: dict[str, dict[str, LightsailBundle]] = {}

    def _client(self, region: str):
        if region not in self._clients:
            self._clients[region] = self._session.client("lightsail", region_name=region)
        return self._clients[region]

    # ── Regions and bundles ──────────────────────────────────────────

    def get_regions(self) -> list[LightsailRegion]:
        response = self._call(
            self._config.region, "get_regions", includeAvailabilityZones=True
        )
        return [
            LightsailRegion(
                name=raw["name"],
                display_name=raw.get("displayName", raw["name"]),
                availability_zones=tuple(
                    az["zoneName"] for az in raw.get("availabilityZones", []) if az.get("state") == "available"
                ),
            )
            for raw in response.get("regions", [])
        ]

    def get_bundle(self, region: str, bundle_id: str) -> LightsailBundle | None:
        """Look up a bundle's price and transfer allowance; cached per region."""
        if region not in self._bundles:
            bundles: dict[str, LightsailBundle] = {}
            for raw in self._paginate(region, "get_bundles", "bundles"):
                bundles[raw["bundleId"]] = LightsailBundle(
                    bundle_id=raw["bundleId"],
                    price=float(raw.get("price", 0.0)),
                    transfer_per_month_gb=float(raw.get("transferPerMonthInGb", 0)),
                )
            self._bundles[region] = bundles
        return self._bundles[region].get(bundle_id)

    # ── Instances ────────────────────────────────────────────────────

    def create_instance(
        self,
        region: str,
        name: str,
        availability_zone: str,
        user_data: str,
        tags: dict[str, str],
    ) -> None:
        logger.info("Requesting Lightsail instance %s in %s", name, availability_zone,
                    extra={"operation": "create_instances"})
        response = self._call(
            region,
            "create_instances",
            instanceNames=[name],
            availabilityZone=availability_zone,
            blueprintId=self._config.blueprint_id,
            bundleId=self._config.bundle_id,
            userData=user_data,
            tags=[{"key": k, "value": v} for k, v in tags.items()],
        )
        self.wait_for_operations(region, response.get("operations", []))

    def get_instance(self, region: str, name: str) -> LightsailInstance:
        response = self._call(region, "get_instance", instanceName=name)
        return _parse_instance(response["instance"])

    def list_instances(self, region: str) -> list[LightsailInstance]:
        return [_parse_instance(raw) for raw in self._paginate(region, "get_instances", "instances")]

    def open_all_ports(self, region: str, name: str) -> None:
        response = self._call(
            region,
            "open_instance_public_ports",
            instanceName=name,
            portInfo={"fromPort": 0, "toPort": 65535, "protocol": "all"},
        )
        self.wait_for_operations(region, [response["operation"]] if "operation" in response else [])

    def delete_instance(self, region: str, name: str) -> None:
        logger.info("Requesting deletion of Lightsail instance %s", name)
        response = self._call(region, "delete_instance", instanceName=name)
        self.wait_for_operations(region, response.get("operations", []))

    # ── Static IPs ───────────────────────────────────────────────────

    def allocate_static_ip(self, region: str, static_ip_name: str) -> None:
        response = self._call(region, "allocate_static_ip", staticIpName=static_ip_name)
        self.wait_for_operations(region, response.get("operations", []))

    def attach_static_ip(self, region: str, static_ip_name: str, instance_name: str) -> None:
        response = self._call(
            region, "attach_static_ip", staticIpName=static_ip_name, instanceName=instance_name
        )
        self.wait_for_operations(region, response.get("operations", []))

    def detach_static_ip(self, region: str, static_ip_name: str) -> None:
        response = self._call(region, "detach_static_ip", staticIpName=static_ip_name)
        self.wait_for_operations(region, response.get("operations", []))

    def release_static_ip(self, region: str, static_ip_name: str) -> None:
        logger.info("Releasing static IP %s", static_ip_name)
        response = self._call(region, "release_static_ip", staticIpName=static_ip_name)
        self.wait_for_operations(region, response.get("operations", []))

    # ── Operations ───────────────────────────────────────────────────

    def wait_for_operations(self, region: str, operations: list[dict[str, Any]]) -> None:
        """Poll each operation until it succeeds; raise CloudApiError if one fails."""
        for operation in operations:
            if operation.get("status") == "Succeeded":
                continue
            self._wait_for_operation(region, operation["id"])

    def _wait_for_operation(self, region: str, operation_id: str) -> None:
        @retry(
            stop=stop_after_delay(_OPERATION_TIMEOUT_SECONDS),
            wait=wait_fixed(_OPERATION_POLL_SECONDS),
            retry=retry_if_exception_type(_OperationPending),
            reraise=True,
        )
        def _poll() -> None:
            operation = self._call(region, "get_operation", operationId=operation_id)["operation"]
            status = operation.get("status")
            if status == "Succeeded":
                return
            if status == "Failed":
                raise CloudApiError(
                    f"Lightsail operation {operation.get('operationType', operation_id)} failed: "
                    f"{operation.get('errorDetails') or operation.get('errorCode', 'unknown error')}"
                )
            raise _OperationPending()

        try:
            _poll()
        except _OperationPending as exc:
            raise CloudApiError(
                f"Lightsail operation {operation_id} did not finish within {_OPERATION_TIMEOUT_SECONDS}s"
            ) from exc

    # ── Internal helpers ─────────────────────────────────────────────

    def _paginate(self, region: str, method: str, key: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        kwargs: dict[str, Any] = {}
        while True:
            response = self._call(region, method, **kwargs)
            items.extend(response.get(key, []))
            token = response.get("nextPageToken")
            if not token:
                return items
            kwargs = {"pageToken": token}

    def _call(self, region: str, method: str, **kwargs) -> dict[str, Any]:
        logger.debug("lightsail.%s region=%s", method, region)
        try:
            return getattr(self._client(region), method)(**kwargs)
        except ClientError as exc:
            error = exc.response.get("Error", {})
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if error.get("Code") in ("NotFoundException", "DoesNotExist"):
                status = 404
            raise CloudApiError(
                f"Lightsail {method} failed: {error.get('Message', exc)}",
                status_code=status,
                response_body=str(exc.response),
            ) from exc
        except EndpointConnectionError as exc:
            raise CloudNetworkError(f"Lightsail {method} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise CloudApiError(f"Lightsail {method} failed: {exc}") from exc


def _parse_instance(raw: dict[str, Any]) -> LightsailInstance:
    location = raw.get("location", {})
    created_at = raw.get("createdAt")
    if isinstance(created_at, datetime) and created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return LightsailInstance(
        name=raw["name"],
        region=location.get("regionName", ""),
        availability_zone=location.get("availabilityZone", ""),
        state=(raw.get("state") or {}).get("name", ""),
        bundle_id=raw.get("bundleId", ""),
        tags={t["key"]: t.get("value", "") for t in raw.get("tags", [])},
        public_ip=raw.get("publicIpAddress"),
        is_static_ip=bool(raw.get("isStaticIp", False)),
        created_at=created_at if isinstance(created_at, datetime) else None,
    )
