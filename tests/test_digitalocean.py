"""Tests for DigitalOcean servers, hosts and the droplet repository."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import API_URL, FINGERPRINT, FakeClock, settle, wait_until
from outline_manager.cloud.digitalocean_client import DigitalOceanClient
from outline_manager.cloud.models import Droplet, Region
from outline_manager.cloud.tags import make_key_value_tag
from outline_manager.config import DigitalOceanConfig, ProvidersConfig
from outline_manager.exceptions import CloudApiError, DeletedServerError, InvalidTokenError
from outline_manager.server.digitalocean import DigitalOceanHost, DigitalOceanServerRepository, DropletMetadata
from outline_manager.server.install import InstallState
from outline_manager.server.managed import CloudLocation, DataAmount, MonetaryCost

INSTALLED_TAGS = (
    "shadowbox",
    f"kv:certsha256:{FINGERPRINT}",
    make_key_value_tag("apiurl", API_URL),
)


def _droplet(droplet_id=101, tags=("shadowbox",), **kwargs) -> Droplet:
    defaults = dict(
        name="outline-1",
        status="active",
        region_slug="nyc3",
        size_slug="s-1vcpu-1gb",
        price_monthly=6.0,
        transfer_terabytes=1.0,
        public_ipv4="203.0.113.7",
    )
    defaults.update(kwargs)
    return Droplet(id=droplet_id, tags=tuple(tags), **defaults)


def _repository(client, trust_store, clock=None, config=None, ignore_missing=True) -> DigitalOceanServerRepository:
    return DigitalOceanServerRepository(
        client,
        config or DigitalOceanConfig(account_id="do-acct", token="tok"),
        trust_store=trust_store,
        providers_config=ProvidersConfig(ignore_missing_on_delete=ignore_missing),
        clock=clock or FakeClock(),
    )


@pytest.fixture
def client():
    return MagicMock(spec=DigitalOceanClient)


class TestDropletMetadata:
    def test_reads_certificate_and_url(self):
        status = DropletMetadata(MagicMock(), _droplet(tags=INSTALLED_TAGS)).read_install_status()
        assert status.certificate_fingerprint == FINGERPRINT
        assert status.api_url == API_URL
        assert status.error is None

    def test_no_tags_is_undecided(self):
        status = DropletMetadata(MagicMock(), _droplet()).read_install_status()
        assert not status.is_ready
        assert not status.is_error

    def test_install_error_tag(self):
        tags = INSTALLED_TAGS + (make_key_value_tag("install-error", "INSTALL_SCRIPT_FAILED: 3"),)
        status = DropletMetadata(MagicMock(), _droplet(tags=tags)).read_install_status()
        assert status.error == "INSTALL_SCRIPT_FAILED: 3"

    def test_empty_install_error_tag_still_fails_install(self):
        tags = INSTALLED_TAGS + ("kv:install-error:",)
        status = DropletMetadata(MagicMock(), _droplet(tags=tags)).read_install_status()
        assert status.error == ""
        assert status.is_error

    def test_undecodable_install_error_tag_still_fails_install(self):
        tags = INSTALLED_TAGS + ("kv:install-error:zzz",)
        status = DropletMetadata(MagicMock(), _droplet(tags=tags)).read_install_status()
        assert status.is_error

    def test_api_url_gets_trailing_slash(self):
        tags = (make_key_value_tag("apiurl", "https://203.0.113.7:8081/abc"),)
        status = DropletMetadata(MagicMock(), _droplet(tags=tags)).read_install_status()
        assert status.api_url == "https://203.0.113.7:8081/abc/"

    def test_deprecated_port_and_prefix_tags(self):
        tags = (make_key_value_tag("apiport", "8081"), make_key_value_tag("apiprefix", "abc"))
        status = DropletMetadata(MagicMock(), _droplet(tags=tags)).read_install_status()
        assert status.api_url == "https://203.0.113.7:8081/abc/"

    def test_deprecated_port_without_public_ip(self):
        tags = (make_key_value_tag("apiport", "8081"),)
        status = DropletMetadata(MagicMock(), _droplet(tags=tags, public_ipv4=None)).read_install_status()
        assert status.api_url is None

    def test_malformed_certificate_is_absent(self):
        tags = ("kv:certsha256:nothex", make_key_value_tag("apiurl", API_URL))
        status = DropletMetadata(MagicMock(), _droplet(tags=tags)).read_install_status()
        assert status.certificate_fingerprint is None
        assert not status.is_ready

    @pytest.mark.asyncio
    async def test_refresh_fetches_droplet(self):
        client = MagicMock()
        client.get_droplet.return_value = _droplet(tags=INSTALLED_TAGS)
        metadata = DropletMetadata(client, _droplet())

        await metadata.refresh()

        client.get_droplet.assert_called_once_with(101)
        assert metadata.read_install_status().is_ready


class TestDigitalOceanHost:
    def test_metadata_views(self):
        host = DigitalOceanHost(MagicMock(), _droplet())
        assert host.get_host_id() == "101"
        assert host.get_cloud_location() == CloudLocation(id="nyc3", region="nyc")
        assert host.get_monthly_cost() == MonetaryCost(usd=6.0)
        assert host.get_monthly_outbound_transfer_limit() == DataAmount(terabytes=1.0)

    def test_unknown_size_has_no_cost(self):
        host = DigitalOceanHost(MagicMock(), _droplet(price_monthly=None, transfer_terabytes=None))
        assert host.get_monthly_cost() is None
        assert host.get_monthly_outbound_transfer_limit() is None


class TestCreateServer:
    @pytest.mark.asyncio
    async def test_creates_tagged_droplet_with_install_script(self, client, trust_store):
        client.create_droplet.return_value = _droplet()
        repo = _repository(client, trust_store)

        server = await repo.create_server("nyc3", "My Server")

        args = client.create_droplet.call_args.args
        assert args[0] == "My Server"
        assert args[1] == "nyc3"
        assert "export DO_ACCESS_TOKEN=tok" in args[4]
        assert args[5] == ["shadowbox"]
        assert server.id == "do-acct:101"
        assert server.install_state is InstallState.UNKNOWN
        client.register_ssh_key.assert_not_called()

    @pytest.mark.asyncio
    async def test_registers_configured_ssh_key(self, client, trust_store):
        client.create_droplet.return_value = _droplet()
        client.register_ssh_key.return_value = 77
        config = DigitalOceanConfig(token="tok", ssh_public_key="ssh-ed25519 AAAA")
        repo = _repository(client, trust_store, config=config)

        await repo.create_server("nyc3", "s")

        assert client.create_droplet.call_args.args[6] == [77]

    @pytest.mark.asyncio
    async def test_invalid_token_fails_before_any_call(self, client, trust_store):
        repo = _repository(client, trust_store, config=DigitalOceanConfig(token="bad token;rm"))

        with pytest.raises(InvalidTokenError):
            await repo.create_server("nyc3", "s")
        client.create_droplet.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_errors_propagate(self, client, trust_store):
        client.create_droplet.side_effect = CloudApiError("quota exceeded", status_code=422)
        repo = _repository(client, trust_store)

        with pytest.raises(CloudApiError, match="quota"):
            await repo.create_server("nyc3", "s")

    @pytest.mark.asyncio
    async def test_already_installed_droplet_needs_no_refresh(self, client, trust_store):
        client.create_droplet.return_value = _droplet(tags=INSTALLED_TAGS)
        repo = _repository(client, trust_store)

        server = await repo.create_server("nyc3", "s")

        assert server.install_state is InstallState.SUCCESS
        client.get_droplet.assert_not_called()

    @pytest.mark.asyncio
    async def test_tags_appear_after_one_tick(self, client, trust_store):
        clock = FakeClock()
        client.create_droplet.return_value = _droplet()
        client.get_droplet.return_value = _droplet(tags=INSTALLED_TAGS)
        repo = _repository(client, trust_store, clock=clock)

        server = await repo.create_server("nyc3", "s")
        await settle()
        assert not server.is_install_completed()

        await clock.advance(3)
        await asyncio.wait_for(server.wait_on_install(), timeout=5)

        assert server.install_state is InstallState.SUCCESS
        assert server.management_api_url == API_URL
        assert server.certificate_fingerprint == FINGERPRINT
        assert trust_store.is_trusted(FINGERPRINT)
        client.get_droplet.assert_called_once_with(101)


class TestListServers:
    @pytest.mark.asyncio
    async def test_cached_listing_makes_no_calls(self, client, trust_store):
        client.list_droplets_by_tag.return_value = [_droplet(1, INSTALLED_TAGS), _droplet(2, INSTALLED_TAGS)]
        repo = _repository(client, trust_store)
        fetched = await repo.list_servers()
        client.reset_mock()

        cached = await repo.list_servers(fetch_from_host=False)

        assert len(cached) == 2
        assert all(a is b for a, b in zip(cached, fetched))
        assert client.method_calls == []

    @pytest.mark.asyncio
    async def test_fetch_replaces_servers_wholesale(self, client, trust_store):
        client.list_droplets_by_tag.return_value = [_droplet(1, INSTALLED_TAGS)]
        repo = _repository(client, trust_store)
        first = await repo.list_servers()

        second = await repo.list_servers()

        client.list_droplets_by_tag.assert_called_with("shadowbox")
        assert [s.id for s in second] == [s.id for s in first]
        assert second[0] is not first[0]

    @pytest.mark.asyncio
    async def test_empty_install_error_tag_wins_over_published_result(self, client, trust_store):
        client.list_droplets_by_tag.return_value = [_droplet(1, INSTALLED_TAGS + ("kv:install-error:",))]

        (server,) = await _repository(client, trust_store).list_servers()

        assert server.install_state is InstallState.ERROR
        assert server.management_api_url is None
        assert not trust_store.is_trusted(FINGERPRINT)

    @pytest.mark.asyncio
    async def test_relisting_stops_polling_replaced_servers(self, client, trust_store):
        clock = FakeClock()
        client.list_droplets_by_tag.return_value = [_droplet(1)]
        client.get_droplet.return_value = _droplet(1)
        repo = _repository(client, trust_store, clock=clock)
        replaced = [await repo.list_servers(), await repo.list_servers()]
        current = await repo.list_servers()
        await settle()
        assert clock.pending_sleepers == 1

        await clock.advance(3)
        await wait_until(lambda: clock.pending_sleepers == 1)

        assert client.get_droplet.call_count == 1
        assert all(s[0].install_state is InstallState.UNKNOWN for s in replaced)
        assert current[0].install_state is InstallState.UNKNOWN

    @pytest.mark.asyncio
    async def test_cached_listing_before_fetch_is_empty(self, client, trust_store):
        assert await _repository(client, trust_store).list_servers(fetch_from_host=False) == []


class TestListLocations:
    @pytest.mark.asyncio
    async def test_groups_available_regions_by_city(self, client, trust_store):
        client.list_regions.return_value = [
            Region("nyc1", "New York 1", True, ("s-1vcpu-1gb",)),
            Region("nyc3", "New York 3", True, ("s-1vcpu-1gb",)),
            Region("ams3", "Amsterdam 3", False, ("s-1vcpu-1gb",)),
            Region("sfo2", "San Francisco 2", True, ("s-2vcpu-4gb",)),
            Region("lon1", "London 1", True, ("s-1vcpu-1gb",)),
        ]

        options = await _repository(client, trust_store).list_locations()

        assert [(o.region, o.location_ids) for o in options] == [
            ("lon", ("lon1",)),
            ("nyc", ("nyc1", "nyc3")),
        ]


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_marks_server_deleted(self, client, trust_store):
        client.create_droplet.return_value = _droplet()
        repo = _repository(client, trust_store)
        server = await repo.create_server("nyc3", "s")
        waiter = asyncio.ensure_future(server.wait_on_install())
        await settle()

        await server.get_host().delete()

        client.delete_droplet.assert_called_once_with(101)
        assert server.install_state is InstallState.DELETED
        assert server.is_install_completed()
        with pytest.raises(DeletedServerError):
            await waiter

    @pytest.mark.asyncio
    async def test_second_delete_is_noop(self, client, trust_store):
        client.create_droplet.return_value = _droplet()
        server = await _repository(client, trust_store).create_server("nyc3", "s")

        await server.get_host().delete()
        await server.get_host().delete()

        assert client.delete_droplet.call_count == 1
        assert server.install_state is InstallState.DELETED

    @pytest.mark.asyncio
    async def test_missing_droplet_counts_as_deleted(self, client, trust_store):
        client.create_droplet.return_value = _droplet()
        client.delete_droplet.side_effect = CloudApiError("not found", status_code=404)
        server = await _repository(client, trust_store).create_server("nyc3", "s")

        await server.get_host().delete()

        assert server.install_state is InstallState.DELETED

    @pytest.mark.asyncio
    async def test_missing_droplet_raises_when_policy_disabled(self, client, trust_store):
        client.create_droplet.return_value = _droplet()
        client.delete_droplet.side_effect = CloudApiError("not found", status_code=404)
        server = await _repository(client, trust_store, ignore_missing=False).create_server("nyc3", "s")

        with pytest.raises(CloudApiError):
            await server.get_host().delete()

        assert server.install_state is InstallState.UNKNOWN
        assert not server.get_host().is_deleted

    @pytest.mark.asyncio
    async def test_other_delete_errors_propagate(self, client, trust_store):
        client.create_droplet.return_value = _droplet()
        client.delete_droplet.side_effect = CloudApiError("server error", status_code=500)
        server = await _repository(client, trust_store).create_server("nyc3", "s")

        with pytest.raises(CloudApiError):
            await server.get_host().delete()
        assert server.install_state is InstallState.UNKNOWN

    @pytest.mark.asyncio
    async def test_delete_after_success_keeps_success(self, client, trust_store):
        client.create_droplet.return_value = _droplet(tags=INSTALLED_TAGS)
        server = await _repository(client, trust_store).create_server("nyc3", "s")

        await server.get_host().delete()

        assert server.install_state is InstallState.SUCCESS
        assert server.get_host().is_deleted
