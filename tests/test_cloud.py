"""Tests for the managed server registry."""

from __future__ import annotations

import asyncio

import pytest

from relay_manager.cloud import (
    RELAY_SERVER_TAG,
    ManagedServerRepository,
    decode_tag_value,
    encode_tag_value,
    generate_ssh_public_key,
    parse_key_value_tags,
)
from relay_manager.errors import TransportError


def test_tag_values_are_hex_encoded():
    encoded = encode_tag_value("https://1.2.3.4:8081/abc")
    assert all(c in "0123456789abcdef" for c in encoded)
    assert decode_tag_value(encoded) == "https://1.2.3.4:8081/abc"


def test_parse_key_value_tags_skips_other_and_malformed_tags():
    tags = ["relay-server", f"kv:apiurl:{encode_tag_value('url')}", "kv:certsha256:zz", "kv:empty:"]
    assert parse_key_value_tags(tags) == {"apiurl": "url", "empty": ""}


def test_generate_ssh_public_key():
    key = generate_ssh_public_key()
    assert key.startswith("ssh-ed25519 ")
    assert key != generate_ssh_public_key()


def test_create_server_returns_installing_server(cloud_session):
    """Test creation returns at once with the install still pending."""
    repo = ManagedServerRepository(cloud_session)

    server = asyncio.run(repo.create_server("nyc1"))

    assert not server.is_install_completed()
    assert server.is_managed
    assert server.host.region_id == "nyc1"
    assert server.host.monthly_cost_usd == 5
    assert server.host.monthly_transfer_limit_terabytes == 1
    assert server.management_api_url == f"droplet:{server.host.host_id}"
    assert server.certificate_fingerprint is None

    name, region, public_key, spec = cloud_session.created[0]
    assert region == "nyc1"
    assert "nyc1" in name
    assert public_key.startswith("ssh-ed25519 ")
    assert RELAY_SERVER_TAG in spec.tags


def test_list_servers_includes_installing_and_ready(cloud_session):
    cloud_session.add_installed_droplet("https://ready.example", cert="abc")
    cloud_session.add_installing_droplet()
    repo = ManagedServerRepository(cloud_session)

    servers = asyncio.run(repo.list_servers())

    assert [s.is_install_completed() for s in servers] == [True, False]
    assert servers[0].management_api_url == "https://ready.example"
    assert servers[0].certificate_fingerprint == "abc"


def test_list_servers_reuses_objects(cloud_session):
    cloud_session.add_installed_droplet("https://ready.example")
    repo = ManagedServerRepository(cloud_session)

    async def scenario():
        return await repo.list_servers(), await repo.list_servers()

    first, second = asyncio.run(scenario())
    assert first[0] is second[0]


def test_list_servers_drops_deleted_droplets(cloud_session):
    droplet_id = cloud_session.add_installed_droplet("https://ready.example")
    repo = ManagedServerRepository(cloud_session)

    async def scenario():
        await repo.list_servers()
        del cloud_session.droplets[droplet_id]
        return await repo.list_servers()

    assert asyncio.run(scenario()) == []


def test_list_servers_unreachable(cloud_session):
    cloud_session.unreachable = True
    with pytest.raises(TransportError):
        asyncio.run(ManagedServerRepository(cloud_session).list_servers())


def test_poll_install_reports_progress(cloud_session):
    """Test polling picks up status changes and install tags."""
    repo = ManagedServerRepository(cloud_session)

    async def scenario():
        server = await repo.create_server("nyc1")
        droplet_id = int(server.host.host_id)
        first = await server.poll_install()
        cloud_session.set_status(droplet_id, "active")
        second = await server.poll_install()
        cloud_session.finish_install(droplet_id, "https://done.example")
        await server.poll_install()
        return server, first, second

    server, first, second = asyncio.run(scenario())
    assert first.status == "new"
    assert second.status == "active"
    assert first != second
    assert server.is_install_completed()
    assert server.management_api_url == "https://done.example"


def test_poll_install_reports_failure(cloud_session):
    repo = ManagedServerRepository(cloud_session)

    async def scenario():
        server = await repo.create_server("nyc1")
        cloud_session.fail_install(int(server.host.host_id), "out of disk")
        return await server.poll_install()

    progress = asyncio.run(scenario())
    assert progress.failed
    assert progress.error == "out of disk"


def test_errored_droplet_is_failed(cloud_session):
    repo = ManagedServerRepository(cloud_session)

    async def scenario():
        server = await repo.create_server("nyc1")
        cloud_session.set_status(int(server.host.host_id), "errored")
        return await server.poll_install()

    assert asyncio.run(scenario()).failed


def test_delete_host(cloud_session):
    cloud_session.add_installed_droplet("https://ready.example")
    repo = ManagedServerRepository(cloud_session)

    async def scenario():
        (server,) = await repo.list_servers()
        await server.host.delete()
        return await repo.list_servers()

    assert asyncio.run(scenario()) == []
    assert cloud_session.droplets == {}


def test_installing_server_is_not_healthy(cloud_session):
    server = asyncio.run(ManagedServerRepository(cloud_session).create_server("nyc1"))
    assert asyncio.run(server.is_healthy()) is False


def test_get_region_map(cloud_session):
    """Test available regions are grouped by city."""
    region_map = asyncio.run(ManagedServerRepository(cloud_session).get_region_map())
    assert region_map == {"nyc": ["nyc1", "nyc3"], "ams": ["ams3"]}
