from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol, TypeVar

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from pydantic import BaseModel, Field

from .errors import TransportError
from .models import InstallProgress
from .server import DEFAULT_SERVER_NAME, ServerState, check_endpoint

RELAY_SERVER_TAG = "relay-server"
KEY_VALUE_TAG_PREFIX = "kv:"
API_URL_KEY = "apiurl"
CERT_SHA256_KEY = "certsha256"
INSTALL_ERROR_KEY = "install-error"
FAILED_DROPLET_STATUSES = frozenset({"archive", "errored"})
PENDING_API_URL_PREFIX = "droplet:"
INSTALL_SCRIPT_URL = "https://raw.githubusercontent.com/relay-manager/relay-server/master/install.sh"

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DropletSpec(BaseModel):
    """What to boot: machine size, base image, tags and first-boot script."""

    size: str = "s-1vcpu-1gb"
    image: str = "docker-20-04"
    tags: list[str] = Field(default_factory=lambda: [RELAY_SERVER_TAG])
    install_command: str = f"curl -sSL {INSTALL_SCRIPT_URL} | bash"


class CloudSession(Protocol):
    """Authenticated cloud provider API. Calls raise TransportError when unreachable."""

    access_token: str

    async def get_account(self) -> dict[str, Any]: ...

    async def create_droplet(
        self, display_name: str, region: str, public_key_for_ssh: str, spec: DropletSpec
    ) -> dict[str, Any]: ...

    async def get_droplet(self, droplet_id: int) -> dict[str, Any]: ...

    async def get_droplets_by_tag(self, tag: str) -> list[dict[str, Any]]: ...

    async def delete_droplet(self, droplet_id: int) -> None: ...

    async def get_region_info(self) -> list[dict[str, Any]]: ...


async def _call(awaitable: Awaitable[T]) -> T:
    try:
        return await awaitable
    except OSError as e:
        raise TransportError(str(e)) from e


def encode_tag_value(value: str) -> str:
    """Droplet tags only allow a small alphabet, so values are hex encoded."""
    return value.encode("utf-8").hex()


def decode_tag_value(value: str) -> str:
    return bytes.fromhex(value).decode("utf-8")


def parse_key_value_tags(tags: list[str]) -> dict[str, str]:
    result: dict[str, str] = {}
    for tag in tags:
        if not tag.startswith(KEY_VALUE_TAG_PREFIX):
            continue
        key, _, value = tag[len(KEY_VALUE_TAG_PREFIX) :].partition(":")
        try:
            result[key] = decode_tag_value(value)
        except ValueError:
            logger.debug("Skipping malformed droplet tag %r", tag)
    return result


def generate_ssh_public_key() -> str:
    """Return a throwaway OpenSSH public key for the new droplet."""
    key = Ed25519PrivateKey.generate()
    public_bytes = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return public_bytes.decode("ascii")


def _parse_created_at(droplet: dict[str, Any]) -> datetime | None:
    created_at = droplet.get("created_at")
    if not created_at:
        return None
    try:
        return datetime.fromisoformat(created_at.replace("Z", "+00:00"))
    except ValueError:
        return None


class ManagedHost:
    """The cloud machine backing a managed server."""

    def __init__(self, server: ManagedServer, on_delete: Callable[[ManagedServer], None] | None = None):
        self._server = server
        self._on_delete = on_delete

    @property
    def host_id(self) -> str:
        return str(self._server.droplet["id"])

    @property
    def region_id(self) -> str:
        return self._server.droplet.get("region", {}).get("slug", "")

    @property
    def monthly_cost_usd(self) -> float:
        return float(self._server.droplet.get("size", {}).get("price_monthly", 0))

    @property
    def monthly_transfer_limit_terabytes(self) -> float:
        return float(self._server.droplet.get("size", {}).get("transfer", 0))

    async def delete(self) -> None:
        await _call(self._server.session.delete_droplet(int(self.host_id)))
        logger.info("Deleted droplet %s", self.host_id)
        if self._on_delete:
            self._on_delete(self._server)


class ManagedServer:
    """A server provisioned on a cloud droplet; may still be installing."""

    is_managed = True

    def __init__(
        self,
        droplet: dict[str, Any],
        session: CloudSession,
        on_delete: Callable[[ManagedServer], None] | None = None,
    ):
        self.droplet = droplet
        self.session = session
        self.state = ServerState(
            server_id=str(droplet["id"]),
            name=droplet.get("name") or DEFAULT_SERVER_NAME,
            created_at=_parse_created_at(droplet),
        )
        self.host = ManagedHost(self, on_delete)

    @property
    def server_id(self) -> str:
        return self.state.server_id

    @property
    def name(self) -> str:
        return self.state.name

    @property
    def _kv(self) -> dict[str, str]:
        return parse_key_value_tags(self.droplet.get("tags", []))

    @property
    def management_api_url(self) -> str:
        return self._kv.get(API_URL_KEY) or f"{PENDING_API_URL_PREFIX}{self.host.host_id}"

    @property
    def certificate_fingerprint(self) -> str | None:
        return self._kv.get(CERT_SHA256_KEY)

    def is_install_completed(self) -> bool:
        kv = self._kv
        return API_URL_KEY in kv and CERT_SHA256_KEY in kv

    def install_progress(self) -> InstallProgress:
        kv = self._kv
        status = self.droplet.get("status", "new")
        error = kv.get(INSTALL_ERROR_KEY)
        return InstallProgress(
            status=status,
            stage=len(kv),
            failed=error is not None or status in FAILED_DROPLET_STATUSES,
            error=error,
        )

    def update(self, droplet: dict[str, Any]) -> None:
        was_completed = self.is_install_completed()
        self.droplet = droplet
        if not was_completed and self.is_install_completed():
            logger.info("Droplet %s finished installing at %s", self.host.host_id, self.management_api_url)

    async def poll_install(self) -> InstallProgress:
        """Refresh the droplet from the cloud and report install progress."""
        self.update(await _call(self.session.get_droplet(int(self.host.host_id))))
        return self.install_progress()

    async def is_healthy(self, timeout: float = 3.0) -> bool:
        if not self.is_install_completed():
            return False
        ok, _, _ = await check_endpoint(self.management_api_url, timeout)
        return ok

    def __repr__(self) -> str:
        return f"ManagedServer(host_id={self.host.host_id!r}, installed={self.is_install_completed()})"


class ManagedServerRepository:
    """Servers running on droplets tagged as relay servers."""

    def __init__(self, session: CloudSession, spec: DropletSpec | None = None):
        self.session = session
        self.spec = spec or DropletSpec()
        self._servers: dict[str, ManagedServer] = {}

    def _forget(self, server: ManagedServer) -> None:
        self._servers.pop(server.server_id, None)

    def _track(self, droplet: dict[str, Any]) -> ManagedServer:
        key = str(droplet["id"])
        server = self._servers.get(key)
        if server is None:
            server = ManagedServer(droplet, self.session, on_delete=self._forget)
            self._servers[key] = server
        else:
            server.update(droplet)
        return server

    async def list_servers(self) -> list[ManagedServer]:
        """List installing and ready servers. Objects are reused per droplet."""
        droplets = await _call(self.session.get_droplets_by_tag(RELAY_SERVER_TAG))
        servers = [self._track(d) for d in droplets]
        live = {s.server_id for s in servers}
        for key in [k for k in self._servers if k not in live]:
            del self._servers[key]
        return servers

    async def create_server(self, region: str, name: str | None = None) -> ManagedServer:
        """Start provisioning a droplet. Returns before the install finishes."""
        name = name or f"{DEFAULT_SERVER_NAME} {region}"
        droplet = await _call(self.session.create_droplet(name, region, generate_ssh_public_key(), self.spec))
        server = self._track(droplet)
        logger.info("Created droplet %s in %s", server.host.host_id, region)
        return server

    async def get_region_map(self) -> dict[str, list[str]]:
        """Group available region slugs by city, e.g. {"nyc": ["nyc1", "nyc3"]}."""
        regions = await _call(self.session.get_region_info())
        region_map: dict[str, list[str]] = {}
        for region in regions:
            if not region.get("available", True):
                continue
            slug = region["slug"]
            region_map.setdefault(re.sub(r"\d+$", "", slug), []).append(slug)
        return region_map
