from __future__ import annotations

import json
import logging

import pydantic
from pydantic import TypeAdapter

from .errors import CorruptCacheError
from .models import DisplayServer, InstallState
from .server import Server
from .storage import KeyValueStorage

logger = logging.getLogger(__name__)

_display_list = TypeAdapter(list[DisplayServer])


def make_display_server(server: Server) -> DisplayServer:
    """Snapshot a live server. Same server state in, equal snapshot out."""
    installing = server.is_managed and not server.is_install_completed()
    return DisplayServer(
        id=server.management_api_url,
        name=server.name,
        is_managed=server.is_managed,
        install_state=InstallState.INSTALLING if installing else InstallState.READY,
    )


class DisplayServerRepository:
    """Persisted display snapshots of every known server plus the last one viewed."""

    SERVERS_STORAGE_KEY = "display-servers"
    LAST_DISPLAYED_SERVER_ID_KEY = "last-displayed-server"

    def __init__(self, storage: KeyValueStorage):
        self.storage = storage

    def _load(self) -> list[DisplayServer]:
        raw = self.storage.get(self.SERVERS_STORAGE_KEY)
        if not raw:
            return []
        try:
            return _display_list.validate_json(raw)
        except pydantic.ValidationError as e:
            raise CorruptCacheError(f"Cannot decode {self.SERVERS_STORAGE_KEY}") from e

    async def list_servers(self) -> list[DisplayServer]:
        try:
            return self._load()
        except CorruptCacheError as e:
            logger.warning("%s; treating display cache as empty", e)
            return []

    async def store_servers(self, servers: list[DisplayServer]) -> None:
        payload = json.dumps([s.model_dump(mode="json", by_alias=True) for s in servers], ensure_ascii=False)
        self.storage.set(self.SERVERS_STORAGE_KEY, payload)

    async def find_server(self, server_id: str) -> DisplayServer | None:
        for server in await self.list_servers():
            if server.id == server_id:
                return server
        return None

    async def add_server(self, server: DisplayServer) -> None:
        """Insert or replace the entry with the same id."""
        servers = [s for s in await self.list_servers() if s.id != server.id]
        servers.append(server)
        await self.store_servers(servers)

    async def remove_server(self, server_id: str) -> bool:
        """Remove a server by id. Returns True if removed."""
        servers = await self.list_servers()
        remaining = [s for s in servers if s.id != server_id]
        changed = len(remaining) != len(servers)
        if changed:
            await self.store_servers(remaining)
        return changed

    async def store_last_displayed_server_id(self, server_id: str) -> None:
        self.storage.set(self.LAST_DISPLAYED_SERVER_ID_KEY, server_id)

    async def get_last_displayed_server_id(self) -> str | None:
        return self.storage.get(self.LAST_DISPLAYED_SERVER_ID_KEY) or None
