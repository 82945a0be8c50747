from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .models import ManualServerConfig
from .server import DEFAULT_SERVER_NAME, ManualServer, ServerState
from .storage import KeyValueStorage

MANUAL_SERVERS_STORAGE_KEY = "manual-servers"

logger = logging.getLogger(__name__)


class _ManualServerRecord(ManualServerConfig):
    model_config = ConfigDict(populate_by_name=True)

    name: str = DEFAULT_SERVER_NAME
    server_id: str | None = Field(default=None, alias="serverId")


class _ManualServerFile(BaseModel):
    version: int = 1
    servers: list[_ManualServerRecord] = Field(default_factory=list)


class ManualServerRepository:
    """Durable, insertion-ordered set of servers the user added by hand."""

    def __init__(self, storage: KeyValueStorage):
        self.storage = storage
        self._servers: list[ManualServer] = [self._make_server(r) for r in self._load()]

    def _load(self) -> list[_ManualServerRecord]:
        raw = self.storage.get(MANUAL_SERVERS_STORAGE_KEY)
        if not raw:
            return []
        try:
            return _ManualServerFile.model_validate_json(raw).servers
        except pydantic.ValidationError as e:
            logger.warning("Ignoring unreadable manual server list: %s", e)
            return []

    def _save(self) -> None:
        payload = {
            "version": 1,
            "servers": [
                {
                    "apiUrl": s.config.api_url,
                    "certSha256": s.config.cert_sha256,
                    "name": s.name,
                    "serverId": s.server_id,
                }
                for s in self._servers
            ],
        }
        self.storage.set(MANUAL_SERVERS_STORAGE_KEY, json.dumps(payload, ensure_ascii=False))

    def _make_server(self, record: _ManualServerRecord) -> ManualServer:
        config = ManualServerConfig(api_url=record.api_url, cert_sha256=record.cert_sha256)
        state = ServerState(server_id=record.server_id, name=record.name, on_change=self._save)
        return ManualServer(config, state=state, on_forget=self._forget)

    def _forget(self, server: ManualServer) -> None:
        self._servers = [s for s in self._servers if s is not server]
        self._save()

    async def add_server(self, config: ManualServerConfig | Mapping[str, Any]) -> ManualServer:
        """Add a server. The same apiUrl may be added more than once."""
        config = ManualServerConfig.from_mapping(dict(config) if isinstance(config, Mapping) else config)
        server = self._make_server(_ManualServerRecord(api_url=config.api_url, cert_sha256=config.cert_sha256))
        self._servers.append(server)
        self._save()
        logger.info("Added manual server %s", config.api_url)
        return server

    def find_server(self, config: ManualServerConfig | Mapping[str, Any]) -> ManualServer | None:
        """Find the first server whose apiUrl matches exactly."""
        if isinstance(config, ManualServerConfig):
            api_url = config.api_url
        else:
            api_url = config.get("apiUrl", config.get("api_url"))
        for server in self._servers:
            if server.management_api_url == api_url:
                return server
        return None

    async def list_servers(self) -> list[ManualServer]:
        return list(self._servers)
