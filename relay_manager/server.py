from __future__ import annotations

import asyncio
import socket
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable
from urllib.parse import urlsplit

from .errors import ValidationError
from .models import AccessKey, DataLimit, DataUsage, ManualServerConfig

DEFAULT_SERVER_NAME = "Relay Server"


async def check_endpoint(api_url: str, timeout: float = 3.0) -> tuple[bool, str, float]:
    """
    Check if a management API endpoint accepts TCP connections.
    Returns (is_available, message, response_time_ms).
    """
    start_time = time.perf_counter()

    try:
        parts = urlsplit(api_url)
        host = parts.hostname
        port = parts.port or (80 if parts.scheme == "http" else 443)
    except ValueError:
        return False, "invalid URL", 0.0
    if not host:
        return False, "invalid URL", 0.0

    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
        writer.close()
        await writer.wait_closed()
        return True, "reachable", (time.perf_counter() - start_time) * 1000
    except socket.gaierror:
        return False, "DNS error", (time.perf_counter() - start_time) * 1000
    except (TimeoutError, asyncio.TimeoutError):
        return False, "timeout", (time.perf_counter() - start_time) * 1000
    except ConnectionRefusedError:
        return False, "port closed", (time.perf_counter() - start_time) * 1000
    except OSError as e:
        return False, f"error: {e}", (time.perf_counter() - start_time) * 1000


class ServerState:
    """Name, metrics flag, access keys and data limit shared by every server kind."""

    def __init__(
        self,
        server_id: str | None = None,
        name: str = DEFAULT_SERVER_NAME,
        created_at: datetime | None = None,
        on_change: Callable[[], None] | None = None,
    ):
        self.server_id = server_id or str(uuid.uuid4())
        self.name = name
        self.created_at = created_at or datetime.now(timezone.utc)
        self.metrics_enabled = False
        self.port_for_new_access_keys: int | None = None
        self.access_key_data_limit: DataLimit | None = None
        self._access_keys: dict[str, AccessKey] = {}
        self._next_key_id = 0
        self._on_change = on_change

    def _changed(self) -> None:
        if self._on_change:
            self._on_change()

    async def set_name(self, name: str) -> None:
        name = name.strip()
        if not name:
            raise ValidationError("Server name cannot be empty")
        self.name = name
        self._changed()

    async def set_metrics_enabled(self, enabled: bool) -> None:
        self.metrics_enabled = enabled
        self._changed()

    async def set_port_for_new_access_keys(self, port: int) -> None:
        if not 0 < port < 65536:
            raise ValidationError(f"Invalid port: {port}")
        self.port_for_new_access_keys = port
        self._changed()

    async def list_access_keys(self) -> list[AccessKey]:
        return list(self._access_keys.values())

    async def add_access_key(self, name: str = "") -> AccessKey:
        key = AccessKey(id=str(self._next_key_id), name=name, port=self.port_for_new_access_keys)
        self._next_key_id += 1
        self._access_keys[key.id] = key
        return key

    def _get_access_key(self, key_id: str) -> AccessKey:
        try:
            return self._access_keys[key_id]
        except KeyError:
            raise ValidationError(f"Unknown access key: {key_id}") from None

    async def rename_access_key(self, key_id: str, name: str) -> None:
        key = self._get_access_key(key_id)
        self._access_keys[key_id] = key.model_copy(update={"name": name})

    async def remove_access_key(self, key_id: str) -> None:
        self._get_access_key(key_id)
        del self._access_keys[key_id]

    async def set_access_key_data_limit(self, limit: DataLimit) -> None:
        self.access_key_data_limit = limit
        self._changed()

    async def remove_access_key_data_limit(self) -> None:
        self.access_key_data_limit = None
        self._changed()

    async def get_data_usage(self) -> DataUsage:
        return DataUsage(bytes_transferred_by_user_id={key_id: 0 for key_id in self._access_keys})


@runtime_checkable
class Server(Protocol):
    """Capabilities every relay server offers, manual or managed."""

    state: ServerState
    is_managed: bool

    @property
    def server_id(self) -> str: ...

    @property
    def name(self) -> str: ...

    @property
    def management_api_url(self) -> str: ...

    async def is_healthy(self) -> bool: ...


class ManualServer:
    """A server the user added by pasting its API URL and certificate fingerprint."""

    is_managed = False

    def __init__(
        self,
        config: ManualServerConfig,
        state: ServerState | None = None,
        on_forget: Callable[[ManualServer], None] | None = None,
    ):
        self.config = config
        self.state = state or ServerState()
        self._on_forget = on_forget

    @property
    def server_id(self) -> str:
        return self.state.server_id

    @property
    def name(self) -> str:
        return self.state.name

    @property
    def management_api_url(self) -> str:
        return self.config.api_url

    @property
    def certificate_fingerprint(self) -> str:
        return self.config.cert_sha256

    async def is_healthy(self, timeout: float = 3.0) -> bool:
        ok, _, _ = await check_endpoint(self.management_api_url, timeout)
        return ok

    async def forget(self) -> None:
        """Remove this server from the registry that owns it."""
        if self._on_forget:
            self._on_forget(self)

    def __repr__(self) -> str:
        return f"ManualServer(api_url={self.management_api_url!r}, name={self.name!r})"
