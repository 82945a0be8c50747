from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .cloud import CloudSession, ManagedServer, ManagedServerRepository
from .display import DisplayServerRepository, make_display_server
from .errors import NotConnectedError, ProvisionError, TransportError, ValidationError
from .manual import ManualServerRepository
from .models import DisplayServer, ManualServerConfig
from .provisioning import ProvisioningWaiter
from .server import ManualServer, Server
from .tokens import TokenManager

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str], CloudSession]
ManagedRepositoryFactory = Callable[[CloudSession], ManagedServerRepository]


class Page(str, Enum):
    INTRO = "intro"
    SERVER_PROGRESS = "serverProgressStep"
    SERVER_VIEW = "serverView"


class AppView(BaseModel):
    """What the UI renders. The controller writes it and never reads it back."""

    current_page: Page = Page.INTRO
    server_list: list[DisplayServer] = Field(default_factory=list)
    selected_server: DisplayServer | None = None
    error_banner: str | None = None


async def _no_servers() -> list[Server]:
    return []


class App:
    """
    Reconciles the manual registry, the managed registry and the display cache
    into one server list, and decides which page the user sees.
    """

    def __init__(
        self,
        view: AppView,
        manual_repository: ManualServerRepository,
        display_repository: DisplayServerRepository,
        token_manager: TokenManager,
        session_factory: SessionFactory | None = None,
        managed_repository_factory: ManagedRepositoryFactory = ManagedServerRepository,
        waiter: ProvisioningWaiter | None = None,
    ):
        self.view = view
        self.manual_repository = manual_repository
        self.display_repository = display_repository
        self.token_manager = token_manager
        self.session_factory = session_factory
        self.managed_repository_factory = managed_repository_factory
        self.waiter = waiter or ProvisioningWaiter()
        self.managed_repository: ManagedServerRepository | None = None
        self._token: str | None = None
        self._servers: dict[str, Server] = {}
        self._display_ids: dict[str, str] = {}
        self._install_tasks: dict[str, tuple[ManagedServer, asyncio.Task[None]]] = {}
        self._selected_id: str | None = None

    # ------------------------------------------------------------------
    # Startup reconciliation

    def _connect_managed_repository(self) -> ManagedServerRepository | None:
        token = self.token_manager.get_stored_token()
        if not token or self.session_factory is None:
            self.managed_repository = None
            self._token = None
            return None
        if self.managed_repository is None or token != self._token:
            self.managed_repository = self.managed_repository_factory(self.session_factory(token))
            self._token = token
        return self.managed_repository

    async def _list_live(self, registry: str, listing: Awaitable[Sequence[Server]]) -> list[Server] | None:
        """List a registry, or return None when it cannot be reached."""
        try:
            return list(await listing)
        except TransportError as e:
            logger.warning("%s server registry unreachable: %s", registry, e)
            return None

    async def start(self) -> None:
        """Load every source, merge them and land on a page."""
        managed_repository = self._connect_managed_repository()
        cached, last_id, manual, managed = await asyncio.gather(
            self.display_repository.list_servers(),
            self.display_repository.get_last_displayed_server_id(),
            self._list_live("Manual", self.manual_repository.list_servers()),
            self._list_live("Managed", managed_repository.list_servers() if managed_repository else _no_servers()),
        )
        self.view.error_banner = None
        self._servers = {}
        self._display_ids = {}

        live = [*(manual or []), *(managed or [])]
        if live:
            display_servers = [self._track(server) for server in live]
            # An unreachable registry keeps its cached entries instead of erasing them
            unreachable = {is_managed for is_managed, listed in ((False, manual), (True, managed)) if listed is None}
            live_ids = {s.id for s in display_servers}
            display_servers.extend(s for s in cached if s.is_managed in unreachable and s.id not in live_ids)
            self.view.server_list = display_servers
            await self._store_servers(display_servers)
            installing = [s for s in managed or [] if isinstance(s, ManagedServer) and not s.is_install_completed()]
            for server in installing:
                self._watch_install(server)
            self._show(self._pick_default(display_servers, installing, last_id))
        elif cached:
            logger.info("No live servers found; showing %d cached server(s)", len(cached))
            self.view.server_list = list(cached)
            selected = next((s for s in cached if s.id == last_id), cached[0])
            self._show(selected, page=Page.SERVER_VIEW)
        else:
            self.view.server_list = []
            self._show(None)

    def _pick_default(
        self, display_servers: list[DisplayServer], installing: list[ManagedServer], last_id: str | None
    ) -> DisplayServer:
        for display in display_servers:
            if display.id == last_id:
                return display
        if installing:
            # Most recently created install wins; later position breaks ties
            _, newest = max(enumerate(installing), key=lambda item: (item[1].state.created_at, item[0]))
            return make_display_server(newest)
        return display_servers[0]

    # ------------------------------------------------------------------
    # Bookkeeping

    def _track(self, server: Server) -> DisplayServer:
        display = make_display_server(server)
        self._servers[server.server_id] = server
        self._display_ids[server.server_id] = display.id
        return display

    def _server_for(self, display_id: str) -> Server | None:
        for server_id, shown_id in self._display_ids.items():
            if shown_id == display_id:
                return self._servers.get(server_id)
        return None

    def _is_installing(self, server: Server | None) -> bool:
        return isinstance(server, ManagedServer) and not server.is_install_completed()

    def _show(self, display: DisplayServer | None, page: Page | None = None) -> None:
        self.view.selected_server = display
        self._selected_id = display.id if display else None
        if display is None:
            self.view.current_page = Page.INTRO
        elif page is not None:
            self.view.current_page = page
        elif self._is_installing(self._server_for(display.id)):
            self.view.current_page = Page.SERVER_PROGRESS
        else:
            self.view.current_page = Page.SERVER_VIEW
        logger.debug("Showing %s on %s", self._selected_id, self.view.current_page.value)

    async def _store_servers(self, servers: list[DisplayServer]) -> None:
        try:
            await self.display_repository.store_servers(servers)
        except (TransportError, OSError) as e:
            logger.warning("Could not save the server list: %s", e)

    async def _store_last_displayed(self, display_id: str) -> None:
        try:
            await self.display_repository.store_last_displayed_server_id(display_id)
        except (TransportError, OSError) as e:
            logger.warning("Could not save the selected server: %s", e)

    async def _persist(self, servers: list[DisplayServer]) -> None:
        self.view.server_list = servers
        await self._store_servers(servers)

    async def _add_display(self, display: DisplayServer) -> None:
        await self._persist([s for s in self.view.server_list if s.id != display.id] + [display])

    async def _untrack(self, server: Server) -> None:
        display_id = self._display_ids.pop(server.server_id, None)
        self._servers.pop(server.server_id, None)
        # Manual servers may share an apiUrl, so drop a single entry
        servers = list(self.view.server_list)
        for i, shown in enumerate(servers):
            if shown.id == display_id:
                del servers[i]
                break
        await self._persist(servers)
        if self._selected_id != display_id or any(s.id == display_id for s in servers):
            return
        self.view.error_banner = None
        if servers:
            fallback = servers[0]
            await self._store_last_displayed(fallback.id)
            self._show(fallback)
        else:
            self._show(None)

    # ------------------------------------------------------------------
    # Provisioning

    def _watch_install(self, server: ManagedServer) -> asyncio.Task[None]:
        running = self._install_tasks.get(server.server_id)
        if running is not None and not running[1].done():
            watched, task = running
            if watched is server:
                return task
            # The registry was rebuilt; stop polling through the stale object
            task.cancel()
        task = asyncio.create_task(self._await_install(server), name=f"install-{server.server_id}")
        self._install_tasks[server.server_id] = (server, task)
        task.add_done_callback(lambda t, sid=server.server_id: self._drop_task(sid, t))
        return task

    def _drop_task(self, server_id: str, task: asyncio.Task[None]) -> None:
        running = self._install_tasks.get(server_id)
        if running is not None and running[1] is task:
            del self._install_tasks[server_id]

    async def _await_install(self, server: ManagedServer) -> None:
        try:
            await self.waiter.wait_until_ready(server, reset_timeout_on_progress=True)
        except ProvisionError as e:
            if self._servers.get(server.server_id) is not server:
                return
            logger.warning("Install of server %s did not finish: %s", server.server_id, e)
            if self._selected_id == self._display_ids.get(server.server_id):
                self.view.error_banner = f"{e}. Retry to keep waiting."
            return

        if self._servers.get(server.server_id) is not server:
            logger.debug("Server %s was removed while installing; dropping result", server.server_id)
            return

        old_id = self._display_ids[server.server_id]
        display = self._track(server)
        servers = list(self.view.server_list)
        for i, shown in enumerate(servers):
            if shown.id == old_id:
                servers[i] = display
                break
        else:
            servers.append(display)
        await self._persist(servers)

        if self._selected_id == old_id:
            self.view.error_banner = None
            await self._store_last_displayed(display.id)
            self._show(display, page=Page.SERVER_VIEW)

    async def wait_for_installs(self) -> None:
        """Wait for every in-flight install watcher to settle."""
        if self._install_tasks:
            await asyncio.gather(*(task for _, task in self._install_tasks.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # User actions

    async def create_manual_server(self, user_input: str) -> ManualServer:
        """Add a server from the installer's JSON output and show it."""
        config = ManualServerConfig.from_user_input(user_input)

        server = self.manual_repository.find_server(config)
        if server is not None:
            logger.info("Server %s is already added", config.api_url)
        else:
            server = await self.manual_repository.add_server(config)

        display = self._track(server)
        await self._add_display(display)
        await self._store_last_displayed(display.id)
        self.view.error_banner = None
        self._show(display, page=Page.SERVER_VIEW)
        return server

    async def create_managed_server(self, region: str) -> ManagedServer:
        """Start provisioning in `region` and show its progress without waiting."""
        repository = self._connect_managed_repository()
        if repository is None:
            raise NotConnectedError("Connect a cloud account before creating servers")

        server = await repository.create_server(region)
        display = self._track(server)
        await self._add_display(display)
        await self._store_last_displayed(display.id)
        self.view.error_banner = None
        self._show(display, page=Page.SERVER_PROGRESS)
        self._watch_install(server)
        return server

    async def show_server(self, display_id: str) -> DisplayServer:
        display = next((s for s in self.view.server_list if s.id == display_id), None)
        if display is None:
            raise ValidationError(f"Unknown server: {display_id}")
        await self._store_last_displayed(display.id)
        self.view.error_banner = None
        self._show(display)
        return display

    async def retry_install(self, display_id: str) -> asyncio.Task[None]:
        """Resume waiting on a managed server whose install timed out or failed."""
        server = self._server_for(display_id)
        if not isinstance(server, ManagedServer) or server.is_install_completed():
            raise ValidationError(f"No install in progress for {display_id}")
        self.view.error_banner = None
        if self._selected_id == display_id:
            self.view.current_page = Page.SERVER_PROGRESS
        return self._watch_install(server)

    async def forget_manual_server(self, display_id: str) -> None:
        server = self._server_for(display_id)
        if not isinstance(server, ManualServer):
            raise ValidationError(f"Not a manual server: {display_id}")
        await server.forget()
        await self._untrack(server)

    async def delete_managed_server(self, display_id: str) -> None:
        """Delete the droplet. A pending install watcher keeps running but is ignored."""
        server = self._server_for(display_id)
        if not isinstance(server, ManagedServer):
            raise ValidationError(f"Not a managed server: {display_id}")
        await server.host.delete()
        await self._untrack(server)

    async def connect_cloud_account(self, token: str) -> dict[str, Any]:
        """Verify and store a cloud token, then reconcile again."""
        if self.session_factory is None:
            raise NotConnectedError("No cloud provider is configured")
        account = await self.session_factory(token).get_account()
        self.token_manager.write_token_to_storage(token)
        await self.start()
        return account

    async def sign_out_cloud(self) -> None:
        """Forget the cloud token and stop showing managed servers."""
        self.token_manager.remove_token_from_storage()
        self.managed_repository = None
        self._token = None
        for server in [s for s in self._servers.values() if isinstance(s, ManagedServer)]:
            await self._untrack(server)
