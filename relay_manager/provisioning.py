from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from .errors import ProvisionFailedError, ProvisionTimeoutError, TransportError
from .models import InstallProgress

DEFAULT_TIMEOUT = 300.0
DEFAULT_POLL_INTERVAL = 5.0

logger = logging.getLogger(__name__)


class Installable(Protocol):
    @property
    def server_id(self) -> str: ...

    def is_install_completed(self) -> bool: ...

    async def poll_install(self) -> InstallProgress: ...


class ProvisioningWaiter:
    """Polls a managed server until its install completes, fails or stalls."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.timeout = timeout
        self.poll_interval = poll_interval

    async def wait_until_ready(self, server: Installable, reset_timeout_on_progress: bool = True) -> None:
        """
        Return once the install is complete.

        Raises ProvisionFailedError if the host reports a failure and
        ProvisionTimeoutError if no progress is seen for `timeout` seconds.
        With reset_timeout_on_progress every new progress marker restarts the
        deadline; otherwise a single deadline applies from the first call.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        last_progress: InstallProgress | None = None

        while not server.is_install_completed():
            try:
                progress = await server.poll_install()
            except TransportError as e:
                logger.debug("Polling server %s failed: %s", server.server_id, e)
                progress = last_progress

            if server.is_install_completed():
                break
            if progress is not None and progress.failed:
                raise ProvisionFailedError(
                    f"Server installation failed: {progress.error or progress.status}", server.server_id
                )
            if progress != last_progress:
                if reset_timeout_on_progress:
                    deadline = loop.time() + self.timeout
                last_progress = progress

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ProvisionTimeoutError(
                    f"Server installation made no progress in {self.timeout:.0f}s", server.server_id
                )
            await asyncio.sleep(min(self.poll_interval, remaining))

        logger.info("Server %s is ready", server.server_id)
