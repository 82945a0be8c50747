"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import itertools
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest
from typer.testing import CliRunner

from relay_manager.cloud import (
    API_URL_KEY,
    CERT_SHA256_KEY,
    INSTALL_ERROR_KEY,
    KEY_VALUE_TAG_PREFIX,
    DropletSpec,
    ManagedServerRepository,
    encode_tag_value,
)
from relay_manager.controller import App, AppView
from relay_manager.display import DisplayServerRepository
from relay_manager.errors import TransportError
from relay_manager.manual import ManualServerRepository
from relay_manager.provisioning import ProvisioningWaiter
from relay_manager.storage import InMemoryStorage
from relay_manager.tokens import TokenManager

if TYPE_CHECKING:
    from collections.abc import Generator

TOKEN = "fake-token"


def kv_tag(key: str, value: str) -> str:
    return f"{KEY_VALUE_TAG_PREFIX}{key}:{encode_tag_value(value)}"


class FakeCloudSession:
    """In-memory stand-in for the cloud provider API."""

    _ids = itertools.count(1000)

    def __init__(self, access_token: str = TOKEN):
        self.access_token = access_token
        self.droplets: dict[int, dict[str, Any]] = {}
        self.regions = [
            {"slug": "nyc1", "available": True},
            {"slug": "nyc3", "available": True},
            {"slug": "ams3", "available": True},
            {"slug": "sfo1", "available": False},
        ]
        self.unreachable = False
        self.created: list[tuple[str, str, str, DropletSpec]] = []

    def _check(self) -> None:
        if self.unreachable:
            raise TransportError("cloud unreachable")

    async def get_account(self) -> dict[str, Any]:
        self._check()
        return {"email": "fake@email.com", "uuid": "fake", "email_verified": True, "status": "active"}

    async def create_droplet(
        self, display_name: str, region: str, public_key_for_ssh: str, spec: DropletSpec
    ) -> dict[str, Any]:
        self._check()
        self.created.append((display_name, region, public_key_for_ssh, spec))
        droplet_id = next(self._ids)
        self.droplets[droplet_id] = {
            "id": droplet_id,
            "name": display_name,
            "status": "new",
            "region": {"slug": region},
            "size": {"price_monthly": 5, "transfer": 1},
            "tags": list(spec.tags),
        }
        return dict(self.droplets[droplet_id])

    async def get_droplet(self, droplet_id: int) -> dict[str, Any]:
        self._check()
        if droplet_id not in self.droplets:
            raise TransportError(f"droplet {droplet_id} not found")
        return dict(self.droplets[droplet_id])

    async def get_droplets_by_tag(self, tag: str) -> list[dict[str, Any]]:
        self._check()
        return [dict(d) for d in self.droplets.values() if tag in d["tags"]]

    async def delete_droplet(self, droplet_id: int) -> None:
        self._check()
        self.droplets.pop(droplet_id, None)

    async def get_region_info(self) -> list[dict[str, Any]]:
        self._check()
        return list(self.regions)

    def add_installed_droplet(self, api_url: str, cert: str = "cert") -> int:
        droplet_id = next(self._ids)
        self.droplets[droplet_id] = {
            "id": droplet_id,
            "name": f"Droplet {droplet_id}",
            "status": "active",
            "region": {"slug": "nyc1"},
            "size": {"price_monthly": 5, "transfer": 1},
            "tags": ["relay-server", kv_tag(API_URL_KEY, api_url), kv_tag(CERT_SHA256_KEY, cert)],
        }
        return droplet_id

    def add_installing_droplet(self, created_at: str | None = None) -> int:
        droplet_id = next(self._ids)
        self.droplets[droplet_id] = {
            "id": droplet_id,
            "name": f"Droplet {droplet_id}",
            "status": "new",
            "region": {"slug": "ams3"},
            "size": {"price_monthly": 5, "transfer": 1},
            "tags": ["relay-server"],
        }
        if created_at:
            self.droplets[droplet_id]["created_at"] = created_at
        return droplet_id

    def set_status(self, droplet_id: int, status: str) -> None:
        self.droplets[droplet_id]["status"] = status

    def finish_install(self, droplet_id: int, api_url: str, cert: str = "cert") -> None:
        droplet = self.droplets[droplet_id]
        droplet["status"] = "active"
        droplet["tags"] = [*droplet["tags"], kv_tag(API_URL_KEY, api_url), kv_tag(CERT_SHA256_KEY, cert)]

    def fail_install(self, droplet_id: int, message: str) -> None:
        droplet = self.droplets[droplet_id]
        droplet["tags"] = [*droplet["tags"], kv_tag(INSTALL_ERROR_KEY, message)]


@pytest.fixture
def runner() -> CliRunner:
    """Provide Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def temp_config_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Create temporary config directory and patch storage paths."""
    config_dir = tmp_path / "config"
    config_dir.mkdir(parents=True, exist_ok=True)

    def mock_get_config_paths() -> tuple[Path, Path, Path]:
        return config_dir, config_dir / "state.json", config_dir / "settings.json"

    monkeypatch.setattr("relay_manager.storage.get_config_paths", mock_get_config_paths)
    return config_dir


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def cloud_session() -> FakeCloudSession:
    return FakeCloudSession()


@pytest.fixture
def fast_waiter() -> ProvisioningWaiter:
    return ProvisioningWaiter(timeout=0.2, poll_interval=0.01)


@pytest.fixture
def make_app(storage: InMemoryStorage, cloud_session: FakeCloudSession, fast_waiter: ProvisioningWaiter):
    """Build an App over in-memory storage; pass token=TOKEN to connect the fake cloud."""

    def factory(
        token: str | None = None,
        view: AppView | None = None,
        manual_repository: ManualServerRepository | None = None,
        display_repository: DisplayServerRepository | None = None,
        managed_repository: ManagedServerRepository | None = None,
    ) -> App:
        token_manager = TokenManager(InMemoryStorage())
        if token:
            token_manager.write_token_to_storage(token)
        repository = managed_repository or ManagedServerRepository(cloud_session)
        managed_factory: Callable[[Any], ManagedServerRepository] = lambda session: repository  # noqa: E731
        return App(
            view or AppView(),
            manual_repository or ManualServerRepository(storage),
            display_repository or DisplayServerRepository(storage),
            token_manager,
            session_factory=lambda access_token: cloud_session,
            managed_repository_factory=managed_factory,
            waiter=fast_waiter,
        )

    return factory
