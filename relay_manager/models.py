from __future__ import annotations

import json
from enum import Enum
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError


class ManualServerConfig(BaseModel):
    """Connection details a user pastes in to add a server by hand."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    api_url: str = Field(alias="apiUrl", min_length=1)
    cert_sha256: str = Field(alias="certSha256", min_length=1)

    @classmethod
    def from_mapping(cls, data: Any) -> ManualServerConfig:
        """Validate a mapping, raising ValidationError on bad input."""
        if isinstance(data, ManualServerConfig):
            return data
        if not isinstance(data, dict):
            raise ValidationError("Server config must be a JSON object")
        try:
            return cls.model_validate(data)
        except pydantic.ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
            raise ValidationError(f"Invalid server config: {fields or e}") from e

    @classmethod
    def from_user_input(cls, user_input: str) -> ManualServerConfig:
        """Parse the JSON blob printed by the server installer."""
        try:
            data = json.loads(user_input)
        except (TypeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Server config is not valid JSON: {e}") from e
        return cls.from_mapping(data)


class InstallState(str, Enum):
    INSTALLING = "installing"
    READY = "ready"


class DisplayServer(BaseModel):
    """Cached, serializable snapshot of a server used for fast rendering."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str
    is_managed: bool = Field(alias="isManaged")
    install_state: InstallState = Field(default=InstallState.READY, alias="installState")

    @property
    def is_installing(self) -> bool:
        return self.install_state is InstallState.INSTALLING


class DataLimit(BaseModel):
    bytes: int = Field(ge=0)


class AccessKey(BaseModel):
    id: str
    name: str = ""
    port: int | None = None
    data_limit: DataLimit | None = None


class DataUsage(BaseModel):
    bytes_transferred_by_user_id: dict[str, int] = Field(default_factory=dict)


class InstallProgress(BaseModel):
    """Comparable marker of how far a managed server install has got."""

    model_config = ConfigDict(frozen=True)

    status: str
    stage: int = 0
    failed: bool = False
    error: str | None = None


class Settings(BaseModel):
    """Application settings stored in settings.json."""

    provision_timeout: float = Field(default=300.0, gt=0)
    poll_interval: float = Field(default=5.0, gt=0)
    health_check_timeout: float = Field(default=3.0, gt=0)
