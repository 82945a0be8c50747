from __future__ import annotations

from .storage import KeyValueStorage

TOKEN_STORAGE_KEY = "cloud-token"


class TokenManager:
    """Holds the cloud provider credential."""

    def __init__(self, storage: KeyValueStorage):
        self.storage = storage

    def get_stored_token(self) -> str | None:
        return self.storage.get(TOKEN_STORAGE_KEY) or None

    def write_token_to_storage(self, token: str) -> None:
        self.storage.set(TOKEN_STORAGE_KEY, token)

    def remove_token_from_storage(self) -> None:
        self.storage.delete(TOKEN_STORAGE_KEY)
