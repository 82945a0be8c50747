"""Tests for the cloud token manager."""

from __future__ import annotations

from relay_manager.storage import InMemoryStorage
from relay_manager.tokens import TOKEN_STORAGE_KEY, TokenManager


def test_token_lifecycle():
    manager = TokenManager(InMemoryStorage())
    assert manager.get_stored_token() is None

    manager.write_token_to_storage("token")
    assert manager.get_stored_token() == "token"

    manager.remove_token_from_storage()
    assert manager.get_stored_token() is None


def test_token_stored_under_its_key():
    storage = InMemoryStorage()
    TokenManager(storage).write_token_to_storage("token")
    assert storage.get(TOKEN_STORAGE_KEY) == "token"


def test_empty_token_reads_as_missing():
    storage = InMemoryStorage({TOKEN_STORAGE_KEY: ""})
    assert TokenManager(storage).get_stored_token() is None


def test_remove_missing_token_is_noop():
    storage = InMemoryStorage()
    TokenManager(storage).remove_token_from_storage()
    assert storage.get(TOKEN_STORAGE_KEY) is None
