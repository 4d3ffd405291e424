"""Shared fixtures for chat memory tests."""

import pytest

from src.memory.store import MemoryStore
from src.storage.kv import InMemoryKeyValueStore


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def store(kv):
    return MemoryStore(kv)
