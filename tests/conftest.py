"""
Pytest configuration and shared fixtures.
"""

import tempfile
from pathlib import Path

import pytest
from langchain_core.vectorstores import InMemoryVectorStore

from fakes import KeywordEmbeddings
from rmm_memory.api.hooks import HookRegistry
from rmm_memory.storage.kv import InMemoryKeyValueStore


@pytest.fixture
def temp_directory():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_user_id():
    """Provide a sample user ID."""
    return "test_user_123"


@pytest.fixture
def embeddings():
    return KeywordEmbeddings()


@pytest.fixture
def vector_store(embeddings):
    """LangChain in-memory vector store over keyword embeddings."""
    return InMemoryVectorStore(embeddings)


@pytest.fixture
def kv_store():
    return InMemoryKeyValueStore()


@pytest.fixture
def hooks():
    """A private hook registry so tests never touch the global one."""
    return HookRegistry()
