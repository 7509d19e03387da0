"""Pytest fixtures shared by the unit and API tests."""

import os
import tempfile
from pathlib import Path

import pytest

# main.py reads its configuration at import time.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="nexia-test-"))
(_TEST_ROOT / "home").mkdir()
os.environ.setdefault("NEXIA_AUTH_TOKEN", "test-token")
os.environ.setdefault("NEXIA_DB_PATH", str(_TEST_ROOT / "db" / "nexia.db"))
os.environ.setdefault("NEXIA_DEFAULT_CWD", str(_TEST_ROOT / "home"))
os.environ.setdefault("RATE_LIMIT_ENABLED", "0")
os.environ.setdefault("PERMISSION_LOGGING", "0")
os.environ.pop("REDIS_URL", None)

from agent_manager import AgentManager  # noqa: E402
from conversation_store import ConversationStore  # noqa: E402
from sdk_messages import EventRecorder, FakeSessionFactory, FakeSummarizer  # noqa: E402


@pytest.fixture
async def store(tmp_path):
    conversation_store = await ConversationStore.open(str(tmp_path / "data" / "nexia.db"))
    yield conversation_store
    await conversation_store.close()


@pytest.fixture
def summarizer():
    return FakeSummarizer()


@pytest.fixture
async def manager(store, summarizer):
    agent_manager = AgentManager(store, session_factory=FakeSessionFactory(), summarizer=summarizer)
    yield agent_manager
    await agent_manager.close()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
async def conversation(store, tmp_path):
    return await store.create_conversation("conv-1", "New conversation", str(tmp_path))
