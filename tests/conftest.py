"""
Shared fixtures.

conftest.py is loaded automatically by pytest; adding src/ to sys.path here
lets every test module import the package without installing it.
"""

import sys
from datetime import timedelta
from pathlib import Path

import pytest

# Add src directory to PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from chat_memory.memory.config import MemoryConfig  # noqa: E402
from chat_memory.memory.models import Role, utcnow  # noqa: E402
from chat_memory.memory.store import InMemoryMemoryStore  # noqa: E402


@pytest.fixture
def store():
    return InMemoryMemoryStore()


@pytest.fixture
def config():
    return MemoryConfig(store_retry_delay_seconds=0)


@pytest.fixture
def session(store):
    return store.create_session("user-1", session_id="ses-1")


def add_history(store, session_id, turns, age_days=0.0, start=None):
    """
    Append (role, content) pairs to a session, one minute apart.

    age_days shifts the whole batch into the past so it becomes eligible for
    compression.
    """
    start = start or utcnow() - timedelta(days=age_days) - timedelta(minutes=len(turns))
    messages = []
    for i, (role, content) in enumerate(turns):
        messages.append(
            store.append_message(
                session_id,
                Role(role),
                content,
                created_at=start + timedelta(minutes=i),
            )
        )
    return messages


def chat_turns(count, prefix="message"):
    """Alternating user/assistant turns with distinct content."""
    roles = ("user", "assistant")
    return [(roles[i % 2], f"{prefix} number {i} about the garden project") for i in range(count)]
