"""Shared test fixtures for the leaderboard tests."""

import json
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from topscores.database.database import Database
from topscores.database.models import LeaderboardNode
from topscores.services.leaderboard_store import LeaderboardStore


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    """Fresh SQLite database in a temporary directory."""
    db = Database(f"sqlite:///{tmp_path / 'leaderboard.db'}")
    await db.initialize()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def store(database: Database) -> AsyncGenerator[LeaderboardStore, None]:
    """Open store with room for two entries."""
    leaderboard_store = LeaderboardStore(database, max_entries=2, max_retries=5)
    await leaderboard_store.open()
    yield leaderboard_store
    await leaderboard_store.close()


@pytest.fixture
def write_raw():
    """Write a value at a path without going through a transaction.

    Simulates a commit made by another process: no listener is notified.
    Pass a str to store it verbatim, anything else is JSON-encoded.
    """

    async def _write(db: Database, path: str, value: Any, version: int = 1) -> None:
        encoded = value if isinstance(value, str) else json.dumps(value)
        async with db.transaction() as session:
            node = await session.get(LeaderboardNode, path)
            if node is None:
                session.add(LeaderboardNode(path=path, value=encoded, version=version))
            else:
                node.value = encoded
                node.version = version

    return _write


@pytest.fixture
def records():
    """Build stored records from (email, score) pairs."""

    def _records(*pairs: tuple[str, int]) -> list[dict[str, Any]]:
        return [{"email": email, "score": score} for email, score in pairs]

    return _records
