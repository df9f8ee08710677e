from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import chatsync.db.session as db_session
from chatsync.core.rate_limit import send_limiter
from chatsync.main import app
from chatsync.store import ChangeFeed, ChangeFeedDispatcher, SqlDocumentStore


class StoreHarness:
    def __init__(self) -> None:
        self.feed = ChangeFeed(max_pending_per_stream=500)
        self.store = SqlDocumentStore(session_factory=db_session.open_session, feed=self.feed)
        self.dispatcher = ChangeFeedDispatcher(
            feed=self.feed,
            session_factory=db_session.open_session,
            poll_interval_sec=0.01,
            batch_size=100,
        )

    async def settle(self, rounds: int = 5) -> None:
        """Publish pending outbox rows and let stream consumers catch up."""
        for _ in range(rounds):
            await self.dispatcher.process_once()
            await asyncio.sleep(0.01)


@pytest.fixture()
def database(tmp_path):
    database_path = tmp_path / "test.db"
    db_session.configure_engine(f"sqlite:///{database_path}")
    db_session.init_db()
    return db_session


@pytest.fixture()
def harness(database) -> StoreHarness:
    return StoreHarness()


@pytest.fixture()
def client(tmp_path):
    send_limiter.reset()
    database_path = tmp_path / "test.db"
    db_session.configure_engine(f"sqlite:///{database_path}")
    db_session.init_db()

    with TestClient(app) as test_client:
        yield test_client
