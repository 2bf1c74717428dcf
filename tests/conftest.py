"""
Shared fixtures: a throwaway SQLite database per test, a recording sink,
and helpers for seeding users and groups.
"""

from __future__ import annotations

from typing import Iterable, Optional

import pytest
from sqlalchemy import Insert, insert, select
from sqlalchemy.ext.asyncio import create_async_engine

from resqzone.app.alerts.fanout import AlertFanout, RetryConfig
from resqzone.app.core.database import init_db
from resqzone.app.core.errors import StoreError
from resqzone.app.core.store import Store
from resqzone.app.core.tables import chat_members, chats, users
from resqzone.app.groups.directory import GroupDirectory
from resqzone.app.realtime.sink import LoggingNotificationSink
from resqzone.app.spatial.geo_index import Coordinate

# London, Trafalgar Square area
LONDON = Coordinate(51.5074, -0.1278)


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path}/test.db",
        connect_args={"timeout": 30},
    )
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def store(engine):
    return Store(engine)


@pytest.fixture
def sink():
    return LoggingNotificationSink()


@pytest.fixture
def fanout(store, sink):
    return AlertFanout(store, sink, concurrency=4)


@pytest.fixture
def directory(store, sink, fanout):
    return GroupDirectory(store, sink, fanout, default_radius_km=0.2)


# ═══════════════════════════════════════════════════════════════════════════
# Test doubles
# ═══════════════════════════════════════════════════════════════════════════

class FlakyStore(Store):
    """
    Store whose inserts fail for chosen users.

    ``fail_deliveries`` maps user id → number of Delivery inserts to fail
    (use a large number for "always"). ``fail_logs`` lists users whose
    delivery-log insert always fails.
    """

    def __init__(self, engine, fail_deliveries=None, fail_logs: Iterable[int] = ()):
        super().__init__(engine)
        self.fail_deliveries = dict(fail_deliveries or {})
        self.fail_logs = set(fail_logs)

    async def execute(self, stmt):
        if isinstance(stmt, Insert):
            table = stmt.table.name
            user_id = stmt.compile().params.get("user_id")
            if table == "user_alerts" and self.fail_deliveries.get(user_id, 0) > 0:
                self.fail_deliveries[user_id] -= 1
                raise StoreError("execute", f"simulated delivery failure for {user_id}")
            if table == "emergency_logs" and user_id in self.fail_logs:
                raise StoreError("execute", f"simulated log failure for {user_id}")
        return await super().execute(stmt)


class ExplodingSink:
    """Sink that breaks its contract by raising."""

    def __init__(self):
        self.calls = 0

    async def push_to_user(self, user_id, event, payload=None):
        self.calls += 1
        raise RuntimeError("socket gone")

    async def push_to_room(self, room_id, event, payload=None):
        self.calls += 1
        raise RuntimeError("socket gone")


def make_fanout(store, sink, retries: int = 0) -> AlertFanout:
    return AlertFanout(
        store, sink, concurrency=4,
        retry=RetryConfig(max_retries=retries, backoff_base_seconds=0.0),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Seeding helpers
# ═══════════════════════════════════════════════════════════════════════════

async def add_user(
    store: Store,
    at: Optional[Coordinate] = None,
    *,
    first_name: str = "Test",
    last_name: str = "User",
    postal_code: Optional[str] = None,
) -> int:
    written = await store.execute(
        insert(users).values(
            first_name=first_name,
            last_name=last_name,
            postal_code=postal_code,
            latitude=at.latitude if at else None,
            longitude=at.longitude if at else None,
        )
    )
    return written.insert_id


async def add_direct_chat(store: Store, a: int, b: int) -> int:
    written = await store.execute(insert(chats).values(is_group=False, created_by=a))
    chat_id = written.insert_id
    for uid, role in ((a, "owner"), (b, "member")):
        await store.execute(insert(chat_members).values(chat_id=chat_id, user_id=uid, role=role))
    return chat_id


async def member_ids(store: Store, chat_id: int) -> list:
    rows = await store.fetch_all(
        select(chat_members.c.user_id).where(chat_members.c.chat_id == chat_id)
        .order_by(chat_members.c.user_id)
    )
    return [row["user_id"] for row in rows]
