"""Tests for the Redis session store; skipped when no Redis server is reachable."""

import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from redis import Redis
from redis.exceptions import RedisError

from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import Session
from authgate.storage.redis_store import RedisSessionStore

REDIS_URL = os.getenv("TEST_REDIS_URL", "redis://localhost:6379/1")
NOW = datetime.now(timezone.utc).replace(microsecond=0)


def _redis_available() -> bool:
    try:
        client = Redis.from_url(REDIS_URL, socket_connect_timeout=0.5)
        try:
            return bool(client.ping())
        finally:
            client.close()
    except (RedisError, OSError):
        return False


pytestmark = pytest.mark.skipif(not _redis_available(), reason="redis not reachable")


def _session(user_id, minutes=30):
    return Session(
        key=uuid.uuid4().hex,
        user_id=user_id,
        method="local",
        created_at=NOW,
        refreshed_at=NOW,
        expires_at=NOW + timedelta(minutes=minutes),
        ip_addr="10.1.2.3",
    )


class TestRedisSessionStore:
    """Round trips through the Lua scripts against a live server."""

    async def test_insert_get_and_duplicate(self):
        store = RedisSessionStore(REDIS_URL)
        try:
            session = _session(uuid.uuid4().hex)
            await store.insert_session(session)

            fetched = await store.get_session(session.key)
            assert fetched == session

            with pytest.raises(ConstraintViolation):
                await store.insert_session(session)
        finally:
            await store.delete_user_sessions(session.user_id, now=NOW)
            await store.close()

    async def test_refresh_and_rotate(self):
        store = RedisSessionStore(REDIS_URL)
        user_id = uuid.uuid4().hex
        try:
            session = _session(user_id)
            await store.insert_session(session)
            later = NOW + timedelta(minutes=10)

            refreshed = await store.refresh_session(
                session.key, now=later, expires_at=later + timedelta(minutes=30)
            )
            assert refreshed.expires_at == later + timedelta(minutes=30)

            new_key = uuid.uuid4().hex
            rotated = await store.refresh_session(
                session.key, now=later, expires_at=later + timedelta(minutes=30), new_key=new_key
            )
            assert rotated.key == new_key
            assert await store.get_session(session.key) is None
            assert [s.key for s in await store.list_user_sessions(user_id)] == [new_key]

            past_expiry = later + timedelta(minutes=31)
            assert await store.refresh_session(
                new_key, now=past_expiry, expires_at=past_expiry
            ) is None
        finally:
            await store.delete_user_sessions(user_id, now=NOW)
            await store.close()

    async def test_delete_and_range_delete(self):
        store = RedisSessionStore(REDIS_URL)
        user_id = uuid.uuid4().hex
        try:
            sessions = [_session(user_id) for _ in range(3)]
            for session in sessions:
                await store.insert_session(session)

            assert await store.delete_session(sessions[0].key, now=NOW)
            assert not await store.delete_session(sessions[0].key, now=NOW)
            remaining = sessions[1].key
            assert await store.delete_user_sessions(user_id, now=NOW, except_key=remaining) == 1
            assert [s.key for s in await store.list_user_sessions(user_id)] == [sessions[1].key]
        finally:
            await store.delete_user_sessions(user_id, now=NOW)
            await store.close()

    async def test_deletes_count_only_live_sessions(self):
        store = RedisSessionStore(REDIS_URL)
        user_id = uuid.uuid4().hex
        try:
            short = _session(user_id, minutes=5)
            sessions = [short, _session(user_id, minutes=1), _session(user_id)]
            for session in sessions:
                await store.insert_session(session)
            later = NOW + timedelta(minutes=10)

            assert not await store.delete_session(short.key, now=later)
            assert await store.get_session(short.key) is None
            assert await store.delete_user_sessions(user_id, now=later) == 1
            assert await store.list_user_sessions(user_id) == []
        finally:
            await store.delete_user_sessions(user_id, now=NOW)
            await store.close()

    async def test_refresh_racing_delete(self):
        store = RedisSessionStore(REDIS_URL)
        user_id = uuid.uuid4().hex
        try:
            session = _session(user_id)
            await store.insert_session(session)

            await asyncio.gather(
                store.refresh_session(
                    session.key, now=NOW, expires_at=NOW + timedelta(minutes=30)
                ),
                store.delete_session(session.key, now=NOW),
            )

            assert await store.get_session(session.key) is None
            assert await store.list_user_sessions(user_id) == []
        finally:
            await store.delete_user_sessions(user_id, now=NOW)
            await store.close()

    async def test_ping(self):
        store = RedisSessionStore(REDIS_URL)
        try:
            await store.ping()
            store.verify_connection()
        finally:
            await store.close()
