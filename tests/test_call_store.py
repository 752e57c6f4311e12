import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from services.call_store import CallContext, CallStatus, CallStore, CallStoreError


class BrokenRedis:
    """Redis client whose every command fails with a connection error."""

    def __init__(self):
        self.closed = False

    async def set(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    async def get(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    async def delete(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    async def aclose(self):
        self.closed = True


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_status_roundtrip(self, store):
        await store.set_status("CA1", CallStatus(status="initiated", phone_number="+821012345678"))
        status = await store.get_status("CA1")
        assert status.status == "initiated"
        assert status.phone_number == "+821012345678"
        assert status.updated_at is None

    @pytest.mark.asyncio
    async def test_update_status_of_known_call(self, store):
        await store.set_status("CA1", CallStatus(status="initiated"))
        updated = await store.update_status("CA1", "ringing")
        assert updated.status == "ringing"
        assert updated.updated_at is not None
        assert (await store.get_status("CA1")).status == "ringing"

    @pytest.mark.asyncio
    async def test_update_status_of_unknown_call_is_ignored(self, store):
        assert await store.update_status("CA404", "completed") is None
        assert await store.get_status("CA404") is None

    @pytest.mark.asyncio
    async def test_context_roundtrip_and_delete(self, store):
        await store.set_context("CA1", CallContext(customer_name="김철수", purpose="상담예약"))
        context = await store.get_context("CA1")
        assert context.customer_name == "김철수"
        assert context.policy_expiry is None

        await store.delete_context("CA1")
        assert await store.get_context("CA1") is None

    @pytest.mark.asyncio
    async def test_call_cleanup_removes_status_and_context(self, store):
        await store.set_status("CA1", CallStatus(status="completed"))
        await store.set_context("CA1", CallContext(purpose="상담예약"))
        store.schedule_call_cleanup("CA1", delay_sec=0.01)
        await asyncio.sleep(0.05)
        assert await store.get_status("CA1") is None
        assert await store.get_context("CA1") is None
        assert store._fallback == {}

    @pytest.mark.asyncio
    async def test_records_expire_after_ttl(self):
        store = CallStore(redis_url=None, ttl=0.01)
        await store.set_status("CA1", CallStatus(status="ringing"))
        await store.set_context("CA1", CallContext(purpose="상담예약"))
        await asyncio.sleep(0.05)

        # Calls that never reach a terminal status are dropped too
        assert await store.get_status("CA2") is None
        assert store._fallback == {}
        assert await store.get_context("CA1") is None

    @pytest.mark.asyncio
    async def test_rewrite_refreshes_expiry(self):
        store = CallStore(redis_url=None, ttl=0.05)
        await store.set_status("CA1", CallStatus(status="initiated"))
        await asyncio.sleep(0.03)
        await store.update_status("CA1", "ringing")
        await asyncio.sleep(0.03)
        assert (await store.get_status("CA1")).status == "ringing"

    @pytest.mark.asyncio
    async def test_rescheduling_replaces_previous_cleanup(self, store):
        await store.set_context("CA1", CallContext(purpose="상담예약"))
        store.schedule_call_cleanup("CA1", delay_sec=0.02)
        store.schedule_call_cleanup("CA1", delay_sec=5)
        await asyncio.sleep(0.05)
        assert await store.get_context("CA1") is not None
        await store.close()
        assert await store.get_context("CA1") is not None


class TestRedisFailure:
    @pytest.fixture
    def broken_store(self):
        store = CallStore(redis_url="redis://unreachable:6379/0", ttl=60)
        store._client = BrokenRedis()
        return store

    @pytest.mark.asyncio
    async def test_write_failure_raises_and_falls_back(self, broken_store):
        with pytest.raises(CallStoreError):
            await broken_store.set_context("CA1", CallContext(customer_name="이영희"))
        # Reads fall back to the local copy
        context = await broken_store.get_context("CA1")
        assert context.customer_name == "이영희"

    @pytest.mark.asyncio
    async def test_delete_failure_is_logged_only(self, broken_store):
        with pytest.raises(CallStoreError):
            await broken_store.set_status("CA1", CallStatus(status="initiated"))
        await broken_store.delete_context("CA1")
        assert (await broken_store.get_status("CA1")).status == "initiated"

    @pytest.mark.asyncio
    async def test_close_releases_client(self, broken_store):
        client = broken_store._client
        await broken_store.close()
        assert client.closed
        assert broken_store._client is None
