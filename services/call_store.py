import asyncio
import json
import os
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import AuthenticationError, RedisError

from utils import logger

CALL_CONTEXT_TTL_SEC = int(os.getenv("CALL_CONTEXT_TTL_SEC", "3600"))
TERMINAL_STATUSES = frozenset({"completed", "busy", "failed", "no-answer", "canceled"})

_STATUS_PREFIX = "call:status:"
_CONTEXT_PREFIX = "call:context:"


class CallStoreError(RuntimeError):
    """Raised when a record could not be persisted to Redis."""


@dataclass
class CallStatus:
    status: str
    phone_number: str = ""
    customer_name: str = ""
    purpose: str = ""
    start_time: float = field(default_factory=time.time)
    updated_at: Optional[float] = None


@dataclass
class CallContext:
    """What the phone assistant needs to know about the call it is on."""

    customer_name: str = ""
    purpose: str = ""
    policy_expiry: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallContext":
        return cls(
            customer_name=data.get("customer_name") or "",
            purpose=data.get("purpose") or "",
            policy_expiry=data.get("policy_expiry"),
            created_at=data.get("created_at") or time.time(),
        )


class CallStore:
    """Call status and call context keyed by Twilio call SID.

    Backed by Redis when ``REDIS_URL`` is set, otherwise by an in-process
    dict. When Redis is configured but unreachable, reads fall back to the
    local dict and writes land there too, then raise ``CallStoreError``.
    The fallback is per-process and is lost on restart. Its entries expire
    after ``ttl`` seconds like the Redis keys do.
    """

    def __init__(self, redis_url: Optional[str] = None, ttl: float = CALL_CONTEXT_TTL_SEC):
        self.redis_url = redis_url
        self.ttl = ttl
        self._client = None
        # key -> (monotonic expiry, JSON payload)
        self._fallback: Dict[str, Tuple[float, str]] = {}
        self._cleanup_tasks: Dict[str, asyncio.Task] = {}

    def _init_client(self) -> None:
        if self._client is not None or not self.redis_url:
            return
        try:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
            logger.info("🔗 [STORE] Initialised Redis client for call store")
        except AuthenticationError as ae:
            logger.error(f"🛂 [STORE] Redis authentication failed: {ae}. Using in-memory store.")
            self._client = None
        except Exception as e:
            logger.error(f"❌ [STORE] Failed to initialise Redis client: {e}. Using in-memory store.")
            self._client = None

    def _purge_expired(self) -> None:
        now = time.monotonic()
        for key in [k for k, (expires_at, _) in self._fallback.items() if expires_at <= now]:
            del self._fallback[key]

    def _remember(self, key: str, payload: str) -> None:
        self._purge_expired()
        self._fallback[key] = (time.monotonic() + self.ttl, payload)

    def _recall(self, key: str) -> Optional[str]:
        self._purge_expired()
        entry = self._fallback.get(key)
        return entry[1] if entry else None

    async def _set(self, key: str, obj: Any) -> None:
        self._init_client()
        payload = json.dumps(obj, ensure_ascii=False)

        if self._client is None:
            self._remember(key, payload)
            if self.redis_url:
                raise CallStoreError("Redis client unavailable; record stored only in local memory")
            return

        try:
            await self._client.set(key, payload, ex=self.ttl)
            logger.debug(f"✅ [STORE] SET {key} (TTL {self.ttl}s)")
        except RedisError as ce:
            logger.error(f"🔌 [STORE] Redis error on SET for '{key}': {ce}. Using in-memory fallback.")
            self._remember(key, payload)
            raise CallStoreError("Redis connection failure; record stored in local memory") from ce

    async def _get(self, key: str) -> Optional[Dict[str, Any]]:
        self._init_client()
        if self._client is None:
            raw = self._recall(key)
        else:
            try:
                raw = await self._client.get(key)
            except RedisError as ce:
                logger.error(f"🔌 [STORE] Redis error on GET for '{key}': {ce}. Resorting to in-memory store.")
                raw = self._recall(key)

        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    async def _delete(self, key: str) -> None:
        self._init_client()
        self._fallback.pop(key, None)
        if self._client is None:
            return
        try:
            await self._client.delete(key)
        except RedisError as ce:
            logger.error(f"🔌 [STORE] Redis error on DELETE for '{key}': {ce}")

    # -- status -------------------------------------------------------------

    async def set_status(self, call_sid: str, status: CallStatus) -> None:
        await self._set(_STATUS_PREFIX + call_sid, asdict(status))

    async def get_status(self, call_sid: str) -> Optional[CallStatus]:
        data = await self._get(_STATUS_PREFIX + call_sid)
        if data is None:
            return None
        return CallStatus(**{k: v for k, v in data.items() if k in CallStatus.__dataclass_fields__})

    async def update_status(self, call_sid: str, new_status: str) -> Optional[CallStatus]:
        """Update an existing record only; unknown SIDs are ignored (returns None)."""
        current = await self.get_status(call_sid)
        if current is None:
            logger.info(f"[STORE] Status '{new_status}' for unknown call {call_sid} ignored")
            return None
        current.status = new_status
        current.updated_at = time.time()
        await self.set_status(call_sid, current)
        return current

    # -- context ------------------------------------------------------------

    async def set_context(self, call_sid: str, context: CallContext) -> None:
        await self._set(_CONTEXT_PREFIX + call_sid, asdict(context))

    async def get_context(self, call_sid: str) -> Optional[CallContext]:
        data = await self._get(_CONTEXT_PREFIX + call_sid)
        return CallContext.from_dict(data) if data is not None else None

    async def delete_context(self, call_sid: str) -> None:
        await self._delete(_CONTEXT_PREFIX + call_sid)
        logger.info(f"🧹 [STORE] Call context removed for {call_sid}")

    def schedule_call_cleanup(self, call_sid: str, delay_sec: Optional[float] = None) -> None:
        """Drop the status and context of a finished call after *delay_sec*.

        The status stays readable for a while so pollers see the final state.
        Rescheduling replaces the prior timer.
        """
        delay = self.ttl if delay_sec is None else delay_sec
        previous = self._cleanup_tasks.pop(call_sid, None)
        if previous is not None and not previous.done():
            previous.cancel()
        self._cleanup_tasks[call_sid] = asyncio.create_task(self._cleanup_call(call_sid, delay))

    async def _cleanup_call(self, call_sid: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._cleanup_tasks.pop(call_sid, None)
        await self._delete(_STATUS_PREFIX + call_sid)
        await self.delete_context(call_sid)

    async def close(self) -> None:
        for task in list(self._cleanup_tasks.values()):
            task.cancel()
        for task in list(self._cleanup_tasks.values()):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._cleanup_tasks.clear()
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.warning(f"⚠️ [STORE] Error closing Redis client: {e}")
            self._client = None


# Create singleton instance
call_store = CallStore(redis_url=os.getenv("REDIS_URL"))
