from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
import logging
import os
import time
from typing import Any, Literal, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
import redis.asyncio as aioredis
from redis.exceptions import RedisError


logger = logging.getLogger("glowup-agent.history-store")

SCHEMA_VERSION = "0.1"
MAX_TURNS_PER_CONVERSATION = 200


class HistoryTurn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: str = Field(default=SCHEMA_VERSION)
    role: Literal["user", "assistant"]
    content: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ConversationHistoryStore(Protocol):
    async def recent(self, conversation_id: str, limit: int) -> list[HistoryTurn]: ...

    async def append(self, conversation_id: str, role: str, content: str) -> HistoryTurn: ...

    async def close(self) -> None: ...


def _normalize_conversation_id(conversation_id: str) -> str:
    if not isinstance(conversation_id, str):
        raise TypeError("conversation_id must be a string")
    normalized = conversation_id.strip()
    if not normalized:
        raise ValueError("conversation_id must be non-empty")
    if len(normalized) > 200:
        raise ValueError("conversation_id too long")
    return normalized


def _coerce_ttl_seconds(ttl_days: Optional[float], default_ttl_days: float) -> float:
    days = default_ttl_days if ttl_days is None else float(ttl_days)
    if days <= 0:
        return 0.0
    return days * 86400.0


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def _make_turn(role: str, content: str) -> HistoryTurn:
    return HistoryTurn.model_validate({"role": role, "content": content[:8000]})


class InMemoryHistoryStore(ConversationHistoryStore):
    def __init__(self, *, default_ttl_days: float = 30.0) -> None:
        self._default_ttl_days = default_ttl_days
        self._lock = asyncio.Lock()
        self._items: dict[str, tuple[list[dict[str, Any]], Optional[float]]] = {}

    async def recent(self, conversation_id: str, limit: int) -> list[HistoryTurn]:
        key = _normalize_conversation_id(conversation_id)
        async with self._lock:
            record = self._items.get(key)
            if not record:
                return []
            rows, expires_at = record
            if expires_at is not None and time.monotonic() >= expires_at:
                self._items.pop(key, None)
                return []
            window = rows[-limit:] if limit > 0 else []
            return [HistoryTurn.model_validate(row) for row in window]

    async def append(self, conversation_id: str, role: str, content: str) -> HistoryTurn:
        key = _normalize_conversation_id(conversation_id)
        turn = _make_turn(role, content)
        ttl_seconds = _coerce_ttl_seconds(None, self._default_ttl_days)
        expires_at = None if ttl_seconds <= 0 else (time.monotonic() + ttl_seconds)
        async with self._lock:
            rows: list[dict[str, Any]] = []
            record = self._items.get(key)
            if record:
                existing, existing_expires_at = record
                if existing_expires_at is None or time.monotonic() < existing_expires_at:
                    rows = existing
            rows.append(turn.model_dump(mode="json"))
            self._items[key] = (rows[-MAX_TURNS_PER_CONVERSATION:], expires_at)
        return turn

    async def close(self) -> None:
        return None


class RedisHistoryStore(ConversationHistoryStore):
    def __init__(
        self,
        *,
        redis_url: str,
        default_ttl_days: float = 30.0,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "glowup_history",
    ) -> None:
        self._redis_url = redis_url
        self._default_ttl_days = default_ttl_days
        self._key_prefix = key_prefix.strip(":") or "glowup_history"
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout_s,
            socket_timeout=socket_timeout_s,
        )

    async def ping(self) -> None:
        await self._redis.ping()

    def _key(self, conversation_id: str) -> str:
        return f"{self._key_prefix}:{_normalize_conversation_id(conversation_id)}"

    async def recent(self, conversation_id: str, limit: int) -> list[HistoryTurn]:
        if limit <= 0:
            return []
        raw_rows = await self._redis.lrange(self._key(conversation_id), -limit, -1)
        turns: list[HistoryTurn] = []
        for raw in raw_rows or []:
            try:
                obj = json.loads(raw)
            except Exception:
                logger.warning("redis_history_parse_failed conversation_id=%s", conversation_id)
                continue
            if isinstance(obj, dict):
                turns.append(HistoryTurn.model_validate(obj))
        return turns

    async def append(self, conversation_id: str, role: str, content: str) -> HistoryTurn:
        key = self._key(conversation_id)
        turn = _make_turn(role, content)
        await self._redis.rpush(key, _json_dumps(turn.model_dump(mode="json")))
        await self._redis.ltrim(key, -MAX_TURNS_PER_CONVERSATION, -1)

        ttl_seconds = _coerce_ttl_seconds(None, self._default_ttl_days)
        if ttl_seconds > 0:
            await self._redis.expire(key, int(max(1.0, ttl_seconds)))
        return turn

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError as exc:
            logger.debug("redis_history_close_failed err=%s", exc)


class PersistentHistoryStore(ConversationHistoryStore):
    """Redis-backed history when REDIS_URL is reachable, process memory otherwise.

    Any Redis failure after startup switches the store to memory for the rest
    of the process lifetime.
    """

    def __init__(
        self,
        *,
        redis_url: Optional[str] = None,
        default_ttl_days: Optional[float] = None,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "glowup_history",
    ) -> None:
        self._redis_url = redis_url
        self._default_ttl_days = default_ttl_days
        self._connect_timeout_s = connect_timeout_s
        self._socket_timeout_s = socket_timeout_s
        self._key_prefix = key_prefix

        self._backend: ConversationHistoryStore = InMemoryHistoryStore(default_ttl_days=self._ttl_days())
        self._backend_kind = "memory"

    @property
    def backend_kind(self) -> str:
        return self._backend_kind

    def _ttl_days(self) -> float:
        return self._default_ttl_days if self._default_ttl_days is not None else _env_float("HISTORY_TTL_DAYS", 30.0)

    async def initialize(self) -> None:
        redis_url = (self._redis_url or os.getenv("REDIS_URL") or "").strip() or None
        ttl_days = self._ttl_days()

        if not redis_url:
            self._backend = InMemoryHistoryStore(default_ttl_days=ttl_days)
            self._backend_kind = "memory"
            logger.info("history_store_backend=memory reason=missing_REDIS_URL")
            return

        try:
            redis_backend = RedisHistoryStore(
                redis_url=redis_url,
                default_ttl_days=ttl_days,
                connect_timeout_s=self._connect_timeout_s,
                socket_timeout_s=self._socket_timeout_s,
                key_prefix=self._key_prefix,
            )
            await redis_backend.ping()
        except (RedisError, OSError, ValueError) as exc:
            self._backend = InMemoryHistoryStore(default_ttl_days=ttl_days)
            self._backend_kind = "memory"
            logger.warning("history_store_backend=memory reason=redis_unavailable err=%s", exc)
            return

        self._backend = redis_backend
        self._backend_kind = "redis"
        logger.info("history_store_backend=redis")

    async def recent(self, conversation_id: str, limit: int) -> list[HistoryTurn]:
        try:
            return await self._backend.recent(conversation_id, limit)
        except RedisError as exc:
            logger.warning("history_store_recent_failed backend=%s err=%s", self._backend_kind, exc)
            await self._fallback_to_memory(reason="redis_error")
            return []

    async def append(self, conversation_id: str, role: str, content: str) -> HistoryTurn:
        try:
            return await self._backend.append(conversation_id, role, content)
        except RedisError as exc:
            logger.warning("history_store_append_failed backend=%s err=%s", self._backend_kind, exc)
            await self._fallback_to_memory(reason="redis_error")
            return await self._backend.append(conversation_id, role, content)

    async def _fallback_to_memory(self, *, reason: str) -> None:
        if self._backend_kind == "memory":
            return
        await self._backend.close()
        self._backend = InMemoryHistoryStore(default_ttl_days=self._ttl_days())
        self._backend_kind = "memory"
        logger.warning("history_store_backend=memory reason=%s", reason)

    async def close(self) -> None:
        await self._backend.close()


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default
