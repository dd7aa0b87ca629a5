from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.services.conversation import Conversation
from app.services.executor import ExecutionContext
from app.services.governor import DEADLINE_EXCEEDED, TTLCache, with_deadline
from app.services.llm import CompletionProvider, complete_text
from app.services.normalizer import normalize_and_hydrate, product_payload
from app.services.orchestrator import CapabilityOrchestrator, ResolutionState
from app.services.prompts import SUMMARY_SYSTEM_PROMPT, TITLE_SYSTEM_PROMPT, build_preamble
from app.store.catalog import CatalogSearch
from app.store.history import ConversationHistoryStore, HistoryTurn


logger = logging.getLogger("glowup-agent.chat")

MAX_REPLY_PRODUCTS = 20


class InvalidChatRequest(ValueError):
    pass


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str
    content: str

    @field_validator("role")
    @classmethod
    def _check_role(cls, value: str) -> str:
        role = value.strip().lower()
        if role not in {"user", "assistant"}:
            raise ValueError("role must be user or assistant")
        return role

    @field_validator("content")
    @classmethod
    def _check_content(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must be non-empty")
        return value


class ChatReply(BaseModel):
    message: str
    products: list[dict[str, Any]] = Field(default_factory=list)
    product_map: dict[str, dict[str, Any]] = Field(default_factory=dict)
    title: Optional[str] = None
    state: ResolutionState
    rounds: int
    side_effects: list[dict[str, Any]] = Field(default_factory=list)


def validate_messages(messages: Any) -> list[ChatMessage]:
    if not isinstance(messages, list) or not messages:
        raise InvalidChatRequest("Messages array is required")
    try:
        return [ChatMessage.model_validate(m) for m in messages]
    except ValidationError as exc:
        raise InvalidChatRequest(f"Invalid messages: {exc.errors()[0].get('msg')}") from exc


def _render_turns(turns: Sequence[HistoryTurn]) -> str:
    return "\n".join(f"{'User' if t.role == 'user' else 'Assistant'}: {t.content}" for t in turns)


class ChatService:
    """Runs one chat request: context assembly, the capability loop, product list and title."""

    def __init__(
        self,
        *,
        orchestrator: CapabilityOrchestrator,
        provider: Optional[CompletionProvider],
        history: ConversationHistoryStore,
        catalog: CatalogSearch,
        cache: TTLCache,
        history_limit: int = 30,
        summary_timeout_s: float = 8.0,
        summary_cache_ttl_s: float = 300.0,
    ) -> None:
        self._orchestrator = orchestrator
        self._provider = provider
        self._history = history
        self._catalog = catalog
        self._cache = cache
        self._history_limit = history_limit
        self._summary_timeout_s = summary_timeout_s
        self._summary_cache_ttl_s = summary_cache_ttl_s

    async def _complete_bounded(self, *, system: str, user: str, max_tokens: int, purpose: str) -> Optional[str]:
        if self._provider is None:
            return None
        try:
            text = await with_deadline(
                complete_text(self._provider, system=system, user=user, max_tokens=max_tokens),
                self._summary_timeout_s,
                DEADLINE_EXCEEDED,
            )
        except Exception as exc:
            logger.warning("%s_failed err=%s", purpose, exc)
            return None
        if text is DEADLINE_EXCEEDED:
            logger.warning("%s_timeout timeout_s=%s", purpose, self._summary_timeout_s)
            return None
        return text or None

    async def _context(self, conversation_id: str) -> tuple[Optional[str], Optional[str]]:
        try:
            turns = await self._history.recent(conversation_id, self._history_limit)
        except Exception as exc:
            logger.warning("history_read_failed conversation_id=%s err=%s", conversation_id, exc)
            return None, None
        if not turns:
            return None, None

        last_exchange = _render_turns(turns[-2:])
        earlier = turns[:-2]
        if not earlier:
            return None, last_exchange

        key = ("summary", conversation_id, len(turns), turns[-1].created_at.isoformat())
        summary = await self._cache.cached(
            key,
            self._summary_cache_ttl_s,
            lambda: self._complete_bounded(
                system=SUMMARY_SYSTEM_PROMPT,
                user=f"Conversation history:\n{_render_turns(earlier)}",
                max_tokens=150,
                purpose="conversation_summary",
            ),
            store_none=False,
        )
        return summary, last_exchange

    async def _title(self, messages: Sequence[ChatMessage]) -> Optional[str]:
        user_messages = [m.content for m in messages if m.role == "user"]
        if len(user_messages) != 1:
            return None
        title = await self._complete_bounded(
            system=TITLE_SYSTEM_PROMPT,
            user=user_messages[0],
            max_tokens=20,
            purpose="chat_title",
        )
        return title.strip().strip('"').rstrip(".!?") if title else None

    async def _remember(self, conversation_id: str, messages: Sequence[ChatMessage], reply: str) -> None:
        latest_user = next((m.content for m in reversed(messages) if m.role == "user"), None)
        try:
            if latest_user:
                await self._history.append(conversation_id, "user", latest_user)
            await self._history.append(conversation_id, "assistant", reply)
        except Exception as exc:
            logger.warning("history_append_failed conversation_id=%s err=%s", conversation_id, exc)

    async def respond(
        self,
        *,
        user_id: Optional[str],
        conversation_id: Optional[str],
        messages: Any,
    ) -> ChatReply:
        validated = validate_messages(messages)

        summary: Optional[str] = None
        last_exchange: Optional[str] = None
        if len(validated) > 1 and user_id and conversation_id:
            summary, last_exchange = await self._context(conversation_id)

        conversation = Conversation.from_messages([m.model_dump() for m in validated])
        resolution, title = await asyncio.gather(
            self._orchestrator.resolve(
                conversation,
                ctx=ExecutionContext(user_id=user_id),
                preamble=build_preamble(summary, last_exchange),
            ),
            self._title(validated),
        )

        ranked = await normalize_and_hydrate(resolution.product_sets, self._catalog.by_id)
        products = [product_payload(r) for r in ranked[:MAX_REPLY_PRODUCTS]]

        if conversation_id:
            await self._remember(conversation_id, validated, resolution.final_text)

        logger.info(
            "chat_reply user_id=%s state=%s rounds=%d products=%d context=%s",
            user_id or "guest",
            resolution.state.value,
            resolution.rounds,
            len(products),
            "yes" if summary or last_exchange else "no",
        )
        return ChatReply(
            message=resolution.final_text,
            products=products,
            product_map={p["id"]: p for p in products},
            title=title,
            state=resolution.state,
            rounds=resolution.rounds,
            side_effects=[s.to_dict() for s in resolution.side_effects],
        )
