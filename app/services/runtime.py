from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Any, Optional

from app.services.cart_advisor import CartAdvisor
from app.services.chat import ChatService
from app.services.executor import CapabilityExecutor
from app.services.feed import FeedService
from app.services.governor import TTLCache
from app.services.llm import CompletionProvider, build_provider_from_env
from app.services.orchestrator import CapabilityOrchestrator
from app.services.vision import VisionAnalyzer
from app.store.accounts import CartStore, InMemoryAccountStore, ProfileStore, RoutineStore
from app.store.catalog import CatalogSearch, InMemoryCatalog
from app.store.history import ConversationHistoryStore, PersistentHistoryStore
from app.store.supabase import build_supabase_from_env


logger = logging.getLogger("glowup-agent.runtime")


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    chat_model: Optional[str] = None
    vision_model: Optional[str] = None
    cart_model: Optional[str] = None
    max_rounds: int = 5
    completion_timeout_s: float = 25.0
    capability_timeout_s: float = 10.0
    embed_timeout_s: float = 6.0
    summary_timeout_s: float = 8.0
    summary_cache_ttl_s: float = 300.0
    vision_timeout_s: float = 20.0
    feed_cache_ttl_s: float = 300.0
    feed_timeout_s: float = 10.0
    cart_cache_ttl_s: float = 300.0
    cart_timeout_s: float = 10.0
    history_limit: int = 30

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            chat_model=(os.getenv("GLOWUP_CHAT_MODEL") or "").strip() or None,
            vision_model=(os.getenv("GLOWUP_VISION_MODEL") or "").strip() or None,
            cart_model=(os.getenv("GLOWUP_CART_MODEL") or "").strip() or None,
            max_rounds=_env_int("CHAT_MAX_ROUNDS", 5),
            completion_timeout_s=_env_float("COMPLETION_TIMEOUT_S", 25.0),
            capability_timeout_s=_env_float("CAPABILITY_TIMEOUT_S", 10.0),
            embed_timeout_s=_env_float("EMBED_TIMEOUT_S", 6.0),
            summary_timeout_s=_env_float("SUMMARY_TIMEOUT_S", 8.0),
            summary_cache_ttl_s=_env_float("SUMMARY_CACHE_TTL_S", 300.0),
            vision_timeout_s=_env_float("VISION_TIMEOUT_S", 20.0),
            feed_cache_ttl_s=_env_float("FEED_CACHE_TTL_S", 300.0),
            feed_timeout_s=_env_float("FEED_TIMEOUT_S", 10.0),
            cart_cache_ttl_s=_env_float("CART_ANALYSIS_CACHE_TTL_S", 300.0),
            cart_timeout_s=_env_float("CART_ANALYSIS_TIMEOUT_S", 10.0),
            history_limit=_env_int("HISTORY_LIMIT", 30),
        )


@dataclass
class Runtime:
    """Process-wide services shared by every request."""

    settings: Settings
    cache: TTLCache
    provider: Optional[CompletionProvider]
    profiles: ProfileStore
    routines: RoutineStore
    cart: CartStore
    catalog: CatalogSearch
    history: ConversationHistoryStore
    executor: CapabilityExecutor
    orchestrator: CapabilityOrchestrator
    chat: ChatService
    feed: FeedService
    cart_advisor: CartAdvisor
    vision: VisionAnalyzer
    datastore_kind: str = "memory"

    async def startup(self) -> None:
        if isinstance(self.history, PersistentHistoryStore):
            await self.history.initialize()

    async def shutdown(self) -> None:
        await self.history.close()

    @property
    def history_backend(self) -> str:
        return getattr(self.history, "backend_kind", type(self.history).__name__)


def build_runtime(
    *,
    provider: Optional[CompletionProvider] = None,
    profiles: Optional[ProfileStore] = None,
    routines: Optional[RoutineStore] = None,
    cart: Optional[CartStore] = None,
    catalog: Optional[CatalogSearch] = None,
    history: Optional[ConversationHistoryStore] = None,
    settings: Optional[Settings] = None,
    cache: Optional[TTLCache] = None,
    datastore_kind: str = "memory",
) -> Runtime:
    settings = settings or Settings()
    cache = cache or TTLCache()
    accounts: Any = None
    if profiles is None or routines is None or cart is None:
        accounts = InMemoryAccountStore()
    profiles = profiles or accounts
    routines = routines or accounts
    cart = cart or accounts
    catalog = catalog or InMemoryCatalog()
    history = history or PersistentHistoryStore()

    executor = CapabilityExecutor(
        profiles=profiles,
        routines=routines,
        cart=cart,
        catalog=catalog,
        provider=provider,
        embed_timeout_s=settings.embed_timeout_s,
    )
    orchestrator = CapabilityOrchestrator(
        provider=provider,
        executor=executor,
        max_rounds=settings.max_rounds,
        completion_timeout_s=settings.completion_timeout_s,
        capability_timeout_s=settings.capability_timeout_s,
        model=settings.chat_model,
    )
    chat = ChatService(
        orchestrator=orchestrator,
        provider=provider,
        history=history,
        catalog=catalog,
        cache=cache,
        history_limit=settings.history_limit,
        summary_timeout_s=settings.summary_timeout_s,
        summary_cache_ttl_s=settings.summary_cache_ttl_s,
    )
    feed = FeedService(
        profiles=profiles,
        routines=routines,
        catalog=catalog,
        provider=provider,
        cache=cache,
        cache_ttl_s=settings.feed_cache_ttl_s,
        timeout_s=settings.feed_timeout_s,
        embed_timeout_s=settings.embed_timeout_s,
    )
    cart_advisor = CartAdvisor(
        profiles=profiles,
        routines=routines,
        catalog=catalog,
        provider=provider,
        cache=cache,
        model=settings.cart_model,
        cache_ttl_s=settings.cart_cache_ttl_s,
        timeout_s=settings.cart_timeout_s,
    )
    vision = VisionAnalyzer(provider, model=settings.vision_model, timeout_s=settings.vision_timeout_s)
    return Runtime(
        settings=settings,
        cache=cache,
        provider=provider,
        profiles=profiles,
        routines=routines,
        cart=cart,
        catalog=catalog,
        history=history,
        executor=executor,
        orchestrator=orchestrator,
        chat=chat,
        feed=feed,
        cart_advisor=cart_advisor,
        vision=vision,
        datastore_kind=datastore_kind,
    )


def build_runtime_from_env() -> Runtime:
    datastore = build_supabase_from_env()
    runtime = build_runtime(
        provider=build_provider_from_env(),
        profiles=datastore,
        routines=datastore,
        cart=datastore,
        catalog=datastore,
        settings=Settings.from_env(),
        datastore_kind="supabase" if datastore is not None else "memory",
    )
    logger.info(
        "runtime_ready datastore=%s provider=%s max_rounds=%d",
        runtime.datastore_kind,
        "on" if runtime.provider is not None else "off",
        runtime.settings.max_rounds,
    )
    return runtime
