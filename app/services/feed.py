from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Optional

from app.services.governor import DEADLINE_EXCEEDED, TTLCache, with_deadline
from app.services.llm import CompletionProvider, extract_json_object
from app.services.normalizer import normalize_and_hydrate, product_payload
from app.services.prompts import FALLBACK_FEED_TIPS, FEED_SYSTEM_PROMPT
from app.store.accounts import ProfileStore, RoutineStore
from app.store.catalog import CatalogSearch, DatastoreError, KeywordFilters


logger = logging.getLogger("glowup-agent.feed")

PICKS_LIMIT = 8
SIMILARITY_THRESHOLD = 0.25


class ProfileNotFound(LookupError):
    pass


def _tone_label(tone: Any) -> str:
    if not isinstance(tone, (int, float)) or isinstance(tone, bool):
        return "not specified"
    if tone < 0.3:
        return "Fair"
    if tone < 0.5:
        return "Medium"
    if tone < 0.7:
        return "Medium-deep"
    return "Deep"


def _budget_max(budget: Any) -> int:
    return {"low": 25, "high": 100}.get(str(budget or "").lower(), 60)


def _join(values: Any, default: str) -> str:
    if not isinstance(values, list) or not values:
        return default
    return ", ".join(str(v) for v in values)


def profile_query(profile: dict[str, Any]) -> str:
    return (
        f"{profile.get('skin_type') or 'normal'} skin products for {_join(profile.get('skin_goals'), 'healthy skin')} "
        f"concerns: {_join(profile.get('skin_concerns'), 'none')}"
    )


def _map_saved_steps(steps: Any) -> list[dict[str, Any]]:
    mapped: list[dict[str, Any]] = []
    for s in steps if isinstance(steps, list) else []:
        if not isinstance(s, dict):
            continue
        product = s.get("product") if isinstance(s.get("product"), dict) else {}
        mapped.append(
            {
                "step": s.get("step"),
                "name": s.get("name"),
                "tip": s.get("instructions") or s.get("tip") or "",
                "product_id": product.get("id") or s.get("product_id"),
                "product_name": product.get("name") or s.get("product_name"),
                "product_image": product.get("image_url") or s.get("product_image"),
                "buy_link": product.get("buy_link") or s.get("buy_link"),
            }
        )
    return mapped


def saved_routine(routine_doc: Optional[dict[str, Any]]) -> dict[str, list[dict[str, Any]]]:
    data = (routine_doc or {}).get("routine_data")
    if not isinstance(data, dict):
        return {"morning": [], "evening": [], "weekly": []}
    inference = data.get("inference") if isinstance(data.get("inference"), dict) else {}
    routine = inference.get("routine") or data.get("routine") or {}
    if not isinstance(routine, dict):
        routine = {}
    return {
        "morning": _map_saved_steps(routine.get("morning")),
        "evening": _map_saved_steps(routine.get("evening")),
        "weekly": _map_saved_steps(routine.get("weekly")),
    }


class FeedService:
    """Builds the personalized home feed.

    The model-written summary, tips and routine sketch are memoized per user
    for `cache_ttl_s` and bounded by `timeout_s`; on timeout or failure the
    feed falls back to static tips.
    """

    def __init__(
        self,
        *,
        profiles: ProfileStore,
        routines: RoutineStore,
        catalog: CatalogSearch,
        provider: Optional[CompletionProvider],
        cache: TTLCache,
        cache_ttl_s: float = 300.0,
        timeout_s: float = 10.0,
        embed_timeout_s: float = 6.0,
    ) -> None:
        self._profiles = profiles
        self._routines = routines
        self._catalog = catalog
        self._provider = provider
        self._cache = cache
        self._cache_ttl_s = cache_ttl_s
        self._timeout_s = timeout_s
        self._embed_timeout_s = embed_timeout_s

    async def _picks(self, profile: dict[str, Any]) -> list[dict[str, Any]]:
        result_sets: list[list[dict[str, Any]]] = []
        try:
            if self._provider is not None:
                vector = await with_deadline(
                    self._provider.embed(profile_query(profile)), self._embed_timeout_s, DEADLINE_EXCEEDED
                )
                if vector is not DEADLINE_EXCEEDED and vector:
                    result_sets.append(await self._catalog.by_similarity(vector, SIMILARITY_THRESHOLD, 15))
            if not any(result_sets) and profile.get("skin_type"):
                filters = KeywordFilters(skin_types=[str(profile["skin_type"]), "all"])
                result_sets.append(await self._catalog.by_keyword("", filters, PICKS_LIMIT * 2))
        except Exception as exc:
            logger.warning("feed_picks_failed user_id=%s err=%s", profile.get("user_id"), exc)
        ranked = await normalize_and_hydrate(result_sets, self._catalog.by_id)
        return [product_payload(r) for r in ranked[:PICKS_LIMIT]]

    async def _generate(self, profile: dict[str, Any]) -> Optional[dict[str, Any]]:
        if self._provider is None:
            return None
        user_msg = (
            f"Skin: {profile.get('skin_type') or 'unknown'}, tone: {_tone_label(profile.get('skin_tone'))}. "
            f"Goals: {_join(profile.get('skin_goals'), 'healthy skin')}. "
            f"Concerns: {_join(profile.get('skin_concerns'), 'none')}. "
            f"Sunscreen: {profile.get('sunscreen_usage') or 'sometimes'}. "
            f"Budget: {profile.get('budget') or 'medium'} (~${_budget_max(profile.get('budget'))}). "
            f"Fragrance-free: {'yes' if profile.get('fragrance_free') else 'no'}."
        )
        try:
            completion = await with_deadline(
                self._provider.complete(
                    [{"role": "system", "content": FEED_SYSTEM_PROMPT}, {"role": "user", "content": user_msg}],
                    temperature=0.5,
                    max_tokens=600,
                    json_mode=True,
                ),
                self._timeout_s,
                DEADLINE_EXCEEDED,
            )
        except Exception as exc:
            logger.warning("feed_model_failed err=%s", exc)
            return None
        if completion is DEADLINE_EXCEEDED:
            logger.warning("feed_model_timeout timeout_s=%s", self._timeout_s)
            return None

        obj = extract_json_object(completion.text or "")
        if not obj:
            return None
        tips = [str(t) for t in obj.get("tips") or [] if str(t).strip()] if isinstance(obj.get("tips"), list) else []
        return {
            "summary": str(obj.get("summary") or ""),
            "routine": {
                "morning": obj.get("morning_routine") if isinstance(obj.get("morning_routine"), list) else [],
                "evening": obj.get("evening_routine") if isinstance(obj.get("evening_routine"), list) else [],
                "weekly": obj.get("weekly_reset") if isinstance(obj.get("weekly_reset"), list) else [],
            },
            "tips": tips,
        }

    async def _load_profile(self, user_id: str) -> Optional[dict[str, Any]]:
        """Returns the stored profile, or None when the profile store is unreachable."""
        try:
            profile = await self._profiles.get_profile(user_id)
        except DatastoreError as exc:
            logger.warning("feed_profile_failed user_id=%s err=%s", user_id, exc)
            return None
        if not profile:
            raise ProfileNotFound(user_id)
        return profile

    async def build(self, user_id: str) -> dict[str, Any]:
        profile = await self._load_profile(user_id)
        degraded = profile is None

        cache_key = f"feed:{user_id}"
        cached_hit = cache_key in self._cache
        generated: Optional[dict[str, Any]] = None
        if profile is not None:
            generated = await self._cache.cached(
                cache_key,
                self._cache_ttl_s,
                lambda: self._generate(profile),
                store_none=False,
            )
        picks = await self._picks(profile or {"user_id": user_id})

        try:
            routine = saved_routine(await self._routines.get_latest_routine(user_id))
        except DatastoreError as exc:
            logger.warning("feed_routine_failed user_id=%s err=%s", user_id, exc)
            routine = saved_routine(None)
        if not routine["morning"] and not routine["evening"] and generated:
            routine = generated["routine"]
        routine_has_products = any(
            isinstance(s, dict) and s.get("product_id") for section in routine.values() for s in section
        )

        logger.info(
            "feed_built user_id=%s picks=%d cached_model=%s routine_products=%s degraded=%s",
            user_id,
            len(picks),
            cached_hit,
            routine_has_products,
            degraded,
        )
        skin_type = (profile or {}).get("skin_type")
        summary = (generated or {}).get("summary") or (
            f"Welcome back! Here's what's new for your {skin_type} skin." if skin_type else "Welcome back!"
        )
        return {
            "success": True,
            "degraded": degraded,
            "user_summary": summary,
            "sections": {"picked_for_you": picks},
            "routine": routine,
            "routine_has_products": routine_has_products,
            "tips": (generated or {}).get("tips") or list(FALLBACK_FEED_TIPS),
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }
