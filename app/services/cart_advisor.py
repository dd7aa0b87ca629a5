from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from app.services.governor import DEADLINE_EXCEEDED, TTLCache, with_deadline
from app.services.llm import CompletionProvider, extract_json_object
from app.services.prompts import CART_FIT_INSTRUCTIONS, CART_SYSTEM_PROMPT
from app.store.accounts import ProfileStore, RoutineStore
from app.store.catalog import CatalogSearch, DatastoreError


logger = logging.getLogger("glowup-agent.cart")

MAX_CART_PRODUCTS = 30
MAX_ROUTINE_STEPS = 12

CATEGORY_HINTS = {
    "cleanser": "cleanser",
    "wash": "cleanser",
    "serum": "serum",
    "moisturizer": "moisturizer",
    "cream": "moisturizer",
    "sunscreen": "sunscreen",
    "spf": "sunscreen",
    "toner": "toner",
    "exfoliant": "exfoliant",
    "mask": "mask",
    "treatment": "treatment",
    "eye": "eye",
}

FitLabel = Literal["Great fit", "Good match", "Neutral", "Caution"]


class CartFit(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product_id: str
    label: FitLabel
    reason: str = "No strong match signals yet"
    score: float = 0.0

    @field_validator("score")
    @classmethod
    def _clamp_score(cls, value: float) -> float:
        return max(-2.0, min(3.0, value))


@dataclass
class RoutineContext:
    steps: list[str] = field(default_factory=list)
    categories: set[str] = field(default_factory=set)
    product_ids: set[str] = field(default_factory=set)


def routine_context(routine_doc: Optional[dict[str, Any]]) -> RoutineContext:
    """Step names, categories and product ids of the daily steps in a saved routine."""
    ctx = RoutineContext()
    data = (routine_doc or {}).get("routine_data")
    if not isinstance(data, dict):
        return ctx
    routine: Any = None
    for holder in ("inference", "summary"):
        if isinstance(data.get(holder), dict) and isinstance(data[holder].get("routine"), dict):
            routine = data[holder]["routine"]
            break
    if routine is None:
        routine = data.get("routine") if isinstance(data.get("routine"), dict) else data

    names: list[str] = []
    for section in ("morning", "evening"):
        steps = routine.get(section)
        for step in steps if isinstance(steps, list) else []:
            if not isinstance(step, dict):
                continue
            product = step.get("product") if isinstance(step.get("product"), dict) else {}
            name = str(step.get("name") or step.get("step_name") or "")
            product_id = step.get("product_id") or product.get("id")
            product_name = step.get("product_name") or product.get("name")
            category = step.get("category") or product.get("category")

            if name:
                names.append(name)
            if product_name:
                names.append(str(product_name))
            if product_id:
                ctx.product_ids.add(str(product_id))
            if category:
                ctx.categories.add(str(category).lower())
            lowered = name.lower()
            ctx.categories.update(hint for key, hint in CATEGORY_HINTS.items() if key in lowered)
    ctx.steps = names[:MAX_ROUTINE_STEPS]
    return ctx


def _marked_fragrance_free(attributes: Any) -> bool:
    if isinstance(attributes, dict):
        return bool(attributes.get("fragrance_free"))
    if isinstance(attributes, list):
        return "fragrance_free" in attributes
    return False


def rule_based_fit(profile: Optional[dict[str, Any]], product: dict[str, Any], ctx: RoutineContext) -> CartFit:
    profile = profile or {}
    score = 0.0
    reasons: list[str] = []

    skin_type = profile.get("skin_type")
    if skin_type and skin_type in (product.get("target_skin_type") or []):
        score += 1
        reasons.append(f"Matches your {skin_type} skin")

    targets = product.get("target_concerns") or []
    overlap = [c for c in profile.get("skin_concerns") or [] if c in targets]
    if overlap:
        score += 1
        reasons.append(f"Targets {', '.join(overlap[:2])}")

    if profile.get("fragrance_free") and not _marked_fragrance_free(product.get("attributes")):
        score -= 1
        reasons.append("Not marked fragrance-free")

    category = str(product.get("category") or "").lower()
    if product.get("id") in ctx.product_ids:
        reasons.append("Already in your current routine")
    elif category and category in ctx.categories:
        reasons.append(f"You already have a {category} in your routine")
        score -= 0.2

    label: FitLabel = "Neutral"
    if score >= 2:
        label = "Great fit"
    elif score == 1:
        label = "Good match"
    elif score < 0:
        label = "Caution"
    return CartFit(
        product_id=str(product.get("id")),
        label=label,
        reason=" • ".join(reasons) or "No strong match signals yet",
        score=round(score, 2),
    )


def _fit_prompt(profile: Optional[dict[str, Any]], products: Sequence[dict[str, Any]], ctx: RoutineContext) -> str:
    profile = profile or {}
    analysis = profile.get("image_analysis")
    skin = analysis.get("skin") if isinstance(analysis, dict) else None
    if not isinstance(skin, dict):
        skin = {}
    user = {
        "skin_type": profile.get("skin_type"),
        "skin_concerns": profile.get("skin_concerns"),
        "skin_goals": profile.get("skin_goals"),
        "fragrance_free": profile.get("fragrance_free"),
        "image_analysis": {
            "concerns_detected": skin.get("concerns_detected"),
            "hydration_score": skin.get("hydration_score"),
            "oiliness_score": skin.get("oiliness_score"),
            "texture_score": skin.get("texture_score"),
        }
        if skin
        else None,
    }
    items = [
        {
            "id": p.get("id"),
            "name": p.get("name"),
            "brand": p.get("brand"),
            "category": p.get("category"),
            "summary": p.get("summary"),
            "target_skin_type": p.get("target_skin_type"),
            "target_concerns": p.get("target_concerns"),
            "attributes": p.get("attributes"),
        }
        for p in products
    ]
    routine = {"steps": ctx.steps, "categories": sorted(ctx.categories)}
    return (
        f"{CART_FIT_INSTRUCTIONS}\n\n"
        f"User profile:\n{json.dumps(user, ensure_ascii=False, default=str)}\n\n"
        f"Current routine context:\n{json.dumps(routine, ensure_ascii=False)}\n\n"
        f"Products:\n{json.dumps(items, ensure_ascii=False, default=str)}"
    )


class CartAdvisor:
    """Rates how well each cart product fits the user's skin and routine.

    The model rating is bounded by `timeout_s` and memoized for
    `cache_ttl_s`; when the model is missing, slow or returns nothing usable
    the rule-based rating is used instead.
    """

    def __init__(
        self,
        *,
        profiles: ProfileStore,
        routines: RoutineStore,
        catalog: CatalogSearch,
        provider: Optional[CompletionProvider],
        cache: TTLCache,
        model: Optional[str] = None,
        cache_ttl_s: float = 300.0,
        timeout_s: float = 10.0,
    ) -> None:
        self._profiles = profiles
        self._routines = routines
        self._catalog = catalog
        self._provider = provider
        self._cache = cache
        self._model = model
        self._cache_ttl_s = cache_ttl_s
        self._timeout_s = timeout_s

    async def _model_fit(
        self,
        provider: CompletionProvider,
        profile: Optional[dict[str, Any]],
        products: Sequence[dict[str, Any]],
        ctx: RoutineContext,
    ) -> Optional[dict[str, CartFit]]:
        try:
            completion = await with_deadline(
                provider.complete(
                    [
                        {"role": "system", "content": CART_SYSTEM_PROMPT},
                        {"role": "user", "content": _fit_prompt(profile, products, ctx)},
                    ],
                    model=self._model,
                    temperature=0.2,
                    max_tokens=800,
                    json_mode=True,
                ),
                self._timeout_s,
                DEADLINE_EXCEEDED,
            )
        except Exception as exc:
            logger.warning("cart_model_failed err=%s", exc)
            return None
        if completion is DEADLINE_EXCEEDED:
            logger.warning("cart_model_timeout timeout_s=%s", self._timeout_s)
            return None

        obj = extract_json_object(completion.text or "")
        raw_items = obj.get("items") if obj else None
        if not isinstance(raw_items, list):
            return None
        wanted = {str(p.get("id")) for p in products}
        fits: dict[str, CartFit] = {}
        for raw in raw_items:
            try:
                fit = CartFit.model_validate(raw)
            except ValidationError:
                continue
            if fit.product_id in wanted:
                fits.setdefault(fit.product_id, fit)
        return fits or None

    async def analyze(self, user_id: str, product_ids: Sequence[str]) -> dict[str, Any]:
        ids = list(dict.fromkeys(pid.strip() for pid in product_ids if pid.strip()))

        try:
            profile = await self._profiles.get_profile(user_id)
        except DatastoreError as exc:
            logger.warning("cart_profile_failed user_id=%s err=%s", user_id, exc)
            profile = None
        try:
            routine_doc = await self._routines.get_latest_routine(user_id)
        except DatastoreError as exc:
            logger.warning("cart_routine_failed user_id=%s err=%s", user_id, exc)
            routine_doc = None
        try:
            found = await self._catalog.by_id(ids) if ids else []
        except DatastoreError as exc:
            logger.warning("cart_products_failed user_id=%s err=%s", user_id, exc)
            found = []

        order = {pid: i for i, pid in enumerate(ids)}
        products = sorted(
            (p for p in found if str(p.get("id")) in order),
            key=lambda p: order[str(p.get("id"))],
        )
        ctx = routine_context(routine_doc)

        model_fits: Optional[dict[str, CartFit]] = None
        provider = self._provider
        if provider is not None and products:
            cache_key = (
                "cart_fit",
                user_id,
                tuple(sorted(str(p.get("id")) for p in products)),
                (routine_doc or {}).get("id"),
                (profile or {}).get("updated_at"),
            )
            model_fits = await self._cache.cached(
                cache_key,
                self._cache_ttl_s,
                lambda: self._model_fit(provider, profile, products, ctx),
                store_none=False,
            )

        items: list[CartFit] = []
        for product in products:
            fit = (model_fits or {}).get(str(product.get("id")))
            items.append(fit if fit is not None else rule_based_fit(profile, product, ctx))

        analyzer = "model" if model_fits else "rules"
        logger.info(
            "cart_analyzed user_id=%s requested=%d found=%d analyzer=%s",
            user_id,
            len(ids),
            len(products),
            analyzer,
        )
        return {
            "success": True,
            "items": [fit.model_dump() for fit in items],
            "analyzer": analyzer,
        }
