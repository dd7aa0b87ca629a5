from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
import logging
from typing import Any, Optional, Sequence

from app.services.capabilities import (
    DEFAULT_MENU,
    AddToCartArgs,
    CapabilityMenu,
    CompareProductsArgs,
    ProductDetailsArgs,
    RejectedCall,
    RemoveFromCartArgs,
    ResolvedCall,
    RoutineStepArgs,
    SearchProductsArgs,
    UpdateRoutineArgs,
)
from app.services.governor import DEADLINE_EXCEEDED, with_deadline
from app.services.llm import CompletionProvider, ProviderError
from app.services.normalizer import coerce_product, merge_results, normalize_and_hydrate
from app.store.accounts import CartStore, ProfileStore, RoutineStore
from app.store.catalog import CatalogSearch, DatastoreError, KeywordFilters, ProductRecord


logger = logging.getLogger("glowup-agent.executor")

SIMILARITY_THRESHOLD = 0.25

SKIN_TYPE_VARIANTS: dict[str, list[str]] = {
    "oily": ["oily", "all", "combination"],
    "dry": ["dry", "all", "sensitive"],
    "combination": ["combination", "all", "oily", "dry"],
    "sensitive": ["sensitive", "all", "dry"],
    "normal": ["normal", "all"],
    "acne-prone": ["acne-prone", "oily", "all"],
}


class CapabilityError(Exception):
    """Expected failure whose message is returned to the model as-is."""


@dataclass(frozen=True)
class ExecutionContext:
    user_id: Optional[str] = None


@dataclass(frozen=True)
class SideEffect:
    kind: str
    user_id: str
    resource: str
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "user_id": self.user_id, "resource": self.resource, "detail": dict(self.detail)}


@dataclass
class CapabilityResult:
    call_id: str
    name: str
    payload: dict[str, Any]
    side_effect: Optional[SideEffect] = None

    @property
    def ok(self) -> bool:
        return "error" not in self.payload

    def content(self) -> str:
        return json.dumps(self.payload, ensure_ascii=False, default=str)


def error_result(call_id: str, name: str, reason: str) -> CapabilityResult:
    return CapabilityResult(call_id=call_id, name=name, payload={"error": reason})


def _product_view(record: ProductRecord, *, ingredient_limit: Optional[int] = 8) -> dict[str, Any]:
    ingredients = record.ingredients if ingredient_limit is None else record.ingredients[:ingredient_limit]
    return {
        "id": record.id,
        "name": record.name,
        "brand": record.brand,
        "price": record.price,
        "category": record.category,
        "subcategory": record.subcategory,
        "summary": record.summary,
        "rating": record.rating,
        "image_url": record.image_url,
        "buy_link": record.buy_link,
        "target_skin_type": record.target_skin_type,
        "target_concerns": record.target_concerns,
        "key_ingredients": ingredients,
        "attributes": record.attributes,
        "similarity": record.similarity,
    }


def _profile_view(profile: dict[str, Any]) -> dict[str, Any]:
    analysis = profile.get("image_analysis") if isinstance(profile.get("image_analysis"), dict) else None
    skin = (analysis or {}).get("skin") if isinstance((analysis or {}).get("skin"), dict) else {}
    return {
        "skin_type": profile.get("skin_type"),
        "skin_tone": profile.get("skin_tone"),
        "skin_tone_label": profile.get("skin_tone_label"),
        "skin_goals": profile.get("skin_goals"),
        "skin_concerns": profile.get("skin_concerns"),
        "sunscreen_usage": profile.get("sunscreen_usage"),
        "fragrance_free": profile.get("fragrance_free"),
        "hair_type": profile.get("hair_type"),
        "hair_concerns": profile.get("hair_concerns"),
        "wash_frequency": profile.get("wash_frequency"),
        "budget": profile.get("budget"),
        "image_analysis": (
            {
                "detected_skin_type": skin.get("detected_type"),
                "detected_tone": skin.get("detected_tone"),
                "concerns_detected": skin.get("concerns_detected"),
                "hydration_score": skin.get("hydration_score"),
                "oiliness_score": skin.get("oiliness_score"),
                "texture_score": skin.get("texture_score"),
            }
            if analysis
            else None
        ),
    }


class CapabilityExecutor:
    """Runs validated capability calls against the stores and the catalog.

    Every call is fault isolated: errors come back as an `{"error": ...}`
    payload in the call's own result. Mutations are upserts keyed by
    (user, product) or supersede the user's routine, and are never rolled back.
    """

    def __init__(
        self,
        *,
        profiles: ProfileStore,
        routines: RoutineStore,
        cart: CartStore,
        catalog: CatalogSearch,
        provider: Optional[CompletionProvider] = None,
        menu: CapabilityMenu = DEFAULT_MENU,
        embed_timeout_s: float = 6.0,
    ) -> None:
        self._profiles = profiles
        self._routines = routines
        self._cart = cart
        self._catalog = catalog
        self._provider = provider
        self._menu = menu
        self._embed_timeout_s = embed_timeout_s

    async def execute(self, call: ResolvedCall, ctx: ExecutionContext) -> CapabilityResult:
        if isinstance(call, RejectedCall):
            logger.info("capability_rejected name=%s reason=%s", call.name, call.reason)
            return error_result(call.id, call.name, call.reason)

        entry = self._menu.get(call.name)
        if entry is None:
            return error_result(call.id, call.name, f"unknown capability: {call.name}")
        if entry.requires_user and not ctx.user_id:
            return error_result(call.id, call.name, f"No user signed in; cannot run {call.name}")

        handler = getattr(self, f"_run_{call.name}")
        try:
            payload, side_effect = await handler(call.arguments, ctx)
        except CapabilityError as exc:
            return error_result(call.id, call.name, str(exc))
        except Exception as exc:
            logger.warning("capability_failed name=%s err=%s", call.name, exc)
            return error_result(call.id, call.name, f"{call.name} failed: {exc}")

        if side_effect is not None:
            logger.info(
                "capability_side_effect kind=%s user_id=%s resource=%s",
                side_effect.kind,
                side_effect.user_id,
                side_effect.resource,
            )
        return CapabilityResult(call_id=call.id, name=call.name, payload=payload, side_effect=side_effect)

    async def _run_get_user_skin_profile(self, _args: Any, ctx: ExecutionContext):
        profile = await self._profiles.get_profile(ctx.user_id)
        if not profile:
            raise CapabilityError("No skin profile found; the user may not have completed onboarding")
        return _profile_view(profile), None

    async def _run_get_user_routine(self, _args: Any, ctx: ExecutionContext):
        routine = await self._routines.get_latest_routine(ctx.user_id)
        if not routine:
            raise CapabilityError("No routine found; the user may not have generated one yet")
        data = routine.get("routine_data")
        return (data if isinstance(data, dict) else {"routine": data}), None

    async def _similar(self, query: str, limit: int) -> list[dict[str, Any]]:
        if self._provider is None:
            return []
        try:
            vector = await with_deadline(self._provider.embed(query), self._embed_timeout_s, DEADLINE_EXCEEDED)
        except ProviderError as exc:
            logger.warning("embedding_failed; using keyword search only. err=%s", exc)
            return []
        if vector is DEADLINE_EXCEEDED or not vector:
            return []
        try:
            return await self._catalog.by_similarity(vector, SIMILARITY_THRESHOLD, limit)
        except DatastoreError as exc:
            logger.warning("similarity_search_failed err=%s", exc)
            return []

    async def _run_search_products(self, args: SearchProductsArgs, _ctx: ExecutionContext):
        limit = args.limit
        keywords = [w for w in args.query.split() if len(w) > 2]
        if args.skin_type:
            keywords.append(args.skin_type)
        keywords.extend(args.concerns)

        result_sets: list[list[dict[str, Any]]] = [await self._similar(args.query, limit * 3)]
        if keywords:
            result_sets.append(await self._catalog.by_keyword(" ".join(keywords), KeywordFilters(), limit))

        if len(merge_results(result_sets)) < limit:
            if args.skin_type:
                variants = SKIN_TYPE_VARIANTS.get(args.skin_type, [args.skin_type, "all"])
                result_sets.append(await self._catalog.by_keyword("", KeywordFilters(skin_types=variants), limit))
            if args.concerns:
                result_sets.append(await self._catalog.by_keyword("", KeywordFilters(concerns=args.concerns), limit))

        records = merge_results(result_sets)
        if args.category:
            records = [r for r in records if (r.category or "").lower() == args.category]
        if args.max_price is not None:
            records = [r for r in records if r.price is not None and r.price <= args.max_price]

        ranked = await normalize_and_hydrate([records], self._catalog.by_id)
        products = [_product_view(r) for r in ranked[:limit]]
        return {"count": len(products), "products": products}, None

    async def _find_one(self, *, product_id: Optional[str] = None, name: Optional[str] = None) -> Optional[ProductRecord]:
        rows: list[dict[str, Any]] = []
        if product_id and product_id.strip():
            rows = await self._catalog.by_id([product_id.strip()])
        elif name and name.strip():
            rows = await self._catalog.by_name(name.strip(), 1)
        for row in rows:
            record = coerce_product(row)
            if record is not None:
                return record
        return None

    async def _run_get_product_details(self, args: ProductDetailsArgs, _ctx: ExecutionContext):
        record = await self._find_one(product_id=args.product_id, name=args.product_name)
        if record is None and args.product_id and args.product_name:
            record = await self._find_one(name=args.product_name)
        if record is None:
            raise CapabilityError("Product not found")
        view = _product_view(record, ingredient_limit=None)
        view["retailer"] = record.retailer
        return {"product": view}, None

    async def _run_compare_products(self, args: CompareProductsArgs, _ctx: ExecutionContext):
        found = await asyncio.gather(*(self._find_one(name=name) for name in args.product_names))
        products = [_product_view(r, ingredient_limit=10) for r in found if r is not None]
        if not products:
            raise CapabilityError("No matching products found")
        return {"products": products}, None

    async def _run_add_to_cart(self, args: AddToCartArgs, ctx: ExecutionContext):
        ok = await self._cart.upsert_item(ctx.user_id, args.product_id, args.quantity)
        if not ok:
            raise CapabilityError("Failed to add to cart")
        effect = SideEffect(
            kind="cart_upsert",
            user_id=ctx.user_id,
            resource=args.product_id,
            detail={"quantity": args.quantity},
        )
        return {"success": True, "product_id": args.product_id, "quantity": args.quantity}, effect

    async def _run_remove_from_cart(self, args: RemoveFromCartArgs, ctx: ExecutionContext):
        ok = await self._cart.remove_item(ctx.user_id, args.product_id)
        if not ok:
            raise CapabilityError("Failed to remove from cart")
        effect = SideEffect(kind="cart_remove", user_id=ctx.user_id, resource=args.product_id)
        return {"success": True, "product_id": args.product_id}, effect

    async def _resolve_step(self, step: RoutineStepArgs) -> dict[str, Any]:
        product: Optional[ProductRecord] = None
        try:
            product = await self._find_one(product_id=step.product_id, name=step.product_name)
        except DatastoreError as exc:
            logger.warning("routine_step_lookup_failed step=%s err=%s", step.name, exc)

        resolved: dict[str, Any] = {
            "step": step.step,
            "name": step.name,
            "instructions": step.instructions,
            "frequency": step.frequency,
        }
        if product is not None:
            resolved["product"] = {
                "id": product.id,
                "name": product.name,
                "brand": product.brand,
                "price": product.price,
                "category": product.category,
                "image_url": product.image_url,
                "buy_link": product.buy_link,
                "rating": product.rating,
                "description": product.summary or "",
            }
        return resolved

    async def _resolve_steps(self, steps: Sequence[RoutineStepArgs]) -> list[dict[str, Any]]:
        return list(await asyncio.gather(*(self._resolve_step(s) for s in steps)))

    async def _run_update_user_routine(self, args: UpdateRoutineArgs, ctx: ExecutionContext):
        profile = await self._profiles.get_profile(ctx.user_id)
        if not profile:
            raise CapabilityError("No skin profile found; the user may not have completed onboarding")

        morning, evening, weekly = await asyncio.gather(
            self._resolve_steps(args.routine.morning),
            self._resolve_steps(args.routine.evening),
            self._resolve_steps(args.routine.weekly),
        )
        payload = {
            "inference": {
                "routine": {"morning": morning, "evening": evening, "weekly": weekly},
                "summary": args.summary or "Routine updated from chat",
                "personalized_tips": [],
            }
        }
        saved = await self._routines.save_routine(ctx.user_id, profile.get("id"), payload)
        if not saved or not saved.get("id"):
            raise CapabilityError("Failed to save routine")
        effect = SideEffect(
            kind="routine_replace",
            user_id=ctx.user_id,
            resource=str(saved["id"]),
            detail={"steps": len(morning) + len(evening) + len(weekly)},
        )
        return {"success": True, "routine_id": saved["id"]}, effect
