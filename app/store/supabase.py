from __future__ import annotations

import logging
import os
from typing import Any, Mapping, Optional, Sequence

import httpx

from app.store.accounts import CartStore, Profile, ProfileStore, RoutineDoc, RoutineStore
from app.store.catalog import CatalogSearch, DatastoreError, KeywordFilters


logger = logging.getLogger("glowup-agent.supabase")

PRODUCT_COLUMNS = (
    "id,name,brand,price,category,subcategory,summary,rating,image_url,buy_link,retailer,"
    "target_skin_type,target_concerns,attributes,ingredients"
)


def _pg_array(values: Sequence[str]) -> str:
    quoted = ",".join('"' + str(v).replace('"', "") + '"' for v in values)
    return "{" + quoted + "}"


def _pg_in(values: Sequence[str]) -> str:
    quoted = ",".join('"' + str(v).replace('"', "") + '"' for v in values)
    return f"({quoted})"


class SupabaseDatastore(ProfileStore, RoutineStore, CartStore, CatalogSearch):
    """PostgREST adapter for the hosted profile, routine, cart and product tables."""

    def __init__(
        self,
        *,
        url: str,
        service_key: str,
        timeout_s: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = f"{url.rstrip('/')}/rest/v1"
        self._service_key = service_key
        self._timeout_s = timeout_s
        self._transport = transport

    def _headers(self, extra: Optional[Mapping[str, str]] = None) -> dict[str, str]:
        headers = {
            "apikey": self._service_key,
            "Authorization": f"Bearer {self._service_key}",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        url = f"{self._base_url}/{path.lstrip('/')}"
        extra = {"Prefer": prefer} if prefer else None
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                res = await client.request(method, url, params=params, json=json_body, headers=self._headers(extra))
        except httpx.HTTPError as exc:
            raise DatastoreError(f"{method} {path} failed: {exc}") from exc

        if res.status_code >= 400:
            raise DatastoreError(f"{method} {path} returned status={res.status_code} body={res.text[:300]}")
        if not res.content:
            return None
        try:
            return res.json()
        except Exception as exc:
            raise DatastoreError(f"{method} {path} returned invalid JSON") from exc

    async def _select(self, table: str, params: Mapping[str, Any]) -> list[dict[str, Any]]:
        data = await self._request("GET", table, params=params)
        if not isinstance(data, list):
            return []
        return [row for row in data if isinstance(row, dict)]

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        rows = await self._select(
            "skin_profiles",
            {"select": "*", "user_id": f"eq.{user_id}", "order": "created_at.desc", "limit": 1},
        )
        return rows[0] if rows else None

    async def save_image_analysis(self, user_id: str, analysis: dict[str, Any]) -> bool:
        data = await self._request(
            "PATCH",
            "skin_profiles",
            params={"user_id": f"eq.{user_id}"},
            json_body={"image_analysis": analysis},
            prefer="return=representation",
        )
        return bool(data)

    async def get_latest_routine(self, user_id: str) -> Optional[RoutineDoc]:
        rows = await self._select(
            "routines",
            {"select": "*", "user_id": f"eq.{user_id}", "order": "created_at.desc", "limit": 1},
        )
        return rows[0] if rows else None

    async def save_routine(self, user_id: str, profile_id: Optional[str], payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        data = await self._request(
            "POST",
            "routines",
            json_body={"user_id": user_id, "profile_id": profile_id, "routine_data": payload},
            prefer="return=representation",
        )
        if isinstance(data, list) and data and isinstance(data[0], dict) and data[0].get("id"):
            return {"id": data[0]["id"]}
        return None

    async def upsert_item(self, user_id: str, product_id: str, quantity: int) -> bool:
        await self._request(
            "POST",
            "cart_items",
            params={"on_conflict": "user_id,product_id"},
            json_body={"user_id": user_id, "product_id": product_id, "quantity": max(1, int(quantity))},
            prefer="resolution=merge-duplicates,return=minimal",
        )
        return True

    async def remove_item(self, user_id: str, product_id: str) -> bool:
        await self._request(
            "DELETE",
            "cart_items",
            params={"user_id": f"eq.{user_id}", "product_id": f"eq.{product_id}"},
        )
        return True

    async def by_similarity(self, embedding: Sequence[float], threshold: float, limit: int) -> list[dict[str, Any]]:
        data = await self._request(
            "POST",
            "rpc/match_products",
            json_body={
                "query_embedding": list(embedding),
                "match_threshold": threshold,
                "match_count": limit,
            },
        )
        if not isinstance(data, list):
            return []
        return [row for row in data if isinstance(row, dict)]

    async def by_keyword(self, text: str, filters: KeywordFilters, limit: int) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"select": PRODUCT_COLUMNS, "order": "rating.desc", "limit": limit}
        terms = [t for t in text.split() if len(t) > 2]
        if terms:
            params["search_vector"] = "fts." + " | ".join(terms)
        if filters.category:
            params["category"] = f"eq.{filters.category}"
        if filters.max_price is not None:
            params["price"] = f"lte.{filters.max_price}"
        if filters.skin_types:
            params["target_skin_type"] = f"ov.{_pg_array(filters.skin_types)}"
        if filters.concerns:
            params["target_concerns"] = f"ov.{_pg_array(filters.concerns)}"
        return await self._select("products", params)

    async def by_id(self, ids: Sequence[str]) -> list[dict[str, Any]]:
        if not ids:
            return []
        return await self._select("products", {"select": PRODUCT_COLUMNS, "id": f"in.{_pg_in(ids)}"})

    async def by_name(self, name: str, limit: int = 1) -> list[dict[str, Any]]:
        needle = name.strip().replace("*", "")
        if not needle:
            return []
        return await self._select(
            "products",
            {"select": PRODUCT_COLUMNS, "name": f"ilike.*{needle}*", "order": "rating.desc", "limit": limit},
        )


def build_supabase_from_env() -> Optional[SupabaseDatastore]:
    url = (os.getenv("SUPABASE_URL") or "").strip()
    key = (os.getenv("SUPABASE_SERVICE_KEY") or "").strip()
    if not url or not key:
        logger.info("datastore_backend=memory reason=missing_SUPABASE_URL")
        return None
    logger.info("datastore_backend=supabase")
    return SupabaseDatastore(url=url, service_key=key)
