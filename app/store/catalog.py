from __future__ import annotations

import math
import re
from typing import Any, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field


SIMILARITY_FIELDS = ("id", "name", "brand", "price", "category", "rating", "similarity")


class DatastoreError(Exception):
    pass


class ProductRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: Optional[str] = None
    brand: Optional[str] = None
    price: Optional[float] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    summary: Optional[str] = None
    rating: Optional[float] = None
    image_url: Optional[str] = None
    buy_link: Optional[str] = None
    retailer: Optional[str] = None
    attributes: Optional[dict[str, Any]] = None
    target_concerns: list[str] = Field(default_factory=list)
    target_skin_type: list[str] = Field(default_factory=list)
    ingredients: list[str] = Field(default_factory=list)
    similarity: Optional[float] = None


class KeywordFilters(BaseModel):
    model_config = ConfigDict(extra="ignore")

    category: Optional[str] = None
    max_price: Optional[float] = None
    skin_types: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)


class CatalogSearch(Protocol):
    async def by_similarity(self, embedding: Sequence[float], threshold: float, limit: int) -> list[dict[str, Any]]: ...

    async def by_keyword(self, text: str, filters: KeywordFilters, limit: int) -> list[dict[str, Any]]: ...

    async def by_id(self, ids: Sequence[str]) -> list[dict[str, Any]]: ...

    async def by_name(self, name: str, limit: int = 1) -> list[dict[str, Any]]: ...


def _tokens(text: str) -> list[str]:
    return [t for t in re.split(r"[^a-z0-9-]+", text.lower()) if len(t) > 2]


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


def _rating(row: dict[str, Any]) -> float:
    try:
        return float(row.get("rating") or 0)
    except (TypeError, ValueError):
        return 0.0


class InMemoryCatalog(CatalogSearch):
    """Catalog held in process memory.

    Rows are plain dicts in the shape of the `products` table; an optional
    `embedding` key enables similarity search. Similarity hits return only the
    fields the `match_products` RPC returns, so callers see the same partial
    records they would get from the hosted catalog.
    """

    def __init__(self, rows: Optional[Sequence[dict[str, Any]]] = None) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        for row in rows or []:
            self.add(row)

    def add(self, row: dict[str, Any]) -> None:
        product_id = str(row.get("id") or "").strip()
        if not product_id:
            raise ValueError("product row requires an id")
        self._rows[product_id] = dict(row, id=product_id)

    @staticmethod
    def _public(row: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in row.items() if k != "embedding"}

    async def by_similarity(self, embedding: Sequence[float], threshold: float, limit: int) -> list[dict[str, Any]]:
        scored: list[tuple[float, dict[str, Any]]] = []
        for row in self._rows.values():
            vector = row.get("embedding")
            if not isinstance(vector, list):
                continue
            score = _cosine(embedding, vector)
            if score > threshold:
                scored.append((score, row))
        scored.sort(key=lambda x: x[0], reverse=True)
        hits: list[dict[str, Any]] = []
        for score, row in scored[: max(0, limit)]:
            hit = {k: row.get(k) for k in SIMILARITY_FIELDS if k in row}
            hit["similarity"] = round(score, 4)
            hits.append(hit)
        return hits

    async def by_keyword(self, text: str, filters: KeywordFilters, limit: int) -> list[dict[str, Any]]:
        terms = _tokens(text)
        skin_types = {s.lower() for s in filters.skin_types}
        concerns = {c.lower() for c in filters.concerns}
        matches: list[dict[str, Any]] = []

        for row in self._rows.values():
            if filters.category and str(row.get("category") or "").lower() != filters.category.lower():
                continue
            if filters.max_price is not None:
                try:
                    if float(row.get("price") or 0) > filters.max_price:
                        continue
                except (TypeError, ValueError):
                    continue
            if skin_types and not skin_types & {str(s).lower() for s in row.get("target_skin_type") or []}:
                continue
            if concerns and not concerns & {str(c).lower() for c in row.get("target_concerns") or []}:
                continue
            if terms:
                haystack = " ".join(
                    [
                        str(row.get("name") or ""),
                        str(row.get("brand") or ""),
                        str(row.get("summary") or ""),
                        str(row.get("category") or ""),
                        " ".join(str(c) for c in row.get("target_concerns") or []),
                        " ".join(str(s) for s in row.get("target_skin_type") or []),
                    ]
                ).lower()
                if not any(term in haystack for term in terms):
                    continue
            matches.append(self._public(row))

        matches.sort(key=_rating, reverse=True)
        return matches[: max(0, limit)]

    async def by_id(self, ids: Sequence[str]) -> list[dict[str, Any]]:
        return [self._public(self._rows[i]) for i in ids if i in self._rows]

    async def by_name(self, name: str, limit: int = 1) -> list[dict[str, Any]]:
        needle = name.strip().lower()
        if not needle:
            return []
        hits = [self._public(row) for row in self._rows.values() if needle in str(row.get("name") or "").lower()]
        hits.sort(key=_rating, reverse=True)
        return hits[: max(0, limit)]
