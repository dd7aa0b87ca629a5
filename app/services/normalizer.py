from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

from pydantic import ValidationError

from app.store.catalog import ProductRecord


logger = logging.getLogger("glowup-agent.normalizer")

LookupFn = Callable[[Sequence[str]], Awaitable[list[dict[str, Any]]]]

PRODUCT_CAPABILITIES = ("search_products", "get_product_details", "compare_products")


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _first_non_empty_str(*values: Any) -> str:
    for value in values:
        text = _as_str(value)
        if text:
            return text
    return ""


def _get_case_insensitive(d: dict[str, Any], *keys: str) -> Any:
    if not isinstance(d, dict):
        return None
    lower_map = {str(k).lower(): v for k, v in d.items()}
    for key in keys:
        value = lower_map.get(str(key).lower())
        if value is not None:
            return value
    return None


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, (list, tuple)):
        return []
    return [_as_str(v) for v in value if _as_str(v)]


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def coerce_product(raw: Any) -> Optional[ProductRecord]:
    """Map a heterogeneous product dict onto `ProductRecord`.

    Accepts the shapes returned by the similarity RPC, keyword search, direct
    fetches and model-facing payloads (camelCase or snake_case). Returns None
    when no id can be found.
    """
    if isinstance(raw, ProductRecord):
        return raw
    if not isinstance(raw, dict):
        return None

    product_id = _first_non_empty_str(_get_case_insensitive(raw, "id", "product_id", "productId"))
    if not product_id:
        return None

    attributes = _get_case_insensitive(raw, "attributes")
    data = {
        "id": product_id,
        "name": _first_non_empty_str(_get_case_insensitive(raw, "name", "title", "product_name")) or None,
        "brand": _first_non_empty_str(_get_case_insensitive(raw, "brand")) or None,
        "price": _as_float(_get_case_insensitive(raw, "price")),
        "category": _first_non_empty_str(_get_case_insensitive(raw, "category")) or None,
        "subcategory": _first_non_empty_str(_get_case_insensitive(raw, "subcategory")) or None,
        "summary": _first_non_empty_str(_get_case_insensitive(raw, "summary", "description")) or None,
        "rating": _as_float(_get_case_insensitive(raw, "rating")),
        "image_url": _first_non_empty_str(_get_case_insensitive(raw, "image_url", "imageUrl", "image")) or None,
        "buy_link": _first_non_empty_str(_get_case_insensitive(raw, "buy_link", "buyLink", "url")) or None,
        "retailer": _first_non_empty_str(_get_case_insensitive(raw, "retailer")) or None,
        "attributes": attributes if isinstance(attributes, dict) else None,
        "target_concerns": _as_str_list(_get_case_insensitive(raw, "target_concerns", "targetConcerns")),
        "target_skin_type": _as_str_list(_get_case_insensitive(raw, "target_skin_type", "targetSkinType")),
        "ingredients": _as_str_list(_get_case_insensitive(raw, "ingredients")),
        "similarity": _as_float(_get_case_insensitive(raw, "similarity")),
    }
    try:
        return ProductRecord.model_validate(data)
    except ValidationError as exc:
        logger.debug("product_coerce_failed id=%s err=%s", product_id, exc)
        return None


def _fill_missing(base: ProductRecord, extra: ProductRecord) -> ProductRecord:
    updates: dict[str, Any] = {}
    for field in ProductRecord.model_fields:
        if _is_empty(getattr(base, field)) and not _is_empty(getattr(extra, field)):
            updates[field] = getattr(extra, field)
    return base.model_copy(update=updates) if updates else base


def merge_results(result_sets: Iterable[Iterable[Any]]) -> list[ProductRecord]:
    """Union result sets by id; first-seen position and values win."""
    merged: dict[str, ProductRecord] = {}
    for result_set in result_sets:
        for raw in result_set or []:
            record = coerce_product(raw)
            if record is None:
                continue
            existing = merged.get(record.id)
            merged[record.id] = record if existing is None else _fill_missing(existing, record)
    return list(merged.values())


def _rank_key(record: ProductRecord) -> tuple[int, float, float]:
    has_similarity = record.similarity is not None
    return (
        0 if has_similarity else 1,
        -(record.similarity or 0.0),
        -(record.rating or 0.0),
    )


def rank_products(records: Sequence[ProductRecord]) -> list[ProductRecord]:
    return sorted(records, key=_rank_key)


def normalize(result_sets: Iterable[Iterable[Any]]) -> list[ProductRecord]:
    return rank_products(merge_results(result_sets))


def needs_hydration(record: ProductRecord) -> bool:
    return not record.name or not record.image_url


async def normalize_and_hydrate(result_sets: Iterable[Iterable[Any]], lookup: Optional[LookupFn]) -> list[ProductRecord]:
    """Merge, fill partial records from the canonical by-id lookup, then rank.

    A failing lookup leaves the partial records in place.
    """
    merged = merge_results(result_sets)
    missing = [record.id for record in merged if needs_hydration(record)]
    if not missing or lookup is None:
        return rank_products(merged)

    try:
        rows = await lookup(missing)
    except Exception as exc:
        logger.warning("product_hydration_failed ids=%d err=%s", len(missing), exc)
        return rank_products(merged)

    canonical: dict[str, ProductRecord] = {}
    for row in rows or []:
        record = coerce_product(row)
        if record is not None:
            canonical[record.id] = record

    hydrated: list[ProductRecord] = []
    for record in merged:
        full = canonical.get(record.id)
        if full is None:
            hydrated.append(record)
            continue
        combined = _fill_missing(full, record)
        if record.similarity is not None:
            combined = combined.model_copy(update={"similarity": record.similarity})
        hydrated.append(combined)

    if len(canonical) < len(missing):
        logger.info("product_hydration_partial requested=%d found=%d", len(missing), len(canonical))
    return rank_products(hydrated)


def collect_products(capability_name: str, payload: Any) -> list[dict[str, Any]]:
    if capability_name not in PRODUCT_CAPABILITIES or not isinstance(payload, dict) or "error" in payload:
        return []
    if capability_name == "get_product_details":
        product = payload.get("product")
        return [product] if isinstance(product, dict) else []
    products = payload.get("products")
    if not isinstance(products, list):
        return []
    return [p for p in products if isinstance(p, dict)]


def product_payload(record: ProductRecord) -> dict[str, Any]:
    return record.model_dump(mode="json", exclude_none=True)
