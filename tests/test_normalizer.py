from __future__ import annotations

from pathlib import Path
import sys
import unittest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.services.normalizer import (
    coerce_product,
    collect_products,
    merge_results,
    normalize,
    normalize_and_hydrate,
    rank_products,
)
from app.store.catalog import InMemoryCatalog, ProductRecord


CATALOG_ROWS = [
    {"id": "p1", "name": "Gel Cleanser", "brand": "A", "price": 12, "rating": 4.1, "image_url": "https://img/p1"},
    {
        "id": "p2",
        "name": "Barrier Cream",
        "brand": "B",
        "price": 30,
        "rating": 4.7,
        "image_url": "https://img/p2",
        "summary": "Ceramide cream",
        "target_concerns": ["dryness"],
    },
    {"id": "p3", "name": "Daily SPF 50", "brand": "C", "price": 18, "rating": 4.4, "image_url": "https://img/p3"},
]


class TestNormalize(unittest.TestCase):
    def test_coerce_accepts_alternate_keys(self) -> None:
        record = coerce_product(
            {"product_id": "x1", "title": "Toner", "description": "Soothing", "imageUrl": "u", "price": "9.5"}
        )
        assert record is not None
        self.assertEqual(record.id, "x1")
        self.assertEqual(record.name, "Toner")
        self.assertEqual(record.summary, "Soothing")
        self.assertEqual(record.image_url, "u")
        self.assertEqual(record.price, 9.5)
        self.assertIsNone(coerce_product({"name": "no id"}))
        self.assertIsNone(coerce_product("p1"))

    def test_merge_unions_by_id_first_seen_wins(self) -> None:
        merged = merge_results(
            [
                [{"id": "p1", "name": "First"}, {"id": "p2"}],
                [{"id": "p2", "name": "Filled", "rating": 4.0}, {"id": "p1", "name": "Second"}, {"id": "p3"}],
            ]
        )
        self.assertEqual([r.id for r in merged], ["p1", "p2", "p3"])
        self.assertEqual(merged[0].name, "First")
        self.assertEqual(merged[1].name, "Filled")
        self.assertEqual(merged[1].rating, 4.0)

    def test_rank_similarity_first_then_rating(self) -> None:
        records = [
            ProductRecord(id="a", rating=5.0),
            ProductRecord(id="b", similarity=0.4, rating=3.0),
            ProductRecord(id="c", similarity=0.9),
            ProductRecord(id="d", rating=4.0),
            ProductRecord(id="e", similarity=0.4, rating=4.5),
        ]
        self.assertEqual([r.id for r in rank_products(records)], ["c", "e", "b", "a", "d"])

    def test_normalize_is_idempotent(self) -> None:
        sets = [
            [{"id": "p3", "rating": 4.0}, {"id": "p1", "similarity": 0.5}],
            [{"id": "p1", "name": "X"}, {"id": "p2", "similarity": 0.7, "rating": 2.0}],
        ]
        once = normalize(sets)
        twice = normalize([once])
        self.assertEqual(once, twice)
        ids = [r.id for r in once]
        self.assertEqual(len(ids), len(set(ids)))

    def test_collect_products(self) -> None:
        self.assertEqual(len(collect_products("search_products", {"count": 2, "products": [{"id": "a"}, {"id": "b"}]})), 2)
        self.assertEqual(collect_products("get_product_details", {"product": {"id": "a"}}), [{"id": "a"}])
        self.assertEqual(collect_products("compare_products", {"error": "No matching products found"}), [])
        self.assertEqual(collect_products("add_to_cart", {"success": True}), [])


class TestNormalizeAndHydrate(unittest.IsolatedAsyncioTestCase):
    async def test_overlapping_paths_hydrate_partial_record(self) -> None:
        catalog = InMemoryCatalog(CATALOG_ROWS)
        similarity_hits = [{"id": "p1", "name": "Gel Cleanser", "image_url": "https://img/p1"}, {"id": "p2", "similarity": 0.61}]
        keyword_hits = [dict(CATALOG_ROWS[1]), dict(CATALOG_ROWS[2])]

        out = await normalize_and_hydrate([similarity_hits, keyword_hits], catalog.by_id)

        self.assertEqual(sorted(r.id for r in out), ["p1", "p2", "p3"])
        p2 = next(r for r in out if r.id == "p2")
        self.assertEqual(p2.name, "Barrier Cream")
        self.assertEqual(p2.image_url, "https://img/p2")
        self.assertEqual(p2.summary, "Ceramide cream")
        self.assertEqual(p2.similarity, 0.61)
        self.assertEqual(out[0].id, "p2")

    async def test_lookup_fills_missing_fields_and_keeps_similarity(self) -> None:
        catalog = InMemoryCatalog(CATALOG_ROWS)
        out = await normalize_and_hydrate([[{"id": "p3", "similarity": 0.8}, {"id": "zz", "similarity": 0.5}]], catalog.by_id)
        self.assertEqual([r.id for r in out], ["p3", "zz"])
        self.assertEqual(out[0].name, "Daily SPF 50")
        self.assertEqual(out[0].similarity, 0.8)
        self.assertIsNone(out[1].name)

    async def test_lookup_failure_keeps_partials(self) -> None:
        async def broken(ids):
            raise RuntimeError("catalog down")

        out = await normalize_and_hydrate([[{"id": "p1", "similarity": 0.3}], [{"id": "p2", "name": "B"}]], broken)
        self.assertEqual([r.id for r in out], ["p1", "p2"])
        self.assertIsNone(out[0].name)

    async def test_complete_records_skip_lookup(self) -> None:
        calls: list[list[str]] = []

        async def lookup(ids):
            calls.append(list(ids))
            return []

        await normalize_and_hydrate([[dict(CATALOG_ROWS[0])]], lookup)
        self.assertEqual(calls, [])


if __name__ == "__main__":
    unittest.main()
