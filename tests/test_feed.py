from __future__ import annotations

import asyncio
import json
from pathlib import Path
import sys
import unittest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.services.feed import FeedService, ProfileNotFound, profile_query, saved_routine
from app.services.governor import TTLCache
from app.services.llm import Completion
from app.services.prompts import FALLBACK_FEED_TIPS
from app.store.accounts import InMemoryAccountStore
from app.store.catalog import DatastoreError, InMemoryCatalog


ROWS = [
    {"id": "a", "name": "Oil Control Gel", "rating": 4.0, "image_url": "u/a", "target_skin_type": ["oily"], "embedding": [1.0, 0.0]},
    {"id": "b", "name": "Daily SPF", "rating": 4.9, "image_url": "u/b", "target_skin_type": ["all"], "embedding": [0.7, 0.7]},
    {"id": "c", "name": "Rich Balm", "rating": 4.5, "image_url": "u/c", "target_skin_type": ["dry"], "embedding": [0.0, 1.0]},
]

FEED_JSON = {
    "summary": "Your oily skin loves lightweight hydration.",
    "morning_routine": [{"step": 1, "name": "Cleanse", "tip": "Gel cleanser"}],
    "evening_routine": [{"step": 1, "name": "Double cleanse", "tip": "Oil then gel"}],
    "weekly_reset": [],
    "tips": ["Blot midday", "Use SPF", "Avoid heavy creams"],
}


class UnreachableProfiles(InMemoryAccountStore):
    async def get_profile(self, user_id):
        raise DatastoreError("profiles table unreachable")


class FeedProvider:
    def __init__(self, *, text: str = json.dumps(FEED_JSON), delay_s: float = 0.0, vector=None) -> None:
        self.text = text
        self.delay_s = delay_s
        self.vector = vector
        self.calls = 0

    async def complete(self, messages, tools=None, **kwargs):
        self.calls += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        return Completion(text=self.text)

    async def embed(self, text):
        if self.vector is None:
            return []
        return self.vector


def _service(provider, accounts=None, **kwargs):
    accounts = accounts or InMemoryAccountStore(profiles={"u1": {"skin_type": "oily", "skin_goals": ["clear pores"]}})
    service = FeedService(
        profiles=accounts,
        routines=accounts,
        catalog=InMemoryCatalog(ROWS),
        provider=provider,
        cache=TTLCache(),
        **kwargs,
    )
    return service, accounts


class TestFeedService(unittest.IsolatedAsyncioTestCase):
    async def test_unknown_user_raises(self) -> None:
        service, _ = _service(None)
        with self.assertRaises(ProfileNotFound):
            await service.build("ghost")

    async def test_model_output_is_cached_per_user(self) -> None:
        provider = FeedProvider(vector=[1.0, 0.0])
        service, _ = _service(provider)

        first = await service.build("u1")
        second = await service.build("u1")

        self.assertEqual(provider.calls, 1)
        self.assertEqual(first["user_summary"], FEED_JSON["summary"])
        self.assertEqual(second["tips"], FEED_JSON["tips"])
        self.assertEqual(first["routine"]["morning"][0]["name"], "Cleanse")
        self.assertFalse(first["routine_has_products"])
        self.assertEqual([p["id"] for p in first["sections"]["picked_for_you"]], ["a", "b"])

    async def test_timeout_falls_back_and_is_not_cached(self) -> None:
        provider = FeedProvider(delay_s=0.2)
        service, _ = _service(provider, timeout_s=0.01)

        feed = await service.build("u1")
        self.assertEqual(feed["tips"], FALLBACK_FEED_TIPS)
        self.assertIn("oily skin", feed["user_summary"])

        provider.delay_s = 0.0
        feed = await service.build("u1")
        self.assertEqual(feed["tips"], FEED_JSON["tips"])
        self.assertEqual(provider.calls, 2)

    async def test_keyword_picks_when_no_embedding(self) -> None:
        service, _ = _service(None)
        feed = await service.build("u1")
        self.assertEqual([p["id"] for p in feed["sections"]["picked_for_you"]], ["b", "a"])
        self.assertEqual(feed["tips"], FALLBACK_FEED_TIPS)

    async def test_saved_routine_takes_precedence(self) -> None:
        service, accounts = _service(FeedProvider())
        await accounts.save_routine(
            "u1",
            "profile_u1",
            {
                "inference": {
                    "routine": {
                        "morning": [{"step": 1, "name": "Cleanse", "product": {"id": "a", "name": "Oil Control Gel"}}],
                        "evening": [],
                    }
                }
            },
        )
        feed = await service.build("u1")
        self.assertTrue(feed["routine_has_products"])
        self.assertEqual(feed["routine"]["morning"][0]["product_id"], "a")

    async def test_product_flag_reflects_the_routine_returned(self) -> None:
        service, accounts = _service(FeedProvider())
        await accounts.save_routine(
            "u1",
            "profile_u1",
            {"routine": {"morning": [], "evening": [], "weekly": [{"step": 1, "name": "Mask", "product_id": "c"}]}},
        )
        feed = await service.build("u1")
        self.assertEqual(feed["routine"]["morning"][0]["name"], "Cleanse")
        self.assertFalse(feed["routine_has_products"])

    async def test_generated_steps_with_products_set_the_flag(self) -> None:
        body = dict(FEED_JSON, morning_routine=[{"step": 1, "name": "Cleanse", "product_id": "a"}])
        service, _ = _service(FeedProvider(text=json.dumps(body)))
        feed = await service.build("u1")
        self.assertTrue(feed["routine_has_products"])

    async def test_unreachable_profile_store_degrades(self) -> None:
        provider = FeedProvider()
        service, _ = _service(provider, accounts=UnreachableProfiles())
        feed = await service.build("u1")
        self.assertTrue(feed["success"])
        self.assertTrue(feed["degraded"])
        self.assertEqual(feed["user_summary"], "Welcome back!")
        self.assertEqual(feed["tips"], FALLBACK_FEED_TIPS)
        self.assertEqual(provider.calls, 0)
        self.assertEqual(feed["routine"], {"morning": [], "evening": [], "weekly": []})


class TestFeedHelpers(unittest.TestCase):
    def test_profile_query(self) -> None:
        query = profile_query({"skin_type": "dry", "skin_goals": ["glow"], "skin_concerns": ["redness"]})
        self.assertEqual(query, "dry skin products for glow concerns: redness")

    def test_saved_routine_handles_legacy_shape(self) -> None:
        routine = saved_routine({"routine_data": {"routine": {"morning": [{"step": 1, "name": "SPF", "product_id": "b"}]}}})
        self.assertEqual(routine["morning"][0]["product_id"], "b")
        self.assertEqual(routine["weekly"], [])
        self.assertEqual(saved_routine(None), {"morning": [], "evening": [], "weekly": []})


if __name__ == "__main__":
    unittest.main()
