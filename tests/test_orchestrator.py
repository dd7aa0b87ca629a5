from __future__ import annotations

import asyncio
import json
from pathlib import Path
import sys
from typing import Any
import unittest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.services.conversation import Conversation
from app.services.executor import CapabilityExecutor, ExecutionContext
from app.services.llm import Completion, ProviderError, ToolCallRequest
from app.services.orchestrator import CapabilityOrchestrator, ResolutionState
from app.services.prompts import BUDGET_APOLOGY, CANNED_REPLY
from app.store.accounts import InMemoryAccountStore
from app.store.catalog import DatastoreError, InMemoryCatalog


PRODUCTS = [
    {
        "id": "p1",
        "name": "Gel Cleanser",
        "brand": "A",
        "price": 12,
        "rating": 4.1,
        "category": "cleanser",
        "image_url": "https://img/p1",
        "target_skin_type": ["oily"],
        "embedding": [1.0, 0.0],
    },
    {
        "id": "p2",
        "name": "Barrier Cream",
        "brand": "B",
        "price": 30,
        "rating": 4.7,
        "category": "moisturizer",
        "image_url": "https://img/p2",
        "target_skin_type": ["dry"],
        "embedding": [0.8, 0.6],
    },
]


def _call(call_id: str, name: str, **arguments: Any) -> ToolCallRequest:
    return ToolCallRequest(id=call_id, name=name, arguments=json.dumps(arguments))


class ScriptedProvider:
    """Returns one scripted step per `complete` call; Exceptions are raised, floats are sleeps."""

    def __init__(self, steps: list[Any]) -> None:
        self._steps = list(steps)
        self.transcripts: list[list[dict[str, Any]]] = []

    async def complete(self, messages, tools=None, **kwargs):
        self.transcripts.append(list(messages))
        step = self._steps.pop(0) if self._steps else Completion(text="done")
        if isinstance(step, float):
            await asyncio.sleep(step)
            return Completion(text="too late")
        if isinstance(step, Exception):
            raise step
        return step

    async def embed(self, text):
        return [1.0, 0.0]


class SlowFirstAccounts(InMemoryAccountStore):
    """Profile lookups finish after routine lookups."""

    async def get_profile(self, user_id):
        await asyncio.sleep(0.05)
        return await super().get_profile(user_id)


class FailingProfiles(InMemoryAccountStore):
    async def get_profile(self, user_id):
        raise DatastoreError("profiles table unreachable")


class SlowCartAccounts(InMemoryAccountStore):
    async def upsert_item(self, user_id, product_id, quantity):
        await asyncio.sleep(0.05)
        return await super().upsert_item(user_id, product_id, quantity)


def _orchestrator(provider, accounts=None, **kwargs) -> tuple[CapabilityOrchestrator, InMemoryAccountStore]:
    accounts = accounts or InMemoryAccountStore(profiles={"u1": {"skin_type": "oily"}})
    executor = CapabilityExecutor(
        profiles=accounts,
        routines=accounts,
        cart=accounts,
        catalog=InMemoryCatalog(PRODUCTS),
        provider=provider,
    )
    return CapabilityOrchestrator(provider=provider, executor=executor, **kwargs), accounts


def _conversation(text: str = "help me pick a cleanser") -> Conversation:
    return Conversation.from_messages([{"role": "user", "content": text}])


class TestCapabilityOrchestrator(unittest.IsolatedAsyncioTestCase):
    async def test_plain_answer_is_success_in_one_round(self) -> None:
        provider = ScriptedProvider([Completion(text="Use a gentle cleanser.")])
        orchestrator, _ = _orchestrator(provider)
        resolution = await orchestrator.resolve(_conversation(), ctx=ExecutionContext(user_id="u1"))
        self.assertEqual(resolution.state, ResolutionState.SUCCESS)
        self.assertEqual(resolution.rounds, 1)
        self.assertEqual(resolution.final_text, "Use a gentle cleanser.")
        self.assertEqual(provider.transcripts[0][0]["role"], "system")

    async def test_capability_round_then_answer(self) -> None:
        provider = ScriptedProvider(
            [
                Completion(calls=[_call("c1", "search_products", query="gel cleanser oily")]),
                Completion(text="Try **Gel Cleanser**.\n\n[[PRODUCT:p1]]"),
            ]
        )
        orchestrator, _ = _orchestrator(provider)
        resolution = await orchestrator.resolve(_conversation(), ctx=ExecutionContext(user_id="u1"))

        self.assertEqual(resolution.state, ResolutionState.SUCCESS)
        self.assertEqual(resolution.rounds, 2)
        self.assertEqual(resolution.product_sets[0][0]["id"], "p1")
        second_round = provider.transcripts[1]
        self.assertEqual(second_round[-1]["role"], "tool")
        self.assertEqual(second_round[-1]["tool_call_id"], "c1")
        self.assertIn("Gel Cleanser", second_round[-1]["content"])

    async def test_budget_exhausted_after_max_rounds(self) -> None:
        steps = [Completion(calls=[_call(f"c{i}", "get_user_routine")]) for i in range(10)]
        provider = ScriptedProvider(steps)
        orchestrator, _ = _orchestrator(provider, max_rounds=3)
        resolution = await orchestrator.resolve(_conversation(), ctx=ExecutionContext(user_id="u1"))

        self.assertEqual(resolution.state, ResolutionState.BUDGET_EXHAUSTED)
        self.assertEqual(resolution.rounds, 3)
        self.assertEqual(resolution.final_text, BUDGET_APOLOGY)
        self.assertEqual(len(provider.transcripts), 3)

    async def test_round_override_is_respected(self) -> None:
        provider = ScriptedProvider([Completion(calls=[_call(f"c{i}", "get_user_routine")]) for i in range(10)])
        orchestrator, _ = _orchestrator(provider, max_rounds=5)
        resolution = await orchestrator.resolve(_conversation(), max_rounds=1, ctx=ExecutionContext(user_id="u1"))
        self.assertEqual(resolution.state, ResolutionState.BUDGET_EXHAUSTED)
        self.assertEqual(resolution.rounds, 1)

    async def test_provider_timeout_returns_canned_reply(self) -> None:
        provider = ScriptedProvider([0.3])
        orchestrator, _ = _orchestrator(provider, completion_timeout_s=0.01)
        resolution = await orchestrator.resolve(_conversation())
        self.assertEqual(resolution.state, ResolutionState.PROVIDER_TIMEOUT)
        self.assertEqual(resolution.final_text, CANNED_REPLY)

    async def test_provider_error_and_missing_provider(self) -> None:
        orchestrator, _ = _orchestrator(ScriptedProvider([ProviderError("status=500")]))
        resolution = await orchestrator.resolve(_conversation())
        self.assertEqual(resolution.state, ResolutionState.PROVIDER_TIMEOUT)

        orchestrator, _ = _orchestrator(None)
        resolution = await orchestrator.resolve(_conversation())
        self.assertEqual(resolution.state, ResolutionState.PROVIDER_TIMEOUT)
        self.assertEqual(resolution.rounds, 0)
        self.assertEqual(resolution.final_text, CANNED_REPLY)

    async def test_results_follow_call_order_not_completion_order(self) -> None:
        accounts = SlowFirstAccounts(profiles={"u1": {"skin_type": "oily"}})
        await accounts.save_routine("u1", "profile_u1", {"inference": {"routine": {"morning": []}}})
        provider = ScriptedProvider(
            [
                Completion(
                    calls=[
                        _call("c1", "get_user_skin_profile"),
                        _call("c2", "get_user_routine"),
                        _call("c3", "search_products", query="cleanser"),
                    ]
                ),
                Completion(text="ok"),
            ]
        )
        orchestrator, _ = _orchestrator(provider, accounts=accounts)
        resolution = await orchestrator.resolve(_conversation(), ctx=ExecutionContext(user_id="u1"))

        tool_ids = [m["tool_call_id"] for m in provider.transcripts[1] if m["role"] == "tool"]
        self.assertEqual(tool_ids, ["c1", "c2", "c3"])
        roles = [t.role for t in resolution.transcript]
        self.assertEqual(roles, ["system", "user", "assistant", "capability_result", "capability_result", "capability_result", "assistant"])

    async def test_failing_profile_lookup_still_yields_reply(self) -> None:
        provider = ScriptedProvider(
            [
                Completion(calls=[_call("c1", "get_user_skin_profile")]),
                Completion(text="Here is some general advice."),
            ]
        )
        orchestrator, _ = _orchestrator(provider, accounts=FailingProfiles())
        resolution = await orchestrator.resolve(_conversation(), ctx=ExecutionContext(user_id="u1"))

        self.assertEqual(resolution.state, ResolutionState.SUCCESS)
        self.assertEqual(resolution.final_text, "Here is some general advice.")
        tool_msg = provider.transcripts[1][-1]
        self.assertIn("error", json.loads(tool_msg["content"]))

    async def test_rejected_calls_are_not_executed(self) -> None:
        provider = ScriptedProvider(
            [
                Completion(
                    calls=[
                        _call("c1", "drop_tables"),
                        ToolCallRequest(id="c2", name="add_to_cart", arguments="{oops"),
                    ]
                ),
                Completion(text="sorry"),
            ]
        )
        orchestrator, accounts = _orchestrator(provider)
        resolution = await orchestrator.resolve(_conversation(), ctx=ExecutionContext(user_id="u1"))

        self.assertEqual(resolution.side_effects, [])
        self.assertEqual(await accounts.cart_items("u1"), {})
        contents = [json.loads(m["content"]) for m in provider.transcripts[1] if m["role"] == "tool"]
        self.assertTrue(all("error" in c for c in contents))

    async def test_side_effects_survive_later_failure(self) -> None:
        provider = ScriptedProvider(
            [
                Completion(calls=[_call("c1", "add_to_cart", product_id="p2", quantity=2)]),
                ProviderError("status=503"),
            ]
        )
        orchestrator, accounts = _orchestrator(provider)
        resolution = await orchestrator.resolve(_conversation(), ctx=ExecutionContext(user_id="u1"))

        self.assertEqual(resolution.state, ResolutionState.PROVIDER_TIMEOUT)
        self.assertEqual(len(resolution.side_effects), 1)
        self.assertEqual(resolution.side_effects[0].kind, "cart_upsert")
        self.assertEqual(await accounts.cart_items("u1"), {"p2": 2})

    async def test_duplicate_call_ids_are_renamed(self) -> None:
        provider = ScriptedProvider(
            [
                Completion(calls=[_call("same", "get_user_routine"), _call("same", "get_user_skin_profile")]),
                Completion(text="ok"),
            ]
        )
        orchestrator, _ = _orchestrator(provider)
        resolution = await orchestrator.resolve(_conversation(), ctx=ExecutionContext(user_id="u1"))
        self.assertEqual(resolution.state, ResolutionState.SUCCESS)
        tool_ids = [m["tool_call_id"] for m in provider.transcripts[1] if m["role"] == "tool"]
        self.assertEqual(len(set(tool_ids)), 2)

    async def test_generated_call_id_does_not_collide_with_model_id(self) -> None:
        provider = ScriptedProvider(
            [
                Completion(
                    calls=[
                        _call("call_r1_1", "get_user_routine"),
                        ToolCallRequest(id="", name="get_user_skin_profile", arguments="{}"),
                    ]
                ),
                Completion(text="ok"),
            ]
        )
        orchestrator, _ = _orchestrator(provider)
        resolution = await orchestrator.resolve(_conversation(), ctx=ExecutionContext(user_id="u1"))
        self.assertEqual(resolution.state, ResolutionState.SUCCESS)
        tool_ids = [m["tool_call_id"] for m in provider.transcripts[1] if m["role"] == "tool"]
        self.assertEqual(len(tool_ids), 2)
        self.assertEqual(len(set(tool_ids)), 2)
        self.assertEqual(tool_ids[0], "call_r1_1")

    async def test_slow_capability_times_out_in_its_slot(self) -> None:
        provider = ScriptedProvider(
            [
                Completion(calls=[_call("c1", "get_user_skin_profile"), _call("c2", "get_user_routine")]),
                Completion(text="ok"),
            ]
        )
        orchestrator, _ = _orchestrator(
            provider,
            accounts=SlowFirstAccounts(profiles={"u1": {"skin_type": "oily"}}),
            capability_timeout_s=0.01,
        )
        resolution = await orchestrator.resolve(_conversation(), ctx=ExecutionContext(user_id="u1"))
        self.assertEqual(resolution.state, ResolutionState.SUCCESS)
        first = json.loads(provider.transcripts[1][-2]["content"])
        self.assertEqual(first, {"error": "get_user_skin_profile timed out"})

    async def test_timed_out_write_warns_it_may_still_apply(self) -> None:
        provider = ScriptedProvider(
            [
                Completion(calls=[_call("c1", "add_to_cart", product_id="p1")]),
                Completion(text="ok"),
            ]
        )
        accounts = SlowCartAccounts(profiles={"u1": {"skin_type": "oily"}})
        orchestrator, _ = _orchestrator(provider, accounts=accounts, capability_timeout_s=0.01)
        resolution = await orchestrator.resolve(_conversation(), ctx=ExecutionContext(user_id="u1"))
        self.assertEqual(resolution.state, ResolutionState.SUCCESS)
        self.assertEqual(resolution.side_effects, [])
        result = json.loads(provider.transcripts[1][-1]["content"])
        self.assertEqual(result, {"error": "add_to_cart timed out; the change may still be applied"})

        await asyncio.sleep(0.1)
        self.assertEqual(await accounts.cart_items("u1"), {"p1": 1})


if __name__ == "__main__":
    unittest.main()
