from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Any, Optional, Sequence

from app.services.capabilities import DEFAULT_MENU, CapabilityMenu, RejectedCall, ResolvedCall
from app.services.conversation import Conversation, Turn, TurnCall
from app.services.executor import CapabilityExecutor, CapabilityResult, ExecutionContext, SideEffect, error_result
from app.services.governor import DEADLINE_EXCEEDED, with_deadline
from app.services.llm import CompletionProvider, ToolCallRequest
from app.services.normalizer import collect_products
from app.services.prompts import BUDGET_APOLOGY, CANNED_REPLY, EMPTY_REPLY, build_preamble


logger = logging.getLogger("glowup-agent.orchestrator")

DEFAULT_MAX_ROUNDS = 5


class ResolutionState(str, Enum):
    SUCCESS = "success"
    BUDGET_EXHAUSTED = "budget_exhausted"
    PROVIDER_TIMEOUT = "provider_timeout"


@dataclass
class Resolution:
    final_text: str
    state: ResolutionState
    rounds: int
    side_effects: list[SideEffect] = field(default_factory=list)
    product_sets: list[list[dict[str, Any]]] = field(default_factory=list)
    transcript: Conversation = field(default_factory=Conversation)


def _unique_call_ids(calls: Sequence[ToolCallRequest], round_no: int) -> list[ToolCallRequest]:
    seen: set[str] = set()
    out: list[ToolCallRequest] = []
    for i, call in enumerate(calls):
        call_id = call.id.strip()
        if not call_id or call_id in seen:
            call_id = f"call_r{round_no}_{i}"
            suffix = 1
            while call_id in seen:
                call_id = f"call_r{round_no}_{i}_{suffix}"
                suffix += 1
        seen.add(call_id)
        out.append(call if call_id == call.id else call.model_copy(update={"id": call_id}))
    return out


class CapabilityOrchestrator:
    """Bounded loop that lets the model request capabilities before answering.

    Each round asks the provider for the next step under a deadline. Calls in
    a round run concurrently and each is fault isolated; their results are
    appended in call order. The loop ends in exactly one of the states of
    `ResolutionState`. Side effects already executed are kept even when a
    later round fails.
    """

    def __init__(
        self,
        *,
        provider: Optional[CompletionProvider],
        executor: CapabilityExecutor,
        menu: CapabilityMenu = DEFAULT_MENU,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        completion_timeout_s: float = 25.0,
        capability_timeout_s: float = 10.0,
        model: Optional[str] = None,
    ) -> None:
        self._provider = provider
        self._executor = executor
        self._menu = menu
        self._max_rounds = max(1, int(max_rounds))
        self._completion_timeout_s = completion_timeout_s
        self._capability_timeout_s = capability_timeout_s
        self._model = model

    async def _run_call(self, call: ResolvedCall, ctx: ExecutionContext, menu: CapabilityMenu) -> CapabilityResult:
        try:
            result = await with_deadline(
                self._executor.execute(call, ctx),
                self._capability_timeout_s,
                DEADLINE_EXCEEDED,
            )
        except Exception as exc:
            logger.warning("capability_crashed name=%s err=%s", call.name, exc)
            return error_result(call.id, call.name, f"{call.name} failed: {exc}")
        if result is DEADLINE_EXCEEDED:
            logger.warning("capability_timeout name=%s timeout_s=%s", call.name, self._capability_timeout_s)
            entry = menu.get(call.name)
            if entry is not None and entry.mutating:
                # The write keeps running after the deadline and may still land.
                return error_result(call.id, call.name, f"{call.name} timed out; the change may still be applied")
            return error_result(call.id, call.name, f"{call.name} timed out")
        return result

    async def resolve(
        self,
        conversation: Conversation,
        menu: Optional[CapabilityMenu] = None,
        *,
        max_rounds: Optional[int] = None,
        ctx: Optional[ExecutionContext] = None,
        preamble: Optional[str] = None,
    ) -> Resolution:
        menu = menu or self._menu
        ctx = ctx or ExecutionContext()
        budget = max(1, int(max_rounds)) if max_rounds is not None else self._max_rounds

        transcript = Conversation([Turn(role="system", content=preamble or build_preamble()), *conversation.turns])
        side_effects: list[SideEffect] = []
        product_sets: list[list[dict[str, Any]]] = []

        def finish(text: str, state: ResolutionState, rounds: int) -> Resolution:
            return Resolution(
                final_text=text,
                state=state,
                rounds=rounds,
                side_effects=side_effects,
                product_sets=product_sets,
                transcript=transcript,
            )

        if self._provider is None:
            logger.warning("orchestrator_no_provider user_id=%s", ctx.user_id)
            return finish(CANNED_REPLY, ResolutionState.PROVIDER_TIMEOUT, 0)

        tools = menu.tools()
        for round_no in range(1, budget + 1):
            try:
                completion = await with_deadline(
                    self._provider.complete(transcript.to_messages(), tools, model=self._model),
                    self._completion_timeout_s,
                    DEADLINE_EXCEEDED,
                )
            except Exception as exc:
                logger.warning("orchestrator_provider_failed round=%d err=%s", round_no, exc)
                return finish(CANNED_REPLY, ResolutionState.PROVIDER_TIMEOUT, round_no)
            if completion is DEADLINE_EXCEEDED:
                logger.warning("orchestrator_provider_timeout round=%d timeout_s=%s", round_no, self._completion_timeout_s)
                return finish(CANNED_REPLY, ResolutionState.PROVIDER_TIMEOUT, round_no)

            if not completion.calls:
                text = (completion.text or "").strip() or EMPTY_REPLY
                transcript.add_assistant(text)
                logger.info("orchestrator_done state=success rounds=%d side_effects=%d", round_no, len(side_effects))
                return finish(text, ResolutionState.SUCCESS, round_no)

            calls = [menu.parse(raw) for raw in _unique_call_ids(completion.calls, round_no)]
            rejected = sum(1 for c in calls if isinstance(c, RejectedCall))
            logger.info("orchestrator_round round=%d calls=%d rejected=%d", round_no, len(calls), rejected)

            results = await asyncio.gather(*(self._run_call(call, ctx, menu) for call in calls))

            transcript.add_assistant(
                completion.text or "",
                [TurnCall(id=c.id, name=c.name, arguments=c.arguments_json()) for c in calls],
            )
            for call, result in zip(calls, results):
                transcript.add_result(call.id, call.name, result.content())
                if result.side_effect is not None:
                    side_effects.append(result.side_effect)
                products = collect_products(call.name, result.payload)
                if products:
                    product_sets.append(products)

        logger.warning("orchestrator_done state=budget_exhausted rounds=%d side_effects=%d", budget, len(side_effects))
        return finish(BUDGET_APOLOGY, ResolutionState.BUDGET_EXHAUSTED, budget)
