from __future__ import annotations

from typing import Any, Iterator, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field


TurnRole = Literal["system", "user", "assistant", "capability_result"]


class OrphanedCapabilityResult(ValueError):
    """A capability result does not answer a pending call of the preceding assistant turn."""


class TurnCall(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: str = "{}"


class Turn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: TurnRole
    content: str = ""
    calls: list[TurnCall] = Field(default_factory=list)
    call_id: Optional[str] = None
    name: Optional[str] = None


class Conversation:
    """Ordered transcript of turns.

    A `capability_result` turn is only accepted while it answers a call of the
    nearest preceding assistant turn that has not been answered yet.
    """

    def __init__(self, turns: Optional[Sequence[Turn]] = None) -> None:
        self._turns: list[Turn] = []
        self._pending: set[str] = set()
        for turn in turns or []:
            self.append(turn)

    @classmethod
    def from_messages(cls, messages: Sequence[dict[str, Any]]) -> "Conversation":
        return cls([Turn(role=m["role"], content=m.get("content") or "") for m in messages])

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self._turns)

    @property
    def turns(self) -> list[Turn]:
        return list(self._turns)

    @property
    def pending_call_ids(self) -> set[str]:
        return set(self._pending)

    def append(self, turn: Turn) -> Turn:
        if turn.role == "capability_result":
            if not turn.call_id or turn.call_id not in self._pending:
                raise OrphanedCapabilityResult(f"no pending call with id={turn.call_id!r}")
            self._pending.discard(turn.call_id)
        else:
            self._pending = {c.id for c in turn.calls} if turn.role == "assistant" else set()
        self._turns.append(turn)
        return turn

    def add_user(self, content: str) -> Turn:
        return self.append(Turn(role="user", content=content))

    def add_assistant(self, content: str = "", calls: Sequence[TurnCall] = ()) -> Turn:
        return self.append(Turn(role="assistant", content=content, calls=list(calls)))

    def add_result(self, call_id: str, name: str, content: str) -> Turn:
        return self.append(Turn(role="capability_result", content=content, call_id=call_id, name=name))

    def to_messages(self) -> list[dict[str, Any]]:
        """Render the transcript in chat-completions message format."""
        messages: list[dict[str, Any]] = []
        for turn in self._turns:
            if turn.role == "capability_result":
                messages.append({"role": "tool", "tool_call_id": turn.call_id, "content": turn.content})
            elif turn.role == "assistant" and turn.calls:
                messages.append(
                    {
                        "role": "assistant",
                        "content": turn.content or None,
                        "tool_calls": [
                            {"id": c.id, "type": "function", "function": {"name": c.name, "arguments": c.arguments}}
                            for c in turn.calls
                        ],
                    }
                )
            else:
                messages.append({"role": turn.role, "content": turn.content})
        return messages
