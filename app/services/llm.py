from __future__ import annotations

import json
import logging
import os
from typing import Any, Optional, Protocol, Union

import httpx
from pydantic import BaseModel, Field


logger = logging.getLogger("glowup-agent.llm")

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class ProviderError(Exception):
    pass


class ToolCallRequest(BaseModel):
    id: str
    name: str
    arguments: Union[str, dict[str, Any]] = "{}"


class Completion(BaseModel):
    text: Optional[str] = None
    calls: list[ToolCallRequest] = Field(default_factory=list)


class CompletionProvider(Protocol):
    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        *,
        model: Optional[str] = None,
        temperature: float = 0.6,
        max_tokens: int = 2000,
        json_mode: bool = False,
    ) -> Completion: ...

    async def embed(self, text: str) -> list[float]: ...


class OpenAICompatibleProvider:
    """Chat-completions and embeddings client for any OpenAI-compatible endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        chat_model: str = "gpt-4o-mini",
        embed_model: str = "text-embedding-3-small",
        timeout_s: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self.chat_model = chat_model
        self.embed_model = embed_model
        self._timeout_s = timeout_s
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                res = await client.post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise ProviderError(f"provider request failed: {exc}") from exc

        try:
            data = res.json()
        except Exception:
            data = {"raw": res.text}

        if res.status_code >= 400:
            raise ProviderError(f"provider returned status={res.status_code} body={str(data)[:300]}")
        if not isinstance(data, dict):
            raise ProviderError("provider returned a non-object body")
        return data

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        *,
        model: Optional[str] = None,
        temperature: float = 0.6,
        max_tokens: int = 2000,
        json_mode: bool = False,
    ) -> Completion:
        payload: dict[str, Any] = {
            "model": model or self.chat_model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        data = await self._post("chat/completions", payload)
        return parse_chat_completion(data)

    async def embed(self, text: str) -> list[float]:
        data = await self._post("embeddings", {"model": self.embed_model, "input": text})
        rows = data.get("data")
        if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
            raise ProviderError("embedding response missing data")
        vector = rows[0].get("embedding")
        if not isinstance(vector, list):
            raise ProviderError("embedding response missing vector")
        return [float(v) for v in vector]


def parse_chat_completion(data: dict[str, Any]) -> Completion:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise ProviderError("completion response missing choices")

    message = choices[0].get("message")
    if not isinstance(message, dict):
        raise ProviderError("completion response missing message")

    calls: list[ToolCallRequest] = []
    for i, raw in enumerate(message.get("tool_calls") or []):
        if not isinstance(raw, dict):
            continue
        fn = raw.get("function") if isinstance(raw.get("function"), dict) else raw
        name = str(fn.get("name") or "")
        call_id = str(raw.get("id") or f"call_{i}")
        arguments = fn.get("arguments")
        if arguments is None:
            arguments = "{}"
        calls.append(ToolCallRequest(id=call_id, name=name, arguments=arguments))

    content = message.get("content")
    text = content if isinstance(content, str) else None
    return Completion(text=text, calls=calls)


async def complete_text(
    provider: CompletionProvider,
    *,
    system: str,
    user: str,
    max_tokens: int = 150,
    temperature: float = 0.3,
) -> str:
    completion = await provider.complete(
        [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        temperature=temperature,
        max_tokens=max_tokens,
    )
    return (completion.text or "").strip()


def build_provider_from_env() -> Optional[OpenAICompatibleProvider]:
    api_key = (os.getenv("OPENAI_API_KEY") or "").strip()
    if not api_key:
        logger.warning("completion_provider=disabled reason=missing_OPENAI_API_KEY")
        return None
    provider = OpenAICompatibleProvider(
        api_key=api_key,
        base_url=(os.getenv("OPENAI_BASE_URL") or DEFAULT_BASE_URL).strip(),
        chat_model=(os.getenv("GLOWUP_CHAT_MODEL") or "gpt-4o-mini").strip(),
        embed_model=(os.getenv("GLOWUP_EMBED_MODEL") or "text-embedding-3-small").strip(),
    )
    logger.info("completion_provider=openai_compatible model=%s", provider.chat_model)
    return provider


def extract_json_object(text: str) -> Optional[dict[str, Any]]:
    if not text:
        return None

    for start in (i for i, ch in enumerate(text) if ch == "{"):
        candidate = _extract_braced(text, start)
        if not candidate:
            continue
        try:
            obj = json.loads(candidate)
        except Exception:
            continue
        if isinstance(obj, dict):
            return obj

    return None


def _extract_braced(text: str, start: int) -> Optional[str]:
    depth = 0
    in_str = False
    escape = False
    end: Optional[int] = None

    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if escape:
                escape = False
                continue
            if ch == "\\":
                escape = True
                continue
            if ch == '"':
                in_str = False
            continue

        if ch == '"':
            in_str = True
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                end = i
                break

    if end is None or depth != 0:
        return None
    return text[start : end + 1]
