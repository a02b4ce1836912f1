import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx

from .errors import ProviderError

logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant", "tool"}


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"

    def to_message(self) -> Dict[str, Any]:
        return {"id": self.id, "type": "function", "function": {"name": self.name, "arguments": self.arguments}}


@dataclass
class Completion:
    text: str
    finish_reason: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallsRequested:
    calls: List[ToolCall]


@dataclass
class StreamFinished:
    finish_reason: str
    usage: Dict[str, Any] = field(default_factory=dict)


StreamEvent = Union[TextDelta, ToolCallsRequested, StreamFinished]


def _parse_tool_calls(raw: Any) -> List[ToolCall]:
    calls: List[ToolCall] = []
    for idx, item in enumerate(raw or []):
        if not isinstance(item, dict):
            continue
        fn = item.get("function") or {}
        name = fn.get("name")
        if not name:
            continue
        arguments = fn.get("arguments")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments or {})
        calls.append(ToolCall(id=item.get("id") or f"call_{idx}", name=name, arguments=arguments))
    return calls


def _sanitize_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    sanitized: List[Dict[str, Any]] = []
    for msg in messages:
        if not isinstance(msg, dict) or msg.get("role") not in ALLOWED_ROLES:
            continue
        # Assistant turns that only carry tool calls legitimately have no content.
        if msg.get("content") in (None, "") and not msg.get("tool_calls") and msg.get("role") != "tool":
            continue
        sanitized.append(msg)
    return sanitized


class ChatCompletionClient:
    """Client for OpenAI-compatible ``/chat/completions`` endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        timeout: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = httpx.AsyncClient(timeout=timeout, headers=headers)

    async def list_models(self) -> Dict[str, Any]:
        url = f"{self.base_url}/models"
        try:
            resp = await self.client.get(url)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(self._extract_error_detail(exc.response), exc.response.status_code) from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"Provider unreachable: {exc}") from exc

    def _payload(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float,
        max_tokens: int,
        tools: Optional[List[Dict[str, Any]]],
        tool_choice: Optional[Any],
        stream: bool,
    ) -> Dict[str, Any]:
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens, self.max_output_tokens)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": _sanitize_messages(messages),
            "temperature": temperature,
            "max_tokens": final_max_tokens,
            "stream": stream,
        }
        if not payload["messages"]:
            raise ValueError("messages must include at least one non-empty entry")
        if tools:
            payload["tools"] = tools
            if tool_choice is not None:
                payload["tool_choice"] = tool_choice
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str) and error:
                return error
        return json.dumps(data, ensure_ascii=True)

    async def complete(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.7,
        max_tokens: int = 1024,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Any] = None,
    ) -> Completion:
        payload = self._payload(model, messages, temperature, max_tokens, tools, tool_choice, stream=False)
        url = f"{self.base_url}/chat/completions"
        try:
            resp = await self.client.post(url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(self._extract_error_detail(exc.response), exc.response.status_code) from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"Provider unreachable: {exc}") from exc
        except ValueError as exc:
            raise ProviderError(f"Provider returned invalid JSON: {exc}") from exc
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise ProviderError("Provider response has no choices")
        message = choices[0].get("message") or {}
        tool_calls = _parse_tool_calls(message.get("tool_calls"))
        finish_reason = choices[0].get("finish_reason") or ("tool_calls" if tool_calls else "stop")
        return Completion(
            text=message.get("content") or "",
            finish_reason=finish_reason,
            tool_calls=tool_calls,
            usage=data.get("usage") or {},
        )

    async def stream(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.7,
        max_tokens: int = 1024,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Any] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield text deltas as they arrive, then any tool calls, then a finish event."""
        payload = self._payload(model, messages, temperature, max_tokens, tools, tool_choice, stream=True)
        url = f"{self.base_url}/chat/completions"
        partial: Dict[int, Dict[str, str]] = {}
        finish_reason: Optional[str] = None
        usage: Dict[str, Any] = {}
        try:
            async with self.client.stream("POST", url, json=payload) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise ProviderError(self._extract_error_detail(resp), resp.status_code)
                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = line[len("data:"):].strip()
                    if chunk == "[DONE]":
                        break
                    try:
                        data = json.loads(chunk)
                    except ValueError:
                        logger.debug("Skipping malformed stream chunk: %s", chunk[:200])
                        continue
                    if data.get("usage"):
                        usage = data["usage"]
                    for choice in data.get("choices") or []:
                        delta = choice.get("delta") or {}
                        text = delta.get("content")
                        if text:
                            yield TextDelta(text)
                        for item in delta.get("tool_calls") or []:
                            slot = partial.setdefault(int(item.get("index", 0)), {"id": "", "name": "", "arguments": ""})
                            if item.get("id"):
                                slot["id"] = item["id"]
                            fn = item.get("function") or {}
                            if fn.get("name"):
                                slot["name"] += fn["name"]
                            if fn.get("arguments"):
                                slot["arguments"] += fn["arguments"]
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
        except httpx.RequestError as exc:
            raise ProviderError(f"Provider unreachable: {exc}") from exc
        calls = [
            ToolCall(id=slot["id"] or f"call_{idx}", name=slot["name"], arguments=slot["arguments"] or "{}")
            for idx, slot in sorted(partial.items())
            if slot["name"]
        ]
        if calls:
            yield ToolCallsRequested(calls)
        yield StreamFinished(finish_reason or ("tool_calls" if calls else "stop"), usage)

    async def close(self) -> None:
        await self.client.aclose()
