import json

import httpx
import pytest
import respx
from httpx import Response

from agentcore.errors import ProviderError
from agentcore.llm import ChatCompletionClient, StreamFinished, TextDelta, ToolCallsRequested


def _sse(*chunks) -> str:
    lines = [f"data: {json.dumps(chunk)}" for chunk in chunks]
    lines.append("data: [DONE]")
    return "\n\n".join(lines) + "\n\n"


@pytest.mark.asyncio
async def test_list_models_hits_models_endpoint():
    client = ChatCompletionClient("http://lm.test/v1")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("http://lm.test/v1/models").mock(
                return_value=Response(200, json={"data": [{"id": "m1"}]})
            )
            data = await client.list_models()
            assert data["data"][0]["id"] == "m1"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_complete_caps_tokens_and_sends_tools():
    client = ChatCompletionClient("http://lm.test/v1/", api_key="k", max_output_tokens=100)
    tools = [{"type": "function", "function": {"name": "Echo", "parameters": {}}}]
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post("http://lm.test/v1/chat/completions").mock(
                return_value=Response(
                    200,
                    json={
                        "choices": [{"message": {"content": "hi"}, "finish_reason": "stop"}],
                        "usage": {"total_tokens": 5},
                    },
                )
            )
            result = await client.complete(
                "test-model",
                [{"role": "system", "content": "sys"}, {"role": "user", "content": "hello"}, {"role": "user", "content": ""}],
                max_tokens=5000,
                tools=tools,
                tool_choice="auto",
            )
            sent = json.loads(route.calls[0].request.content)
            assert route.calls[0].request.headers["Authorization"] == "Bearer k"
    finally:
        await client.close()
    assert sent["max_tokens"] == 100
    assert sent["stream"] is False
    assert sent["tools"] == tools
    assert sent["tool_choice"] == "auto"
    assert [m["content"] for m in sent["messages"]] == ["sys", "hello"]
    assert result.text == "hi"
    assert result.finish_reason == "stop"
    assert result.usage == {"total_tokens": 5}


@pytest.mark.asyncio
async def test_complete_parses_tool_calls():
    client = ChatCompletionClient("http://lm.test/v1")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://lm.test/v1/chat/completions").mock(
                return_value=Response(
                    200,
                    json={
                        "choices": [
                            {
                                "message": {
                                    "content": None,
                                    "tool_calls": [
                                        {"id": "c1", "type": "function", "function": {"name": "FileRead", "arguments": '{"filePath": "a"}'}},
                                        {"type": "function", "function": {"name": "FileList", "arguments": {"recursive": True}}},
                                        {"type": "function", "function": {}},
                                    ],
                                }
                            }
                        ]
                    },
                )
            )
            result = await client.complete("test-model", [{"role": "user", "content": "read a"}])
    finally:
        await client.close()
    assert result.text == ""
    assert result.finish_reason == "tool_calls"
    assert [(c.id, c.name) for c in result.tool_calls] == [("c1", "FileRead"), ("call_1", "FileList")]
    assert json.loads(result.tool_calls[1].arguments) == {"recursive": True}


@pytest.mark.asyncio
async def test_complete_errors_become_provider_errors():
    client = ChatCompletionClient("http://lm.test/v1")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post("http://lm.test/v1/chat/completions")
            route.mock(return_value=Response(503, json={"error": {"message": "model not loaded"}}))
            with pytest.raises(ProviderError) as excinfo:
                await client.complete("test-model", [{"role": "user", "content": "hi"}])
            assert excinfo.value.status_code == 503
            assert str(excinfo.value) == "model not loaded"

            route.mock(return_value=Response(200, json={"choices": []}))
            with pytest.raises(ProviderError):
                await client.complete("test-model", [{"role": "user", "content": "hi"}])

            route.mock(side_effect=httpx.ConnectError("refused"))
            with pytest.raises(ProviderError) as excinfo:
                await client.complete("test-model", [{"role": "user", "content": "hi"}])
            assert "unreachable" in str(excinfo.value)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_complete_requires_messages():
    client = ChatCompletionClient("http://lm.test/v1")
    try:
        with pytest.raises(ValueError):
            await client.complete("test-model", [{"role": "user", "content": ""}])
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_stream_yields_text_then_tool_calls_then_finish():
    body = _sse(
        {"choices": [{"delta": {"content": "Let me "}}]},
        {"choices": [{"delta": {"content": "check."}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "File", "arguments": '{"file'}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"name": "Read", "arguments": 'Path": "a"}'}}]}}]},
        {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        {"choices": [], "usage": {"total_tokens": 12}},
    )
    client = ChatCompletionClient("http://lm.test/v1")
    events = []
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post("http://lm.test/v1/chat/completions").mock(
                return_value=Response(200, text=body, headers={"Content-Type": "text/event-stream"})
            )
            async for event in client.stream("test-model", [{"role": "user", "content": "read a"}]):
                events.append(event)
            sent = json.loads(route.calls[0].request.content)
    finally:
        await client.close()
    assert sent["stream"] is True
    assert sent["stream_options"] == {"include_usage": True}
    assert events[:2] == [TextDelta("Let me "), TextDelta("check.")]
    assert isinstance(events[2], ToolCallsRequested)
    call = events[2].calls[0]
    assert (call.id, call.name, json.loads(call.arguments)) == ("c1", "FileRead", {"filePath": "a"})
    assert events[3] == StreamFinished("tool_calls", {"total_tokens": 12})


@pytest.mark.asyncio
async def test_stream_http_error_raises_provider_error():
    client = ChatCompletionClient("http://lm.test/v1")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://lm.test/v1/chat/completions").mock(
                return_value=Response(500, json={"error": "boom"})
            )
            with pytest.raises(ProviderError) as excinfo:
                async for _ in client.stream("test-model", [{"role": "user", "content": "hi"}]):
                    pass
            assert excinfo.value.status_code == 500
            assert str(excinfo.value) == "boom"
    finally:
        await client.close()
