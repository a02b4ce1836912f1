import asyncio
import json
import logging

import pytest

from agentcore.errors import NotFound, ProviderError, ValidationError
from agentcore.llm import ToolCall
from agentcore.orchestrator import RunOptions, RunStream
from tests.fakes import FakeChatClient, reply, sample_agent, sample_persona, tool_turn


@pytest.mark.asyncio
async def test_run_persists_system_user_and_assistant(agents, memory, make_orchestrator):
    await agents.create_agent(sample_agent(system_prompt="You help with questions."))
    provider = FakeChatClient(script=[reply("Hi there.")])
    orchestrator = make_orchestrator(provider)

    result = await orchestrator.run("agent-1", "Hello")

    assert result.output == "Hi there."
    assert result.finish_reason == "stop"
    assert result.usage == {"total_tokens": 10}
    messages = await memory.load_messages(result.thread_id)
    assert [(m["role"], m["content"]) for m in messages] == [
        ("system", "You help with questions."),
        ("user", "Hello"),
        ("assistant", "Hi there."),
    ]
    assert messages[2]["metadata"]["run_id"] == result.run_id
    state = await memory.load_agent_state(result.thread_id, "agent-1")
    assert state["state_data"]["lastRun"]
    assert state["state_data"]["runCount"] == 1
    assert state["state_data"]["lastFinishReason"] == "stop"
    sent = provider.calls[0]
    assert sent["model"] == "test-model"
    assert sent["temperature"] == 0.7
    assert sent["max_tokens"] == 1024
    assert sent["tools"] is None


@pytest.mark.asyncio
async def test_unknown_agent_raises_without_side_effects(memory, make_orchestrator):
    provider = FakeChatClient()
    with pytest.raises(NotFound):
        await make_orchestrator(provider).run("ghost", "Hello")
    assert await memory.list_threads() == []
    assert provider.calls == []


@pytest.mark.asyncio
async def test_invalid_options_are_rejected_before_any_write(agents, memory, make_orchestrator):
    await agents.create_agent(sample_agent())
    orchestrator = make_orchestrator(FakeChatClient())
    with pytest.raises(ValidationError):
        await orchestrator.run("agent-1", "Hello", options=RunOptions(temperature=3))
    with pytest.raises(ValidationError):
        await orchestrator.run("agent-1", "Hello", options=RunOptions(max_tokens=0))
    with pytest.raises(ValidationError):
        await orchestrator.run("agent-1", 42)
    assert await memory.list_threads() == []


@pytest.mark.asyncio
async def test_missing_persona_logs_and_continues(agents, scorer, make_orchestrator, caplog):
    await agents.create_agent(sample_agent(persona_id="deleted"))
    orchestrator = make_orchestrator(FakeChatClient())
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        result = await orchestrator.run("agent-1", "Hello")
    assert result.output == "Test answer."
    assert result.persona_id is None
    assert "deleted" in caplog.text
    assert (await scorer.get_score("deleted"))["usage_count"] == 0


@pytest.mark.asyncio
async def test_persona_usage_outcome_and_prompt(agents, personas, scorer, memory, make_orchestrator):
    await personas.create_persona(
        sample_persona(
            system_prompt_template="You are {{personaName}} inside {{agentName}}. Tools: {{toolNames}}.",
            model_settings={"temperature": 0.1, "max_tokens": 256},
        )
    )
    await agents.create_agent(sample_agent(persona_id="coder", tools=["FileRead", "CodeAnalyze"]))
    provider = FakeChatClient()
    result = await make_orchestrator(provider).run("agent-1", "Hello")

    score = await scorer.get_score("coder")
    assert score["usage_count"] == 1
    assert score["success_count"] == 1
    messages = await memory.load_messages(result.thread_id)
    assert messages[0]["content"] == "You are Coder inside Helper. Tools: FileRead, CodeAnalyze."
    assert provider.calls[0]["temperature"] == 0.1
    assert provider.calls[0]["max_tokens"] == 256
    assert [t["function"]["name"] for t in provider.calls[0]["tools"]] == ["FileRead", "CodeAnalyze"]
    state = await memory.load_agent_state(result.thread_id, "agent-1")
    assert state["state_data"]["lastPersonaId"] == "coder"


@pytest.mark.asyncio
async def test_option_overrides_take_precedence(agents, personas, memory, make_orchestrator):
    await personas.create_persona(sample_persona(model_settings={"temperature": 0.1}))
    await agents.create_agent(sample_agent(persona_id="coder", system_prompt="agent prompt"))
    provider = FakeChatClient()
    result = await make_orchestrator(provider).run(
        "agent-1",
        "Hello",
        options=RunOptions(temperature=1.2, max_tokens=64, system_prompt_override="override prompt"),
    )
    assert provider.calls[0]["temperature"] == 1.2
    assert provider.calls[0]["max_tokens"] == 64
    messages = await memory.load_messages(result.thread_id)
    assert messages[0]["content"] == "override prompt"


@pytest.mark.asyncio
async def test_default_system_prompt_uses_name_and_description(agents, memory, make_orchestrator):
    await agents.create_agent(sample_agent())
    result = await make_orchestrator(FakeChatClient()).run("agent-1", "Hello")
    messages = await memory.load_messages(result.thread_id)
    assert messages[0]["content"] == "You are Helper. Answers questions"


@pytest.mark.asyncio
async def test_auto_persona_binds_recommendation(agents, personas, scorer, make_orchestrator):
    await personas.create_persona(sample_persona())
    await agents.create_agent(sample_agent())
    orchestrator = make_orchestrator(FakeChatClient())
    result = await orchestrator.run("agent-1", "Fix my python code", options=RunOptions(auto_persona=True))
    assert result.persona_id == "coder"
    assert (await scorer.get_score("coder"))["usage_count"] == 1

    unrelated = await orchestrator.run("agent-1", "Plan a garden party", options=RunOptions(auto_persona=True))
    assert unrelated.persona_id is None


@pytest.mark.asyncio
async def test_repeated_runs_share_one_system_message(agents, memory, make_orchestrator):
    await agents.create_agent(sample_agent())
    orchestrator = make_orchestrator(FakeChatClient())
    first = await orchestrator.run("agent-1", "One")
    second = await orchestrator.run("agent-1", "Two", thread_id=first.thread_id)
    await asyncio.gather(
        orchestrator.run("agent-1", "Three", thread_id="fresh-thread"),
        orchestrator.run("agent-1", "Four", thread_id="fresh-thread"),
    )
    for thread_id in (second.thread_id, "fresh-thread"):
        messages = await memory.load_messages(thread_id)
        assert [m["role"] for m in messages].count("system") == 1
        assert messages[0]["role"] == "system"
    state = await memory.load_agent_state(first.thread_id, "agent-1")
    assert state["state_data"]["runCount"] == 2


@pytest.mark.asyncio
async def test_empty_input_continues_thread(agents, memory, make_orchestrator):
    await agents.create_agent(sample_agent())
    provider = FakeChatClient(script=[reply("first"), reply("continued")])
    orchestrator = make_orchestrator(provider)
    first = await orchestrator.run("agent-1", "Start")
    second = await orchestrator.run("agent-1", "", thread_id=first.thread_id)
    assert second.output == "continued"
    roles = [m["role"] for m in await memory.load_messages(first.thread_id)]
    assert roles == ["system", "user", "assistant", "assistant"]
    assert provider.calls[1]["messages"][-1] == {"role": "assistant", "content": "first"}


@pytest.mark.asyncio
async def test_tool_round_trip(agents, memory, make_orchestrator):
    await agents.create_agent(sample_agent(tools=["CodeAnalyze"]))
    call = ToolCall(id="c1", name="CodeAnalyze", arguments=json.dumps({"code": "eval(x)"}))
    provider = FakeChatClient(script=[tool_turn(call), reply("Found one eval.")])
    result = await make_orchestrator(provider).run("agent-1", "Review eval(x)")

    assert result.output == "Found one eval."
    assert len(result.tool_calls) == 1
    invocation = result.tool_calls[0]
    assert invocation.name == "CodeAnalyze"
    assert invocation.result["success"] is True
    messages = await memory.load_messages(result.thread_id)
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "tool", "assistant"]
    assert messages[2]["metadata"]["tool_calls"][0]["id"] == "c1"
    assert messages[3]["tool_call_id"] == "c1"
    assert messages[3]["tool_name"] == "CodeAnalyze"

    second_request = provider.calls[1]["messages"]
    assert second_request[-2]["tool_calls"][0]["function"]["name"] == "CodeAnalyze"
    assert second_request[-1]["role"] == "tool"
    assert json.loads(second_request[-1]["content"])["success"] is True
    assert provider.calls[1]["tool_choice"] is None


@pytest.mark.asyncio
async def test_unknown_and_disabled_tools_return_errors(agents, make_orchestrator):
    await agents.create_agent(sample_agent(tools=["CodeAnalyze", "Teleport"]))
    calls = [
        ToolCall(id="c1", name="Teleport", arguments="{}"),
        ToolCall(id="c2", name="FileRead", arguments='{"filePath": "a.txt"}'),
        ToolCall(id="c3", name="CodeAnalyze", arguments='{"code": "x = 1"}'),
    ]
    provider = FakeChatClient(script=[tool_turn(*calls), reply("done")])
    result = await make_orchestrator(provider).run("agent-1", "go")
    by_id = {inv.id: inv.result for inv in result.tool_calls}
    assert [inv.id for inv in result.tool_calls] == ["c1", "c2", "c3"]
    assert by_id["c1"] == {"success": False, "error": "Unknown tool: Teleport"}
    assert by_id["c2"] == {"success": False, "error": "Unknown tool: FileRead"}
    assert by_id["c3"]["success"] is True
    assert result.output == "done"


@pytest.mark.asyncio
async def test_file_tool_escape_is_reported_to_model(agents, make_orchestrator):
    await agents.create_agent(sample_agent(tools=["FileRead"]))
    call = ToolCall(id="c1", name="FileRead", arguments='{"filePath": "../../etc/passwd"}')
    provider = FakeChatClient(script=[tool_turn(call), reply("cannot read that")])
    result = await make_orchestrator(provider).run("agent-1", "read passwd")
    assert result.tool_calls[0].result["error_type"] == "PermissionError"


@pytest.mark.asyncio
async def test_tool_rounds_are_bounded(agents, memory, make_orchestrator):
    await agents.create_agent(sample_agent(tools=["CodeAnalyze"]))
    loop_call = ToolCall(id="c", name="CodeAnalyze", arguments='{"code": "1"}')
    provider = FakeChatClient(script=[tool_turn(loop_call, text="again") for _ in range(5)])
    result = await make_orchestrator(provider, max_tool_steps=2).run("agent-1", "loop")
    assert result.finish_reason == "tool_limit"
    assert len(provider.calls) == 3
    assert len(result.tool_calls) == 2
    messages = await memory.load_messages(result.thread_id)
    assert messages[-1]["role"] == "assistant"
    assert messages[-1]["content"] == "again"


@pytest.mark.asyncio
async def test_provider_error_keeps_only_user_message(agents, personas, scorer, memory, make_orchestrator):
    await personas.create_persona(sample_persona())
    await agents.create_agent(sample_agent(persona_id="coder"))
    provider = FakeChatClient(script=[ProviderError("upstream 500", 500)])
    orchestrator = make_orchestrator(provider)
    with pytest.raises(ProviderError):
        await orchestrator.run("agent-1", "Hello", thread_id="t-fail")
    messages = await memory.load_messages("t-fail")
    assert [m["role"] for m in messages] == ["system", "user"]
    assert await memory.load_agent_state("t-fail", "agent-1") is None
    score = await scorer.get_score("coder")
    assert score["failure_count"] == 1
    assert score["success_count"] == 0


@pytest.mark.asyncio
async def test_provider_error_after_tool_round_discards_buffered_messages(agents, memory, make_orchestrator):
    await agents.create_agent(sample_agent(tools=["CodeAnalyze"]))
    call = ToolCall(id="c1", name="CodeAnalyze", arguments='{"code": "1"}')
    provider = FakeChatClient(script=[tool_turn(call), ProviderError("gone")])
    with pytest.raises(ProviderError):
        await make_orchestrator(provider).run("agent-1", "Hello", thread_id="t-partial")
    roles = [m["role"] for m in await memory.load_messages("t-partial")]
    assert roles == ["system", "user"]


@pytest.mark.asyncio
async def test_on_finish_callbacks(agents, make_orchestrator):
    await agents.create_agent(sample_agent())
    seen = []

    def sync_hook(finish_reason, message):
        seen.append(("sync", finish_reason, message["content"]))

    async def async_hook(finish_reason, message):
        seen.append(("async", finish_reason, message["role"]))

    orchestrator = make_orchestrator(FakeChatClient(script=[reply("a"), reply("b")]))
    await orchestrator.run("agent-1", "x", options=RunOptions(on_finish=sync_hook))
    await orchestrator.run("agent-1", "y", options=RunOptions(on_finish=async_hook))
    assert seen == [("sync", "stop", "a"), ("async", "stop", "assistant")]


@pytest.mark.asyncio
async def test_failing_on_finish_records_a_single_outcome(agents, personas, scorer, make_orchestrator):
    await personas.create_persona(sample_persona())
    await agents.create_agent(sample_agent(persona_id="coder"))

    def broken_hook(finish_reason, message):
        raise RuntimeError("hook failed")

    with pytest.raises(RuntimeError):
        await make_orchestrator(FakeChatClient()).run("agent-1", "x", options=RunOptions(on_finish=broken_hook))
    score = await scorer.get_score("coder")
    assert score["success_count"] == 1
    assert score["failure_count"] == 0


@pytest.mark.asyncio
async def test_run_events_are_recorded(agents, db, make_orchestrator):
    await agents.create_agent(sample_agent(tools=["CodeAnalyze"]))
    call = ToolCall(id="c1", name="CodeAnalyze", arguments='{"code": "1"}')
    result = await make_orchestrator(FakeChatClient(script=[tool_turn(call), reply("ok")])).run("agent-1", "go")
    events = await db.list_events(result.run_id)
    assert [e["event_type"] for e in events] == ["run_started", "tool_call", "tool_result", "run_finished"]
    assert [e["seq"] for e in events] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_stream_yields_text_and_persists_on_finish(agents, memory, make_orchestrator):
    await agents.create_agent(sample_agent())
    provider = FakeChatClient(script=[reply("Streaming works fine.")], chunk_size=5)
    stream = await make_orchestrator(provider).run("agent-1", "Hello", options=RunOptions(stream_output=True))
    assert isinstance(stream, RunStream)

    texts = []
    async for event in stream:
        if event["type"] == "text":
            texts.append(event["text"])
    assert len(texts) > 1
    assert "".join(texts) == "Streaming works fine."
    assert stream.result.output == "Streaming works fine."
    messages = await memory.load_messages(stream.thread_id)
    assert [m["role"] for m in messages] == ["system", "user", "assistant"]
    assert messages[-1]["content"] == "Streaming works fine."


@pytest.mark.asyncio
async def test_stream_reports_tool_activity(agents, make_orchestrator):
    await agents.create_agent(sample_agent(tools=["CodeAnalyze"]))
    call = ToolCall(id="c1", name="CodeAnalyze", arguments='{"code": "1"}')
    provider = FakeChatClient(script=[tool_turn(call, text="Checking"), reply("Clean.")])
    stream = await make_orchestrator(provider).run("agent-1", "review", options=RunOptions(stream_output=True))
    result = await stream.collect()
    assert result.output == "Clean."
    assert result.tool_calls[0].result["success"] is True


@pytest.mark.asyncio
async def test_cancelled_stream_discards_partial_output(agents, personas, scorer, memory, db, make_orchestrator):
    await personas.create_persona(sample_persona())
    await agents.create_agent(sample_agent(persona_id="coder"))
    provider = FakeChatClient(script=[reply("This answer will never be stored.")], chunk_size=3)
    stream = await make_orchestrator(provider).run("agent-1", "Hello", options=RunOptions(stream_output=True))

    first = await stream.__anext__()
    assert first["type"] == "text"
    await stream.aclose()

    messages = await memory.load_messages(stream.thread_id)
    assert [m["role"] for m in messages] == ["system", "user"]
    assert await memory.load_agent_state(stream.thread_id, "agent-1") is None
    assert stream.result is None
    score = await scorer.get_score("coder")
    assert score["success_count"] == 0
    events = [e["event_type"] for e in await db.list_events(stream.run_id)]
    assert events == ["run_started", "run_cancelled"]


@pytest.mark.asyncio
async def test_stream_task_cancellation_discards_output(agents, memory, make_orchestrator):
    await agents.create_agent(sample_agent())
    provider = FakeChatClient(script=[reply("slow " * 50)], chunk_size=5, delay_seconds=0.02)
    stream = await make_orchestrator(provider).run("agent-1", "Hello", options=RunOptions(stream_output=True))
    started = asyncio.Event()

    async def consume():
        async for _ in stream:
            started.set()

    task = asyncio.create_task(consume())
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await stream.aclose()
    roles = [m["role"] for m in await memory.load_messages(stream.thread_id)]
    assert roles == ["system", "user"]


@pytest.mark.asyncio
async def test_stream_provider_error_propagates(agents, make_orchestrator):
    await agents.create_agent(sample_agent())
    provider = FakeChatClient(script=[ProviderError("stream broke")])
    stream = await make_orchestrator(provider).run("agent-1", "Hello", options=RunOptions(stream_output=True))
    with pytest.raises(ProviderError):
        await stream.collect()
