import asyncio
import inspect
import logging
import math
import time
import uuid
from contextlib import aclosing
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncGenerator, AsyncIterator, Callable, Dict, List, Optional, Union

from .db import Database, utc_now
from .errors import ValidationError
from .llm import StreamFinished, TextDelta, ToolCall, ToolCallsRequested
from .memory_store import MemoryThreadStore
from .personas import PersonaScorer
from .registry import AgentRegistry, PersonaLibrary
from .schemas import Agent, Persona
from .tools import ToolRegistry, serialize_result, tool_error

logger = logging.getLogger("uvicorn.error")

TOOL_LIMIT_FINISH = "tool_limit"


def new_run_id() -> str:
    return uuid.uuid4().hex


class EventBus:
    """In-memory fan-out for SSE plus persisted events."""

    def __init__(self, db: Database):
        self.db = db
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.lock = asyncio.Lock()

    async def emit(self, run_id: str, event_type: str, payload: dict) -> dict:
        safe_payload = dict(payload or {})
        safe_payload.setdefault("run_id", run_id)
        stored = await self.db.add_event(run_id, event_type, safe_payload)
        async with self.lock:
            queues = list(self.subscribers.get(run_id, []))
        for q in queues:
            await q.put(stored)
        return stored

    async def subscribe(self, run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(run_id, []).append(queue)
        return queue

    async def unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(run_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(run_id, None)


@dataclass
class RunOptions:
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    system_prompt_override: Optional[str] = None
    tool_choice: Optional[Any] = None
    stream_output: bool = False
    # Called as on_finish(finish_reason, assistant_message); may be a coroutine function.
    on_finish: Optional[Callable[[str, Dict[str, Any]], Any]] = None
    persona_id: Optional[str] = None
    auto_persona: bool = False


@dataclass
class ToolInvocation:
    id: str
    name: str
    arguments: str
    result: Dict[str, Any]
    duration_ms: float


@dataclass
class RunResult:
    run_id: str
    agent_id: str
    thread_id: str
    output: str
    finish_reason: str
    persona_id: Optional[str] = None
    tool_calls: List[ToolInvocation] = field(default_factory=list)
    usage: Dict[str, Any] = field(default_factory=dict)
    started_at: str = ""
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RunState:
    """Transient state of one in-flight run. Nothing here is persisted until the run finishes."""

    run_id: str
    agent: Agent
    persona: Optional[Persona]
    thread_id: str
    options: RunOptions
    model: str
    temperature: float
    max_tokens: int
    tool_specs: List[Dict[str, Any]]
    allowed_tools: List[str]
    messages: List[Dict[str, Any]] = field(default_factory=list)
    pending: List[Dict[str, Any]] = field(default_factory=list)
    invocations: List[ToolInvocation] = field(default_factory=list)
    usage: Dict[str, Any] = field(default_factory=dict)
    started_at: str = field(default_factory=utc_now)
    started: float = field(default_factory=time.monotonic)
    finished: bool = False

    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self.started) * 1000, 2)

    def add_usage(self, usage: Dict[str, Any]) -> None:
        for key, value in (usage or {}).items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                self.usage[key] = self.usage.get(key, 0) + value


class RunStream:
    """Handle for a streaming run: iterate it for events, read ``result`` once finished.

    Events are dicts with a ``type`` of ``text``, ``tool_call``, ``tool_result``
    or ``finish``. Closing the stream before ``finish`` discards the run's
    buffered assistant output.
    """

    def __init__(self, run_id: str, agent_id: str, thread_id: str, events: AsyncGenerator[Dict[str, Any], None]):
        self.run_id = run_id
        self.agent_id = agent_id
        self.thread_id = thread_id
        self.result: Optional[RunResult] = None
        self._events = events

    def __aiter__(self) -> "RunStream":
        return self

    async def __anext__(self) -> Dict[str, Any]:
        event = await self._events.__anext__()
        if event.get("type") == "finish":
            self.result = event["result"]
        return event

    async def aclose(self) -> None:
        await self._events.aclose()

    async def collect(self) -> RunResult:
        async for _ in self:
            pass
        assert self.result is not None
        return self.result


def _to_provider_message(message: Dict[str, Any]) -> Dict[str, Any]:
    role = message["role"]
    if role == "tool":
        return {"role": "tool", "tool_call_id": message.get("tool_call_id") or "", "content": message["content"]}
    tool_calls = (message.get("metadata") or {}).get("tool_calls")
    if role == "assistant" and tool_calls:
        return {"role": "assistant", "content": message["content"] or None, "tool_calls": tool_calls}
    return {"role": role, "content": message["content"]}


def _validate_options(options: RunOptions) -> None:
    if options.temperature is not None:
        value = options.temperature
        if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value) or not 0 <= value <= 2:
            raise ValidationError(f"temperature must be between 0 and 2, got {value!r}")
    if options.max_tokens is not None:
        value = options.max_tokens
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationError(f"max_tokens must be a positive integer, got {value!r}")


def _persona_setting(persona: Optional[Persona], key: str, kind: type) -> Optional[Any]:
    if persona is None:
        return None
    value = persona.model_settings.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return kind(value)


class AgentRunOrchestrator:
    """Runs one agent turn end to end against a memory thread.

    Resolve agent -> bind persona -> ensure thread -> ensure system prompt ->
    append user input -> invoke the model (tool rounds in between) -> persist
    and report. Runs on different threads share nothing mutable; concurrent
    runs on the same thread are not serialized and may interleave.
    """

    def __init__(
        self,
        agents: AgentRegistry,
        personas: PersonaLibrary,
        scorer: PersonaScorer,
        memory: MemoryThreadStore,
        provider: Any,
        tools: ToolRegistry,
        bus: Optional[EventBus] = None,
        max_tool_steps: int = 5,
    ):
        self.agents = agents
        self.personas = personas
        self.scorer = scorer
        self.memory = memory
        self.provider = provider
        self.tools = tools
        self.bus = bus
        self.max_tool_steps = max_tool_steps

    async def run(
        self,
        agent_id: str,
        input: str = "",
        thread_id: Optional[str] = None,
        options: Optional[RunOptions] = None,
    ) -> Union[RunResult, RunStream]:
        options = options or RunOptions()
        state = await self._prepare(agent_id, input, thread_id, options)
        if options.stream_output:
            return RunStream(state.run_id, state.agent.id, state.thread_id, self._stream_run(state))
        try:
            return await self._batch_run(state)
        except Exception as exc:
            await self._fail(state, exc)
            raise

    async def _prepare(self, agent_id: str, input: str, thread_id: Optional[str], options: RunOptions) -> RunState:
        if input is None:
            input = ""
        if not isinstance(input, str):
            raise ValidationError("input must be a string")
        _validate_options(options)
        agent = await self.agents.get_agent(agent_id)
        persona = await self._bind_persona(agent, input, options)

        if thread_id:
            thread = await self.memory.get_thread(thread_id)
            if thread is None:
                thread = await self.memory.create_thread(f"{agent.name} conversation", thread_id=thread_id)
        else:
            thread = await self.memory.create_thread(f"{agent.name} conversation", metadata={"agent_id": agent.id})
        thread_id = thread["id"]

        await self.memory.ensure_system_message(thread_id, self._system_prompt(agent, persona, options))
        if input.strip():
            await self.memory.append_message(thread_id, "user", input)

        specs = self.tools.specs(agent.tools)
        allowed = [spec["function"]["name"] for spec in specs]
        missing = [name for name in agent.tools if name not in allowed]
        if missing:
            logger.warning("Agent %s lists tools with no implementation: %s", agent.id, ", ".join(missing))

        temperature = options.temperature
        if temperature is None:
            temperature = _persona_setting(persona, "temperature", float)
        max_tokens = options.max_tokens
        if max_tokens is None:
            max_tokens = _persona_setting(persona, "max_tokens", int)
        state = RunState(
            run_id=new_run_id(),
            agent=agent,
            persona=persona,
            thread_id=thread_id,
            options=options,
            model=agent.model,
            temperature=agent.temperature if temperature is None else temperature,
            max_tokens=agent.max_tokens if max_tokens is None else max_tokens,
            tool_specs=specs,
            allowed_tools=allowed,
        )
        history = await self.memory.load_messages(thread_id)
        state.messages = [_to_provider_message(m) for m in history]
        logger.info("Run %s started: agent=%s thread=%s", state.run_id, agent.id, thread_id)
        await self._emit(
            state,
            "run_started",
            {"agent_id": agent.id, "thread_id": thread_id, "persona_id": persona.id if persona else None},
        )
        return state

    async def _bind_persona(self, agent: Agent, input: str, options: RunOptions) -> Optional[Persona]:
        persona_id = options.persona_id or agent.persona_id
        persona: Optional[Persona] = None
        if persona_id:
            persona = await self.personas.get_persona(persona_id)
            if persona is None:
                logger.warning("Persona %s for agent %s is unavailable; running without it", persona_id, agent.id)
        elif options.auto_persona and input.strip():
            match = await self.scorer.recommend(input)
            if match:
                persona = match["persona"]
                logger.info("Auto-selected persona %s (%s)", persona.id, match["matchReason"])
        if persona is not None:
            await self.scorer.record_usage(persona.id)
        return persona

    def _system_prompt(self, agent: Agent, persona: Optional[Persona], options: RunOptions) -> str:
        if options.system_prompt_override:
            return options.system_prompt_override
        if persona is not None:
            rendered = self.personas.render_system_prompt(
                persona,
                {
                    "agentName": agent.name,
                    "agentDescription": agent.description,
                    "toolNames": list(agent.tools),
                    "personaName": persona.name,
                },
            )
            if rendered:
                return rendered
        if agent.system_prompt:
            return agent.system_prompt
        return f"You are {agent.name}. {agent.description}".strip()

    async def _batch_run(self, state: RunState) -> RunResult:
        step = 0
        while True:
            completion = await self.provider.complete(
                model=state.model,
                messages=state.messages,
                temperature=state.temperature,
                max_tokens=state.max_tokens,
                tools=state.tool_specs or None,
                tool_choice=state.options.tool_choice if step == 0 else None,
            )
            state.add_usage(completion.usage)
            if completion.tool_calls and step < self.max_tool_steps:
                await self._tool_round(state, completion.text, completion.tool_calls)
                step += 1
                continue
            finish_reason = TOOL_LIMIT_FINISH if completion.tool_calls else completion.finish_reason
            return await self._finish(state, completion.text, finish_reason)

    async def _stream_run(self, state: RunState) -> AsyncIterator[Dict[str, Any]]:
        finished = False
        try:
            for step in range(self.max_tool_steps + 1):
                parts: List[str] = []
                calls: List[ToolCall] = []
                finish_reason = "stop"
                events = self.provider.stream(
                    model=state.model,
                    messages=state.messages,
                    temperature=state.temperature,
                    max_tokens=state.max_tokens,
                    tools=state.tool_specs or None,
                    tool_choice=state.options.tool_choice if step == 0 else None,
                )
                async with aclosing(events):
                    async for event in events:
                        if isinstance(event, TextDelta):
                            parts.append(event.text)
                            yield {"type": "text", "text": event.text}
                        elif isinstance(event, ToolCallsRequested):
                            calls = list(event.calls)
                        elif isinstance(event, StreamFinished):
                            finish_reason = event.finish_reason
                            state.add_usage(event.usage)
                text = "".join(parts)
                if calls and step < self.max_tool_steps:
                    for call in calls:
                        yield {"type": "tool_call", "id": call.id, "name": call.name, "arguments": call.arguments}
                    invocations = await self._tool_round(state, text, calls)
                    for invocation in invocations:
                        yield {"type": "tool_result", "id": invocation.id, "name": invocation.name, "result": invocation.result}
                    continue
                result = await self._finish(state, text, TOOL_LIMIT_FINISH if calls else finish_reason)
                finished = True
                yield {"type": "finish", "result": result}
                return
        except (asyncio.CancelledError, GeneratorExit):
            if not finished:
                logger.info("Run %s cancelled; discarding buffered output", state.run_id)
                await self._emit(state, "run_cancelled", {"thread_id": state.thread_id})
            raise
        except Exception as exc:
            await self._fail(state, exc)
            raise

    async def _tool_round(self, state: RunState, text: str, calls: List[ToolCall]) -> List[ToolInvocation]:
        tool_calls = [call.to_message() for call in calls]
        state.messages.append({"role": "assistant", "content": text or None, "tool_calls": tool_calls})
        state.pending.append({"role": "assistant", "content": text, "metadata": {"tool_calls": tool_calls}})
        invocations = await asyncio.gather(*(self._invoke_tool(state, call) for call in calls))
        for invocation in invocations:
            content = serialize_result(invocation.result)
            state.messages.append({"role": "tool", "tool_call_id": invocation.id, "content": content})
            state.pending.append(
                {
                    "role": "tool",
                    "content": content,
                    "tool_name": invocation.name,
                    "tool_call_id": invocation.id,
                    "metadata": {"duration_ms": invocation.duration_ms},
                }
            )
        state.invocations.extend(invocations)
        return list(invocations)

    async def _invoke_tool(self, state: RunState, call: ToolCall) -> ToolInvocation:
        started = time.monotonic()
        await self._emit(state, "tool_call", {"id": call.id, "name": call.name, "arguments": call.arguments})
        if call.name not in state.allowed_tools:
            logger.warning("Run %s requested unknown tool %s", state.run_id, call.name)
            result = tool_error(f"Unknown tool: {call.name}")
        else:
            result = await self.tools.dispatch(call.name, call.arguments)
        duration_ms = round((time.monotonic() - started) * 1000, 2)
        await self._emit(
            state,
            "tool_result",
            {"id": call.id, "name": call.name, "success": bool(result.get("success")), "duration_ms": duration_ms},
        )
        return ToolInvocation(id=call.id, name=call.name, arguments=call.arguments, result=result, duration_ms=duration_ms)

    async def _finish(self, state: RunState, text: str, finish_reason: str) -> RunResult:
        for message in state.pending:
            await self.memory.append_message(
                state.thread_id,
                message["role"],
                message["content"],
                metadata=message.get("metadata"),
                tool_name=message.get("tool_name"),
                tool_call_id=message.get("tool_call_id"),
            )
        assistant = await self.memory.append_message(
            state.thread_id,
            "assistant",
            text,
            metadata={"run_id": state.run_id, "finish_reason": finish_reason, "usage": state.usage},
        )
        previous = await self.memory.load_agent_state(state.thread_id, state.agent.id)
        data = dict(previous["state_data"]) if previous else {}
        data.update(
            {
                "lastRun": utc_now(),
                "runCount": int(data.get("runCount") or 0) + 1,
                "lastRunId": state.run_id,
                "lastFinishReason": finish_reason,
                "lastPersonaId": state.persona.id if state.persona else None,
            }
        )
        await self.memory.save_agent_state(state.thread_id, state.agent.id, data)
        state.finished = True
        result = RunResult(
            run_id=state.run_id,
            agent_id=state.agent.id,
            thread_id=state.thread_id,
            output=text,
            finish_reason=finish_reason,
            persona_id=state.persona.id if state.persona else None,
            tool_calls=list(state.invocations),
            usage=dict(state.usage),
            started_at=state.started_at,
            duration_ms=state.elapsed_ms(),
        )
        try:
            if state.options.on_finish is not None:
                outcome = state.options.on_finish(finish_reason, assistant)
                if inspect.isawaitable(outcome):
                    await outcome
        finally:
            if state.persona is not None:
                await self.scorer.record_outcome(state.persona.id, True, result.duration_ms)
        logger.info("Run %s finished: %s in %sms", state.run_id, finish_reason, result.duration_ms)
        await self._emit(
            state,
            "run_finished",
            {"thread_id": state.thread_id, "finish_reason": finish_reason, "duration_ms": result.duration_ms},
        )
        return result

    async def _fail(self, state: RunState, exc: Exception) -> None:
        logger.warning("Run %s failed: %s", state.run_id, exc)
        if state.persona is not None and not state.finished:
            await self.scorer.record_outcome(state.persona.id, False, state.elapsed_ms())
        await self._emit(state, "run_failed", {"error": str(exc), "error_type": type(exc).__name__})

    async def _emit(self, state: RunState, event_type: str, payload: Dict[str, Any]) -> None:
        if self.bus is not None:
            await self.bus.emit(state.run_id, event_type, payload)
