import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .config import CONFIG_PATH, AppSettings, load_settings, save_settings
from .db import Database
from .errors import AgentCoreError, NotFound, ProviderError, ValidationError
from .file_tools import FileSandbox, file_tools
from .llm import ChatCompletionClient
from .memory_store import MemoryThreadStore
from .orchestrator import AgentRunOrchestrator, EventBus, RunOptions
from .personas import PersonaScorer
from .registry import AgentRegistry, PersonaLibrary, new_agent_id
from .sandbox import CodeAnalyzeTool, CodeExecuteTool, CodeSandbox
from .schemas import (
    Agent,
    AgentCreateRequest,
    FeedbackRequest,
    MessageAppendRequest,
    Persona,
    RecommendRequest,
    RunRequest,
    ThreadCreateRequest,
    ToolExecuteRequest,
    WorkflowCreateRequest,
    WorkflowExecuteRequest,
    WorkflowStepRequest,
)
from .tools import ToolRegistry
from .workflows import WorkflowEngine, WorkflowExecutor


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_memory(request: Request) -> MemoryThreadStore:
    return request.app.state.memory


def get_agents(request: Request) -> AgentRegistry:
    return request.app.state.agents


def get_personas(request: Request) -> PersonaLibrary:
    return request.app.state.personas


def get_scorer(request: Request) -> PersonaScorer:
    return request.app.state.scorer


def get_workflows(request: Request) -> WorkflowEngine:
    return request.app.state.workflows


def get_workflow_executor(request: Request) -> WorkflowExecutor:
    return request.app.state.workflow_executor


def get_tools(request: Request) -> ToolRegistry:
    return request.app.state.tools


def get_orchestrator(request: Request) -> AgentRunOrchestrator:
    return request.app.state.orchestrator


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


def _stream_payload(event: Dict[str, Any]) -> Dict[str, Any]:
    if event.get("type") == "finish":
        return {"type": "finish", "result": event["result"].to_dict()}
    return event


router = APIRouter()


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/api/settings")
async def read_settings(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/api/settings")
async def update_settings(request: Request, payload: Dict[str, Any] = Body(...)):
    current = request.app.state.settings
    try:
        new_settings = AppSettings(**{**current.model_dump(), **payload})
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    save_settings(new_settings, request.app.state.config_path)
    await request.app.state.db.save_config(new_settings.to_safe_dict())
    # Services were built from the old settings; they pick up the file on restart.
    return {"ok": True, "restart_required": True, "settings": new_settings.to_safe_dict()}


# Agents


@router.get("/api/agents")
async def list_agents(agents: AgentRegistry = Depends(get_agents)):
    return {"agents": [a.model_dump() for a in await agents.list_agents()]}


@router.post("/api/agents")
async def create_agent(
    payload: AgentCreateRequest,
    agents: AgentRegistry = Depends(get_agents),
    settings: AppSettings = Depends(get_settings),
):
    data = payload.model_dump()
    data["id"] = data.get("id") or new_agent_id()
    data["model"] = data.get("model") or settings.default_model
    agent = await agents.create_agent(Agent(**data))
    return agent.model_dump()


@router.get("/api/agents/{agent_id}")
async def get_agent(agent_id: str, agents: AgentRegistry = Depends(get_agents)):
    return (await agents.get_agent(agent_id)).model_dump()


@router.patch("/api/agents/{agent_id}")
async def update_agent(
    agent_id: str,
    patch: Dict[str, Any] = Body(...),
    agents: AgentRegistry = Depends(get_agents),
):
    return (await agents.update_agent(agent_id, patch)).model_dump()


@router.delete("/api/agents/{agent_id}")
async def delete_agent(agent_id: str, agents: AgentRegistry = Depends(get_agents)):
    if not await agents.delete_agent(agent_id):
        raise NotFound(f"Agent not found: {agent_id}")
    return {"ok": True}


@router.post("/api/agents/{agent_id}/run")
async def run_agent(
    agent_id: str,
    payload: RunRequest,
    orchestrator: AgentRunOrchestrator = Depends(get_orchestrator),
):
    options = RunOptions(
        temperature=payload.temperature,
        max_tokens=payload.max_tokens,
        system_prompt_override=payload.system_prompt_override,
        tool_choice=payload.tool_choice,
        stream_output=payload.stream,
        persona_id=payload.persona_id,
        auto_persona=payload.auto_persona,
    )
    result = await orchestrator.run(agent_id, payload.input, thread_id=payload.thread_id, options=options)
    if not payload.stream:
        return result.to_dict()
    stream = result

    async def event_generator():
        yield sse_format({"type": "start", "run_id": stream.run_id, "thread_id": stream.thread_id})
        try:
            async for event in stream:
                yield sse_format(_stream_payload(event))
        except AgentCoreError as exc:
            yield sse_format({"type": "error", "error": str(exc), "error_type": type(exc).__name__})
        finally:
            await stream.aclose()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


# Threads


@router.get("/api/threads")
async def list_threads(limit: int = 50, offset: int = 0, memory: MemoryThreadStore = Depends(get_memory)):
    return {"threads": await memory.list_threads(limit=limit, offset=offset)}


@router.post("/api/threads")
async def create_thread(payload: ThreadCreateRequest, memory: MemoryThreadStore = Depends(get_memory)):
    return await memory.create_thread(payload.name, metadata=payload.metadata)


@router.get("/api/threads/{thread_id}")
async def get_thread(thread_id: str, memory: MemoryThreadStore = Depends(get_memory)):
    thread = await memory.get_thread(thread_id)
    if not thread:
        raise NotFound(f"Thread not found: {thread_id}")
    return thread


@router.get("/api/threads/{thread_id}/messages")
async def get_thread_messages(thread_id: str, memory: MemoryThreadStore = Depends(get_memory)):
    if not await memory.get_thread(thread_id):
        raise NotFound(f"Thread not found: {thread_id}")
    return {"messages": await memory.load_messages(thread_id)}


@router.post("/api/threads/{thread_id}/messages")
async def append_thread_message(
    thread_id: str,
    payload: MessageAppendRequest,
    memory: MemoryThreadStore = Depends(get_memory),
):
    return await memory.append_message(
        thread_id,
        payload.role,
        payload.content,
        metadata=payload.metadata,
        tool_name=payload.tool_name,
        tool_call_id=payload.tool_call_id,
    )


@router.get("/api/threads/{thread_id}/agents/{agent_id}/state")
async def get_agent_state(thread_id: str, agent_id: str, memory: MemoryThreadStore = Depends(get_memory)):
    state = await memory.load_agent_state(thread_id, agent_id)
    if state is None:
        raise NotFound(f"No state for agent {agent_id} on thread {thread_id}")
    return state


@router.delete("/api/threads/{thread_id}")
async def delete_thread(thread_id: str, memory: MemoryThreadStore = Depends(get_memory)):
    if not await memory.delete_thread(thread_id):
        raise NotFound(f"Thread not found: {thread_id}")
    return {"ok": True}


# Personas


@router.get("/api/personas")
async def list_personas(personas: PersonaLibrary = Depends(get_personas)):
    return {"personas": [p.model_dump() for p in await personas.list_personas()]}


@router.post("/api/personas")
async def create_persona(payload: Persona, personas: PersonaLibrary = Depends(get_personas)):
    return (await personas.create_persona(payload)).model_dump()


@router.post("/api/personas/recommend")
async def recommend_persona(payload: RecommendRequest, scorer: PersonaScorer = Depends(get_scorer)):
    match = await scorer.recommend(payload.context)
    if match is None:
        return {"recommendation": None}
    return {
        "recommendation": {
            "persona": match["persona"].model_dump(),
            "score": match["score"],
            "matchReason": match["matchReason"],
        }
    }


def _ranked_payload(ranked: list) -> dict:
    return {"personas": [{"persona": r["persona"].model_dump(), "score": r["score"]} for r in ranked]}


@router.get("/api/personas/top")
async def top_personas(limit: int = 5, scorer: PersonaScorer = Depends(get_scorer)):
    return _ranked_payload(await scorer.top_performing(limit))


@router.get("/api/personas/most-used")
async def most_used_personas(limit: int = 5, scorer: PersonaScorer = Depends(get_scorer)):
    return _ranked_payload(await scorer.most_used(limit))


@router.get("/api/personas/{persona_id}")
async def get_persona(persona_id: str, personas: PersonaLibrary = Depends(get_personas)):
    persona = await personas.get_persona(persona_id)
    if persona is None:
        raise NotFound(f"Persona not found: {persona_id}")
    return persona.model_dump()


@router.delete("/api/personas/{persona_id}")
async def delete_persona(persona_id: str, personas: PersonaLibrary = Depends(get_personas)):
    if not await personas.delete_persona(persona_id):
        raise NotFound(f"Persona not found: {persona_id}")
    return {"ok": True}


@router.get("/api/personas/{persona_id}/score")
async def persona_score(persona_id: str, scorer: PersonaScorer = Depends(get_scorer)):
    return await scorer.get_score(persona_id)


@router.post("/api/personas/{persona_id}/feedback")
async def persona_feedback(
    persona_id: str,
    payload: FeedbackRequest,
    scorer: PersonaScorer = Depends(get_scorer),
):
    return await scorer.record_feedback(persona_id, payload.rating, payload.comment)


# Workflows


@router.get("/api/workflows")
async def list_workflows(limit: int = 10, offset: int = 0, workflows: WorkflowEngine = Depends(get_workflows)):
    return {"workflows": await workflows.list_workflows(limit=limit, offset=offset)}


@router.post("/api/workflows")
async def create_workflow(payload: WorkflowCreateRequest, workflows: WorkflowEngine = Depends(get_workflows)):
    return await workflows.create_workflow(
        payload.name,
        description=payload.description,
        steps=payload.steps,
        metadata=payload.metadata,
    )


@router.get("/api/workflows/{workflow_id}")
async def get_workflow(workflow_id: str, workflows: WorkflowEngine = Depends(get_workflows)):
    workflow = await workflows.get_workflow(workflow_id)
    if workflow is None:
        raise NotFound(f"Workflow not found: {workflow_id}")
    return workflow


@router.patch("/api/workflows/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    patch: Dict[str, Any] = Body(...),
    workflows: WorkflowEngine = Depends(get_workflows),
):
    return await workflows.update_workflow(workflow_id, patch)


@router.delete("/api/workflows/{workflow_id}")
async def delete_workflow(workflow_id: str, workflows: WorkflowEngine = Depends(get_workflows)):
    if not await workflows.delete_workflow(workflow_id):
        raise NotFound(f"Workflow not found: {workflow_id}")
    return {"ok": True}


@router.post("/api/workflows/{workflow_id}/steps")
async def add_workflow_step(
    workflow_id: str,
    payload: WorkflowStepRequest,
    workflows: WorkflowEngine = Depends(get_workflows),
):
    return await workflows.add_step(workflow_id, payload)


@router.post("/api/workflows/{workflow_id}/execute")
async def execute_workflow(
    workflow_id: str,
    payload: Optional[WorkflowExecuteRequest] = None,
    executor: WorkflowExecutor = Depends(get_workflow_executor),
):
    chain_output = payload.chain_output if payload else True
    return await executor.execute(workflow_id, chain_output=chain_output)


@router.post("/api/workflows/{workflow_id}/pause")
async def pause_workflow(workflow_id: str, executor: WorkflowExecutor = Depends(get_workflow_executor)):
    return await executor.pause(workflow_id)


@router.post("/api/workflows/{workflow_id}/resume")
async def resume_workflow(workflow_id: str, executor: WorkflowExecutor = Depends(get_workflow_executor)):
    return await executor.resume(workflow_id)


# Tools and run events


@router.get("/api/tools")
async def list_tools(tools: ToolRegistry = Depends(get_tools)):
    return {"tools": tools.specs()}


@router.post("/api/tools/{name}/execute")
async def execute_tool(name: str, payload: ToolExecuteRequest, tools: ToolRegistry = Depends(get_tools)):
    if tools.get(name) is None:
        raise NotFound(f"Unknown tool: {name}")
    return await tools.dispatch(name, payload.arguments)


@router.get("/api/runs/{run_id}/events")
async def list_run_events(run_id: str, after_seq: int = 0, db: Database = Depends(get_db)):
    return {"events": await db.list_events(run_id, after_seq=after_seq)}


@router.get("/runs/{run_id}/events")
async def stream_run_events(
    run_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    # Preload past events then stream new ones
    async def event_generator():
        queue = await bus.subscribe(run_id)
        try:
            for ev in await db.list_events(run_id):
                yield sse_format(ev)
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(run_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def _error_response(status_code: int):
    async def handler(request: Request, exc: AgentCoreError) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc), "error_type": type(exc).__name__})

    return handler


def build_tool_registry(settings: AppSettings, filesystem: Optional[Any] = None) -> ToolRegistry:
    sandbox = CodeSandbox(
        timeout_s=settings.sandbox_timeout_s,
        max_concurrency=settings.sandbox_max_concurrency,
        max_output_chars=settings.sandbox_max_output_chars,
    )
    files = FileSandbox(settings.file_root, fs=filesystem)
    registry = ToolRegistry(timeout_s=settings.tool_timeout_s)
    for tool in [CodeExecuteTool(sandbox), CodeAnalyzeTool(), *file_tools(files)]:
        registry.register(tool)
    return registry


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    provider: Optional[Any] = None,
    filesystem: Optional[Any] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.to_safe_dict())
        Path(app.state.settings.file_root).mkdir(parents=True, exist_ok=True)
        if app.state.settings.personas_dir:
            await app.state.personas.load_directory(app.state.settings.personas_dir)
        try:
            yield
        finally:
            await app.state.provider.close()

    app = FastAPI(title="Agent Orchestration Core", lifespan=lifespan)
    app.state.settings = settings
    app.state.config_path = config_path or CONFIG_PATH
    app.state.db = db or Database(settings.database_path)
    app.state.provider = provider or ChatCompletionClient(
        settings.provider_base_url,
        api_key=settings.provider_api_key,
        max_output_tokens=settings.max_output_tokens,
        timeout=settings.provider_timeout_s,
    )
    app.state.bus = EventBus(app.state.db)
    app.state.memory = MemoryThreadStore(app.state.db)
    app.state.agents = AgentRegistry(app.state.db)
    app.state.personas = PersonaLibrary(app.state.db)
    app.state.scorer = PersonaScorer(app.state.db, app.state.personas, threshold=settings.persona_match_threshold)
    app.state.tools = build_tool_registry(settings, filesystem)
    app.state.orchestrator = AgentRunOrchestrator(
        app.state.agents,
        app.state.personas,
        app.state.scorer,
        app.state.memory,
        app.state.provider,
        app.state.tools,
        bus=app.state.bus,
        max_tool_steps=settings.max_tool_steps,
    )
    app.state.workflows = WorkflowEngine(app.state.db, app.state.memory)
    app.state.workflow_executor = WorkflowExecutor(app.state.workflows, app.state.orchestrator)

    app.add_exception_handler(NotFound, _error_response(404))
    app.add_exception_handler(ValidationError, _error_response(400))
    app.add_exception_handler(ProviderError, _error_response(502))
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("AGENTCORE_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "agentcore.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
