from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from agentcore.config import AppSettings
from agentcore.db import Database
from agentcore.main import build_tool_registry, create_app
from agentcore.memory_store import MemoryThreadStore
from agentcore.orchestrator import AgentRunOrchestrator, EventBus
from agentcore.personas import PersonaScorer
from agentcore.registry import AgentRegistry, PersonaLibrary
from agentcore.workflows import WorkflowEngine
from tests.fakes import FakeChatClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    base_url = overrides.pop("base_url", "http://lm.test/v1")
    settings = AppSettings(
        provider_base_url=base_url,
        default_model="test-model",
        max_output_tokens=4096,
        database_path=str(tmp_path / "test.db"),
        file_root=str(tmp_path / "files"),
        host="127.0.0.1",
        port=8000,
        sandbox_timeout_s=5.0,
        tool_timeout_s=10.0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "core.db"))
    await database.init()
    return database


@pytest.fixture
def memory(db: Database) -> MemoryThreadStore:
    return MemoryThreadStore(db)


@pytest.fixture
def agents(db: Database) -> AgentRegistry:
    return AgentRegistry(db)


@pytest.fixture
def personas(db: Database) -> PersonaLibrary:
    return PersonaLibrary(db)


@pytest.fixture
def scorer(db: Database, personas: PersonaLibrary) -> PersonaScorer:
    return PersonaScorer(db, personas, threshold=0.1)


@pytest.fixture
def workflows(db: Database, memory: MemoryThreadStore) -> WorkflowEngine:
    return WorkflowEngine(db, memory)


@pytest.fixture
def make_orchestrator(tmp_path: Path, db, memory, agents, personas, scorer):
    def _factory(provider: FakeChatClient, max_tool_steps: int = 5, filesystem=None):
        settings = make_settings(tmp_path)
        Path(settings.file_root).mkdir(parents=True, exist_ok=True)
        tools = build_tool_registry(settings, filesystem)
        return AgentRunOrchestrator(
            agents,
            personas,
            scorer,
            memory,
            provider,
            tools,
            bus=EventBus(db),
            max_tool_steps=max_tool_steps,
        )

    return _factory


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        provider: FakeChatClient | None = None,
        config_path: Path | None = None,
        filesystem=None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        fake = provider or FakeChatClient()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, provider=fake, filesystem=filesystem, config_path=cfg_path)
        return app, cfg_path, fake

    return _factory


@pytest.fixture
async def client(app_factory):
    app, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
            yield http
