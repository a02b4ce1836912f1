import json
import logging
import re
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from .db import Database, _json_dumps, _json_loads, utc_now
from .errors import NotFound, ValidationError
from .schemas import Agent, Persona

logger = logging.getLogger("uvicorn.error")

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")
AGENT_FIELDS = {"name", "description", "model", "temperature", "max_tokens", "system_prompt", "persona_id", "tools"}
PERSONA_FIELDS = {"name", "description", "traits", "system_prompt_template", "model_settings"}


def _agent_from_row(row: Any) -> Agent:
    return Agent(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        model=row["model"],
        temperature=row["temperature"] if row["temperature"] is not None else 0.7,
        max_tokens=row["max_tokens"] or 1024,
        system_prompt=row["system_prompt"],
        persona_id=row["persona_id"],
        tools=_json_loads(row["tools_json"], []),
    )


def _persona_from_row(row: Any) -> Persona:
    return Persona(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        traits=_json_loads(row["traits_json"], {}),
        system_prompt_template=row["system_prompt_template"],
        model_settings=_json_loads(row["model_settings_json"], {}),
    )


def render_template(template: str, context: Dict[str, Any]) -> str:
    """Substitute ``{{key}}`` placeholders; unknown keys are left as written."""

    def replace(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key not in context:
            return match.group(0)
        value = context[key]
        if isinstance(value, (list, tuple)):
            return ", ".join(str(v) for v in value)
        return str(value)

    return _PLACEHOLDER_RE.sub(replace, template)


class AgentRegistry:
    def __init__(self, db: Database):
        self.db = db

    async def create_agent(self, agent: Agent) -> Agent:
        now = utc_now()
        await self.db.execute(
            "INSERT INTO agents(id, name, description, model, temperature, max_tokens, system_prompt, persona_id, tools_json, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?,?,?,?,?) "
            "ON CONFLICT(id) DO UPDATE SET name=excluded.name, description=excluded.description, model=excluded.model, "
            "temperature=excluded.temperature, max_tokens=excluded.max_tokens, system_prompt=excluded.system_prompt, "
            "persona_id=excluded.persona_id, tools_json=excluded.tools_json, updated_at=excluded.updated_at",
            (
                agent.id,
                agent.name,
                agent.description,
                agent.model,
                agent.temperature,
                agent.max_tokens,
                agent.system_prompt,
                agent.persona_id,
                _json_dumps(list(agent.tools)),
                now,
                now,
            ),
        )
        return agent

    async def get_agent(self, agent_id: str) -> Agent:
        row = await self.db.fetchone("SELECT * FROM agents WHERE id=?", (agent_id,))
        if not row:
            raise NotFound(f"Agent not found: {agent_id}")
        return _agent_from_row(row)

    async def list_agents(self) -> List[Agent]:
        rows = await self.db.fetchall("SELECT * FROM agents ORDER BY id ASC")
        return [_agent_from_row(row) for row in rows]

    async def update_agent(self, agent_id: str, patch: Dict[str, Any]) -> Agent:
        unknown = set(patch) - AGENT_FIELDS
        if unknown:
            raise ValidationError(f"Unknown agent fields: {', '.join(sorted(unknown))}")
        current = await self.get_agent(agent_id)
        try:
            updated = Agent(**{**current.model_dump(), **patch})
        except PydanticValidationError as exc:
            raise ValidationError(str(exc)) from exc
        return await self.create_agent(updated)

    async def delete_agent(self, agent_id: str) -> bool:
        return await self.db.execute("DELETE FROM agents WHERE id=?", (agent_id,)) > 0


class PersonaLibrary:
    """Persona reference data. Personas are immutable once referenced by runs; edits replace the row."""

    def __init__(self, db: Database):
        self.db = db

    async def create_persona(self, persona: Persona) -> Persona:
        now = utc_now()
        await self.db.execute(
            "INSERT INTO personas(id, name, description, traits_json, system_prompt_template, model_settings_json, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?,?) "
            "ON CONFLICT(id) DO UPDATE SET name=excluded.name, description=excluded.description, "
            "traits_json=excluded.traits_json, system_prompt_template=excluded.system_prompt_template, "
            "model_settings_json=excluded.model_settings_json, updated_at=excluded.updated_at",
            (
                persona.id,
                persona.name,
                persona.description,
                _json_dumps(persona.traits),
                persona.system_prompt_template,
                _json_dumps(persona.model_settings),
                now,
                now,
            ),
        )
        return persona

    async def get_persona(self, persona_id: str) -> Optional[Persona]:
        row = await self.db.fetchone("SELECT * FROM personas WHERE id=?", (persona_id,))
        return _persona_from_row(row) if row else None

    async def list_personas(self) -> List[Persona]:
        rows = await self.db.fetchall("SELECT * FROM personas ORDER BY id ASC")
        return [_persona_from_row(row) for row in rows]

    async def update_persona(self, persona_id: str, patch: Dict[str, Any]) -> Persona:
        unknown = set(patch) - PERSONA_FIELDS
        if unknown:
            raise ValidationError(f"Unknown persona fields: {', '.join(sorted(unknown))}")
        current = await self.get_persona(persona_id)
        if current is None:
            raise NotFound(f"Persona not found: {persona_id}")
        try:
            updated = Persona(**{**current.model_dump(), **patch})
        except PydanticValidationError as exc:
            raise ValidationError(str(exc)) from exc
        return await self.create_persona(updated)

    async def delete_persona(self, persona_id: str) -> bool:
        return await self.db.execute("DELETE FROM personas WHERE id=?", (persona_id,)) > 0

    async def load_directory(self, directory: str) -> List[Persona]:
        path = Path(directory)
        if not path.is_dir():
            logger.warning("Persona directory not found: %s", directory)
            return []
        loaded: List[Persona] = []
        for file in sorted(path.glob("*.json")):
            try:
                payload = json.loads(file.read_text(encoding="utf-8"))
                persona = Persona(**payload)
            except (OSError, ValueError, TypeError) as exc:
                logger.warning("Skipping persona file %s: %s", file.name, exc)
                continue
            loaded.append(await self.create_persona(persona))
        return loaded

    def render_system_prompt(self, persona: Persona, context: Dict[str, Any]) -> Optional[str]:
        if not persona.system_prompt_template:
            return None
        return render_template(persona.system_prompt_template, context)


def new_agent_id() -> str:
    return f"agent-{uuid.uuid4().hex[:12]}"
