import logging
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .db import Database, _json_dumps, _json_loads, utc_now
from .errors import AgentCoreError, NotFound, ValidationError
from .memory_store import MemoryThreadStore

logger = logging.getLogger("uvicorn.error")

WORKFLOW_STATUSES = {"pending", "running", "completed", "failed", "paused"}
STEP_STATUSES = {"pending", "running", "completed", "failed"}
WORKFLOW_PATCH_FIELDS = {"name", "description", "metadata", "status", "current_step_index"}


def _step_from_row(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "workflow_id": row["workflow_id"],
        "position": row["position"],
        "agent_id": row["agent_id"],
        "input": row["input"],
        "thread_id": row["thread_id"],
        "status": row["status"],
        "result": row["result"],
        "error": row["error"],
        "metadata": _json_loads(row["metadata_json"], {}),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _workflow_from_row(row: Any, steps: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "description": row["description"],
        "status": row["status"],
        "current_step_index": row["current_step_index"] or 0,
        "metadata": _json_loads(row["metadata_json"], {}),
        "steps": steps,
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _normalize_step(step: Any) -> Dict[str, Any]:
    if isinstance(step, BaseModel):
        step = step.model_dump()
    if not isinstance(step, dict):
        raise ValidationError("Workflow step must be an object")
    agent_id = step.get("agent_id") or step.get("agentId")
    if not isinstance(agent_id, str) or not agent_id.strip():
        raise ValidationError("Workflow step requires agent_id")
    step_input = step.get("input")
    if step_input is not None and not isinstance(step_input, str):
        raise ValidationError("Workflow step input must be a string")
    metadata = step.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("Workflow step metadata must be an object")
    return {
        "agent_id": agent_id,
        "input": step_input,
        "thread_id": step.get("thread_id") or step.get("threadId"),
        "metadata": metadata,
    }


def _validate_page(limit: Any, offset: Any) -> None:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ValidationError(f"limit must be a positive integer, got {limit!r}")
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise ValidationError(f"offset must be a non-negative integer, got {offset!r}")


class WorkflowEngine:
    """Durable, ordered representation of multi-step agent plans.

    The engine never runs steps itself; see ``WorkflowExecutor``.
    """

    def __init__(self, db: Database, memory: MemoryThreadStore):
        self.db = db
        self.memory = memory

    async def create_workflow(
        self,
        name: str,
        description: Optional[str] = None,
        steps: Optional[List[Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Workflow name is required")
        normalized = [_normalize_step(step) for step in steps or []]
        workflow_id = uuid.uuid4().hex
        now = utc_now()
        await self.db.execute(
            "INSERT INTO workflows(id, name, description, status, current_step_index, metadata_json, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?,?)",
            (workflow_id, name, description, "pending", 0, _json_dumps(metadata or {}), now, now),
        )
        for step in normalized:
            await self.add_step(workflow_id, step)
        return await self._require(workflow_id)

    async def add_step(self, workflow_id: str, step: Any) -> Dict[str, Any]:
        normalized = _normalize_step(step)
        await self._require(workflow_id)
        thread_id = normalized["thread_id"]
        if not thread_id:
            thread = await self.memory.create_thread(
                f"Workflow {workflow_id} step", metadata={"workflow_id": workflow_id}
            )
            thread_id = thread["id"]
        now = utc_now()
        async with self.db.transaction() as db:
            cursor = await db.execute("SELECT 1 FROM workflows WHERE id=?", (workflow_id,))
            exists = await cursor.fetchone()
            await cursor.close()
            if not exists:
                raise NotFound(f"Workflow not found: {workflow_id}")
            cursor = await db.execute(
                "SELECT COUNT(*) AS n FROM workflow_steps WHERE workflow_id=?", (workflow_id,)
            )
            row = await cursor.fetchone()
            await cursor.close()
            position = int(row["n"])
            await db.execute(
                "INSERT INTO workflow_steps(id, workflow_id, position, agent_id, input, thread_id, status, result, error, "
                "metadata_json, created_at, updated_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    uuid.uuid4().hex,
                    workflow_id,
                    position,
                    normalized["agent_id"],
                    normalized["input"],
                    thread_id,
                    "pending",
                    None,
                    None,
                    _json_dumps(normalized["metadata"]),
                    now,
                    now,
                ),
            )
            await db.execute("UPDATE workflows SET updated_at=? WHERE id=?", (now, workflow_id))
        return await self._require(workflow_id)

    async def get_workflow(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        row = await self.db.fetchone("SELECT * FROM workflows WHERE id=?", (workflow_id,))
        if not row:
            return None
        return _workflow_from_row(row, await self._steps(workflow_id))

    async def list_workflows(self, limit: int = 10, offset: int = 0) -> List[Dict[str, Any]]:
        _validate_page(limit, offset)
        rows = await self.db.fetchall(
            "SELECT * FROM workflows ORDER BY updated_at DESC, id ASC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [_workflow_from_row(row, await self._steps(row["id"])) for row in rows]

    async def update_workflow(self, workflow_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(patch) - WORKFLOW_PATCH_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update workflow fields: {', '.join(sorted(unknown))}")
        if "status" in patch and patch["status"] not in WORKFLOW_STATUSES:
            raise ValidationError(f"Unknown workflow status: {patch['status']}")
        if "name" in patch and (not isinstance(patch["name"], str) or not patch["name"].strip()):
            raise ValidationError("Workflow name is required")
        if "metadata" in patch and not isinstance(patch["metadata"], dict):
            raise ValidationError("Workflow metadata must be an object")
        index = patch.get("current_step_index")
        if "current_step_index" in patch and (isinstance(index, bool) or not isinstance(index, int) or index < 0):
            raise ValidationError("current_step_index must be a non-negative integer")
        await self._require(workflow_id)
        columns: List[str] = []
        params: List[Any] = []
        for key in ("name", "description", "status", "current_step_index"):
            if key in patch:
                columns.append(f"{key}=?")
                params.append(patch[key])
        if "metadata" in patch:
            columns.append("metadata_json=?")
            params.append(_json_dumps(patch["metadata"]))
        columns.append("updated_at=?")
        params.append(utc_now())
        params.append(workflow_id)
        await self.db.execute(f"UPDATE workflows SET {', '.join(columns)} WHERE id=?", tuple(params))
        return await self._require(workflow_id)

    async def delete_workflow(self, workflow_id: str) -> bool:
        async with self.db.transaction() as db:
            cursor = await db.execute("DELETE FROM workflows WHERE id=?", (workflow_id,))
            deleted = cursor.rowcount > 0
            await cursor.close()
            await db.execute("DELETE FROM workflow_steps WHERE workflow_id=?", (workflow_id,))
        return deleted

    async def record_step_result(
        self,
        workflow_id: str,
        position: int,
        status: str,
        result: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        if status not in STEP_STATUSES:
            raise ValidationError(f"Unknown step status: {status}")
        now = utc_now()
        updated = await self.db.execute(
            "UPDATE workflow_steps SET status=?, result=?, error=?, updated_at=? WHERE workflow_id=? AND position=?",
            (status, result, error, now, workflow_id, position),
        )
        if not updated:
            raise NotFound(f"Workflow step not found: {workflow_id}#{position}")
        await self.db.execute("UPDATE workflows SET updated_at=? WHERE id=?", (now, workflow_id))
        return await self._require(workflow_id)

    async def _steps(self, workflow_id: str) -> List[Dict[str, Any]]:
        rows = await self.db.fetchall(
            "SELECT * FROM workflow_steps WHERE workflow_id=? ORDER BY position ASC", (workflow_id,)
        )
        return [_step_from_row(row) for row in rows]

    async def _require(self, workflow_id: str) -> Dict[str, Any]:
        workflow = await self.get_workflow(workflow_id)
        if workflow is None:
            raise NotFound(f"Workflow not found: {workflow_id}")
        return workflow


class WorkflowExecutor:
    """Drive a workflow by running one agent per step, in position order.

    Execution resumes at ``current_step_index``, so a failed or paused
    workflow picks up where it stopped. With ``chain_output`` a step that has
    no input of its own receives the previous step's output.
    """

    def __init__(self, engine: WorkflowEngine, orchestrator: Any):
        self.engine = engine
        self.orchestrator = orchestrator

    async def execute(self, workflow_id: str, chain_output: bool = True) -> Dict[str, Any]:
        workflow = await self.engine.get_workflow(workflow_id)
        if workflow is None:
            raise NotFound(f"Workflow not found: {workflow_id}")
        steps = workflow["steps"]
        start = workflow["current_step_index"]
        if workflow["status"] == "paused" or (workflow["status"] == "completed" and start >= len(steps)):
            return workflow
        previous_output = steps[start - 1]["result"] if 0 < start <= len(steps) else None
        await self.engine.update_workflow(workflow_id, {"status": "running"})
        for step in steps[start:]:
            current = await self.engine.get_workflow(workflow_id)
            if current is None:
                raise NotFound(f"Workflow not found: {workflow_id}")
            if current["status"] == "paused":
                logger.info("Workflow %s paused before step %s", workflow_id, step["position"])
                return current
            step_input = step["input"]
            if not step_input and chain_output:
                step_input = previous_output
            position = step["position"]
            await self.engine.record_step_result(workflow_id, position, "running")
            logger.info("Workflow %s step %s -> agent %s", workflow_id, position, step["agent_id"])
            try:
                result = await self.orchestrator.run(step["agent_id"], step_input or "", thread_id=step["thread_id"])
            except AgentCoreError as exc:
                logger.warning("Workflow %s step %s failed: %s", workflow_id, position, exc)
                await self.engine.record_step_result(workflow_id, position, "failed", error=str(exc))
                return await self.engine.update_workflow(workflow_id, {"status": "failed"})
            except Exception as exc:
                logger.warning("Workflow %s step %s raised %s: %s", workflow_id, position, type(exc).__name__, exc)
                await self.engine.record_step_result(workflow_id, position, "failed", error=f"{type(exc).__name__}: {exc}")
                await self.engine.update_workflow(workflow_id, {"status": "failed"})
                raise
            await self.engine.record_step_result(workflow_id, position, "completed", result=result.output)
            await self.engine.update_workflow(workflow_id, {"current_step_index": position + 1})
            previous_output = result.output
        return await self.engine.update_workflow(workflow_id, {"status": "completed"})

    async def pause(self, workflow_id: str) -> Dict[str, Any]:
        return await self.engine.update_workflow(workflow_id, {"status": "paused"})

    async def resume(self, workflow_id: str) -> Dict[str, Any]:
        workflow = await self.engine.get_workflow(workflow_id)
        if workflow is None:
            raise NotFound(f"Workflow not found: {workflow_id}")
        if workflow["status"] != "paused":
            return workflow
        return await self.engine.update_workflow(workflow_id, {"status": "pending"})
