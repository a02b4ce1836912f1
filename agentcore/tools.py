import abc
import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import SandboxPermissionError, ToolExecutionError

logger = logging.getLogger("uvicorn.error")


class Tool(abc.ABC):
    """A capability the model can call by name with JSON arguments."""

    name: str = ""
    description: str = ""
    Params: Type[BaseModel] = BaseModel

    def parameters(self) -> Dict[str, Any]:
        schema = self.Params.model_json_schema()
        schema.pop("title", None)
        return schema

    def spec(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters(),
            },
        }

    @abc.abstractmethod
    async def run(self, params: Any) -> Dict[str, Any]:
        raise NotImplementedError


def tool_error(message: str, **extra: Any) -> Dict[str, Any]:
    return {"success": False, "error": message, **extra}


def serialize_result(result: Any) -> str:
    return json.dumps(result, ensure_ascii=True, default=str)


class ToolRegistry:
    def __init__(self, tools: Optional[Iterable[Tool]] = None, timeout_s: float = 30.0):
        self.timeout_s = timeout_s
        self._tools: Dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if not tool.name:
            raise ValueError("Tool name required")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return sorted(self._tools)

    def specs(self, names: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        selected = self.names() if names is None else [n for n in names if n in self._tools]
        return [self._tools[name].spec() for name in selected]

    async def dispatch(self, name: str, arguments: Any, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Run a tool; every failure comes back as a ``{"success": False}`` result."""
        tool = self._tools.get(name)
        if tool is None:
            return tool_error(f"Unknown tool: {name}")
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except ValueError as exc:
                return tool_error(f"Invalid JSON arguments: {exc}")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            return tool_error("Tool arguments must be a JSON object")
        try:
            params = tool.Params(**arguments)
        except PydanticValidationError as exc:
            return tool_error(f"Invalid parameters: {exc.errors(include_url=False)}")
        limit = timeout if timeout is not None else self.timeout_s
        try:
            return await asyncio.wait_for(tool.run(params), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %ss", name, limit)
            return tool_error("timeout", error_type="TimeoutError")
        except SandboxPermissionError as exc:
            logger.warning("Tool %s rejected path: %s", name, exc)
            return tool_error(str(exc), error_type="PermissionError")
        except ToolExecutionError as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return tool_error(str(exc))
        except Exception as exc:
            logger.warning("Tool %s raised %s: %s", name, type(exc).__name__, exc)
            return tool_error(f"{type(exc).__name__}: {exc}")
