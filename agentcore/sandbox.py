import asyncio
import json
import logging
import os
import re
import signal
import sys
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .errors import SandboxTimeout
from .tools import Tool, tool_error

logger = logging.getLogger("uvicorn.error")

RESULT_MARKER = "\x00__sandbox_result__\x00"

# Runs inside a fresh ``python -I`` process. The snippet arrives as JSON on
# stdin; its prints are buffered and the verdict is written after a marker so
# stray writes to fd 1 cannot corrupt it.
RUNNER = r"""
import ast, contextlib, io, json, os, sys

def main():
    code = json.loads(sys.stdin.read())["code"]
    buffer = io.StringIO()
    namespace = {"__name__": "__sandbox__", "__builtins__": __builtins__}
    try:
        tree = ast.parse(code, "<sandbox>", "exec")
        tail = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            tail = ast.Expression(tree.body.pop().value)
        with contextlib.redirect_stdout(buffer), contextlib.redirect_stderr(buffer):
            exec(compile(tree, "<sandbox>", "exec"), namespace)
            value = eval(compile(tail, "<sandbox>", "eval"), namespace) if tail is not None else None
        response = {"success": True, "output": buffer.getvalue()}
        if value is not None:
            response["result"] = str(value)
    except BaseException as exc:
        response = {"success": False, "error": f"{type(exc).__name__}: {exc}", "output": buffer.getvalue()}
    sys.__stdout__.write(MARKER + json.dumps(response))
    sys.__stdout__.flush()
    # Exit without waiting for threads the snippet left running.
    os._exit(0)

main()
"""


class CodeSandbox:
    """Execute Python snippets in throwaway interpreter processes.

    Each call gets its own process, so snippets never share globals with
    each other or with the host. A semaphore bounds how many run at once.
    """

    def __init__(
        self,
        timeout_s: float = 10.0,
        max_concurrency: int = 4,
        max_output_chars: int = 20000,
        python_executable: Optional[str] = None,
    ):
        self.timeout_s = timeout_s
        self.max_output_chars = max_output_chars
        self.python_executable = python_executable or sys.executable
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._runner = f"MARKER = {RESULT_MARKER!r}\n{RUNNER}"

    async def execute(self, code: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        if not isinstance(code, str):
            return tool_error("code must be a string")
        limit = timeout if timeout is not None else self.timeout_s
        payload = json.dumps({"code": code}).encode("utf-8")
        async with self._semaphore:
            try:
                proc = await asyncio.create_subprocess_exec(
                    self.python_executable,
                    "-I",
                    "-c",
                    self._runner,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                )
            except OSError as exc:
                logger.warning("Sandbox failed to start: %s", exc)
                return tool_error(f"Failed to start sandbox: {exc}")
            try:
                stdout, stderr = await self._communicate(proc, payload, limit)
            except SandboxTimeout as exc:
                logger.warning("%s", exc)
                return tool_error("timeout", error_type="TimeoutError")
        return self._parse(stdout, stderr, proc.returncode)

    async def _communicate(self, proc: asyncio.subprocess.Process, payload: bytes, limit: float):
        try:
            return await asyncio.wait_for(proc.communicate(payload), timeout=limit)
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise SandboxTimeout(f"Sandbox timed out after {limit}s") from None
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

    def _parse(self, stdout: bytes, stderr: bytes, returncode: Optional[int]) -> Dict[str, Any]:
        text = stdout.decode("utf-8", errors="replace")
        idx = text.rfind(RESULT_MARKER)
        if idx < 0:
            detail = stderr.decode("utf-8", errors="replace").strip().splitlines()
            reason = detail[-1] if detail else f"exit code {returncode}"
            return tool_error(f"Sandbox exited without a result: {reason}")
        try:
            response = json.loads(text[idx + len(RESULT_MARKER):])
        except ValueError:
            return tool_error("Sandbox returned malformed output")
        stray = text[:idx]
        output = stray + str(response.get("output") or "")
        if len(output) > self.max_output_chars:
            output = output[: self.max_output_chars]
            response["truncated"] = True
        response["output"] = output
        if not response.get("success") and not output:
            response.pop("output", None)
        return response

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        """Kill the snippet's whole process group, including anything it spawned."""
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, signal.SIGKILL)
            elif proc.returncode is None:
                proc.kill()
        except ProcessLookupError:
            pass
        if proc.returncode is None:
            await proc.wait()


EXECUTE_LANGUAGES = ("python", "javascript", "shell")
ANALYZE_LANGUAGES = (
    "python",
    "javascript",
    "typescript",
    "java",
    "c",
    "cpp",
    "csharp",
    "go",
    "ruby",
    "php",
)
DANGEROUS_PATTERNS: Dict[str, List["re.Pattern[str]"]] = {
    "python": [re.compile(p) for p in (r"eval\(", r"exec\(", r"os\.system\(", r"subprocess")],
    "javascript": [re.compile(p) for p in (r"eval\(", r"new Function\(", r"setTimeout\(", r"setInterval\(")],
}


class CodeExecuteParams(BaseModel):
    code: str
    language: Literal["python", "javascript", "shell"] = "python"
    timeout: int = Field(default=10, ge=1, le=30, description="Wall-clock limit in seconds")


class CodeExecuteTool(Tool):
    name = "CodeExecute"
    description = "Execute Python code in an isolated interpreter process and return its output"
    Params = CodeExecuteParams

    def __init__(self, sandbox: CodeSandbox):
        self.sandbox = sandbox

    async def run(self, params: CodeExecuteParams) -> Dict[str, Any]:
        if params.language != "python":
            return tool_error(f"Execution of {params.language} is not implemented")
        return await self.sandbox.execute(params.code, timeout=float(params.timeout))


class CodeAnalyzeParams(BaseModel):
    code: str
    language: Literal[ANALYZE_LANGUAGES] = "python"  # type: ignore[valid-type]
    analysis: List[Literal["complexity", "security", "style", "performance"]] = Field(
        default_factory=lambda: ["complexity", "security"]
    )


def analyze_complexity(code: str) -> Dict[str, Any]:
    lines = code.split("\n")
    nesting = 0
    for line in lines:
        stripped = line.lstrip()
        if not stripped:
            continue
        indent = len(line.expandtabs(4)) - len(stripped)
        nesting = max(nesting, indent // 4)
    return {
        "lines": len(lines),
        "nestingLevel": nesting,
        "assessment": "High complexity" if nesting > 5 else "Acceptable",
    }


def analyze_security(code: str, language: str) -> Dict[str, Any]:
    issues = []
    for pattern in DANGEROUS_PATTERNS.get(language, []):
        count = len(pattern.findall(code))
        if count:
            issues.append({"pattern": pattern.pattern, "count": count})
    return {
        "issues": issues,
        "assessment": "Potential issues found" if issues else "No obvious issues",
    }


class CodeAnalyzeTool(Tool):
    name = "CodeAnalyze"
    description = "Analyse code for complexity and dangerous calls without running it"
    Params = CodeAnalyzeParams

    async def run(self, params: CodeAnalyzeParams) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        if "complexity" in params.analysis:
            results["complexity"] = analyze_complexity(params.code)
        if "security" in params.analysis:
            results["security"] = analyze_security(params.code, params.language)
        return {
            "success": True,
            "language": params.language,
            "analysisTypes": list(params.analysis),
            "results": results,
        }
