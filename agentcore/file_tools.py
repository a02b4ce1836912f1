import asyncio
import base64
import os
import re
import stat
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .errors import SandboxPermissionError, ToolExecutionError
from .tools import Tool, tool_error

Encoding = Literal["utf8", "ascii", "latin1", "base64"]
_CODECS = {"utf8": "utf-8", "ascii": "ascii", "latin1": "latin-1"}


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class LocalFileSystem:
    """Blocking filesystem calls pushed onto worker threads."""

    async def realpath(self, path: str) -> str:
        return await asyncio.to_thread(os.path.realpath, path)

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(os.path.exists, path)

    async def read_bytes(self, path: str) -> bytes:
        def _read() -> bytes:
            with open(path, "rb") as handle:
                return handle.read()

        return await asyncio.to_thread(_read)

    async def write_bytes(self, path: str, data: bytes, append: bool = False) -> None:
        def _write() -> None:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "ab" if append else "wb") as handle:
                handle.write(data)

        await asyncio.to_thread(_write)

    async def list_files(self, path: str, recursive: bool) -> List[str]:
        def _walk() -> List[str]:
            found: List[str] = []
            if recursive:
                for current, dirs, files in os.walk(path):
                    dirs.sort()
                    found.extend(os.path.join(current, name) for name in sorted(files))
            else:
                with os.scandir(path) as entries:
                    found.extend(sorted(e.path for e in entries if e.is_file()))
            return found

        return await asyncio.to_thread(_walk)

    async def stat(self, path: str) -> os.stat_result:
        return await asyncio.to_thread(os.stat, path)


def resolve_within_root(root: str, user_path: str) -> str:
    """Join ``user_path`` onto ``root`` and reject anything outside it.

    Purely lexical: no filesystem call is made, so a rejected path never
    reaches the filesystem layer.
    """
    if not isinstance(user_path, str) or not user_path.strip() or "\x00" in user_path:
        raise SandboxPermissionError("Invalid path")
    resolved = os.path.normpath(os.path.join(root, user_path))
    if os.path.commonpath([root, resolved]) != root:
        raise SandboxPermissionError("Access outside permitted FILE_ROOT")
    return resolved


class FileSandbox:
    """Path policy plus I/O for the file tools, rooted at one directory."""

    def __init__(self, root: str, fs: Optional[Any] = None):
        self.root = os.path.realpath(os.path.abspath(root))
        self.fs = fs or LocalFileSystem()

    async def resolve(self, user_path: str) -> str:
        resolved = resolve_within_root(self.root, user_path)
        # Lexical check passed; now make sure symlinks do not lead back out.
        # I/O uses the checked real path, never the lexical one.
        real = await self.fs.realpath(resolved)
        if os.path.commonpath([self.root, real]) != self.root:
            raise SandboxPermissionError("Access outside permitted FILE_ROOT")
        return real

    def relative(self, path: str) -> str:
        rel = os.path.relpath(path, self.root)
        return "." if rel == "." else rel.replace(os.sep, "/")


class FileReadParams(BaseModel):
    filePath: str = Field(description="Path of the file to read, relative to the file root")
    encoding: Encoding = "utf8"


class FileWriteParams(BaseModel):
    filePath: str = Field(description="Path of the file to write, relative to the file root")
    content: str
    encoding: Encoding = "utf8"
    append: bool = Field(default=False, description="Append instead of overwrite")


class FileListParams(BaseModel):
    directoryPath: str = Field(default=".", description="Directory path, relative to the file root")
    recursive: bool = False
    pattern: Optional[str] = Field(default=None, description="Optional regex filter on relative paths")


class FileInfoParams(BaseModel):
    filePath: str = Field(description="Path to inspect, relative to the file root")


class _FileTool(Tool):
    def __init__(self, sandbox: FileSandbox):
        self.sandbox = sandbox


class FileReadTool(_FileTool):
    name = "FileRead"
    description = "Read file content"
    Params = FileReadParams

    async def run(self, params: FileReadParams) -> Dict[str, Any]:
        path = await self.sandbox.resolve(params.filePath)
        fs = self.sandbox.fs
        if not await fs.exists(path):
            return tool_error(f"File not found: {params.filePath}")
        data = await fs.read_bytes(path)
        if params.encoding == "base64":
            content = base64.b64encode(data).decode("ascii")
        else:
            try:
                content = data.decode(_CODECS[params.encoding])
            except UnicodeDecodeError as exc:
                raise ToolExecutionError(f"Cannot decode {params.filePath} as {params.encoding}: {exc}") from exc
        return {
            "success": True,
            "filePath": self.sandbox.relative(path),
            "content": content,
            "encoding": params.encoding,
        }


class FileWriteTool(_FileTool):
    name = "FileWrite"
    description = "Write or append to a file"
    Params = FileWriteParams

    async def run(self, params: FileWriteParams) -> Dict[str, Any]:
        path = await self.sandbox.resolve(params.filePath)
        if path == self.sandbox.root:
            return tool_error("Cannot write to the file root itself")
        if params.encoding == "base64":
            try:
                data = base64.b64decode(params.content, validate=True)
            except ValueError as exc:
                return tool_error(f"Invalid base64 content: {exc}")
        else:
            try:
                data = params.content.encode(_CODECS[params.encoding])
            except UnicodeEncodeError as exc:
                return tool_error(f"Cannot encode content as {params.encoding}: {exc}")
        await self.sandbox.fs.write_bytes(path, data, append=params.append)
        return {
            "success": True,
            "filePath": self.sandbox.relative(path),
            "operation": "append" if params.append else "write",
            "bytes": len(data),
        }


class FileListTool(_FileTool):
    name = "FileList"
    description = "List files in a directory"
    Params = FileListParams

    async def run(self, params: FileListParams) -> Dict[str, Any]:
        directory = await self.sandbox.resolve(params.directoryPath)
        try:
            matcher = re.compile(params.pattern) if params.pattern else None
        except re.error as exc:
            return tool_error(f"Invalid pattern: {exc}")
        fs = self.sandbox.fs
        if not await fs.exists(directory):
            return tool_error("Directory does not exist")
        files = []
        for full in await fs.list_files(directory, params.recursive):
            rel = self.sandbox.relative(full)
            if matcher and not matcher.search(rel):
                continue
            name = os.path.basename(full)
            files.append({"path": rel, "name": name, "extension": os.path.splitext(name)[1]})
        return {
            "success": True,
            "directoryPath": self.sandbox.relative(directory),
            "files": files,
            "count": len(files),
        }


class FileInfoTool(_FileTool):
    name = "FileInfo"
    description = "Get detailed file information"
    Params = FileInfoParams

    async def run(self, params: FileInfoParams) -> Dict[str, Any]:
        path = await self.sandbox.resolve(params.filePath)
        fs = self.sandbox.fs
        if not await fs.exists(path):
            return tool_error(f"File not found: {params.filePath}")
        stats = await fs.stat(path)
        name = os.path.basename(path)
        return {
            "success": True,
            "filePath": self.sandbox.relative(path),
            "name": name,
            "directory": self.sandbox.relative(os.path.dirname(path)),
            "extension": os.path.splitext(name)[1],
            "size": stats.st_size,
            "isFile": stat.S_ISREG(stats.st_mode),
            "isDirectory": stat.S_ISDIR(stats.st_mode),
            "created": _iso(stats.st_ctime),
            "modified": _iso(stats.st_mtime),
            "accessed": _iso(stats.st_atime),
        }


def file_tools(sandbox: FileSandbox) -> List[Tool]:
    return [FileReadTool(sandbox), FileWriteTool(sandbox), FileListTool(sandbox), FileInfoTool(sandbox)]
