"""
Workspace Tools

CLI 使用的工作区文件工具：read_file / write_file / list_files / delete_file。
所有路径都相对于工作区根目录，不允许越出根目录。
写入类工具的模式限制由 ToolPolicy 负责。
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

from agentwire.agent.runtime.tool_executor import ToolRegistry
from agentwire.system.services.logger import get_logger

logger = get_logger(__name__)


class WorkspaceTools:
    """绑定到一个根目录的文件工具"""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"Path escapes workspace: {path}")
        return target

    def read_file(self, files: List[Dict[str, Any]]) -> Dict[str, Any]:
        """读取一个或多个文件，可指定 1 起始的行范围"""
        results = []
        for entry in files:
            path = entry["path"]
            try:
                lines = self._resolve(path).read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError, ValueError) as e:
                results.append({"path": path, "success": False, "error": str(e)})
                continue
            start = max(int(entry.get("startLine") or 1), 1)
            end = int(entry.get("endLine") or len(lines))
            results.append({
                "path": path,
                "success": True,
                "content": "\n".join(lines[start - 1:end]),
                "lineCount": len(lines),
            })
        return {"success": any(r["success"] for r in results), "result": results}

    def write_file(self, files: List[Dict[str, Any]]) -> Dict[str, Any]:
        """写入一个或多个文件，父目录不存在时创建"""
        results = []
        for entry in files:
            path = entry["path"]
            try:
                target = self._resolve(path)
                action = "modified" if target.exists() else "created"
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(entry.get("content", ""), encoding="utf-8")
            except (OSError, ValueError) as e:
                results.append({"path": path, "success": False, "error": str(e)})
                continue
            logger.info(f"write_file: {path} ({action})")
            results.append({"path": path, "success": True, "action": action})
        return {"success": all(r["success"] for r in results), "result": results}

    def list_files(self, path: str = ".", recursive: bool = False) -> List[str]:
        """列出目录内容（目录以 / 结尾）"""
        base = self._resolve(path)
        pattern = "**/*" if recursive else "*"
        entries = []
        for item in sorted(base.glob(pattern)):
            relative = item.relative_to(self.root).as_posix()
            entries.append(relative + "/" if item.is_dir() else relative)
        return entries

    def delete_file(self, path: str) -> Dict[str, Any]:
        """删除单个文件"""
        target = self._resolve(path)
        if not target.is_file():
            return {"success": False, "error": f"Not a file: {path}"}
        target.unlink()
        logger.info(f"delete_file: {path}")
        return {"success": True, "result": {"path": path, "deleted": True}}


def register_workspace_tools(
    registry: ToolRegistry,
    root: Path,
    confirm_writes: bool = True,
) -> WorkspaceTools:
    """把工作区文件工具注册到工具注册表"""
    tools = WorkspaceTools(root)

    read_schema = {"type": "array", "items": {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "startLine": {"type": "integer", "description": "1-based, inclusive"},
            "endLine": {"type": "integer", "description": "1-based, inclusive"},
        },
        "required": ["path"],
    }}
    write_schema = {"type": "array", "items": {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "content": {"type": "string"},
        },
        "required": ["path", "content"],
    }}

    registry.register(
        "read_file",
        tools.read_file,
        description="Read one or more files from the workspace.",
        parameters={"type": "object", "properties": {"files": read_schema}, "required": ["files"]},
    )
    registry.register(
        "write_file",
        tools.write_file,
        description="Create or overwrite one or more files in the workspace.",
        parameters={"type": "object", "properties": {"files": write_schema}, "required": ["files"]},
        requires_confirmation=confirm_writes,
    )
    registry.register(
        "list_files",
        tools.list_files,
        description="List the entries of a workspace directory.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory relative to the workspace root"},
                "recursive": {"type": "boolean"},
            },
        },
    )
    registry.register(
        "delete_file",
        tools.delete_file,
        description="Delete a file from the workspace.",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
        requires_confirmation=confirm_writes,
    )
    return tools
