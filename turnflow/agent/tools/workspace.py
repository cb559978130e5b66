from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from turnflow.agent.models import ToolExecutionResult


_MAX_LISTED_ENTRIES = 500
_DEFAULT_READ_LIMIT = 20000


def _resolve_inside(root: Path, relative: object) -> Path:
    base = root.resolve()
    target = (base / str(relative or ".")).resolve()
    if target != base and base not in target.parents:
        raise PermissionError(f"permission denied: {relative} is outside the workspace")
    return target


@dataclass(frozen=True)
class ListFilesTool:
    root: Path
    name: str = "list_files"
    description: str = "List files under a workspace directory. Params: path (optional), recursive (bool)."
    required_params: tuple[str, ...] = ()

    async def run(
        self,
        params: dict[str, Any],
        *,
        metadata: dict[str, Any],
    ) -> ToolExecutionResult:
        del metadata
        target = _resolve_inside(self.root, params.get("path") or ".")
        if not target.is_dir():
            return ToolExecutionResult(success=False, error=f"not a directory: {params.get('path')}")
        recursive = bool(params.get("recursive", False))
        entries = await asyncio.to_thread(self._list, target, recursive)
        return ToolExecutionResult(
            success=True,
            data={
                "path": str(params.get("path") or "."),
                "files": entries,
                "truncated": len(entries) >= _MAX_LISTED_ENTRIES,
            },
        )

    def _list(self, target: Path, recursive: bool) -> list[str]:
        base = self.root.resolve()
        iterator = target.rglob("*") if recursive else target.iterdir()
        out: list[str] = []
        for path in sorted(iterator):
            if any(part.startswith(".") for part in path.relative_to(base).parts):
                continue
            suffix = "/" if path.is_dir() else ""
            out.append(path.relative_to(base).as_posix() + suffix)
            if len(out) >= _MAX_LISTED_ENTRIES:
                break
        return out


@dataclass(frozen=True)
class ReadFileTool:
    root: Path
    name: str = "read_file"
    description: str = "Read a text file from the workspace. Params: path, max_chars (optional)."
    required_params: tuple[str, ...] = ("path",)

    async def run(
        self,
        params: dict[str, Any],
        *,
        metadata: dict[str, Any],
    ) -> ToolExecutionResult:
        del metadata
        target = _resolve_inside(self.root, params.get("path"))
        if not target.is_file():
            return ToolExecutionResult(success=False, error=f"file not found: {params.get('path')}")
        try:
            limit = max(1, int(params.get("max_chars") or _DEFAULT_READ_LIMIT))
        except (TypeError, ValueError):
            limit = _DEFAULT_READ_LIMIT
        text = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
        return ToolExecutionResult(
            success=True,
            data={
                "path": str(params.get("path")),
                "content": text[:limit],
                "truncated": len(text) > limit,
            },
        )
