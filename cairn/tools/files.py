import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from cairn.constants import DEFAULT_READ_LINES, TOOL_OUTPUT_LIMIT
from cairn.permissions import Permission
from cairn.tools.core.base import Tool, ToolResult
from cairn.tools.core.context import ToolExecution
from cairn.tools.core.formatting import format_lines_with_pagination, truncate_output

IGNORED_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache", "dist", "build"})

READ_DESCRIPTION = (
    "Read a file from the local filesystem. Output is prefixed with line numbers. "
    "For large files, use offset and limit to read in chunks."
)

WRITE_DESCRIPTION = "Write content to a file, creating parent directories as needed. Overwrites existing files."

EDIT_DESCRIPTION = (
    "Perform an exact string replacement in a file. old_string must match exactly, including "
    "whitespace and indentation, and must be unique unless replace_all is set."
)

LS_DESCRIPTION = "List the contents of a directory. Directories are shown with a trailing slash."


class ReadInput(BaseModel):
    file_path: str = Field(description="Path to the file (relative to the working directory or absolute)")
    offset: int = Field(default=1, ge=1, description="Line number to start from (1-based)")
    limit: int = Field(default=DEFAULT_READ_LINES, ge=1, description=f"Maximum lines to read (default: {DEFAULT_READ_LINES})")


class ReadTool(Tool):
    name = "read"
    description = READ_DESCRIPTION
    permission = Permission.READ
    input_model = ReadInput

    def target(self, execution: ToolExecution, file_path: str = "", **kwargs: Any) -> str | None:
        return execution.resolve_path(file_path)

    async def execute(
        self,
        execution: ToolExecution,
        file_path: str,
        offset: int = 1,
        limit: int = DEFAULT_READ_LINES,
        **kwargs: Any,
    ) -> ToolResult:
        path = Path(execution.resolve_path(file_path))
        if not path.exists():
            return ToolResult.error(f"File not found: {file_path}", preview="Not found")
        if not path.is_file():
            return ToolResult.error(f"Path is a directory, not a file: {file_path}. Use ls instead.", preview="Not a file")

        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except PermissionError:
            return ToolResult.error(f"Permission denied: {file_path}", preview="Denied")

        formatted = format_lines_with_pagination(content, offset, limit)
        lines = content.count("\n") + 1
        return ToolResult(output=truncate_output(formatted, TOOL_OUTPUT_LIMIT), preview=f"Read {lines} lines")


class WriteInput(BaseModel):
    file_path: str = Field(description="Path to the file to write")
    content: str = Field(description="The full content to write")


class WriteTool(Tool):
    name = "write"
    description = WRITE_DESCRIPTION
    permission = Permission.WRITE
    input_model = WriteInput

    def target(self, execution: ToolExecution, file_path: str = "", **kwargs: Any) -> str | None:
        return execution.resolve_path(file_path)

    async def execute(self, execution: ToolExecution, file_path: str, content: str, **kwargs: Any) -> ToolResult:
        path = Path(execution.resolve_path(file_path))
        if path.is_dir():
            return ToolResult.error(f"Path is a directory: {file_path}", preview="Is a directory")

        existed = path.exists()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

        lines = content.count("\n") + 1 if content else 0
        verb = "Overwrote" if existed else "Created"
        return ToolResult(
            output=f"{verb} {path} ({lines} lines)",
            preview=f"{verb} {lines} lines",
            metadata={"path": str(path), "lines": lines, "created": not existed},
        )


class EditInput(BaseModel):
    file_path: str = Field(description="Path to the file to edit")
    old_string: str = Field(description="The exact text to replace")
    new_string: str = Field(description="The text to replace it with")
    replace_all: bool = Field(default=False, description="Replace all occurrences of old_string")


class EditTool(Tool):
    name = "edit"
    description = EDIT_DESCRIPTION
    permission = Permission.EDIT
    input_model = EditInput

    def target(self, execution: ToolExecution, file_path: str = "", **kwargs: Any) -> str | None:
        return execution.resolve_path(file_path)

    async def execute(
        self,
        execution: ToolExecution,
        file_path: str,
        old_string: str,
        new_string: str,
        replace_all: bool = False,
        **kwargs: Any,
    ) -> ToolResult:
        if old_string == new_string:
            return ToolResult.error("old_string and new_string are identical. No changes needed.", preview="No-op")

        path = Path(execution.resolve_path(file_path))
        if not path.is_file():
            return ToolResult.error(f"File not found: {file_path}", preview="Not found")

        content = path.read_text(encoding="utf-8")
        occurrences = content.count(old_string)
        if occurrences == 0:
            preview = "\n".join(f"{i + 1}: {line}" for i, line in enumerate(content.split("\n")[:10]))
            return ToolResult.error(
                f"Could not find the specified text in the file.\n\nSearched for:\n{old_string[:200]}"
                f"\n\nFile preview (first 10 lines):\n{preview}",
                preview="Not found",
            )
        if occurrences > 1 and not replace_all:
            return ToolResult.error(
                f"Found {occurrences} occurrences of the text. Provide more context in old_string "
                "to make it unique, or set replace_all.",
                preview="Ambiguous",
            )

        if replace_all:
            updated, replaced = content.replace(old_string, new_string), occurrences
        else:
            updated, replaced = content.replace(old_string, new_string, 1), 1
        path.write_text(updated, encoding="utf-8")

        old_lines = old_string.count("\n") + 1
        new_lines = new_string.count("\n") + 1
        diff = new_lines - old_lines
        suffix = "s" if replaced > 1 else ""
        return ToolResult(
            output=f"Edited {path}\nReplaced {replaced} occurrence{suffix}\nLines: {old_lines} -> {new_lines} ({diff:+d})",
            preview=f"Replaced {replaced} occurrence{suffix}",
            metadata={"path": str(path), "replacements": replaced},
        )


class LsInput(BaseModel):
    path: str = Field(default=".", description="Directory to list (default: working directory)")
    show_hidden: bool = Field(default=False, description="Include dotfiles")


class LsTool(Tool):
    name = "ls"
    description = LS_DESCRIPTION
    permission = Permission.READ
    input_model = LsInput

    def target(self, execution: ToolExecution, path: str = ".", **kwargs: Any) -> str | None:
        return execution.resolve_path(path)

    async def execute(self, execution: ToolExecution, path: str = ".", show_hidden: bool = False, **kwargs: Any) -> ToolResult:
        directory = execution.resolve_path(path)
        if not os.path.isdir(directory):
            return ToolResult.error(f"Not a directory: {path}", preview="Not a directory")

        entries = []
        with os.scandir(directory) as it:
            for entry in it:
                if not show_hidden and entry.name.startswith("."):
                    continue
                if entry.is_dir() and entry.name in IGNORED_DIRS:
                    continue
                entries.append((not entry.is_dir(), entry.name.lower(), entry.name + ("/" if entry.is_dir() else "")))

        if not entries:
            return ToolResult(output=f"{directory} is empty", preview="Empty")

        entries.sort()
        listing = "\n".join(name for _, _, name in entries)
        return ToolResult(
            output=truncate_output(f"{directory}\n{listing}", TOOL_OUTPUT_LIMIT),
            preview=f"{len(entries)} entries",
        )
