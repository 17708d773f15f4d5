import asyncio
import os
import re
from fnmatch import fnmatch
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from cairn.constants import GLOB_MAX_RESULTS, GREP_MAX_MATCHES
from cairn.permissions import Permission
from cairn.tools.core.base import Tool, ToolResult
from cairn.tools.core.context import ToolExecution
from cairn.tools.files import IGNORED_DIRS

BINARY_SUFFIXES = frozenset(
    {
        ".png", ".jpg", ".jpeg", ".gif", ".ico", ".webp", ".pdf", ".zip", ".gz", ".tar",
        ".so", ".dylib", ".dll", ".exe", ".bin", ".pyc", ".woff", ".woff2", ".ttf", ".mp3", ".mp4", ".sqlite", ".db",
    }
)  # fmt: skip

GLOB_DESCRIPTION = (
    'Find files matching a glob pattern such as "**/*.py" or "src/*.ts". '
    "Returns paths sorted by modification time, newest first."
)

GREP_DESCRIPTION = (
    "Search file contents with a regular expression. Returns matching lines as path:line: text. "
    "Use glob to restrict which files are searched."
)


def _walk_files(root: Path):
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in IGNORED_DIRS and not d.startswith(".")]
        for filename in filenames:
            yield Path(dirpath) / filename


def _matches_glob(file: Path, root: Path, glob: str) -> bool:
    if fnmatch(file.name, glob):
        return True
    rel = file.relative_to(root).as_posix() if file != root else file.name
    return fnmatch(rel, glob) or (glob.startswith("**/") and fnmatch(rel, glob[3:]))


class GlobInput(BaseModel):
    pattern: str = Field(description="Glob pattern relative to path")
    path: str = Field(default=".", description="Directory to search from (default: working directory)")


class GlobTool(Tool):
    name = "glob"
    description = GLOB_DESCRIPTION
    permission = Permission.READ
    input_model = GlobInput

    def target(self, execution: ToolExecution, path: str = ".", **kwargs: Any) -> str | None:
        return execution.resolve_path(path)

    async def execute(self, execution: ToolExecution, pattern: str, path: str = ".", **kwargs: Any) -> ToolResult:
        root = Path(execution.resolve_path(path))
        if not root.is_dir():
            return ToolResult.error(f"Not a directory: {path}", preview="Not a directory")

        files = await asyncio.to_thread(self._find, root, pattern)
        if not files:
            return ToolResult(output=f"No files found matching: {pattern}", preview="0 files")

        shown = files[:GLOB_MAX_RESULTS]
        output = "\n".join(str(f) for f in shown)
        if len(files) > GLOB_MAX_RESULTS:
            output += f"\n\n... {len(files) - GLOB_MAX_RESULTS} more files"
        return ToolResult(output=output, preview=f"{len(files)} files", metadata={"count": len(files)})

    def _find(self, root: Path, pattern: str) -> list[Path]:
        matches = []
        for file in root.glob(pattern):
            if not file.is_file():
                continue
            if any(part in IGNORED_DIRS for part in file.relative_to(root).parts):
                continue
            matches.append((file.stat().st_mtime, file))
        matches.sort(key=lambda item: item[0], reverse=True)
        return [file for _, file in matches]


class GrepInput(BaseModel):
    pattern: str = Field(description="Regular expression to search for")
    path: str = Field(default=".", description="File or directory to search (default: working directory)")
    glob: str | None = Field(default=None, description='Only search files matching this glob, e.g. "*.py"')
    case_insensitive: bool = Field(default=False, description="Case-insensitive search")
    max_matches: int = Field(default=GREP_MAX_MATCHES, ge=1, description="Maximum matches to return")


class GrepTool(Tool):
    name = "grep"
    description = GREP_DESCRIPTION
    permission = Permission.READ
    input_model = GrepInput

    def target(self, execution: ToolExecution, path: str = ".", **kwargs: Any) -> str | None:
        return execution.resolve_path(path)

    async def execute(
        self,
        execution: ToolExecution,
        pattern: str,
        path: str = ".",
        glob: str | None = None,
        case_insensitive: bool = False,
        max_matches: int = GREP_MAX_MATCHES,
        **kwargs: Any,
    ) -> ToolResult:
        try:
            regex = re.compile(pattern, re.IGNORECASE if case_insensitive else 0)
        except re.error as e:
            return ToolResult.error(f"Invalid regex pattern: {e}", preview="Invalid regex")

        root = Path(execution.resolve_path(path))
        if not root.exists():
            return ToolResult.error(f"Path not found: {path}", preview="Not found")

        matches = await asyncio.to_thread(self._search, root, regex, glob, max_matches)
        if not matches:
            return ToolResult(output=f"No matches found for pattern: {pattern}", preview="0 matches")

        body = "\n".join(matches)
        if len(matches) >= max_matches:
            header = f"Found {max_matches}+ matches (showing first {max_matches}):"
        else:
            header = f"Found {len(matches)} match{'es' if len(matches) > 1 else ''}:"
        return ToolResult(output=f"{header}\n\n{body}", preview=f"{len(matches)} matches", metadata={"count": len(matches)})

    def _search(self, root: Path, regex: re.Pattern[str], glob: str | None, max_matches: int) -> list[str]:
        files = [root] if root.is_file() else _walk_files(root)
        matches: list[str] = []
        for file in files:
            if file.suffix.lower() in BINARY_SUFFIXES:
                continue
            if glob and not _matches_glob(file, root, glob):
                continue
            try:
                with file.open(encoding="utf-8", errors="strict") as f:
                    for line_no, line in enumerate(f, 1):
                        if regex.search(line):
                            matches.append(f"{file}:{line_no}: {line.rstrip()[:500]}")
                            if len(matches) >= max_matches:
                                return matches
            except (UnicodeDecodeError, OSError):
                continue
        return matches
