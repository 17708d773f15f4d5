from cairn.constants import BASH_TIMEOUT
from cairn.tools.bash import BashTool
from cairn.tools.core import Tool, ToolContext, ToolExecution, ToolRegistry, ToolResult
from cairn.tools.files import EditTool, LsTool, ReadTool, WriteTool
from cairn.tools.search import GlobTool, GrepTool

READ_ONLY_TOOLS = frozenset({"read", "ls", "glob", "grep"})

# Named tool sets an agent mode can expose to the model; None means every registered tool.
TOOL_SETS: dict[str, frozenset[str] | None] = {
    "build": None,
    "explore": READ_ONLY_TOOLS,
    "plan": READ_ONLY_TOOLS,
}


def default_tools(bash_timeout: int = BASH_TIMEOUT) -> list[Tool]:
    return [
        ReadTool(),
        WriteTool(),
        EditTool(),
        LsTool(),
        GlobTool(),
        GrepTool(),
        BashTool(timeout=bash_timeout),
    ]


def create_registry(tool_set: str = "build", bash_timeout: int = BASH_TIMEOUT) -> ToolRegistry:
    if tool_set not in TOOL_SETS:
        raise ValueError(f"Unknown tool set: {tool_set}. Must be one of: {', '.join(TOOL_SETS)}")
    names = TOOL_SETS[tool_set]
    return ToolRegistry(t for t in default_tools(bash_timeout) if names is None or t.name in names)


__all__ = [
    "READ_ONLY_TOOLS",
    "TOOL_SETS",
    "Tool",
    "ToolContext",
    "ToolExecution",
    "ToolRegistry",
    "ToolResult",
    "create_registry",
    "default_tools",
]
