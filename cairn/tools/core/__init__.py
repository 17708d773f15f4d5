"""Core tool infrastructure - base classes, registry, context."""

from cairn.tools.core.base import Tool, ToolResult
from cairn.tools.core.context import ToolContext, ToolExecution
from cairn.tools.core.formatting import format_lines_with_pagination, truncate_output
from cairn.tools.core.registry import ToolProvider, ToolRegistry

__all__ = [
    "Tool",
    "ToolContext",
    "ToolExecution",
    "ToolProvider",
    "ToolRegistry",
    "ToolResult",
    "format_lines_with_pagination",
    "truncate_output",
]
