from collections.abc import Iterable
from typing import Any, Protocol

from pydantic import ValidationError

from cairn.llm.types import ToolSpec
from cairn.tools.core.base import Tool, ToolResult
from cairn.tools.core.context import ToolExecution


class ToolProvider(Protocol):
    """Anything that contributes tools, e.g. an LSP or MCP client."""

    def tools(self) -> list[Tool]: ...


def format_validation_error(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(l) for l in err['loc'])}: {err['msg']}" if err.get("loc") else err["msg"] for err in e.errors()
    )


class ToolRegistry:
    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def extend(self, provider: ToolProvider) -> None:
        for tool in provider.tools():
            self.register(tool)

    def copy_with(self, *extra_tools: Tool) -> "ToolRegistry":
        registry = ToolRegistry(self._tools.values())
        for tool in extra_tools:
            registry.register(tool)
        return registry

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def validate(self, name: str, arguments: dict[str, Any]) -> dict[str, Any] | ToolResult:
        """Returns validated arguments, or an error result."""
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult.error(f"Unknown tool: {name}", preview="Unknown tool")
        if tool.input_model is None:
            return arguments
        try:
            return tool.input_model(**arguments).model_dump()
        except ValidationError as e:
            return ToolResult.error(f"Invalid arguments: {format_validation_error(e)}", preview="Validation error")

    async def execute(self, name: str, execution: ToolExecution, arguments: dict[str, Any]) -> ToolResult:
        validated = self.validate(name, arguments)
        if isinstance(validated, ToolResult):
            return validated
        return await self._tools[name].execute(execution, **validated)

    def specs(self, names: Iterable[str] | None = None) -> list[ToolSpec]:
        wanted = set(names) if names is not None else None
        return [tool.to_spec() for name, tool in self._tools.items() if wanted is None or name in wanted]

    @property
    def tools(self) -> dict[str, Tool]:
        return self._tools

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
