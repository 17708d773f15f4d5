from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar

from pydantic import BaseModel

from cairn.llm.types import ToolSpec
from cairn.permissions import Permission
from cairn.tools.core.context import ToolExecution


def _inline_refs(schema: dict) -> dict:
    """Resolve $ref pointers by inlining definitions from $defs."""
    defs = schema.get("$defs", {})
    if not defs:
        return schema

    def _resolve(node: Any) -> Any:
        if isinstance(node, dict):
            if "$ref" in node:
                # "#/$defs/ModelName" -> "ModelName"
                ref_name = node["$ref"].rsplit("/", 1)[-1]
                if ref_name in defs:
                    return _resolve(defs[ref_name])
                return node
            return {k: _resolve(v) for k, v in node.items() if k != "$defs"}
        if isinstance(node, list):
            return [_resolve(item) for item in node]
        return node

    return _resolve(schema)


@dataclass(frozen=True)
class ToolResult:
    output: str
    is_error: bool = False
    preview: str = ""
    metadata: dict | None = None

    @classmethod
    def error(cls, output: str, preview: str = "Error") -> "ToolResult":
        return cls(output=output, is_error=True, preview=preview)


class Tool(ABC):
    name: str
    description: str
    permission: Permission = Permission.READ
    input_model: ClassVar[type[BaseModel] | None] = None

    @property
    def read_only(self) -> bool:
        return self.permission == Permission.READ

    def target(self, execution: ToolExecution, **kwargs: Any) -> str | None:
        """The resource the permission check is about (a resolved path, a command)."""
        return None

    def time_limit(self, **kwargs: Any) -> float | None:
        """Seconds this call may run when the tool enforces its own timeout; None defers to the caller."""
        return None

    @abstractmethod
    async def execute(self, execution: ToolExecution, **kwargs: Any) -> ToolResult: ...

    def to_spec(self) -> ToolSpec:
        parameters: dict = {"type": "object", "properties": {}}
        if self.input_model is not None:
            json_schema = _inline_refs(self.input_model.model_json_schema())
            parameters = {
                "type": "object",
                "properties": json_schema.get("properties", {}),
                "required": json_schema.get("required", []),
            }
        return ToolSpec(name=self.name, description=self.description, input_schema=parameters)
