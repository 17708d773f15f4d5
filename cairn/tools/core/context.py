import os
from dataclasses import dataclass, field

from cairn.core.cancel import CancelToken
from cairn.permissions import AskCallback, PermissionChecker, PermissionGate


@dataclass
class ToolContext:
    """Shared context for every tool call of one turn."""

    session_id: str
    working_dir: str
    permissions: PermissionGate = field(default_factory=lambda: PermissionGate(PermissionChecker()))
    cancel: CancelToken | None = None

    @property
    def ask_callback(self) -> AskCallback | None:
        return self.permissions.ask_callback


@dataclass
class ToolExecution:
    """Per-tool execution context. Pairs tool identity with shared context."""

    tool_id: str
    tool_name: str
    ctx: ToolContext

    def resolve_path(self, path: str) -> str:
        path = os.path.expanduser(path)
        if not os.path.isabs(path):
            path = os.path.join(self.ctx.working_dir, path)
        return os.path.normpath(path)
