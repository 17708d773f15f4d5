import asyncio
from typing import Any

from pydantic import BaseModel, Field

from cairn.constants import BASH_OUTPUT_LIMIT, BASH_TIMEOUT
from cairn.logging import get_logger
from cairn.permissions import Permission
from cairn.tools.core.base import Tool, ToolResult
from cairn.tools.core.context import ToolExecution
from cairn.tools.core.formatting import truncate_output

_logger = get_logger(__name__)

MAX_TIMEOUT = 600
KILL_GRACE = 5

BLOCKED_PATTERNS = frozenset(
    {
        "rm -rf /",
        "rm -rf ~",
        "rm -rf *",
        "dd if=",
        "mkfs",
        "fdisk",
        ":(){:|:&};:",
        "> /dev/sd",
        "chmod -r 777 /",
    }
)

BASH_DESCRIPTION = """Execute a shell command in the working directory.

PREFER OTHER TOOLS:
- For reading files: use read
- For searching: use grep and glob
- For editing: use edit and write

USE bash FOR:
- Running tests, builds, linters
- git, package managers
- File operations: mkdir, cp, mv

SAFETY: Destructive commands (rm -rf /, mkfs, ...) are blocked."""


def is_blocked_command(command: str) -> bool:
    cmd_lower = command.lower().strip()
    return any(blocked in cmd_lower for blocked in BLOCKED_PATTERNS)


class BashInput(BaseModel):
    command: str = Field(description="The shell command to execute")
    timeout: int | None = Field(default=None, ge=1, le=MAX_TIMEOUT, description="Timeout in seconds")
    description: str | None = Field(default=None, description="Short description of what the command does")


class BashTool(Tool):
    name = "bash"
    description = BASH_DESCRIPTION
    permission = Permission.BASH
    input_model = BashInput

    def __init__(self, timeout: int = BASH_TIMEOUT):
        self.timeout = timeout

    def target(self, execution: ToolExecution, command: str = "", **kwargs: Any) -> str | None:
        return command

    def time_limit(self, timeout: int | None = None, **kwargs: Any) -> float | None:
        # past the command's own timeout so the process is killed first
        return (timeout or self.timeout) + KILL_GRACE

    async def execute(
        self,
        execution: ToolExecution,
        command: str = "",
        timeout: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        if not command.strip():
            return ToolResult.error("Error: command is required", preview="Missing command")
        if is_blocked_command(command):
            return ToolResult.error(f"Blocked: {command}", preview="Blocked")

        timeout = timeout or self.timeout
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=execution.ctx.working_dir,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            return ToolResult.error(f"Command timed out after {timeout}s", preview="Timed out")
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        output = stdout.decode("utf-8", errors="replace")
        if err := stderr.decode("utf-8", errors="replace"):
            if output:
                output += "\n"
            output += f"[stderr]\n{err}"
        if process.returncode != 0:
            output += f"\n[exit code: {process.returncode}]"

        output = truncate_output(output, BASH_OUTPUT_LIMIT) if output else "(no output)"
        lines = output.count("\n") + 1
        return ToolResult(
            output=output,
            is_error=process.returncode != 0,
            preview=f"exit {process.returncode}, {lines} lines",
            metadata={"exit_code": process.returncode},
        )
