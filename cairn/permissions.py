"""Permission policy: which tool may touch which target.

`PermissionChecker` is a pure decision function over a rule list. The
per-turn `PermissionGate` adds the interactive half: an `ask` decision is
turned into a question for the user, raced against the turn's cancel token.
"""

import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from functools import lru_cache

from pydantic import BaseModel, ConfigDict

from cairn.core.cancel import CancelToken, race
from cairn.logging import get_logger

_logger = get_logger(__name__)

type AskCallback = Callable[[str], Awaitable[bool]]


class Permission(StrEnum):
    READ = "read"
    WRITE = "write"
    EDIT = "edit"
    BASH = "bash"
    WEB = "web"
    ALL = "all"


class Action(StrEnum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


class PermissionMode(StrEnum):
    ASK = "ask"
    ALLOW_ALL = "allow-all"
    DENY_ALL = "deny-all"


class PermissionRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    permission: Permission
    action: Action
    pattern: str | None = None


DEFAULT_RULES = (
    PermissionRule(permission=Permission.READ, action=Action.ALLOW),
    PermissionRule(permission=Permission.WRITE, pattern="**/.env*", action=Action.DENY),
    PermissionRule(permission=Permission.EDIT, pattern="**/.env*", action=Action.DENY),
    PermissionRule(permission=Permission.WRITE, pattern="**/credentials*", action=Action.DENY),
    PermissionRule(permission=Permission.EDIT, pattern="**/credentials*", action=Action.DENY),
)


@dataclass(frozen=True)
class PermissionPolicy:
    rules: tuple[PermissionRule, ...] = ()
    default: PermissionMode = PermissionMode.ASK


@dataclass(frozen=True)
class PermissionResult:
    decision: Action
    reason: str | None = None

    @property
    def allowed(self) -> bool:
        return self.decision == Action.ALLOW


@lru_cache(maxsize=256)
def _compile(pattern: str, spans_separators: bool) -> re.Pattern[str]:
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
            continue
        if char == "*":
            parts.append(".*" if spans_separators else "[^/]*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("".join(parts), re.DOTALL)


def match_pattern(target: str, pattern: str, spans_separators: bool = False) -> bool:
    """Glob match: `**` any depth, `*` within one segment (anything for commands), `?` one char."""
    return _compile(pattern, spans_separators).fullmatch(target) is not None


class PermissionChecker:
    def __init__(self, policy: PermissionPolicy | None = None):
        self.policy = policy or PermissionPolicy()

    def check(self, permission: Permission | str, target: str | None = None) -> PermissionResult:
        permission = Permission(permission)
        matching = [rule for rule in self.policy.rules if self._matches(rule, permission, target)]

        if denied := next((r for r in matching if r.action == Action.DENY), None):
            return PermissionResult(Action.DENY, f"Denied by rule: {denied.pattern or denied.permission.value}")
        if any(r.action == Action.ALLOW for r in matching):
            return PermissionResult(Action.ALLOW)
        if any(r.action == Action.ASK for r in matching):
            return PermissionResult(Action.ASK, "Rule requires confirmation")

        match self.policy.default:
            case PermissionMode.ALLOW_ALL:
                return PermissionResult(Action.ALLOW)
            case PermissionMode.DENY_ALL:
                return PermissionResult(Action.DENY, f"Permission denied: {permission.value} (deny-all mode)")
            case _:
                return PermissionResult(Action.ASK, "Interactive confirmation required")

    def _matches(self, rule: PermissionRule, permission: Permission, target: str | None) -> bool:
        if rule.permission not in (permission, Permission.ALL):
            return False
        if rule.pattern is None:
            return True
        if target is None:
            return False
        return match_pattern(target, rule.pattern, spans_separators=permission == Permission.BASH)


def describe(permission: Permission | str, target: str | None) -> str:
    permission = Permission(permission)
    if target is None:
        return f"Allow {permission.value}?"
    if permission == Permission.BASH:
        preview = target if len(target) <= 100 else target[:100] + "..."
        return f"Allow bash command: {preview}?"
    return f"Allow {permission.value} access to {target}?"


class PermissionGate:
    """Checker plus the interactive confirmation for one turn."""

    def __init__(
        self,
        checker: PermissionChecker,
        ask_callback: AskCallback | None = None,
        cancel: CancelToken | None = None,
    ):
        self.checker = checker
        self.ask_callback = ask_callback
        self.cancel = cancel

    def evaluate(self, permission: Permission | str, target: str | None = None) -> PermissionResult:
        return self.checker.check(permission, target)

    async def confirm(self, permission: Permission | str, target: str | None = None) -> PermissionResult:
        if self.ask_callback is None:
            return PermissionResult(Action.DENY, "Interactive permission required but no callback provided")

        allowed = await race(self.ask_callback(describe(permission, target)), self.cancel)
        if allowed:
            return PermissionResult(Action.ALLOW)
        _logger.info("User denied %s for %s", permission, target)
        return PermissionResult(Action.DENY, "User denied permission")

    async def check(self, permission: Permission | str, target: str | None = None) -> PermissionResult:
        result = self.evaluate(permission, target)
        if result.decision == Action.ASK:
            return await self.confirm(permission, target)
        return result
