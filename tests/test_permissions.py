import asyncio
from unittest.mock import AsyncMock

import pytest

from cairn.core.cancel import CancelToken, TurnCancelled
from cairn.permissions import (
    DEFAULT_RULES,
    Action,
    Permission,
    PermissionChecker,
    PermissionGate,
    PermissionMode,
    PermissionPolicy,
    PermissionRule,
    describe,
    match_pattern,
)


def checker(*rules: PermissionRule, default: PermissionMode = PermissionMode.ASK) -> PermissionChecker:
    return PermissionChecker(PermissionPolicy(rules=rules, default=default))


class TestMatchPattern:
    @pytest.mark.parametrize(
        ("target", "pattern", "expected"),
        [
            ("/repo/.env", "**/.env*", True),
            ("/repo/app/.env.local", "**/.env*", True),
            ("/repo/environment.py", "**/.env*", False),
            ("/repo/src/main.py", "/repo/*.py", False),
            ("/repo/main.py", "/repo/*.py", True),
            ("/repo/a.py", "/repo/?.py", True),
        ],
    )
    def test_paths(self, target, pattern, expected):
        assert match_pattern(target, pattern) is expected

    def test_command_star_spans_slashes(self):
        assert match_pattern("git push origin main", "git push*", spans_separators=True)
        assert match_pattern("rm -rf /tmp/x", "rm *", spans_separators=True)
        assert not match_pattern("rm -rf /tmp/x", "rm *")


class TestChecker:
    def test_deny_beats_allow(self):
        result = checker(
            PermissionRule(permission=Permission.WRITE, action=Action.ALLOW),
            PermissionRule(permission=Permission.WRITE, pattern="**/secrets/*", action=Action.DENY),
        ).check(Permission.WRITE, "/repo/secrets/key.pem")

        assert result.decision == Action.DENY
        assert "**/secrets/*" in result.reason

    def test_allow_beats_ask(self):
        result = checker(
            PermissionRule(permission=Permission.BASH, action=Action.ASK),
            PermissionRule(permission=Permission.BASH, pattern="git status*", action=Action.ALLOW),
        ).check(Permission.BASH, "git status --short")
        assert result.allowed

    def test_ask_rule_overrides_allow_all_default(self):
        result = checker(
            PermissionRule(permission=Permission.BASH, pattern="git push*", action=Action.ASK),
            default=PermissionMode.ALLOW_ALL,
        ).check("bash", "git push")
        assert result.decision == Action.ASK

    def test_all_permission_rule_matches_everything(self):
        result = checker(PermissionRule(permission=Permission.ALL, action=Action.DENY)).check(Permission.READ, "/x")
        assert result.decision == Action.DENY

    def test_pattern_rule_needs_target(self):
        result = checker(PermissionRule(permission=Permission.WEB, pattern="*", action=Action.ALLOW)).check(Permission.WEB)
        assert result.decision == Action.ASK

    @pytest.mark.parametrize(
        ("mode", "expected"),
        [
            (PermissionMode.ASK, Action.ASK),
            (PermissionMode.ALLOW_ALL, Action.ALLOW),
            (PermissionMode.DENY_ALL, Action.DENY),
        ],
    )
    def test_default_mode(self, mode, expected):
        assert checker(default=mode).check(Permission.EDIT, "/repo/a.py").decision == expected

    def test_default_rules(self):
        rules = checker(*DEFAULT_RULES)
        assert rules.check(Permission.READ, "/repo/.env").allowed
        assert rules.check(Permission.WRITE, "/repo/.env").decision == Action.DENY
        assert rules.check(Permission.EDIT, "/repo/config/credentials.json").decision == Action.DENY
        assert rules.check(Permission.WRITE, "/repo/a.py").decision == Action.ASK

    def test_unknown_permission_rejected(self):
        with pytest.raises(ValueError):
            PermissionChecker().check("teleport")


class TestDescribe:
    def test_questions(self):
        assert describe(Permission.WRITE, "/repo/a.py") == "Allow write access to /repo/a.py?"
        assert describe(Permission.BASH, "ls") == "Allow bash command: ls?"
        assert describe(Permission.WEB, None) == "Allow web?"
        assert describe(Permission.BASH, "x" * 150).endswith("...?")


class TestGate:
    @pytest.mark.asyncio
    async def test_allow_needs_no_callback(self):
        gate = PermissionGate(checker(PermissionRule(permission=Permission.READ, action=Action.ALLOW)))
        assert (await gate.check(Permission.READ, "/a")).allowed

    @pytest.mark.asyncio
    async def test_ask_without_callback_denies(self):
        result = await PermissionGate(checker()).check(Permission.WRITE, "/a")
        assert result.decision == Action.DENY
        assert "no callback" in result.reason

    @pytest.mark.asyncio
    async def test_ask_passes_question_to_callback(self):
        callback = AsyncMock(return_value=True)
        result = await PermissionGate(checker(), ask_callback=callback).check(Permission.EDIT, "/repo/a.py")

        assert result.allowed
        callback.assert_awaited_once_with("Allow edit access to /repo/a.py?")

    @pytest.mark.asyncio
    async def test_user_refusal(self):
        result = await PermissionGate(checker(), ask_callback=AsyncMock(return_value=False)).check(Permission.BASH, "make")
        assert result.decision == Action.DENY
        assert result.reason == "User denied permission"

    @pytest.mark.asyncio
    async def test_cancel_while_waiting(self):
        token = CancelToken()
        answered = asyncio.Event()

        async def never_answers(question: str) -> bool:
            await answered.wait()
            return True

        gate = PermissionGate(checker(), ask_callback=never_answers, cancel=token)
        task = asyncio.create_task(gate.check(Permission.WRITE, "/a"))
        await asyncio.sleep(0.01)
        token.cancel("user interrupt")

        with pytest.raises(TurnCancelled, match="user interrupt"):
            await task
