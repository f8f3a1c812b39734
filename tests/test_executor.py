"""Tests for capability execution: built-ins, sandboxed user code, deadlines."""

from __future__ import annotations

import pytest

from roundtable import tools as tool_module
from roundtable.core.executor import ToolContext, ToolExecutor, compile_capability
from roundtable.core.types import (
    Capability,
    CapabilityError,
    CapabilityTimeoutError,
    NotFoundError,
)
from roundtable.infra.database import Store


def _user_cap(name: str, code: str) -> Capability:
    return Capability(name=name, description=name, parameters={}, code=code)


@pytest.fixture
def executor(store: Store) -> ToolExecutor:
    return ToolExecutor(store, timeout=0.5)


@pytest.fixture
def ctx() -> ToolContext:
    return ToolContext(session_id="s1", agent_id="a0", agent_name="Alice")


class TestBuiltins:

    @pytest.mark.asyncio
    async def test_calculator(self, executor: ToolExecutor, ctx: ToolContext) -> None:
        result = await executor.execute("calculator", {"expression": "2^10 + sqrt(16)"}, ctx)
        assert result == {"expression": "2^10 + sqrt(16)", "result": 1028.0}

    @pytest.mark.asyncio
    async def test_take_a_rest_signals_engine(self, executor: ToolExecutor) -> None:
        flagged = []
        ctx = ToolContext(session_id="s1", request_rest=lambda: flagged.append(True))
        result = await executor.execute("take_a_rest", {"reason": "tired"}, ctx)
        assert result["success"] is True
        assert flagged == [True]

    @pytest.mark.asyncio
    async def test_scratchpad_round_trip(self, executor: ToolExecutor, tmp_path) -> None:
        ctx = ToolContext(session_id="s1", scratchpad_path=tmp_path / "pad.md")
        await executor.execute("write_scratchpad", {"content": "first"}, ctx)
        await executor.execute("write_scratchpad", {"content": "second", "append": True}, ctx)
        result = await executor.execute("read_scratchpad", {}, ctx)
        assert result["content"] == "first\nsecond"

    @pytest.mark.asyncio
    async def test_unknown_timezone_raises(self, executor: ToolExecutor,
                                           ctx: ToolContext) -> None:
        with pytest.raises(ValueError):
            await executor.execute("get_current_datetime", {"timezone": "Mars/Olympus"}, ctx)

    @pytest.mark.asyncio
    async def test_unknown_capability(self, executor: ToolExecutor, ctx: ToolContext) -> None:
        with pytest.raises(NotFoundError):
            await executor.execute("does_not_exist", {}, ctx)

    def test_sleep_deadline_covers_requested_duration(self) -> None:
        assert tool_module.tool_deadline("sleep", {"seconds": 60}, 30.0) == 65.0
        assert tool_module.tool_deadline("sleep", {"seconds": 9999}, 30.0) == 305.0
        assert tool_module.tool_deadline("calculator", {}, 30.0) == 30.0


class TestUserCapabilities:

    @pytest.mark.asyncio
    async def test_params_context_and_env_are_injected(
            self, executor: ToolExecutor, ctx: ToolContext, monkeypatch) -> None:
        monkeypatch.setenv("ROUNDTABLE_TEST_TOKEN", "secret")
        cap = _user_cap("inspect", (
            "return {\n"
            "    'x': params['x'] * 2,\n"
            "    'session': context.session_id,\n"
            "    'agent': context.agent_name,\n"
            "    'token': env.get('ROUNDTABLE_TEST_TOKEN'),\n"
            "    'http': http is None,\n"
            "}"
        ))
        result = await executor.execute("inspect", {"x": 21}, ctx, cap)
        assert result == {"x": 42, "session": "s1", "agent": "Alice",
                          "token": "secret", "http": True}

    @pytest.mark.asyncio
    async def test_deadline_raises_timeout(self, executor: ToolExecutor,
                                           ctx: ToolContext) -> None:
        cap = _user_cap("slow", "await asyncio.sleep(5)\nreturn 'late'")
        with pytest.raises(CapabilityTimeoutError):
            await executor.execute("slow", {}, ctx, cap)

    @pytest.mark.asyncio
    async def test_open_is_not_available(self, executor: ToolExecutor,
                                         ctx: ToolContext) -> None:
        cap = _user_cap("reader", "return open('/etc/hostname').read()")
        with pytest.raises(NameError):
            await executor.execute("reader", {}, ctx, cap)

    @pytest.mark.asyncio
    async def test_imports_are_blocked(self, executor: ToolExecutor, ctx: ToolContext) -> None:
        cap = _user_cap("importer", "import os\nreturn os.getcwd()")
        with pytest.raises(ImportError):
            await executor.execute("importer", {}, ctx, cap)

    @pytest.mark.asyncio
    async def test_errors_propagate_to_caller(self, executor: ToolExecutor,
                                              ctx: ToolContext) -> None:
        cap = _user_cap("boom", "raise ValueError('bad input')")
        with pytest.raises(ValueError, match="bad input"):
            await executor.execute("boom", {}, ctx, cap)

    def test_syntax_error_is_capability_error(self) -> None:
        with pytest.raises(CapabilityError):
            compile_capability("broken", "return ((")

    @pytest.mark.asyncio
    async def test_recompiled_code_replaces_cached_version(
            self, executor: ToolExecutor, ctx: ToolContext) -> None:
        for version in range(5):
            cap = _user_cap("versioned", f"return {version}")
            assert await executor.execute("versioned", {}, ctx, cap) == version

        assert list(executor._compiled) == ["versioned"]
