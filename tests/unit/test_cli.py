"""
命令行界面测试
"""

import pytest

from conftest import ScriptedTransport, call_turn, text_turn

from agentwire.agent.subagent.executor import SUBAGENTS_TOOL_NAME
from agentwire.cli import AgentWireCLI
from agentwire.system.llm.errors import ConfigError
from agentwire.system.llm.message import FunctionCall
from agentwire.system.services.config_center import ConfigCenter


@pytest.fixture
def center(test_config) -> ConfigCenter:
    center = ConfigCenter()
    center.load_dict(test_config)
    return center


def make_cli(center, workspace, monkeypatch, transport=None) -> AgentWireCLI:
    if transport is not None:
        monkeypatch.setattr("agentwire.cli.HttpTransport", lambda: transport)
    cli = AgentWireCLI(center, workspace=workspace)
    cli.initialize()
    return cli


class TestInitialize:
    """初始化测试"""

    def test_builds_loop_and_tools(self, center, temp_workspace, monkeypatch):
        cli = make_cli(center, temp_workspace, monkeypatch)

        names = cli.loop.executor.registry.names()
        assert "read_file" in names
        assert SUBAGENTS_TOOL_NAME in names
        assert cli.mode == "agent"
        assert cli.loop.policy.mode == "agent"

    def test_no_channels(self, temp_workspace):
        center = ConfigCenter()
        center.load_dict({})

        with pytest.raises(ConfigError):
            AgentWireCLI(center, workspace=temp_workspace).initialize()


class TestCommands:
    """斜杠命令测试"""

    @pytest.mark.asyncio
    async def test_mode_switch(self, center, temp_workspace, monkeypatch):
        cli = make_cli(center, temp_workspace, monkeypatch)

        assert await cli.process_input("/mode readonly")
        assert cli.mode == "readonly"
        assert cli.loop.policy.mode == "readonly"

    @pytest.mark.asyncio
    async def test_quit(self, center, temp_workspace, monkeypatch):
        cli = make_cli(center, temp_workspace, monkeypatch)

        assert await cli.process_input("   ")
        assert not await cli.process_input("/quit")


class TestSend:
    """发送输入测试"""

    @pytest.mark.asyncio
    async def test_text_reply(self, center, temp_workspace, monkeypatch):
        transport = ScriptedTransport([text_turn("Hello", " there")])
        cli = make_cli(center, temp_workspace, monkeypatch, transport)

        assert await cli.send("hi")

        history = await cli.loop.store.get_history(cli.conversation_id)
        assert [c.text for c in history] == ["hi", "Hello there"]
        assert transport.requests[0].url.endswith("/v1/messages")

    @pytest.mark.asyncio
    async def test_confirmed_write(self, center, temp_workspace, monkeypatch):
        transport = ScriptedTransport([
            call_turn(FunctionCall(
                id="w1",
                name="write_file",
                args={"files": [{"path": "notes.md", "content": "saved"}]},
            )),
            text_turn("done"),
        ])
        cli = make_cli(center, temp_workspace, monkeypatch, transport)
        monkeypatch.setattr("builtins.input", lambda prompt="": "y")

        assert await cli.send("write notes")
        assert (temp_workspace / "notes.md").read_text(encoding="utf-8") == "saved"

    @pytest.mark.asyncio
    async def test_rejected_write(self, center, temp_workspace, monkeypatch):
        transport = ScriptedTransport([
            call_turn(FunctionCall(
                id="w1",
                name="write_file",
                args={"files": [{"path": "notes.md", "content": "saved"}]},
            )),
            text_turn("unused"),
        ])
        cli = make_cli(center, temp_workspace, monkeypatch, transport)
        monkeypatch.setattr("builtins.input", lambda prompt="": "n")

        assert not await cli.send("write notes")
        assert not (temp_workspace / "notes.md").exists()
        assert len(transport.requests) == 1
