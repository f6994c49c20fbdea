"""
配置中心测试
"""

import os
from pathlib import Path

import pytest
import yaml

from agentwire.agent.security.tool_policy import PolicyDecision
from agentwire.system.llm.config import ChannelType, resolve_env_vars
from agentwire.system.llm.errors import ConfigError
from agentwire.system.services.config_center import ConfigCenter, load_dotenv


@pytest.fixture
def center(test_config) -> ConfigCenter:
    center = ConfigCenter()
    center.load_dict(test_config)
    return center


class TestLoading:
    """配置加载测试"""

    def test_unloaded_config(self):
        with pytest.raises(RuntimeError):
            ConfigCenter().config

    def test_get_dotted_key(self, center):
        assert center.get("loop.max_iterations") == 8
        assert center.get("loop.missing", "default") == "default"

    def test_invalid_config(self):
        with pytest.raises(ConfigError):
            ConfigCenter().load_dict({"channels": {"x": {"model": "m"}}})

    @pytest.mark.asyncio
    async def test_load_yaml(self, tmp_path, test_config):
        path = tmp_path / "configs" / "agentwire.yaml"
        path.parent.mkdir()
        path.write_text(yaml.safe_dump(test_config), encoding="utf-8")

        config = await ConfigCenter(str(path)).load()

        assert config.system.default_channel == "claude"
        assert config.subagents.agents[0].type == "researcher"

    @pytest.mark.asyncio
    async def test_shipped_config(self):
        path = Path(__file__).resolve().parents[2] / "configs" / "agentwire.yaml"
        center = ConfigCenter(str(path))
        await center.load()

        channels = center.build_channel_registry()
        assert channels.default_channel == "gemini"
        assert channels.get("responses").type == ChannelType.OPENAI_RESPONSES
        assert center.build_subagent_registry().names() == ["Researcher"]
        assert center.mode_prompt("plan")

    @pytest.mark.asyncio
    async def test_missing_file_uses_defaults(self, tmp_path):
        config = await ConfigCenter(str(tmp_path / "none.yaml")).load()

        assert config.loop.max_iterations == 50
        assert config.channels == {}

    def test_load_dotenv(self, tmp_path, monkeypatch):
        monkeypatch.delenv("AGENTWIRE_TEST_KEY", raising=False)
        env = tmp_path / ".env"
        env.write_text('# comment\nAGENTWIRE_TEST_KEY="from-dotenv"\nAGENTWIRE_ENV=ignored\n', encoding="utf-8")

        assert load_dotenv(env)

        assert os.environ["AGENTWIRE_TEST_KEY"] == "from-dotenv"
        assert os.environ["AGENTWIRE_ENV"] == "test"
        monkeypatch.delenv("AGENTWIRE_TEST_KEY")


class TestEnvVars:
    """环境变量展开测试"""

    def test_resolve(self, monkeypatch):
        monkeypatch.setenv("TEST_GEMINI_KEY", "g-key")

        assert resolve_env_vars("${TEST_GEMINI_KEY}") == "g-key"
        assert resolve_env_vars({"a": ["$TEST_GEMINI_KEY"]}) == {"a": ["g-key"]}
        assert resolve_env_vars("${UNDEFINED_VAR_X}") == "${UNDEFINED_VAR_X}"
        assert resolve_env_vars(3) == 3

    def test_channel_key_expanded(self, monkeypatch, test_config):
        monkeypatch.setenv("TEST_GEMINI_KEY", "g-key")
        center = ConfigCenter()
        center.load_dict(test_config)

        assert center.build_channel_registry().get("gemini").api_key == "g-key"


class TestBuilders:
    """运行时对象构建测试"""

    def test_channel_registry(self, center):
        channels = center.build_channel_registry()

        assert channels.default_channel == "claude"
        claude = channels.get()
        assert claude.type == ChannelType.ANTHROPIC
        assert claude.options_enabled == {"temperature": True}
        assert channels.get("gemini").api_key == "${TEST_GEMINI_KEY}"

    def test_default_channel_is_first(self):
        center = ConfigCenter()
        center.load_dict({"channels": {
            "first": {"type": "openai", "model": "gpt"},
            "second": {"type": "gemini", "model": "gemini"},
        }})

        assert center.build_channel_registry().default_channel == "first"

    def test_unknown_channel_type(self):
        center = ConfigCenter()
        center.load_dict({"channels": {"x": {"type": "telegraph"}}})

        with pytest.raises(ConfigError):
            center.build_channel_registry()

    def test_loop_config(self, center):
        loop = center.build_loop_config()

        assert loop.max_iterations == 8
        assert loop.max_runtime_seconds == -1
        assert loop.require_tool_success

    def test_configured_plan_policy(self, center):
        policy = center.build_policy("plan")

        assert policy.check("write_file", {"path": "docs/plans/a.md"}).decision == PolicyDecision.ALLOW_WITH_EXCEPTION
        assert not policy.check("write_file", {"path": ".cursor/plans/a.md"}).allowed

    def test_builtin_mode_policy(self, center):
        assert not center.build_policy("readonly").check("write_file", {"path": "a"}).allowed
        assert center.build_policy().mode == "agent"
        assert center.mode_prompt("readonly") is None

    def test_subagent_registry(self, center):
        registry = center.build_subagent_registry()
        researcher = registry.get("researcher")

        assert researcher.name == "Researcher"
        assert researcher.channel.channel_id == "gemini"
        assert researcher.tools.mode == "whitelist"
        assert researcher.tools.effective_whitelist == ["read_file"]
        assert researcher.max_iterations == 5
        assert researcher.max_runtime_seconds == 300
        assert center.fallback_to_parent
