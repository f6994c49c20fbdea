"""
agentwire 命令行界面

提供REPL交互界面：加载配置、选择渠道，流式显示模型回复和工具调用，
在需要时询问用户确认工具调用。
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional
from uuid import uuid4

from agentwire.agent.infrastructure.conversation_store import (
    ConversationStore,
    InMemoryConversationStore,
    JsonlConversationStore,
)
from agentwire.agent.runtime.tool_executor import ToolExecutor, ToolRegistry
from agentwire.agent.runtime.tool_loop import ToolExecutionLoop
from agentwire.agent.runtime.workspace_tools import register_workspace_tools
from agentwire.agent.security.tool_policy import Mode
from agentwire.agent.subagent.executor import SubAgentExecutor, create_subagents_tool
from agentwire.system.llm.errors import AgentWireError, ConfigError
from agentwire.system.llm.message import ChunkType, StreamChunk
from agentwire.system.llm.transport import HttpTransport
from agentwire.system.services.config_center import ConfigCenter
from agentwire.system.services.logger import setup_logging


class Colors:
    """终端颜色"""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"

    BRIGHT_GREEN = "\033[92m"
    BRIGHT_CYAN = "\033[96m"


def colorize(text: str, color: str) -> str:
    """给文本添加颜色"""
    return f"{color}{text}{Colors.RESET}"


class AgentWireCLI:
    """
    agentwire 命令行界面

    功能：
    - REPL交互循环
    - 流式显示回复、工具状态
    - 工具调用确认
    - 切换模式、查看历史和检查点
    """

    def __init__(
        self,
        config_center: ConfigCenter,
        channel_id: Optional[str] = None,
        mode: Optional[str] = None,
        workspace: Path = Path("."),
        verbose: bool = False,
    ):
        self.config_center = config_center
        self.channel_id = channel_id
        self.mode = mode
        self.workspace = workspace
        self.verbose = verbose
        self.conversation_id = f"conv_{uuid4().hex[:8]}"

        self.transport: Optional[HttpTransport] = None
        self.loop: Optional[ToolExecutionLoop] = None
        self.subagents: Optional[SubAgentExecutor] = None

    def initialize(self) -> None:
        """按配置构建渠道、工具、存储和工具循环"""
        center = self.config_center
        config = center.config
        self.mode = self.mode or config.system.default_mode

        channels = center.build_channel_registry()
        if not len(channels):
            raise ConfigError("No channels configured")

        tools = ToolRegistry()
        register_workspace_tools(tools, self.workspace)
        executor = ToolExecutor(tools)
        policy = center.build_policy(self.mode)

        store: ConversationStore
        if config.system.conversations_dir:
            store = JsonlConversationStore(Path(config.system.conversations_dir))
        else:
            store = InMemoryConversationStore()

        self.transport = HttpTransport()
        self.subagents = SubAgentExecutor(
            center.build_subagent_registry(),
            channels,
            executor,
            policy=policy,
            transport=self.transport,
            fallback_to_parent=center.fallback_to_parent,
        )
        if len(self.subagents.registry):
            create_subagents_tool(self.subagents, tools)

        self.loop = ToolExecutionLoop(
            channels=channels,
            executor=executor,
            store=store,
            policy=policy,
            transport=self.transport,
            config=center.build_loop_config(),
        )

    async def shutdown(self) -> None:
        if self.transport:
            await self.transport.aclose()

    def print_banner(self) -> None:
        """打印欢迎横幅"""
        print(f"""
{colorize("=" * 60, Colors.CYAN)}
{colorize("  agentwire", Colors.BRIGHT_CYAN + Colors.BOLD)}  conversation {self.conversation_id}
{colorize("=" * 60, Colors.CYAN)}

  命令：
    {colorize("/mode <name>", Colors.YELLOW)}  - 切换模式 (当前: {self.mode})
    {colorize("/history", Colors.YELLOW)}      - 显示对话历史
    {colorize("/checkpoints", Colors.YELLOW)}  - 显示检查点
    {colorize("/quit", Colors.YELLOW)}         - 退出程序
{colorize("-" * 60, Colors.DIM)}
""")

    async def print_history(self) -> None:
        history = await self.loop.store.get_history(self.conversation_id)
        if not history:
            print(colorize("(空)", Colors.DIM))
            return
        for index, content in enumerate(history):
            summary = content.text or ", ".join(
                [f"call {c.name}" for c in content.function_calls]
                + [f"response {rid}" for rid in content.function_response_ids]
            )
            print(colorize(f"[{index}] {content.role.value}: ", Colors.DIM) + summary[:200])

    async def print_checkpoints(self) -> None:
        checkpoints = await self.loop.store.list_checkpoints(self.conversation_id)
        if not checkpoints:
            print(colorize("(无检查点)", Colors.DIM))
        for cp in checkpoints:
            print(f"{cp.id}  #{cp.message_index}  {cp.tool_name}  {cp.created_at}")

    def switch_mode(self, mode: str) -> None:
        policy = self.config_center.build_policy(mode)
        self.loop.set_policy(policy)
        self.subagents.set_policy(policy)
        self.mode = mode
        print(f"模式已切换为 {colorize(mode, Colors.GREEN)}")

    async def confirm(self, chunk: StreamChunk) -> None:
        """逐个询问待确认的工具调用"""
        for call in chunk.data["pending_tool_calls"]:
            args = json.dumps(call["args"], ensure_ascii=False)
            question = colorize(f"\n允许执行 {call['name']} {args[:300]} ? [y/N] ", Colors.YELLOW)
            answer = await asyncio.get_running_loop().run_in_executor(None, lambda: input(question))
            self.loop.resolve_confirmation(self.conversation_id, call["id"], answer.strip().lower() in ("y", "yes"))

    async def display(self, chunk: StreamChunk) -> None:
        """显示一个流事件"""
        if chunk.type == ChunkType.CHUNK:
            color = Colors.DIM if chunk.data["thought"] else Colors.RESET
            print(colorize(chunk.data["delta"], color), end="", flush=True)
        elif chunk.type == ChunkType.TOOLS_EXECUTING:
            print(colorize(f"\n⚙ {', '.join(chunk.data['tool_names'])}", Colors.CYAN))
        elif chunk.type == ChunkType.TOOL_STATUS and self.verbose:
            print(colorize(f"  {chunk.data['call_id']}: {chunk.data['status']}", Colors.DIM))
        elif chunk.type == ChunkType.AWAITING_CONFIRMATION:
            await self.confirm(chunk)
        elif chunk.type == ChunkType.TOOL_ITERATION:
            for result in chunk.data["tool_results"]:
                ok = result["result"].get("success")
                mark = colorize("✓", Colors.GREEN) if ok else colorize("✗", Colors.RED)
                detail = "" if ok else f" {result['result'].get('error')}"
                print(f"  {mark} {result['name']}{detail}")
        elif chunk.type == ChunkType.COMPLETE:
            print()
        elif chunk.type == ChunkType.CANCELLED:
            print(colorize("\n已取消", Colors.YELLOW))
        elif chunk.type == ChunkType.ERROR:
            print(colorize(f"\n✗ {chunk.data['code']}: {chunk.data['message']}", Colors.RED))

    async def send(self, text: str) -> bool:
        """发送一条用户输入并显示整个运行；返回是否成功完成"""
        await self.loop.add_user_message(self.conversation_id, text)
        success = False
        async for chunk in self.loop.run(
            self.conversation_id,
            self.channel_id,
            dynamic_context=self.config_center.mode_prompt(self.mode),
        ):
            await self.display(chunk)
            if chunk.is_terminal:
                success = chunk.type == ChunkType.COMPLETE
        return success

    async def process_input(self, user_input: str) -> bool:
        """
        处理用户输入

        Returns:
            是否继续运行
        """
        user_input = user_input.strip()
        if not user_input:
            return True

        if user_input.startswith("/"):
            cmd, _, arg = user_input.partition(" ")
            cmd = cmd.lower()
            if cmd in ("/quit", "/exit", "/q"):
                return False
            elif cmd == "/mode":
                if arg.strip():
                    self.switch_mode(arg.strip())
                else:
                    print(f"当前模式: {self.mode} (可选: {Mode.AGENT}, {Mode.READONLY}, {Mode.PLAN})")
            elif cmd == "/history":
                await self.print_history()
            elif cmd == "/checkpoints":
                await self.print_checkpoints()
            else:
                print(colorize(f"未知命令: {user_input}", Colors.YELLOW))
            return True

        print(colorize("● ", Colors.BRIGHT_GREEN), end="")
        await self.send(user_input)
        return True

    async def run(self) -> None:
        """运行REPL循环"""
        self.print_banner()
        running = True
        try:
            while running:
                prompt = colorize("> ", Colors.BRIGHT_GREEN + Colors.BOLD)
                try:
                    user_input = await asyncio.get_running_loop().run_in_executor(
                        None, lambda: input(prompt)
                    )
                except EOFError:
                    break
                running = await self.process_input(user_input)
        finally:
            await self.shutdown()


async def main_async(args: argparse.Namespace) -> int:
    """
    异步主函数

    Returns:
        退出码
    """
    center = ConfigCenter(args.config)
    try:
        await center.load()
    except AgentWireError as e:
        print(colorize(f"配置错误: {e.message}", Colors.RED))
        return 1

    setup_logging(
        level="DEBUG" if args.verbose else center.log_level,
        use_enhanced_format=args.verbose,
        log_file=center.config.system.log_file,
    )

    cli = AgentWireCLI(
        center,
        channel_id=args.channel,
        mode=args.mode,
        workspace=Path(args.workspace),
        verbose=args.verbose,
    )
    try:
        cli.initialize()
    except AgentWireError as e:
        print(colorize(f"初始化失败: {e.message}", Colors.RED))
        return 1

    if args.execute:
        try:
            return 0 if await cli.send(args.execute) else 1
        finally:
            await cli.shutdown()

    await cli.run()
    return 0


def main() -> int:
    """主函数"""
    parser = argparse.ArgumentParser(
        description="agentwire - multi-backend tool-calling agent CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  %(prog)s                               # 使用 configs/agentwire.yaml 启动
  %(prog)s -c my.yaml --channel claude   # 指定配置和渠道
  %(prog)s --mode readonly -e "总结 README.md"
        """,
    )
    parser.add_argument("-c", "--config", default="configs/agentwire.yaml", help="配置文件路径")
    parser.add_argument("--channel", help="渠道 ID（默认使用配置中的默认渠道）")
    parser.add_argument("--mode", help="模式: agent / readonly / plan")
    parser.add_argument("-w", "--workspace", default=".", help="工作区根目录")
    parser.add_argument("-e", "--execute", metavar="PROMPT", help="执行单条输入后退出")
    parser.add_argument("-v", "--verbose", action="store_true", help="显示详细日志和工具状态")
    args = parser.parse_args()

    try:
        return asyncio.run(main_async(args))
    except KeyboardInterrupt:
        print(colorize("\n再见！", Colors.CYAN))
        return 0


if __name__ == "__main__":
    sys.exit(main())
