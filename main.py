"""
threadloom - 命令行入口

子命令：
- chat: 交互式对话（流式输出助手回复）
- recover: 把上次进程遗留的 pending 消息标记为中断

数据目录：--data-dir 参数 > THREADLOOM_DATA_DIR 环境变量 > 平台标准目录
"""

# ==================== 标准库 ====================
import argparse
import asyncio
import sys
from typing import Any, Dict, List, Optional

# ==================== 本地模块 ====================
from core.events import CallbackEventSink, GenerationEvent
from core.generation.errors import GenerationError
from core.generation.orchestrator import GenerationOrchestrator
from core.llm import BackendRegistry
from core.llm.openai import OpenAICompatibleService
from core.prompt.content_enricher import ContentEnricher
from core.search import SearxngSearchEngine
from infra.local_store import close_local_engine, create_local_message_store
from logger import get_logger, set_level
from services.settings_service import SettingsService, get_settings_service
from services.thread_service import ThreadService, ThreadServiceError

logger = get_logger("main")

APP_NAME = "threadloom"


# ==================== 启动辅助函数 ====================


async def _init_backends(settings: SettingsService) -> BackendRegistry:
    """按配置注册 OpenAI 兼容后端（只注册有 API Key 的）"""
    registry = BackendRegistry()
    max_tool_calls = await settings.get_setting("max_tool_calls", 50)
    for provider_id, config in (await settings.get_provider_configs()).items():
        if not config.get("api_key"):
            continue
        registry.register(
            OpenAICompatibleService(
                provider_id=provider_id,
                api_key=config["api_key"],
                base_url=config.get("base_url"),
                max_tool_calls=max_tool_calls,
            )
        )
    logger.info(f"🔌 已注册后端: {registry.list()}")
    return registry


async def _init_search_engine(settings: SettingsService) -> Optional[SearxngSearchEngine]:
    search = await settings.get_setting("search", {})
    if not isinstance(search, dict) or search.get("engine") != "searxng" or not search.get("base_url"):
        return None
    return SearxngSearchEngine(
        base_url=search["base_url"],
        max_results=int(search.get("max_results", 5)),
        timeout=float(search.get("timeout", 15.0)),
    )


class _StreamPrinter:
    """把 content_updated 事件中新增的正文增量打印到终端"""

    def __init__(self):
        self._printed: Dict[str, int] = {}

    @staticmethod
    def _text(blocks: List[Dict[str, Any]]) -> str:
        return "".join(b.get("content", "") for b in blocks if b.get("type") == "content")

    def __call__(self, event: GenerationEvent) -> None:
        if event.type == "generation_start":
            self._printed[event.message_id] = 0
            return

        blocks = event.data.get("content")
        if isinstance(blocks, list):
            text = self._text(blocks)
            printed = self._printed.get(event.message_id, 0)
            if len(text) > printed:
                sys.stdout.write(text[printed:])
                sys.stdout.flush()
                self._printed[event.message_id] = len(text)

        if event.type == "generation_end":
            metadata = event.data.get("metadata", {})
            print(
                f"\n[{metadata.get('output_tokens', 0)} tokens, "
                f"{metadata.get('generation_time', 0)} ms, "
                f"{metadata.get('tokens_per_second', 0)} tok/s]"
            )
        elif event.type == "generation_cancelled":
            print("\n[已停止]")
        elif event.type == "generation_error":
            print(f"\n[生成失败] {event.data.get('error', '')}")

        if event.type in ("generation_end", "generation_cancelled", "generation_error"):
            self._printed.pop(event.message_id, None)


# ==================== 子命令 ====================


async def _build_service(settings: SettingsService, sink=None) -> ThreadService:
    store = await create_local_message_store(settings=settings)
    orchestrator = GenerationOrchestrator(
        store=store,
        backends=await _init_backends(settings),
        search_engine=await _init_search_engine(settings),
        sink=sink,
        content_enricher=ContentEnricher(),
    )
    await orchestrator.recover_interrupted_messages()
    return ThreadService(store, orchestrator, settings=settings)


async def _run_chat(args: argparse.Namespace) -> int:
    settings = get_settings_service()
    service = await _build_service(settings, sink=CallbackEventSink(_StreamPrinter()))

    if args.conversation:
        conversation = await service.get_conversation(args.conversation)
    else:
        overrides: Dict[str, Any] = {}
        if args.provider:
            overrides["provider_id"] = args.provider
        if args.model:
            overrides["model_id"] = args.model
        if args.system_prompt is not None:
            overrides["system_prompt"] = args.system_prompt
        conversation = await service.create_conversation(settings=overrides)

    print(f"💬 对话 {conversation.id}（{conversation.settings.provider_id}/{conversation.settings.model_id}）")
    print("命令: /retry 重新生成  /continue 继续  /title 生成标题  /exit 退出\n")

    last_assistant_id: Optional[str] = None
    while True:
        try:
            line = await asyncio.to_thread(input, "> ")
        except EOFError:
            break
        line = line.strip()
        if not line:
            continue

        try:
            if line == "/exit":
                break
            elif line == "/title":
                print(f"🏷️ {await service.summarize_title(conversation.id)}")
                continue
            elif line == "/retry" and last_assistant_id:
                assistant = await service.retry_message(last_assistant_id)
            elif line == "/continue" and last_assistant_id:
                assistant = await service.continue_message(conversation.id, last_assistant_id)
            else:
                _, assistant = await service.send_message(conversation.id, line, search=args.search)

            last_assistant_id = assistant.id
            try:
                await service.wait_for(assistant.id)
            except KeyboardInterrupt:
                await service.stop_message(assistant.id)
        except (ThreadServiceError, GenerationError) as e:
            print(f"⚠️ {e}")
        except Exception as e:
            logger.error(f"❌ 对话失败: {e}", exc_info=True)

    return 0


async def _run_recover(args: argparse.Namespace) -> int:
    settings = get_settings_service()
    store = await create_local_message_store(settings=settings)
    orchestrator = GenerationOrchestrator(store=store, backends=BackendRegistry())
    recovered = await orchestrator.recover_interrupted_messages()
    print(f"✅ 已处理 {recovered} 条中断的消息")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=APP_NAME, description="多后端流式对话")
    parser.add_argument("--data-dir", help="数据目录（数据库、日志、config.yaml）")
    parser.add_argument("--log-level", default=None, help="日志级别（DEBUG/INFO/WARNING）")

    subparsers = parser.add_subparsers(dest="command", required=True)

    chat = subparsers.add_parser("chat", help="交互式对话")
    chat.add_argument("--conversation", help="继续已有对话")
    chat.add_argument("--provider", help="后端 ID")
    chat.add_argument("--model", help="模型 ID")
    chat.add_argument("--system-prompt", default=None, help="系统提示词")
    chat.add_argument("--search", action="store_true", help="开启联网搜索")

    subparsers.add_parser("recover", help="处理中断的消息")
    return parser


async def _main(args: argparse.Namespace) -> int:
    try:
        if args.command == "chat":
            return await _run_chat(args)
        return await _run_recover(args)
    finally:
        await close_local_engine()


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    if args.log_level:
        set_level(args.log_level)
    try:
        return asyncio.run(_main(args))
    except KeyboardInterrupt:
        print(f"\n👋 {APP_NAME} 已退出")
        return 130


if __name__ == "__main__":
    sys.exit(main())
