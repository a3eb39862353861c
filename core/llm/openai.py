"""
OpenAI 兼容 LLM 服务实现

基于 OpenAI SDK 实现，支持 OpenAI 官方 API 及兼容接口（DeepSeek、Qwen、本地推理服务等）。

支持的功能：
- 流式对话，推理内容来自 delta.reasoning_content 或内联 <think> 标签
- Function Calling（可选 tool_executor，带调用次数上限）
- stream_options.include_usage 上报 token 使用量
- 协作式终止（stop_stream）

参考文档：
- https://platform.openai.com/docs/api-reference/chat
"""

import json
import os
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Union

from openai import AsyncOpenAI

from logger import get_logger
from models.usage import UsageTotals

from .base import BaseLLMService, ChatEntry
from .events import (
    ContentDelta,
    ReasoningDelta,
    StreamEnd,
    StreamError,
    StreamEvent,
    ToolCallEnd,
    ToolCallError,
    ToolCallLimitReached,
    ToolCallStart,
    UsageTotalsEvent,
)
from .think_tags import ThinkTagSplitter

logger = get_logger("llm.openai")

# 详细日志开关
LLM_DEBUG_VERBOSE = os.getenv("LLM_DEBUG_VERBOSE", "").lower() in ("1", "true", "yes")

# 工具执行器：(name, arguments) -> 工具结果（{"content": str | [parts], ...}）
ToolExecutor = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]

DEFAULT_MAX_TOOL_CALLS = 50


def _tool_result_text(result: Dict[str, Any]) -> str:
    """工具结果转文本（回填给模型，同时作为 tool_call 块的 response）"""
    content = result.get("content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        ]
        if texts:
            return "\n".join(texts)
    return json.dumps(content, ensure_ascii=False)


# ============================================================
# OpenAI 兼容 LLM 服务
# ============================================================


class OpenAICompatibleService(BaseLLMService):
    """
    OpenAI 兼容 LLM 服务

    使用示例：
    ```python
    llm = OpenAICompatibleService(
        provider_id="deepseek",
        api_key=os.getenv("DEEPSEEK_API_KEY"),
        base_url="https://api.deepseek.com/v1",
    )

    async for event in llm.stream_completion(entries, "deepseek-chat", 0.7, 2000, message_id="m1"):
        ...
    ```
    """

    def __init__(
        self,
        provider_id: str = "openai",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
        max_retries: int = 3,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_executor: Optional[ToolExecutor] = None,
        max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS,
        server_name: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        初始化 OpenAI 兼容服务

        Args:
            provider_id: 后端 ID（注册表中的键）
            api_key: API 密钥（默认读取 OPENAI_API_KEY）
            base_url: API 端点
            timeout: 请求超时（秒）
            max_retries: SDK 内部重试次数
            tools: OpenAI 格式的工具定义
            tool_executor: 工具执行器，未提供时不发起工具调用
            max_tool_calls: 单次生成允许的工具调用次数上限
            server_name: 工具来源标识（写入 tool_call 块）
            client: 预先构造的客户端（测试注入）
        """
        self.provider_id = provider_id
        self.tools = tools or []
        self.tool_executor = tool_executor
        self.max_tool_calls = max_tool_calls
        self.server_name = server_name or provider_id

        if client is not None:
            self.client = client
        else:
            api_key = api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ValueError(
                    "OpenAI API Key 未设置。请设置 OPENAI_API_KEY 环境变量或传入 api_key 参数"
                )
            base_url = base_url or "https://api.openai.com/v1"
            self.client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=timeout,
                max_retries=max_retries,
            )

        # 正在进行的流与已请求终止的消息
        self._active_streams: Set[str] = set()
        self._stop_requested: Set[str] = set()

        logger.info(f"✅ OpenAI 兼容服务初始化成功: provider={provider_id}")

    # ============================================================
    # 流式补全
    # ============================================================

    async def stream_completion(
        self,
        entries: List[ChatEntry],
        model_id: str,
        temperature: float,
        max_tokens: int,
        *,
        message_id: str,
    ) -> AsyncIterator[StreamEvent]:
        messages: List[Dict[str, Any]] = [entry.to_dict() for entry in entries]
        usage: Optional[UsageTotals] = None
        tool_call_count = 0

        # 新一轮流不继承上一次的终止请求
        self._stop_requested.discard(message_id)
        self._active_streams.add(message_id)
        logger.info(f"📤 流式请求: provider={self.provider_id}, model={model_id}, messages={len(messages)}")

        try:
            while True:
                request_params: Dict[str, Any] = {
                    "model": model_id,
                    "messages": messages,
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                    "stream": True,
                    "stream_options": {"include_usage": True},
                }
                if self.tools and self.tool_executor is not None:
                    request_params["tools"] = self.tools
                    request_params["tool_choice"] = "auto"

                round_base_usage = usage
                splitter = ThinkTagSplitter()
                accumulated_content = ""
                pending_calls: List[Dict[str, str]] = []
                stopped = False

                stream = await self.client.chat.completions.create(**request_params)
                try:
                    async for chunk in stream:
                        if message_id in self._stop_requested:
                            stopped = True
                            break

                        if chunk.usage:
                            # 部分兼容服务每个 chunk 都带累计 usage，按轮次覆盖
                            usage = self._merge_usage(round_base_usage, chunk.usage)
                            yield UsageTotalsEvent(usage=usage)

                        if not chunk.choices:
                            continue

                        delta = chunk.choices[0].delta

                        # 推理模型通过 reasoning_content 返回思考内容
                        reasoning = getattr(delta, "reasoning_content", None)
                        if reasoning:
                            yield ReasoningDelta(text=reasoning)

                        if delta.content:
                            for kind, text in splitter.feed(delta.content):
                                if kind == "reasoning":
                                    yield ReasoningDelta(text=text)
                                else:
                                    accumulated_content += text
                                    yield ContentDelta(text=text)

                        if delta.tool_calls:
                            for tool_call in delta.tool_calls:
                                while len(pending_calls) <= tool_call.index:
                                    pending_calls.append({"id": "", "name": "", "arguments": ""})
                                slot = pending_calls[tool_call.index]
                                if tool_call.id:
                                    slot["id"] = tool_call.id
                                if tool_call.function:
                                    if tool_call.function.name:
                                        slot["name"] = tool_call.function.name
                                    if tool_call.function.arguments:
                                        slot["arguments"] += tool_call.function.arguments
                finally:
                    await stream.close()

                if stopped:
                    logger.info(f"🛑 流已终止: message_id={message_id}")
                    yield StreamEnd(usage=usage)
                    return

                for kind, text in splitter.flush():
                    if kind == "reasoning":
                        yield ReasoningDelta(text=text)
                    else:
                        accumulated_content += text
                        yield ContentDelta(text=text)

                calls = [c for c in pending_calls if c["name"]]
                if not calls or self.tool_executor is None:
                    yield StreamEnd(usage=usage)
                    return

                # 工具调用回合
                messages.append({
                    "role": "assistant",
                    "content": accumulated_content or None,
                    "tool_calls": [
                        {
                            "id": c["id"],
                            "type": "function",
                            "function": {"name": c["name"], "arguments": c["arguments"] or "{}"},
                        }
                        for c in calls
                    ],
                })

                for call in calls:
                    if tool_call_count >= self.max_tool_calls:
                        logger.warning(f"⚠️ 工具调用次数达到上限: {self.max_tool_calls}")
                        yield ToolCallLimitReached(
                            tool_call_id=call["id"],
                            name=call["name"],
                            params=call["arguments"],
                            server_name=self.server_name,
                        )
                        yield StreamEnd(usage=usage)
                        return

                    tool_call_count += 1
                    yield ToolCallStart(
                        tool_call_id=call["id"],
                        name=call["name"],
                        params=call["arguments"],
                        server_name=self.server_name,
                    )
                    outcome = await self._execute_tool(call)
                    yield outcome
                    messages.append({
                        "role": "tool",
                        "tool_call_id": call["id"],
                        "content": outcome.error if isinstance(outcome, ToolCallError) else outcome.response,
                    })

                if message_id in self._stop_requested:
                    yield StreamEnd(usage=usage)
                    return
        except Exception as e:
            logger.error(f"❌ 流式请求失败: provider={self.provider_id}, error={e}", exc_info=True)
            yield StreamError(cause=str(e))
        finally:
            self._active_streams.discard(message_id)
            self._stop_requested.discard(message_id)

    async def _execute_tool(self, call: Dict[str, str]) -> Union[ToolCallEnd, ToolCallError]:
        """执行工具，工具异常转为 ToolCallError 事件"""
        try:
            arguments = json.loads(call["arguments"], strict=False) if call["arguments"] else {}
            result = await self.tool_executor(call["name"], arguments)
        except Exception as e:
            logger.warning(f"⚠️ 工具执行失败: {call['name']}, error={e}")
            return ToolCallError(tool_call_id=call["id"], name=call["name"], error=str(e))

        if LLM_DEBUG_VERBOSE:
            logger.debug(f"🔧 工具结果: {call['name']} -> {result}")
        return ToolCallEnd(
            tool_call_id=call["id"],
            name=call["name"],
            response=_tool_result_text(result),
            raw_response=result,
        )

    @staticmethod
    def _merge_usage(current: Optional[UsageTotals], reported: Any) -> UsageTotals:
        """多轮工具调用时累加 usage"""
        prompt = getattr(reported, "prompt_tokens", 0) or 0
        completion = getattr(reported, "completion_tokens", 0) or 0
        if current is None:
            return UsageTotals(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=prompt + completion,
            )
        return UsageTotals(
            prompt_tokens=current.prompt_tokens + prompt,
            completion_tokens=current.completion_tokens + completion,
            total_tokens=current.total_tokens + prompt + completion,
        )

    async def stop_stream(self, message_id: str) -> None:
        if message_id not in self._active_streams:
            return
        self._stop_requested.add(message_id)

    # ============================================================
    # 非流式补全
    # ============================================================

    async def quick_completion(self, entries: List[ChatEntry], model_id: str) -> str:
        response = await self.client.chat.completions.create(
            model=model_id,
            messages=[entry.to_dict() for entry in entries],
            temperature=0.5,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""
