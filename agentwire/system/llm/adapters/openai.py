"""
OpenAI Chat Completions 适配器

也适用于兼容该协议的第三方服务。
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Union

from agentwire.system.llm.adapters.base import (
    BaseAdapter,
    HttpRequestSpec,
    parse_arguments,
    prepare_history,
    select_enabled_options,
)
from agentwire.system.llm.config import ChannelConfig, ChannelType
from agentwire.system.llm.message import (
    Content,
    FinishReason,
    FunctionCall,
    GenerateRequest,
    GenerateResponse,
    Part,
    Role,
    StreamDelta,
    ToolCallFragment,
    ToolDeclaration,
    Usage,
    generate_tool_call_id,
)

_FINISH_REASON_MAP = {
    "stop": FinishReason.STOP.value,
    "tool_calls": FinishReason.TOOL_CALLS.value,
    "function_call": FinishReason.TOOL_CALLS.value,
    "length": FinishReason.LENGTH.value,
    "content_filter": FinishReason.CONTENT_FILTER.value,
}

STREAM_DONE_MARKER = "[DONE]"


class OpenAIAdapter(BaseAdapter):
    """OpenAI Chat Completions 协议适配器"""

    channel_type = ChannelType.OPENAI

    def build_request(
        self,
        req: GenerateRequest,
        channel: ChannelConfig,
        tools: Optional[List[ToolDeclaration]] = None,
    ) -> HttpRequestSpec:
        messages = []
        if req.system_instruction:
            messages.append({"role": "system", "content": req.system_instruction})
        messages.extend(self.convert_history(prepare_history(req)))

        body: Dict[str, Any] = {"model": self._model(req, channel), "messages": messages}
        declarations = tools if tools is not None else req.tools
        if declarations:
            body["tools"] = self.convert_tools(declarations)
        body.update(select_enabled_options(req, channel))
        if req.stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}

        return HttpRequestSpec(
            method="POST",
            url=f"{channel.effective_base_url}/chat/completions",
            headers=self._headers(channel, self._bearer(channel)),
            body=body,
            stream=req.stream,
            timeout=channel.timeout,
        )

    @staticmethod
    def _bearer(channel: ChannelConfig) -> Dict[str, str]:
        return {"Authorization": f"Bearer {channel.api_key}"} if channel.api_key else {}

    def convert_history(self, history: List[Content]) -> List[Dict[str, Any]]:
        """转换为 messages 数组，函数响应拆成独立的 tool 消息"""
        messages: List[Dict[str, Any]] = []
        for content in history:
            if content.role == Role.MODEL:
                message: Dict[str, Any] = {"role": "assistant", "content": content.text or None}
                calls = content.function_calls
                if calls:
                    message["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.args, ensure_ascii=False),
                            },
                        }
                        for call in calls
                    ]
                messages.append(message)
                continue

            for part in content.parts:
                if part.function_response is not None:
                    messages.append({
                        "role": "tool",
                        "tool_call_id": part.function_response.id,
                        "content": json.dumps(part.function_response.response, ensure_ascii=False),
                    })
            if content.text:
                messages.append({"role": "user", "content": content.text})
        return messages

    def convert_tools(self, tools: List[ToolDeclaration]) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in tools
        ]

    def parse_response(self, raw: Dict[str, Any]) -> GenerateResponse:
        choice = raw["choices"][0]
        message = choice.get("message") or {}
        parts: List[Part] = []
        if message.get("reasoning_content"):
            parts.append(Part.of_text(message["reasoning_content"], thought=True))
        if message.get("content"):
            parts.append(Part.of_text(message["content"]))
        for tc in message.get("tool_calls") or []:
            function = tc.get("function") or {}
            parts.append(Part.of_call(FunctionCall(
                id=tc.get("id") or generate_tool_call_id(),
                name=function.get("name", ""),
                args=parse_arguments(function.get("arguments")),
            )))

        usage = self._parse_usage(raw)
        finish = _FINISH_REASON_MAP.get(choice.get("finish_reason"), FinishReason.STOP.value)
        content = Content(
            role=Role.MODEL,
            parts=parts,
            usage=usage,
            model_version=raw.get("model"),
            finish_reason=finish,
        )
        return GenerateResponse(
            content=content,
            usage=usage,
            model_version=raw.get("model"),
            finish_reason=finish,
            raw=raw,
        )

    def parse_stream_chunk(self, raw: Union[str, bytes, Dict[str, Any]]) -> Optional[StreamDelta]:
        if isinstance(raw, (str, bytes)):
            text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
            if text.strip() == STREAM_DONE_MARKER:
                return StreamDelta(done=True)
        return super().parse_stream_chunk(raw)

    def _parse_event(self, event: Dict[str, Any]) -> Optional[StreamDelta]:
        if "error" in event:
            error = event["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            return StreamDelta(error=message or "Unknown OpenAI error")
        if "choices" not in event:
            return None

        delta = StreamDelta(usage=self._parse_usage(event), model_version=event.get("model"))
        for choice in event["choices"][:1]:
            payload = choice.get("delta") or {}
            if payload.get("reasoning_content"):
                delta.thought = payload["reasoning_content"]
            if payload.get("content"):
                delta.text = payload["content"]
            for tc in payload.get("tool_calls") or []:
                key = str(tc.get("index", 0))
                function = tc.get("function") or {}
                if tc.get("id"):
                    delta.call_starts.append(ToolCallFragment(
                        key=key, id=tc["id"], name=function.get("name"),
                    ))
                if function.get("arguments"):
                    delta.call_deltas.append(ToolCallFragment(key=key, arguments=function["arguments"]))
            reason = choice.get("finish_reason")
            if reason:
                delta.finish_reason = _FINISH_REASON_MAP.get(reason, FinishReason.STOP.value)
        return delta

    @staticmethod
    def _parse_usage(raw: Dict[str, Any]) -> Optional[Usage]:
        usage = raw.get("usage")
        if not usage:
            return None
        return Usage(
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            total_tokens=usage.get("total_tokens", 0),
        )

    def build_models_request(self, channel: ChannelConfig) -> HttpRequestSpec:
        return HttpRequestSpec(
            method="GET",
            url=f"{channel.effective_base_url}/models",
            headers=self._bearer(channel),
            timeout=channel.timeout,
        )
