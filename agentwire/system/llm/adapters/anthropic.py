"""
Anthropic Messages 适配器
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from agentwire.system.llm.adapters.base import (
    BaseAdapter,
    HttpRequestSpec,
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

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 8192

_PASSTHROUGH_OPTIONS = ("temperature", "top_p", "top_k")

_FINISH_REASON_MAP = {
    "end_turn": FinishReason.STOP.value,
    "stop_sequence": FinishReason.STOP.value,
    "tool_use": FinishReason.TOOL_CALLS.value,
    "max_tokens": FinishReason.LENGTH.value,
    "refusal": FinishReason.CONTENT_FILTER.value,
}


def _strip_suffix(url: str, suffix: str) -> str:
    return url[: -len(suffix)] if url.endswith(suffix) else url


class AnthropicAdapter(BaseAdapter):
    """Anthropic Messages 协议适配器"""

    channel_type = ChannelType.ANTHROPIC

    def api_root(self, channel: ChannelConfig) -> str:
        """去掉 /v1/messages 或 /v1 后缀得到的根地址"""
        base = channel.effective_base_url
        base = _strip_suffix(base, "/v1/messages")
        return _strip_suffix(base, "/v1")

    def _auth(self, channel: ChannelConfig) -> Dict[str, str]:
        headers = self.auth_headers(channel, "x-api-key")
        headers["anthropic-version"] = ANTHROPIC_VERSION
        return headers

    def build_request(
        self,
        req: GenerateRequest,
        channel: ChannelConfig,
        tools: Optional[List[ToolDeclaration]] = None,
    ) -> HttpRequestSpec:
        options = select_enabled_options(req, channel)
        body: Dict[str, Any] = {
            "model": self._model(req, channel),
            "max_tokens": int(options.get("max_tokens", DEFAULT_MAX_TOKENS)),
            "messages": self.convert_history(prepare_history(req)),
        }
        if req.system_instruction:
            body["system"] = req.system_instruction

        declarations = tools if tools is not None else req.tools
        if declarations:
            body["tools"] = self.convert_tools(declarations)

        for key in _PASSTHROUGH_OPTIONS:
            if key in options:
                body[key] = options[key]
        thinking = self._thinking(options.get("thinking"))
        if thinking:
            body["thinking"] = thinking
        if req.stream:
            body["stream"] = True

        return HttpRequestSpec(
            method="POST",
            url=f"{self.api_root(channel)}/v1/messages",
            headers=self._headers(channel, self._auth(channel)),
            body=body,
            stream=req.stream,
            timeout=channel.timeout,
        )

    @staticmethod
    def _thinking(value: Any) -> Optional[Dict[str, Any]]:
        """thinking 选项: {type: enabled|adaptive|disabled, budget_tokens}"""
        if not isinstance(value, dict):
            return None
        kind = value.get("type", "enabled")
        if kind == "disabled":
            return None
        result: Dict[str, Any] = {"type": kind}
        if kind == "enabled":
            result["budget_tokens"] = int(value.get("budget_tokens", 1024))
        return result

    def convert_history(self, history: List[Content]) -> List[Dict[str, Any]]:
        """转换为 messages 数组，合并相邻的同角色消息"""
        messages: List[Dict[str, Any]] = []
        for content in history:
            role = "assistant" if content.role == Role.MODEL else "user"
            blocks: List[Dict[str, Any]] = []
            for part in content.parts:
                if part.function_call is not None:
                    blocks.append({
                        "type": "tool_use",
                        "id": part.function_call.id,
                        "name": part.function_call.name,
                        "input": part.function_call.args,
                    })
                elif part.function_response is not None:
                    response = part.function_response.response
                    block: Dict[str, Any] = {
                        "type": "tool_result",
                        "tool_use_id": part.function_response.id,
                        "content": json.dumps(response, ensure_ascii=False),
                    }
                    if response.get("success") is False:
                        block["is_error"] = True
                    blocks.append(block)
                elif part.text:
                    blocks.append({"type": "text", "text": part.text})
            if not blocks:
                continue
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"].extend(blocks)
            else:
                messages.append({"role": role, "content": blocks})
        return messages

    def convert_tools(self, tools: List[ToolDeclaration]) -> List[Dict[str, Any]]:
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters,
            }
            for tool in tools
        ]

    def parse_response(self, raw: Dict[str, Any]) -> GenerateResponse:
        parts: List[Part] = []
        for block in raw.get("content") or []:
            kind = block.get("type")
            if kind == "text":
                parts.append(Part.of_text(block.get("text", "")))
            elif kind == "thinking":
                parts.append(Part.of_text(block.get("thinking", ""), thought=True))
            elif kind == "tool_use":
                parts.append(Part.of_call(FunctionCall(
                    id=block.get("id") or generate_tool_call_id(),
                    name=block["name"],
                    args=block.get("input") or {},
                )))

        usage = self._parse_usage(raw.get("usage"))
        finish = _FINISH_REASON_MAP.get(raw.get("stop_reason"), FinishReason.STOP.value)
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

    def _parse_event(self, event: Dict[str, Any]) -> Optional[StreamDelta]:
        kind = event.get("type")

        if kind == "message_start":
            message = event["message"]
            return StreamDelta(
                model_version=message.get("model"),
                usage=self._parse_usage(message.get("usage")),
            )

        if kind == "content_block_start":
            key = str(event["index"])
            block = event["content_block"]
            if block.get("type") == "tool_use":
                return StreamDelta(call_starts=[
                    ToolCallFragment(key=key, id=block.get("id"), name=block.get("name"))
                ])
            if block.get("type") == "text" and block.get("text"):
                return StreamDelta(text=block["text"])
            return StreamDelta()

        if kind == "content_block_delta":
            key = str(event["index"])
            payload = event["delta"]
            delta_type = payload.get("type")
            if delta_type == "text_delta":
                return StreamDelta(text=payload["text"])
            if delta_type == "thinking_delta":
                return StreamDelta(thought=payload["thinking"])
            if delta_type == "input_json_delta":
                return StreamDelta(call_deltas=[
                    ToolCallFragment(key=key, arguments=payload.get("partial_json", ""))
                ])
            return None

        if kind == "content_block_stop":
            return StreamDelta(call_ends=[str(event["index"])])

        if kind == "message_delta":
            reason = (event.get("delta") or {}).get("stop_reason")
            return StreamDelta(
                finish_reason=_FINISH_REASON_MAP.get(reason, FinishReason.STOP.value) if reason else None,
                usage=self._parse_usage(event.get("usage")),
            )

        if kind == "message_stop":
            return StreamDelta(done=True)

        if kind == "error":
            error = event.get("error") or {}
            return StreamDelta(error=error.get("message") or "Unknown Anthropic error")

        return None

    @staticmethod
    def _parse_usage(usage: Optional[Dict[str, Any]]) -> Optional[Usage]:
        if not usage:
            return None
        prompt = usage.get("input_tokens", 0)
        completion = usage.get("output_tokens", 0)
        return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)

    def build_models_request(self, channel: ChannelConfig) -> HttpRequestSpec:
        return HttpRequestSpec(
            method="GET",
            url=f"{self.api_root(channel)}/v1/models",
            headers=self._auth(channel),
            timeout=channel.timeout,
        )
