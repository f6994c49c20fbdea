"""
OpenAI Responses 适配器

base_url 可以直接配置成 .../responses，此时去掉该后缀得到模型列表地址。
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

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

RESPONSES_SUFFIX = "/responses"

_OPTION_FIELDS = {
    "max_tokens": "max_output_tokens",
}


class OpenAIResponsesAdapter(BaseAdapter):
    """OpenAI Responses 协议适配器"""

    channel_type = ChannelType.OPENAI_RESPONSES

    def models_base(self, channel: ChannelConfig) -> str:
        base = channel.effective_base_url
        if base.endswith(RESPONSES_SUFFIX):
            return base[: -len(RESPONSES_SUFFIX)]
        return base

    def build_request(
        self,
        req: GenerateRequest,
        channel: ChannelConfig,
        tools: Optional[List[ToolDeclaration]] = None,
    ) -> HttpRequestSpec:
        body: Dict[str, Any] = {
            "model": self._model(req, channel),
            "input": self.convert_history(prepare_history(req)),
        }
        if req.system_instruction:
            body["instructions"] = req.system_instruction

        declarations = tools if tools is not None else req.tools
        if declarations:
            body["tools"] = self.convert_tools(declarations)
        for key, value in select_enabled_options(req, channel).items():
            body[_OPTION_FIELDS.get(key, key)] = value
        if req.stream:
            body["stream"] = True

        return HttpRequestSpec(
            method="POST",
            url=f"{self.models_base(channel)}{RESPONSES_SUFFIX}",
            headers=self._headers(channel, self._bearer(channel)),
            body=body,
            stream=req.stream,
            timeout=channel.timeout,
        )

    @staticmethod
    def _bearer(channel: ChannelConfig) -> Dict[str, str]:
        return {"Authorization": f"Bearer {channel.api_key}"} if channel.api_key else {}

    def convert_history(self, history: List[Content]) -> List[Dict[str, Any]]:
        """转换为 input 数组，函数调用与结果是独立的输入项"""
        items: List[Dict[str, Any]] = []
        for content in history:
            is_model = content.role == Role.MODEL
            for part in content.parts:
                if part.function_call is not None:
                    items.append({
                        "type": "function_call",
                        "call_id": part.function_call.id,
                        "name": part.function_call.name,
                        "arguments": json.dumps(part.function_call.args, ensure_ascii=False),
                    })
                elif part.function_response is not None:
                    items.append({
                        "type": "function_call_output",
                        "call_id": part.function_response.id,
                        "output": json.dumps(part.function_response.response, ensure_ascii=False),
                    })
                elif part.text:
                    items.append({
                        "role": "assistant" if is_model else "user",
                        "content": [{
                            "type": "output_text" if is_model else "input_text",
                            "text": part.text,
                        }],
                    })
        return items

    def convert_tools(self, tools: List[ToolDeclaration]) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            }
            for tool in tools
        ]

    def parse_response(self, raw: Dict[str, Any]) -> GenerateResponse:
        parts: List[Part] = []
        for item in raw.get("output") or []:
            kind = item.get("type")
            if kind == "message":
                for block in item.get("content") or []:
                    if block.get("type") == "output_text":
                        parts.append(Part.of_text(block.get("text", "")))
            elif kind == "reasoning":
                for summary in item.get("summary") or []:
                    if summary.get("text"):
                        parts.append(Part.of_text(summary["text"], thought=True))
            elif kind == "function_call":
                parts.append(Part.of_call(self._call_from_item(item)))

        usage = self._parse_usage(raw.get("usage"))
        finish = self._finish_reason(raw)
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

        if kind == "response.created":
            return StreamDelta(model_version=(event.get("response") or {}).get("model"))

        if kind == "response.output_text.delta":
            return StreamDelta(text=event["delta"])

        if kind == "response.reasoning_summary_text.delta":
            return StreamDelta(thought=event["delta"])

        if kind == "response.output_item.added":
            item = event["item"]
            if item.get("type") != "function_call":
                return StreamDelta()
            return StreamDelta(call_starts=[ToolCallFragment(
                key=str(event["output_index"]),
                id=item.get("call_id"),
                name=item.get("name"),
            )])

        if kind == "response.function_call_arguments.delta":
            return StreamDelta(call_deltas=[
                ToolCallFragment(key=str(event["output_index"]), arguments=event.get("delta", ""))
            ])

        if kind == "response.function_call_arguments.done":
            return StreamDelta(call_ends=[str(event["output_index"])])

        if kind == "response.output_item.done":
            item = event["item"]
            if item.get("type") != "function_call":
                return StreamDelta()
            return StreamDelta(
                call_ends=[str(event["output_index"])],
                complete_calls=[self._call_from_item(item)],
            )

        if kind in ("response.completed", "response.incomplete"):
            response = event["response"]
            return StreamDelta(
                usage=self._parse_usage(response.get("usage")),
                model_version=response.get("model"),
                finish_reason=self._finish_reason(response),
                done=True,
            )

        if kind == "response.failed":
            error = (event.get("response") or {}).get("error") or {}
            return StreamDelta(error=error.get("message") or "Response failed")

        if kind == "error":
            return StreamDelta(error=event.get("message") or "Unknown Responses API error")

        return None

    @staticmethod
    def _call_from_item(item: Dict[str, Any]) -> FunctionCall:
        return FunctionCall(
            id=item.get("call_id") or generate_tool_call_id(),
            name=item["name"],
            args=parse_arguments(item.get("arguments")),
        )

    @staticmethod
    def _finish_reason(response: Dict[str, Any]) -> str:
        if response.get("status") == "incomplete":
            return FinishReason.LENGTH.value
        if any(item.get("type") == "function_call" for item in response.get("output") or []):
            return FinishReason.TOOL_CALLS.value
        return FinishReason.STOP.value

    @staticmethod
    def _parse_usage(usage: Optional[Dict[str, Any]]) -> Optional[Usage]:
        if not usage:
            return None
        prompt = usage.get("input_tokens", 0)
        completion = usage.get("output_tokens", 0)
        return Usage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=usage.get("total_tokens", prompt + completion),
        )

    def build_models_request(self, channel: ChannelConfig) -> HttpRequestSpec:
        return HttpRequestSpec(
            method="GET",
            url=f"{self.models_base(channel)}/models",
            headers=self._bearer(channel),
            timeout=channel.timeout,
        )
