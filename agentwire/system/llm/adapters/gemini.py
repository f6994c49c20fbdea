"""
Gemini 适配器

generateContent / streamGenerateContent(SSE) 协议。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import quote

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
    ToolDeclaration,
    Usage,
    generate_tool_call_id,
)

# 统一参数名 -> generationConfig 字段
_OPTION_FIELDS = {
    "temperature": "temperature",
    "max_tokens": "maxOutputTokens",
    "top_p": "topP",
    "top_k": "topK",
    "thinking": "thinkingConfig",
    "stop": "stopSequences",
}

_FINISH_REASON_MAP = {
    "STOP": FinishReason.STOP.value,
    "MAX_TOKENS": FinishReason.LENGTH.value,
    "SAFETY": FinishReason.CONTENT_FILTER.value,
    "RECITATION": FinishReason.CONTENT_FILTER.value,
    "BLOCKLIST": FinishReason.CONTENT_FILTER.value,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTER.value,
}


class GeminiAdapter(BaseAdapter):
    """Gemini 协议适配器"""

    channel_type = ChannelType.GEMINI

    def build_request(
        self,
        req: GenerateRequest,
        channel: ChannelConfig,
        tools: Optional[List[ToolDeclaration]] = None,
    ) -> HttpRequestSpec:
        base = channel.effective_base_url
        model = quote(self._model(req, channel), safe="")
        if req.stream:
            url = f"{base}/models/{model}:streamGenerateContent?alt=sse"
        else:
            url = f"{base}/models/{model}:generateContent"

        body: Dict[str, Any] = {"contents": self.convert_history(prepare_history(req))}
        if req.system_instruction:
            body["systemInstruction"] = {"parts": [{"text": req.system_instruction}]}

        declarations = tools if tools is not None else req.tools
        if declarations:
            body["tools"] = self.convert_tools(declarations)

        generation_config = {
            _OPTION_FIELDS.get(key, key): value
            for key, value in select_enabled_options(req, channel).items()
        }
        if generation_config:
            body["generationConfig"] = generation_config

        return HttpRequestSpec(
            method="POST",
            url=url,
            headers=self._headers(channel, self.auth_headers(channel, "x-goog-api-key")),
            body=body,
            stream=req.stream,
            timeout=channel.timeout,
        )

    def convert_history(self, history: List[Content]) -> List[Dict[str, Any]]:
        """转换为 contents 数组"""
        contents = []
        for content in history:
            role = "model" if content.role == Role.MODEL else "user"
            parts = []
            for part in content.parts:
                if part.function_call is not None:
                    parts.append({"functionCall": {
                        "id": part.function_call.id,
                        "name": part.function_call.name,
                        "args": part.function_call.args,
                    }})
                elif part.function_response is not None:
                    parts.append({"functionResponse": {
                        "id": part.function_response.id,
                        "name": part.function_response.name,
                        "response": part.function_response.response,
                    }})
                elif part.text is not None:
                    parts.append({"text": part.text})
            if parts:
                contents.append({"role": role, "parts": parts})
        return contents

    def convert_tools(self, tools: List[ToolDeclaration]) -> List[Dict[str, Any]]:
        return [{
            "functionDeclarations": [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                }
                for tool in tools
            ]
        }]

    def parse_response(self, raw: Dict[str, Any]) -> GenerateResponse:
        parts, calls, finish = self._parse_candidate(raw)
        usage = self._parse_usage(raw)
        model_version = raw.get("modelVersion")

        content = Content(role=Role.MODEL, parts=parts)
        if calls:
            finish = FinishReason.TOOL_CALLS.value
        content.usage = usage
        content.model_version = model_version
        content.finish_reason = finish
        return GenerateResponse(
            content=content,
            usage=usage,
            model_version=model_version,
            finish_reason=finish,
            raw=raw,
        )

    def _parse_event(self, event: Dict[str, Any]) -> Optional[StreamDelta]:
        if "error" in event:
            error = event["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            return StreamDelta(error=message or "Unknown Gemini error")

        block_reason = (event.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            return StreamDelta(error=f"Prompt blocked: {block_reason}")

        if "candidates" not in event and "usageMetadata" not in event:
            return None

        delta = StreamDelta(usage=self._parse_usage(event), model_version=event.get("modelVersion"))
        parts, calls, finish = self._parse_candidate(event)
        for part in parts:
            if part.function_call is not None:
                continue
            if part.thought:
                delta.thought = (delta.thought or "") + (part.text or "")
            elif part.text:
                delta.text = (delta.text or "") + part.text
        delta.complete_calls = calls
        if finish is not None:
            delta.finish_reason = FinishReason.TOOL_CALLS.value if calls else finish
            delta.done = True
        return delta

    def _parse_candidate(self, raw: Dict[str, Any]):
        candidates = raw.get("candidates") or []
        if not candidates:
            return [], [], None
        candidate = candidates[0]
        parts: List[Part] = []
        calls: List[FunctionCall] = []
        for item in (candidate.get("content") or {}).get("parts") or []:
            if "functionCall" in item:
                fc = item["functionCall"]
                call = FunctionCall(
                    id=fc.get("id") or generate_tool_call_id(),
                    name=fc["name"],
                    args=fc.get("args") or {},
                )
                calls.append(call)
                parts.append(Part.of_call(call))
            elif "text" in item:
                parts.append(Part.of_text(item["text"], thought=bool(item.get("thought"))))
        reason = candidate.get("finishReason")
        finish = _FINISH_REASON_MAP.get(reason, FinishReason.STOP.value) if reason else None
        return parts, calls, finish

    @staticmethod
    def _parse_usage(raw: Dict[str, Any]) -> Optional[Usage]:
        meta = raw.get("usageMetadata")
        if not meta:
            return None
        prompt = meta.get("promptTokenCount", 0)
        completion = meta.get("candidatesTokenCount", 0) + meta.get("thoughtsTokenCount", 0)
        return Usage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=meta.get("totalTokenCount", prompt + completion),
        )

    def build_models_request(self, channel: ChannelConfig) -> HttpRequestSpec:
        url = f"{channel.effective_base_url}/models"
        headers = {}
        if channel.use_authorization_header:
            headers = self.auth_headers(channel, "x-goog-api-key")
        elif channel.api_key:
            url = f"{url}?key={quote(channel.api_key, safe='')}"
        return HttpRequestSpec(method="GET", url=url, headers=headers, timeout=channel.timeout)

    def parse_models(self, raw: Dict[str, Any]) -> List[str]:
        names = []
        for item in raw.get("models", []):
            name = item.get("name", "")
            names.append(name[len("models/"):] if name.startswith("models/") else name)
        return sorted(n for n in names if n)
