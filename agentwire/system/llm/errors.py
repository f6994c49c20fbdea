"""
错误类型

所有异常都继承 AgentWireError，携带 code 字段，
在工具循环边界被转换为 error 事件。
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class AgentWireError(Exception):
    """基础异常"""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ConfigError(AgentWireError):
    """渠道或模式配置无效"""

    code = "CONFIG_ERROR"


class ProtocolError(AgentWireError):
    """
    后端协议错误

    非2xx状态码或无法解析的响应体。对当前轮次是致命的，
    适配器内部不重试。
    """

    code = "PROTOCOL_ERROR"

    def __init__(self, status: int, body: Any, message: Optional[str] = None):
        self.status = status
        self.body = body
        super().__init__(message or f"HTTP {status}: {_summarize_body(body)}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["status"] = self.status
        data["body"] = self.body
        return data


class BudgetExceeded(AgentWireError):
    """迭代次数或运行时长超出限制"""

    def __init__(self, kind: str, limit: float, elapsed: Optional[float] = None):
        self.kind = kind
        self.limit = limit
        self.elapsed = elapsed
        if kind == "runtime":
            message = f"Exceeded maximum runtime ({limit:g}s). Elapsed: {elapsed or 0:.1f}s"
            code = "MAX_RUNTIME"
        else:
            message = f"Exceeded maximum iterations ({int(limit)})"
            code = "MAX_TOOL_ITERATIONS"
        super().__init__(message, code=code)


class CancellationRequested(AgentWireError):
    """用户取消，不作为失败上报"""

    code = "CANCELLED"

    def __init__(self, message: str = "Cancelled by user"):
        super().__init__(message)


class ToolExecutionError(AgentWireError):
    """工具主动报告的执行失败，作为该调用的失败结果回传给模型"""

    code = "TOOL_EXECUTION_ERROR"

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(message)


class InvalidToolCallTransition(AgentWireError):
    """工具调用状态的非法迁移"""

    code = "INVALID_TOOL_CALL_TRANSITION"


def _summarize_body(body: Any) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    text = str(body)
    return text if len(text) <= 500 else text[:500] + "..."
