"""
系统服务

日志服务；配置中心位于 agentwire.system.services.config_center。
"""

from agentwire.system.services.logger import (
    Layer,
    LoggerMixin,
    get_logger,
    setup_logging,
    trace_context,
)

__all__ = [
    "Layer",
    "LoggerMixin",
    "get_logger",
    "setup_logging",
    "trace_context",
]
