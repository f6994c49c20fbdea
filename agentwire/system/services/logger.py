"""
日志服务

日志记录带上对话ID、层级和组件名，便于在多个并发对话中追踪一次运行。
这些字段保存在 contextvars 中，跨 await 自动传递。
"""

import contextvars
import logging
import sys
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple, Union

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(conversation)s | %(layer)s/%(component)s | %(message)s"
LOG_FORMAT_SIMPLE = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%H:%M:%S"

# 这些第三方日志器在 DEBUG 以下保持 WARNING
NOISY_LOGGERS = ("httpx", "httpcore")

_conversation_var: contextvars.ContextVar[str] = contextvars.ContextVar("conversation", default="-")
_layer_var: contextvars.ContextVar[str] = contextvars.ContextVar("layer", default="-")
_component_var: contextvars.ContextVar[str] = contextvars.ContextVar("component", default="-")

_handler: Optional[logging.Handler] = None


class Layer:
    """模块层级常量"""
    ADAPTER = "Adapter"
    TRANSPORT = "Transport"
    STREAM = "Stream"
    POLICY = "Policy"
    LOOP = "Loop"
    SUBAGENT = "SubAgent"
    STORE = "Store"
    CONFIG = "Config"


class ConversationFilter(logging.Filter):
    """把当前上下文的对话ID、层级、组件写入日志记录"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.conversation = _conversation_var.get()
        record.layer = _layer_var.get()
        record.component = _component_var.get()
        return True


@contextmanager
def trace_context(
    conversation_id: Optional[str] = None,
    layer: Optional[str] = None,
    component: Optional[str] = None,
) -> Iterator[None]:
    """
    在上下文内设置日志字段，退出时恢复旧值；为 None 的字段保持不变

    用法:
        with trace_context(conversation_id, layer=Layer.LOOP):
            logger.info("开始新一轮")
    """
    tokens: List[Tuple[contextvars.ContextVar, contextvars.Token]] = []
    for var, value in ((_conversation_var, conversation_id), (_layer_var, layer), (_component_var, component)):
        if value is not None:
            tokens.append((var, var.set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def setup_logging(
    level: Union[int, str] = logging.INFO,
    use_enhanced_format: bool = True,
    log_file: Optional[str] = None,
) -> logging.Handler:
    """
    初始化日志系统

    重复调用时替换上一次安装的处理器。

    Args:
        level: 日志级别
        use_enhanced_format: 是否使用带对话ID和层级的格式
        log_file: 写入文件而不是 stderr
    """
    global _handler

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger()
    if _handler is not None:
        root_logger.removeHandler(_handler)
        _handler.close()

    handler: logging.Handler
    if log_file:
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    log_format = LOG_FORMAT if use_enhanced_format else LOG_FORMAT_SIMPLE
    handler.setFormatter(logging.Formatter(log_format, DATE_FORMAT))
    handler.addFilter(ConversationFilter())

    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level if level <= logging.DEBUG else logging.WARNING)

    _handler = handler
    return handler


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """获取日志器，通常传入 __name__"""
    return logging.getLogger(name or "agentwire")


class LoggerMixin:
    """
    日志器混入类，为类提供 self.logger

    子类通过 _log_layer 声明所属层级，log_* 方法会带上层级和类名。
    """

    _log_layer: str = "-"

    @property
    def logger(self) -> logging.Logger:
        if not hasattr(self, "_logger"):
            self._logger = get_logger(f"agentwire.{self.__class__.__name__}")
        return self._logger

    def _log(self, level: int, message: str, conversation_id: Optional[str]) -> None:
        if not self.logger.isEnabledFor(level):
            return
        with trace_context(conversation_id, layer=self._log_layer, component=self.__class__.__name__):
            self.logger.log(level, message)

    def log_debug(self, message: str, conversation_id: Optional[str] = None) -> None:
        self._log(logging.DEBUG, message, conversation_id)

    def log_info(self, message: str, conversation_id: Optional[str] = None) -> None:
        self._log(logging.INFO, message, conversation_id)

    def log_warning(self, message: str, conversation_id: Optional[str] = None) -> None:
        self._log(logging.WARNING, message, conversation_id)

    def log_error(self, message: str, conversation_id: Optional[str] = None) -> None:
        self._log(logging.ERROR, message, conversation_id)
