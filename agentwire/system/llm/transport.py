"""
HTTP传输层

基于 httpx 发送适配器构建的请求，读取 SSE 流并交给适配器逐条解析。
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, TypeVar

import httpx

from agentwire.system.llm.adapters.base import BaseAdapter, HttpRequestSpec
from agentwire.system.llm.config import ChannelConfig
from agentwire.system.llm.errors import CancellationRequested, ProtocolError
from agentwire.system.llm.message import GenerateResponse, StreamDelta
from agentwire.system.services.logger import Layer, LoggerMixin

T = TypeVar("T")


def _decode_body(content: bytes) -> Any:
    text = content.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def transport_error(error: httpx.HTTPError) -> ProtocolError:
    """连接、超时等没有HTTP状态的失败记为状态 0"""
    return ProtocolError(0, str(error), f"Transport error: {error}")


async def iterate_with_cancel(
    iterator: AsyncIterator[T],
    cancel_event: Optional[asyncio.Event],
) -> AsyncIterator[T]:
    """
    迭代异步迭代器，取消信号触发时中断正在等待的读取

    结束、中断或被关闭时都会关闭被迭代的异步生成器。

    Raises:
        CancellationRequested: 取消信号已触发
    """
    next_task: Optional[asyncio.Future] = None
    try:
        if cancel_event is None:
            async for item in iterator:
                yield item
            return

        while True:
            if cancel_event.is_set():
                raise CancellationRequested()
            next_task = asyncio.ensure_future(iterator.__anext__())
            cancel_task = asyncio.ensure_future(cancel_event.wait())
            try:
                done, _ = await asyncio.wait(
                    {next_task, cancel_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                cancel_task.cancel()

            if next_task in done:
                try:
                    item = next_task.result()
                except StopAsyncIteration:
                    return
                yield item
                continue

            raise CancellationRequested()
    finally:
        if next_task is not None and not next_task.done():
            next_task.cancel()
            await asyncio.gather(next_task, return_exceptions=True)
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


class HttpTransport(LoggerMixin):
    """
    HTTP传输

    可以注入共享的 httpx.AsyncClient（测试时配合 MockTransport），
    否则每次请求创建临时客户端。
    """

    _log_layer = Layer.TRANSPORT

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client

    @asynccontextmanager
    async def _client_for(self, spec: HttpRequestSpec):
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=spec.timeout) as client:
            yield client

    async def send(self, adapter: BaseAdapter, spec: HttpRequestSpec) -> Any:
        """
        发送非流式请求，返回解码后的响应体

        Raises:
            ProtocolError: 非2xx状态、响应体不是JSON，或连接失败
        """
        self.log_debug(f"{spec.method} {spec.url}")
        try:
            async with self._client_for(spec) as client:
                response = await client.request(
                    spec.method,
                    spec.url,
                    headers=spec.headers,
                    json=spec.body,
                    timeout=spec.timeout,
                )
        except httpx.HTTPError as e:
            raise transport_error(e)
        body = _decode_body(response.content)
        adapter.check_status(response.status_code, body)
        if not isinstance(body, dict):
            raise ProtocolError(response.status_code, body, "Malformed response: expected a JSON object")
        return body

    async def generate(self, adapter: BaseAdapter, spec: HttpRequestSpec) -> GenerateResponse:
        """发送非流式生成请求并解析"""
        body = await self.send(adapter, spec)
        try:
            return adapter.parse_response(body)
        except (KeyError, TypeError, IndexError) as e:
            raise ProtocolError(200, body, f"Malformed response: {e}")

    async def stream(self, adapter: BaseAdapter, spec: HttpRequestSpec) -> AsyncIterator[StreamDelta]:
        """
        发送流式请求，逐条产出适配器解析后的增量

        SSE 的 data 行在空行处组成一个事件；无法识别的事件被适配器丢弃。

        Raises:
            ProtocolError: 非2xx状态，或连接、读取失败
        """
        self.log_debug(f"{spec.method} {spec.url} (stream)")
        deltas = self._stream_deltas(adapter, spec)
        try:
            async for delta in deltas:
                yield delta
        except httpx.HTTPError as e:
            raise transport_error(e)
        finally:
            await deltas.aclose()

    async def _stream_deltas(self, adapter: BaseAdapter, spec: HttpRequestSpec) -> AsyncIterator[StreamDelta]:
        async with self._client_for(spec) as client:
            async with client.stream(
                spec.method,
                spec.url,
                headers=spec.headers,
                json=spec.body,
                timeout=spec.timeout,
            ) as response:
                if not response.is_success:
                    body = _decode_body(await response.aread())
                    adapter.check_status(response.status_code, body)

                data_lines: List[str] = []
                async for line in response.aiter_lines():
                    if line.startswith("data:"):
                        data_lines.append(line[5:].lstrip())
                        continue
                    if line.strip() or not data_lines:
                        continue
                    delta = adapter.parse_stream_chunk("\n".join(data_lines))
                    data_lines = []
                    if delta is not None:
                        yield delta

                if data_lines:
                    delta = adapter.parse_stream_chunk("\n".join(data_lines))
                    if delta is not None:
                        yield delta

    async def list_models(self, adapter: BaseAdapter, channel: ChannelConfig) -> List[str]:
        """获取渠道可用模型列表"""
        body = await self.send(adapter, adapter.build_models_request(channel))
        return adapter.parse_models(body)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def request_summary(spec: HttpRequestSpec) -> Dict[str, Any]:
    """用于日志的请求摘要，隐藏密钥头"""
    hidden = {"authorization", "x-api-key", "x-goog-api-key"}
    return {
        "method": spec.method,
        "url": spec.url.split("?key=")[0],
        "headers": {k: ("***" if k.lower() in hidden else v) for k, v in spec.headers.items()},
        "stream": spec.stream,
    }
