"""HTTP 交换：一次 POST，流式或非流式，结果统一为 SendResult。

- 流式：Accept: text/event-stream，按字节块驱动 SseParser → 事件解码 → 累加器；
- 非流式：读取完整 JSON；
- 每次读取前、每帧处理后轮询取消令牌；取消时返回 cancelled 结果并带上已累积文本；
- 连接在所有路径上都通过上下文管理器关闭。

传输错误不会以异常形式抛出：非 2xx、网络错误都转换为 failure 结果。
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Iterator, Optional

import httpx

from graphchat_core.domain.exceptions import (
    ApiError,
    BusinessError,
    NetworkError,
    RateLimitError,
    StreamProtocolError,
    TransportError,
)
from graphchat_core.domain.models import SendResult
from graphchat_core.infrastructure.logging.logger import log_event
from graphchat_core.streaming.accumulator import DeltaCallback, StreamAccumulator
from graphchat_core.streaming.cancel import CancellationToken
from graphchat_core.streaming.events import StreamEvent
from graphchat_core.streaming.sse import SseFrame, SseParser

Decoder = Callable[[SseFrame], Optional[StreamEvent]]
EventCallback = Callable[[StreamEvent], None]

ERROR_SNIPPET_LIMIT = 240


def stream_timeout(settings) -> httpx.Timeout:
    """流式请求的超时：连接/写入沿用 http_timeout，读取使用 stream_read_timeout。"""
    base = settings.http_timeout
    return httpx.Timeout(base, read=getattr(settings, "stream_read_timeout", None) or base)


def read_error_message(status_code: int, reason: str, body_text: str) -> str:
    """从错误响应体中取出可读信息：error.message → message → "HTTP {status} {reason}: 片段"。"""

    try:
        data = json.loads(body_text) if body_text else None
    except ValueError:
        data = None
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str) and err["message"].strip():
            return err["message"].strip()
        if isinstance(err, str) and err.strip():
            return err.strip()
        msg = data.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    line = f"HTTP {status_code} {reason or ''}".strip()
    snippet = (body_text or "").strip()
    if snippet:
        line = f"{line}: {snippet}"
    return line[:ERROR_SNIPPET_LIMIT]


def raise_for_status(resp: httpx.Response) -> None:
    """非 2xx 响应转换为 TransportError 子类；调用前响应体必须已读取。"""

    if resp.status_code < 400:
        return
    message = read_error_message(resp.status_code, resp.reason_phrase, resp.text)
    if resp.status_code == 429:
        raise RateLimitError(code="RATE_LIMIT", message=message, http_status=429)
    raise ApiError(code="API_ERROR", message=message, http_status=resp.status_code)


def _failure(exc: BusinessError, text: str = "", response: Any = None) -> SendResult:
    return SendResult(status="failure", text=text, response=response, error=exc.message, error_code=exc.code)


def _chunks(resp: httpx.Response, token: Optional[CancellationToken]) -> Iterator[Optional[bytes]]:
    """逐块读取；读取前检查取消，已取消时产出 None。"""

    it = resp.iter_bytes()
    while True:
        if token is not None and token.cancelled:
            yield None
            return
        try:
            chunk = next(it)
        except StopIteration:
            return
        yield chunk


def stream_exchange(
    url: str,
    headers: Dict[str, str],
    body: Dict[str, Any],
    decoder: Decoder,
    *,
    content_key: str = "content",
    timeout: Any = 120.0,
    token: Optional[CancellationToken] = None,
    on_delta: Optional[DeltaCallback] = None,
    on_event: Optional[EventCallback] = None,
    log_ctx: Optional[dict] = None,
) -> SendResult:
    acc = StreamAccumulator(content_key=content_key, on_delta=on_delta)
    ctx = dict(log_ctx or {})
    if token is not None and token.cancelled:
        return acc.cancelled_result()

    req_headers = {**headers, "Content-Type": "application/json", "Accept": "text/event-stream"}
    start = time.time()
    try:
        with httpx.Client(timeout=timeout, trust_env=False) as client:
            with client.stream("POST", url, json=body, headers=req_headers) as resp:
                if resp.status_code >= 400:
                    resp.read()
                    raise_for_status(resp)
                parser = SseParser()
                for chunk in _chunks(resp, token):
                    if chunk is None:
                        log_event(logging.INFO, "Stream cancelled", ctx, partial_chars=len(acc.text))
                        return acc.cancelled_result()
                    if _drive(parser.feed(chunk), decoder, acc, on_event, token):
                        break
                else:
                    _drive(parser.flush(), decoder, acc, on_event, token)
                if token is not None and token.cancelled and not acc.finished:
                    log_event(logging.INFO, "Stream cancelled", ctx, partial_chars=len(acc.text))
                    return acc.cancelled_result()
    except StreamProtocolError as exc:
        acc.fail(exc.message)
    except TransportError as exc:
        log_event(logging.WARNING, "Stream request failed", ctx, code=exc.code, error=exc.message)
        return _failure(exc, text=acc.text)
    except httpx.HTTPError as exc:
        log_event(logging.WARNING, "Stream transport error", ctx, error=str(exc))
        return _failure(NetworkError(code="NETWORK_ERROR", message=str(exc) or type(exc).__name__), text=acc.text)

    result = acc.to_result()
    log_event(
        logging.INFO,
        "Stream finished",
        ctx,
        status=result.status,
        chars=len(result.text),
        elapsed=round(time.time() - start, 3),
    )
    return result


def _drive(frames, decoder: Decoder, acc: StreamAccumulator, on_event, token) -> bool:
    """处理一批帧；返回 True 表示应停止读取（流结束、出错或已取消）。"""

    for frame in frames:
        event = decoder(frame)
        if event is not None:
            if on_event is not None:
                on_event(event)
            acc.apply(event)
        if acc.finished:
            return True
        if token is not None and token.cancelled:
            return True
    return False


def send_exchange(
    url: str,
    headers: Dict[str, str],
    body: Dict[str, Any],
    *,
    timeout: float = 120.0,
    token: Optional[CancellationToken] = None,
    log_ctx: Optional[dict] = None,
) -> SendResult:
    """非流式发送：成功时 response 为完整 JSON，text 留给调用方抽取。"""

    ctx = dict(log_ctx or {})
    if token is not None and token.cancelled:
        return SendResult(status="cancelled", error="Canceled", error_code="CANCELLED")
    start = time.time()
    try:
        with httpx.Client(timeout=timeout, trust_env=False) as client:
            resp = client.post(url, json=body, headers={**headers, "Content-Type": "application/json"})
        raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError:
            raise StreamProtocolError(code="INVALID_RESPONSE", message="Response body is not valid JSON")
    except httpx.HTTPError as exc:
        log_event(logging.WARNING, "Request transport error", ctx, error=str(exc))
        return _failure(NetworkError(code="NETWORK_ERROR", message=str(exc) or type(exc).__name__))
    except BusinessError as exc:
        log_event(logging.WARNING, "Request failed", ctx, code=exc.code, error=exc.message)
        return _failure(exc)

    if token is not None and token.cancelled:
        return SendResult(status="cancelled", response=data, error="Canceled", error_code="CANCELLED")
    log_event(logging.INFO, "Request finished", ctx, status_code=resp.status_code, elapsed=round(time.time() - start, 3))
    return SendResult(status="success", response=data)
