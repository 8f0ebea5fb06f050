"""流式协议客户端：SSE 帧解析、事件解码、内容块累加与协作式取消。"""

from graphchat_core.streaming.accumulator import BlockList, StreamAccumulator, StreamState
from graphchat_core.streaming.cancel import CancellationToken
from graphchat_core.streaming.client import read_error_message, send_exchange, stream_exchange
from graphchat_core.streaming.events import decode_anthropic_event, decode_openai_event
from graphchat_core.streaming.sse import SseFrame, SseParser, iter_sse_frames

__all__ = [
    "BlockList",
    "CancellationToken",
    "SseFrame",
    "SseParser",
    "StreamAccumulator",
    "StreamState",
    "decode_anthropic_event",
    "decode_openai_event",
    "iter_sse_frames",
    "read_error_message",
    "send_exchange",
    "stream_exchange",
]
