"""流式事件模型，以及 Anthropic / OpenAI 两种 SSE 事件到统一事件的映射。

统一事件只在一次流式调用期间产生，被累加器消费后即丢弃。
无法识别的事件（ping、citations_delta 等）映射为 None，由调用方跳过。
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Union

from graphchat_core.domain.exceptions import StreamProtocolError
from graphchat_core.streaming.sse import SseFrame

DeltaChannel = Literal["text", "thinking", "signature", "partial_json"]


@dataclass(frozen=True)
class MessageStart:
    message: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BlockStart:
    index: int
    block_type: str
    block: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TextDelta:
    index: int
    text: str
    channel: DeltaChannel = "text"


@dataclass(frozen=True)
class BlockStop:
    index: int
    block: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class MessageMeta:
    stop_reason: Optional[str] = None
    stop_sequence: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None
    snapshot: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class StreamError:
    message: str


@dataclass(frozen=True)
class Done:
    pass


StreamEvent = Union[MessageStart, BlockStart, TextDelta, BlockStop, MessageMeta, StreamError, Done]


def frame_json(frame: SseFrame) -> Optional[Dict[str, Any]]:
    """解析帧的 data 为 JSON 对象；"[DONE]" 返回 None，格式错误抛 StreamProtocolError。"""

    data = frame.data.strip()
    if data == "[DONE]":
        return None
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise StreamProtocolError(
            code="STREAM_PROTOCOL_ERROR",
            message=f"Malformed stream frame: {exc.msg}",
            event=frame.event,
        )
    if not isinstance(payload, dict):
        raise StreamProtocolError(code="STREAM_PROTOCOL_ERROR", message="Stream frame is not a JSON object")
    return payload


def _error_message(raw: Any, default: str) -> str:
    if isinstance(raw, dict):
        msg = raw.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return default


def _index(payload: Dict[str, Any], key: str = "index") -> int:
    raw = payload.get(key)
    if isinstance(raw, int) and raw >= 0:
        return raw
    raise StreamProtocolError(code="STREAM_PROTOCOL_ERROR", message=f"Stream event is missing {key}")


_ANTHROPIC_DELTA_FIELDS = {
    "text_delta": ("text", "text"),
    "thinking_delta": ("thinking", "thinking"),
    "signature_delta": ("signature", "signature"),
    "input_json_delta": ("partial_json", "partial_json"),
}


def decode_anthropic_event(frame: SseFrame) -> Optional[StreamEvent]:
    """Anthropic Messages 流：message_start / content_block_* / message_delta / message_stop / error。"""

    payload = frame_json(frame)
    if payload is None:
        return Done()
    kind = payload.get("type") or frame.event

    if kind == "message_start":
        message = payload.get("message")
        return MessageStart(message=dict(message) if isinstance(message, dict) else {})
    if kind == "content_block_start":
        block = payload.get("content_block") if isinstance(payload.get("content_block"), dict) else {}
        return BlockStart(index=_index(payload), block_type=str(block.get("type") or "text"), block=dict(block))
    if kind == "content_block_delta":
        delta = payload.get("delta") if isinstance(payload.get("delta"), dict) else {}
        mapping = _ANTHROPIC_DELTA_FIELDS.get(delta.get("type"))
        if mapping is None:
            return None
        key, channel = mapping
        text = delta.get(key)
        if not isinstance(text, str):
            return None
        return TextDelta(index=_index(payload), text=text, channel=channel)
    if kind == "content_block_stop":
        return BlockStop(index=_index(payload))
    if kind == "message_delta":
        delta = payload.get("delta") if isinstance(payload.get("delta"), dict) else {}
        usage = payload.get("usage")
        return MessageMeta(
            stop_reason=delta.get("stop_reason"),
            stop_sequence=delta.get("stop_sequence"),
            usage=dict(usage) if isinstance(usage, dict) else None,
        )
    if kind == "message_stop":
        return Done()
    if kind == "error":
        return StreamError(message=_error_message(payload.get("error"), "Anthropic stream error"))
    return None


def decode_openai_event(frame: SseFrame) -> Optional[StreamEvent]:
    """OpenAI Responses 流：response.created / output_item.* / output_text.delta / completed 等。"""

    payload = frame_json(frame)
    if payload is None:
        return Done()
    kind = payload.get("type") or frame.event

    if kind == "response.created":
        response = payload.get("response")
        return MessageStart(message=dict(response) if isinstance(response, dict) else {})
    if kind == "response.output_item.added":
        item = payload.get("item") if isinstance(payload.get("item"), dict) else {}
        return BlockStart(
            index=_index(payload, "output_index"),
            block_type=str(item.get("type") or "message"),
            block=dict(item),
        )
    if kind in ("response.output_text.delta", "response.refusal.delta"):
        delta = payload.get("delta")
        if not isinstance(delta, str):
            return None
        return TextDelta(index=_index(payload, "output_index"), text=delta)
    if kind == "response.output_item.done":
        item = payload.get("item")
        return BlockStop(index=_index(payload, "output_index"), block=dict(item) if isinstance(item, dict) else None)
    if kind in ("response.completed", "response.incomplete"):
        response = payload.get("response") if isinstance(payload.get("response"), dict) else {}
        stop_reason = response.get("status")
        details = response.get("incomplete_details")
        if kind == "response.incomplete" and isinstance(details, dict) and details.get("reason"):
            stop_reason = details["reason"]
        usage = response.get("usage")
        return MessageMeta(
            stop_reason=stop_reason,
            usage=dict(usage) if isinstance(usage, dict) else None,
            snapshot=dict(response) if response else None,
        )
    if kind == "response.failed":
        response = payload.get("response") if isinstance(payload.get("response"), dict) else {}
        return StreamError(message=_error_message(response.get("error"), "OpenAI response failed"))
    if kind == "error":
        return StreamError(message=_error_message(payload.get("error") or payload, "OpenAI stream error"))
    return None
