"""流式累加器：把统一事件序列重建为一份完整的回复 JSON。

状态机：AWAIT_BLOCK → IN_BLOCK(i) → AWAIT_BLOCK … → CLOSING → DONE；
任意时刻收到 StreamError 进入 ERRORED。ERRORED / DONE 之后的事件全部忽略。

内容块按事件中的 index 寻址存放在 BlockList 中：
- 先到达较大下标时，中间的空位以 None 占位，最终结果中丢弃；
- 同一下标的增量按到达顺序追加，不同下标互不影响。
"""

import enum
import json
from typing import Any, Callable, Dict, List, Optional

from graphchat_core.domain.models import SendResult
from graphchat_core.streaming.events import (
    BlockStart,
    BlockStop,
    Done,
    MessageMeta,
    MessageStart,
    StreamError,
    StreamEvent,
    TextDelta,
)

DeltaCallback = Callable[[str, str], None]


class StreamState(enum.Enum):
    AWAIT_BLOCK = "await_block"
    IN_BLOCK = "in_block"
    CLOSING = "closing"
    ERRORED = "errored"
    DONE = "done"


class BlockList:
    """按下标寻址、可增长的内容块容器。"""

    def __init__(self) -> None:
        self._slots: List[Optional[Dict[str, Any]]] = []

    def __len__(self) -> int:
        return len(self._slots)

    def set(self, index: int, block: Dict[str, Any]) -> None:
        if index < 0:
            raise IndexError(f"negative block index: {index}")
        if index >= len(self._slots):
            self._slots.extend([None] * (index + 1 - len(self._slots)))
        self._slots[index] = block

    def get(self, index: int) -> Optional[Dict[str, Any]]:
        if 0 <= index < len(self._slots):
            return self._slots[index]
        return None

    def indices(self) -> List[int]:
        return [i for i, b in enumerate(self._slots) if b is not None]

    def compact(self) -> List[Dict[str, Any]]:
        return [b for b in self._slots if b is not None]


class StreamAccumulator:
    def __init__(self, content_key: str = "content", on_delta: Optional[DeltaCallback] = None):
        self.content_key = content_key
        self.state = StreamState.AWAIT_BLOCK
        self.current_index: Optional[int] = None
        self.error: Optional[str] = None
        self._on_delta = on_delta
        self._message: Dict[str, Any] = {}
        self._snapshot: Optional[Dict[str, Any]] = None
        self._blocks = BlockList()
        self._buffers: Dict[int, Dict[str, List[str]]] = {}
        self._text_parts: Dict[int, List[str]] = {}

    @property
    def text(self) -> str:
        # 按块下标拼接，交错到达的多个文本块不会混在一起
        return "".join("".join(self._text_parts[i]) for i in sorted(self._text_parts))

    @property
    def finished(self) -> bool:
        return self.state in (StreamState.ERRORED, StreamState.DONE)

    def block_text(self, index: int, channel: str = "text") -> str:
        return "".join(self._buffers.get(index, {}).get(channel, []))

    def apply(self, event: StreamEvent) -> None:
        if self.finished:
            return
        if isinstance(event, MessageStart):
            self._message = dict(event.message)
        elif isinstance(event, BlockStart):
            self._blocks.set(event.index, dict(event.block))
            self.state = StreamState.IN_BLOCK
            self.current_index = event.index
        elif isinstance(event, TextDelta):
            self._on_text(event)
        elif isinstance(event, BlockStop):
            self._close_block(event.index, event.block)
            self.state = StreamState.AWAIT_BLOCK
            self.current_index = None
        elif isinstance(event, MessageMeta):
            self._on_meta(event)
            self.state = StreamState.CLOSING
        elif isinstance(event, StreamError):
            self.fail(event.message)
        elif isinstance(event, Done):
            self.state = StreamState.DONE

    def fail(self, message: str) -> None:
        self.error = message
        self.state = StreamState.ERRORED

    def _on_text(self, event: TextDelta) -> None:
        if self._blocks.get(event.index) is None:
            # 增量先于 BlockStart 到达：按通道补一个占位块
            self._blocks.set(event.index, {"type": "tool_use" if event.channel == "partial_json" else event.channel})
        buffers = self._buffers.setdefault(event.index, {})
        buffers.setdefault(event.channel, []).append(event.text)
        if event.channel == "text":
            self._text_parts.setdefault(event.index, []).append(event.text)
            if self._on_delta is not None:
                self._on_delta(event.text, self.text)

    def _close_block(self, index: int, final: Optional[Dict[str, Any]]) -> None:
        if final is not None:
            self._blocks.set(index, dict(final))
            self._buffers.pop(index, None)

    def _on_meta(self, event: MessageMeta) -> None:
        if event.stop_reason is not None:
            self._message["stop_reason"] = event.stop_reason
        if event.stop_sequence is not None:
            self._message["stop_sequence"] = event.stop_sequence
        if event.usage:
            usage = dict(self._message.get("usage") or {})
            usage.update(event.usage)
            self._message["usage"] = usage
        if event.snapshot is not None:
            self._snapshot = event.snapshot

    def _finalized_block(self, index: int) -> Dict[str, Any]:
        block = dict(self._blocks.get(index) or {})
        buffers = self._buffers.get(index)
        if not buffers:
            return block
        text = "".join(buffers.get("text", []))
        if text:
            if block.get("type") == "message":
                block["content"] = [{"type": "output_text", "text": text, "annotations": []}]
            else:
                block["text"] = (block.get("text") or "") + text
        for channel in ("thinking", "signature"):
            chunk = "".join(buffers.get(channel, []))
            if chunk:
                block[channel] = (block.get(channel) or "") + chunk
        partial = "".join(buffers.get("partial_json", []))
        if partial:
            try:
                block["input"] = json.loads(partial)
            except json.JSONDecodeError:
                block["partial_json"] = partial
        return block

    def response(self) -> Dict[str, Any]:
        """重建的完整回复：优先使用 Provider 给出的最终快照。"""

        if self._snapshot is not None:
            return self._snapshot
        blocks = [self._finalized_block(i) for i in self._blocks.indices()]
        if self._message:
            return {**self._message, self.content_key: blocks}
        return {"role": "assistant", self.content_key: blocks}

    def to_result(self) -> SendResult:
        if self.state is StreamState.ERRORED:
            return SendResult(
                status="failure",
                text=self.text,
                response=self.response(),
                error=self.error,
                error_code="STREAM_ERROR",
            )
        return SendResult(status="success", text=self.text, response=self.response())

    def cancelled_result(self) -> SendResult:
        return SendResult(
            status="cancelled",
            text=self.text,
            response=self.response(),
            error="Canceled",
            error_code="CANCELLED",
        )
