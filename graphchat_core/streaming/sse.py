"""增量 SSE（text/event-stream）帧解析。

输入是任意切分的字节块：一帧可能跨越多次读取，一次读取也可能包含多帧。
帧以空行结束；event 字段可选；多行 data 以 "\\n" 连接；":" 开头的注释行忽略。
流结束时 flush() 输出残留的最后一帧。解析结果与切分方式无关。
"""

import codecs
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional


@dataclass(frozen=True)
class SseFrame:
    event: Optional[str]
    data: str


def parse_sse_block(block: str) -> Optional[SseFrame]:
    """解析一个完整的帧文本；没有 data 的帧返回 None。"""
    if not block.strip():
        return None
    event: Optional[str] = None
    data_lines: List[str] = []
    for line in block.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, sep, value = line.partition(":")
        if not sep:
            value = ""
        elif value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value or None
        elif name == "data":
            data_lines.append(value)
    data = "\n".join(data_lines)
    if not data:
        return None
    return SseFrame(event=event, data=data)


class SseParser:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        # 块末尾的 "\r" 需要等下一块确认是否属于 "\r\n"
        self._pending_cr = ""

    def feed(self, chunk: bytes) -> List[SseFrame]:
        self._append(self._decoder.decode(chunk))
        return self._drain()

    def flush(self) -> List[SseFrame]:
        self._append(self._decoder.decode(b"", final=True))
        self._buffer += self._pending_cr
        self._pending_cr = ""
        frames = self._drain()
        tail, self._buffer = self._buffer, ""
        frame = parse_sse_block(tail)
        if frame is not None:
            frames.append(frame)
        return frames

    def _append(self, text: str) -> None:
        text = self._pending_cr + text
        self._pending_cr = ""
        if text.endswith("\r"):
            text, self._pending_cr = text[:-1], "\r"
        self._buffer += text.replace("\r\n", "\n")

    def _drain(self) -> List[SseFrame]:
        frames: List[SseFrame] = []
        while True:
            idx = self._buffer.find("\n\n")
            if idx == -1:
                break
            block = self._buffer[:idx]
            self._buffer = self._buffer[idx + 2:]
            frame = parse_sse_block(block)
            if frame is not None:
                frames.append(frame)
        return frames


def iter_sse_frames(chunks: Iterable[bytes]) -> Iterator[SseFrame]:
    parser = SseParser()
    for chunk in chunks:
        if chunk:
            yield from parser.feed(chunk)
    yield from parser.flush()
