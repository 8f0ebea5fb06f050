"""显式的取消令牌，在读取循环的固定挂起点轮询（协作式取消）。"""

import threading

from graphchat_core.domain.exceptions import Cancelled


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(code="CANCELLED", message="Canceled")
