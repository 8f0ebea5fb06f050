from dataclasses import dataclass
from typing import Any, Optional, Protocol


@dataclass
class StoredAttachment:
    """附件存储中的一条记录。"""

    key: str
    mime_type: str
    data: bytes
    name: Optional[str] = None


class AttachmentStore(Protocol):
    """只读附件存储：按键取回二进制附件，缺失时返回 None。"""

    def get(self, key: str) -> Optional[StoredAttachment]:
        ...


class PayloadStore(Protocol):
    """JSON 载荷存储：原始回复、请求快照与 Provider 文件句柄元数据。

    键约定："{chatId}/{nodeId}/req"、"{chatId}/{nodeId}/res"、"{provider}/{storageKey}"。
    """

    def get(self, key: str) -> Optional[Any]:
        ...

    def put(self, key: str, json_value: Any) -> None:
        ...


def request_payload_key(chat_id: str, node_id: str) -> str:
    return f"{chat_id}/{node_id}/req"


def response_payload_key(chat_id: str, node_id: str) -> str:
    return f"{chat_id}/{node_id}/res"
