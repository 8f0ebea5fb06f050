import json
import os
import re
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from graphchat_core.config.settings import settings
from graphchat_core.domain.exceptions import BusinessError
from graphchat_core.domain.stores import StoredAttachment

_SAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._-]")


def _key_path(root: Path, key: str, suffix: str) -> Path:
    """把 "a/b/c" 形式的键映射为 root 下的相对路径，拒绝空段与 ".." 段。"""
    segments = [s for s in (key or "").split("/")]
    if not segments or any(not s or s in (".", "..") for s in segments):
        raise BusinessError(code="INVALID_KEY", message=f"Invalid storage key: {key!r}")
    safe = [_SAFE_SEGMENT.sub("_", s) for s in segments]
    return root.joinpath(*safe[:-1], safe[-1] + suffix)


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.parent / f"{path.name}.{uuid4().hex}.tmp"
    try:
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)
    except Exception as e:
        raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))


class JsonPayloadStore:
    """本地 JSON 载荷存储：每个键一个 .json 文件，写入使用临时文件 + os.replace。"""

    def __init__(self, root: str | Path | None = None):
        self._root = (Path(root or settings.storage_root) / "payloads").resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    def get(self, key: str) -> Optional[Any]:
        path = _key_path(self._root, key, ".json")
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except Exception as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))

    def put(self, key: str, json_value: Any) -> None:
        path = _key_path(self._root, key, ".json")
        try:
            data = json.dumps(json_value, ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
        _atomic_write(path, data)


class FileAttachmentStore:
    """本地附件存储：二进制内容 + 同名 .meta.json（mimeType / name）。"""

    def __init__(self, root: str | Path | None = None):
        self._root = (Path(root or settings.storage_root) / "attachments").resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    def get(self, key: str) -> Optional[StoredAttachment]:
        blob_path = _key_path(self._root, key, ".bin")
        if not blob_path.exists():
            return None
        meta_path = _key_path(self._root, key, ".meta.json")
        meta = {}
        if meta_path.exists():
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except Exception as e:
                raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        return StoredAttachment(
            key=key,
            mime_type=meta.get("mimeType") or "application/octet-stream",
            data=blob_path.read_bytes(),
            name=meta.get("name"),
        )

    def put(self, key: str, data: bytes, mime_type: str, name: Optional[str] = None) -> None:
        _atomic_write(_key_path(self._root, key, ".bin"), data)
        meta = {"mimeType": mime_type, "name": name}
        _atomic_write(_key_path(self._root, key, ".meta.json"), json.dumps(meta, ensure_ascii=False).encode("utf-8"))
