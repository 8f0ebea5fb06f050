"""Provider 文件句柄缓存。

需要"先上传、再引用"的 Provider（Gemini Files API）把物化后的字节上传一次，
得到的文件句柄按 "{provider}/{storageKey}" 缓存在 PayloadStore 中。
复用前重新校验远端状态；校验失败时静默重新上传（记录 INFO 日志）。
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from graphchat_core.domain.stores import PayloadStore
from graphchat_core.infrastructure.logging.logger import log_event


@dataclass(frozen=True)
class FileHandle:
    name: str
    uri: str
    mime_type: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "uri": self.uri, "mimeType": self.mime_type}

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["FileHandle"]:
        if not isinstance(raw, dict):
            return None
        name = raw.get("name")
        uri = raw.get("uri")
        if not (isinstance(name, str) and name and isinstance(uri, str) and uri):
            return None
        mime_type = raw.get("mimeType") if isinstance(raw.get("mimeType"), str) else "application/octet-stream"
        return cls(name=name, uri=uri, mime_type=mime_type)


class FileUploader(Protocol):
    def upload(self, data: bytes, mime_type: str, display_name: Optional[str] = None) -> FileHandle:
        ...

    def is_active(self, handle: FileHandle) -> bool:
        ...


class FileHandleCache:
    def __init__(self, payloads: Optional[PayloadStore], uploader: FileUploader, provider: str = "gemini"):
        self._payloads = payloads
        self._uploader = uploader
        self._provider = provider

    def cache_key(self, storage_key: str) -> str:
        return f"{self._provider}/{storage_key}"

    def ensure(
        self,
        data: bytes,
        mime_type: str,
        filename: Optional[str] = None,
        storage_key: Optional[str] = None,
    ) -> FileHandle:
        """返回可引用的文件句柄；上传失败时异常向上抛出（TransportError）。"""

        key = (storage_key or "").strip()
        if key and self._payloads is not None:
            cached = self._read_cached(key)
            if cached is not None:
                if self._uploader.is_active(cached):
                    return cached
                log_event(
                    logging.INFO,
                    "Cached file handle is stale, re-uploading",
                    {"provider": self._provider},
                    storage_key=key,
                    file_name=cached.name,
                )

        handle = self._uploader.upload(data, mime_type, filename)
        if key and self._payloads is not None:
            try:
                self._payloads.put(self.cache_key(key), handle.to_dict())
            except Exception as exc:
                log_event(
                    logging.WARNING,
                    "Failed to cache file handle",
                    {"provider": self._provider},
                    storage_key=key,
                    error=str(exc),
                )
        return handle

    def _read_cached(self, key: str) -> Optional[FileHandle]:
        try:
            raw = self._payloads.get(self.cache_key(key))
        except Exception as exc:
            log_event(
                logging.WARNING,
                "Failed to read cached file handle",
                {"provider": self._provider},
                storage_key=key,
                error=str(exc),
            )
            return None
        return FileHandle.from_dict(raw)
