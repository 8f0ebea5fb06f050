"""附件物化：把附件引用解析为字节 / base64，与具体 Provider 无关。

- data 字段存在时直接解码（兼容 data URL）；
- 只有 storage_key 时通过外部 AttachmentStore 取回；
- 取不到时返回 None，由调用方插入内联的 "omitted" 文本占位，请求仍然可以发送。
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Optional

from graphchat_core.domain.exceptions import AttachmentUnavailable
from graphchat_core.domain.models import (
    Attachment,
    ContentBlock,
    FileRefBlock,
    ImageAttachment,
    ImageRefBlock,
    InkAttachment,
    PdfAttachment,
    PDF_MIME_TYPE,
    TextBlock,
)
from graphchat_core.domain.stores import AttachmentStore
from graphchat_core.infrastructure.logging.logger import log_event

IMAGE_READ_OMITTED = "[Attachment omitted: failed to read image from storage.]"
FILE_READ_OMITTED = "[Attachment omitted: failed to read file from storage.]"
IMAGE_UPLOAD_OMITTED = "[Attachment omitted: failed to upload image to Gemini Files API.]"
FILE_UPLOAD_OMITTED = "[Attachment omitted: failed to upload file to Gemini Files API.]"
CLIENT_UNAVAILABLE_OMITTED = "[Attachment omitted: Gemini API client unavailable when building request.]"


def xai_pdf_omitted(name: Optional[str]) -> str:
    label = f"PDF attachment omitted for xAI: {name}" if name else "PDF attachment omitted for xAI."
    return f"[{label}]"


@dataclass(frozen=True)
class MaterializedAttachment:
    mime_type: str
    data: bytes

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


def split_data_url(data_url: str) -> Optional[tuple]:
    """拆分 "data:<mime>;base64,<payload>"，格式不符时返回 None。"""
    if not data_url.startswith("data:"):
        return None
    header, sep, payload = data_url.partition(",")
    if not sep or not payload:
        return None
    mime_type = header[5:].split(";", 1)[0] or "application/octet-stream"
    return mime_type, payload


class Materializer:
    """附件物化器。幂等，可独立于父请求的取消状态重试。"""

    def __init__(self, store: Optional[AttachmentStore] = None):
        self._store = store

    def materialize(self, att: Attachment, fallback_mime_type: str) -> Optional[MaterializedAttachment]:
        if isinstance(att, InkAttachment):
            # 手写附件必须先栅格化，不在这里处理
            return None
        try:
            return self._load(att, fallback_mime_type)
        except AttachmentUnavailable as exc:
            log_event(logging.WARNING, exc.message, {}, kind=att.kind, **exc.extra)
            return None

    def _load(self, att: Attachment, fallback_mime_type: str) -> MaterializedAttachment:
        if att.data:
            mime_type, payload = att.mime_type, att.data
            parts = split_data_url(att.data)
            if parts is not None:
                mime_type = mime_type or parts[0]
                payload = parts[1]
            try:
                raw = base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError):
                raise AttachmentUnavailable("ATTACHMENT_INVALID", "Inline attachment data is not valid base64")
            return MaterializedAttachment(mime_type=mime_type or fallback_mime_type, data=raw)

        key = (att.storage_key or "").strip()
        if not key or self._store is None:
            raise AttachmentUnavailable("ATTACHMENT_MISSING", "Attachment has no data source", storage_key=key or None)
        try:
            rec = self._store.get(key)
        except Exception as exc:
            raise AttachmentUnavailable(
                "ATTACHMENT_STORE_ERROR", "Attachment store lookup failed", storage_key=key, error=str(exc)
            ) from exc
        if rec is None or not rec.data:
            raise AttachmentUnavailable("ATTACHMENT_MISSING", "Attachment unavailable", storage_key=key)
        mime_type = rec.mime_type or att.mime_type or fallback_mime_type
        return MaterializedAttachment(mime_type=mime_type, data=rec.data)

    def to_block(self, att: Attachment) -> ContentBlock:
        """把附件转换为请求内容块；不可用时返回带占位文本的 TextBlock。"""

        if isinstance(att, ImageAttachment):
            got = self.materialize(att, "image/png")
            if got is None:
                return TextBlock(text=IMAGE_READ_OMITTED)
            return ImageRefBlock(
                mime_type=got.mime_type,
                base64=got.base64,
                detail=att.detail or "auto",
                storage_key=att.storage_key,
            )
        if isinstance(att, PdfAttachment):
            got = self.materialize(att, PDF_MIME_TYPE)
            if got is None:
                return TextBlock(text=FILE_READ_OMITTED)
            return FileRefBlock(
                mime_type=PDF_MIME_TYPE,
                base64=got.base64,
                filename=(att.name or "").strip() or None,
                storage_key=att.storage_key,
            )
        return TextBlock(text=IMAGE_READ_OMITTED)
