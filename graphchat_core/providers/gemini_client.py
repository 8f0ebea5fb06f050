"""Gemini generateContent 适配器（REST，经 httpx 调用）。

附件不内联，而是通过 Files API 上传一次、在请求中以 fileData 引用：
- 上传得到的文件句柄按 "gemini/{storageKey}" 缓存，复用前重新确认远端状态为 ACTIVE；
- 读取失败、上传失败、或未配置 API Key 时，以 "[Attachment omitted: ...]" 文本占位，请求照常发送。

助手轮次：规范化文本 → 上一次 Gemini 回复 candidates[0].content 原样回放 → 抽取文本。
回复文本按 groundingMetadata 插入内联引用链接。
"""

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

import httpx

from graphchat_core.attachments.file_cache import FileHandle, FileHandleCache
from graphchat_core.attachments.materializer import (
    CLIENT_UNAVAILABLE_OMITTED,
    FILE_UPLOAD_OMITTED,
    IMAGE_UPLOAD_OMITTED,
    Materializer,
)
from graphchat_core.canonical.extractor import add_inline_citations, gemini_grounding_metadata, gemini_text
from graphchat_core.domain.exceptions import NetworkError, StreamProtocolError, TransportError
from graphchat_core.domain.models import FileRefBlock, ImageRefBlock, SendResult, TextBlock, Turn
from graphchat_core.domain.stores import AttachmentStore, PayloadStore
from graphchat_core.infrastructure.logging.logger import log_event
from graphchat_core.prompts import load_system_prompt
from graphchat_core.providers.base import (
    ChatSettings,
    assistant_context,
    encode_blocks,
    require_api_key,
    turn_blocks,
)
from graphchat_core.providers.registry import GEMINI_CONFIG
from graphchat_core.streaming.client import raise_for_status, send_exchange

API_VERSION = "v1beta"


class GeminiFileUploader:
    """Gemini Files API 的最小实现：resumable 上传与状态查询。"""

    def __init__(self, api_key: str, base_url: str, timeout: float = 120.0):
        self._api_key = api_key
        self._base = base_url.rstrip("/")
        self._timeout = timeout

    def upload(self, data: bytes, mime_type: str, display_name: Optional[str] = None) -> FileHandle:
        meta: Dict[str, Any] = {"file": {"display_name": display_name}} if display_name else {"file": {}}
        try:
            with httpx.Client(timeout=self._timeout, trust_env=False) as client:
                start = client.post(
                    f"{self._base}/upload/{API_VERSION}/files",
                    json=meta,
                    headers={
                        "x-goog-api-key": self._api_key,
                        "X-Goog-Upload-Protocol": "resumable",
                        "X-Goog-Upload-Command": "start",
                        "X-Goog-Upload-Header-Content-Length": str(len(data)),
                        "X-Goog-Upload-Header-Content-Type": mime_type,
                        "Content-Type": "application/json",
                    },
                )
                raise_for_status(start)
                upload_url = start.headers.get("x-goog-upload-url")
                if not upload_url:
                    raise StreamProtocolError(code="UPLOAD_FAILED", message="Upload URL missing from Files API response")
                done = client.post(
                    upload_url,
                    content=data,
                    headers={
                        "Content-Length": str(len(data)),
                        "X-Goog-Upload-Offset": "0",
                        "X-Goog-Upload-Command": "upload, finalize",
                    },
                )
                raise_for_status(done)
                payload = done.json()
        except httpx.HTTPError as exc:
            raise NetworkError(code="NETWORK_ERROR", message=str(exc) or type(exc).__name__)
        except ValueError:
            raise StreamProtocolError(code="UPLOAD_FAILED", message="Files API returned invalid JSON")

        file = payload.get("file") if isinstance(payload, dict) and isinstance(payload.get("file"), dict) else payload
        handle = FileHandle.from_dict({**file, "mimeType": mime_type}) if isinstance(file, dict) else None
        if handle is None:
            raise StreamProtocolError(code="UPLOAD_FAILED", message="Upload succeeded but file URI/name missing.")
        return handle

    def is_active(self, handle: FileHandle) -> bool:
        try:
            with httpx.Client(timeout=self._timeout, trust_env=False) as client:
                resp = client.get(f"{self._base}/{API_VERSION}/{handle.name}", headers={"x-goog-api-key": self._api_key})
            if resp.status_code >= 400:
                return False
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            log_event(logging.INFO, "File handle check failed", {"provider": "gemini"}, file_name=handle.name, error=str(exc))
            return False
        state = data.get("state") if isinstance(data, dict) else None
        if state is None and isinstance(data, dict) and isinstance(data.get("file"), dict):
            state = data["file"].get("state")
        return state == "ACTIVE"


class GeminiBlockEncoder:
    """ContentBlock → Gemini part；附件经文件句柄缓存上传后以 fileData 引用。"""

    def __init__(self, cache: Optional[FileHandleCache]):
        self._cache = cache

    def text(self, block: TextBlock) -> Dict[str, Any]:
        return {"text": block.text}

    def image(self, block: ImageRefBlock) -> Dict[str, Any]:
        return self._upload(block.base64, block.mime_type, None, block.storage_key, IMAGE_UPLOAD_OMITTED)

    def file(self, block: FileRefBlock) -> Dict[str, Any]:
        return self._upload(block.base64, block.mime_type, block.filename, block.storage_key, FILE_UPLOAD_OMITTED)

    def _upload(
        self,
        data_b64: str,
        mime_type: str,
        filename: Optional[str],
        storage_key: Optional[str],
        marker: str,
    ) -> Dict[str, Any]:
        if self._cache is None:
            return {"text": CLIENT_UNAVAILABLE_OMITTED}
        try:
            data = base64.b64decode(data_b64)
            handle = self._cache.ensure(data, mime_type, filename, storage_key)
        except (binascii.Error, TransportError, StreamProtocolError) as exc:
            log_event(logging.WARNING, "Attachment upload failed", {"provider": "gemini"}, storage_key=storage_key, error=str(exc))
            return {"text": marker}
        return {"fileData": {"fileUri": handle.uri, "mimeType": handle.mime_type}}


def build_gemini_contents(
    turns: List[Turn],
    materializer: Materializer,
    cache: Optional[FileHandleCache],
    payloads: Optional[PayloadStore] = None,
) -> List[Dict[str, Any]]:
    encoder = GeminiBlockEncoder(cache)
    contents: List[Dict[str, Any]] = []
    for turn in turns:
        if turn.role == "user":
            parts = encode_blocks(turn_blocks(turn, materializer), encoder)
            if parts:
                contents.append({"role": "user", "parts": parts})
            continue
        ctx = assistant_context(turn, payloads, "gemini")
        candidate = _first_candidate_content(ctx.replay)
        if candidate is not None:
            contents.append({"role": "user" if candidate.get("role") == "user" else "model", "parts": candidate["parts"]})
            continue
        if ctx.text.strip():
            contents.append({"role": "model", "parts": [{"text": ctx.text}]})
    return contents


def _first_candidate_content(raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    candidates = raw.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return None
    content = candidates[0].get("content")
    if isinstance(content, dict) and isinstance(content.get("parts"), list):
        return content
    return None


def build_gemini_request(
    turns: List[Turn],
    chat: ChatSettings,
    materializer: Materializer,
    cache: Optional[FileHandleCache],
    payloads: Optional[PayloadStore] = None,
    system_instruction_file: Optional[str] = None,
) -> Dict[str, Any]:
    """请求体；model 字段只用于快照与拼接 URL，发送时不放进 JSON。"""

    info = chat.model
    body: Dict[str, Any] = {
        "model": chat.api_model,
        "contents": build_gemini_contents(turns, materializer, cache, payloads),
        "systemInstruction": {"parts": [{"text": load_system_prompt(chat.system_instruction, system_instruction_file)}]},
    }
    if chat.web_search_allowed():
        body["tools"] = [{"googleSearch": {}}]
    if info is not None and info.thinking_level:
        body["generationConfig"] = {
            "thinkingConfig": {"thinkingLevel": "LOW" if info.thinking_level == "low" else "HIGH"}
        }
    return body


def gemini_reply_text(raw: Any) -> str:
    """回复文本，存在 groundingMetadata 时插入内联引用。"""

    text = gemini_text(raw) or ""
    grounding = gemini_grounding_metadata(raw)
    if text and grounding is not None:
        return add_inline_citations(text, grounding)
    return text


class GeminiClient:
    """Gemini 提供方客户端实现（非流式）。"""

    name = "gemini"
    content_key = "candidates"

    def __init__(
        self,
        settings,
        attachment_store: Optional[AttachmentStore] = None,
        payload_store: Optional[PayloadStore] = None,
    ):
        self._settings = settings
        self._materializer = Materializer(attachment_store)
        self._payloads = payload_store

    def _base_url(self) -> str:
        return (getattr(self._settings, "gemini_base_url", None) or GEMINI_CONFIG.base_url).rstrip("/")

    def _file_cache(self) -> Optional[FileHandleCache]:
        api_key = getattr(self._settings, "gemini_api_key", None)
        if not api_key:
            return None
        uploader = GeminiFileUploader(api_key, self._base_url(), self._settings.http_timeout)
        return FileHandleCache(self._payloads, uploader, provider=self.name)

    def build_request(self, turns: List[Turn], chat: ChatSettings) -> Dict[str, Any]:
        return build_gemini_request(
            turns,
            chat,
            self._materializer,
            self._file_cache(),
            self._payloads,
            getattr(self._settings, "system_instruction_file", None),
        )

    def send(self, body, *, stream=False, token=None, on_delta=None, on_event=None, log_ctx=None) -> SendResult:
        api_key = require_api_key(self._settings, "gemini_api_key")
        payload = {k: v for k, v in body.items() if k != "model"}
        url = f"{self._base_url()}/{API_VERSION}/models/{body.get('model')}:generateContent"
        ctx = {"provider": self.name, **(log_ctx or {})}
        result = send_exchange(
            url,
            {"x-goog-api-key": api_key},
            payload,
            timeout=self._settings.http_timeout,
            token=token,
            log_ctx=ctx,
        )
        if result.ok:
            result.text = gemini_reply_text(result.response)
            if result.text and on_delta is not None:
                on_delta(result.text, result.text)
        return result
