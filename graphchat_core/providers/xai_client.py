"""xAI Responses API 适配器（非流式）。

xAI 不接受 PDF 输入：PDF 附件与 PDF 节点都替换为
"[PDF attachment omitted for xAI: 文件名]" 文本，而不是让请求失败。
系统提示词作为第一条 system 消息；助手轮次以纯字符串 content 发送；store=false。
"""

from typing import Any, Dict, List, Optional

from graphchat_core.attachments.materializer import Materializer, xai_pdf_omitted
from graphchat_core.canonical.extractor import extract_text
from graphchat_core.domain.models import (
    ContentBlock,
    FileRefBlock,
    ImageRefBlock,
    PdfAttachment,
    SendResult,
    TextBlock,
    Turn,
)
from graphchat_core.domain.stores import AttachmentStore, PayloadStore
from graphchat_core.prompts import load_system_prompt
from graphchat_core.providers.base import (
    ChatSettings,
    assistant_context,
    encode_blocks,
    require_api_key,
)
from graphchat_core.providers.registry import XAI_CONFIG
from graphchat_core.streaming.client import send_exchange


class XaiBlockEncoder:
    def text(self, block: TextBlock) -> Dict[str, Any]:
        return {"type": "input_text", "text": block.text}

    def image(self, block: ImageRefBlock) -> Dict[str, Any]:
        return {"type": "input_image", "image_url": block.data_url, "detail": block.detail or "auto"}

    def file(self, block: FileRefBlock) -> Dict[str, Any]:
        return {"type": "input_text", "text": xai_pdf_omitted(block.filename)}


def _xai_turn_blocks(turn: Turn, materializer: Materializer) -> List[ContentBlock]:
    # PDF 不需要读取字节，直接以占位文本替换
    blocks: List[ContentBlock] = [TextBlock(text=t) for t in turn.text_parts if t and t.strip()]
    for att in turn.attachment_parts:
        if isinstance(att, PdfAttachment):
            blocks.append(TextBlock(text=xai_pdf_omitted((att.name or "").strip() or None)))
        else:
            blocks.append(materializer.to_block(att))
    return blocks


def build_xai_input(
    turns: List[Turn],
    materializer: Materializer,
    system_prompt: str,
    payloads: Optional[PayloadStore] = None,
) -> List[Dict[str, Any]]:
    encoder = XaiBlockEncoder()
    items: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for turn in turns:
        if turn.role == "user":
            content = encode_blocks(_xai_turn_blocks(turn, materializer), encoder)
            if content:
                items.append({"role": "user", "content": content})
            continue
        ctx = assistant_context(turn, payloads, "xai")
        if ctx.text.strip():
            items.append({"role": "assistant", "content": ctx.text})
    return items


def build_xai_request(
    turns: List[Turn],
    chat: ChatSettings,
    materializer: Materializer,
    payloads: Optional[PayloadStore] = None,
    system_instruction_file: Optional[str] = None,
) -> Dict[str, Any]:
    system_prompt = load_system_prompt(chat.system_instruction, system_instruction_file)
    body: Dict[str, Any] = {
        "model": chat.api_model,
        "input": build_xai_input(turns, materializer, system_prompt, payloads),
        "store": False,
    }
    if chat.web_search_allowed():
        body["tools"] = [{"type": "web_search"}]
        body["tool_choice"] = "auto"
    return body


class XaiClient:
    """xAI 提供方客户端实现。"""

    name = "xai"
    content_key = "output"

    def __init__(
        self,
        settings,
        attachment_store: Optional[AttachmentStore] = None,
        payload_store: Optional[PayloadStore] = None,
    ):
        self._settings = settings
        self._materializer = Materializer(attachment_store)
        self._payloads = payload_store

    def build_request(self, turns: List[Turn], chat: ChatSettings) -> Dict[str, Any]:
        return build_xai_request(
            turns,
            chat,
            self._materializer,
            self._payloads,
            getattr(self._settings, "system_instruction_file", None),
        )

    def send(self, body, *, stream=False, token=None, on_delta=None, on_event=None, log_ctx=None) -> SendResult:
        api_key = require_api_key(self._settings, "xai_api_key")
        base = getattr(self._settings, "xai_base_url", None) or XAI_CONFIG.base_url
        ctx = {"provider": self.name, **(log_ctx or {})}
        result = send_exchange(
            f"{base.rstrip('/')}/responses",
            {"Authorization": f"Bearer {api_key}"},
            body,
            timeout=self._settings.http_timeout,
            token=token,
            log_ctx=ctx,
        )
        if result.ok:
            result.text = extract_text(result.response) or ""
            if result.text and on_delta is not None:
                on_delta(result.text, result.text)
        return result
