"""Anthropic Messages API 适配器。

- 文本 → text 块，图片 → image（base64 source），PDF → document（base64 source）；
- 助手轮次：规范化文本 → 上一次 Anthropic 回复的 content 数组原样回放 → 抽取文本；
- max_tokens 默认 4096，限制在 1..200000；
- 模型支持推理强度时附加 thinking: adaptive 与 output_config.effort，
  请求的强度不被支持时回落到最接近的支持等级；
- 流式走 SSE（message_start / content_block_* / message_delta / message_stop）。
"""

from typing import Any, Dict, List, Optional

from graphchat_core.attachments.materializer import Materializer
from graphchat_core.canonical.extractor import extract_text
from graphchat_core.domain.models import FileRefBlock, ImageRefBlock, PDF_MIME_TYPE, SendResult, TextBlock, Turn
from graphchat_core.domain.stores import AttachmentStore, PayloadStore
from graphchat_core.prompts import load_system_prompt
from graphchat_core.providers.base import (
    ChatSettings,
    assistant_context,
    encode_blocks,
    require_api_key,
    turn_blocks,
)
from graphchat_core.providers.model_settings import clamp_max_tokens, normalize_effort
from graphchat_core.providers.registry import ANTHROPIC_CONFIG
from graphchat_core.streaming.client import send_exchange, stream_exchange, stream_timeout
from graphchat_core.streaming.events import decode_anthropic_event


class AnthropicBlockEncoder:
    def text(self, block: TextBlock) -> Dict[str, Any]:
        return {"type": "text", "text": block.text}

    def image(self, block: ImageRefBlock) -> Dict[str, Any]:
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": block.mime_type or "image/png", "data": block.base64},
        }

    def file(self, block: FileRefBlock) -> Dict[str, Any]:
        return {
            "type": "document",
            "source": {"type": "base64", "media_type": PDF_MIME_TYPE, "data": block.base64},
        }


def build_anthropic_messages(
    turns: List[Turn],
    materializer: Materializer,
    payloads: Optional[PayloadStore] = None,
) -> List[Dict[str, Any]]:
    encoder = AnthropicBlockEncoder()
    messages: List[Dict[str, Any]] = []
    for turn in turns:
        if turn.role == "user":
            content = encode_blocks(turn_blocks(turn, materializer), encoder)
            if content:
                messages.append({"role": "user", "content": content})
            continue
        ctx = assistant_context(turn, payloads, "anthropic")
        raw_content = ctx.replay.get("content") if ctx.replay is not None else None
        if isinstance(raw_content, list) and raw_content:
            messages.append({"role": "assistant", "content": raw_content})
            continue
        if ctx.text.strip():
            messages.append({"role": "assistant", "content": [{"type": "text", "text": ctx.text}]})
    return messages


def build_anthropic_request(
    turns: List[Turn],
    chat: ChatSettings,
    materializer: Materializer,
    payloads: Optional[PayloadStore] = None,
    system_instruction_file: Optional[str] = None,
) -> Dict[str, Any]:
    info = chat.model
    user = chat.user_settings()

    body: Dict[str, Any] = {
        "model": chat.api_model,
        "max_tokens": clamp_max_tokens(user.max_tokens if user else None),
        "system": load_system_prompt(chat.system_instruction, system_instruction_file),
        "messages": build_anthropic_messages(turns, materializer, payloads),
    }

    effort = normalize_effort(info, user.effort if user else None)
    if effort:
        body["thinking"] = {"type": "adaptive"}
        body["output_config"] = {"effort": effort}

    if chat.web_search_allowed():
        body["tools"] = [{"type": "web_search_20250305", "name": "web_search"}]
        body["tool_choice"] = {"type": "auto"}

    return body


class AnthropicClient:
    """Anthropic 提供方客户端实现。"""

    name = "anthropic"
    content_key = "content"

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
        return build_anthropic_request(
            turns,
            chat,
            self._materializer,
            self._payloads,
            getattr(self._settings, "system_instruction_file", None),
        )

    def _headers(self, api_key: str) -> Dict[str, str]:
        headers = {
            "x-api-key": api_key,
            "anthropic-version": getattr(self._settings, "anthropic_version", None) or "2023-06-01",
        }
        beta = (getattr(self._settings, "anthropic_beta", None) or "").strip()
        if beta:
            headers["anthropic-beta"] = beta
        return headers

    def _endpoint(self) -> str:
        base = getattr(self._settings, "anthropic_base_url", None) or ANTHROPIC_CONFIG.base_url
        return f"{base.rstrip('/')}/messages"

    def send(self, body, *, stream=False, token=None, on_delta=None, on_event=None, log_ctx=None) -> SendResult:
        api_key = require_api_key(self._settings, "anthropic_api_key")
        headers = self._headers(api_key)
        ctx = {"provider": self.name, **(log_ctx or {})}
        if stream:
            result = stream_exchange(
                self._endpoint(),
                headers,
                {**body, "stream": True},
                decode_anthropic_event,
                content_key=self.content_key,
                timeout=stream_timeout(self._settings),
                token=token,
                on_delta=on_delta,
                on_event=on_event,
                log_ctx=ctx,
            )
        else:
            result = send_exchange(self._endpoint(), headers, body, timeout=self._settings.http_timeout, token=token, log_ctx=ctx)
        if result.ok and not result.text:
            result.text = extract_text(result.response) or ""
        return result
