"""OpenAI Responses API 适配器。

本模块负责：

1. 把 Turn 列表转换为 Responses API 的 input 数组：
   - 文本 → input_text，图片 → input_image（data URL + detail），PDF → input_file（data URL + filename）；
   - 助手轮次优先使用规范化文本；没有时原样回放上一次 OpenAI 回复的 output 数组
     （含加密推理内容，保证多轮推理连续），再退回抽取文本。
2. 按模型能力附加 text.verbosity（仅 gpt-5*）、reasoning、web_search 工具。
3. 发送：流式走 SSE（response.* 事件），非流式读取完整 JSON。
"""

from typing import Any, Dict, List, Optional

from graphchat_core.attachments.materializer import Materializer
from graphchat_core.canonical.extractor import extract_text
from graphchat_core.domain.models import FileRefBlock, ImageRefBlock, SendResult, TextBlock, Turn
from graphchat_core.domain.stores import AttachmentStore, PayloadStore
from graphchat_core.prompts import load_system_prompt
from graphchat_core.providers.base import (
    ChatSettings,
    assistant_context,
    encode_blocks,
    require_api_key,
    turn_blocks,
)
from graphchat_core.providers.registry import OPENAI_CONFIG
from graphchat_core.streaming.client import send_exchange, stream_exchange, stream_timeout
from graphchat_core.streaming.events import decode_openai_event


class OpenAIBlockEncoder:
    """ContentBlock → Responses API 的 input 内容。"""

    def text(self, block: TextBlock) -> Dict[str, Any]:
        return {"type": "input_text", "text": block.text}

    def image(self, block: ImageRefBlock) -> Dict[str, Any]:
        return {"type": "input_image", "image_url": block.data_url, "detail": block.detail or "auto"}

    def file(self, block: FileRefBlock) -> Dict[str, Any]:
        part: Dict[str, Any] = {"type": "input_file", "file_data": block.data_url}
        if block.filename:
            part["filename"] = block.filename
        return part


def supports_verbosity(api_model: str) -> bool:
    return isinstance(api_model, str) and api_model.startswith("gpt-5")


def build_openai_input(
    turns: List[Turn],
    materializer: Materializer,
    payloads: Optional[PayloadStore] = None,
) -> List[Dict[str, Any]]:
    encoder = OpenAIBlockEncoder()
    items: List[Dict[str, Any]] = []
    for turn in turns:
        if turn.role == "user":
            content = encode_blocks(turn_blocks(turn, materializer), encoder)
            if content:
                items.append({"role": "user", "content": content})
            continue
        ctx = assistant_context(turn, payloads, "openai")
        if ctx.replay is not None and isinstance(ctx.replay.get("output"), list):
            items.extend(ctx.replay["output"])
            continue
        if ctx.text.strip():
            items.append({"role": "assistant", "content": [{"type": "output_text", "text": ctx.text}]})
    return items


def build_openai_request(
    turns: List[Turn],
    chat: ChatSettings,
    materializer: Materializer,
    payloads: Optional[PayloadStore] = None,
    system_instruction_file: Optional[str] = None,
) -> Dict[str, Any]:
    info = chat.model
    api_model = chat.api_model
    user = chat.user_settings()

    body: Dict[str, Any] = {
        "model": api_model,
        "input": build_openai_input(turns, materializer, payloads),
        "instructions": load_system_prompt(chat.system_instruction, system_instruction_file),
        "store": True,
    }

    verbosity = (user.verbosity if user else None) or (info.default_verbosity if info else None)
    if verbosity and supports_verbosity(api_model):
        body["text"] = {"verbosity": verbosity}

    if chat.web_search_allowed():
        body["tools"] = [{"type": "web_search"}]
        body["tool_choice"] = "auto"

    if info is not None and info.effort:
        body["reasoning"] = {"effort": info.effort}
        summary = user.reasoning_summary if user else ("auto" if info.reasoning_summary else "off")
        if summary and summary != "off":
            body["reasoning"]["summary"] = summary
        include = list(body.get("include") or [])
        if "reasoning.encrypted_content" not in include:
            include.append("reasoning.encrypted_content")
        body["include"] = include

    return body


class OpenAIClient:
    """OpenAI 提供方客户端实现。"""

    name = "openai"
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
        return build_openai_request(
            turns,
            chat,
            self._materializer,
            self._payloads,
            getattr(self._settings, "system_instruction_file", None),
        )

    def _endpoint(self) -> str:
        base = getattr(self._settings, "openai_base_url", None) or OPENAI_CONFIG.base_url
        return f"{base.rstrip('/')}/responses"

    def send(self, body, *, stream=False, token=None, on_delta=None, on_event=None, log_ctx=None) -> SendResult:
        api_key = require_api_key(self._settings, "openai_api_key")
        headers = {"Authorization": f"Bearer {api_key}"}
        ctx = {"provider": self.name, **(log_ctx or {})}
        if stream:
            result = stream_exchange(
                self._endpoint(),
                headers,
                {**body, "stream": True},
                decode_openai_event,
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
