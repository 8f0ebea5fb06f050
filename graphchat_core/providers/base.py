"""Provider 抽象接口与各请求构造器共用的工具。

上层 ChatService 不直接依赖具体厂商的 HTTP 协议，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 OpenAIClient）。
- 负责：把 Turn 列表构造成具体 API 请求体，发送请求，并把结果统一为 SendResult。

请求体构造分两步：先把 Turn 转成与厂商无关的 ContentBlock（text / image-ref / file-ref），
再由各厂商的 BlockVisitor 把每种内容块编码为自己的 JSON 形状。
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, TypeVar

from graphchat_core.attachments.materializer import Materializer
from graphchat_core.canonical.extractor import extract_text
from graphchat_core.domain.exceptions import ValidationError
from graphchat_core.domain.models import (
    ContentBlock,
    FileRefBlock,
    ImageRefBlock,
    SendResult,
    TextBlock,
    Turn,
)
from graphchat_core.domain.stores import PayloadStore
from graphchat_core.infrastructure.logging.logger import log_event
from graphchat_core.providers.model_settings import ModelUserSettings, default_model_user_settings
from graphchat_core.providers.registry import DEFAULT_MODEL_ID, ModelInfo, get_model_info, provider_of
from graphchat_core.streaming.accumulator import DeltaCallback
from graphchat_core.streaming.cancel import CancellationToken
from graphchat_core.streaming.client import EventCallback

T = TypeVar("T")


@dataclass
class ChatSettings:
    """一次发送的设置：模型、是否联网搜索、按模型保存的用户设置与系统提示词覆盖。"""

    model_id: str = DEFAULT_MODEL_ID
    web_search_enabled: bool = False
    user: Optional[ModelUserSettings] = None
    system_instruction: Optional[str] = None

    @property
    def model(self) -> Optional[ModelInfo]:
        return get_model_info(self.model_id)

    @property
    def api_model(self) -> str:
        info = self.model
        return info.api_model if info is not None else self.model_id

    def user_settings(self) -> Optional[ModelUserSettings]:
        if self.user is not None:
            return self.user
        info = self.model
        return default_model_user_settings(info) if info is not None else None

    def web_search_allowed(self) -> bool:
        info = self.model
        return bool(self.web_search_enabled and info is not None and info.web_search)


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    - name: Provider 名称，用于日志。
    - content_key: 回复 JSON 中内容块数组的字段名（流式重建时使用）。
    - build_request: 纯构造，除附件读取 / 文件上传外没有副作用。
    - send: 发送请求体；传输错误以 failure 结果返回，缺少 API Key 抛 ValidationError。
    """

    name: str
    content_key: str

    def build_request(self, turns: List[Turn], chat: ChatSettings) -> Dict[str, Any]:
        ...

    def send(
        self,
        body: Dict[str, Any],
        *,
        stream: bool = False,
        token: Optional[CancellationToken] = None,
        on_delta: Optional[DeltaCallback] = None,
        on_event: Optional[EventCallback] = None,
        log_ctx: Optional[dict] = None,
    ) -> SendResult:
        ...


class BlockVisitor(Protocol[T]):
    def text(self, block: TextBlock) -> Optional[T]:
        ...

    def image(self, block: ImageRefBlock) -> Optional[T]:
        ...

    def file(self, block: FileRefBlock) -> Optional[T]:
        ...


def visit_block(block: ContentBlock, visitor: BlockVisitor[T]) -> Optional[T]:
    """按内容块类型分派；推理块只出现在回复中，不会发回 Provider。"""

    if isinstance(block, TextBlock):
        return visitor.text(block)
    if isinstance(block, ImageRefBlock):
        return visitor.image(block)
    if isinstance(block, FileRefBlock):
        return visitor.file(block)
    return None


def encode_blocks(blocks: List[ContentBlock], visitor: BlockVisitor[T]) -> List[T]:
    out: List[T] = []
    for block in blocks:
        part = visit_block(block, visitor)
        if part is not None:
            out.append(part)
    return out


def turn_blocks(turn: Turn, materializer: Materializer) -> List[ContentBlock]:
    """用户轮次的内容块：先文本，后附件；不可用的附件变成占位文本块。"""

    blocks: List[ContentBlock] = [TextBlock(text=t) for t in turn.text_parts if t and t.strip()]
    blocks.extend(materializer.to_block(att) for att in turn.attachment_parts)
    return blocks


def load_raw_reply(payloads: Optional[PayloadStore], key: Optional[str]) -> Optional[Dict[str, Any]]:
    key = (key or "").strip()
    if not key or payloads is None:
        return None
    try:
        raw = payloads.get(key)
    except Exception as exc:
        log_event(logging.WARNING, "Failed to load raw reply", {}, payload_key=key, error=str(exc))
        return None
    return raw if isinstance(raw, dict) else None


@dataclass
class AssistantContext:
    """助手轮次在请求中的来源。

    - text: 规范化文本 → 原始回复抽取的文本 → 节点正文，依次回退；
    - replay: 仅当没有规范化文本、且原始回复来自同一 Provider 时提供，用于原样回放。
    """

    text: str
    replay: Optional[Dict[str, Any]] = None


def assistant_context(turn: Turn, payloads: Optional[PayloadStore], provider: str) -> AssistantContext:
    canonical = turn.canonical_text or ""
    if canonical.strip():
        return AssistantContext(text=canonical)
    raw = load_raw_reply(payloads, turn.raw_response_key)
    replay = raw if raw is not None and provider_of(turn.model_id) == provider else None
    try:
        text = extract_text(raw) if raw is not None else None
    except (AttributeError, TypeError, KeyError, IndexError):
        text = None
    return AssistantContext(text=text or turn.text, replay=replay)


def require_api_key(settings: Any, field_name: str) -> str:
    key = getattr(settings, field_name, None)
    if not key:
        raise ValidationError(code="MISSING_API_KEY", message=f"{field_name.upper()} not set")
    return key
