"""对外 API 服务模块。

一次发送的完整流程：解析对话链 → 构建请求 → 保存请求快照 → 发送（流式或非流式）
→ 抽取规范化回复与元数据 → 保存原始回复 → 返回 ExchangeResult。

所有业务错误（缺少 API Key、叶子墨迹栅格化失败、链断裂、传输错误）都转换为
failure 结果返回，不会以异常形式抛给调用方。
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Union
from uuid import uuid4

from graphchat_core.attachments.ink_export import InkExportOptions
from graphchat_core.canonical.extractor import extract_canonical_message, extract_canonical_meta
from graphchat_core.config.settings import settings as default_settings
from graphchat_core.context.chain import ChainResolver
from graphchat_core.domain.exceptions import BusinessError, Cancelled
from graphchat_core.domain.models import (
    CanonicalMessage,
    CanonicalMeta,
    ConversationNode,
    SendResult,
    node_from_dict,
)
from graphchat_core.domain.stores import (
    AttachmentStore,
    PayloadStore,
    request_payload_key,
    response_payload_key,
)
from graphchat_core.infrastructure.logging.logger import log_event
from graphchat_core.providers import create_provider
from graphchat_core.providers.base import ChatSettings
from graphchat_core.providers.model_settings import ModelUserSettings, normalize_model_user_settings
from graphchat_core.providers.registry import DEFAULT_MODEL_ID, get_model_info
from graphchat_core.streaming.accumulator import DeltaCallback
from graphchat_core.streaming.cancel import CancellationToken
from graphchat_core.streaming.client import EventCallback


@dataclass
class ExchangeResult:
    """一次发送的结果，以及写入 PayloadStore 的键与规范化回复。"""

    result: SendResult
    model_id: str
    provider: Optional[str] = None
    request_key: Optional[str] = None
    response_key: Optional[str] = None
    canonical_message: Optional[CanonicalMessage] = None
    canonical_meta: Optional[CanonicalMeta] = None
    trace_id: str = ""

    @property
    def status(self) -> str:
        return self.result.status

    @property
    def text(self) -> str:
        return self.result.text

    @property
    def ok(self) -> bool:
        return self.result.ok


def _as_nodes(nodes: Iterable[Union[ConversationNode, Dict[str, Any]]]):
    return [node_from_dict(n) if isinstance(n, dict) else n for n in nodes]


def _failure_from(exc: BusinessError) -> SendResult:
    if isinstance(exc, Cancelled):
        return SendResult(status="cancelled", error="Canceled", error_code=exc.code)
    return SendResult(status="failure", error=exc.message, error_code=exc.code)


class ChatService:
    """对话发送服务：组合链解析、请求构建、流式客户端与持久化。"""

    def __init__(
        self,
        attachment_store: Optional[AttachmentStore] = None,
        payload_store: Optional[PayloadStore] = None,
        settings=None,
    ):
        self._attachments = attachment_store
        self._payloads = payload_store
        self._settings = settings or default_settings
        self._resolver = ChainResolver(ink_options=InkExportOptions.from_settings(self._settings))

    def send(
        self,
        nodes: Iterable[Union[ConversationNode, Dict[str, Any]]],
        leaf_id: str,
        chat_id: str,
        model_id: Optional[str] = None,
        user_settings: Optional[Union[ModelUserSettings, Dict[str, Any]]] = None,
        web_search_enabled: bool = False,
        system_instruction: Optional[str] = None,
        reply_node_id: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        on_delta: Optional[DeltaCallback] = None,
        on_event: Optional[EventCallback] = None,
    ) -> ExchangeResult:
        """发送以 leaf_id 结尾的对话链，返回 ExchangeResult。

        Args:
            nodes: 会话中的全部节点（对象或持久化 JSON）
            leaf_id: 本次发送的叶子节点 ID
            chat_id: 会话 ID，用于生成载荷键
            model_id: 模型 ID，缺省使用配置中的 default_model
            user_settings: 该模型的用户设置（ModelUserSettings 或原始字典）
            reply_node_id: 助手回复节点 ID，缺省使用 leaf_id
            token: 取消令牌
            on_delta: 文本增量回调 (delta, full_text)
        """
        model_id = model_id or getattr(self._settings, "default_model", None) or DEFAULT_MODEL_ID
        node_id = reply_node_id or leaf_id
        ctx = {"trace_id": uuid4().hex, "chat_id": chat_id, "node_id": node_id, "model_id": model_id}
        exchange = ExchangeResult(result=SendResult(status="failure"), model_id=model_id, trace_id=ctx["trace_id"])

        info = get_model_info(model_id)
        if info is None:
            log_event(logging.WARNING, "Unknown model", ctx)
            exchange.result = SendResult(status="failure", error=f"Unknown model: {model_id}", error_code="UNKNOWN_MODEL")
            return exchange
        exchange.provider = info.provider
        ctx["provider"] = info.provider

        user = user_settings
        if not isinstance(user, ModelUserSettings):
            user = normalize_model_user_settings(info, user_settings)
        chat = ChatSettings(
            model_id=model_id,
            web_search_enabled=web_search_enabled,
            user=user,
            system_instruction=system_instruction,
        )
        stream = bool(info.streaming and user.streaming)

        start = time.time()
        log_event(logging.INFO, "Send started", ctx, stream=stream, web_search=chat.web_search_allowed())
        client = create_provider(info.provider, self._settings, self._attachments, self._payloads)
        try:
            turns = self._resolver.resolve(_as_nodes(nodes), leaf_id)
            body = client.build_request(turns, chat)
            exchange.request_key = self._put(request_payload_key(chat_id, node_id), body, ctx)
            log_event(logging.INFO, "Request built", ctx, turns=len(turns), payload_bytes=_json_size(body))
            if token is not None:
                token.raise_if_cancelled()
            result = client.send(body, stream=stream, token=token, on_delta=on_delta, on_event=on_event, log_ctx=ctx)
        except BusinessError as exc:
            log_event(logging.WARNING, "Send failed", ctx, code=exc.code, error=exc.message)
            exchange.result = _failure_from(exc)
            return exchange

        exchange.result = result
        if result.ok:
            self._canonicalize(exchange, info, user, body)
            exchange.response_key = self._put(response_payload_key(chat_id, node_id), result.response, ctx)

        log_event(
            logging.INFO,
            "Send finished",
            ctx,
            status=result.status,
            error_code=result.error_code,
            chars=len(result.text),
            elapsed=round(time.time() - start, 3),
        )
        return exchange

    @staticmethod
    def _canonicalize(exchange: ExchangeResult, info, user: ModelUserSettings, body: Dict[str, Any]) -> None:
        result = exchange.result
        if info.provider == "gemini":
            # 引用已插入 result.text
            exchange.canonical_message = extract_canonical_message(None, result.text)
        else:
            exchange.canonical_message = extract_canonical_message(result.response, result.text)

        effort = None
        verbosity = None
        if info.provider == "openai":
            effort = info.effort
            verbosity = (body.get("text") or {}).get("verbosity")
        elif info.provider == "anthropic":
            effort = (body.get("output_config") or {}).get("effort")
        exchange.canonical_meta = extract_canonical_meta(
            result.response,
            used_web_search="tools" in body,
            effort=effort,
            verbosity=verbosity,
        )

    def _put(self, key: str, value: Any, ctx: dict) -> Optional[str]:
        if self._payloads is None:
            return None
        try:
            self._payloads.put(key, value)
        except Exception as exc:
            log_event(logging.WARNING, "Failed to persist payload", ctx, payload_key=key, error=str(exc))
            return None
        return key


def _json_size(value: Any) -> int:
    try:
        return len(json.dumps(value, ensure_ascii=False))
    except (TypeError, ValueError):
        return -1
