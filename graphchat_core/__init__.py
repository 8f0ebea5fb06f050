"""GraphChat Core 顶层包。

该包实现图状对话（节点树 + 分叉）向多家 LLM Provider 发送消息的核心能力，
包括对话链解析、附件物化、各 Provider 请求构建、SSE 流式客户端、
规范化回复抽取以及本地持久化适配器。
"""

from graphchat_core.api.service import ChatService, ExchangeResult
from graphchat_core.streaming.cancel import CancellationToken

__all__ = ["ChatService", "ExchangeResult", "CancellationToken"]
