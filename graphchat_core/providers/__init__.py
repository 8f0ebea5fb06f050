"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口与共用工具 (base)。
- 维护 Provider 与模型配置 (registry) 以及按模型的用户设置 (model_settings)。
- 提供各厂商的具体实现 (openai_client、anthropic_client、gemini_client、xai_client)。
"""

from typing import Optional

from graphchat_core.config.settings import settings as default_settings
from graphchat_core.domain.stores import AttachmentStore, PayloadStore
from graphchat_core.providers.anthropic_client import AnthropicClient
from graphchat_core.providers.base import ChatSettings, ProviderClient
from graphchat_core.providers.gemini_client import GeminiClient
from graphchat_core.providers.openai_client import OpenAIClient
from graphchat_core.providers.registry import ProviderId, get_provider_config
from graphchat_core.providers.xai_client import XaiClient

_CLIENTS = {
    "openai": OpenAIClient,
    "anthropic": AnthropicClient,
    "gemini": GeminiClient,
    "xai": XaiClient,
}


def create_provider(
    name: ProviderId,
    settings=None,
    attachment_store: Optional[AttachmentStore] = None,
    payload_store: Optional[PayloadStore] = None,
) -> ProviderClient:
    """根据名称创建 Provider 实例。"""

    cfg = get_provider_config(name or "")
    cls = _CLIENTS[cfg.name]
    return cls(settings or default_settings, attachment_store, payload_store)


__all__ = ["ChatSettings", "ProviderClient", "create_provider"]
