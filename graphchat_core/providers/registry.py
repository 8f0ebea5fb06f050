"""Provider 与模型配置。

本模块将“应用内模型 ID”与“厂商模型名”解耦：

- id：应用内使用的模型 ID，例如 "gpt-5.2-high"，同一个厂商模型可对应多个 ID（不同推理强度）。
- api_model：厂商实际提供的模型名，例如 "gpt-5.2"。

能力标记（web_search / streaming / supported_efforts 等）集中在这里配置，
请求构造器据此决定是否附带工具声明、推理配置，绝不请求模型不支持的能力。"""

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Mapping, Optional, Tuple

ProviderId = Literal["openai", "anthropic", "gemini", "xai"]
TextVerbosity = Literal["low", "medium", "high"]

# 推理强度从低到高排列，用于在模型不支持时选择最接近的等级
EFFORT_LEVELS: Tuple[str, ...] = ("none", "minimal", "low", "medium", "high", "xhigh", "max")


@dataclass(frozen=True)
class ModelInfo:
    """单个模型的能力与默认值。"""

    id: str
    provider: ProviderId
    api_model: str
    label: str
    web_search: bool = False
    streaming: bool = False
    default_verbosity: Optional[TextVerbosity] = None
    effort: Optional[str] = None
    reasoning_summary: bool = False
    thinking_level: Optional[Literal["low", "high"]] = None
    supported_efforts: Tuple[str, ...] = ()


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: ProviderId
    base_url: str
    models: Dict[str, ModelInfo] = field(default_factory=dict)


def _gpt52(effort: str, label: str) -> ModelInfo:
    return ModelInfo(
        id=f"gpt-5.2-{effort}",
        provider="openai",
        api_model="gpt-5.2",
        label=f"OpenAI - GPT-5.2 ({label})",
        web_search=True,
        streaming=True,
        default_verbosity="medium",
        effort=effort,
        reasoning_summary=True,
    )


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    models={
        m.id: m
        for m in (
            _gpt52("xhigh", "xHigh"),
            _gpt52("high", "High"),
            _gpt52("medium", "Medium"),
            _gpt52("low", "Low"),
            _gpt52("none", "None"),
        )
    },
)

ANTHROPIC_CONFIG = ProviderConfig(
    name="anthropic",
    base_url="https://api.anthropic.com/v1",
    models={
        "claude-opus-4-5": ModelInfo(
            id="claude-opus-4-5",
            provider="anthropic",
            api_model="claude-opus-4-5",
            label="Anthropic - Claude Opus 4.5",
            web_search=True,
            streaming=True,
            effort="high",
            supported_efforts=("low", "medium", "high"),
        ),
        "claude-sonnet-4-5": ModelInfo(
            id="claude-sonnet-4-5",
            provider="anthropic",
            api_model="claude-sonnet-4-5",
            label="Anthropic - Claude Sonnet 4.5",
            web_search=True,
            streaming=True,
        ),
    },
)

GEMINI_CONFIG = ProviderConfig(
    name="gemini",
    base_url="https://generativelanguage.googleapis.com",
    models={
        "gemini-3-pro-preview": ModelInfo(
            id="gemini-3-pro-preview",
            provider="gemini",
            api_model="gemini-3-pro-preview",
            label="Google - Gemini 3 Pro (High)",
            web_search=True,
            thinking_level="high",
        ),
        "gemini-3-pro-preview-low": ModelInfo(
            id="gemini-3-pro-preview-low",
            provider="gemini",
            api_model="gemini-3-pro-preview",
            label="Google - Gemini 3 Pro (Low)",
            web_search=True,
            thinking_level="low",
        ),
    },
)

XAI_CONFIG = ProviderConfig(
    name="xai",
    base_url="https://api.x.ai/v1",
    models={
        "grok-4": ModelInfo(
            id="grok-4",
            provider="xai",
            api_model="grok-4",
            label="xAI - Grok 4",
            web_search=True,
        ),
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
    "anthropic": ANTHROPIC_CONFIG,
    "gemini": GEMINI_CONFIG,
    "xai": XAI_CONFIG,
}

DEFAULT_MODEL_ID = "gpt-5.2-high"


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")


def get_model_info(model_id: Optional[str]) -> Optional[ModelInfo]:
    if not model_id:
        return None
    for cfg in PROVIDER_REGISTRY.values():
        info = cfg.models.get(model_id)
        if info is not None:
            return info
    return None


def list_models() -> List[ModelInfo]:
    return [m for cfg in PROVIDER_REGISTRY.values() for m in cfg.models.values()]


def provider_of(model_id: Optional[str]) -> ProviderId:
    """历史节点上的模型 ID 可能已不在注册表中，此时按 OpenAI 处理。"""

    info = get_model_info(model_id)
    return info.provider if info is not None else "openai"
