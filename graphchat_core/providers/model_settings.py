"""按模型保存的用户设置，以及从任意 JSON 到合法设置的归一化。

非法或缺失的字段回落到模型默认值；模型不支持的能力被强制关闭
（不支持流式的模型 streaming=False，没有推理强度的模型 reasoning_summary="off"）。
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from graphchat_core.providers.registry import EFFORT_LEVELS, ModelInfo

ANTHROPIC_DEFAULT_MAX_TOKENS = 4096
ANTHROPIC_MAX_TOKENS_LIMIT = 200_000

_VERBOSITY = ("low", "medium", "high")
_SUMMARY = ("auto", "detailed", "off")


@dataclass(frozen=True)
class ModelUserSettings:
    streaming: bool
    verbosity: str = "medium"
    reasoning_summary: str = "off"
    max_tokens: Optional[int] = None
    effort: Optional[str] = None


def default_model_user_settings(model: ModelInfo) -> ModelUserSettings:
    return ModelUserSettings(
        streaming=bool(model.streaming),
        verbosity=model.default_verbosity if model.default_verbosity in _VERBOSITY else "medium",
        reasoning_summary="auto" if model.effort and model.reasoning_summary else "off",
        max_tokens=ANTHROPIC_DEFAULT_MAX_TOKENS if model.provider == "anthropic" else None,
        effort=model.effort if model.provider == "anthropic" and model.supported_efforts else None,
    )


def clamp_max_tokens(raw: Any, default: int = ANTHROPIC_DEFAULT_MAX_TOKENS) -> int:
    if isinstance(raw, bool):
        return default
    if isinstance(raw, str) and raw.strip():
        try:
            raw = float(raw)
        except ValueError:
            return default
    if not isinstance(raw, (int, float)) or not math.isfinite(raw):
        return default
    return max(1, min(ANTHROPIC_MAX_TOKENS_LIMIT, int(math.floor(raw))))


def normalize_effort(model: Optional[ModelInfo], requested: Optional[str]) -> Optional[str]:
    """把请求的推理强度映射到模型支持的等级。

    支持则原样返回；否则取不高于请求等级的最高支持等级，
    没有更低的就取最低的支持等级；未指定时用模型默认值。
    """

    if model is None or not model.supported_efforts:
        return None
    supported = [e for e in EFFORT_LEVELS if e in model.supported_efforts]
    default = model.effort if model.effort in supported else supported[-1]
    if not requested or requested not in EFFORT_LEVELS:
        return default
    if requested in supported:
        return requested
    rank = EFFORT_LEVELS.index(requested)
    lower = [e for e in supported if EFFORT_LEVELS.index(e) <= rank]
    return lower[-1] if lower else supported[0]


def normalize_model_user_settings(model: ModelInfo, raw: Any) -> ModelUserSettings:
    defaults = default_model_user_settings(model)
    obj: Dict[str, Any] = raw if isinstance(raw, dict) else {}

    streaming = obj.get("streaming") if isinstance(obj.get("streaming"), bool) else defaults.streaming
    verbosity = obj.get("verbosity") if obj.get("verbosity") in _VERBOSITY else defaults.verbosity
    summary_raw = obj.get("reasoningSummary", obj.get("reasoning_summary"))
    summary = summary_raw if summary_raw in _SUMMARY else defaults.reasoning_summary

    max_tokens = None
    effort = None
    if model.provider == "anthropic":
        max_tokens = clamp_max_tokens(obj.get("maxTokens", obj.get("max_tokens")), defaults.max_tokens)
        effort = normalize_effort(model, obj.get("effort"))

    return ModelUserSettings(
        streaming=bool(model.streaming and streaming),
        verbosity=verbosity,
        reasoning_summary=summary if model.effort else "off",
        max_tokens=max_tokens,
        effort=effort,
    )


def build_model_user_settings(models: Iterable[ModelInfo], raw: Any) -> Dict[str, ModelUserSettings]:
    obj = raw if isinstance(raw, dict) else {}
    return {m.id: normalize_model_user_settings(m, obj.get(m.id)) for m in models}
