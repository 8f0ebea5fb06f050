"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("GRAPHCHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 模型选择 ----
    default_model: str = Field(
        default="gpt-5.2-high",
        description="默认模型 ID，由 registry 映射为具体厂商模型",
    )

    # OpenAI
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI API 基础URL")
    # Anthropic
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API 密钥")
    anthropic_base_url: str = Field(default="https://api.anthropic.com/v1", description="Anthropic API 基础URL")
    anthropic_version: str = Field(default="2023-06-01", description="anthropic-version 请求头")
    anthropic_beta: Optional[str] = Field(default=None, description="可选的 anthropic-beta 请求头")
    # Gemini
    gemini_api_key: Optional[str] = Field(default=None, description="Gemini API 密钥")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com",
        description="Gemini API 基础URL（不含版本号）",
    )
    # xAI
    xai_api_key: Optional[str] = Field(default=None, description="xAI API 密钥")
    xai_base_url: str = Field(default="https://api.x.ai/v1", description="xAI API 基础URL")

    http_timeout: float = Field(default=120.0, ge=1.0, description="HTTP 超时时间（秒）")
    stream_read_timeout: float = Field(default=300.0, ge=1.0, description="流式响应两次读取之间的最长等待（秒）")
    storage_root: str = Field(default=".storage", description="本地载荷/附件存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    system_instruction_file: Optional[str] = Field(
        default=None,
        description="自定义系统提示词文件；为空时使用内置 prompts/system_instructions.md",
    )

    # ---- 手写节点导出 ----
    ink_crop_enabled: bool = Field(default=True, description="导出时裁剪到笔迹范围")
    ink_crop_padding_px: float = Field(default=24.0, ge=0.0, le=200.0, description="裁剪留白（世界坐标）")
    ink_downscale_enabled: bool = Field(default=True, description="超出上限时是否自动缩小")
    ink_max_dim_px: int = Field(default=4096, ge=256, le=8192, description="导出图片最大边长")
    ink_max_pixels: int = Field(default=6_000_000, ge=100_000, le=40_000_000, description="导出图片最大像素数")
    ink_raster_scale: float = Field(default=2.0, ge=1.0, le=4.0, description="栅格化倍率")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key", "anthropic_api_key", "gemini_api_key", "xai_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            v = v.strip() or None
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
