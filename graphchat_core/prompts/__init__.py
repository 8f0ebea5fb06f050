"""系统提示词加载工具。

默认从 prompts/system_instructions.md 读取；配置了 system_instruction_file
时优先读取该文件。调用方显式传入的字符串（包括空字符串）总是优先。
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from graphchat_core.domain.exceptions import ValidationError


PROMPTS_DIR = Path(__file__).resolve().parent
DEFAULT_SYSTEM_INSTRUCTIONS_FILE = PROMPTS_DIR / "system_instructions.md"


@lru_cache(maxsize=8)
def _read(path: str) -> str:
    return Path(path).expanduser().read_text(encoding="utf-8")


def load_system_prompt(override: Optional[str] = None, path: Optional[str] = None) -> str:
    """返回本次请求使用的系统提示词。"""

    if isinstance(override, str):
        return override
    source = str(path or DEFAULT_SYSTEM_INSTRUCTIONS_FILE)
    try:
        return _read(source)
    except OSError as exc:
        raise ValidationError(
            code="SYSTEM_PROMPT_UNREADABLE",
            message=f"Cannot read system instructions from {source}: {exc}",
            path=source,
        ) from exc
