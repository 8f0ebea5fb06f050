"""回复规范化：从原始回复中抽取文本、推理摘要与 Gemini 内联引用。"""

from graphchat_core.canonical.extractor import (
    add_inline_citations,
    extract_canonical_message,
    extract_canonical_meta,
    extract_text,
)

__all__ = [
    "add_inline_citations",
    "extract_canonical_message",
    "extract_canonical_meta",
    "extract_text",
]
