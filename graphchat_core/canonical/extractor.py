"""把任意 Provider 的原始回复归约为 CanonicalMessage / CanonicalMeta。

文本抽取按固定优先级探测：
1. 顶层 output_text / text 字符串；
2. output[].content[] 中第一个非空的 output_text / text（OpenAI / xAI Responses）；
3. content[] 中所有 text 块拼接（Anthropic Messages）；
4. candidates[0].content.parts 中非 thought 的 text 拼接（Gemini）；
5. choices[0].message.content（Chat Completions 兼容格式）。
都取不到时退回调用方给出的 fallback_text（通常是流式累积文本）。
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from graphchat_core.domain.models import CanonicalMessage, CanonicalMeta, ReasoningBlock
from graphchat_core.infrastructure.logging.logger import log_event


def _non_empty(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _from_output(output: Any) -> Optional[str]:
    if not isinstance(output, list):
        return None
    for item in output:
        content = item.get("content") if isinstance(item, dict) else None
        if not isinstance(content, list):
            continue
        for c in content:
            if not isinstance(c, dict):
                continue
            text = _non_empty(c.get("output_text")) or _non_empty(c.get("text"))
            if text:
                return text
    return None


def _from_content_blocks(content: Any) -> Optional[str]:
    if not isinstance(content, list):
        return None
    parts = [
        b["text"]
        for b in content
        if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str) and b["text"]
    ]
    return _non_empty("".join(parts))


def gemini_text(raw: Any) -> Optional[str]:
    """Gemini 回复文本：第一个候选中非 thought 的 text part 依次拼接。"""

    if not isinstance(raw, dict):
        return None
    candidates = raw.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return None
    content = candidates[0].get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return None
    texts = [
        p["text"]
        for p in parts
        if isinstance(p, dict) and isinstance(p.get("text"), str) and not p.get("thought")
    ]
    return _non_empty("".join(texts))


def _from_choices(choices: Any) -> Optional[str]:
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    return _non_empty(message.get("content")) if isinstance(message, dict) else None


def extract_text(raw: Any) -> Optional[str]:
    if not isinstance(raw, dict):
        return None
    return (
        _non_empty(raw.get("output_text"))
        or _non_empty(raw.get("text"))
        or _from_output(raw.get("output"))
        or _from_content_blocks(raw.get("content"))
        or gemini_text(raw)
        or _from_choices(raw.get("choices"))
    )


def extract_canonical_message(raw: Any, fallback_text: Optional[str] = "") -> Optional[CanonicalMessage]:
    """抽取规范化消息；原始回复中没有文本时退回 fallback_text，两者都为空返回 None。"""

    try:
        text = extract_text(raw)
    except (AttributeError, TypeError, KeyError, IndexError) as exc:
        log_event(logging.WARNING, "Failed to probe raw reply for text", {}, error=str(exc))
        text = None
    if not text and isinstance(fallback_text, str) and fallback_text.strip():
        text = fallback_text
    if not text:
        return None
    return CanonicalMessage(text=text)


def _summary_source(raw: Dict[str, Any]) -> Optional[list]:
    reasoning = raw.get("reasoning")
    if isinstance(reasoning, dict) and isinstance(reasoning.get("summary"), list):
        return reasoning["summary"]
    response = raw.get("response")
    if isinstance(response, dict):
        nested = response.get("reasoning")
        if isinstance(nested, dict) and isinstance(nested.get("summary"), list):
            return nested["summary"]
    output = raw.get("output")
    if isinstance(output, list):
        for item in output:
            if isinstance(item, dict) and item.get("type") == "reasoning" and isinstance(item.get("summary"), list):
                return item["summary"]
    return None


def extract_canonical_meta(
    raw: Any,
    used_web_search: Optional[bool] = None,
    effort: Optional[str] = None,
    verbosity: Optional[str] = None,
) -> CanonicalMeta:
    blocks: Optional[Tuple[ReasoningBlock, ...]] = None
    source = _summary_source(raw) if isinstance(raw, dict) else None
    if source is not None:
        texts = []
        for b in source:
            text = b.get("text") if isinstance(b, dict) else None
            text = text if isinstance(text, str) else str(text if text is not None else "")
            if text.strip():
                texts.append(ReasoningBlock(text=text))
        blocks = tuple(texts)
    return CanonicalMeta(
        used_web_search=used_web_search,
        effort=effort,
        verbosity=verbosity,
        reasoning_summary_blocks=blocks,
    )


def _citation_links(indices: Any, chunks: List[Any]) -> List[str]:
    links: List[str] = []
    if not isinstance(indices, list):
        return links
    for i in indices:
        if not isinstance(i, int) or i < 0 or i >= len(chunks):
            continue
        chunk = chunks[i]
        web = chunk.get("web") if isinstance(chunk, dict) else None
        uri = web.get("uri") if isinstance(web, dict) else None
        if isinstance(uri, str) and uri:
            links.append(f"[{i + 1}](<{uri.replace('>', '%3E')}>)")
    return links


def add_inline_citations(text: str, grounding_metadata: Any) -> str:
    """按 groundingSupports 在文本中插入 "[n](<url>)" 形式的引用链接。

    插入位置优先用 segment.text 在文本中重新定位（容忍编码偏移），否则使用 segment.endIndex；
    越界的位置跳过。按位置从大到小插入，前面的插入不会影响尚未处理的偏移量。
    """

    if not isinstance(text, str) or not text or not isinstance(grounding_metadata, dict):
        return text
    supports = grounding_metadata.get("groundingSupports")
    chunks = grounding_metadata.get("groundingChunks")
    if not isinstance(supports, list) or not isinstance(chunks, list) or not supports:
        return text

    placed: List[Tuple[int, List[str]]] = []
    for support in supports:
        if not isinstance(support, dict):
            continue
        segment = support.get("segment") if isinstance(support.get("segment"), dict) else {}
        insert_at = segment.get("endIndex")
        segment_text = segment.get("text")
        if isinstance(segment_text, str) and segment_text:
            found = text.find(segment_text)
            if found >= 0:
                insert_at = found + len(segment_text)
        if not isinstance(insert_at, int) or isinstance(insert_at, bool) or not 0 <= insert_at <= len(text):
            continue
        links = _citation_links(support.get("groundingChunkIndices"), chunks)
        if links:
            placed.append((insert_at, links))

    placed.sort(key=lambda p: p[0], reverse=True)
    for insert_at, links in placed:
        text = text[:insert_at] + ", ".join(links) + text[insert_at:]
    return text


def gemini_grounding_metadata(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    candidates = raw.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return None
    meta = candidates[0].get("groundingMetadata")
    return meta if isinstance(meta, dict) else None
