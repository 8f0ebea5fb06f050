"""统一的对话节点、附件与结果数据模型。

本模块定义了各 Provider 之间共享的标准数据结构：

- 附件：ImageAttachment / PdfAttachment / InkAttachment（按 kind 区分的联合类型）。
- 节点：TextNode / PdfNode / InkNode，组成一棵以 parent_id 相连的分支对话树。
- Turn: 链解析器输出的一条线性化对话轮次，每次请求重新计算，不持久化。
- ContentBlock: 构造请求时使用的内容块联合类型（text / image-ref / file-ref / reasoning）。
- CanonicalMessage / CanonicalMeta: 与 Provider 无关的回复摘要，用于后续上下文重建。
- SendResult: 一次发送的标签化结果（success / failure / cancelled）。

所有 Provider 适配器都只依赖这些模型，并负责在各自 API JSON 与模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

from graphchat_core.domain.exceptions import ValidationError


Author = Literal["user", "assistant"]
NodeKind = Literal["text", "pdf", "ink"]
AttachmentDetail = Literal["low", "auto", "high"]
SendStatus = Literal["success", "failure", "cancelled"]

PDF_MIME_TYPE = "application/pdf"


# ---- 附件 ----


@dataclass
class ImageAttachment:
    """图片附件。data（内联 base64）与 storage_key 同时存在时以 data 为准。"""

    mime_type: Optional[str] = None
    data: Optional[str] = None
    storage_key: Optional[str] = None
    detail: AttachmentDetail = "auto"
    name: Optional[str] = None
    kind: Literal["image"] = "image"


@dataclass
class PdfAttachment:
    """PDF 附件。"""

    mime_type: str = PDF_MIME_TYPE
    data: Optional[str] = None
    storage_key: Optional[str] = None
    name: Optional[str] = None
    kind: Literal["pdf"] = "pdf"


@dataclass
class InkAttachment:
    """手写附件，仅保存存储键，发送前必须栅格化。"""

    storage_key: str
    rev: Optional[int] = None
    kind: Literal["ink"] = "ink"


Attachment = Union[ImageAttachment, PdfAttachment, InkAttachment]


# ---- 规范化回复 ----


@dataclass(frozen=True)
class ReasoningBlock:
    """推理摘要片段（只出现在回复中，不会被发回 Provider）。"""

    text: str
    kind: Literal["reasoning"] = "reasoning"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "summary_text", "text": self.text}


@dataclass(frozen=True)
class CanonicalMessage:
    """与 Provider 无关的助手回复，创建后不可变。"""

    text: str
    role: Literal["assistant"] = "assistant"

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "text": self.text}


@dataclass(frozen=True)
class CanonicalMeta:
    used_web_search: Optional[bool] = None
    effort: Optional[str] = None
    verbosity: Optional[str] = None
    reasoning_summary_blocks: Optional[tuple] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.used_web_search is not None:
            out["usedWebSearch"] = self.used_web_search
        if self.effort is not None:
            out["effort"] = self.effort
        if self.verbosity is not None:
            out["verbosity"] = self.verbosity
        if self.reasoning_summary_blocks is not None:
            out["reasoningSummaryBlocks"] = [b.to_dict() for b in self.reasoning_summary_blocks]
        return out


# ---- 节点 ----


@dataclass
class UserPreface:
    """用户消息的前置引用：回复片段与若干上下文片段。"""

    reply_to: str = ""
    contexts: List[str] = field(default_factory=list)


@dataclass
class InkPoint:
    x: float
    y: float


@dataclass
class InkStroke:
    points: List[InkPoint]
    width: float = 2.0
    color: str = "#ffffff"


@dataclass
class TextNode:
    """文本节点（用户消息或助手回复）。

    - selected_attachment_keys: 仅对叶子节点有意义，形如 "{nodeId}:{i}" 或
      "pdf:{pdfNodeId}"，表示本次发送选择带上的祖先附件。
    - raw_response_key: 助手节点对应的原始回复在 PayloadStore 中的键。
    """

    id: str
    parent_id: Optional[str] = None
    author: Author = "user"
    content: str = ""
    preface: Optional[UserPreface] = None
    attachments: List[Optional[Attachment]] = field(default_factory=list)
    selected_attachment_keys: List[str] = field(default_factory=list)
    model_id: Optional[str] = None
    raw_response_key: Optional[str] = None
    canonical_message: Optional[CanonicalMessage] = None
    kind: Literal["text"] = "text"


@dataclass
class PdfNode:
    id: str
    parent_id: Optional[str] = None
    file_name: Optional[str] = None
    storage_key: Optional[str] = None
    kind: Literal["pdf"] = "pdf"


@dataclass
class InkNode:
    """手写节点。width/height 为节点在画布上的外框尺寸（世界坐标）。"""

    id: str
    parent_id: Optional[str] = None
    strokes: List[InkStroke] = field(default_factory=list)
    width: float = 640.0
    height: float = 480.0
    preface: Optional[UserPreface] = None
    attachments: List[Optional[Attachment]] = field(default_factory=list)
    selected_attachment_keys: List[str] = field(default_factory=list)
    kind: Literal["ink"] = "ink"


ConversationNode = Union[TextNode, PdfNode, InkNode]


# ---- 线性化轮次与请求内容块 ----


@dataclass
class Turn:
    """链解析器的输出单元，按从旧到新的顺序排列。"""

    role: Literal["user", "assistant"]
    node_id: str
    node_kind: NodeKind
    text_parts: List[str] = field(default_factory=list)
    attachment_parts: List[Attachment] = field(default_factory=list)
    is_leaf: bool = False
    model_id: Optional[str] = None
    raw_response_key: Optional[str] = None
    canonical_text: Optional[str] = None

    @property
    def text(self) -> str:
        return "\n".join(self.text_parts)


@dataclass(frozen=True)
class TextBlock:
    text: str
    kind: Literal["text"] = "text"


@dataclass(frozen=True)
class ImageRefBlock:
    mime_type: str
    base64: str
    detail: AttachmentDetail = "auto"
    storage_key: Optional[str] = None
    kind: Literal["image-ref"] = "image-ref"

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


@dataclass(frozen=True)
class FileRefBlock:
    mime_type: str
    base64: str
    filename: Optional[str] = None
    storage_key: Optional[str] = None
    kind: Literal["file-ref"] = "file-ref"

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


ContentBlock = Union[TextBlock, ImageRefBlock, FileRefBlock, ReasoningBlock]


# ---- 发送结果 ----


@dataclass
class SendResult:
    """一次 Provider 交换的标签化结果。

    - status: "success" / "failure" / "cancelled"。
    - text: 已累积的文本；失败或取消时保留部分文本，而不是丢弃。
    - response: 原始（或流式重建的）回复 JSON。
    """

    status: SendStatus
    text: str = ""
    response: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"


# ---- 从持久化 JSON 解析 ----


def _str_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def attachment_from_dict(raw: Any) -> Optional[Attachment]:
    """把持久化的附件 JSON（camelCase）转换为附件模型，无法识别时返回 None。"""

    if not isinstance(raw, dict):
        return None
    kind = raw.get("kind")
    data = raw.get("data") if isinstance(raw.get("data"), str) and raw.get("data") else None
    if kind == "image":
        detail = raw.get("detail")
        return ImageAttachment(
            mime_type=_str_or_none(raw.get("mimeType")),
            data=data,
            storage_key=_str_or_none(raw.get("storageKey")),
            detail=detail if detail in ("low", "auto", "high") else "auto",
            name=_str_or_none(raw.get("name")),
        )
    if kind == "pdf" or raw.get("mimeType") == PDF_MIME_TYPE:
        return PdfAttachment(
            data=data,
            storage_key=_str_or_none(raw.get("storageKey")),
            name=_str_or_none(raw.get("name")),
        )
    if kind == "ink":
        key = _str_or_none(raw.get("storageKey"))
        if not key:
            return None
        rev = raw.get("rev")
        return InkAttachment(storage_key=key, rev=rev if isinstance(rev, int) else None)
    return None


def _preface_from_dict(raw: Any) -> Optional[UserPreface]:
    if not isinstance(raw, dict):
        return None
    contexts = raw.get("contexts") if isinstance(raw.get("contexts"), list) else []
    return UserPreface(
        reply_to=str(raw.get("replyTo") or ""),
        contexts=[str(c) for c in contexts if c is not None],
    )


def _attachments_from_list(raw: Any) -> List[Optional[Attachment]]:
    # 无法解析的项保留为 None，保证 "{nodeId}:{i}" 选择键的下标不偏移
    items = raw if isinstance(raw, list) else []
    return [attachment_from_dict(item) for item in items]


def node_from_dict(raw: Dict[str, Any]) -> ConversationNode:
    """把持久化的节点 JSON 解析为节点模型。缺少 id 或字段类型错误时抛出 ValidationError。"""

    if not isinstance(raw, dict):
        raise ValidationError(code="INVALID_NODE", message=f"Node must be an object, got {type(raw).__name__}")
    try:
        return _parse_node(raw)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise ValidationError(
            code="INVALID_NODE",
            message=f"Malformed node {raw.get('id')!r}: {type(exc).__name__}: {exc}",
            node_id=raw.get("id"),
        ) from exc


def _parse_node(raw: Dict[str, Any]) -> ConversationNode:
    kind = raw.get("kind")
    node_id = str(raw["id"])
    parent_id = _str_or_none(raw.get("parentId"))
    if kind == "pdf":
        return PdfNode(
            id=node_id,
            parent_id=parent_id,
            file_name=_str_or_none(raw.get("fileName")),
            storage_key=_str_or_none(raw.get("storageKey")),
        )
    if kind == "ink":
        strokes: List[InkStroke] = []
        for s in raw.get("strokes") or []:
            if not isinstance(s, dict):
                continue
            points = [
                InkPoint(x=float(p["x"]), y=float(p["y"]))
                for p in s.get("points") or []
                if isinstance(p, dict) and "x" in p and "y" in p
            ]
            strokes.append(
                InkStroke(points=points, width=float(s.get("width") or 0.0), color=str(s.get("color") or "#ffffff"))
            )
        rect = raw.get("rect") if isinstance(raw.get("rect"), dict) else {}
        return InkNode(
            id=node_id,
            parent_id=parent_id,
            strokes=strokes,
            width=float(rect.get("w", 640.0)),
            height=float(rect.get("h", 480.0)),
            preface=_preface_from_dict(raw.get("userPreface")),
            attachments=_attachments_from_list(raw.get("attachments")),
            selected_attachment_keys=[str(k) for k in raw.get("selectedAttachmentKeys") or []],
        )
    canonical_raw = raw.get("canonicalMessage")
    canonical = None
    if isinstance(canonical_raw, dict) and isinstance(canonical_raw.get("text"), str):
        canonical = CanonicalMessage(text=canonical_raw["text"])
    return TextNode(
        id=node_id,
        parent_id=parent_id,
        author="assistant" if raw.get("author") == "assistant" else "user",
        content=raw.get("content") if isinstance(raw.get("content"), str) else "",
        preface=_preface_from_dict(raw.get("userPreface")),
        attachments=_attachments_from_list(raw.get("attachments")),
        selected_attachment_keys=[str(k) for k in raw.get("selectedAttachmentKeys") or []],
        model_id=_str_or_none(raw.get("modelId")),
        raw_response_key=_str_or_none(raw.get("apiResponseKey")),
        canonical_message=canonical,
    )
