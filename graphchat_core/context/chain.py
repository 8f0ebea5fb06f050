"""对话链解析：把分支节点图从叶子回溯到根，线性化为 Turn 列表。

附件选择规则：
- 叶子节点自身的附件总是全部带上；
- 祖先节点的第 i 个附件仅当叶子的 selected_attachment_keys 含 "{nodeId}:{i}" 时带上；
- 叶子为 ink 节点时，链上所有 PDF 祖先的 "pdf:{pdfNodeId}" 自动加入选择集。
选择集每次解析只计算一次，所有祖先复用。
"""

import logging
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from graphchat_core.attachments.ink_export import InkExportOptions, InkExportResult, ink_node_to_png
from graphchat_core.domain.exceptions import ChainBroken, RasterizationFailed
from graphchat_core.domain.models import (
    Attachment,
    ConversationNode,
    InkNode,
    PdfAttachment,
    PdfNode,
    TextNode,
    Turn,
    UserPreface,
)
from graphchat_core.infrastructure.logging.logger import log_event

INK_NODE_IMAGE_PREFACE = "The contents of this message are in the provided image."

ROOT = -1
MISSING = -2

Rasterizer = Callable[[InkNode], Optional[InkExportResult]]


class NodeArena:
    """按整数下标存放节点的 arena，父链接保存为下标而不是对象引用。"""

    def __init__(self, nodes: Iterable[ConversationNode]):
        self._nodes: List[ConversationNode] = []
        self._index: Dict[str, int] = {}
        for node in nodes:
            slot = self._index.get(node.id)
            if slot is None:
                self._index[node.id] = len(self._nodes)
                self._nodes.append(node)
            else:
                self._nodes[slot] = node
        self._parents: List[int] = [self._parent_slot(n) for n in self._nodes]

    def _parent_slot(self, node: ConversationNode) -> int:
        if not node.parent_id:
            return ROOT
        return self._index.get(node.parent_id, MISSING)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._index

    def get(self, node_id: str) -> Optional[ConversationNode]:
        slot = self._index.get(node_id)
        return self._nodes[slot] if slot is not None else None

    def chain(self, leaf_id: str, strict: bool = False) -> List[ConversationNode]:
        """返回从根到叶子的节点列表。

        parent_id 缺失或出现环时视为 ChainBroken：默认截断并使用已收集的节点，
        strict=True 时抛出异常。未知叶子返回空列表。
        """
        slot = self._index.get(leaf_id)
        if slot is None:
            return []
        path: List[ConversationNode] = []
        seen = set()
        while True:
            if slot in seen:
                self._broken(leaf_id, self._nodes[slot].id, "cycle", strict)
                break
            seen.add(slot)
            node = self._nodes[slot]
            path.append(node)
            parent = self._parents[slot]
            if parent == ROOT:
                break
            if parent == MISSING:
                self._broken(leaf_id, node.id, "missing_parent", strict)
                break
            slot = parent
        path.reverse()
        return path

    @staticmethod
    def _broken(leaf_id: str, at_id: str, reason: str, strict: bool) -> None:
        if strict:
            raise ChainBroken(code="CHAIN_BROKEN", message=f"Chain broken at {at_id} ({reason})", leaf_id=leaf_id)
        log_event(logging.WARNING, "Chain broken, truncating", {"leaf_id": leaf_id}, at_node=at_id, reason=reason)


def leaf_selection(chain: List[ConversationNode], leaf: Optional[ConversationNode]) -> FrozenSet[str]:
    if leaf is None:
        return frozenset()
    selected = set(getattr(leaf, "selected_attachment_keys", None) or [])
    if isinstance(leaf, InkNode):
        for n in chain:
            if isinstance(n, PdfNode):
                selected.add(f"pdf:{n.id}")
    return frozenset(selected)


def preface_lines(preface: Optional[UserPreface]) -> List[str]:
    if preface is None:
        return []
    lines: List[str] = []
    reply_to = (preface.reply_to or "").strip()
    if reply_to:
        lines.append(f"Replying to: {reply_to}")
    contexts = [str(c or "").strip() for c in preface.contexts]
    for i, ctx in enumerate([c for c in contexts if c], start=1):
        lines.append(f"Context {i}: {ctx}")
    return lines


def user_turn_text(node: TextNode) -> str:
    lines = preface_lines(node.preface)
    body = node.content or ""
    if not lines:
        return body
    if body.strip():
        return "\n".join(lines) + "\n\n" + body
    return "\n".join(lines)


def ink_turn_text(node: InkNode) -> str:
    lines = preface_lines(node.preface)
    if lines:
        lines.append("")
    lines.append(INK_NODE_IMAGE_PREFACE)
    return "\n".join(lines)


class ChainResolver:
    """把节点集合与叶子 ID 解析为 Turn 列表。"""

    def __init__(self, rasterizer: Optional[Rasterizer] = None, ink_options: Optional[InkExportOptions] = None):
        if rasterizer is None:
            options = ink_options

            def rasterizer(node: InkNode) -> Optional[InkExportResult]:
                return ink_node_to_png(node, options)

        self._rasterize = rasterizer

    def resolve(self, nodes: Iterable[ConversationNode], leaf_id: str) -> List[Turn]:
        arena = nodes if isinstance(nodes, NodeArena) else NodeArena(nodes)
        chain = arena.chain(leaf_id)
        selection = leaf_selection(chain, arena.get(leaf_id))

        turns: List[Turn] = []
        for node in chain:
            is_leaf = node.id == leaf_id
            if isinstance(node, PdfNode):
                turn = self._pdf_turn(node, selection, is_leaf)
            elif isinstance(node, InkNode):
                turn = self._ink_turn(node, selection, is_leaf)
            elif node.author == "user":
                turn = self._user_turn(node, selection, is_leaf)
            else:
                turn = Turn(
                    role="assistant",
                    node_id=node.id,
                    node_kind="text",
                    text_parts=[node.content] if node.content else [],
                    is_leaf=is_leaf,
                    model_id=node.model_id,
                    raw_response_key=node.raw_response_key,
                    canonical_text=node.canonical_message.text if node.canonical_message else None,
                )
            if turn is not None:
                turns.append(turn)
        return turns

    @staticmethod
    def _selected_attachments(
        node_id: str,
        attachments: List[Optional[Attachment]],
        selection: FrozenSet[str],
        is_leaf: bool,
    ) -> List[Attachment]:
        out: List[Attachment] = []
        for i, att in enumerate(attachments):
            if att is None or att.kind == "ink":
                continue
            if is_leaf or f"{node_id}:{i}" in selection:
                out.append(att)
        return out

    def _pdf_turn(self, node: PdfNode, selection: FrozenSet[str], is_leaf: bool) -> Optional[Turn]:
        if f"pdf:{node.id}" not in selection:
            return None
        storage_key = (node.storage_key or "").strip()
        if not storage_key:
            return None
        att = PdfAttachment(storage_key=storage_key, name=(node.file_name or "").strip() or None)
        return Turn(role="user", node_id=node.id, node_kind="pdf", attachment_parts=[att], is_leaf=is_leaf)

    def _ink_turn(self, node: InkNode, selection: FrozenSet[str], is_leaf: bool) -> Optional[Turn]:
        try:
            exported = self._rasterize(node)
        except RasterizationFailed as exc:
            if is_leaf:
                raise
            log_event(logging.WARNING, "Dropping ancestor ink turn", {"node_id": node.id}, error=exc.message)
            return None
        if exported is None:
            if is_leaf:
                raise RasterizationFailed(
                    code="RASTERIZATION_FAILED",
                    message="Failed to rasterize ink node for sending.",
                    node_id=node.id,
                )
            log_event(logging.INFO, "Dropping empty ancestor ink turn", {"node_id": node.id})
            return None
        attachments: List[Attachment] = [exported.as_attachment()]
        attachments.extend(self._selected_attachments(node.id, node.attachments, selection, is_leaf))
        return Turn(
            role="user",
            node_id=node.id,
            node_kind="ink",
            text_parts=[ink_turn_text(node)],
            attachment_parts=attachments,
            is_leaf=is_leaf,
        )

    def _user_turn(self, node: TextNode, selection: FrozenSet[str], is_leaf: bool) -> Optional[Turn]:
        text = user_turn_text(node)
        attachments = self._selected_attachments(node.id, node.attachments, selection, is_leaf)
        if not text.strip() and not attachments:
            return None
        return Turn(
            role="user",
            node_id=node.id,
            node_kind="text",
            text_parts=[text] if text.strip() else [],
            attachment_parts=attachments,
            is_leaf=is_leaf,
        )


def resolve_turns(
    nodes: Iterable[ConversationNode],
    leaf_id: str,
    rasterizer: Optional[Rasterizer] = None,
    ink_options: Optional[InkExportOptions] = None,
) -> List[Turn]:
    return ChainResolver(rasterizer=rasterizer, ink_options=ink_options).resolve(nodes, leaf_id)
