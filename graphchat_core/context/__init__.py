"""对话链解析：从叶子节点回溯到根，生成有序的 Turn 列表。"""

from graphchat_core.context.chain import ChainResolver, resolve_turns

__all__ = ["ChainResolver", "resolve_turns"]
