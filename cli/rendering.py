"""Utilities for rendering conversations in the CLI."""

from __future__ import annotations

from branchchat.tree import Conversation, MessageNode
from branchchat.tree import pool

_PREVIEW_WIDTH = 60


def _get_icon(role: str) -> str:
    icons = {
        "user": "🧑",
        "assistant": "🤖",
        "system": "⚙️",
        "root": "💬",
    }
    return icons.get(role, "📦")


def preview(text: str, width: int = _PREVIEW_WIDTH) -> str:
    """Single-line excerpt of *text*."""
    flat = " ".join(text.split())
    if len(flat) <= width:
        return flat
    return flat[: width - 1] + "…"


def short_id(node_id: str) -> str:
    return node_id[:8]


def render_tree(conv: Conversation) -> str:
    """Render every branch of *conv* as an ASCII tree.

    Nodes on the visible path are marked with ``*``; each line carries the
    node's short id and its 1-based position among its siblings.
    """
    nodes = conv.nodes
    visible = {
        n.id for n in pool.visible_path(nodes, conv.active_branches, conv.root_node_id)
    }
    lines = [f"{_get_icon('root')} {conv.title}"]
    seen = {conv.root_node_id}

    def _render_node(node: MessageNode, prefix: str, is_last: bool, total: int) -> None:
        seen.add(node.id)
        connector = "└── " if is_last else "├── "
        marker = "*" if node.id in visible else " "
        position = f" ({node.branch_index + 1}/{total})" if total > 1 else ""
        lines.append(
            f"{prefix}{connector}{marker} {_get_icon(node.role)} "
            f"[{short_id(node.id)}]{position} {preview(node.content) or '…'}"
        )
        child_prefix = prefix + ("    " if is_last else "│   ")
        children = [nodes[c] for c in node.child_ids if c in nodes and c not in seen]
        for i, child in enumerate(children):
            _render_node(child, child_prefix, i == len(children) - 1, len(node.child_ids))

    top = [nodes[c] for c in conv.root.child_ids if c in nodes]
    for i, node in enumerate(top):
        _render_node(node, "", i == len(top) - 1, len(top))

    if not top:
        lines.append("└── (empty)")
    return "\n".join(lines)


def render_message(conv: Conversation, node: MessageNode) -> str:
    """Header line plus content for one message on the visible path."""
    header = f"{_get_icon(node.role)} {node.role} [{short_id(node.id)}]"
    info = pool.branch_info(conv.nodes, conv.root_node_id, node.id)
    if info is not None:
        header += f"  ‹ {info.current_index + 1}/{info.total} ›"
        header += f"  (+{pool.count_hidden(conv.nodes, conv.root_node_id, node.id)} hidden)"
    if node.role == "assistant" and node.model:
        header += f"  ({node.model})"
    return f"{header}\n{node.content}"
