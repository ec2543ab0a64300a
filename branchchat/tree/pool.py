"""Node pool and branch selector.

The pool is a flat ``id -> MessageNode`` dict holding every node of one
conversation, including a synthetic ``root`` anchor.  The active branch map is
a separate ``parent id -> child index`` dict; an absent entry means index 0.
All traversal is by id lookup.

Functions that change the pool or the branch map mutate the dicts they are
given and return them, so callers can treat them as ``(pool', map')``
transformations.  Every mutation is synchronous and completes before control
returns, so no observer ever sees a half-updated tree.

Top-level messages are children of the root anchor: they appear in the root's
``child_ids`` but store ``parent_id=None``.
"""

from __future__ import annotations

from typing import Any

from branchchat.errors import NodeNotFound
from branchchat.tree.models import BranchInfo, MessageNode

# Fields a caller may patch through :func:`update_node`.  Tree-shape fields
# (``parent_id``, ``child_ids``, ``branch_index``) are owned by this module.
_MUTABLE_FIELDS = {"content", "timestamp", "is_streaming", "is_editing", "model"}


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _require(nodes: dict[str, MessageNode], node_id: str) -> MessageNode:
    node = nodes.get(node_id)
    if node is None:
        raise NodeNotFound(node_id)
    return node


def parent_key(node: MessageNode, root_id: str) -> str:
    """Return the id under which *node*'s siblings are listed."""
    return node.parent_id if node.parent_id is not None else root_id


# ---------------------------------------------------------------------------
# Mutation
# ---------------------------------------------------------------------------

def insert_child(
    nodes: dict[str, MessageNode],
    active_branches: dict[str, int],
    parent_id: str,
    node: MessageNode,
) -> tuple[dict[str, MessageNode], dict[str, int]]:
    """Append *node* as the newest child of *parent_id* and make it active.

    *parent_id* may be the root anchor's id, in which case the node becomes a
    top-level message.

    Raises:
        NodeNotFound: If *parent_id* is not in the pool.
        ValueError: If *node* is already pooled or arrives with children.
    """
    parent = _require(nodes, parent_id)
    if node.id in nodes:
        raise ValueError(f"Node already exists: {node.id!r}")
    if node.child_ids:
        raise ValueError("Only childless nodes can be inserted")

    node.parent_id = None if parent.is_root else parent.id
    node.branch_index = len(parent.child_ids)

    nodes[node.id] = node
    parent.child_ids.append(node.id)
    active_branches[parent.id] = node.branch_index
    return nodes, active_branches


def update_node(
    nodes: dict[str, MessageNode],
    node_id: str,
    **changes: Any,
) -> dict[str, MessageNode]:
    """Apply a partial update to one node's mutable fields.

    Allowed keyword arguments: ``content``, ``timestamp``, ``is_streaming``,
    ``is_editing``, ``model``.

    Raises:
        NodeNotFound: If *node_id* is not in the pool.
        ValueError: If a structural or unknown field is given.
    """
    node = _require(nodes, node_id)
    for key in changes:
        if key not in _MUTABLE_FIELDS:
            raise ValueError(f"Cannot update field {key!r}")
    for key, value in changes.items():
        setattr(node, key, value)
    return nodes


def switch_branch(
    nodes: dict[str, MessageNode],
    active_branches: dict[str, int],
    parent_id: str,
    index: int,
) -> dict[str, int]:
    """Select child *index* of *parent_id*.

    Out-of-range indices and unknown parents leave the map untouched.
    """
    parent = nodes.get(parent_id)
    if parent is None or not 0 <= index < len(parent.child_ids):
        return active_branches
    active_branches[parent_id] = index
    return active_branches


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def active_child(
    nodes: dict[str, MessageNode],
    active_branches: dict[str, int],
    node_id: str,
) -> MessageNode | None:
    """Return the selected child of *node_id*, or ``None`` at a leaf."""
    node = nodes.get(node_id)
    if node is None or not node.child_ids:
        return None
    index = active_branches.get(node_id, 0)
    if not 0 <= index < len(node.child_ids):
        index = 0
    return nodes.get(node.child_ids[index])


def visible_path(
    nodes: dict[str, MessageNode],
    active_branches: dict[str, int],
    root_id: str,
) -> list[MessageNode]:
    """Follow active branches from the root to a leaf.

    The root anchor is excluded.  A node that is still streaming is included
    with whatever content it currently holds.
    """
    path: list[MessageNode] = []
    seen = {root_id}
    current = active_child(nodes, active_branches, root_id)
    while current is not None and current.id not in seen:
        path.append(current)
        seen.add(current.id)
        current = active_child(nodes, active_branches, current.id)
    return path


def tail_id(
    nodes: dict[str, MessageNode],
    active_branches: dict[str, int],
    root_id: str,
) -> str:
    """Id of the last visible node, or the root id for an empty conversation."""
    path = visible_path(nodes, active_branches, root_id)
    return path[-1].id if path else root_id


def lineage(nodes: dict[str, MessageNode], node_id: str) -> list[MessageNode]:
    """Ancestors of *node_id*, top-level message first, ending with the node."""
    chain: list[MessageNode] = []
    seen: set[str] = set()
    node = nodes.get(node_id)
    while node is not None and not node.is_root and node.id not in seen:
        chain.append(node)
        seen.add(node.id)
        node = nodes.get(node.parent_id) if node.parent_id is not None else None
    chain.reverse()
    return chain


def siblings(nodes: dict[str, MessageNode], root_id: str, node_id: str) -> list[str]:
    """Ids of *node_id* and its siblings in stable append order."""
    node = nodes.get(node_id)
    if node is None or node.is_root:
        return []
    parent = nodes.get(parent_key(node, root_id))
    return list(parent.child_ids) if parent else []


def branch_info(
    nodes: dict[str, MessageNode],
    root_id: str,
    node_id: str,
) -> BranchInfo | None:
    """Describe *node_id*'s position among its siblings.

    Returns ``None`` for unknown nodes, the root, and nodes without siblings.
    """
    ids = siblings(nodes, root_id, node_id)
    if len(ids) <= 1:
        return None
    index = ids.index(node_id)
    return BranchInfo(
        total=len(ids),
        current_index=index,
        has_previous=index > 0,
        has_next=index < len(ids) - 1,
    )


def branch_target(
    nodes: dict[str, MessageNode],
    root_id: str,
    node_id: str,
    index: int,
) -> str | None:
    """Return the sibling id that *index* selects, if it exists."""
    ids = siblings(nodes, root_id, node_id)
    if not 0 <= index < len(ids):
        return None
    return ids[index]


def default_leaf(nodes: dict[str, MessageNode], node_id: str) -> str | None:
    """Walk first children from *node_id* and return the leaf reached."""
    node = nodes.get(node_id)
    if node is None:
        return None
    seen = {node.id}
    while node.child_ids:
        child = nodes.get(node.child_ids[0])
        if child is None or child.id in seen:
            break
        seen.add(child.id)
        node = child
    return node.id


def count_descendants(nodes: dict[str, MessageNode], node_id: str) -> int:
    """Number of nodes below *node_id* across every branch."""
    node = nodes.get(node_id)
    if node is None:
        return 0
    total = 0
    stack = list(node.child_ids)
    while stack:
        child = nodes.get(stack.pop())
        if child is None:
            continue
        total += 1
        stack.extend(child.child_ids)
    return total


def count_hidden(nodes: dict[str, MessageNode], root_id: str, node_id: str) -> int:
    """Messages held by the siblings of *node_id* and everything below them."""
    return sum(
        1 + count_descendants(nodes, sibling_id)
        for sibling_id in siblings(nodes, root_id, node_id)
        if sibling_id != node_id
    )


def check_invariants(
    nodes: dict[str, MessageNode],
    active_branches: dict[str, int],
    root_id: str,
) -> list[str]:
    """Return a description of every structural problem in the pool.

    An empty list means the pool and branch map are consistent: every node is
    reachable from the root exactly once, child lists hold no duplicates or
    dangling ids, cached ``branch_index`` values match, and every active
    index is in range.
    """
    problems: list[str] = []
    root = nodes.get(root_id)
    if root is None or not root.is_root:
        return [f"root anchor {root_id!r} missing from pool"]

    reached = {root_id}
    stack = [root]
    while stack:
        parent = stack.pop()
        expected_parent = None if parent.is_root else parent.id
        if len(set(parent.child_ids)) != len(parent.child_ids):
            problems.append(f"duplicate child ids under {parent.id!r}")
        for index, child_id in enumerate(parent.child_ids):
            child = nodes.get(child_id)
            if child is None:
                problems.append(f"dangling child {child_id!r} under {parent.id!r}")
                continue
            if child_id in reached:
                problems.append(f"node {child_id!r} reached twice")
                continue
            reached.add(child_id)
            if child.parent_id != expected_parent:
                problems.append(f"parent link of {child_id!r} does not match")
            if child.branch_index != index:
                problems.append(
                    f"branch_index of {child_id!r} is {child.branch_index}, expected {index}"
                )
            stack.append(child)

    for orphan in sorted(set(nodes) - reached):
        problems.append(f"orphan node {orphan!r}")

    for parent_id, index in active_branches.items():
        parent = nodes.get(parent_id)
        if parent is None:
            problems.append(f"active branch for unknown node {parent_id!r}")
        elif index < 0 or (parent.child_ids and index >= len(parent.child_ids)):
            problems.append(f"active index {index} out of range under {parent_id!r}")
    return problems
