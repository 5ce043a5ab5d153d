"""
The Forest Model: every message of a conversation, held in memory.

Nodes are stored in a dict keyed by id, in insertion order.  The
parent→children adjacency is derived on demand rather than maintained
incrementally; conversations are small (tens to low hundreds of nodes) and a
derived view can never go stale.

Reference edges live alongside the nodes but outside the tree structure.
Deleting a subtree removes every reference edge touching the deleted set.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterable, Iterator, Optional

from .models import ChatNode, ReferenceEdge

logger = logging.getLogger(__name__)


class UnknownParentError(ValueError):
    """Raised when a node is inserted under a parent that does not exist."""


class DuplicateNodeError(ValueError):
    """Raised when a node id is inserted twice."""


class StreamClosedError(ValueError):
    """Raised when content is written to a node that is not streaming."""


def _sort_key(node: ChatNode) -> float:
    return node.created_at


def group_trees(nodes: list[ChatNode]) -> list[list[ChatNode]]:
    """Partition ``nodes`` into trees using parent links only.

    Roots are nodes without a parent, or whose parent is missing from
    ``nodes``.  Roots are ordered by ``created_at`` (stable, so ties keep
    input order).  Each tree is listed breadth-first with siblings ordered
    by ``created_at``.

    Nodes that can't be reached from any root (a malformed cycle in the
    stored parent chain) are grouped into extra trees, each started from the
    earliest stranded node, so no node is ever silently dropped.
    """
    by_id = {n.id: n for n in nodes}
    children: dict[str, list[ChatNode]] = {}
    roots: list[ChatNode] = []

    for node in nodes:
        if node.parent_id is None or node.parent_id not in by_id:
            roots.append(node)
        else:
            children.setdefault(node.parent_id, []).append(node)

    for siblings in children.values():
        siblings.sort(key=_sort_key)
    roots.sort(key=_sort_key)

    visited: set[str] = set()
    trees: list[list[ChatNode]] = []

    def walk(start: ChatNode) -> list[ChatNode]:
        tree: list[ChatNode] = []
        queue = deque([start])
        while queue:
            current = queue.popleft()
            if current.id in visited:
                continue
            visited.add(current.id)
            tree.append(current)
            queue.extend(children.get(current.id, []))
        return tree

    for root in roots:
        trees.append(walk(root))

    stranded = sorted((n for n in nodes if n.id not in visited), key=_sort_key)
    for node in stranded:
        if node.id in visited:
            continue
        logger.warning(f"Node {node.id} is part of a parent cycle; treating it as a root")
        trees.append(walk(node))

    return trees


class Forest:
    """All nodes and reference edges of one conversation.

    Structural invariants
    ---------------------
    * ``insert`` only accepts a parent that already exists, so the parent
      relation built through this class is acyclic.
    * ``load`` is the lenient path used for persisted data: nodes may arrive
      in any order and may name parents that were never stored.  Such nodes
      behave as roots.
    * ``id`` and ``parent_id`` are never rewritten.  Content can only change
      while a node is streaming.
    """

    def __init__(
        self,
        nodes: Optional[Iterable[ChatNode]] = None,
        references: Optional[Iterable[ReferenceEdge]] = None,
    ):
        self._nodes: dict[str, ChatNode] = {}
        self._references: list[ReferenceEdge] = []
        if nodes is not None:
            self.load(nodes, references or [])

    # --- Loading ---

    def load(self, nodes: Iterable[ChatNode], references: Iterable[ReferenceEdge] = ()) -> None:
        """Replace the forest contents without enforcing insert ordering."""
        self._nodes = {}
        for node in nodes:
            if node.id in self._nodes:
                logger.warning(f"Duplicate node id {node.id} in loaded data; keeping the first")
                continue
            self._nodes[node.id] = node
        self._references = []
        for ref in references:
            if ref.source_id in self._nodes and ref.target_id in self._nodes:
                if ref not in self._references:
                    self._references.append(ref)
            else:
                logger.debug(f"Dropping dangling reference {ref.source_id} -> {ref.target_id}")

    # --- Lookup ---

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ChatNode]:
        return iter(list(self._nodes.values()))

    def get(self, node_id: str) -> Optional[ChatNode]:
        return self._nodes.get(node_id)

    def nodes(self) -> list[ChatNode]:
        return list(self._nodes.values())

    @property
    def nodes_by_id(self) -> dict[str, ChatNode]:
        return dict(self._nodes)

    @property
    def references(self) -> list[ReferenceEdge]:
        return list(self._references)

    def parent_of(self, node_id: str) -> Optional[ChatNode]:
        node = self._nodes.get(node_id)
        if node is None or node.parent_id is None:
            return None
        return self._nodes.get(node.parent_id)

    def is_root(self, node_id: str) -> bool:
        node = self._nodes.get(node_id)
        if node is None:
            return False
        return node.parent_id is None or node.parent_id not in self._nodes

    def roots(self) -> list[ChatNode]:
        return [n for n in self._nodes.values() if self.is_root(n.id)]

    def children(self, node_id: str) -> list[ChatNode]:
        kids = [n for n in self._nodes.values() if n.parent_id == node_id]
        kids.sort(key=_sort_key)
        return kids

    def is_leaf(self, node_id: str) -> bool:
        """True iff no node names ``node_id`` as its parent.

        Only the leaf of an unbranched user chain may be edited in place.
        """
        return not any(n.parent_id == node_id for n in self._nodes.values())

    def ancestry(self, node_id: str) -> list[ChatNode]:
        """The chain from the root down to ``node_id`` (inclusive)."""
        chain: list[ChatNode] = []
        visited: set[str] = set()
        current = self._nodes.get(node_id)
        while current is not None and current.id not in visited:
            visited.add(current.id)
            chain.append(current)
            current = self._nodes.get(current.parent_id) if current.parent_id else None
        chain.reverse()
        return chain

    def root_of(self, node_id: str) -> Optional[str]:
        """Walk up from ``node_id`` to the first node with no (present) parent."""
        chain = self.ancestry(node_id)
        return chain[0].id if chain else None

    def tree_nodes(self, root_id: str) -> list[ChatNode]:
        """Every node reachable from ``root_id`` via children, breadth-first."""
        if root_id not in self._nodes:
            return []
        children = self._child_index()
        result: list[ChatNode] = []
        visited: set[str] = set()
        queue = deque([root_id])
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            result.append(self._nodes[current])
            queue.extend(children.get(current, []))
        return result

    def descendants(self, node_id: str) -> set[str]:
        """``node_id`` plus every node whose ancestry includes it."""
        return {n.id for n in self.tree_nodes(node_id)}

    def _child_index(self) -> dict[str, list[str]]:
        index: dict[str, list[str]] = {}
        for node in sorted(self._nodes.values(), key=_sort_key):
            if node.parent_id is not None:
                index.setdefault(node.parent_id, []).append(node.id)
        return index

    # --- Structural mutation ---

    def insert(self, node: ChatNode) -> ChatNode:
        if node.id in self._nodes:
            raise DuplicateNodeError(f"Node already exists: {node.id}")
        if node.parent_id is not None and node.parent_id not in self._nodes:
            raise UnknownParentError(f"Parent not found for {node.id}: {node.parent_id}")
        self._nodes[node.id] = node
        return node

    def delete_subtree(self, node_id: str) -> set[str]:
        """Remove ``node_id`` and all of its descendants.

        Reference edges whose source or target falls inside the removed set
        are dropped too.  Returns the removed ids so callers can clean up
        positions and persisted state.
        """
        removed = self.descendants(node_id)
        if not removed:
            return set()
        for removed_id in removed:
            del self._nodes[removed_id]
        before = len(self._references)
        self._references = [
            ref for ref in self._references
            if ref.source_id not in removed and ref.target_id not in removed
        ]
        logger.debug(
            f"Deleted subtree {node_id}: {len(removed)} nodes, "
            f"{before - len(self._references)} references"
        )
        return removed

    # --- References ---

    def add_reference(self, source_id: str, target_id: str) -> ReferenceEdge:
        if source_id not in self._nodes:
            raise KeyError(source_id)
        if target_id not in self._nodes:
            raise KeyError(target_id)
        edge = ReferenceEdge(source_id=source_id, target_id=target_id)
        if edge not in self._references:
            self._references.append(edge)
        return edge

    def references_from(self, source_id: str) -> list[str]:
        return [ref.target_id for ref in self._references if ref.source_id == source_id]

    # --- Non-structural mutation ---

    def toggle_collapse(self, node_id: str) -> bool:
        node = self._nodes[node_id]
        node.is_collapsed = not node.is_collapsed
        return node.is_collapsed

    def _streaming_node(self, node_id: str) -> ChatNode:
        node = self._nodes[node_id]
        if not node.is_streaming:
            raise StreamClosedError(f"Node {node_id} is not streaming")
        return node

    def append_content(self, node_id: str, delta: str) -> ChatNode:
        node = self._streaming_node(node_id)
        node.content += delta
        return node

    def set_content(self, node_id: str, content: str) -> ChatNode:
        node = self._streaming_node(node_id)
        node.content = content
        return node

    def finish_stream(self, node_id: str, content: Optional[str] = None) -> ChatNode:
        node = self._streaming_node(node_id)
        if content is not None:
            node.content = content
        node.is_streaming = False
        return node
