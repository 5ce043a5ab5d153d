"""
Short labels for the conversation forest.

Every tree gets a letter (``A``, ``B``, … wrapping after ``Z``) and every
node inside it an ordinal in breadth-first order, giving addressable codes
such as ``B3``.  Labels are derived, never stored: they are recomputed from
the full node list on each structural change.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .forest import group_trees
from .models import ChatNode

TREE_SUMMARY_LENGTH = 50


def tree_letter(tree_index: int) -> str:
    """Letter for the tree at ``tree_index`` (0 → A, 25 → Z, 26 → A)."""
    return chr(ord("A") + tree_index % 26)


@dataclass
class ForestLabels:
    """Derived label maps, all keyed by node id."""
    labels: dict[str, str] = field(default_factory=dict)
    tree_labels: dict[str, str] = field(default_factory=dict)
    tree_indices: dict[str, int] = field(default_factory=dict)
    root_ids: list[str] = field(default_factory=list)

    def root_for_letter(self, letter: str) -> Optional[str]:
        """First root whose tree carries ``letter``."""
        letter = letter.upper()
        for root_id in self.root_ids:
            if self.tree_labels.get(root_id) == letter:
                return root_id
        return None

    def node_for_label(self, label: str) -> Optional[str]:
        label = label.upper()
        for node_id, short in self.labels.items():
            if short == label:
                return node_id
        return None


def generate_short_labels(nodes: list[ChatNode]) -> ForestLabels:
    result = ForestLabels()
    for tree_index, tree in enumerate(group_trees(nodes)):
        letter = tree_letter(tree_index)
        result.root_ids.append(tree[0].id)
        for ordinal, node in enumerate(tree, start=1):
            result.labels[node.id] = f"{letter}{ordinal}"
            result.tree_labels[node.id] = letter
            result.tree_indices[node.id] = tree_index
    return result


def generate_tree_summary(nodes: list[ChatNode], root_id: str) -> str:
    """One-line summary of a tree: its first user message, truncated."""
    for tree in group_trees(nodes):
        if tree[0].id != root_id:
            continue
        first_user = next((n for n in tree if n.is_user), None)
        if first_user is None:
            break
        content = first_user.content
        if len(content) <= TREE_SUMMARY_LENGTH:
            return content
        return content[:TREE_SUMMARY_LENGTH] + "..."
    return "Empty conversation"
