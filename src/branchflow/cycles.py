"""
Cycle guard for cross-tree references.

A reference is *circular* when its target already sits on the ancestry
chain of the referencing node: the referencing node would then be part of
its own context.  Cycles formed purely through chains of reference edges
(A references B, B references A) are not reported.

The guard only warns.  Sending is never blocked.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional

from .forest import Forest
from .labels import ForestLabels
from .models import ChatNode, ReferenceEdge, now_ms

# How long a circular-reference warning stays visible (seconds).
WARNING_TTL_SECONDS = 5.0


@dataclass
class CycleWarning:
    """A non-blocking, time-limited warning about a circular reference."""
    source_id: str
    target_id: str
    message: str
    created_at: float = field(default_factory=now_ms)
    ttl_seconds: float = WARNING_TTL_SECONDS

    def is_expired(self, at_ms: Optional[float] = None) -> bool:
        at_ms = now_ms() if at_ms is None else at_ms
        return at_ms - self.created_at >= self.ttl_seconds * 1000


def would_create_cycle(
    nodes_by_id: Mapping[str, ChatNode],
    from_id: str,
    to_id: str,
) -> bool:
    """True iff ``to_id`` lies on the path from ``from_id`` up to its root.

    The path includes ``from_id`` itself, so a node referencing itself is
    circular.  A visited set stops the walk on malformed parent data.
    """
    visited: set[str] = set()
    current = nodes_by_id.get(from_id)
    while current is not None and current.id not in visited:
        if current.id == to_id:
            return True
        visited.add(current.id)
        current = nodes_by_id.get(current.parent_id) if current.parent_id else None
    return False


def find_circular_references(forest: Forest) -> set[tuple[str, str]]:
    """Existing reference edges that should carry a warning indicator."""
    nodes_by_id = forest.nodes_by_id
    return {
        (ref.source_id, ref.target_id)
        for ref in forest.references
        if would_create_cycle(nodes_by_id, ref.source_id, ref.target_id)
    }


def is_circular(forest: Forest, edge: ReferenceEdge) -> bool:
    return would_create_cycle(forest.nodes_by_id, edge.source_id, edge.target_id)


def check_references(
    forest: Forest,
    from_id: Optional[str],
    target_ids: list[str],
    labels: ForestLabels,
) -> list[CycleWarning]:
    """Pre-flight check before sending a reply from ``from_id``.

    ``from_id`` is the node being replied to; ``None`` means a new tree,
    which can't be circular.
    """
    if from_id is None:
        return []
    nodes_by_id = forest.nodes_by_id
    warnings: list[CycleWarning] = []
    for target_id in target_ids:
        if would_create_cycle(nodes_by_id, from_id, target_id):
            branch = labels.tree_labels.get(target_id, "?")
            warnings.append(CycleWarning(
                source_id=from_id,
                target_id=target_id,
                message=f"Reference to branch {branch} would create a circular context",
            ))
    return warnings
