"""
Context aggregation: which messages the responder gets to see.

For a target node the context is:

  1. its ancestry chain, root first;
  2. for every referenced node, the *whole* tree that node belongs to,
     expanded breadth-first from that tree's root;
  3. merged and de-duplicated by id (ancestry wins), then re-sorted by
     ``created_at`` into one linear transcript;
  4. filtered through the caller's exclusion predicate.  The filter runs
     last so an excluded node can never leak back in through a reference.

Only ``{role, content}`` pairs leave this module via ``build_context``.
``collect_context_nodes`` and ``preview_context`` expose the same selection
with ids intact for the context lens.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from .forest import Forest
from .models import ChatNode, ContextMessage

logger = logging.getLogger(__name__)

ExcludePredicate = Callable[[ChatNode], bool]

# Rough budget the context lens measures against.
CONTEXT_TOKEN_BUDGET = 8000
LARGE_CONTEXT_PERCENT = 80.0


@dataclass
class ContextSelection:
    """The ordered nodes selected for a target, with bookkeeping."""
    nodes: list[ChatNode] = field(default_factory=list)
    excluded: list[ChatNode] = field(default_factory=list)
    ancestry_length: int = 0
    referenced_count: int = 0

    def messages(self) -> list[ContextMessage]:
        return [ContextMessage(role=n.role, content=n.content) for n in self.nodes]


def collect_context_nodes(
    forest: Forest,
    target_id: str,
    referenced_ids: Iterable[str] = (),
    exclude: Optional[ExcludePredicate] = None,
) -> ContextSelection:
    ancestry = forest.ancestry(target_id)
    if not ancestry:
        logger.debug(f"Context target {target_id} not found")
        return ContextSelection()

    referenced: list[ChatNode] = []
    expanded_roots: set[str] = set()
    for ref_id in referenced_ids:
        root_id = forest.root_of(ref_id)
        if root_id is None:
            logger.debug(f"Skipping unresolved reference {ref_id}")
            continue
        if root_id in expanded_roots:
            continue
        expanded_roots.add(root_id)
        referenced.extend(forest.tree_nodes(root_id))

    seen: set[str] = set()
    merged: list[ChatNode] = []
    for node in ancestry + referenced:
        if node.id in seen:
            continue
        seen.add(node.id)
        merged.append(node)

    merged.sort(key=lambda n: n.created_at)

    included = merged
    excluded: list[ChatNode] = []
    if exclude is not None:
        included = [n for n in merged if not exclude(n)]
        excluded = [n for n in merged if exclude(n)]

    return ContextSelection(
        nodes=included,
        excluded=excluded,
        ancestry_length=len(ancestry),
        referenced_count=len(referenced),
    )


def build_context(
    forest: Forest,
    target_id: str,
    referenced_ids: Iterable[str] = (),
    exclude: Optional[ExcludePredicate] = None,
) -> list[ContextMessage]:
    """Ordered ``{role, content}`` transcript for replying at ``target_id``."""
    return collect_context_nodes(forest, target_id, referenced_ids, exclude).messages()


# ---------------------------------------------------------------------------
# Context lens
# ---------------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    """Rough token count: about four characters per token."""
    return math.ceil(len(text) / 4)


@dataclass
class ContextPreview:
    included: list[ChatNode]
    excluded: list[ChatNode]
    total_tokens: int
    budget: int = CONTEXT_TOKEN_BUDGET

    @property
    def usage_percent(self) -> float:
        return min(self.total_tokens / self.budget * 100, 100.0)

    @property
    def is_large(self) -> bool:
        return self.usage_percent > LARGE_CONTEXT_PERCENT

    @property
    def user_count(self) -> int:
        return sum(1 for n in self.included if n.is_user)

    @property
    def assistant_count(self) -> int:
        return sum(1 for n in self.included if n.is_assistant)


def preview_context(
    forest: Forest,
    target_id: str,
    referenced_ids: Iterable[str] = (),
    excluded_ids: Iterable[str] = (),
) -> ContextPreview:
    excluded_set = set(excluded_ids)
    selection = collect_context_nodes(
        forest, target_id, referenced_ids, exclude=lambda n: n.id in excluded_set,
    )
    return ContextPreview(
        included=selection.nodes,
        excluded=selection.excluded,
        total_tokens=sum(estimate_tokens(n.content) for n in selection.nodes),
    )
