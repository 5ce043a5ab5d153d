"""
Shared planning-canvas state and its last-write-wins merge rules.

Each participant keeps its own ``CanvasGraph``.  Remote updates are applied
in arrival order with no timestamp comparison:

    node_add / edge_add   ignored if the id already exists (idempotent)
    node_update           replaces the listed fields unconditionally
    node_delete           removes the block and every edge touching it
    edge_delete           removes the edge
    bulk_update           upserts every listed block and edge

A sync response goes through ``merge_missing`` instead, which only adds ids
the receiver doesn't have, so stale remote data never clobbers a local edit
in progress.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from .models import CanvasBlock, CanvasEdge, CanvasUpdate

logger = logging.getLogger(__name__)


class CanvasGraph:
    """Blocks and edges of one planning canvas, keyed by id."""

    def __init__(
        self,
        blocks: Optional[Iterable[CanvasBlock]] = None,
        edges: Optional[Iterable[CanvasEdge]] = None,
    ):
        self.blocks: dict[str, CanvasBlock] = {b.id: b for b in blocks or []}
        self.edges: dict[str, CanvasEdge] = {e.id: e for e in edges or []}

    def is_empty(self) -> bool:
        return not self.blocks and not self.edges

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "nodes": [b.model_dump() for b in self.blocks.values()],
            "edges": [e.model_dump() for e in self.edges.values()],
        }

    # --- Primitive operations ---

    def add_block(self, block: CanvasBlock) -> bool:
        if block.id in self.blocks:
            return False
        self.blocks[block.id] = block
        return True

    def update_block(self, block_id: str, changes: dict[str, Any]) -> bool:
        current = self.blocks.get(block_id)
        if current is None:
            logger.debug(f"Update for unknown block {block_id} ignored")
            return False
        merged = {**current.model_dump(), **changes, "id": block_id}
        self.blocks[block_id] = CanvasBlock.model_validate(merged)
        return True

    def delete_block(self, block_id: str) -> bool:
        if self.blocks.pop(block_id, None) is None:
            return False
        self.edges = {
            edge_id: edge for edge_id, edge in self.edges.items()
            if edge.source_id != block_id and edge.target_id != block_id
        }
        return True

    def add_edge(self, edge: CanvasEdge) -> bool:
        if edge.id in self.edges:
            return False
        self.edges[edge.id] = edge
        return True

    def delete_edge(self, edge_id: str) -> bool:
        return self.edges.pop(edge_id, None) is not None

    def upsert(self, blocks: Iterable[CanvasBlock], edges: Iterable[CanvasEdge]) -> None:
        for block in blocks:
            self.blocks[block.id] = block
        for edge in edges:
            self.edges[edge.id] = edge

    def merge_missing(self, blocks: Iterable[CanvasBlock], edges: Iterable[CanvasEdge]) -> tuple[int, int]:
        """Add only the entries this graph doesn't already hold."""
        added_blocks = sum(1 for b in blocks if self.add_block(b))
        added_edges = sum(1 for e in edges if self.add_edge(e))
        return added_blocks, added_edges

    # --- Remote updates ---

    def apply(self, update: CanvasUpdate) -> bool:
        """Apply a remote update.  Returns True when local state changed.

        Malformed payloads are logged and dropped.
        """
        payload = update.payload
        try:
            if update.type == "node_add":
                return self.add_block(CanvasBlock.model_validate(payload))
            if update.type == "node_update":
                return self.update_block(payload["node_id"], payload.get("changes") or {})
            if update.type == "node_delete":
                return self.delete_block(payload["node_id"])
            if update.type == "edge_add":
                return self.add_edge(CanvasEdge.model_validate(payload))
            if update.type == "edge_delete":
                return self.delete_edge(payload["edge_id"])
            if update.type == "bulk_update":
                self.upsert(*parse_graph_payload(payload))
                return True
        except (KeyError, ValidationError) as e:
            logger.warning(f"Dropping malformed {update.type} from {update.user_id}: {e}")
        return False


def parse_graph_payload(payload: dict[str, Any]) -> tuple[list[CanvasBlock], list[CanvasEdge]]:
    blocks = [CanvasBlock.model_validate(b) for b in payload.get("nodes") or []]
    edges = [CanvasEdge.model_validate(e) for e in payload.get("edges") or []]
    return blocks, edges
