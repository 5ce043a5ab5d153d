"""
Hosting for one planning canvas: persisted state plus its live channel.

``CanvasSession.open()`` loads the stored blocks and edges into the graph
before joining the collaboration channel, so the delayed sync request that
``connect()`` schedules only fills in what the store didn't have.  Every
local or remote change marks the canvas dirty; ``CanvasSaver`` writes it
back once edits have been quiet for ``CANVAS_SAVE_DELAY`` seconds.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional

from .canvas_graph import CanvasGraph
from .models import CanvasBlock, CanvasEdge, CanvasUpdate
from .reconciler import CollaborationReconciler
from .store import ForestStore, StoreError
from .transport import Transport

logger = logging.getLogger(__name__)

# Canvas documents are written once editing has been quiet this long (seconds)
CANVAS_SAVE_DELAY = 1.0


class CanvasSaver:
    """Debounced writer for a single canvas graph."""

    def __init__(self, store: ForestStore, canvas_id: str, graph: CanvasGraph, delay: float = CANVAS_SAVE_DELAY):
        self.store = store
        self.canvas_id = canvas_id
        self.graph = graph
        self.delay = delay
        self.dirty = False
        self._timer: Optional[asyncio.TimerHandle] = None

    def schedule(self) -> None:
        self.dirty = True
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self.delay, self.flush)

    def flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self.dirty:
            return
        self.dirty = False
        try:
            self.store.save_canvas(
                self.canvas_id,
                list(self.graph.blocks.values()),
                list(self.graph.edges.values()),
            )
            logger.debug(f"Saved canvas {self.canvas_id}")
        except StoreError as e:
            self.dirty = True
            logger.error(f"Failed to save canvas {self.canvas_id}: {e}")


class CanvasSession:
    """A participant's view of one canvas, kept in the store and in sync with peers.

    Without a transport the session is local only: edits still land in the
    graph and the store.
    """

    def __init__(
        self,
        store: ForestStore,
        canvas_id: str,
        user_id: str,
        transport: Optional[Transport] = None,
        user_email: str = "",
        on_change: Optional[Callable[[CanvasUpdate], None]] = None,
        save_delay: float = CANVAS_SAVE_DELAY,
        **reconciler_options: Any,
    ):
        self.store = store
        self.canvas_id = canvas_id
        self.user_id = user_id
        self.on_change = on_change
        self.graph = CanvasGraph()
        self.saver = CanvasSaver(store, canvas_id, self.graph, delay=save_delay)
        self.reconciler: Optional[CollaborationReconciler] = None
        if transport is not None:
            self.reconciler = CollaborationReconciler(
                transport,
                canvas_id,
                user_id,
                user_email=user_email,
                graph=self.graph,
                on_remote_update=self._handle_remote_update,
                **reconciler_options,
            )
        self.is_open = False

    async def open(self) -> None:
        """Load the stored canvas, then join the channel."""
        if self.is_open:
            return
        blocks, edges = self.store.load_canvas(self.canvas_id)
        self.graph.blocks = {b.id: b for b in blocks}
        self.graph.edges = {e.id: e for e in edges}
        self.is_open = True
        logger.info(f"Opened canvas {self.canvas_id}: {len(blocks)} blocks, {len(edges)} edges")
        if self.reconciler is not None:
            await self.reconciler.connect()

    async def close(self) -> None:
        if self.reconciler is not None:
            await self.reconciler.disconnect()
        self.saver.flush()
        self.is_open = False

    def _handle_remote_update(self, update: CanvasUpdate) -> None:
        self.saver.schedule()
        if self.on_change is not None:
            self.on_change(update)

    def _changed(self, changed: bool) -> bool:
        if changed:
            self.saver.schedule()
        return changed

    # --- Local edits ---

    def add_block(self, block: CanvasBlock) -> bool:
        target = self.reconciler or self.graph
        return self._changed(target.add_block(block))

    def update_block(self, block_id: str, changes: dict[str, Any]) -> bool:
        target = self.reconciler or self.graph
        return self._changed(target.update_block(block_id, changes))

    def delete_block(self, block_id: str) -> bool:
        target = self.reconciler or self.graph
        return self._changed(target.delete_block(block_id))

    def add_edge(self, edge: CanvasEdge) -> bool:
        target = self.reconciler or self.graph
        return self._changed(target.add_edge(edge))

    def delete_edge(self, edge_id: str) -> bool:
        target = self.reconciler or self.graph
        return self._changed(target.delete_edge(edge_id))

    def replace(self, blocks: Iterable[CanvasBlock], edges: Iterable[CanvasEdge]) -> None:
        """Make the canvas hold exactly ``blocks`` and ``edges``.

        Removals go out as individual deletes so peers drop them too; the
        rest is a single bulk upsert.
        """
        blocks, edges = list(blocks), list(edges)
        keep_blocks = {b.id for b in blocks}
        keep_edges = {e.id for e in edges}
        for block_id in [b for b in self.graph.blocks if b not in keep_blocks]:
            self.delete_block(block_id)
        for edge_id in [e for e in self.graph.edges if e not in keep_edges]:
            self.delete_edge(edge_id)
        if self.reconciler is not None:
            self.reconciler.bulk_update(blocks, edges)
        else:
            self.graph.upsert(blocks, edges)
        self.saver.schedule()

    def snapshot(self) -> dict[str, Any]:
        return self.graph.snapshot()
