"""
Collaboration reconciler for the shared planning canvas.

Lifecycle per participant::

    disconnected ──connect()──▶ connecting ──joined──▶ connected
         ▲                                                 │
         └──────────────────── disconnect() ◀──────────────┘

On reaching ``connected`` the participant tracks its presence (identity,
colour, no cursor) and, after ``sync_delay`` seconds so its own persisted
load can land first, broadcasts a ``sync_request``.  Any peer holding a
non-empty canvas answers the requester alone with a ``sync_response``; the
requester merges only the ids it doesn't have.  Nobody answering is normal.

Local edits are applied optimistically and broadcast straight away as
``canvas_update`` events.  Receivers apply them last-write-wins in arrival
order (see ``canvas_graph``), so two observers may disagree until the next
update reaches both.  There are no locks and no acknowledgements.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .canvas_graph import CanvasGraph, parse_graph_payload
from .models import CanvasBlock, CanvasEdge, CanvasUpdate, CollaboratorPresence, Cursor, now_ms
from .themes import collaborator_color
from .transport import PRESENCE_JOIN, PRESENCE_LEAVE, PRESENCE_SYNC, Transport

logger = logging.getLogger(__name__)

EVENT_CANVAS_UPDATE = "canvas_update"
EVENT_SYNC_REQUEST = "sync_request"
EVENT_SYNC_RESPONSE = "sync_response"

# Delay before asking peers for their state (seconds)
SYNC_REQUEST_DELAY = 0.5

# Cursor broadcasts are coalesced to one per interval (20 per second)
CURSOR_THROTTLE_SECONDS = 0.05


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class CollaborationReconciler:
    """Keeps one participant's ``CanvasGraph`` converged with its peers.

    The transport is injected so hosts can pick the real broadcast service
    and tests can use ``LocalHub``.
    """

    def __init__(
        self,
        transport: Transport,
        canvas_id: str,
        user_id: str,
        user_email: str = "",
        user_name: Optional[str] = None,
        graph: Optional[CanvasGraph] = None,
        on_remote_update: Optional[Callable[[CanvasUpdate], None]] = None,
        sync_delay: float = SYNC_REQUEST_DELAY,
        cursor_interval: float = CURSOR_THROTTLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transport = transport
        self.canvas_id = canvas_id
        self.user_id = user_id
        self.user_email = user_email
        self.user_name = user_name or (user_email.split("@")[0] if user_email else user_id)
        self.color = collaborator_color(user_id)
        self.graph = graph if graph is not None else CanvasGraph()
        self.on_remote_update = on_remote_update
        self.sync_delay = sync_delay
        self.cursor_interval = cursor_interval
        self.clock = clock

        self.state = ConnectionState.DISCONNECTED
        self.connection_error: Optional[str] = None
        self.collaborators: list[CollaboratorPresence] = []

        self._last_cursor_sent = float("-inf")
        self._pending_cursor: Optional[Cursor] = None
        self._sync_handle: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._subscribed = False

    @property
    def channel_name(self) -> str:
        return f"canvas:{self.canvas_id}"

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    # --- Lifecycle ---

    async def connect(self) -> None:
        if self.state != ConnectionState.DISCONNECTED:
            return
        self.state = ConnectionState.CONNECTING
        self._subscribe_handlers()
        try:
            await self.transport.join(self.channel_name)
        except (OSError, asyncio.TimeoutError) as e:
            self.state = ConnectionState.DISCONNECTED
            self.connection_error = "Failed to connect to collaboration channel"
            logger.error(f"[Collab] Could not join {self.channel_name}: {e}")
            return

        self.transport.track(self._presence_record().model_dump())
        self.state = ConnectionState.CONNECTED
        self.connection_error = None
        logger.info(f"[Collab] Connected to {self.channel_name}")

        loop = asyncio.get_running_loop()
        self._sync_handle = loop.call_later(self.sync_delay, self.request_sync)
        self._flush_task = asyncio.create_task(self._flush_cursor_loop())

    async def disconnect(self) -> None:
        if self._sync_handle is not None:
            self._sync_handle.cancel()
            self._sync_handle = None
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        if self.state != ConnectionState.DISCONNECTED:
            await self.transport.leave()
        self.state = ConnectionState.DISCONNECTED
        self.collaborators = []
        logger.info(f"[Collab] Left {self.channel_name}")

    def _subscribe_handlers(self) -> None:
        if self._subscribed:
            return
        self._subscribed = True
        self.transport.subscribe(PRESENCE_SYNC, self._handle_presence_sync)
        self.transport.subscribe(PRESENCE_JOIN, self._handle_presence_join)
        self.transport.subscribe(PRESENCE_LEAVE, self._handle_presence_leave)
        self.transport.subscribe(EVENT_CANVAS_UPDATE, self._handle_canvas_update)
        self.transport.subscribe(EVENT_SYNC_REQUEST, self._handle_sync_request)
        self.transport.subscribe(EVENT_SYNC_RESPONSE, self._handle_sync_response)

    # --- Presence ---

    def _presence_record(
        self,
        cursor: Optional[Cursor] = None,
        selected_node_id: Optional[str] = None,
    ) -> CollaboratorPresence:
        return CollaboratorPresence(
            user_id=self.user_id,
            email=self.user_email,
            name=self.user_name,
            color=self.color,
            cursor=cursor,
            selected_node_id=selected_node_id,
            last_seen=now_ms(),
        )

    def _handle_presence_sync(self, _payload: dict[str, Any]) -> None:
        users = []
        for key, record in self.transport.presence_state().items():
            if key == self.user_id:
                continue
            try:
                users.append(CollaboratorPresence.model_validate(record))
            except ValidationError as e:
                logger.warning(f"[Collab] Ignoring bad presence from {key}: {e}")
        self.collaborators = users

    def _handle_presence_join(self, payload: dict[str, Any]) -> None:
        if payload.get("key") != self.user_id:
            name = (payload.get("presence") or {}).get("name", payload.get("key"))
            logger.info(f"[Collab] User joined: {name}")

    def _handle_presence_leave(self, payload: dict[str, Any]) -> None:
        if payload.get("key") == self.user_id:
            return
        name = (payload.get("presence") or {}).get("name", payload.get("key"))
        logger.info(f"[Collab] User left: {name}")
        self.collaborators = [c for c in self.collaborators if c.user_id != payload.get("key")]

    def update_cursor(self, cursor: Optional[Cursor]) -> None:
        """Publish the cursor, at most once per ``cursor_interval``.

        Movement inside the interval is coalesced into the latest sample,
        which the flush tick sends later instead of dropping it.
        """
        if not self.is_connected:
            return
        now = self.clock()
        if now - self._last_cursor_sent < self.cursor_interval:
            self._pending_cursor = cursor
            return
        self._last_cursor_sent = now
        self._pending_cursor = None
        self.transport.track(self._presence_record(cursor=cursor).model_dump())

    def flush_cursor(self) -> None:
        if self._pending_cursor is None or not self.is_connected:
            return
        cursor = self._pending_cursor
        self._pending_cursor = None
        self._last_cursor_sent = self.clock()
        self.transport.track(self._presence_record(cursor=cursor).model_dump())

    async def _flush_cursor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cursor_interval)
            self.flush_cursor()

    def update_selected_node(self, node_id: Optional[str]) -> None:
        if not self.is_connected:
            return
        self.transport.track(self._presence_record(selected_node_id=node_id).model_dump())

    # --- Sync ---

    def request_sync(self) -> None:
        self._sync_handle = None
        if not self.is_connected:
            return
        logger.info("[Collab] Requesting sync from collaborators")
        self.transport.send(EVENT_SYNC_REQUEST, {
            "requester_id": self.user_id,
            "timestamp": now_ms(),
        })

    def _handle_sync_request(self, payload: dict[str, Any]) -> None:
        requester = payload.get("requester_id")
        if not requester or requester == self.user_id:
            return
        if self.graph.is_empty():
            return
        logger.info(f"[Collab] Sending sync response to {requester}")
        self.transport.send(EVENT_SYNC_RESPONSE, {
            "responder_id": self.user_id,
            "target_id": requester,
            **self.graph.snapshot(),
            "timestamp": now_ms(),
        }, target=requester)

    def _handle_sync_response(self, payload: dict[str, Any]) -> None:
        if payload.get("target_id") != self.user_id:
            return
        responder = payload.get("responder_id", "?")
        logger.info(f"[Collab] Received sync from {responder}")
        try:
            blocks, edges = parse_graph_payload(payload)
        except ValidationError as e:
            logger.warning(f"[Collab] Malformed sync response from {responder}: {e}")
            return
        if not blocks and not edges:
            return
        added_blocks, added_edges = self.graph.merge_missing(blocks, edges)
        logger.debug(f"[Collab] Merged {added_blocks} blocks and {added_edges} edges from {responder}")
        if self.on_remote_update is not None:
            self.on_remote_update(CanvasUpdate(
                type="bulk_update",
                payload={"nodes": [b.model_dump() for b in blocks], "edges": [e.model_dump() for e in edges]},
                user_id=responder,
                timestamp=payload.get("timestamp") or now_ms(),
            ))

    # --- Remote updates ---

    def _handle_canvas_update(self, payload: dict[str, Any]) -> None:
        try:
            update = CanvasUpdate.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"[Collab] Ignoring malformed canvas update: {e}")
            return
        if update.user_id == self.user_id:
            return
        changed = self.graph.apply(update)
        logger.debug(f"[Collab] {update.type} from {update.user_id} (changed={changed})")
        if self.on_remote_update is not None:
            self.on_remote_update(update)

    # --- Local mutations (optimistic, then broadcast) ---

    def _broadcast(self, update_type: str, payload: dict[str, Any]) -> None:
        if not self.is_connected:
            return
        update = CanvasUpdate(type=update_type, payload=payload, user_id=self.user_id)
        self.transport.send(EVENT_CANVAS_UPDATE, update.model_dump())

    def add_block(self, block: CanvasBlock) -> bool:
        added = self.graph.add_block(block)
        if added:
            self._broadcast("node_add", block.model_dump())
        return added

    def update_block(self, block_id: str, changes: dict[str, Any]) -> bool:
        updated = self.graph.update_block(block_id, changes)
        if updated:
            self._broadcast("node_update", {"node_id": block_id, "changes": changes})
        return updated

    def delete_block(self, block_id: str) -> bool:
        deleted = self.graph.delete_block(block_id)
        if deleted:
            self._broadcast("node_delete", {"node_id": block_id})
        return deleted

    def add_edge(self, edge: CanvasEdge) -> bool:
        added = self.graph.add_edge(edge)
        if added:
            self._broadcast("edge_add", edge.model_dump())
        return added

    def delete_edge(self, edge_id: str) -> bool:
        deleted = self.graph.delete_edge(edge_id)
        if deleted:
            self._broadcast("edge_delete", {"edge_id": edge_id})
        return deleted

    def bulk_update(self, blocks: list[CanvasBlock], edges: list[CanvasEdge]) -> None:
        self.graph.upsert(blocks, edges)
        self._broadcast("bulk_update", {
            "nodes": [b.model_dump() for b in blocks],
            "edges": [e.model_dump() for e in edges],
        })
