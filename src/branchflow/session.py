"""
Conversation session: one open conversation and everything the UI does to it.

The session owns the forest, the canvas positions, the reply target and the
context exclusion set, and wires the engine modules together for each user
action:

    send          parse @-mentions → cycle check → insert user + provisional
                  reply → record references → persist → build context →
                  stream the responder into the reply → place new nodes
    edit          delete a user leaf and aim the next reply at its parent
    delete        drop a subtree with its references and positions
    move_node     pin a node where the user dropped it (saved after a pause)
    relayout      forget every unpinned position and lay the forest out again

``view()`` is what a renderer consumes: positioned nodes with their labels,
palettes and flags, plus reply and reference edges.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from .context import ContextPreview, ContextSelection, build_context, collect_context_nodes, preview_context
from .cycles import CycleWarning, check_references, would_create_cycle
from .forest import Forest
from .labels import ForestLabels, generate_short_labels, generate_tree_summary
from .models import ROLE_ASSISTANT, ROLE_USER, ChatNode, NodePosition, ReferenceEdge, now_ms
from .organize import ForestLayout, LayoutOptions, focus_point, layout_forest
from .parser import parse_branch_references
from .responder import Responder, ResponderError
from .store import POSITION_SAVE_DELAY, ForestStore, PositionSaver, StoreError
from .themes import TreePalette, get_palette

logger = logging.getLogger(__name__)

EMPTY_RESPONSE = "(empty response)"
STREAM_INTERRUPTED = "stream interrupted"

DeltaCallback = Callable[[str], Awaitable[None]]


class NotEditableError(ValueError):
    """Only a user message with no replies beneath it can be edited."""


class NotReplyableError(ValueError):
    """Replies can only be attached to responder messages."""


@dataclass
class SendResult:
    user_node: ChatNode
    assistant_node: ChatNode
    references: list[str] = field(default_factory=list)
    warnings: list[CycleWarning] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class FlowNode:
    """A positioned node as the renderer sees it."""
    message: ChatNode
    position: NodePosition
    short_label: str
    tree_label: str
    tree_index: int
    palette: TreePalette
    is_root: bool
    is_last_in_branch: bool
    tree_summary: Optional[str] = None

    @property
    def id(self) -> str:
        return self.message.id

    @property
    def can_reply(self) -> bool:
        return self.message.is_assistant

    @property
    def can_edit(self) -> bool:
        return self.message.is_user and self.is_last_in_branch

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "agent" if self.message.is_assistant else "user",
            "position": self.position.model_dump(),
            "message": self.message.model_dump(),
            "short_label": self.short_label,
            "tree_label": self.tree_label,
            "tree_index": self.tree_index,
            "palette": self.palette.name,
            "is_root": self.is_root,
            "is_last_in_branch": self.is_last_in_branch,
            "tree_summary": self.tree_summary,
            "can_reply": self.can_reply,
            "can_edit": self.can_edit,
        }


@dataclass
class FlowEdge:
    id: str
    source: str
    target: str
    type: str  # 'reply' or 'reference'
    is_circular: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "type": self.type,
            "is_circular": self.is_circular,
        }


@dataclass
class FlowView:
    nodes: list[FlowNode] = field(default_factory=list)
    edges: list[FlowEdge] = field(default_factory=list)
    reply_target: Optional[str] = None
    warnings: list[CycleWarning] = field(default_factory=list)
    focus: Optional[tuple[float, float]] = None  # centre of the newest reply

    def node(self, node_id: str) -> Optional[FlowNode]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "reply_target": self.reply_target,
            "warnings": [w.message for w in self.warnings],
            "focus": list(self.focus) if self.focus is not None else None,
        }


class ConversationSession:
    """A single conversation, its canvas state and its persistence."""

    def __init__(
        self,
        conversation_id: str = "default",
        store: Optional[ForestStore] = None,
        responder: Optional[Responder] = None,
        layout_options: Optional[LayoutOptions] = None,
        position_save_delay: float = POSITION_SAVE_DELAY,
    ):
        self.conversation_id = conversation_id
        self.store = store
        self.responder = responder
        self.layout_options = layout_options or LayoutOptions()

        self.forest = Forest()
        self.positions: dict[str, NodePosition] = {}
        self.pinned: set[str] = set()
        self.excluded_ids: set[str] = set()
        self.reply_target: Optional[str] = None
        self.warnings: list[CycleWarning] = []
        self.last_added: Optional[str] = None

        self.position_saver = (
            PositionSaver(store, conversation_id, delay=position_save_delay) if store is not None else None
        )
        self._last_timestamp = 0.0

    # --- Persistence ---

    def load(self) -> None:
        """Replace in-memory state with the stored conversation."""
        if self.store is None:
            return
        snapshot = self.store.load_forest(self.conversation_id)
        self.forest.load(snapshot.nodes, snapshot.references)
        self.positions = dict(snapshot.positions)
        self.pinned = set(snapshot.positions)
        self.excluded_ids = set()
        self.reply_target = None
        self.last_added = None
        self.warnings = []
        self._last_timestamp = max((n.created_at for n in snapshot.nodes), default=0.0)
        self.update_layout()
        logger.info(f"Loaded conversation {self.conversation_id}: {len(self.forest)} messages")

    def _persist(self, operation: Callable[..., None], *args) -> Optional[str]:
        """Run a store write; returns the error message on failure."""
        if self.store is None:
            return None
        try:
            operation(self.conversation_id, *args)
        except StoreError as e:
            logger.error(f"Store write failed: {e}")
            return str(e)
        return None

    def flush(self) -> None:
        if self.position_saver is not None:
            self.position_saver.flush()

    # --- Derived state ---

    def labels(self) -> ForestLabels:
        return generate_short_labels(self.forest.nodes())

    def update_layout(self) -> ForestLayout:
        layout = layout_forest(self.forest.nodes(), self.positions, self.layout_options)
        self.positions = dict(layout.positions)
        return layout

    def relayout(self) -> ForestLayout:
        """Lay the forest out from scratch, keeping only user-placed nodes."""
        self.positions = {k: v for k, v in self.positions.items() if k in self.pinned}
        return self.update_layout()

    def active_warnings(self) -> list[CycleWarning]:
        now = now_ms()
        self.warnings = [w for w in self.warnings if not w.is_expired(now)]
        return list(self.warnings)

    def _is_excluded(self, node: ChatNode) -> bool:
        return node.id in self.excluded_ids

    def _timestamp(self) -> float:
        # Strictly increasing so a reply always sorts after its prompt
        ts = max(now_ms(), self._last_timestamp + 1)
        self._last_timestamp = ts
        return ts

    # --- Reply target ---

    def reply_to(self, node_id: Optional[str]) -> None:
        """Aim the next message at ``node_id``; ``None`` starts a new tree."""
        if node_id is None:
            self.reply_target = None
            return
        node = self.forest.get(node_id)
        if node is None:
            raise KeyError(node_id)
        if not node.is_assistant:
            raise NotReplyableError(f"Cannot reply to user message {node_id}")
        self.reply_target = node_id

    # --- Sending ---

    async def send(
        self,
        content: str,
        references: Optional[Iterable[str]] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        on_delta: Optional[DeltaCallback] = None,
    ) -> SendResult:
        content = content.strip()
        if not content:
            raise ValueError("Message content is empty")

        labels = self.labels()
        if references is None:
            ref_ids = parse_branch_references(content, labels)
        else:
            ref_ids = []
            for ref in references:
                if ref in self.forest and ref not in ref_ids:
                    ref_ids.append(ref)

        parent_id = self.reply_target if self.reply_target in self.forest else None
        warnings = check_references(self.forest, parent_id, ref_ids, labels)
        for warning in warnings:
            logger.warning(warning.message)
        self.warnings.extend(warnings)

        user_node = self.forest.insert(ChatNode(
            id=uuid.uuid4().hex,
            parent_id=parent_id,
            role=ROLE_USER,
            content=content,
            created_at=self._timestamp(),
        ))
        assistant_node = self.forest.insert(ChatNode(
            id=uuid.uuid4().hex,
            parent_id=user_node.id,
            role=ROLE_ASSISTANT,
            content="",
            created_at=self._timestamp(),
            is_streaming=True,
        ))
        for ref_id in ref_ids:
            self.forest.add_reference(user_node.id, ref_id)

        error = self._persist_new_exchange(user_node, assistant_node, ref_ids)
        self.last_added = assistant_node.id
        self.update_layout()

        if error is None and self.responder is None:
            error = "No responder configured"

        try:
            if error is None:
                messages = build_context(self.forest, user_node.id, ref_ids, exclude=self._is_excluded)
                logger.debug(f"Context for {user_node.id}: {len(messages)} messages, {len(ref_ids)} references")
                stream = self.responder.stream(messages, provider=provider, model=model)
                async with aclosing(stream) as deltas:
                    async for delta in deltas:
                        self.forest.append_content(assistant_node.id, delta)
                        if on_delta is not None:
                            await on_delta(delta)
        except ResponderError as e:
            logger.error(f"Responder failed: {e}")
            error = str(e)
        except (Exception, asyncio.CancelledError) as e:
            # Receiver went away mid-reply
            logger.warning(f"Stream for {assistant_node.id} interrupted: {e!r}")
            error = STREAM_INTERRUPTED
            raise
        finally:
            self._close_stream(assistant_node, error)
            self.reply_target = assistant_node.id

        return SendResult(
            user_node=user_node,
            assistant_node=assistant_node,
            references=ref_ids,
            warnings=warnings,
            error=error,
        )

    def _persist_new_exchange(self, user_node: ChatNode, assistant_node: ChatNode, ref_ids: list[str]) -> Optional[str]:
        if self.store is None:
            return None
        error = self._persist(self.store.append_node, user_node)
        for ref_id in ref_ids:
            if error is None:
                edge = ReferenceEdge(source_id=user_node.id, target_id=ref_id)
                error = self._persist(self.store.add_reference, edge)
        if error is None:
            error = self._persist(self.store.append_node, assistant_node)
        return error

    def _close_stream(self, node: ChatNode, error: Optional[str]) -> None:
        if not node.is_streaming:
            return
        content = f"Error: {error}" if error else (node.content or EMPTY_RESPONSE)
        self.forest.finish_stream(node.id, content)
        if self.store is not None:
            self._persist(self.store.update_node_content, node.id, content)

    # --- Structural edits ---

    def delete(self, node_id: str) -> set[str]:
        removed = self.forest.delete_subtree(node_id)
        if not removed:
            return removed
        for removed_id in removed:
            self.positions.pop(removed_id, None)
        self.pinned -= removed
        self.excluded_ids -= removed
        if self.position_saver is not None:
            self.position_saver.discard(removed)
        if self.reply_target in removed:
            self.reply_target = None
        if self.last_added in removed:
            self.last_added = None
        if self.store is not None:
            self._persist(self.store.delete_node, node_id)
        logger.info(f"Deleted {len(removed)} messages under {node_id}")
        return removed

    def edit(self, node_id: str) -> str:
        """Remove a user leaf so it can be re-sent.

        Returns the removed content.  The next ``send`` replies to the
        node's parent, or starts a new tree when it was a root.
        """
        node = self.forest.get(node_id)
        if node is None:
            raise KeyError(node_id)
        if not node.is_user or not self.forest.is_leaf(node_id):
            raise NotEditableError(f"Message {node_id} cannot be edited")
        parent = self.forest.parent_of(node_id)
        self.delete(node_id)
        self.reply_target = parent.id if parent is not None else None
        return node.content

    def toggle_collapse(self, node_id: str) -> bool:
        collapsed = self.forest.toggle_collapse(node_id)
        if self.store is not None:
            self._persist(self.store.set_collapsed, node_id, collapsed)
        return collapsed

    # --- Canvas ---

    def move_node(self, node_id: str, x: float, y: float) -> NodePosition:
        node = self.forest.get(node_id)
        if node is None:
            raise KeyError(node_id)
        current = self.positions.get(node_id)
        position = NodePosition(
            x=x,
            y=y,
            width=current.width if current else None,
            height=current.height if current else None,
        )
        self.positions[node_id] = position
        self.pinned.add(node_id)
        if self.position_saver is not None:
            self.position_saver.schedule({node_id: position})
        return position

    # --- Context lens ---

    def exclude(self, node_id: str) -> None:
        if node_id in self.forest:
            self.excluded_ids.add(node_id)

    def include(self, node_id: str) -> None:
        self.excluded_ids.discard(node_id)

    def include_all(self) -> None:
        self.excluded_ids.clear()

    def exclude_all(self) -> None:
        self.excluded_ids = {n.id for n in self.forest}

    def context_preview(
        self,
        target_id: Optional[str] = None,
        references: Iterable[str] = (),
    ) -> Optional[ContextPreview]:
        target_id = target_id or self.reply_target
        if target_id is None:
            return None
        return preview_context(self.forest, target_id, references, self.excluded_ids)

    def message_context(self, node_id: str) -> ContextSelection:
        """The context a message was (or would be) answered with."""
        return collect_context_nodes(self.forest, node_id, self.forest.references_from(node_id))

    # --- Rendering contract ---

    def view(self) -> FlowView:
        nodes = self.forest.nodes()
        labels = generate_short_labels(nodes)
        missing = [n.id for n in nodes if n.id not in self.positions]
        if missing:
            self.update_layout()

        nodes_by_id = self.forest.nodes_by_id
        flow_nodes = []
        for node in nodes:
            tree_index = labels.tree_indices.get(node.id, 0)
            is_root = self.forest.is_root(node.id)
            flow_nodes.append(FlowNode(
                message=node,
                position=self.positions[node.id],
                short_label=labels.labels.get(node.id, "?"),
                tree_label=labels.tree_labels.get(node.id, "?"),
                tree_index=tree_index,
                palette=get_palette(node, tree_index),
                is_root=is_root,
                is_last_in_branch=self.forest.is_leaf(node.id),
                tree_summary=generate_tree_summary(nodes, node.id) if is_root else None,
            ))

        edges = []
        for node in nodes:
            if node.parent_id is not None and node.parent_id in nodes_by_id:
                edges.append(FlowEdge(
                    id=f"reply-{node.parent_id}-{node.id}",
                    source=node.parent_id,
                    target=node.id,
                    type="reply",
                ))
        for ref in self.forest.references:
            edges.append(FlowEdge(
                id=f"ref-{ref.source_id}-{ref.target_id}",
                source=ref.source_id,
                target=ref.target_id,
                type="reference",
                is_circular=would_create_cycle(nodes_by_id, ref.source_id, ref.target_id),
            ))

        focus = None
        if self.last_added is not None:
            focus = focus_point(ForestLayout(positions=self.positions), self.last_added)

        return FlowView(
            nodes=flow_nodes,
            edges=edges,
            reply_target=self.reply_target,
            warnings=self.active_warnings(),
            focus=focus,
        )


class ConversationRegistry:
    """Open sessions keyed by conversation id, loaded from the store on demand.

    One of them is *active*: the one the message routes act on.
    """

    def __init__(
        self,
        store: Optional[ForestStore] = None,
        responder: Optional[Responder] = None,
        active: Optional[ConversationSession] = None,
        **session_options: Any,
    ):
        self.store = store
        self.responder = responder
        self.session_options = session_options
        self.sessions: dict[str, ConversationSession] = {}
        self.active_id: Optional[str] = None
        if active is not None:
            self.sessions[active.conversation_id] = active
            self.active_id = active.conversation_id

    @property
    def active(self) -> Optional[ConversationSession]:
        return self.sessions.get(self.active_id) if self.active_id is not None else None

    def exists(self, conversation_id: str) -> bool:
        if conversation_id in self.sessions:
            return True
        return self.store is not None and self.store.get_conversation(conversation_id) is not None

    def open(self, conversation_id: str) -> ConversationSession:
        session = self.sessions.get(conversation_id)
        if session is None:
            session = ConversationSession(
                conversation_id, store=self.store, responder=self.responder, **self.session_options
            )
            session.load()
            self.sessions[conversation_id] = session
        return session

    def select(self, conversation_id: str) -> ConversationSession:
        session = self.open(conversation_id)
        self.active_id = conversation_id
        logger.info(f"Active conversation: {conversation_id}")
        return session

    def close(self, conversation_id: str) -> None:
        session = self.sessions.pop(conversation_id, None)
        if session is not None:
            session.flush()
        if self.active_id == conversation_id:
            self.active_id = None

    def flush_all(self) -> None:
        for session in self.sessions.values():
            session.flush()
