"""
Data models for branchflow: the conversation forest ontology.

A conversation is a **forest** of messages.  Every message (a ``ChatNode``)
optionally points at a parent; a node without a parent is the root of a
branch, and everything reachable from that root through parent/child links
is one tree:

    Forest
    └── Tree      : a root plus every reply beneath it (labelled A, B, C …)
        └── Node      : a single message (labelled A1, A2, B3 …)

On top of the primary parent/child structure sits a second, sparse graph of
**reference edges**.  A reply that mentions ``@B`` pulls the whole of tree B
into the context handed to the responder.  Reference edges never take part
in the tree invariants.

Two roles exist:

    user      : authored by a person (the "primary" role)
    assistant : produced by the external responder

The planning canvas reuses the same shape with different payloads: blocks
and edges edited by several participants at once.  Those models, together
with presence records and broadcast updates, are defined at the bottom of
this module.
"""

from __future__ import annotations

import time
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


ChatRole = Literal["user", "assistant"]

ROLE_USER: ChatRole = "user"
ROLE_ASSISTANT: ChatRole = "assistant"


def now_ms() -> float:
    """Current wall-clock time in milliseconds."""
    return time.time() * 1000


# ---------------------------------------------------------------------------
# Forest
# ---------------------------------------------------------------------------

class ChatNode(BaseModel):
    """A single message in the forest.

    Identity
    --------
    ``id`` and ``parent_id`` never change after the node is created.  A node
    whose ``parent_id`` is ``None`` is a root.  A node whose parent is not in
    the forest is *treated* as a root as well (see ``Forest.is_root``), so a
    partially loaded conversation still renders.

    Streaming
    ---------
    An assistant reply is inserted empty with ``is_streaming=True`` and filled
    in as deltas arrive.  Only a streaming node accepts content writes.
    """
    id: str
    parent_id: Optional[str] = None
    role: ChatRole = ROLE_USER
    content: str = ""
    created_at: float = Field(default_factory=now_ms)
    is_collapsed: bool = False
    is_streaming: bool = False

    @property
    def is_user(self) -> bool:
        return self.role == ROLE_USER

    @property
    def is_assistant(self) -> bool:
        return self.role == ROLE_ASSISTANT


class ReferenceEdge(BaseModel):
    """A directed cross-tree reference from a reply to another tree.

    The target is conceptually a root; any node id is accepted and resolved
    to its tree's root when context is built.
    """
    source_id: str
    target_id: str

    model_config = {"frozen": True}


class NodePosition(BaseModel):
    """Canvas position of a node, optionally with its rendered size."""
    x: float = 0.0
    y: float = 0.0
    width: Optional[float] = None
    height: Optional[float] = None


class ContextMessage(BaseModel):
    """One turn of the transcript submitted to the responder."""
    role: ChatRole
    content: str


class ForestSnapshot(BaseModel):
    """Serialisable bundle of everything needed to rebuild a forest."""
    title: str = "Untitled Conversation"
    nodes: list[ChatNode] = Field(default_factory=list)
    references: list[ReferenceEdge] = Field(default_factory=list)
    positions: dict[str, NodePosition] = Field(default_factory=dict)


class ConversationInfo(BaseModel):
    """Listing entry for a stored conversation (timestamps are ISO-8601)."""
    id: str
    name: str = "Untitled Conversation"
    created_at: str = ""
    updated_at: str = ""


# ---------------------------------------------------------------------------
# Planning canvas
# ---------------------------------------------------------------------------

BlockType = Literal["page", "feature", "api", "tool", "design", "custom"]
BlockStatus = Literal["draft", "ready", "building", "complete"]


class CanvasBlock(BaseModel):
    """A block on the shared planning canvas.

    Blocks are edited concurrently by every participant in a session.  Unlike
    the conversation forest there is no acyclic invariant: edges between
    blocks may form cycles.
    """
    id: str
    type: BlockType = "custom"
    title: str = ""
    description: str = ""
    properties: dict[str, Any] = Field(default_factory=dict)
    status: BlockStatus = "draft"
    position: NodePosition = Field(default_factory=NodePosition)
    width: Optional[float] = None
    height: Optional[float] = None


class CanvasEdge(BaseModel):
    """A directed connection between two canvas blocks."""
    id: str
    source_id: str
    target_id: str
    label: Optional[str] = None


class CanvasInfo(BaseModel):
    id: str
    name: str = "Untitled Canvas"
    description: str = ""
    created_at: str = ""
    updated_at: str = ""


class Cursor(BaseModel):
    x: float
    y: float


class CollaboratorPresence(BaseModel):
    """What a participant broadcasts about itself while connected."""
    user_id: str
    email: str = ""
    name: str = ""
    color: str = "#3b82f6"
    cursor: Optional[Cursor] = None
    selected_node_id: Optional[str] = None
    last_seen: float = Field(default_factory=now_ms)


UpdateType = Literal[
    "node_add", "node_update", "node_delete", "edge_add", "edge_delete", "bulk_update",
]


class CanvasUpdate(BaseModel):
    """A mutation broadcast to every other participant.

    Payload shapes by ``type``:

        node_add    : a ``CanvasBlock`` dump
        node_update : ``{"node_id": ..., "changes": {...}}``
        node_delete : ``{"node_id": ...}``
        edge_add    : a ``CanvasEdge`` dump
        edge_delete : ``{"edge_id": ...}``
        bulk_update : ``{"nodes": [...], "edges": [...]}``
    """
    type: UpdateType
    payload: dict[str, Any] = Field(default_factory=dict)
    user_id: str
    timestamp: float = Field(default_factory=now_ms)
