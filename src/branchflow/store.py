"""
Persistence for conversations and planning canvases.

``JsonlForestStore`` keeps one append-only JSON-lines event log per
conversation under ``<data dir>/conversations`` and one JSON document per
canvas under ``<data dir>/canvases``.  Replaying the log rebuilds the
forest.

Stored records use the storage field names (``parent_id``, ISO-8601
``created_at``); they are translated to ``ChatNode`` here and nowhere else.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from .canvas_graph import parse_graph_payload
from .forest import Forest
from .models import (
    CanvasBlock, CanvasEdge, CanvasInfo, ChatNode, ConversationInfo, ForestSnapshot, NodePosition, ReferenceEdge,
)

logger = logging.getLogger(__name__)

DATA_DIR = Path(os.environ.get("BRANCHFLOW_DATA_DIR", Path.home() / ".branchflow"))

# Position batches are written once dragging has been quiet this long (seconds)
POSITION_SAVE_DELAY = 1.0

DEFAULT_CONVERSATION_NAME = "Untitled Conversation"
DEFAULT_CANVAS_NAME = "Untitled Canvas"

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class StoreError(RuntimeError):
    """A read or write against the backing store failed."""


class ForestStore(ABC):
    """Where conversations and canvases live between sessions."""

    # --- Conversation catalogue ---

    @abstractmethod
    def list_conversations(self) -> list[ConversationInfo]:
        """Every stored conversation, most recently updated first."""

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Optional[ConversationInfo]: ...

    @abstractmethod
    def create_conversation(self, name: Optional[str] = None, conversation_id: Optional[str] = None) -> ConversationInfo: ...

    @abstractmethod
    def rename_conversation(self, conversation_id: str, name: str) -> ConversationInfo:
        """Raises ``KeyError`` for an unknown conversation."""

    @abstractmethod
    def delete_conversation(self, conversation_id: str) -> bool: ...

    # --- Conversation contents ---

    @abstractmethod
    def load_forest(self, conversation_id: str) -> ForestSnapshot: ...

    @abstractmethod
    def append_node(self, conversation_id: str, node: ChatNode) -> None: ...

    @abstractmethod
    def update_node_content(self, conversation_id: str, node_id: str, content: str) -> None: ...

    @abstractmethod
    def set_collapsed(self, conversation_id: str, node_id: str, collapsed: bool) -> None: ...

    @abstractmethod
    def delete_node(self, conversation_id: str, node_id: str) -> None:
        """Delete a node and, implicitly, everything beneath it."""

    @abstractmethod
    def add_reference(self, conversation_id: str, edge: ReferenceEdge) -> None: ...

    @abstractmethod
    def save_positions(self, conversation_id: str, positions: dict[str, NodePosition]) -> None: ...

    # --- Canvases ---

    @abstractmethod
    def list_canvases(self) -> list[CanvasInfo]: ...

    @abstractmethod
    def get_canvas_info(self, canvas_id: str) -> Optional[CanvasInfo]: ...

    @abstractmethod
    def create_canvas(self, name: Optional[str] = None, description: str = "") -> CanvasInfo: ...

    @abstractmethod
    def update_canvas_info(
        self, canvas_id: str, name: Optional[str] = None, description: Optional[str] = None,
    ) -> CanvasInfo:
        """Raises ``KeyError`` for an unknown canvas."""

    @abstractmethod
    def delete_canvas(self, canvas_id: str) -> bool: ...

    @abstractmethod
    def load_canvas(self, canvas_id: str) -> tuple[list[CanvasBlock], list[CanvasEdge]]: ...

    @abstractmethod
    def save_canvas(self, canvas_id: str, blocks: list[CanvasBlock], edges: list[CanvasEdge]) -> None: ...


# ---------------------------------------------------------------------------
# Record translation
# ---------------------------------------------------------------------------

def ms_to_iso(ms: float) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _mtime_iso(path: Path) -> str:
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc).isoformat()


def iso_to_ms(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp() * 1000


def node_to_record(node: ChatNode) -> dict[str, Any]:
    return {
        "id": node.id,
        "parent_id": node.parent_id,
        "role": node.role,
        "content": node.content,
        "created_at": ms_to_iso(node.created_at),
        "is_collapsed": node.is_collapsed,
    }


def record_to_node(record: dict[str, Any]) -> ChatNode:
    return ChatNode(
        id=str(record["id"]),
        parent_id=record.get("parent_id"),
        role=record.get("role", "user"),
        content=record.get("content") or "",
        created_at=iso_to_ms(record["created_at"]),
        is_collapsed=bool(record.get("is_collapsed", False)),
    )


# ---------------------------------------------------------------------------
# JSONL store
# ---------------------------------------------------------------------------

class JsonlForestStore(ForestStore):
    """File-backed store: an event log per conversation, a document per canvas."""

    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = Path(data_dir) if data_dir is not None else DATA_DIR
        self.conversations_dir = self.data_dir / "conversations"
        self.canvases_dir = self.data_dir / "canvases"

    def _path(self, directory: Path, item_id: str, suffix: str) -> Path:
        if not _SAFE_ID.match(item_id):
            raise StoreError(f"Invalid id: {item_id!r}")
        return directory / f"{item_id}{suffix}"

    def _append(self, conversation_id: str, event: dict[str, Any]) -> None:
        path = self._path(self.conversations_dir, conversation_id, ".jsonl")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                f.write(json.dumps(event) + "\n")
        except OSError as e:
            logger.error(f"Error writing {path}: {e}")
            raise StoreError(f"Could not write conversation {conversation_id}: {e}") from e

    def _read_events(self, conversation_id: str) -> list[dict[str, Any]]:
        path = self._path(self.conversations_dir, conversation_id, ".jsonl")
        if not path.exists():
            return []
        events = []
        try:
            with open(path, "r") as f:
                for line_no, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning(f"Skipping corrupt line {line_no} in {path}")
                        continue
                    if isinstance(event, dict):
                        events.append(event)
        except OSError as e:
            logger.error(f"Error loading {path}: {e}")
            raise StoreError(f"Could not read conversation {conversation_id}: {e}") from e
        return events

    # --- Conversation catalogue ---

    def _conversation_info(self, conversation_id: str, path: Path) -> ConversationInfo:
        name = DEFAULT_CONVERSATION_NAME
        created_at = ""
        for event in self._read_events(conversation_id):
            kind = event.get("event")
            if kind in ("conversation", "rename") and event.get("name"):
                name = event["name"]
            if not created_at and kind == "conversation":
                created_at = event.get("created_at") or ""
            elif not created_at and kind == "node" and event.get("created_at"):
                created_at = event["created_at"]
        updated_at = _mtime_iso(path)
        return ConversationInfo(
            id=conversation_id,
            name=name,
            created_at=created_at or updated_at,
            updated_at=updated_at,
        )

    def list_conversations(self) -> list[ConversationInfo]:
        if not self.conversations_dir.exists():
            return []
        infos = []
        for path in self.conversations_dir.glob("*.jsonl"):
            if _SAFE_ID.match(path.stem):
                infos.append(self._conversation_info(path.stem, path))
        return sorted(infos, key=lambda c: c.updated_at, reverse=True)

    def get_conversation(self, conversation_id: str) -> Optional[ConversationInfo]:
        path = self._path(self.conversations_dir, conversation_id, ".jsonl")
        if not path.exists():
            return None
        return self._conversation_info(conversation_id, path)

    def create_conversation(self, name: Optional[str] = None, conversation_id: Optional[str] = None) -> ConversationInfo:
        conversation_id = conversation_id or uuid.uuid4().hex
        if self.get_conversation(conversation_id) is not None:
            raise StoreError(f"Conversation {conversation_id} already exists")
        self._append(conversation_id, {
            "event": "conversation",
            "name": name or DEFAULT_CONVERSATION_NAME,
            "created_at": now_iso(),
        })
        logger.info(f"Created conversation {conversation_id}")
        return self.get_conversation(conversation_id)

    def rename_conversation(self, conversation_id: str, name: str) -> ConversationInfo:
        if self.get_conversation(conversation_id) is None:
            raise KeyError(conversation_id)
        self._append(conversation_id, {"event": "rename", "name": name})
        return self.get_conversation(conversation_id)

    def delete_conversation(self, conversation_id: str) -> bool:
        path = self._path(self.conversations_dir, conversation_id, ".jsonl")
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise StoreError(f"Could not delete conversation {conversation_id}: {e}") from e
        logger.info(f"Deleted conversation {conversation_id}")
        return True

    # --- Conversations ---

    def load_forest(self, conversation_id: str) -> ForestSnapshot:
        nodes: dict[str, ChatNode] = {}
        references: list[ReferenceEdge] = []
        positions: dict[str, NodePosition] = {}
        title = conversation_id

        for event in self._read_events(conversation_id):
            kind = event.get("event")
            try:
                if kind in ("conversation", "rename"):
                    title = event.get("name") or title
                elif kind == "node":
                    node = record_to_node(event)
                    nodes.setdefault(node.id, node)
                elif kind == "content" and event.get("id") in nodes:
                    nodes[event["id"]].content = event.get("content") or ""
                elif kind == "collapse" and event.get("id") in nodes:
                    nodes[event["id"]].is_collapsed = bool(event.get("is_collapsed"))
                elif kind == "delete":
                    removed = Forest(nodes.values()).descendants(str(event.get("id")))
                    for node_id in removed:
                        nodes.pop(node_id, None)
                        positions.pop(node_id, None)
                    references = [
                        r for r in references
                        if r.source_id not in removed and r.target_id not in removed
                    ]
                elif kind == "reference":
                    edge = ReferenceEdge(source_id=event["source_id"], target_id=event["target_id"])
                    if edge not in references:
                        references.append(edge)
                elif kind == "positions":
                    for node_id, pos in (event.get("positions") or {}).items():
                        positions[node_id] = NodePosition.model_validate(pos)
            except (KeyError, ValueError, ValidationError) as e:
                logger.warning(f"Skipping malformed {kind} event in {conversation_id}: {e}")

        return ForestSnapshot(
            title=title,
            nodes=list(nodes.values()),
            references=[r for r in references if r.source_id in nodes and r.target_id in nodes],
            positions={k: v for k, v in positions.items() if k in nodes},
        )

    def append_node(self, conversation_id: str, node: ChatNode) -> None:
        self._append(conversation_id, {"event": "node", **node_to_record(node)})

    def update_node_content(self, conversation_id: str, node_id: str, content: str) -> None:
        self._append(conversation_id, {"event": "content", "id": node_id, "content": content})

    def set_collapsed(self, conversation_id: str, node_id: str, collapsed: bool) -> None:
        self._append(conversation_id, {"event": "collapse", "id": node_id, "is_collapsed": collapsed})

    def delete_node(self, conversation_id: str, node_id: str) -> None:
        self._append(conversation_id, {"event": "delete", "id": node_id})

    def add_reference(self, conversation_id: str, edge: ReferenceEdge) -> None:
        self._append(conversation_id, {"event": "reference", **edge.model_dump()})

    def save_positions(self, conversation_id: str, positions: dict[str, NodePosition]) -> None:
        if not positions:
            return
        self._append(conversation_id, {
            "event": "positions",
            "positions": {k: v.model_dump(exclude_none=True) for k, v in positions.items()},
        })

    # --- Canvases ---

    def _read_canvas(self, canvas_id: str) -> Optional[dict[str, Any]]:
        path = self._path(self.canvases_dir, canvas_id, ".json")
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading canvas {path}: {e}")
            raise StoreError(f"Could not read canvas {canvas_id}: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"Canvas {canvas_id} is malformed: expected an object")
        return data

    def _write_canvas(self, canvas_id: str, data: dict[str, Any]) -> None:
        path = self._path(self.canvases_dir, canvas_id, ".json")
        data["updated_at"] = now_iso()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(data, indent=2))
        except OSError as e:
            logger.error(f"Error saving canvas {path}: {e}")
            raise StoreError(f"Could not write canvas {canvas_id}: {e}") from e

    @staticmethod
    def _canvas_info(canvas_id: str, data: dict[str, Any]) -> CanvasInfo:
        return CanvasInfo(
            id=canvas_id,
            name=data.get("name") or DEFAULT_CANVAS_NAME,
            description=data.get("description") or "",
            created_at=data.get("created_at") or "",
            updated_at=data.get("updated_at") or "",
        )

    def list_canvases(self) -> list[CanvasInfo]:
        if not self.canvases_dir.exists():
            return []
        infos = []
        for path in self.canvases_dir.glob("*.json"):
            if not _SAFE_ID.match(path.stem):
                continue
            try:
                data = self._read_canvas(path.stem)
            except StoreError as e:
                logger.warning(f"Skipping unreadable canvas: {e}")
                continue
            infos.append(self._canvas_info(path.stem, data))
        return sorted(infos, key=lambda c: c.updated_at, reverse=True)

    def get_canvas_info(self, canvas_id: str) -> Optional[CanvasInfo]:
        data = self._read_canvas(canvas_id)
        return self._canvas_info(canvas_id, data) if data is not None else None

    def create_canvas(self, name: Optional[str] = None, description: str = "") -> CanvasInfo:
        canvas_id = uuid.uuid4().hex
        data = {
            "name": name or DEFAULT_CANVAS_NAME,
            "description": description,
            "nodes": [],
            "edges": [],
            "created_at": now_iso(),
        }
        self._write_canvas(canvas_id, data)
        logger.info(f"Created canvas {canvas_id}")
        return self._canvas_info(canvas_id, data)

    def update_canvas_info(
        self, canvas_id: str, name: Optional[str] = None, description: Optional[str] = None,
    ) -> CanvasInfo:
        data = self._read_canvas(canvas_id)
        if data is None:
            raise KeyError(canvas_id)
        if name is not None:
            data["name"] = name
        if description is not None:
            data["description"] = description
        self._write_canvas(canvas_id, data)
        return self._canvas_info(canvas_id, data)

    def delete_canvas(self, canvas_id: str) -> bool:
        path = self._path(self.canvases_dir, canvas_id, ".json")
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise StoreError(f"Could not delete canvas {canvas_id}: {e}") from e
        return True

    def load_canvas(self, canvas_id: str) -> tuple[list[CanvasBlock], list[CanvasEdge]]:
        data = self._read_canvas(canvas_id)
        if data is None:
            return [], []
        try:
            return parse_graph_payload(data)
        except ValidationError as e:
            raise StoreError(f"Canvas {canvas_id} is malformed: {e}") from e

    def save_canvas(self, canvas_id: str, blocks: list[CanvasBlock], edges: list[CanvasEdge]) -> None:
        data = self._read_canvas(canvas_id) or {"name": DEFAULT_CANVAS_NAME, "description": "", "created_at": now_iso()}
        data["nodes"] = [b.model_dump() for b in blocks]
        data["edges"] = [e.model_dump() for e in edges]
        self._write_canvas(canvas_id, data)


# ---------------------------------------------------------------------------
# Debounced position saving
# ---------------------------------------------------------------------------

class PositionSaver:
    """Batches node moves and writes them once dragging goes quiet.

    Every ``schedule`` call restarts the timer, so a drag produces a single
    write ``delay`` seconds after the last move.
    """

    def __init__(self, store: ForestStore, conversation_id: str, delay: float = POSITION_SAVE_DELAY):
        self.store = store
        self.conversation_id = conversation_id
        self.delay = delay
        self._pending: dict[str, NodePosition] = {}
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> dict[str, NodePosition]:
        return dict(self._pending)

    def schedule(self, positions: dict[str, NodePosition]) -> None:
        self._pending.update(positions)
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self.delay, self.flush)

    def discard(self, node_ids: set[str]) -> None:
        for node_id in node_ids:
            self._pending.pop(node_id, None)

    def flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._pending:
            return
        batch, self._pending = self._pending, {}
        try:
            self.store.save_positions(self.conversation_id, batch)
            logger.debug(f"Saved {len(batch)} positions for {self.conversation_id}")
        except StoreError as e:
            logger.error(f"Failed to save positions: {e}")
