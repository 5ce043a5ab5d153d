"""JSONL store, record translation and debounced position saving."""

import asyncio
import json

import pytest

from branchflow.models import CanvasBlock, CanvasEdge, NodePosition, ReferenceEdge
from branchflow.store import (
    JsonlForestStore, PositionSaver, StoreError, iso_to_ms, ms_to_iso, record_to_node,
)

from conftest import make_node


@pytest.fixture
def store(tmp_path):
    return JsonlForestStore(tmp_path)


def fill(store, conversation_id="conv"):
    store.append_node(conversation_id, make_node("a1", t=1000))
    store.append_node(conversation_id, make_node("a2", "a1", role="assistant", content="", t=2000))
    store.append_node(conversation_id, make_node("b1", t=3000))
    store.add_reference(conversation_id, ReferenceEdge(source_id="b1", target_id="a1"))


# =============================================================================
# CONVERSATIONS
# =============================================================================

def test_missing_conversation_is_empty(store):
    snapshot = store.load_forest("nothing-yet")
    assert snapshot.nodes == []
    assert snapshot.references == []


def test_nodes_and_references_replay(store):
    fill(store)
    snapshot = store.load_forest("conv")
    assert [n.id for n in snapshot.nodes] == ["a1", "a2", "b1"]
    assert snapshot.nodes[1].parent_id == "a1"
    assert snapshot.nodes[1].created_at == 2000
    assert snapshot.references == [ReferenceEdge(source_id="b1", target_id="a1")]


def test_content_and_collapse_updates(store):
    fill(store)
    store.update_node_content("conv", "a2", "Final answer")
    store.set_collapsed("conv", "a1", True)
    snapshot = store.load_forest("conv")
    by_id = {n.id: n for n in snapshot.nodes}
    assert by_id["a2"].content == "Final answer"
    assert by_id["a1"].is_collapsed


def test_delete_cascades(store):
    fill(store)
    store.save_positions("conv", {"a2": NodePosition(x=5, y=6)})
    store.delete_node("conv", "a1")
    snapshot = store.load_forest("conv")
    assert [n.id for n in snapshot.nodes] == ["b1"]
    assert snapshot.references == []
    assert snapshot.positions == {}


def test_positions_merge(store):
    fill(store)
    store.save_positions("conv", {"a1": NodePosition(x=1, y=1), "b1": NodePosition(x=2, y=2)})
    store.save_positions("conv", {"a1": NodePosition(x=9, y=9, width=300)})
    positions = store.load_forest("conv").positions
    assert positions["a1"] == NodePosition(x=9, y=9, width=300)
    assert positions["b1"].x == 2


def test_records_use_storage_field_names(store, tmp_path):
    fill(store)
    first = json.loads((tmp_path / "conversations" / "conv.jsonl").read_text().splitlines()[0])
    assert first["event"] == "node"
    assert first["parent_id"] is None
    assert first["created_at"].startswith("1970-01-01T00:00:01")


def test_corrupt_lines_are_skipped(store, tmp_path):
    fill(store)
    with open(tmp_path / "conversations" / "conv.jsonl", "a") as f:
        f.write("{not json\n")
        f.write(json.dumps({"event": "node", "id": "broken"}) + "\n")
    assert [n.id for n in store.load_forest("conv").nodes] == ["a1", "a2", "b1"]


def test_unsafe_ids_rejected(store):
    with pytest.raises(StoreError):
        store.load_forest("../etc/passwd")


def test_iso_translation():
    assert iso_to_ms(ms_to_iso(1700000000000)) == 1700000000000
    assert iso_to_ms("2024-01-01T00:00:00") == iso_to_ms("2024-01-01T00:00:00+00:00")
    assert iso_to_ms(42) == 42.0
    node = record_to_node({"id": "x", "created_at": "1970-01-01T00:00:02+00:00"})
    assert node.created_at == 2000
    assert node.role == "user"


# =============================================================================
# CONVERSATION CATALOGUE
# =============================================================================

def test_create_and_list_conversations(store):
    trip = store.create_conversation("Trip")
    budget = store.create_conversation(conversation_id="budget")
    assert budget.id == "budget"
    assert budget.name == "Untitled Conversation"
    assert {c.id: c.name for c in store.list_conversations()} == {
        trip.id: "Trip",
        "budget": "Untitled Conversation",
    }


def test_duplicate_conversation_rejected(store):
    store.create_conversation(conversation_id="trip")
    with pytest.raises(StoreError):
        store.create_conversation(conversation_id="trip")


def test_rename_keeps_messages(store):
    store.create_conversation("Old", conversation_id="conv")
    fill(store)
    assert store.rename_conversation("conv", "New").name == "New"
    snapshot = store.load_forest("conv")
    assert snapshot.title == "New"
    assert [n.id for n in snapshot.nodes] == ["a1", "a2", "b1"]
    with pytest.raises(KeyError):
        store.rename_conversation("ghost", "Anything")


def test_log_without_catalogue_entry_is_listed(store):
    fill(store)
    info = store.get_conversation("conv")
    assert info.name == "Untitled Conversation"
    assert info.created_at.startswith("1970-01-01T00:00:01")
    assert store.get_conversation("ghost") is None


def test_delete_conversation(store):
    fill(store)
    assert store.delete_conversation("conv")
    assert store.get_conversation("conv") is None
    assert store.list_conversations() == []
    assert not store.delete_conversation("conv")


# =============================================================================
# CANVASES
# =============================================================================

def test_canvas_round_trip(store):
    blocks = [CanvasBlock(id="b1", type="page", title="Home")]
    edges = [CanvasEdge(id="e1", source_id="b1", target_id="b1")]
    store.save_canvas("plan", blocks, edges)
    assert store.load_canvas("plan") == (blocks, edges)


def test_missing_canvas_is_empty(store):
    assert store.load_canvas("none") == ([], [])


def test_canvas_catalogue(store):
    info = store.create_canvas("Launch plan", "MVP scope")
    assert store.get_canvas_info(info.id).name == "Launch plan"

    store.save_canvas(info.id, [CanvasBlock(id="b1")], [])
    saved = store.get_canvas_info(info.id)
    assert saved.name == "Launch plan"
    assert saved.created_at == info.created_at
    assert [b.id for b in store.load_canvas(info.id)[0]] == ["b1"]

    renamed = store.update_canvas_info(info.id, name="Renamed")
    assert (renamed.name, renamed.description) == ("Renamed", "MVP scope")
    assert [c.id for c in store.list_canvases()] == [info.id]

    assert store.delete_canvas(info.id)
    assert store.get_canvas_info(info.id) is None
    with pytest.raises(KeyError):
        store.update_canvas_info(info.id, name="Gone")


def test_malformed_canvas_raises(store, tmp_path):
    (tmp_path / "canvases").mkdir()
    (tmp_path / "canvases" / "bad.json").write_text("{oops")
    with pytest.raises(StoreError):
        store.load_canvas("bad")


# =============================================================================
# DEBOUNCED POSITIONS
# =============================================================================

class RecordingStore(JsonlForestStore):
    def __init__(self, data_dir):
        super().__init__(data_dir)
        self.saved = []

    def save_positions(self, conversation_id, positions):
        self.saved.append(dict(positions))
        super().save_positions(conversation_id, positions)


@pytest.mark.asyncio
async def test_position_saver_debounces(tmp_path):
    store = RecordingStore(tmp_path)
    saver = PositionSaver(store, "conv", delay=0.02)

    saver.schedule({"a": NodePosition(x=1, y=1)})
    saver.schedule({"a": NodePosition(x=2, y=2)})
    saver.schedule({"b": NodePosition(x=3, y=3)})
    assert store.saved == []

    await asyncio.sleep(0.1)
    assert store.saved == [{"a": NodePosition(x=2, y=2), "b": NodePosition(x=3, y=3)}]


@pytest.mark.asyncio
async def test_position_saver_flush_and_discard(tmp_path):
    store = RecordingStore(tmp_path)
    saver = PositionSaver(store, "conv", delay=10)

    saver.schedule({"a": NodePosition(x=1, y=1), "b": NodePosition(x=2, y=2)})
    saver.discard({"b"})
    saver.flush()
    assert store.saved == [{"a": NodePosition(x=1, y=1)}]
    assert saver.pending == {}

    saver.flush()
    assert len(store.saved) == 1
