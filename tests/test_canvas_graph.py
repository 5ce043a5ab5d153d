"""Canvas graph state and last-write-wins update application."""

from branchflow.canvas_graph import CanvasGraph
from branchflow.models import CanvasBlock, CanvasEdge, CanvasUpdate


def block(block_id, **kwargs):
    return CanvasBlock(id=block_id, **kwargs)


def edge(edge_id, source, target):
    return CanvasEdge(id=edge_id, source_id=source, target_id=target)


def update(kind, payload, user="peer"):
    return CanvasUpdate(type=kind, payload=payload, user_id=user)


def test_node_add_is_idempotent():
    graph = CanvasGraph([block("b1", title="Original")])
    changed = graph.apply(update("node_add", block("b1", title="Duplicate").model_dump()))
    assert not changed
    assert graph.blocks["b1"].title == "Original"


def test_node_update_overwrites_fields():
    graph = CanvasGraph([block("b1", title="Old", status="draft")])
    assert graph.apply(update("node_update", {"node_id": "b1", "changes": {"title": "New"}}))
    assert graph.blocks["b1"].title == "New"
    assert graph.blocks["b1"].status == "draft"


def test_last_update_applied_wins():
    graph = CanvasGraph([block("b1")])
    graph.apply(update("node_update", {"node_id": "b1", "changes": {"title": "first"}}, user="alice"))
    graph.apply(update("node_update", {"node_id": "b1", "changes": {"title": "second"}}, user="bob"))
    assert graph.blocks["b1"].title == "second"


def test_update_for_unknown_block_is_ignored():
    graph = CanvasGraph()
    assert not graph.apply(update("node_update", {"node_id": "nope", "changes": {"title": "x"}}))
    assert graph.is_empty()


def test_node_delete_cascades_to_edges():
    graph = CanvasGraph(
        [block("b1"), block("b2"), block("b3")],
        [edge("e1", "b1", "b2"), edge("e2", "b2", "b3"), edge("e3", "b1", "b3")],
    )
    assert graph.apply(update("node_delete", {"node_id": "b2"}))
    assert set(graph.blocks) == {"b1", "b3"}
    assert set(graph.edges) == {"e3"}


def test_edge_add_and_delete():
    graph = CanvasGraph([block("b1"), block("b2")])
    assert graph.apply(update("edge_add", edge("e1", "b1", "b2").model_dump()))
    assert not graph.apply(update("edge_add", edge("e1", "b2", "b1").model_dump()))
    assert graph.edges["e1"].source_id == "b1"
    assert graph.apply(update("edge_delete", {"edge_id": "e1"}))
    assert graph.edges == {}


def test_bulk_update_upserts():
    graph = CanvasGraph([block("b1", title="Old")])
    payload = {
        "nodes": [block("b1", title="Replaced").model_dump(), block("b2").model_dump()],
        "edges": [edge("e1", "b1", "b2").model_dump()],
    }
    assert graph.apply(update("bulk_update", payload))
    assert graph.blocks["b1"].title == "Replaced"
    assert set(graph.blocks) == {"b1", "b2"}
    assert "e1" in graph.edges


def test_merge_missing_never_overwrites():
    graph = CanvasGraph([block("b1", title="Mine")])
    added = graph.merge_missing([block("b1", title="Theirs"), block("b2")], [edge("e1", "b1", "b2")])
    assert added == (1, 1)
    assert graph.blocks["b1"].title == "Mine"


def test_malformed_payload_is_dropped():
    graph = CanvasGraph([block("b1")])
    assert not graph.apply(update("node_delete", {}))
    assert not graph.apply(update("node_update", {"node_id": "b1", "changes": {"status": "bogus"}}))
    assert graph.blocks["b1"].status == "draft"


def test_cycles_between_blocks_are_allowed():
    graph = CanvasGraph([block("b1"), block("b2")])
    graph.add_edge(edge("e1", "b1", "b2"))
    graph.add_edge(edge("e2", "b2", "b1"))
    assert len(graph.edges) == 2


def test_snapshot_shape():
    graph = CanvasGraph([block("b1")], [edge("e1", "b1", "b1")])
    snapshot = graph.snapshot()
    assert [n["id"] for n in snapshot["nodes"]] == ["b1"]
    assert [e["id"] for e in snapshot["edges"]] == ["e1"]
