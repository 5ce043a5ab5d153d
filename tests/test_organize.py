"""Tree layout: layered trees, side-by-side forests, saved and incremental placement."""

from itertools import combinations

from branchflow.models import NodePosition
from branchflow.organize import (
    ASSISTANT_NODE_HEIGHT, ASSISTANT_NODE_WIDTH, RANK_SPACING, TREE_SPACING, USER_NODE_WIDTH,
    Bounds, LayoutOptions, compute_bounds, focus_point, layout_forest, node_dimensions,
)

from conftest import make_node


def rect(pos: NodePosition) -> Bounds:
    return Bounds(x=pos.x, y=pos.y, width=pos.width, height=pos.height)


def assert_no_overlap(layout):
    for (id_a, a), (id_b, b) in combinations(layout.positions.items(), 2):
        assert not rect(a).intersects(rect(b)), f"{id_a} overlaps {id_b}"


# =============================================================================
# BASICS
# =============================================================================

def test_empty_forest():
    layout = layout_forest([])
    assert layout.positions == {}
    assert layout.tree_bounds == {}


def test_node_dimensions():
    assert node_dimensions(make_node("r", role="assistant")) == (ASSISTANT_NODE_WIDTH, ASSISTANT_NODE_HEIGHT)
    assert node_dimensions(make_node("u"))[0] == USER_NODE_WIDTH
    measured = NodePosition(x=0, y=0, width=400, height=90)
    assert node_dimensions(make_node("u"), measured) == (400, 90)


def test_every_node_is_positioned(sample_nodes):
    layout = layout_forest(sample_nodes)
    assert set(layout.positions) == {n.id for n in sample_nodes}
    assert set(layout.tree_bounds) == {"a1", "b1"}


def test_no_overlap(sample_nodes):
    assert_no_overlap(layout_forest(sample_nodes))


def test_ranks_are_separated(sample_nodes):
    positions = layout_forest(sample_nodes).positions
    parent, child = positions["a1"], positions["a2"]
    assert child.y >= parent.y + parent.height + RANK_SPACING


def test_siblings_follow_created_at(sample_nodes):
    positions = layout_forest(sample_nodes).positions
    assert positions["a3"].x < positions["a5"].x
    assert positions["a3"].y == positions["a5"].y


def test_parent_centred_over_children(sample_nodes):
    positions = layout_forest(sample_nodes).positions
    parent_centre = positions["a2"].x + positions["a2"].width / 2
    left = positions["a3"].x
    right = positions["a5"].x + positions["a5"].width
    assert abs(parent_centre - (left + right) / 2) <= 1


# =============================================================================
# FOREST PLACEMENT
# =============================================================================

def test_trees_sit_side_by_side(sample_nodes):
    layout = layout_forest(sample_nodes)
    a, b = layout.tree_bounds["a1"], layout.tree_bounds["b1"]
    assert b.x >= a.right + TREE_SPACING


def test_many_trees_never_overlap():
    nodes = []
    for i in range(12):
        nodes.append(make_node(f"r{i}", t=i * 10))
        nodes.append(make_node(f"r{i}a", f"r{i}", role="assistant", t=i * 10 + 1))
        nodes.append(make_node(f"r{i}b", f"r{i}", role="assistant", t=i * 10 + 2))
    layout = layout_forest(nodes)
    assert_no_overlap(layout)
    bounds = sorted(layout.tree_bounds.values(), key=lambda b: b.x)
    for left, right in zip(bounds, bounds[1:]):
        assert right.x >= left.right + TREE_SPACING


def test_horizontal_orientation(sample_nodes):
    layout = layout_forest(sample_nodes, options=LayoutOptions(orientation="horizontal"))
    positions = layout.positions
    assert positions["a2"].x >= positions["a1"].x + positions["a1"].width + RANK_SPACING
    assert layout.tree_bounds["b1"].y >= layout.tree_bounds["a1"].bottom + TREE_SPACING
    assert_no_overlap(layout)


def test_orphan_tree_is_laid_out():
    nodes = [make_node("x", "gone"), make_node("y", "x", role="assistant", t=1)]
    layout = layout_forest(nodes)
    assert set(layout.positions) == {"x", "y"}
    assert layout.positions["y"].y > layout.positions["x"].y


# =============================================================================
# SAVED AND INCREMENTAL POSITIONS
# =============================================================================

def test_saved_positions_are_kept(sample_nodes):
    saved = {"b1": NodePosition(x=-900, y=-900)}
    layout = layout_forest(sample_nodes, saved)
    assert (layout.positions["b1"].x, layout.positions["b1"].y) == (-900, -900)
    assert "b1" not in layout.placed


def test_new_child_goes_below_its_parent():
    nodes = [
        make_node("a1", t=0),
        make_node("a2", "a1", role="assistant", t=1),
        make_node("a3", "a2", t=2),
    ]
    saved = {
        "a1": NodePosition(x=0, y=0, width=280, height=120),
        "a2": NodePosition(x=0, y=200, width=320, height=200),
    }
    layout = layout_forest(nodes, saved)
    assert layout.placed == ["a3"]
    assert (layout.positions["a3"].x, layout.positions["a3"].y) == (0, 480)


def test_incremental_node_is_nudged_clear():
    nodes = [
        make_node("a1", t=0),
        make_node("a2", "a1", role="assistant", t=1),
        make_node("a3", "a1", role="assistant", t=2),
    ]
    saved = {
        "a1": NodePosition(x=0, y=0, width=280, height=120),
        # Dragged into the spot a3 would take
        "a2": NodePosition(x=370, y=200, width=320, height=200),
    }
    layout = layout_forest(nodes, saved)
    assert_no_overlap(layout)
    assert layout.positions["a3"].x >= 690 + 50


def test_fresh_tree_avoids_saved_rectangles(sample_nodes):
    # b1 was dragged to where tree A would be laid out
    saved = {"b1": NodePosition(x=0, y=0, width=280, height=120)}
    layout = layout_forest(sample_nodes, saved)
    assert_no_overlap(layout)
    assert layout.tree_bounds["a1"].x >= 280 + TREE_SPACING


def test_layout_is_deterministic(sample_nodes):
    assert layout_forest(sample_nodes).positions == layout_forest(list(sample_nodes)).positions


# =============================================================================
# HELPERS
# =============================================================================

def test_compute_bounds_and_focus_point():
    positions = [
        NodePosition(x=0, y=0, width=100, height=50),
        NodePosition(x=200, y=100, width=100, height=50),
    ]
    bounds = compute_bounds(positions)
    assert (bounds.x, bounds.y, bounds.width, bounds.height) == (0, 0, 300, 150)
    assert compute_bounds([]) is None

    layout = layout_forest([make_node("u")])
    pos = layout.positions["u"]
    assert focus_point(layout, "u") == (pos.x + pos.width / 2, pos.y + pos.height / 2)
    assert focus_point(layout, "zz") is None
