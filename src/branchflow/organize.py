"""
Tree layout for the conversation forest.

Every tree in the forest is laid out on its own and the trees are then lined
up side by side on one shared canvas:

  1. Partition nodes into trees using parent links only.  Reference edges
     never influence placement.
  2. Lay out each tree as layered ranks: rank = depth, siblings in
     ``created_at`` order, each parent centred over the span of its
     children.  Every subtree owns a slice of the breadth axis at least as
     wide as itself, so no two nodes of one tree can overlap.
  3. Place trees one after another along the breadth axis, advancing a
     cursor by each tree's width plus ``TREE_SPACING``.

Saved positions win.  A node the user has already placed keeps its
coordinates, and a tree that already has placed nodes is *not* re-laid out:
its new nodes are dropped next to their parent (one rank down, siblings
fanned out) and then nudged along the breadth axis until they overlap
nothing.  Fresh trees are also pushed past any saved rectangle they would
cover.

Orientation:
  - ``vertical``   ranks run top→bottom, trees sit left→right (default)
  - ``horizontal`` ranks run left→right, trees stack top→bottom

Spacing constants:
  - Nodes within a rank: 50px
  - Between ranks: 80px
  - Between trees: 100px
  - Tree margin: 20px
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .forest import group_trees
from .models import ChatNode, NodePosition

logger = logging.getLogger(__name__)


# --- Node dimensions ---

ASSISTANT_NODE_WIDTH = 320
ASSISTANT_NODE_HEIGHT = 200
USER_NODE_WIDTH = 280
USER_NODE_HEIGHT = 120

# --- Spacing constants ---

NODE_SPACING = 50
RANK_SPACING = 80
TREE_SPACING = 100
TREE_MARGIN = 20


@dataclass
class LayoutItem:
    """A node to be placed, reduced to what the layout needs."""
    id: str
    width: float
    height: float
    parent_id: Optional[str] = None
    created_at: float = 0.0


@dataclass
class LayoutOptions:
    """Layout options for the tree layout."""
    orientation: str = "vertical"  # 'vertical' or 'horizontal'
    node_spacing: float = NODE_SPACING
    rank_spacing: float = RANK_SPACING
    tree_spacing: float = TREE_SPACING
    tree_margin: float = TREE_MARGIN
    start_x: float = 0.0
    start_y: float = 0.0

    @property
    def vertical(self) -> bool:
        return self.orientation != "horizontal"


@dataclass
class Bounds:
    """Axis-aligned rectangle."""
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def intersects(self, other: Bounds) -> bool:
        """True when the interiors overlap; shared edges don't count."""
        return (
            self.x < other.right and other.x < self.right
            and self.y < other.bottom and other.y < self.bottom
        )


@dataclass
class ForestLayout:
    """Result of ``layout_forest``.

    ``positions`` holds every node (saved ones included) with its size
    filled in.  ``placed`` lists the ids positioned by this run.
    """
    positions: dict[str, NodePosition] = field(default_factory=dict)
    tree_bounds: dict[str, Bounds] = field(default_factory=dict)
    placed: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Dimensions and bounds
# ---------------------------------------------------------------------------

def node_dimensions(node: ChatNode, position: Optional[NodePosition] = None) -> tuple[float, float]:
    """Rendered size if known, otherwise the role's default size."""
    if node.is_assistant:
        width, height = ASSISTANT_NODE_WIDTH, ASSISTANT_NODE_HEIGHT
    else:
        width, height = USER_NODE_WIDTH, USER_NODE_HEIGHT
    if position is not None:
        width = position.width or width
        height = position.height or height
    return width, height


def _as_bounds(position: NodePosition) -> Bounds:
    return Bounds(
        x=position.x,
        y=position.y,
        width=position.width or 0,
        height=position.height or 0,
    )


def compute_bounds(positions: Iterable[NodePosition]) -> Optional[Bounds]:
    """Bounding box of a set of positions, or None when empty."""
    rects = [_as_bounds(p) for p in positions]
    if not rects:
        return None
    min_x = min(r.x for r in rects)
    min_y = min(r.y for r in rects)
    max_x = max(r.right for r in rects)
    max_y = max(r.bottom for r in rects)
    return Bounds(x=min_x, y=min_y, width=max_x - min_x, height=max_y - min_y)


def focus_point(layout: ForestLayout, node_id: str) -> Optional[tuple[float, float]]:
    """Centre of a node, used to pan the view to a freshly added reply."""
    pos = layout.positions.get(node_id)
    if pos is None:
        return None
    return pos.x + (pos.width or 0) / 2, pos.y + (pos.height or 0) / 2


# ---------------------------------------------------------------------------
# Core layered tree layout
# ---------------------------------------------------------------------------

def compute_tree_layout(
    items: list[LayoutItem],
    options: Optional[LayoutOptions] = None,
) -> dict[str, Bounds]:
    """
    Layered layout of one tree (or a handful of trees side by side).

    Steps:
    1. Build child lists, siblings sorted by ``created_at``
    2. Breadth-first walk from each root to assign ranks
    3. Post-order pass: span of each subtree along the breadth axis
    4. Rank depths and offsets along the depth axis
    5. Pre-order pass: hand each child a slice of its parent's span

    Coordinates start at ``tree_margin`` on both axes.
    """
    if not items:
        return {}

    opts = options or LayoutOptions()
    item_map: dict[str, LayoutItem] = {item.id: item for item in items}

    def breadth(item: LayoutItem) -> float:
        return item.width if opts.vertical else item.height

    def depth(item: LayoutItem) -> float:
        return item.height if opts.vertical else item.width

    # --- Step 1: Child lists ---
    ordered = sorted(items, key=lambda it: it.created_at)
    children: dict[str, list[str]] = {item.id: [] for item in items}
    roots: list[str] = []
    for item in ordered:
        if item.parent_id in item_map and item.parent_id != item.id:
            children[item.parent_id].append(item.id)
        else:
            roots.append(item.id)

    # --- Step 2: Ranks ---
    levels: dict[str, int] = {}
    tree_children: dict[str, list[str]] = {item.id: [] for item in items}
    order: list[str] = []
    walk_roots: list[str] = []

    def walk(start: str) -> None:
        walk_roots.append(start)
        queue = deque([(start, 0, None)])
        while queue:
            current, level, parent = queue.popleft()
            if current in levels:
                continue
            levels[current] = level
            order.append(current)
            if parent is not None:
                tree_children[parent].append(current)
            for child in children[current]:
                queue.append((child, level + 1, current))

    for root in roots:
        walk(root)

    # Anything left over sits on a malformed parent cycle
    for item in ordered:
        if item.id not in levels:
            walk(item.id)

    # --- Step 3: Subtree spans ---
    spacing = opts.node_spacing
    span: dict[str, float] = {}

    def children_total(node_id: str) -> float:
        kids = tree_children[node_id]
        if not kids:
            return 0.0
        return sum(span[k] for k in kids) + spacing * (len(kids) - 1)

    for node_id in reversed(order):
        span[node_id] = max(breadth(item_map[node_id]), children_total(node_id))

    # --- Step 4: Rank offsets ---
    rank_depth: dict[int, float] = {}
    for node_id, level in levels.items():
        rank_depth[level] = max(rank_depth.get(level, 0.0), depth(item_map[node_id]))

    rank_offset: dict[int, float] = {}
    running = opts.tree_margin
    for level in sorted(rank_depth):
        rank_offset[level] = running
        running += rank_depth[level] + opts.rank_spacing

    # --- Step 5: Assign slices ---
    left: dict[str, float] = {}
    cursor = opts.tree_margin
    for root in walk_roots:
        left[root] = cursor
        cursor += span[root] + spacing

    layout: dict[str, Bounds] = {}
    for node_id in order:
        item = item_map[node_id]
        child_left = left[node_id] + (span[node_id] - children_total(node_id)) / 2
        for child in tree_children[node_id]:
            left[child] = child_left
            child_left += span[child] + spacing

        level = levels[node_id]
        b = round(left[node_id] + (span[node_id] - breadth(item)) / 2)
        d = round(rank_offset[level] + (rank_depth[level] - depth(item)) / 2)
        if opts.vertical:
            layout[node_id] = Bounds(x=b, y=d, width=item.width, height=item.height)
        else:
            layout[node_id] = Bounds(x=d, y=b, width=item.width, height=item.height)

    return layout


# ---------------------------------------------------------------------------
# Forest placement
# ---------------------------------------------------------------------------

def _far_edge(bounds: Bounds, vertical: bool) -> float:
    return bounds.right if vertical else bounds.bottom


def _near_edge(bounds: Bounds, vertical: bool) -> float:
    return bounds.x if vertical else bounds.y


def _shift(bounds: Bounds, delta: float, vertical: bool) -> Bounds:
    if vertical:
        return Bounds(x=bounds.x + delta, y=bounds.y, width=bounds.width, height=bounds.height)
    return Bounds(x=bounds.x, y=bounds.y + delta, width=bounds.width, height=bounds.height)


def _clear_of(box: Bounds, occupied: list[Bounds], spacing: float, vertical: bool) -> Bounds:
    """Slide ``box`` along the breadth axis until it overlaps nothing.

    The box only ever moves forward, past the far edge of whatever it hits,
    so each occupied rectangle can stop it at most once.
    """
    for _ in range(len(occupied) + 1):
        hit = next((r for r in occupied if box.intersects(r)), None)
        if hit is None:
            return box
        box = _shift(box, _far_edge(hit, vertical) + spacing - _near_edge(box, vertical), vertical)
    return box


def _place_fresh_tree(
    tree: list[ChatNode],
    cursor: float,
    occupied: list[Bounds],
    opts: LayoutOptions,
) -> dict[str, Bounds]:
    items = []
    for node in tree:
        width, height = node_dimensions(node)
        items.append(LayoutItem(
            id=node.id,
            width=width,
            height=height,
            parent_id=node.parent_id,
            created_at=node.created_at,
        ))

    local = compute_tree_layout(items, opts)
    vertical = opts.vertical
    near = min(_near_edge(b, vertical) for b in local.values())
    depth_start = opts.start_y if vertical else opts.start_x

    def translated(offset: float) -> dict[str, Bounds]:
        moved = {}
        for node_id, b in local.items():
            if vertical:
                moved[node_id] = Bounds(x=b.x + offset, y=b.y + depth_start, width=b.width, height=b.height)
            else:
                moved[node_id] = Bounds(x=b.x + depth_start, y=b.y + offset, width=b.width, height=b.height)
        return moved

    # Push the whole tree past any saved rectangle it would cover
    placed = translated(cursor - near)
    for _ in range(len(occupied) + 1):
        hit = next(
            (r for r in occupied for b in placed.values() if b.intersects(r)),
            None,
        )
        if hit is None:
            break
        cursor = _far_edge(hit, vertical) + opts.tree_spacing
        placed = translated(cursor - near)
    return placed


def _place_incrementally(
    tree: list[ChatNode],
    layout: ForestLayout,
    occupied: list[Bounds],
    opts: LayoutOptions,
) -> None:
    vertical = opts.vertical
    node_map = {n.id: n for n in tree}

    for node in tree:
        if node.id in layout.positions:
            continue
        width, height = node_dimensions(node)
        parent = node_map.get(node.parent_id) if node.parent_id else None
        parent_pos = layout.positions.get(parent.id) if parent else None

        if parent_pos is not None:
            siblings = [n for n in tree if n.parent_id == parent.id]
            index = siblings.index(node)
            pw, ph = parent_pos.width or 0, parent_pos.height or 0
            if vertical:
                x = parent_pos.x + index * (width + opts.node_spacing)
                y = parent_pos.y + ph + opts.rank_spacing
            else:
                x = parent_pos.x + pw + opts.rank_spacing
                y = parent_pos.y + index * (height + opts.node_spacing)
        else:
            # Root of a tree whose descendants were placed by hand
            known = compute_bounds(
                layout.positions[n.id] for n in tree if n.id in layout.positions
            )
            if vertical:
                x, y = known.x, known.y - height - opts.rank_spacing
            else:
                x, y = known.x - width - opts.rank_spacing, known.y

        box = _clear_of(Bounds(x=x, y=y, width=width, height=height), occupied, opts.node_spacing, vertical)
        layout.positions[node.id] = NodePosition(x=box.x, y=box.y, width=width, height=height)
        layout.placed.append(node.id)
        occupied.append(box)


def layout_forest(
    nodes: list[ChatNode],
    saved_positions: Optional[dict[str, NodePosition]] = None,
    options: Optional[LayoutOptions] = None,
) -> ForestLayout:
    """
    Position every node of the forest.

    Args:
        nodes: All nodes of the conversation.
        saved_positions: Positions that must be kept (user-placed or from
            an earlier run).  Entries for unknown ids are ignored.
        options: Spacing and orientation.

    Returns:
        A ``ForestLayout`` covering every node.
    """
    opts = options or LayoutOptions()
    saved = saved_positions or {}
    layout = ForestLayout()
    if not nodes:
        return layout

    vertical = opts.vertical
    occupied: list[Bounds] = []

    for node in nodes:
        pos = saved.get(node.id)
        if pos is None:
            continue
        width, height = node_dimensions(node, pos)
        fixed = NodePosition(x=pos.x, y=pos.y, width=width, height=height)
        layout.positions[node.id] = fixed
        occupied.append(_as_bounds(fixed))

    cursor = opts.start_x if vertical else opts.start_y

    for tree in group_trees(nodes):
        root = tree[0]
        pending = [n for n in tree if n.id not in layout.positions]

        if len(pending) == len(tree):
            placed = _place_fresh_tree(tree, cursor, occupied, opts)
            for node_id, box in placed.items():
                layout.positions[node_id] = NodePosition(x=box.x, y=box.y, width=box.width, height=box.height)
                layout.placed.append(node_id)
                occupied.append(box)
        elif pending:
            logger.debug(f"Tree {root.id}: placing {len(pending)} new nodes next to their parents")
            _place_incrementally(tree, layout, occupied, opts)

        bounds = compute_bounds(layout.positions[n.id] for n in tree)
        if bounds is None:
            continue
        layout.tree_bounds[root.id] = bounds
        cursor = max(cursor, _far_edge(bounds, vertical) + opts.tree_spacing)

    return layout
