"""Parsers for branchflow.

Two kinds of input are handled here:
1. YAML forest snapshots (nodes + references + positions)
2. ``@A`` / ``@B2`` branch mentions inside a reply's text
"""

from __future__ import annotations
import re
from pathlib import Path

import yaml

from .labels import ForestLabels
from .models import ChatNode, ForestSnapshot, NodePosition, ReferenceEdge

# @A, @b, @A1, @B12: the letter names a branch, the ordinal is ignored
BRANCH_MENTION = re.compile(r"@([A-Z])(?:\d+)?\b", re.IGNORECASE)


def parse_yaml(yaml_str: str) -> ForestSnapshot:
    """Parse a YAML string into a ForestSnapshot.

    Example:
        title: Trip planning
        nodes:
          - id: a1
            role: user
            content: "Where should we go?"
            created_at: 1
          - id: a2
            parent: a1
            role: assistant
            content: "Somewhere warm."
            created_at: 2
        references:
          - [a2, b1]
        positions:
          a1: {x: 0, y: 0}
    """
    data = yaml.safe_load(yaml_str)
    if not data:
        raise ValueError("Empty YAML input")
    if not isinstance(data, dict):
        raise ValueError("Forest YAML must be a mapping")

    nodes = [_parse_node(node_data, index) for index, node_data in enumerate(data.get("nodes") or [])]
    references = [_parse_reference(ref) for ref in data.get("references") or []]
    positions = {
        str(node_id): NodePosition.model_validate(pos)
        for node_id, pos in (data.get("positions") or {}).items()
    }

    return ForestSnapshot(
        title=data.get("title", "Untitled Conversation"),
        nodes=nodes,
        references=references,
        positions=positions,
    )


def parse_file(path: str) -> ForestSnapshot:
    """Parse a YAML file into a ForestSnapshot."""
    content = Path(path).read_text()
    return parse_yaml(content)


def _parse_node(data: dict, index: int) -> ChatNode:
    """Parse a single node from YAML data.

    ``parent`` and ``parent_id`` are both accepted.  A missing
    ``created_at`` falls back to the node's position in the list so the
    file order stays meaningful.
    """
    if "id" not in data:
        raise ValueError(f"Node #{index + 1} has no id")
    parent = data.get("parent_id", data.get("parent"))
    return ChatNode(
        id=str(data["id"]),
        parent_id=str(parent) if parent is not None else None,
        role=data.get("role", "user"),
        content=data.get("content", ""),
        created_at=float(data.get("created_at", index)),
        is_collapsed=bool(data.get("collapsed", False)),
    )


def _parse_reference(data) -> ReferenceEdge:
    if isinstance(data, (list, tuple)) and len(data) == 2:
        return ReferenceEdge(source_id=str(data[0]), target_id=str(data[1]))
    if isinstance(data, dict):
        return ReferenceEdge(
            source_id=str(data.get("source", data.get("source_id"))),
            target_id=str(data.get("target", data.get("target_id"))),
        )
    raise ValueError(f"Unrecognised reference entry: {data!r}")


def snapshot_to_yaml(snapshot: ForestSnapshot) -> str:
    """Serialize a ForestSnapshot back to YAML."""
    data = {
        "title": snapshot.title,
        "nodes": [],
    }

    for node in snapshot.nodes:
        node_data = {
            "id": node.id,
            "role": node.role,
            "content": node.content,
            "created_at": node.created_at,
        }
        if node.parent_id is not None:
            node_data["parent"] = node.parent_id
        if node.is_collapsed:
            node_data["collapsed"] = True
        data["nodes"].append(node_data)

    if snapshot.references:
        data["references"] = [[ref.source_id, ref.target_id] for ref in snapshot.references]
    if snapshot.positions:
        data["positions"] = {
            node_id: pos.model_dump(exclude_none=True)
            for node_id, pos in snapshot.positions.items()
        }

    return yaml.dump(data, default_flow_style=False, sort_keys=False)


def parse_branch_references(text: str, labels: ForestLabels) -> list[str]:
    """Root ids of the branches mentioned in ``text``.

    Unknown letters are skipped; each branch is returned once, in mention
    order.
    """
    root_ids: list[str] = []
    for match in BRANCH_MENTION.finditer(text):
        root_id = labels.root_for_letter(match.group(1))
        if root_id is not None and root_id not in root_ids:
            root_ids.append(root_id)
    return root_ids
