"""MCP server exposing the conversation-forest engine over YAML snapshots."""

from __future__ import annotations

import json

import yaml
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from .context import collect_context_nodes
from .cycles import check_references, find_circular_references
from .forest import Forest
from .labels import generate_short_labels, generate_tree_summary
from .models import ForestSnapshot
from .organize import LayoutOptions, layout_forest
from .parser import parse_branch_references, parse_yaml, snapshot_to_yaml
from .store import JsonlForestStore, StoreError

server = Server("branchflow")

SNAPSHOT_DESCRIPTION = (
    "YAML forest snapshot. Example:\n"
    "title: Trip planning\n"
    "nodes:\n"
    "  - id: a1\n"
    "    role: user\n"
    "    content: 'Where should we go?'\n"
    "  - id: a2\n"
    "    parent: a1\n"
    "    role: assistant\n"
    "    content: 'Somewhere warm.'\n"
    "references:\n"
    "  - [a1, b1]\n"
    "positions:\n"
    "  a1: {x: 0, y: 0}\n"
)


# --- Tool definitions ---

@server.list_tools()
async def list_tools() -> list[Tool]:
    return [
        Tool(
            name="forest_labels",
            description=(
                "Compute short labels for every message of a conversation forest. "
                "Trees are lettered A, B, C... and messages numbered breadth-first (A1, A2, B1...). "
                "Also returns a one-line summary per tree."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "yaml_snapshot": {"type": "string", "description": SNAPSHOT_DESCRIPTION},
                },
                "required": ["yaml_snapshot"],
            },
        ),
        Tool(
            name="build_context",
            description=(
                "Build the ordered transcript a responder would see when replying at a message: "
                "its ancestry plus every referenced tree, deduplicated and sorted by time."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "yaml_snapshot": {"type": "string", "description": SNAPSHOT_DESCRIPTION},
                    "target_id": {"type": "string", "description": "Message to reply at"},
                    "references": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Referenced message ids. Defaults to the target's stored references.",
                    },
                    "exclude": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Message ids to leave out of the transcript",
                    },
                },
                "required": ["yaml_snapshot", "target_id"],
            },
        ),
        Tool(
            name="layout_forest",
            description=(
                "Position every message of the forest on a shared canvas without overlap. "
                "Saved positions in the snapshot are kept; everything else is laid out as layered trees."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "yaml_snapshot": {"type": "string", "description": SNAPSHOT_DESCRIPTION},
                    "orientation": {
                        "type": "string",
                        "enum": ["vertical", "horizontal"],
                        "description": "vertical: ranks top to bottom, trees side by side (default)",
                        "default": "vertical",
                    },
                },
                "required": ["yaml_snapshot"],
            },
        ),
        Tool(
            name="check_reference",
            description=(
                "Check whether replying at a message while referencing other branches would be circular. "
                "Branches can be given as ids or as @A-style mentions in the draft text."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "yaml_snapshot": {"type": "string", "description": SNAPSHOT_DESCRIPTION},
                    "from_id": {"type": "string", "description": "Message being replied to"},
                    "references": {"type": "array", "items": {"type": "string"}},
                    "text": {"type": "string", "description": "Draft reply; @A mentions are resolved"},
                },
                "required": ["yaml_snapshot", "from_id"],
            },
        ),
        Tool(
            name="export_conversation",
            description="Export a stored conversation as a YAML forest snapshot.",
            inputSchema={
                "type": "object",
                "properties": {
                    "conversation_id": {"type": "string"},
                },
                "required": ["conversation_id"],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    if name == "forest_labels":
        return await _forest_labels(arguments)
    elif name == "build_context":
        return await _build_context(arguments)
    elif name == "layout_forest":
        return await _layout_forest(arguments)
    elif name == "check_reference":
        return await _check_reference(arguments)
    elif name == "export_conversation":
        return await _export_conversation(arguments)
    else:
        return [TextContent(type="text", text=f"Unknown tool: {name}")]


def _load(args: dict) -> tuple[ForestSnapshot, Forest]:
    snapshot = parse_yaml(args["yaml_snapshot"])
    return snapshot, Forest(snapshot.nodes, snapshot.references)


def _json(data: dict) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(data))]


async def _forest_labels(args: dict) -> list[TextContent]:
    try:
        snapshot, forest = _load(args)
    except (ValueError, yaml.YAMLError) as e:
        return [TextContent(type="text", text=f"Failed to parse YAML snapshot: {e}")]

    nodes = forest.nodes()
    labels = generate_short_labels(nodes)
    return _json({
        "title": snapshot.title,
        "labels": labels.labels,
        "trees": [
            {
                "letter": labels.tree_labels[root_id],
                "index": labels.tree_indices[root_id],
                "root_id": root_id,
                "summary": generate_tree_summary(nodes, root_id),
            }
            for root_id in labels.root_ids
        ],
    })


async def _build_context(args: dict) -> list[TextContent]:
    try:
        _, forest = _load(args)
    except (ValueError, yaml.YAMLError) as e:
        return [TextContent(type="text", text=f"Failed to parse YAML snapshot: {e}")]

    target_id = args["target_id"]
    if target_id not in forest:
        return [TextContent(type="text", text=f"Message not found: {target_id}")]

    references = args.get("references")
    if references is None:
        references = forest.references_from(target_id)
    excluded = set(args.get("exclude") or [])
    selection = collect_context_nodes(forest, target_id, references, exclude=lambda n: n.id in excluded)
    return _json({
        "target_id": target_id,
        "context": [m.model_dump() for m in selection.messages()],
        "ancestry_length": selection.ancestry_length,
        "referenced_count": selection.referenced_count,
        "excluded": [n.id for n in selection.excluded],
    })


async def _layout_forest(args: dict) -> list[TextContent]:
    try:
        snapshot, forest = _load(args)
    except (ValueError, yaml.YAMLError) as e:
        return [TextContent(type="text", text=f"Failed to parse YAML snapshot: {e}")]

    orientation = args.get("orientation", "vertical")
    layout = layout_forest(forest.nodes(), snapshot.positions, LayoutOptions(orientation=orientation))
    return _json({
        "status": "success",
        "orientation": orientation,
        "positions": {k: v.model_dump() for k, v in layout.positions.items()},
        "trees": {
            root_id: {"x": b.x, "y": b.y, "width": b.width, "height": b.height}
            for root_id, b in layout.tree_bounds.items()
        },
        "placed": len(layout.placed),
    })


async def _check_reference(args: dict) -> list[TextContent]:
    try:
        _, forest = _load(args)
    except (ValueError, yaml.YAMLError) as e:
        return [TextContent(type="text", text=f"Failed to parse YAML snapshot: {e}")]

    labels = generate_short_labels(forest.nodes())
    targets = [r for r in args.get("references") or [] if r in forest]
    for root_id in parse_branch_references(args.get("text", ""), labels):
        if root_id not in targets:
            targets.append(root_id)

    warnings = check_references(forest, args["from_id"], targets, labels)
    return _json({
        "from_id": args["from_id"],
        "checked": targets,
        "circular": bool(warnings),
        "warnings": [w.message for w in warnings],
        "existing_circular_edges": sorted(list(e) for e in find_circular_references(forest)),
    })


async def _export_conversation(args: dict) -> list[TextContent]:
    try:
        snapshot = JsonlForestStore().load_forest(args["conversation_id"])
    except StoreError as e:
        return [TextContent(type="text", text=f"Export failed: {e}")]
    return [TextContent(type="text", text=snapshot_to_yaml(snapshot))]


def main():
    """Entry point for the MCP server."""
    import asyncio
    asyncio.run(_run())


async def _run():
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


if __name__ == "__main__":
    main()
