"""MCP tool handlers, called directly with YAML snapshots."""

import json

import pytest

from branchflow.server import _check_reference, _forest_labels, _layout_forest

SNAPSHOT = """
nodes:
  - id: a1
    content: Where should we go?
  - id: a2
    parent: a1
    role: assistant
    content: Somewhere warm.
  - id: b1
    content: Budget?
"""


@pytest.mark.asyncio
async def test_forest_labels():
    result = await _forest_labels({"yaml_snapshot": SNAPSHOT})
    data = json.loads(result[0].text)
    assert data["labels"] == {"a1": "A1", "a2": "A2", "b1": "B1"}
    assert [t["letter"] for t in data["trees"]] == ["A", "B"]


@pytest.mark.asyncio
async def test_check_reference_resolves_mentions():
    result = await _check_reference({"yaml_snapshot": SNAPSHOT, "from_id": "a2", "text": "back to @A"})
    data = json.loads(result[0].text)
    assert data["checked"] == ["a1"]
    assert data["circular"] is True


@pytest.mark.asyncio
async def test_malformed_snapshot_is_reported():
    bad = SNAPSHOT + "positions:\n  a1: 5\n"
    for handler in (_forest_labels, _layout_forest):
        result = await handler({"yaml_snapshot": bad})
        assert result[0].text.startswith("Failed to parse YAML snapshot")
