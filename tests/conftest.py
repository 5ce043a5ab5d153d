"""Shared fixtures: sample forests and a scripted responder."""

from typing import Optional

import pytest

from branchflow.forest import Forest
from branchflow.models import ChatNode, ContextMessage, ReferenceEdge
from branchflow.responder import Responder, ResponderError


def make_node(node_id, parent=None, role="user", content=None, t=0.0, **kwargs) -> ChatNode:
    return ChatNode(
        id=node_id,
        parent_id=parent,
        role=role,
        content=content if content is not None else f"message {node_id}",
        created_at=t,
        **kwargs,
    )


class ScriptedResponder(Responder):
    """Replies with a fixed list of chunks and records what it was asked."""

    def __init__(self, chunks=("Hello", " world"), fail_with: Optional[str] = None):
        self.chunks = list(chunks)
        self.fail_with = fail_with
        self.calls: list[list[ContextMessage]] = []

    async def stream(self, messages, provider=None, model=None):
        self.calls.append(list(messages))
        for chunk in self.chunks:
            yield chunk
        if self.fail_with is not None:
            raise ResponderError(self.fail_with)


@pytest.fixture
def sample_nodes() -> list[ChatNode]:
    """
    Two trees:

        a1 ─ a2 ─┬─ a3 ─ a4        (tree A)
                 └─ a5 ─ a6
        b1 ─ b2                    (tree B)
    """
    return [
        make_node("a1", t=1),
        make_node("a2", "a1", role="assistant", t=2),
        make_node("a3", "a2", t=3),
        make_node("a4", "a3", role="assistant", t=4),
        make_node("a5", "a2", t=5),
        make_node("a6", "a5", role="assistant", t=6),
        make_node("b1", t=10),
        make_node("b2", "b1", role="assistant", t=11),
    ]


@pytest.fixture
def sample_forest(sample_nodes) -> Forest:
    return Forest(sample_nodes, [ReferenceEdge(source_id="b1", target_id="a1")])


@pytest.fixture
def responder() -> ScriptedResponder:
    return ScriptedResponder()
