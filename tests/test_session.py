"""Conversation session: the send pipeline, edits, layout and persistence."""

import pytest

from branchflow.responder import Responder
from branchflow.session import ConversationSession, NotEditableError, NotReplyableError
from branchflow.store import JsonlForestStore

from conftest import ScriptedResponder


class ClosingResponder(Responder):
    """Yields two chunks and records when its generator is closed."""

    def __init__(self):
        self.closed = False

    async def stream(self, messages, provider=None, model=None):
        try:
            yield "a"
            yield "b"
        finally:
            self.closed = True


@pytest.fixture
def session(responder):
    return ConversationSession(responder=responder)


# =============================================================================
# SEND
# =============================================================================

class TestSend:

    @pytest.mark.asyncio
    async def test_first_message_starts_a_tree(self, session):
        result = await session.send("Plan a trip")
        user, reply = result.user_node, result.assistant_node

        assert user.parent_id is None
        assert user.role == "user"
        assert reply.parent_id == user.id
        assert reply.content == "Hello world"
        assert not reply.is_streaming
        assert reply.created_at > user.created_at
        assert session.reply_target == reply.id
        assert result.error is None

    @pytest.mark.asyncio
    async def test_follow_up_replies_to_last_answer(self, session, responder):
        first = await session.send("Plan a trip")
        second = await session.send("Somewhere warm")
        assert second.user_node.parent_id == first.assistant_node.id
        assert [m.content for m in responder.calls[1]] == ["Plan a trip", "Hello world", "Somewhere warm"]

    @pytest.mark.asyncio
    async def test_deltas_are_forwarded(self, session):
        seen = []

        async def on_delta(text):
            seen.append(text)

        await session.send("Hi", on_delta=on_delta)
        assert seen == ["Hello", " world"]

    @pytest.mark.asyncio
    async def test_empty_content_rejected(self, session):
        with pytest.raises(ValueError):
            await session.send("   ")

    @pytest.mark.asyncio
    async def test_mention_pulls_in_other_tree(self, session, responder):
        first = await session.send("Budget is 2000")
        session.reply_to(None)
        result = await session.send("Plan a trip within @A")

        assert result.references == [first.user_node.id]
        assert session.forest.references_from(result.user_node.id) == [first.user_node.id]
        assert [m.content for m in responder.calls[-1]] == [
            "Budget is 2000", "Hello world", "Plan a trip within @A",
        ]

    @pytest.mark.asyncio
    async def test_explicit_references_skip_unknown_ids(self, session):
        first = await session.send("One")
        session.reply_to(None)
        result = await session.send("Two", references=[first.user_node.id, "ghost"])
        assert result.references == [first.user_node.id]

    @pytest.mark.asyncio
    async def test_circular_reference_warns_but_sends(self, session):
        await session.send("Start")
        result = await session.send("Loop back to @A")
        assert [w.message for w in result.warnings] == [
            "Reference to branch A would create a circular context",
        ]
        assert result.assistant_node.content == "Hello world"
        assert session.view().warnings

    @pytest.mark.asyncio
    async def test_responder_failure_becomes_content(self):
        session = ConversationSession(responder=ScriptedResponder(["partial"], fail_with="quota exceeded"))
        result = await session.send("Hi")
        assert result.error == "quota exceeded"
        assert result.assistant_node.content == "Error: quota exceeded"
        assert not result.assistant_node.is_streaming

    @pytest.mark.asyncio
    async def test_empty_reply_is_marked(self):
        session = ConversationSession(responder=ScriptedResponder([]))
        result = await session.send("Hi")
        assert result.assistant_node.content == "(empty response)"

    @pytest.mark.asyncio
    async def test_missing_responder(self):
        session = ConversationSession()
        result = await session.send("Hi")
        assert result.assistant_node.content == "Error: No responder configured"

    @pytest.mark.asyncio
    async def test_excluded_nodes_are_not_sent(self, session, responder):
        first = await session.send("Secret preamble")
        session.exclude(first.user_node.id)
        await session.send("Question")
        assert "Secret preamble" not in [m.content for m in responder.calls[-1]]

        session.include_all()
        await session.send("Again")
        assert "Secret preamble" in [m.content for m in responder.calls[-1]]

    @pytest.mark.asyncio
    async def test_dropped_receiver_closes_the_stream(self):
        responder = ClosingResponder()
        session = ConversationSession(responder=responder)

        async def on_delta(text):
            raise ConnectionResetError("client went away")

        with pytest.raises(ConnectionResetError):
            await session.send("Hi", on_delta=on_delta)

        reply = next(n for n in session.forest.nodes() if n.is_assistant)
        assert responder.closed
        assert reply.content == "Error: stream interrupted"
        assert not reply.is_streaming
        assert session.reply_target == reply.id


# =============================================================================
# STRUCTURAL EDITS
# =============================================================================

class TestEdits:

    @pytest.mark.asyncio
    async def test_reply_only_to_answers(self, session):
        result = await session.send("Hi")
        with pytest.raises(NotReplyableError):
            session.reply_to(result.user_node.id)
        with pytest.raises(KeyError):
            session.reply_to("ghost")

    @pytest.mark.asyncio
    async def test_edit_requires_user_leaf(self, session):
        result = await session.send("Hi")
        with pytest.raises(NotEditableError):
            session.edit(result.user_node.id)
        with pytest.raises(NotEditableError):
            session.edit(result.assistant_node.id)

    @pytest.mark.asyncio
    async def test_edit_retargets_parent(self, session):
        first = await session.send("Hi")
        second = await session.send("Follow up")
        session.delete(second.assistant_node.id)

        content = session.edit(second.user_node.id)
        assert content == "Follow up"
        assert second.user_node.id not in session.forest
        assert session.reply_target == first.assistant_node.id

    @pytest.mark.asyncio
    async def test_delete_cleans_up(self, session):
        first = await session.send("Hi")
        session.reply_to(None)
        second = await session.send("See @A")
        session.exclude(first.assistant_node.id)

        removed = session.delete(first.user_node.id)
        assert removed == {first.user_node.id, first.assistant_node.id}
        assert session.forest.references == []
        assert first.user_node.id not in session.positions
        assert session.excluded_ids == set()
        assert session.reply_target == second.assistant_node.id

    @pytest.mark.asyncio
    async def test_toggle_collapse(self, session):
        result = await session.send("Hi")
        assert session.toggle_collapse(result.user_node.id) is True
        assert session.forest.get(result.user_node.id).is_collapsed


# =============================================================================
# LAYOUT AND VIEW
# =============================================================================

class TestView:

    @pytest.mark.asyncio
    async def test_view_labels_and_edges(self, session):
        first = await session.send("Budget is 2000")
        session.reply_to(None)
        second = await session.send("Trip within @A")

        view = session.view()
        user_a = view.node(first.user_node.id)
        assert user_a.short_label == "A1"
        assert user_a.is_root
        assert user_a.tree_summary == "Budget is 2000"
        assert user_a.palette.name == "blue"
        assert view.node(second.user_node.id).short_label == "B1"
        assert view.node(second.user_node.id).palette.name == "emerald"
        assert view.node(second.assistant_node.id).palette.name == "gray"
        assert view.node(second.assistant_node.id).can_reply

        edge_ids = {e.id for e in view.edges}
        assert f"reply-{first.user_node.id}-{first.assistant_node.id}" in edge_ids
        ref = next(e for e in view.edges if e.type == "reference")
        assert ref.id == f"ref-{second.user_node.id}-{first.user_node.id}"
        assert not ref.is_circular

    @pytest.mark.asyncio
    async def test_circular_reference_edge_is_flagged(self, session):
        await session.send("Start")
        await session.send("Back to @A")
        ref = next(e for e in session.view().edges if e.type == "reference")
        assert ref.is_circular

    @pytest.mark.asyncio
    async def test_move_pins_and_relayout_keeps_pins(self, session):
        result = await session.send("Hi")
        session.move_node(result.user_node.id, 500, 500)

        session.relayout()
        user_pos = session.positions[result.user_node.id]
        reply_pos = session.positions[result.assistant_node.id]
        assert (user_pos.x, user_pos.y) == (500, 500)
        assert (reply_pos.x, reply_pos.y) == (500, 700)

    @pytest.mark.asyncio
    async def test_move_unknown_node(self, session):
        with pytest.raises(KeyError):
            session.move_node("ghost", 0, 0)

    @pytest.mark.asyncio
    async def test_context_preview(self, session):
        result = await session.send("Hi")
        preview = session.context_preview()
        assert [n.id for n in preview.included] == [result.user_node.id, result.assistant_node.id]
        session.exclude_all()
        assert session.context_preview().included == []
        session.reply_to(None)
        assert session.context_preview() is None

    @pytest.mark.asyncio
    async def test_message_context(self, session):
        first = await session.send("Budget")
        session.reply_to(None)
        second = await session.send("Use @A")
        selection = session.message_context(second.user_node.id)
        assert selection.ancestry_length == 1
        assert selection.referenced_count == 2


# =============================================================================
# PERSISTENCE
# =============================================================================

@pytest.mark.asyncio
async def test_session_survives_reload(tmp_path, responder):
    store = JsonlForestStore(tmp_path)
    session = ConversationSession("trip", store=store, responder=responder)
    first = await session.send("Budget")
    session.reply_to(None)
    await session.send("Plan with @A")
    session.move_node(first.user_node.id, -400, -400)
    session.flush()

    reloaded = ConversationSession("trip", store=store, responder=responder)
    reloaded.load()
    assert len(reloaded.forest) == 4
    assert reloaded.forest.get(first.assistant_node.id).content == "Hello world"
    assert len(reloaded.forest.references) == 1
    pos = reloaded.positions[first.user_node.id]
    assert (pos.x, pos.y) == (-400, -400)
    assert reloaded.pinned == {first.user_node.id}


@pytest.mark.asyncio
async def test_view_focuses_newest_reply(session):
    result = await session.send("Hi")
    pos = session.positions[result.assistant_node.id]
    assert session.view().focus == (pos.x + pos.width / 2, pos.y + pos.height / 2)

    session.delete(result.user_node.id)
    assert session.view().focus is None
