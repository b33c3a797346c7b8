import asyncio

import pytest

from chat_ai.types import Conversation, Role
from chat_session import ConversationSession, FailureKind, TurnState
from chat_store import InMemoryStore
from chat_tree import active_branch
from tests.helpers import Clock, assistant_msg, gated_stream_fn, ids, scripted_stream_fn, user_msg


def _conversation():
    return [
        user_msg("u1", created=0),
        assistant_msg("m1", parent_id="u1", created=1),
        user_msg("u2", parent_id="m1", created=2),
        assistant_msg("m2", parent_id="u2", created=3),
    ]


def _session(store, stream_fn=None, **kwargs):
    stream_fn = stream_fn or scripted_stream_fn([{"type": "text_delta", "delta": "Sure."}])
    session = ConversationSession(store, "c1", stream_fn, clock=Clock(), **kwargs)
    session.open()
    return session


async def _wait_until(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.mark.asyncio
async def test_send_first_message_streams_reply():
    store = InMemoryStore()
    calls = []
    session = _session(store, scripted_stream_fn([{"type": "text_delta", "delta": "Hi!"}], calls))

    result = await session.send_user_message("Hello")
    assert result.ok
    assert session.is_generating
    await session.wait_for_idle()

    stored = store.messages("c1")
    assert [(m.role, m.content) for m in stored] == [(Role.USER, "Hello"), (Role.ASSISTANT, "Hi!")]
    assert stored[1].parent_id == stored[0].id
    assert stored[1].id == result.message_id
    assert ids(session.active_branch) == ids(stored)
    assert session.state.turn_state is TurnState.FINALIZED
    assert not session.is_generating

    turns, options = calls[0]
    assert [(t.role, t.text) for t in turns] == [(Role.USER, "Hello")]
    assert options.signal is not None
    await session.close()


@pytest.mark.asyncio
async def test_send_continues_active_branch():
    store = InMemoryStore()
    store.seed("c1", _conversation())
    calls = []
    session = _session(store, scripted_stream_fn([{"type": "text_delta", "delta": "ok"}], calls))

    await session.send_user_message("And then?")
    await session.wait_for_idle()

    branch = session.active_branch
    assert ids(branch)[:4] == ["u1", "m1", "u2", "m2"]
    assert branch[4].content == "And then?"
    assert branch[4].parent_id == "m2"
    assert [t.text for t in calls[0][0]] == ["u1", "m1", "u2", "m2", "And then?"]
    await session.close()


@pytest.mark.asyncio
async def test_concurrent_send_is_rejected():
    store = InMemoryStore()
    gate = asyncio.Event()
    session = _session(store, gated_stream_fn(gate, [{"type": "text_delta", "delta": "..."}]))
    failures = []
    session.subscribe(lambda event: failures.append(event) if event["type"] == "operation_failed" else None)

    assert (await session.send_user_message("one")).ok
    second = await session.send_user_message("two")
    assert not second.ok
    assert second.failure.kind is FailureKind.STILL_GENERATING
    assert (await session.regenerate("anything")).failure.kind is FailureKind.STILL_GENERATING
    assert (await session.truncate_after("anything")).failure.kind is FailureKind.STILL_GENERATING
    assert failures[-1]["failure"].kind is FailureKind.STILL_GENERATING

    gate.set()
    await session.wait_for_idle()
    assert [m.content for m in store.messages("c1")] == ["one", "..."]
    await session.close()


@pytest.mark.asyncio
async def test_blank_message_is_rejected():
    session = _session(InMemoryStore())
    result = await session.send_user_message("   ")
    assert result.failure.kind is FailureKind.EMPTY_CONTENT
    assert not session.is_generating


@pytest.mark.asyncio
async def test_streaming_message_is_visible_before_persisting():
    store = InMemoryStore()
    gate = asyncio.Event()
    session = _session(store, gated_stream_fn(gate, [{"type": "text_delta", "delta": "Work"}]))

    result = await session.send_user_message("Go")
    await _wait_until(lambda: session.state.turn_state is TurnState.STREAMING)

    streaming = session.state.streaming_message
    assert streaming.id == result.message_id
    assert streaming.content == "Work"
    assert session.active_branch[-1].id == result.message_id
    assert result.message_id not in ids(store.messages("c1"))

    gate.set()
    await session.wait_for_idle()
    assert session.state.streaming_message is None
    assert result.message_id in ids(store.messages("c1"))
    await session.close()


@pytest.mark.asyncio
async def test_stop_generating_keeps_partial_reply():
    store = InMemoryStore()
    gate = asyncio.Event()
    session = _session(store, gated_stream_fn(gate, [{"type": "text_delta", "delta": "Half"}]))
    ends = []
    session.subscribe(lambda event: ends.append(event) if event["type"] == "turn_end" else None)

    await session.send_user_message("Tell me a story")
    await _wait_until(lambda: session.state.turn_state is TurnState.STREAMING)
    session.stop_generating()
    await session.wait_for_idle()

    assert [m.content for m in store.messages("c1")] == ["Tell me a story", "Half"]
    assert ends[0]["cancelled"] is True
    assert ends[0]["state"] is TurnState.FINALIZED
    assert ends[0]["persisted"] is True
    gate.set()
    await session.close()


@pytest.mark.asyncio
async def test_stop_before_first_token_leaves_nothing():
    store = InMemoryStore()
    gate = asyncio.Event()
    session = _session(store, gated_stream_fn(gate, []))

    await session.send_user_message("Hello?")
    session.stop_generating()
    await session.wait_for_idle()

    assert [m.content for m in store.messages("c1")] == ["Hello?"]
    assert ids(session.messages) == ids(store.messages("c1"))
    gate.set()
    await session.close()


@pytest.mark.asyncio
async def test_stream_error_is_recorded_in_branch():
    store = InMemoryStore()
    session = _session(
        store,
        scripted_stream_fn([{"type": "text_delta", "delta": "Partial"}, {"type": "error", "error": "rate limited"}]),
    )
    ends = []
    session.subscribe(lambda event: ends.append(event) if event["type"] == "turn_end" else None)

    await session.send_user_message("Hi")
    await session.wait_for_idle()

    reply = store.messages("c1")[-1]
    assert reply.content == "Partial\n\nrate limited"
    assert session.state.turn_state is TurnState.ERRORED
    assert session.state.error == "rate limited"
    assert ends[0]["failure"].kind is FailureKind.STREAM_FAILURE
    await session.close()


@pytest.mark.asyncio
async def test_regenerate_adds_selected_sibling():
    store = InMemoryStore()
    store.seed("c1", _conversation())
    calls = []
    session = _session(store, scripted_stream_fn([{"type": "text_delta", "delta": "Again"}], calls))

    result = await session.regenerate("m2")
    assert result.ok
    await session.wait_for_idle()

    assert ids(session.active_branch) == ["u1", "m1", "u2", result.message_id]
    assert session.active_branch[-1].content == "Again"
    assert [t.text for t in calls[0][0]] == ["u1", "m1", "u2"]
    position = session.branch_position(result.message_id)
    assert (position.index, position.count) == (0, 2)
    assert "m2" in ids(store.messages("c1"))
    await session.close()


@pytest.mark.asyncio
async def test_regenerate_failures_are_typed():
    store = InMemoryStore()
    store.seed("c1", _conversation())
    session = _session(store)

    assert (await session.regenerate("u2")).failure.kind is FailureKind.INVALID_ROLE
    assert (await session.regenerate("ghost")).failure.kind is FailureKind.NOT_FOUND
    assert not session.is_generating
    assert len(store.messages("c1")) == 4
    await session.close()


@pytest.mark.asyncio
async def test_regenerate_with_dangling_parent():
    store = InMemoryStore()
    store.seed("c1", [assistant_msg("m1", parent_id="gone", created=0)])
    session = _session(store)

    result = await session.regenerate("m1")
    assert result.failure.kind is FailureKind.STRUCTURAL_INCONSISTENCY
    assert [issue.kind for issue in session.state.issues] == ["dangling_parent"]
    await session.close()


@pytest.mark.asyncio
async def test_edit_and_resend_branches_from_parent():
    store = InMemoryStore()
    store.seed("c1", _conversation())
    calls = []
    session = _session(store, scripted_stream_fn([{"type": "text_delta", "delta": "New answer"}], calls))

    result = await session.edit_and_resend("u2", "Rephrased")
    assert result.ok
    await session.wait_for_idle()

    branch = session.active_branch
    assert ids(branch)[:2] == ["u1", "m1"]
    assert [m.content for m in branch[2:]] == ["Rephrased", "New answer"]
    assert [t.text for t in calls[0][0]] == ["u1", "m1", "Rephrased"]
    assert session.branch_position(branch[2].id).count == 2
    assert {"u2", "m2"} <= set(ids(store.messages("c1")))
    await session.close()


@pytest.mark.asyncio
async def test_edit_rejects_assistant_message():
    store = InMemoryStore()
    store.seed("c1", _conversation())
    session = _session(store)
    assert (await session.edit_and_resend("m1", "text")).failure.kind is FailureKind.INVALID_ROLE
    await session.close()


def _siblings():
    return [
        user_msg("u1", created=0),
        assistant_msg("m1", parent_id="u1", created=1, selected=2),
        assistant_msg("m2", parent_id="u1", created=1, selected=4),
    ]


@pytest.mark.asyncio
async def test_switch_branch_updates_selection():
    store = InMemoryStore()
    store.seed("c1", _siblings())
    session = _session(store)
    assert ids(session.active_branch) == ["u1", "m2"]

    result = await session.switch_branch("m2", "previous")
    assert result.ok
    assert result.message_id == "m1"
    assert ids(session.active_branch) == ["u1", "m1"]

    at_boundary = await session.switch_branch("m1", "next")
    assert at_boundary.message_id == "m1"
    await session.close()


@pytest.mark.asyncio
async def test_optimistic_switch_reconciles_with_snapshot():
    store = InMemoryStore(manual_delivery=True)
    store.seed("c1", _siblings())
    session = _session(store)

    await session.switch_branch("m2", "previous")
    assert ids(session.active_branch) == ["u1", "m1"]

    store.deliver()
    assert ids(session.active_branch) == ["u1", "m1"]
    assert session.messages == store.messages("c1")
    await session.close()


@pytest.mark.asyncio
async def test_late_stale_snapshot_keeps_unconfirmed_switch():
    store = InMemoryStore(manual_delivery=True)
    store.seed("c1", _siblings())
    session = _session(store)
    before = store.messages("c1")

    await session.switch_branch("m2", "previous")
    store.publish("c1", before)
    assert ids(session.active_branch) == ["u1", "m1"]

    store.deliver()
    assert ids(session.active_branch) == ["u1", "m1"]
    assert session.messages == store.messages("c1")
    await session.close()


@pytest.mark.asyncio
async def test_late_stale_snapshot_keeps_sent_message_and_streaming_reply():
    store = InMemoryStore(manual_delivery=True)
    store.seed("c1", _siblings())
    gate = asyncio.Event()
    session = _session(store, gated_stream_fn(gate, [{"type": "text_delta", "delta": "Thinking"}]))
    before = store.messages("c1")

    result = await session.send_user_message("next question")
    await _wait_until(lambda: session.state.turn_state is TurnState.STREAMING)
    store.publish("c1", before)

    branch = session.active_branch
    assert len(branch) == 4
    assert branch[2].content == "next question"
    assert branch[3].id == result.message_id

    gate.set()
    await session.wait_for_idle()
    store.publish("c1", before)
    assert ids(session.active_branch)[-1] == result.message_id

    store.deliver()
    assert ids(session.active_branch) == ids(active_branch(store.messages("c1")))
    assert session.active_branch[-1].content == "Thinking"
    await session.close()


@pytest.mark.asyncio
async def test_unknown_direction_is_a_typed_failure():
    store = InMemoryStore()
    store.seed("c1", _siblings())
    session = _session(store)

    result = await session.switch_branch("m2", "sideways")
    assert result.failure.kind is FailureKind.INVALID_DIRECTION
    assert ids(session.active_branch) == ["u1", "m2"]
    await session.close()


@pytest.mark.asyncio
async def test_failed_write_rolls_back():
    store = InMemoryStore()
    store.seed("c1", _siblings())
    session = _session(store)
    store.inject_failure("update_message_fields")

    result = await session.switch_branch("m2", "previous")
    assert result.failure.kind is FailureKind.STORE_WRITE_FAILURE
    assert ids(session.active_branch) == ["u1", "m2"]
    assert session.messages == store.messages("c1")
    await session.close()


@pytest.mark.asyncio
async def test_failed_send_starts_no_turn():
    store = InMemoryStore()
    calls = []
    session = _session(store, scripted_stream_fn([], calls))
    store.inject_failure("create_message")

    result = await session.send_user_message("Hello")
    assert result.failure.kind is FailureKind.STORE_WRITE_FAILURE
    assert session.messages == []
    assert not session.is_generating
    assert calls == []
    await session.close()


@pytest.mark.asyncio
async def test_failed_reply_write_is_rolled_back():
    store = InMemoryStore()
    store.seed("c1", _conversation())
    session = _session(store)
    events = []
    session.subscribe(events.append)
    store.inject_failure("create_message")

    result = await session.regenerate("m2")
    await session.wait_for_idle()

    assert result.message_id not in ids(session.messages)
    assert ids(session.active_branch) == ["u1", "m1", "u2", "m2"]
    turn_end = next(event for event in events if event["type"] == "turn_end")
    assert turn_end["persisted"] is False
    assert any(event["type"] == "operation_failed" for event in events)
    await session.close()


@pytest.mark.asyncio
async def test_truncate_after_deletes_descendants():
    store = InMemoryStore()
    store.seed("c1", _conversation() + [user_msg("u3", parent_id="m1", created=9)])
    session = _session(store)

    result = await session.truncate_after("m1")
    assert result.ok
    assert ids(store.messages("c1")) == ["u1", "m1"]
    assert ids(session.active_branch) == ["u1", "m1"]

    leaf = await session.truncate_after("m1")
    assert leaf.ok
    assert (await session.truncate_after("ghost")).failure.kind is FailureKind.NOT_FOUND
    await session.close()


@pytest.mark.asyncio
async def test_delete_branch_removes_message_and_descendants():
    store = InMemoryStore()
    store.seed("c1", _conversation())
    session = _session(store)

    assert (await session.delete_branch("u2")).ok
    assert ids(store.messages("c1")) == ["u1", "m1"]
    await session.close()


@pytest.mark.asyncio
async def test_first_message_titles_conversation():
    store = InMemoryStore()
    session = _session(store, conversation_store=store)

    await session.send_user_message("Plan a week-long trip through northern Portugal by train")
    await session.wait_for_idle()

    saved = await store.get_conversation("c1")
    assert saved.title == "Plan a week-long trip through northern Portugal by..."
    assert session.conversation.title == saved.title

    await session.send_user_message("Add Spain")
    await session.wait_for_idle()
    assert (await store.get_conversation("c1")).title == saved.title
    await session.close()


@pytest.mark.asyncio
async def test_existing_title_is_kept():
    store = InMemoryStore()
    await store.create_conversation(Conversation(id="c1", title="Recipes"))
    session = ConversationSession(
        store,
        await store.get_conversation("c1"),
        scripted_stream_fn([{"type": "text_delta", "delta": "ok"}]),
        conversation_store=store,
        clock=Clock(),
    )
    session.open()

    await session.send_user_message("Soup ideas")
    await session.wait_for_idle()
    assert (await store.get_conversation("c1")).title == "Recipes"
    await session.close()


@pytest.mark.asyncio
async def test_close_unsubscribes_once_and_ends_event_streams():
    store = InMemoryStore()
    session = _session(store)
    stream = session.events()
    assert store.listener_count("c1") == 1

    await session.send_user_message("Hi")
    await session.wait_for_idle()
    await session.close()
    await session.close()

    assert store.listener_count("c1") == 0
    types = [event["type"] async for event in stream]
    assert types.index("turn_start") < types.index("turn_update") < types.index("turn_end")
    assert types[-1] == "closed"


@pytest.mark.asyncio
async def test_async_context_manager():
    store = InMemoryStore()
    store.seed("c1", _conversation())
    async with ConversationSession(store, "c1", scripted_stream_fn([]), clock=Clock()) as session:
        assert session.is_open
        assert ids(session.active_branch) == ["u1", "m1", "u2", "m2"]
    assert store.listener_count("c1") == 0
    with pytest.raises(RuntimeError):
        session.open()
