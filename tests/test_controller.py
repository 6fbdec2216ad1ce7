"""Test suite for the session controller."""

import asyncio

import pytest

from syntra_chat.session.controller import SessionPhase

from conftest import sse


async def until(predicate, attempts: int = 500) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def optimistic(view):
    return [m for m in view.messages if m.is_optimistic]


@pytest.mark.asyncio
async def test_select_loads_history_and_details(controller):
    """Test selecting a conversation loads its confirmed messages."""
    view = await controller.select_conversation("conv-1")

    assert view.conversation_id == "conv-1"
    assert view.conversation.title == "Test conversation"
    assert [m.content for m in view.messages] == ["Question 0", "Answer 0", "Question 1", "Answer 1"]
    assert view.phase == SessionPhase.IDLE
    assert not view.is_loading_history
    await controller.close()


@pytest.mark.asyncio
async def test_deselect_clears_view(controller):
    await controller.select_conversation("conv-1")
    view = await controller.select_conversation(None)
    assert view.conversation_id is None
    assert view.messages == []
    await controller.close()


@pytest.mark.asyncio
async def test_reselect_refetches_history(controller, chat_backend):
    """Test selecting the active conversation again is a refresh."""
    await controller.select_conversation("conv-1")
    await controller.select_conversation("conv-1")
    assert chat_backend.history_fetches("conv-1") == 2
    await controller.close()


@pytest.mark.asyncio
async def test_send_is_confirmed_within_settle_budget(controller, chat_backend):
    """Test the pair is retired once a delayed history fetch confirms it."""
    chat_backend.persist_after = 2
    await controller.select_conversation("conv-1")

    assert await controller.send_message("  Hello  ")
    await controller.wait_until_settled()

    view = controller.view()
    assert optimistic(view) == []
    assert [m.content for m in view.messages[-2:]] == ["Hello", chat_backend.reply]
    assert view.phase == SessionPhase.IDLE
    assert chat_backend.history_fetches("conv-1") == 3
    await controller.close()


@pytest.mark.asyncio
async def test_q1_budget_scenario(controller, chat_backend):
    """Test a streamed reply ends as exactly the two confirmed messages."""
    chat_backend.add_conversation("conv-q1", title="Budget")
    chat_backend.reply = "The budget is $2M."
    chat_backend.stream_body = sse(
        {"type": "chunk", "content": "The"},
        {"type": "chunk", "content": " budget"},
        {"type": "chunk", "content": " is $2M."},
        "[DONE]",
    )
    await controller.select_conversation("conv-q1")

    views = []
    controller.subscribe(views.append)
    await controller.send_message("What is the Q1 budget?")

    first = views[0]
    assert [(m.role.value, m.content) for m in first.messages] == [
        ("user", "What is the Q1 budget?"),
        ("assistant", ""),
    ]
    assert [v.messages[1].content for v in views[1:4]] == ["The", "The budget", "The budget is $2M."]

    await controller.wait_until_settled()
    for _ in range(3):
        view = controller.view()
        assert [(m.role.value, m.content) for m in view.messages] == [
            ("user", "What is the Q1 budget?"),
            ("assistant", "The budget is $2M."),
        ]
        assert not any(m.is_optimistic for m in view.messages)
    await controller.close()


@pytest.mark.asyncio
async def test_unconfirmed_pair_stays_after_settle_budget(controller, chat_backend):
    """Test an unconfirmed pair stays visible when refetches run out."""
    chat_backend.persist_after = 10
    await controller.select_conversation("conv-1")

    await controller.send_message("Hello")
    await controller.wait_until_settled()

    view = controller.view()
    assert [m.content for m in optimistic(view)] == ["Hello", chat_backend.reply]
    assert view.phase == SessionPhase.SETTLING
    assert not view.is_streaming
    assert chat_backend.history_fetches("conv-1") == 4
    await controller.close()


@pytest.mark.asyncio
async def test_chunks_are_visible_while_streaming(controller, chat_backend):
    """Test partial replies show up before the stream ends."""
    chat_backend.stream_gate = asyncio.Event()
    await controller.select_conversation("conv-1")

    send = asyncio.ensure_future(controller.send_message("Hello"))
    await until(lambda: any(m.content == "Hello" for m in optimistic(controller.view())[1:]))

    view = controller.view()
    assert view.is_streaming
    assert view.phase == SessionPhase.SENDING
    assert [m.content for m in optimistic(view)] == ["Hello", "Hello"]

    chat_backend.stream_gate.set()
    assert await send
    await controller.wait_until_settled()
    assert optimistic(controller.view()) == []
    await controller.close()


@pytest.mark.asyncio
async def test_stop_discards_partial_reply(controller, chat_backend):
    """Test stopping a stream drops the pair and schedules no refetch."""
    chat_backend.stream_gate = asyncio.Event()
    await controller.select_conversation("conv-1")

    send = asyncio.ensure_future(controller.send_message("Hello"))
    await until(lambda: controller.view().is_streaming and optimistic(controller.view())[1].content)

    assert await controller.stop_stream()
    view = controller.view()
    assert optimistic(view) == []
    assert view.phase == SessionPhase.IDLE
    assert await send
    assert controller.session.refetch is None
    assert not await controller.stop_stream()

    chat_backend.stream_gate.set()
    await controller.close()


@pytest.mark.asyncio
async def test_switching_isolates_running_stream(controller, chat_backend):
    """Test a stream for a conversation left behind never reaches the new one."""
    chat_backend.stream_gate = asyncio.Event()
    await controller.select_conversation("conv-1")
    send = asyncio.ensure_future(controller.send_message("Hello"))
    await until(lambda: controller.view().is_streaming and optimistic(controller.view())[1].content)

    view = await controller.select_conversation("conv-2")
    assert view.conversation_id == "conv-2"
    assert optimistic(view) == []
    assert not view.is_streaming

    chat_backend.stream_gate.set()
    await send

    view = controller.view()
    assert view.conversation_id == "conv-2"
    assert [m.content for m in view.messages] == ["Question 0", "Answer 0"]
    assert optimistic(view) == []
    await controller.close()


@pytest.mark.asyncio
async def test_stream_error_clears_overlay(controller, chat_backend):
    """Test a failed send shows the error instead of the pair."""
    chat_backend.stream_status = 500
    chat_backend.stream_error = "Model overloaded"
    await controller.select_conversation("conv-1")

    assert await controller.send_message("Hello")
    view = controller.view()
    assert view.error == "Model overloaded"
    assert optimistic(view) == []
    assert view.phase == SessionPhase.IDLE

    controller.clear_error()
    assert controller.view().error is None
    await controller.close()


@pytest.mark.asyncio
async def test_error_event_mid_stream(controller, chat_backend):
    chat_backend.stream_body = sse({"content": "Partial"}, {"type": "error", "error": "Tool call failed"})
    await controller.select_conversation("conv-1")

    await controller.send_message("Hello")
    view = controller.view()
    assert view.error == "Tool call failed"
    assert optimistic(view) == []
    await controller.close()


@pytest.mark.asyncio
async def test_unauthorized_stream_requires_login(controller, chat_backend):
    chat_backend.stream_status = 401
    await controller.select_conversation("conv-1")

    await controller.send_message("Hello")
    view = controller.view()
    assert view.auth_required
    assert optimistic(view) == []
    await controller.close()


@pytest.mark.asyncio
async def test_blank_message_is_ignored(controller, chat_backend):
    """Test blank sends and sends without a selection do nothing."""
    assert not await controller.send_message("Hello")

    await controller.select_conversation("conv-1")
    assert not await controller.send_message("   ")
    assert not await controller.send_message("")
    assert chat_backend.count("POST", "/chat") == 0
    assert optimistic(controller.view()) == []
    await controller.close()


@pytest.mark.asyncio
async def test_edit_refetches_history(controller, chat_backend):
    """Test editing a message invalidates and reloads history."""
    await controller.select_conversation("conv-1")

    response = await controller.edit_message("turn-1:user", "Edited question")
    assert response is not None
    assert chat_backend.history_fetches("conv-1") == 2
    assert controller.view().messages[0].content == "Edited question"
    await controller.close()


@pytest.mark.asyncio
async def test_regenerate_refetches_history(controller, chat_backend):
    await controller.select_conversation("conv-1")

    response = await controller.regenerate_message("turn-2:assistant")
    assert response.content == "Regenerated answer"
    assert controller.view().messages[-1].content == "Regenerated answer"
    await controller.close()


@pytest.mark.asyncio
async def test_optimistic_messages_cannot_be_edited(controller, chat_backend):
    await controller.select_conversation("conv-1")

    assert await controller.edit_message("temp-abc-user", "Edited") is None
    assert await controller.regenerate_message("temp-abc-assistant") is None
    assert len([r for r in chat_backend.requests if r.method == "PUT"]) == 0
    await controller.close()


@pytest.mark.asyncio
async def test_failed_edit_sets_error(controller):
    await controller.select_conversation("conv-1")

    assert await controller.edit_message("turn-99:user", "Edited") is None
    assert controller.view().error == "Message not found"
    await controller.close()


@pytest.mark.asyncio
async def test_history_failure_surfaces_error(controller, chat_backend):
    """Test a history load that keeps failing is reported in the view."""
    chat_backend.history_failures = 10
    view = await controller.select_conversation("conv-1")

    assert view.error is not None
    assert view.messages == []
    await controller.close()


@pytest.mark.asyncio
async def test_listeners_receive_views(controller):
    """Test subscribers see streaming views until they unsubscribe."""
    views = []
    unsubscribe = controller.subscribe(views.append)
    await controller.select_conversation("conv-1")
    await controller.send_message("Hello")
    await controller.wait_until_settled()

    assert any(view.is_streaming for view in views)
    assert views[-1].phase == SessionPhase.IDLE

    unsubscribe()
    seen = len(views)
    await controller.select_conversation("conv-2")
    assert len(views) == seen
    await controller.close()
