from dataclasses import FrozenInstanceError

import pytest

from llm_relay.client.state import (
    AttemptStatus,
    ChatState,
    InvalidTransition,
    Role,
    append_chunk,
    append_user_and_placeholder,
    clear_all,
    set_timeouts,
    update_attempt,
    update_message,
)


def _with_placeholder() -> tuple:
    state, mid = append_user_and_placeholder(ChatState(), "hello", route="a", model="MODEL_A")
    return state, mid


def test_placeholder_follows_user_message() -> None:
    state, mid = _with_placeholder()
    assert [m.role for m in state.messages] == [Role.USER, Role.ASSISTANT]
    assert state.messages[1].id == mid
    assert state.messages[1].streaming is True
    assert state.messages[0].text == "hello"


def test_transitions_return_new_values() -> None:
    state, mid = _with_placeholder()
    after = append_chunk(state, "Hi", message_id=mid)
    assert state.messages[1].text == ""
    assert after.messages[1].text == "Hi"
    with pytest.raises(FrozenInstanceError):
        after.messages[1].text = "x"  # type: ignore[misc]


def test_append_chunk_falls_back_to_index_then_streaming_assistant() -> None:
    state, mid = _with_placeholder()
    by_index = append_chunk(state, "x", message_id="missing", index=1)
    assert by_index.messages[1].text == "x"
    by_stream = append_chunk(state, "y", message_id="missing")
    assert by_stream.messages[1].text == "y"
    assert append_chunk(state, "", message_id=mid) is state


def test_update_message_keeps_identity_fields() -> None:
    state, mid = _with_placeholder()
    assert update_message(state, "nope", text="x") is state
    with pytest.raises(InvalidTransition):
        update_message(state, mid, role=Role.USER)


def test_attempt_slots_are_append_only() -> None:
    state, mid = _with_placeholder()
    state = update_attempt(state, mid, 0, model="MODEL_A", start=1.0)
    with pytest.raises(InvalidTransition):
        update_attempt(state, mid, 2, model="MODEL_B", start=2.0)

    state = update_attempt(state, mid, 0, status=AttemptStatus.TIMED_OUT, elapsed=30.0)
    state = update_attempt(state, mid, 1, model="MODEL_B", start=31.0)
    attempts = state.find(mid).attempts
    assert [a.status for a in attempts] == [AttemptStatus.TIMED_OUT, AttemptStatus.RUNNING]
    assert state.find(mid).running_attempts == 1


def test_terminal_attempt_is_immutable() -> None:
    state, mid = _with_placeholder()
    state = update_attempt(state, mid, 0, model="MODEL_A", start=1.0)
    state = update_attempt(state, mid, 0, status=AttemptStatus.SUCCESS)
    with pytest.raises(InvalidTransition):
        update_attempt(state, mid, 0, status=AttemptStatus.CANCELLED)


def test_new_attempt_requires_model_and_start() -> None:
    state, mid = _with_placeholder()
    with pytest.raises(InvalidTransition):
        update_attempt(state, mid, 0, status=AttemptStatus.RUNNING)


def test_user_messages_carry_no_attempts() -> None:
    state, _ = _with_placeholder()
    with pytest.raises(InvalidTransition):
        update_attempt(state, state.messages[0].id, 0, model="m", start=0.0)


def test_clear_keeps_timeouts() -> None:
    state, _ = _with_placeholder()
    state = set_timeouts(state, fast=5, slow=9)
    cleared = clear_all(state)
    assert cleared.messages == ()
    assert (cleared.timeout_fast, cleared.timeout_slow) == (5.0, 9.0)
