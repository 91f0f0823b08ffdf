"""
Chat state for the client: an append-only, id-keyed log of messages.

Every value here is frozen. Transitions are plain functions that take a ChatState
and return a new one; a changed Message is always a new value bound to the same id.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional, Tuple
from uuid import uuid4

DEFAULT_TIMEOUT_FAST = 30.0
DEFAULT_TIMEOUT_SLOW = 60.0


class InvalidTransition(ValueError):
    pass


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class AttemptStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    # Transport failure (connection error or non-success response).
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not AttemptStatus.RUNNING


@dataclass(frozen=True)
class AttemptRecord:
    model: str
    start: float
    elapsed: float = 0.0
    first_byte_elapsed: Optional[float] = None
    status: AttemptStatus = AttemptStatus.RUNNING


@dataclass(frozen=True)
class Message:
    id: str
    role: Role
    text: str = ""
    html: Optional[str] = None
    attempts: Tuple[AttemptRecord, ...] = ()
    streaming: bool = False
    route: Optional[str] = None
    model: Optional[str] = None
    latency_ms: Optional[int] = None
    timed_out: bool = False
    cancelled: bool = False

    @property
    def running_attempts(self) -> int:
        return sum(1 for a in self.attempts if a.status is AttemptStatus.RUNNING)


@dataclass(frozen=True)
class ChatState:
    messages: Tuple[Message, ...] = ()
    timeout_fast: float = DEFAULT_TIMEOUT_FAST
    timeout_slow: float = DEFAULT_TIMEOUT_SLOW
    sending: bool = False
    send_error: str = ""

    def index_of(self, message_id: Optional[str]) -> int:
        if not message_id:
            return -1
        for i in range(len(self.messages) - 1, -1, -1):
            if self.messages[i].id == message_id:
                return i
        return -1

    def find(self, message_id: Optional[str]) -> Optional[Message]:
        i = self.index_of(message_id)
        return self.messages[i] if i >= 0 else None


def new_message_id(role: Role) -> str:
    return "%s-%s" % (role.value, uuid4().hex[:12])


def _replace_at(state: ChatState, index: int, message: Message) -> ChatState:
    messages = state.messages[:index] + (message,) + state.messages[index + 1:]
    return replace(state, messages=messages)


def append_message(state: ChatState, message: Message) -> ChatState:
    return replace(state, messages=state.messages + (message,))


def append_user_and_placeholder(
    state: ChatState,
    prompt: str,
    *,
    route: Optional[str] = None,
    model: Optional[str] = None,
) -> Tuple[ChatState, str]:
    """
    Append the user's prompt and an empty, streaming assistant placeholder.
    Returns the new state and the placeholder's id.
    """
    user = Message(id=new_message_id(Role.USER), role=Role.USER, text=prompt)
    placeholder = Message(
        id=new_message_id(Role.ASSISTANT),
        role=Role.ASSISTANT,
        streaming=True,
        route=route,
        model=model,
    )
    return replace(state, messages=state.messages + (user, placeholder)), placeholder.id


def _resolve_target(state: ChatState, message_id: Optional[str], index: Optional[int]) -> int:
    i = state.index_of(message_id)
    if i >= 0:
        return i
    # Positions shift under concurrent updates; only a fallback.
    if index is not None and 0 <= index < len(state.messages):
        return index
    for j in range(len(state.messages) - 1, -1, -1):
        m = state.messages[j]
        if m.role is Role.ASSISTANT and m.streaming:
            return j
    return -1


def append_chunk(
    state: ChatState,
    fragment: str,
    *,
    message_id: Optional[str] = None,
    index: Optional[int] = None,
) -> ChatState:
    if not fragment:
        return state
    i = _resolve_target(state, message_id, index)
    if i < 0:
        return state
    m = state.messages[i]
    return _replace_at(state, i, replace(m, text=m.text + fragment))


def update_message(state: ChatState, message_id: str, **changes: Any) -> ChatState:
    i = state.index_of(message_id)
    if i < 0:
        return state
    if "id" in changes or "role" in changes:
        raise InvalidTransition("message id and role are fixed at creation")
    return _replace_at(state, i, replace(state.messages[i], **changes))


def update_attempt(state: ChatState, message_id: str, index: int, **changes: Any) -> ChatState:
    """
    Replace the attempt record at `index` with the given field changes, creating the
    slot when `index` is one past the end. Terminal records are immutable and the
    list never shrinks or skips an index.
    """
    i = state.index_of(message_id)
    if i < 0:
        return state
    m = state.messages[i]
    if m.role is not Role.ASSISTANT:
        raise InvalidTransition("only assistant messages carry attempts")

    attempts = m.attempts
    if index < 0 or index > len(attempts):
        raise InvalidTransition("attempt index %d out of range (have %d)" % (index, len(attempts)))

    if index == len(attempts):
        if "model" not in changes or "start" not in changes:
            raise InvalidTransition("a new attempt needs model and start")
        record = AttemptRecord(**changes)
        return _replace_at(state, i, replace(m, attempts=attempts + (record,)))

    current = attempts[index]
    if current.status.is_terminal:
        raise InvalidTransition("attempt %d already settled as %s" % (index, current.status.value))
    record = replace(current, **changes)
    updated = attempts[:index] + (record,) + attempts[index + 1:]
    return _replace_at(state, i, replace(m, attempts=updated))


def set_timeouts(state: ChatState, *, fast: Optional[float] = None, slow: Optional[float] = None) -> ChatState:
    return replace(
        state,
        timeout_fast=float(fast) if fast is not None else state.timeout_fast,
        timeout_slow=float(slow) if slow is not None else state.timeout_slow,
    )


def clear_all(state: ChatState) -> ChatState:
    """Drop every message; timeout preferences survive."""
    return ChatState(timeout_fast=state.timeout_fast, timeout_slow=state.timeout_slow)
