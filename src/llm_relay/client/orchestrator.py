from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, AsyncContextManager, Callable, List, Optional, Protocol, Tuple, cast

from llm_relay.client.state import (
    AttemptRecord,
    AttemptStatus,
    ChatState,
    Message,
    Role,
    append_chunk,
    append_message,
    append_user_and_placeholder,
    clear_all,
    new_message_id,
    set_timeouts,
    update_attempt,
    update_message,
)
from llm_relay.client.transport import StreamReply
from llm_relay.core.errors import BackendUnavailable, PlanExhausted, ValidationError
from llm_relay.core.events import CHAT_CHUNK, CHAT_UPDATED, TURN_NOTICE, TURN_SETTLED, EventBus
from llm_relay.core.logging import get_logger
from llm_relay.core.markup import sanitize_markup, strip_trailing_artifacts
from llm_relay.core.routes import ModelCatalog, ModelInfo, Route

STOPPED_MARKER = "\n[stopped by user]"


class Transport(Protocol):
    def stream(self, route_key: str, prompt: str) -> AsyncContextManager[StreamReply]: ...


class TurnState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    USER_CANCELLED = "user_cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnState.SUCCEEDED, TurnState.EXHAUSTED, TurnState.USER_CANCELLED)


class CancelCause(str, Enum):
    TIMEOUT = "timeout"
    USER = "user"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"


class AttemptHandle:
    """
    Cancellation signal for one attempt, shared by its transport task and its timer.
    The first cause to fire is the one recorded; later calls are ignored.
    """

    def __init__(self) -> None:
        self.cause: Optional[CancelCause] = None
        self._task: Optional["asyncio.Task[Any]"] = None

    @property
    def closed(self) -> bool:
        return self.cause is not None

    def bind(self, task: "asyncio.Task[Any]") -> None:
        self._task = task

    def cancel(self, cause: CancelCause) -> bool:
        if self.cause is not None:
            return False
        if self._task is not None and self._task.done():
            # The attempt already finished; nothing left to cancel.
            return False
        self.cause = cause
        if self._task is not None:
            self._task.cancel()
        return True


@dataclass
class TurnContext:
    """
    Everything one user submission owns while it is in flight. Created per turn,
    released when the turn settles, never shared across turns.
    """

    selected: Route
    prompt: str
    message_id: str = ""
    plan: List[Route] = field(default_factory=list)
    state: TurnState = TurnState.IDLE
    attempt_index: int = -1
    handle: Optional[AttemptHandle] = None
    timer: Optional[asyncio.TimerHandle] = None
    cancelled_by_user: bool = False
    any_timed_out: bool = False
    settled: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def has_next(self) -> bool:
        return self.attempt_index + 1 < len(self.plan)

    def stop(self) -> None:
        self.cancelled_by_user = True
        if self.handle is not None:
            self.handle.cancel(CancelCause.USER)

    def clear_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def release(self) -> None:
        self.clear_timer()
        self.handle = None
        self.settled.set()


@dataclass(frozen=True)
class TurnResult:
    state: TurnState
    message_id: str
    message: Optional[Message]

    @property
    def attempts(self) -> Tuple[AttemptRecord, ...]:
        return self.message.attempts if self.message is not None else ()


def _secs(value: float) -> float:
    return round(max(0.0, value), 3)


class AttemptOrchestrator:
    """
    Drives one turn at a time through its plan of backend attempts.

    Plan: an explicit route is tried once; `auto` picks a random primary and keeps
    the other backend as the single fallback. Each attempt gets its own handle and
    timer. A timeout advances to the next planned attempt, a user stop ends the turn,
    a transport failure advances, success ends the turn.
    """

    def __init__(
        self,
        *,
        transport: Transport,
        catalog: ModelCatalog,
        events: Optional[EventBus] = None,
        rng: Optional[random.Random] = None,
        min_timeout_seconds: float = 1.0,
        state: Optional[ChatState] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if min_timeout_seconds <= 0:
            raise ValueError("min_timeout_seconds must be positive")
        self._transport = transport
        self.catalog = catalog
        self._events = events or EventBus()
        self._rng = rng or random.Random()
        self._min_timeout = float(min_timeout_seconds)
        self._state = state or ChatState()
        self._clock = clock
        self._turn: Optional[TurnContext] = None
        self._log = get_logger(component="orchestrator")

    @property
    def state(self) -> ChatState:
        return self._state

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def busy(self) -> bool:
        return self._turn is not None

    def build_plan(self, selected: Route) -> List[Route]:
        if selected is Route.AUTO:
            primary = Route.FAST if self._rng.random() < 0.5 else Route.SLOW
            return [primary, primary.other()]
        return [selected]

    def timeout_for(self, route: Route) -> float:
        raw = self._state.timeout_fast if route is Route.FAST else self._state.timeout_slow
        return max(self._min_timeout, float(raw or 0))

    async def set_timeouts(self, *, fast: Optional[float] = None, slow: Optional[float] = None) -> None:
        await self._apply(set_timeouts(self._state, fast=fast, slow=slow))

    def stop(self) -> None:
        """External stop: cancels the running attempt and ends the turn."""
        if self._turn is not None:
            self._log.info("turn_cancelled", message_id=self._turn.message_id)
            self._turn.stop()

    async def clear(self) -> None:
        await self._settle_previous()
        await self._apply(clear_all(self._state))

    async def submit(self, prompt: str, route: Route) -> TurnResult:
        """
        Run one turn to settlement. Returns on success or user stop; raises
        PlanExhausted when every planned attempt timed out or failed.
        """
        text = (prompt or "").strip()
        if not text:
            raise ValidationError("Prompt is required", "MISSING_PROMPT")

        await self._settle_previous()
        turn = TurnContext(selected=route, prompt=text)
        self._turn = turn
        try:
            await self._apply(replace(self._state, sending=True, send_error=""))

            turn.state = TurnState.PLANNING
            turn.plan = self.build_plan(route)
            first = self.catalog.info(turn.plan[0])
            state, turn.message_id = append_user_and_placeholder(
                self._state, text, route=first.route, model=first.name
            )
            await self._apply(state)

            turn.state = TurnState.ATTEMPTING
            turn.attempt_index = 0
            while not turn.state.is_terminal:
                outcome = await self._run_attempt(turn)
                await self._advance(turn, outcome)

            return await self._settle(turn)
        finally:
            turn.release()
            if self._turn is turn:
                self._turn = None
            self._state = replace(self._state, sending=False)

    async def _settle_previous(self) -> None:
        # Re-check after every wait: another caller may have claimed the slot meanwhile.
        while self._turn is not None:
            previous = self._turn
            previous.stop()
            await previous.settled.wait()

    async def _apply(self, state: ChatState, *, topic: str = CHAT_UPDATED, **payload: Any) -> None:
        self._state = state
        await self._events.publish(topic, payload)

    async def _notice(self, text: str) -> None:
        await self._events.publish(TURN_NOTICE, {"text": text})

    # -- attempts -----------------------------------------------------------

    async def _run_attempt(self, turn: TurnContext) -> AttemptOutcome:
        index = turn.attempt_index
        route = turn.plan[index]
        info = self.catalog.info(route)
        loop = asyncio.get_running_loop()
        started = loop.time()

        await self._apply(
            update_attempt(
                self._state,
                turn.message_id,
                index,
                model=info.name,
                start=self._clock(),
                elapsed=0.0,
                first_byte_elapsed=None,
                status=AttemptStatus.RUNNING,
            )
        )
        await self._apply(
            update_message(
                self._state,
                turn.message_id,
                streaming=True,
                route=info.route,
                model=info.name,
                timed_out=False,
                cancelled=False,
            )
        )

        handle = AttemptHandle()
        turn.handle = handle
        if turn.cancelled_by_user:
            handle.cancel(CancelCause.USER)

        timeout = self.timeout_for(route)
        self._log.info("attempt_started", route=info.route, model=info.name, attempt=index, timeout=timeout)

        result: Optional[Tuple[str, Optional[float]]] = None
        failure: Optional[BackendUnavailable] = None
        try:
            if not handle.closed:
                turn.timer = loop.call_later(timeout, handle.cancel, CancelCause.TIMEOUT)
                task = asyncio.ensure_future(self._consume(turn, handle, index, info, started))
                handle.bind(task)
                try:
                    result = await task
                except asyncio.CancelledError:
                    if handle.cause is None:
                        # The turn itself is being cancelled from outside.
                        task.cancel()
                        raise
                except BackendUnavailable as e:
                    failure = e
        finally:
            turn.clear_timer()
            turn.handle = None

        wall = loop.time() - started
        if handle.cause is CancelCause.TIMEOUT:
            return await self._attempt_timed_out(turn, index, info, wall)
        if handle.cause is CancelCause.USER:
            return await self._attempt_cancelled(turn, index, info, wall)
        if failure is not None:
            return await self._attempt_failed(turn, index, info, wall, failure)
        reply_model, first_byte = cast(Tuple[str, Optional[float]], result)
        return await self._attempt_succeeded(turn, index, info, wall, reply_model, first_byte)

    async def _consume(
        self,
        turn: TurnContext,
        handle: AttemptHandle,
        index: int,
        info: ModelInfo,
        started: float,
    ) -> Tuple[str, Optional[float]]:
        loop = asyncio.get_running_loop()
        first_byte: Optional[float] = None
        async with self._transport.stream(info.route, turn.prompt) as reply:
            async for fragment in reply.chunks:
                # Fragments that land after a cancel are discarded, never applied.
                if handle.closed:
                    break
                if not fragment:
                    continue
                if first_byte is None and fragment.strip():
                    first_byte = loop.time() - started
                    self._log.info("first_byte", model=info.name, attempt=index, seconds=_secs(first_byte))
                    await self._apply(
                        update_attempt(
                            self._state,
                            turn.message_id,
                            index,
                            first_byte_elapsed=_secs(first_byte),
                            elapsed=_secs(first_byte),
                        )
                    )
                    if handle.closed:
                        break
                await self._apply(
                    append_chunk(self._state, fragment, message_id=turn.message_id),
                    topic=CHAT_CHUNK,
                    message_id=turn.message_id,
                    fragment=fragment,
                )
            return (reply.model or info.name), first_byte

    async def _attempt_succeeded(
        self,
        turn: TurnContext,
        index: int,
        info: ModelInfo,
        wall: float,
        reply_model: str,
        first_byte: Optional[float],
    ) -> AttemptOutcome:
        elapsed = first_byte if first_byte is not None else wall
        await self._apply(
            update_attempt(
                self._state,
                turn.message_id,
                index,
                model=reply_model,
                elapsed=_secs(elapsed),
                first_byte_elapsed=_secs(first_byte) if first_byte is not None else None,
                status=AttemptStatus.SUCCESS,
            )
        )
        message = self._state.find(turn.message_id)
        text = strip_trailing_artifacts(message.text if message else "", reply_model)
        await self._apply(
            update_message(
                self._state,
                turn.message_id,
                text=text,
                html=sanitize_markup(text),
                streaming=False,
                route=info.route,
                model=reply_model,
                latency_ms=int(wall * 1000),
            )
        )
        self._log.info("attempt_succeeded", model=reply_model, attempt=index, elapsed=_secs(elapsed))
        return AttemptOutcome.SUCCESS

    async def _attempt_timed_out(self, turn: TurnContext, index: int, info: ModelInfo, wall: float) -> AttemptOutcome:
        turn.any_timed_out = True
        await self._apply(
            update_attempt(
                self._state, turn.message_id, index, elapsed=_secs(wall), status=AttemptStatus.TIMED_OUT
            )
        )
        if turn.has_next:
            marker = "\n[%s timed out - switching to alternate model]" % info.name
            notice = "%s timed out - trying fallback model" % info.name
        else:
            marker = "\n[%s timed out - request cancelled]" % info.name
            notice = "%s timed out - request cancelled" % info.name
        message = self._state.find(turn.message_id)
        await self._apply(
            update_message(
                self._state,
                turn.message_id,
                text=(message.text if message else "") + marker,
                timed_out=True,
                streaming=False,
            )
        )
        self._log.warning("attempt_timed_out", model=info.name, attempt=index, elapsed=_secs(wall))
        await self._notice(notice)
        return AttemptOutcome.TIMED_OUT

    async def _attempt_cancelled(self, turn: TurnContext, index: int, info: ModelInfo, wall: float) -> AttemptOutcome:
        await self._apply(
            update_attempt(
                self._state, turn.message_id, index, elapsed=_secs(wall), status=AttemptStatus.CANCELLED
            )
        )
        message = self._state.find(turn.message_id)
        await self._apply(
            update_message(
                self._state,
                turn.message_id,
                text=(message.text if message else "") + STOPPED_MARKER,
                cancelled=True,
                timed_out=False,
                streaming=False,
            )
        )
        return AttemptOutcome.CANCELLED

    async def _attempt_failed(
        self,
        turn: TurnContext,
        index: int,
        info: ModelInfo,
        wall: float,
        error: BackendUnavailable,
    ) -> AttemptOutcome:
        await self._apply(
            update_attempt(
                self._state, turn.message_id, index, elapsed=_secs(wall), status=AttemptStatus.FAILED
            )
        )
        await self._apply(update_message(self._state, turn.message_id, streaming=False))
        await self._apply(
            append_message(
                self._state,
                Message(id=new_message_id(Role.ASSISTANT), role=Role.ASSISTANT, text="Error: %s" % error.message),
            )
        )
        self._log.warning("attempt_failed", model=info.name, attempt=index, error=error.message)
        if turn.has_next:
            await self._notice("%s failed - trying fallback model" % info.name)
        return AttemptOutcome.FAILED

    # -- transitions --------------------------------------------------------

    async def _advance(self, turn: TurnContext, outcome: AttemptOutcome) -> None:
        if outcome is AttemptOutcome.SUCCESS:
            turn.state = TurnState.SUCCEEDED
        elif outcome is AttemptOutcome.CANCELLED:
            turn.state = TurnState.USER_CANCELLED
        elif not turn.has_next:
            turn.state = TurnState.EXHAUSTED
        elif outcome is AttemptOutcome.TIMED_OUT:
            await self._preseed_next(turn)
            turn.attempt_index += 1
        else:
            turn.attempt_index += 1

    async def _preseed_next(self, turn: TurnContext) -> None:
        # Show the fallback as running before its request goes out.
        nxt = self.catalog.info(turn.plan[turn.attempt_index + 1])
        await self._apply(
            update_attempt(
                self._state,
                turn.message_id,
                turn.attempt_index + 1,
                model=nxt.name,
                start=self._clock(),
                elapsed=0.0,
                status=AttemptStatus.RUNNING,
            )
        )
        await self._apply(
            update_message(self._state, turn.message_id, model=nxt.name, route=nxt.route, streaming=True)
        )

    async def _settle(self, turn: TurnContext) -> TurnResult:
        result = TurnResult(state=turn.state, message_id=turn.message_id, message=self._state.find(turn.message_id))
        self._log.info("turn_settled", status=turn.state.value, attempts=len(result.attempts))

        if turn.state is TurnState.EXHAUSTED:
            error = PlanExhausted(timed_out=turn.any_timed_out)
            await self._apply(replace(self._state, send_error=str(error)))
            await self._events.publish(TURN_SETTLED, {"state": turn.state.value, "error": str(error)})
            raise error

        await self._events.publish(TURN_SETTLED, {"state": turn.state.value, "message_id": turn.message_id})
        return result
