import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List

import pytest

from llm_relay.client.orchestrator import STOPPED_MARKER, AttemptOrchestrator, TurnState
from llm_relay.client.state import AttemptStatus, ChatState, Role
from llm_relay.client.transport import StreamReply
from llm_relay.core.errors import (
    FAILURE_EXHAUSTED_MESSAGE,
    TIMEOUT_EXHAUSTED_MESSAGE,
    BackendUnavailable,
    PlanExhausted,
    ValidationError,
)
from llm_relay.core.events import CHAT_CHUNK, CHAT_UPDATED, TURN_NOTICE
from llm_relay.core.routes import FALLBACK_CATALOG, Route


@dataclass
class Script:
    fragments: List[str] = field(default_factory=list)
    model: str = ""
    hang: bool = False
    fail: bool = False


class FakeTransport:
    def __init__(self, scripts: Dict[str, Script]) -> None:
        self.scripts = scripts
        self.calls: List[str] = []

    @asynccontextmanager
    async def stream(self, route_key: str, prompt: str) -> AsyncIterator[StreamReply]:
        self.calls.append(route_key)
        script = self.scripts[route_key]
        if script.fail:
            raise BackendUnavailable("Request failed (503): down", status_code=503)
        yield StreamReply(model=script.model, chunks=self._chunks(script))

    async def _chunks(self, script: Script) -> AsyncIterator[str]:
        for f in script.fragments:
            await asyncio.sleep(0)
            yield f
        if script.hang:
            await asyncio.sleep(3600)


class FastFirst:
    def random(self) -> float:
        return 0.1


def _orchestrator(transport: FakeTransport, *, fast: float = 5.0, slow: float = 5.0) -> AttemptOrchestrator:
    return AttemptOrchestrator(
        transport=transport,
        catalog=FALLBACK_CATALOG,
        rng=FastFirst(),  # type: ignore[arg-type]
        min_timeout_seconds=0.01,
        state=ChatState(timeout_fast=fast, timeout_slow=slow),
    )


def _record(orch: AttemptOrchestrator, topic: str, key: str) -> List[str]:
    seen: List[str] = []

    async def handler(evt):
        seen.append(evt.payload[key])

    orch.events.subscribe(topic, handler)
    return seen


@pytest.mark.asyncio
async def test_explicit_route_single_success() -> None:
    transport = FakeTransport({"a": Script(fragments=["Hel", "lo", "\n"], model="MODEL_A")})
    orch = _orchestrator(transport)

    result = await orch.submit("hello", Route.FAST)

    assert result.state is TurnState.SUCCEEDED
    assert transport.calls == ["a"]
    assert [a.status for a in result.attempts] == [AttemptStatus.SUCCESS]
    assert result.attempts[0].model == "MODEL_A"
    assert result.attempts[0].first_byte_elapsed is not None
    assert result.message.text == "Hello"
    assert result.message.html == "<p>Hello</p>"
    assert result.message.streaming is False
    assert orch.state.sending is False
    assert not orch.busy


@pytest.mark.asyncio
async def test_auto_timeout_switches_to_alternate() -> None:
    transport = FakeTransport(
        {"a": Script(hang=True), "b": Script(fragments=["ok"], model="MODEL_B")}
    )
    orch = _orchestrator(transport, fast=0.05)
    notices = _record(orch, TURN_NOTICE, "text")

    result = await orch.submit("hello", Route.AUTO)

    assert result.state is TurnState.SUCCEEDED
    assert transport.calls == ["a", "b"]
    assert [a.status for a in result.attempts] == [AttemptStatus.TIMED_OUT, AttemptStatus.SUCCESS]
    assert [a.model for a in result.attempts] == ["MODEL_A", "MODEL_B"]
    assert "[MODEL_A timed out - switching to alternate model]" in result.message.text
    assert result.message.text.endswith("ok")
    assert result.message.model == "MODEL_B"
    assert notices == ["MODEL_A timed out - trying fallback model"]


@pytest.mark.asyncio
async def test_stop_mid_stream_cancels_single_attempt() -> None:
    transport = FakeTransport({"a": Script(fragments=["partial"], hang=True)})
    orch = _orchestrator(transport)
    fragments = _record(orch, CHAT_CHUNK, "fragment")

    task = asyncio.create_task(orch.submit("hello", Route.FAST))
    while not fragments:
        await asyncio.sleep(0.001)
    orch.stop()
    result = await asyncio.wait_for(task, timeout=2)

    assert result.state is TurnState.USER_CANCELLED
    assert [a.status for a in result.attempts] == [AttemptStatus.CANCELLED]
    assert result.message.text == "partial" + STOPPED_MARKER
    assert result.message.cancelled is True
    assert fragments == ["partial"]


@pytest.mark.asyncio
async def test_stop_in_auto_mode_does_not_fall_back() -> None:
    transport = FakeTransport({"a": Script(fragments=["x"], hang=True), "b": Script(fragments=["y"])})
    orch = _orchestrator(transport)
    fragments = _record(orch, CHAT_CHUNK, "fragment")

    task = asyncio.create_task(orch.submit("hello", Route.AUTO))
    while not fragments:
        await asyncio.sleep(0.001)
    orch.stop()
    result = await asyncio.wait_for(task, timeout=2)

    assert result.state is TurnState.USER_CANCELLED
    assert transport.calls == ["a"]
    assert len(result.attempts) == 1


@pytest.mark.asyncio
async def test_all_attempts_timed_out() -> None:
    transport = FakeTransport({"a": Script(hang=True), "b": Script(hang=True)})
    orch = _orchestrator(transport, fast=0.02, slow=0.02)

    with pytest.raises(PlanExhausted) as exc:
        await orch.submit("hello", Route.AUTO)

    assert exc.value.timed_out is True
    assert str(exc.value) == TIMEOUT_EXHAUSTED_MESSAGE
    assert orch.state.send_error == TIMEOUT_EXHAUSTED_MESSAGE
    message = orch.state.messages[-1]
    assert [a.status for a in message.attempts] == [AttemptStatus.TIMED_OUT, AttemptStatus.TIMED_OUT]
    assert message.text.endswith("[MODEL_B timed out - request cancelled]")


@pytest.mark.asyncio
async def test_transport_failure_without_fallback() -> None:
    transport = FakeTransport({"a": Script(fail=True)})
    orch = _orchestrator(transport)

    with pytest.raises(PlanExhausted) as exc:
        await orch.submit("hello", Route.FAST)

    assert exc.value.timed_out is False
    assert str(exc.value) == FAILURE_EXHAUSTED_MESSAGE
    placeholder = orch.state.messages[1]
    assert [a.status for a in placeholder.attempts] == [AttemptStatus.FAILED]
    assert orch.state.messages[-1].role is Role.ASSISTANT
    assert orch.state.messages[-1].text.startswith("Error: Request failed (503)")


@pytest.mark.asyncio
async def test_transport_failure_falls_back_in_auto_mode() -> None:
    transport = FakeTransport({"a": Script(fail=True), "b": Script(fragments=["fine"], model="MODEL_B")})
    orch = _orchestrator(transport)

    result = await orch.submit("hello", Route.AUTO)

    assert result.state is TurnState.SUCCEEDED
    assert [a.status for a in result.attempts] == [AttemptStatus.FAILED, AttemptStatus.SUCCESS]
    assert result.message.text == "fine"


@pytest.mark.asyncio
async def test_new_submit_cancels_previous_turn() -> None:
    transport = FakeTransport({"a": Script(fragments=["x"], hang=True), "b": Script(fragments=["y"])})
    orch = _orchestrator(transport)
    fragments = _record(orch, CHAT_CHUNK, "fragment")

    first = asyncio.create_task(orch.submit("one", Route.FAST))
    while not fragments:
        await asyncio.sleep(0.001)
    second = await orch.submit("two", Route.SLOW)
    first_result = await asyncio.wait_for(first, timeout=2)

    assert first_result.state is TurnState.USER_CANCELLED
    assert second.state is TurnState.SUCCEEDED
    assert first_result.message_id != second.message_id
    assert [m.role for m in orch.state.messages] == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]


@pytest.mark.asyncio
async def test_empty_prompt_is_rejected() -> None:
    orch = _orchestrator(FakeTransport({}))
    with pytest.raises(ValidationError):
        await orch.submit("   ", Route.AUTO)
    assert orch.state.messages == ()


def test_timeout_floor_and_plan() -> None:
    orch = _orchestrator(FakeTransport({}), fast=0, slow=3)
    assert orch.timeout_for(Route.FAST) == 0.01
    assert orch.timeout_for(Route.SLOW) == 3.0
    assert orch.build_plan(Route.AUTO) == [Route.FAST, Route.SLOW]
    assert orch.build_plan(Route.SLOW) == [Route.SLOW]


class LiveStreams:
    """Counts concurrently open streams; "a" hangs, "b" answers at once."""

    def __init__(self) -> None:
        self.live = 0
        self.peak = 0
        self.calls: List[str] = []

    @asynccontextmanager
    async def stream(self, route_key: str, prompt: str) -> AsyncIterator[StreamReply]:
        self.calls.append(route_key)
        self.live += 1
        self.peak = max(self.peak, self.live)
        try:
            yield StreamReply(model="", chunks=self._chunks(route_key))
        finally:
            self.live -= 1

    async def _chunks(self, route_key: str) -> AsyncIterator[str]:
        yield "from %s" % route_key
        if route_key == "a":
            await asyncio.sleep(3600)


class KeepsTalking:
    """Swallows the cancellation and keeps yielding, like a transport that ignores abort."""

    def __init__(self) -> None:
        self.late_sent = False

    @asynccontextmanager
    async def stream(self, route_key: str, prompt: str) -> AsyncIterator[StreamReply]:
        yield StreamReply(model="", chunks=self._chunks())

    async def _chunks(self) -> AsyncIterator[str]:
        yield "early"
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            pass
        self.late_sent = True
        yield "late"


@pytest.mark.asyncio
async def test_overlapping_submits_never_run_two_turns() -> None:
    transport = LiveStreams()
    orch = _orchestrator(transport)  # type: ignore[arg-type]

    first = asyncio.create_task(orch.submit("one", Route.FAST))
    while transport.live == 0:
        await asyncio.sleep(0.001)
    second = asyncio.create_task(orch.submit("two", Route.FAST))
    await asyncio.sleep(0.02)
    third = asyncio.create_task(orch.submit("three", Route.SLOW))

    results = await asyncio.wait_for(asyncio.gather(first, second, third), timeout=2)

    assert transport.peak == 1
    assert [r.state for r in results] == [
        TurnState.USER_CANCELLED,
        TurnState.USER_CANCELLED,
        TurnState.SUCCEEDED,
    ]
    assert results[2].message.text == "from b"
    assert not orch.busy


@pytest.mark.asyncio
async def test_fragments_after_stop_are_discarded() -> None:
    transport = KeepsTalking()
    orch = _orchestrator(transport)  # type: ignore[arg-type]
    fragments = _record(orch, CHAT_CHUNK, "fragment")

    task = asyncio.create_task(orch.submit("hello", Route.FAST))
    while not fragments:
        await asyncio.sleep(0.001)
    orch.stop()
    result = await asyncio.wait_for(task, timeout=2)

    assert transport.late_sent is True
    assert fragments == ["early"]
    assert result.message.text == "early" + STOPPED_MARKER
    assert [a.status for a in result.attempts] == [AttemptStatus.CANCELLED]


@pytest.mark.asyncio
async def test_fragments_after_timeout_are_discarded() -> None:
    transport = KeepsTalking()
    orch = _orchestrator(transport, fast=0.05)  # type: ignore[arg-type]
    fragments = _record(orch, CHAT_CHUNK, "fragment")

    with pytest.raises(PlanExhausted):
        await orch.submit("hello", Route.FAST)

    assert transport.late_sent is True
    assert fragments == ["early"]
    message = orch.state.messages[-1]
    assert "late" not in message.text
    assert [a.status for a in message.attempts] == [AttemptStatus.TIMED_OUT]


@pytest.mark.asyncio
async def test_fallback_record_is_running_before_its_request() -> None:
    transport = FakeTransport({"a": Script(hang=True), "b": Script(fragments=["ok"], model="MODEL_B")})
    orch = _orchestrator(transport, fast=0.05)
    snapshots = []

    async def on_update(evt):
        if len(orch.state.messages) < 2:
            return
        attempts = orch.state.messages[-1].attempts
        snapshots.append((tuple(a.status for a in attempts), tuple(transport.calls)))

    orch.events.subscribe(CHAT_UPDATED, on_update)
    await orch.submit("hello", Route.AUTO)

    preseeded = [calls for statuses, calls in snapshots if statuses == (AttemptStatus.TIMED_OUT, AttemptStatus.RUNNING)]
    assert preseeded
    assert preseeded[0] == ("a",)
