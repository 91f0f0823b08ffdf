from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List

# Topics published by the attempt orchestrator.
CHAT_UPDATED = "chat.updated"
CHAT_CHUNK = "chat.chunk"
TURN_NOTICE = "turn.notice"
TURN_SETTLED = "turn.settled"


@dataclass(frozen=True)
class Event:
    topic: str
    payload: Dict[str, Any]


Handler = Callable[[Event], Awaitable[None]]


class EventBus:
    """
    In-process pub/sub between the orchestrator and whatever renders the chat.

    Handlers for a topic run one after another in subscription order, so chunk
    renderers see fragments in the order they were appended.
    """

    def __init__(self) -> None:
        self._subs: Dict[str, List[Handler]] = {}

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register `handler`; the returned callable removes it again."""
        self._subs.setdefault(topic, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._subs.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        event = Event(topic=topic, payload=payload)
        for handler in list(self._subs.get(topic, ())):
            await handler(event)
