"""
transport.py — Pub/sub contract the agents talk through, plus an in-memory relay.

Real relay connections are outside this package; anything with an async
``publish`` and a ``subscribe`` returning a closable handle will do.
InMemoryRelay is for tests and the development harness: it delivers the
wire mapping asynchronously, optionally more than once, like a public
relay network would.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Protocol

from .envelope import EVENT_KIND, Envelope

logger = logging.getLogger("satoshi_ride.transport")

MessageCallback = Callable[[Mapping[str, Any]], None]


@dataclass(frozen=True)
class EventFilter:
    """
    Selects envelopes by kind and tag predicates. Every tag key listed must
    have at least one value on the envelope that is in the allowed set.
    """
    tags: Mapping[str, frozenset[str]] = field(default_factory=dict)
    kinds: frozenset[int] = frozenset({EVENT_KIND})

    @classmethod
    def build(cls, kinds: Iterable[int] = (EVENT_KIND,), **tags: Iterable[str]) -> "EventFilter":
        return cls(
            tags={key: frozenset(values) for key, values in tags.items()},
            kinds=frozenset(kinds),
        )

    def matches(self, envelope: Envelope) -> bool:
        if envelope.kind not in self.kinds:
            return False
        for key, allowed in self.tags.items():
            if not any(value in allowed for value in envelope.tag_values(key)):
                return False
        return True


class Subscription(Protocol):
    def close(self) -> None: ...


class Transport(Protocol):
    async def publish(self, envelope: Envelope) -> bool: ...

    def subscribe(self, event_filter: EventFilter, on_message: MessageCallback) -> Subscription: ...


class RelaySubscription:
    def __init__(self, relay: "InMemoryRelay", event_filter: EventFilter, on_message: MessageCallback):
        self._relay = relay
        self.event_filter = event_filter
        self.on_message = on_message
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._relay._subscriptions.discard(self)


class InMemoryRelay:
    """
    Single-process relay.

    Args:
        duplicate_deliveries: how many times each matching subscriber gets
                              every published envelope (at-least-once).
        accept_publishes:     set False to make every publish fail.
    """

    def __init__(self, duplicate_deliveries: int = 1, accept_publishes: bool = True):
        if duplicate_deliveries < 1:
            raise ValueError("duplicate_deliveries must be at least 1")
        self.duplicate_deliveries = duplicate_deliveries
        self.accept_publishes = accept_publishes
        self.published: list[Envelope] = []
        self._subscriptions: set[RelaySubscription] = set()

    async def publish(self, envelope: Envelope) -> bool:
        if not self.accept_publishes:
            logger.warning("Relay rejected %s", envelope.summary())
            return False
        self.published.append(envelope)
        loop = asyncio.get_running_loop()
        wire = envelope.to_wire()
        for sub in list(self._subscriptions):
            if sub.event_filter.matches(envelope):
                for _ in range(self.duplicate_deliveries):
                    loop.call_soon(self._deliver, sub, dict(wire))
        return True

    def subscribe(self, event_filter: EventFilter, on_message: MessageCallback) -> RelaySubscription:
        sub = RelaySubscription(self, event_filter, on_message)
        self._subscriptions.add(sub)
        return sub

    @staticmethod
    def _deliver(sub: RelaySubscription, wire: dict) -> None:
        if not sub.closed:
            sub.on_message(wire)

    def published_of(self, message_type: Any) -> list[Envelope]:
        """Envelopes published so far with the given message type."""
        return [e for e in self.published if e.message_type == message_type]

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)
