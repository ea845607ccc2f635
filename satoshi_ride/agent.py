"""
agent.py — Runtime shared by the rider and driver state machines.

Each agent owns one inbox. Transport callbacks and expired timers only put
items on it; a single consumer task takes them one at a time, so a message
is fully handled (validated, state possibly changed, replies published)
before the next one is looked at.

Drop policy, in one place:
  - SchemaError / AuthenticityError  -> logged by the gate, dropped
  - ProtocolViolation                -> logged here, dropped, no state change
  - AuthenticityError from a handler -> same (forged receipt body)
  - FatalError                       -> propagated; stops the consumer
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Union

from .config import RideConfig
from .envelope import Envelope
from .errors import AuthenticityError, FatalError, ProtocolViolation
from .gate import InboundMessage, admit
from .models import RecentKeys
from .schema import MessageType, Payload
from .signing import Signer
from .timers import Action, DeferredTasks
from .transport import EventFilter, Subscription, Transport

Handler = Callable[[InboundMessage], Awaitable[None]]


@dataclass(frozen=True)
class DeferredAction:
    owner: str
    action: Action


InboxItem = Union[Mapping[str, Any], Envelope, DeferredAction]


class ProtocolAgent:
    """Base class: inbox, dispatch by message type, publishing, shutdown."""

    role = "agent"

    def __init__(
        self,
        signer: Signer,
        transport: Transport,
        config: Optional[RideConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.signer = signer
        self.transport = transport
        self.config = config or RideConfig()
        self.clock = clock or time.time
        self.logger = logging.getLogger(f"satoshi_ride.{self.role}")
        self.timers = DeferredTasks(self._dispatch_deferred)
        self.inbox: asyncio.Queue[InboxItem] = asyncio.Queue()
        self.fatal_error: Optional[FatalError] = None
        self._handled_ids: RecentKeys[str, None] = RecentKeys(self.config.dedupe_capacity)
        self._subscriptions: list[Subscription] = []
        self._consumer: Optional[asyncio.Task[None]] = None
        self._closing = False

    @property
    def identity(self) -> str:
        return self.signer.identity

    @property
    def closing(self) -> bool:
        return self._closing

    # ------------------------------------------------------------------
    # Hooks for subclasses
    # ------------------------------------------------------------------

    def subscription_filters(self) -> Iterable[EventFilter]:
        return ()

    def handlers(self) -> dict[MessageType, Handler]:
        return {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe and start the inbox consumer."""
        if self._consumer is not None:
            return
        for event_filter in self.subscription_filters():
            self._subscriptions.append(self.transport.subscribe(event_filter, self.deliver))
        self._consumer = asyncio.get_running_loop().create_task(
            self._run(), name=f"{self.role}:{self.identity[:8]}"
        )
        self.logger.info("%s started: identity=%s", self.role.capitalize(), self.identity)

    async def close(self) -> None:
        """
        Cancel every pending timer, close subscriptions, stop the consumer.
        Nothing is published once this has begun.
        """
        if self._closing:
            return
        self._closing = True
        cancelled = self.timers.cancel_all()
        for sub in self._subscriptions:
            sub.close()
        self._subscriptions.clear()
        if self._consumer is not None:
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError, FatalError):
                await self._consumer
            self._consumer = None
        self.logger.info("%s closed: cancelled %d pending timer(s)", self.role.capitalize(), cancelled)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *args):
        await self.close()

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    def deliver(self, raw: Union[Mapping[str, Any], Envelope]) -> None:
        """Transport callback: enqueue one delivered envelope."""
        if not self._closing:
            self.inbox.put_nowait(raw)

    def _dispatch_deferred(self, owner: str, action: Action) -> None:
        if not self._closing:
            self.inbox.put_nowait(DeferredAction(owner, action))

    async def _run(self) -> None:
        while True:
            item = await self.inbox.get()
            try:
                await self.process(item)
            except FatalError as exc:
                self.fatal_error = exc
                self.logger.exception("%s stopped on fatal error", self.role.capitalize())
                raise
            except Exception:
                self.logger.exception("%s stopped on unexpected error", self.role.capitalize())
                raise
            finally:
                self.inbox.task_done()

    async def process(self, item: InboxItem) -> None:
        if isinstance(item, DeferredAction):
            await item.action()
        else:
            await self.handle_envelope(item)

    async def drain(self) -> None:
        """Wait until everything currently queued has been handled."""
        await self.inbox.join()

    async def handle_envelope(self, raw: Union[Mapping[str, Any], Envelope]) -> bool:
        """
        Gate, deduplicate, and dispatch one envelope. Returns True if a
        handler ran to completion.
        """
        message = admit(raw)
        if message is None:
            return False
        if message.event_id in self._handled_ids:
            self.logger.debug("Duplicate delivery ignored: %s", message.envelope.summary())
            return False
        handler = self.handlers().get(message.message_type)
        if handler is None:
            self.logger.debug("No handler for %s", message.envelope.summary())
            return False
        try:
            await handler(message)
        except (ProtocolViolation, AuthenticityError) as exc:
            self.logger.warning("Dropped %s: %s", message.envelope.summary(), exc)
            return False
        self._handled_ids.add(message.event_id)
        return True

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def publish(
        self,
        message_type: MessageType,
        payload: Payload,
        *,
        reference: Optional[str] = None,
        targets: Iterable[str] = (),
    ) -> Optional[Envelope]:
        """
        Sign and publish. Returns the envelope (even if the transport refused
        it), or None when the agent is shutting down.

        Raises:
            FatalError: if the envelope cannot be signed.
        """
        if self._closing:
            self.logger.warning("Suppressed %s during shutdown", message_type.value)
            return None
        envelope = self.signer.sign_envelope(
            message_type,
            payload,
            reference=reference,
            targets=targets,
            created_at=int(self.clock()),
        )
        ok = await self.transport.publish(envelope)
        if not ok:
            self.logger.warning("Publish failed for %s", envelope.summary())
        return envelope
