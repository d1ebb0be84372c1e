from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from services.fanout.deadletter import DeadLetterSink
from services.shared.config import QueuePolicy
from services.shared.errors import DeliveryFailed, SubscriptionStillBound, Unauthorized
from services.shared.models import Message, QueueStats

logger = logging.getLogger("bookstore.fanout.queue")


@dataclass
class _Entry:
    message: Message
    enqueued_at: float
    visible_at: float
    receive_count: int = 0


class MessageQueue:
    """At-least-once message buffer owned by a single subscription.

    Only the bound source identity may enqueue. Received messages stay hidden
    for the visibility timeout and come back if nobody acknowledges them.
    """

    def __init__(
        self,
        name: str,
        *,
        policy: QueuePolicy | None = None,
        dead_letter: DeadLetterSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.policy = policy or QueuePolicy()
        self.dead_letter = dead_letter
        self._clock = clock
        self._bound_source: str | None = None
        self._owner: str | None = None
        # insertion order doubles as arrival order
        self._entries: Dict[str, _Entry] = {}
        self._cond: asyncio.Condition | None = None
        self._cond_loop: asyncio.AbstractEventLoop | None = None

    @property
    def bound_source(self) -> str | None:
        return self._bound_source

    @property
    def owner(self) -> str | None:
        return self._owner

    def bind_source(self, source: str, *, owner: str) -> None:
        if self._bound_source is not None and self._bound_source != source:
            raise SubscriptionStillBound(
                f"queue {self.name} is already bound to {self._bound_source} via {self._owner}",
                resource=self.name,
            )
        self._bound_source = source
        self._owner = owner

    def unbind_source(self) -> None:
        self._bound_source = None
        self._owner = None

    def _condition(self) -> asyncio.Condition:
        loop = asyncio.get_running_loop()
        if self._cond is None or self._cond_loop is not loop:
            self._cond = asyncio.Condition()
            self._cond_loop = loop
        return self._cond

    def _purge_expired(self, now: float) -> None:
        cutoff = now - self.policy.retention_seconds
        for mid, entry in list(self._entries.items()):
            if entry.enqueued_at <= cutoff:
                del self._entries[mid]
                logger.info("message expired", extra={"queue": self.name, "message_id": mid})

    async def enqueue(self, message: Message, *, source: str) -> None:
        if self._bound_source is None or source != self._bound_source:
            logger.warning(
                "enqueue rejected",
                extra={"queue": self.name, "principal": source, "resource": self.name, "message_id": message.message_id},
            )
            raise Unauthorized(
                f"source {source!r} may not enqueue into {self.name}",
                principal=source,
                resource=self.name,
                action="enqueue",
            )

        cond = self._condition()
        async with cond:
            now = self._clock()
            self._purge_expired(now)
            if message.message_id in self._entries:
                # a retried delivery of a message we already hold
                return
            if len(self._entries) >= self.policy.max_depth:
                raise DeliveryFailed(f"queue {self.name} is full", resource=self.name)
            self._entries[message.message_id] = _Entry(message=message, enqueued_at=now, visible_at=now)
            cond.notify_all()

    def _claim(self, max_messages: int) -> List[Message]:
        now = self._clock()
        self._purge_expired(now)
        out: List[Message] = []
        limit = self.policy.max_receive_count
        for mid, entry in list(self._entries.items()):
            if len(out) >= max_messages:
                break
            if entry.visible_at > now:
                continue
            if limit and entry.receive_count >= limit and self.dead_letter is not None:
                del self._entries[mid]
                self.dead_letter.put(
                    entry.message,
                    subscription=self._owner or self.name,
                    reason="max receive count exceeded",
                    attempts=entry.receive_count,
                )
                continue
            entry.receive_count += 1
            entry.visible_at = now + self.policy.visibility_timeout_seconds
            out.append(entry.message.model_copy(update={"receive_count": entry.receive_count}))
        return out

    def _next_visible_in(self) -> Optional[float]:
        now = self._clock()
        pending = [e.visible_at - now for e in self._entries.values() if e.visible_at > now]
        return min(pending) if pending else None

    async def receive(self, max_wait: float = 0.0, max_messages: int = 10) -> List[Message]:
        """Return up to ``max_messages``, waiting at most ``max_wait`` seconds.

        An empty list means nothing became available in time.
        """
        deadline = self._clock() + max(0.0, float(max_wait))
        cond = self._condition()
        async with cond:
            while True:
                batch = self._claim(max(1, int(max_messages)))
                if batch:
                    return batch
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return []
                # wake on enqueue, or when an in-flight message times back in
                nxt = self._next_visible_in()
                timeout = remaining if nxt is None else min(remaining, nxt)
                try:
                    await asyncio.wait_for(cond.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass

    def acknowledge(self, message_id: str) -> None:
        # unknown or already-acknowledged ids are ignored
        if self._entries.pop(message_id, None) is not None:
            logger.debug("message acknowledged", extra={"queue": self.name, "message_id": message_id})

    def stats(self) -> QueueStats:
        now = self._clock()
        in_flight = sum(1 for e in self._entries.values() if e.visible_at > now)
        return QueueStats(
            queue=self.name,
            visible=len(self._entries) - in_flight,
            in_flight=in_flight,
            dead_lettered=len(self.dead_letter) if self.dead_letter is not None else 0,
        )
