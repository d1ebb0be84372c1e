from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from services.fanout.router import SubscriptionRouter
from services.shared.errors import PublishFailed, UnknownCapability
from services.shared.models import Capability, Message

logger = logging.getLogger("bookstore.fanout.bus")


def parse_capability(value: Capability | str) -> Capability:
    if isinstance(value, Capability):
        return value
    try:
        return Capability(str(value).strip().lower())
    except ValueError:
        raise UnknownCapability(f"unknown capability {value!r}; expected one of {[c.value for c in Capability]}") from None


class EventBus:
    """Publisher-facing facade: capability name in, message id out.

    Publishing is fire-and-forget; delivery to the queue happens in the
    subscription workers the router owns.
    """

    def __init__(self, router: SubscriptionRouter, *, now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.router = router
        self._now = now
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        await self.router.start()
        self._running = True
        logger.info("event bus started")

    async def stop(self, *, drain_timeout: float = 5.0) -> None:
        self._running = False
        await self.router.stop(drain_timeout=drain_timeout)
        logger.info("event bus stopped")

    def publish(self, capability: Capability | str, payload: Any) -> str:
        cap = parse_capability(capability)
        if not self._running:
            raise PublishFailed("event bus is not running")

        topic = self.router.route(cap).topic
        message = Message(
            message_id=uuid.uuid4().hex,
            capability=cap,
            payload=payload,
            published_at=self._now(),
            source=topic.identity,
        )
        topic.publish(message)
        logger.info(
            "published",
            extra={"capability": cap.value, "message_id": message.message_id, "resource": topic.name},
        )
        return message.message_id

    def redrive(self, subscription_name: str) -> int:
        """Resubmit every dead-lettered message of a subscription for delivery."""
        sub = self.router.subscription(subscription_name)
        letters = sub.dead_letter.drain()
        for i, letter in enumerate(letters):
            try:
                sub.offer(letter.message.model_copy(update={"receive_count": 0}))
            except PublishFailed:
                for rest in letters[i:]:
                    sub.dead_letter.put(rest.message, subscription=rest.subscription, reason=rest.reason, attempts=rest.attempts)
                raise
        logger.info("redrive", extra={"subscription": sub.name, "attempt": len(letters)})
        return len(letters)
