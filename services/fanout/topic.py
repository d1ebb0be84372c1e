from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List

from services.fanout.deadletter import DeadLetterSink
from services.fanout.queue import MessageQueue
from services.shared.config import RetryPolicy
from services.shared.errors import BookstoreError, DeliveryFailed, PublishFailed, Unauthorized
from services.shared.models import Capability, Message

logger = logging.getLogger("bookstore.fanout.topic")

Sleep = Callable[[float], Awaitable[None]]


class Subscription:
    """Binding of one topic to one queue, with its own delivery worker.

    Every subscription drains a private outbox so a slow or failing queue
    never holds up the others on the same topic.
    """

    def __init__(
        self,
        name: str,
        *,
        topic: "Topic",
        queue: MessageQueue,
        dead_letter: DeadLetterSink,
        retry: RetryPolicy | None = None,
        outbox_size: int = 1000,
        sleep: Sleep = asyncio.sleep,
    ):
        self.name = name
        self.topic = topic
        self.queue = queue
        self.dead_letter = dead_letter
        self.retry = retry or RetryPolicy()
        self._outbox_size = outbox_size
        self._sleep = sleep
        self._outbox: asyncio.Queue[Message] | None = None
        self._task: asyncio.Task | None = None
        self._abandon_reason = "subscription stopped"

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._outbox = asyncio.Queue(maxsize=self._outbox_size)
        self._task = asyncio.get_running_loop().create_task(self._worker(), name=f"delivery:{self.name}")

    async def stop(self, *, drain_timeout: float = 5.0) -> None:
        """Let the outbox drain, then dead-letter whatever is still undelivered."""
        if self._outbox is not None and self.running:
            try:
                await asyncio.wait_for(self._outbox.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "stopping with undelivered messages",
                    extra={"subscription": self.name, "queue": self.queue.name},
                )
        self._abandon_reason = "subscription stopped"
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._abandon_outbox()

    def close(self, *, reason: str = "subscription closed") -> None:
        """Stop without waiting; pending messages go to the dead-letter queue."""
        self._abandon_reason = reason
        if self._task is not None:
            # the worker dead-letters the message it is holding when cancelled
            self._task.cancel()
        self._task = None
        self._abandon_outbox()

    def _abandon_outbox(self) -> int:
        if self._outbox is None:
            return 0
        abandoned = 0
        while True:
            try:
                message = self._outbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._outbox.task_done()
            self.dead_letter.put(message, subscription=self.name, reason=self._abandon_reason, attempts=0)
            abandoned += 1
        return abandoned

    def offer(self, message: Message) -> None:
        """Queue ``message`` for background delivery without waiting on it."""
        if self._outbox is None or not self.running:
            raise PublishFailed(f"subscription {self.name} is not running", resource=self.name)
        try:
            self._outbox.put_nowait(message)
        except asyncio.QueueFull:
            raise PublishFailed(f"subscription {self.name} outbox is full", resource=self.name) from None

    async def deliver(self, message: Message) -> None:
        await self.queue.enqueue(message, source=self.topic.identity)

    async def deliver_with_retry(self, message: Message) -> bool:
        """Deliver with exponential backoff; dead-letter when the budget runs out."""
        for attempt in range(1, self.retry.max_attempts + 1):
            try:
                await self.deliver(message)
                return True
            except Unauthorized as exc:
                # identity mismatch never heals on retry
                self.dead_letter.put(message, subscription=self.name, reason=exc.code, attempts=attempt)
                return False
            except BookstoreError as exc:
                if not exc.retriable:
                    self.dead_letter.put(message, subscription=self.name, reason=exc.code, attempts=attempt)
                    return False
                reason = exc.code
            except Exception as exc:  # noqa: BLE001 - any queue fault counts as a failed attempt
                logger.exception(
                    "delivery raised", extra={"subscription": self.name, "message_id": message.message_id}
                )
                reason = DeliveryFailed.code + ": " + type(exc).__name__

            if attempt >= self.retry.max_attempts:
                self.dead_letter.put(message, subscription=self.name, reason=reason, attempts=attempt)
                return False
            delay = self.retry.delay(attempt)
            logger.info(
                "delivery failed, retrying",
                extra={
                    "subscription": self.name,
                    "message_id": message.message_id,
                    "attempt": attempt,
                    "queue": self.queue.name,
                },
            )
            await self._sleep(delay)
        return False

    async def _worker(self) -> None:
        assert self._outbox is not None
        while True:
            message = await self._outbox.get()
            try:
                await self.deliver_with_retry(message)
            except asyncio.CancelledError:
                self.dead_letter.put(message, subscription=self.name, reason=self._abandon_reason, attempts=0)
                raise
            finally:
                self._outbox.task_done()


class Topic:
    def __init__(self, name: str, *, identity: str, capability: Capability):
        self.name = name
        self.identity = identity
        self.capability = capability
        self._subscriptions: Dict[str, Subscription] = {}

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions.values())

    def attach(self, subscription: Subscription) -> None:
        self._subscriptions[subscription.name] = subscription

    def detach(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.name, None)

    def publish(self, message: Message) -> None:
        """Fan ``message`` out to every subscription.

        One subscription refusing the message does not stop the others; the
        caller gets ``PublishFailed`` afterwards and may republish. A topic
        with no subscriptions refuses every message.
        """
        subscriptions = self.subscriptions
        if not subscriptions:
            raise PublishFailed(f"topic {self.name} has no subscriptions", resource=self.name)
        failed: List[str] = []
        for sub in subscriptions:
            try:
                sub.offer(message)
            except PublishFailed:
                failed.append(sub.name)
        if failed:
            raise PublishFailed(
                f"topic {self.name} could not accept message for {', '.join(failed)}",
                resource=self.name,
            )
