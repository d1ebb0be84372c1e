from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping

from services.fanout.deadletter import DeadLetterQueue
from services.fanout.queue import MessageQueue
from services.fanout.topic import Sleep, Subscription, Topic
from services.shared.config import FanoutSettings
from services.shared.errors import (
    BindingSealed,
    QueueNotFound,
    SubscriptionNotFound,
    SubscriptionStillBound,
    TopicNotFound,
    UnknownCapability,
)
from services.shared.models import Capability

logger = logging.getLogger("bookstore.fanout.router")


def topic_identity(environment: str, topic_name: str) -> str:
    return f"bookstore:{environment}:topic/{topic_name}"


@dataclass(frozen=True)
class Route:
    capability: Capability
    topic: Topic
    queue: MessageQueue
    dead_letter: DeadLetterQueue
    subscription: Subscription


class SubscriptionRouter:
    """Static capability -> topic -> queue wiring.

    ``build`` creates one topic, queue, dead-letter queue and subscription per
    capability and then seals the router; nothing is re-bound afterwards.
    """

    def __init__(self, settings: FanoutSettings | None = None, *, environment: str = "dev", sleep: Sleep = asyncio.sleep):
        self.settings = settings or FanoutSettings()
        self.environment = environment
        self._sleep = sleep
        self._sealed = False
        self._topics: Dict[str, Topic] = {}
        self._queues: Dict[str, MessageQueue] = {}
        self._dead_letters: Dict[str, DeadLetterQueue] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._routes: Dict[Capability, Route] = {}

    @classmethod
    def build(cls, settings: FanoutSettings | None = None, *, environment: str = "dev", sleep: Sleep = asyncio.sleep) -> "SubscriptionRouter":
        router = cls(settings, environment=environment, sleep=sleep)
        for capability in Capability:
            router.add_route(capability)
        router.seal()
        return router

    @property
    def sealed(self) -> bool:
        return self._sealed

    def seal(self) -> None:
        self._sealed = True

    def add_route(self, capability: Capability) -> Route:
        s = self.settings
        topic_name = s.topic_for(capability)
        topic = Topic(topic_name, identity=topic_identity(self.environment, topic_name), capability=capability)
        dead_letter = DeadLetterQueue(s.dead_letter_for(capability))
        queue = MessageQueue(s.queue_for(capability), policy=s.queue_policy(capability), dead_letter=dead_letter)

        self._topics[topic.name] = topic
        self._queues[queue.name] = queue
        self._dead_letters[dead_letter.name] = dead_letter

        subscription = self.bind(topic, queue, dead_letter)
        route = Route(capability=capability, topic=topic, queue=queue, dead_letter=dead_letter, subscription=subscription)
        self._routes[capability] = route
        return route

    def bind(self, topic: Topic, queue: MessageQueue, dead_letter: DeadLetterQueue) -> Subscription:
        if self._sealed:
            raise BindingSealed(f"routing table is sealed; cannot bind {topic.name} -> {queue.name}")
        name = f"{topic.name}:{queue.name}"
        # raises SubscriptionStillBound when the queue already belongs to another topic
        queue.bind_source(topic.identity, owner=name)
        subscription = Subscription(
            name,
            topic=topic,
            queue=queue,
            dead_letter=dead_letter,
            retry=self.settings.retry,
            outbox_size=self.settings.outbox_size,
            sleep=self._sleep,
        )
        topic.attach(subscription)
        self._subscriptions[name] = subscription
        logger.info("subscription bound", extra={"subscription": name, "queue": queue.name})
        return subscription

    def detach(self, subscription_name: str) -> None:
        sub = self.subscription(subscription_name)
        sub.topic.detach(sub)
        sub.close(reason="subscription detached")
        sub.queue.unbind_source()
        del self._subscriptions[subscription_name]
        logger.info("subscription detached", extra={"subscription": subscription_name, "queue": sub.queue.name})

    def delete_topic(self, name: str) -> None:
        topic = self._topics.get(name)
        if topic is None:
            raise TopicNotFound(f"no topic named {name!r}", resource=name)
        if topic.subscriptions:
            raise SubscriptionStillBound(
                f"topic {name} still has subscriptions: {', '.join(s.name for s in topic.subscriptions)}",
                resource=name,
            )
        del self._topics[name]

    def delete_queue(self, name: str) -> None:
        queue = self.queue(name)
        if queue.bound_source is not None:
            raise SubscriptionStillBound(f"queue {name} is still bound via {queue.owner}", resource=name)
        del self._queues[name]

    def route(self, capability: Capability | str) -> Route:
        try:
            cap = capability if isinstance(capability, Capability) else Capability(str(capability))
        except ValueError:
            raise UnknownCapability(f"unknown capability {capability!r}") from None
        route = self._routes.get(cap)
        if route is None:
            raise UnknownCapability(f"no route for capability {cap.value!r}")
        return route

    def routes(self) -> Mapping[Capability, Route]:
        return dict(self._routes)

    def topics(self) -> List[Topic]:
        return list(self._topics.values())

    def queue(self, name: str) -> MessageQueue:
        q = self._queues.get(name)
        if q is None:
            raise QueueNotFound(f"no queue named {name!r}", resource=name)
        return q

    def subscription(self, name: str) -> Subscription:
        sub = self._subscriptions.get(name)
        if sub is None:
            raise SubscriptionNotFound(f"no subscription named {name!r}", resource=name)
        return sub

    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions.values())

    async def start(self) -> None:
        for sub in self._subscriptions.values():
            sub.start()

    async def stop(self, *, drain_timeout: float = 5.0) -> None:
        await asyncio.gather(*[sub.stop(drain_timeout=drain_timeout) for sub in self._subscriptions.values()])
