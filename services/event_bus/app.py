from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from services.fanout.bus import EventBus, parse_capability
from services.fanout.router import SubscriptionRouter
from services.shared.config import ConfigStore, Settings
from services.shared.models import (
    AckRequest,
    PublishRequest,
    PublishResponse,
    QueueStats,
    ReceiveRequest,
    ReceiveResponse,
    RedriveResponse,
    TopicInfo,
)
from services.shared.otel import setup_otel
from services.shared.runtime import get_runtime_config, setup_logging
from services.shared.web import install_common

SERVICE_NAME = "event-bus"

logger = logging.getLogger("bookstore.event_bus")


def create_app(settings: Settings | None = None) -> FastAPI:
    runtime = get_runtime_config(service_name=SERVICE_NAME)
    settings = settings or ConfigStore().settings(environment=runtime.env)

    router = SubscriptionRouter.build(settings.fanout, environment=settings.environment)
    bus = EventBus(router)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await bus.start()
        try:
            yield
        finally:
            await bus.stop()

    app = FastAPI(title="Bookstore Event Bus", lifespan=lifespan)
    app.state.bus = bus
    install_common(app, runtime=runtime, logger=logger)

    @app.get("/health")
    def health():
        return {"ok": True, "service": SERVICE_NAME, "running": bus.running}

    @app.post("/publish", response_model=PublishResponse)
    async def publish(req: PublishRequest):
        capability = parse_capability(req.capability)
        message_id = bus.publish(capability, req.payload)
        route = router.route(capability)
        return PublishResponse(message_id=message_id, capability=route.capability, topic=route.topic.name)

    @app.post("/queues/{queue_name}/receive", response_model=ReceiveResponse)
    async def receive(queue_name: str, req: ReceiveRequest):
        queue = router.queue(queue_name)
        messages = await queue.receive(max_wait=req.max_wait_seconds, max_messages=req.max_messages)
        return ReceiveResponse(queue=queue.name, messages=messages)

    @app.post("/queues/{queue_name}/ack")
    async def acknowledge(queue_name: str, req: AckRequest):
        router.queue(queue_name).acknowledge(req.message_id)
        return {"ok": True}

    @app.get("/queues/{queue_name}/stats", response_model=QueueStats)
    def queue_stats(queue_name: str):
        return router.queue(queue_name).stats()

    @app.get("/topics")
    def topics():
        return {
            "topics": [
                TopicInfo(
                    name=t.name,
                    identity=t.identity,
                    capability=t.capability,
                    subscriptions=[s.name for s in t.subscriptions],
                ).model_dump(mode="json")
                for t in router.topics()
            ]
        }

    @app.get("/subscriptions/{name}/dead-letters")
    def dead_letters(name: str):
        sub = router.subscription(name)
        return {"subscription": sub.name, "dead_letters": [d.model_dump(mode="json") for d in sub.dead_letter.list()]}

    @app.post("/subscriptions/{name}/dead-letters/redrive", response_model=RedriveResponse)
    async def redrive(name: str):
        return RedriveResponse(subscription=name, redriven=bus.redrive(name))

    return app


setup_logging(service_name=SERVICE_NAME)
setup_otel(service_name=SERVICE_NAME)

app = create_app()
