from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Deque, List, Protocol

from services.shared.models import DeadLetter, Message

logger = logging.getLogger("bookstore.fanout.deadletter")


class DeadLetterSink(Protocol):
    name: str

    def __len__(self) -> int: ...

    def put(self, message: Message, *, subscription: str, reason: str, attempts: int) -> None: ...

    def list(self) -> List[DeadLetter]: ...

    def drain(self) -> List[DeadLetter]: ...


class DeadLetterQueue:
    """Terminal holding area for messages whose delivery gave up.

    Messages are kept whole for manual inspection; ``drain`` hands them back
    for a redrive.
    """

    def __init__(self, name: str):
        self.name = name
        self._items: Deque[DeadLetter] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def put(self, message: Message, *, subscription: str, reason: str, attempts: int) -> None:
        self._items.append(
            DeadLetter(
                message=message,
                subscription=subscription,
                reason=reason,
                attempts=attempts,
                dead_lettered_at=datetime.now(timezone.utc),
            )
        )
        logger.error(
            "message dead-lettered",
            extra={
                "message_id": message.message_id,
                "capability": message.capability.value,
                "subscription": subscription,
                "queue": self.name,
                "attempt": attempts,
            },
        )

    def list(self) -> List[DeadLetter]:
        return list(self._items)

    def drain(self) -> List[DeadLetter]:
        out = list(self._items)
        self._items.clear()
        return out
