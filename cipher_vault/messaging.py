"""In-process event channel used in place of global subscriber callbacks.

Publishers are the session, the record store, the upload pipeline and the
replica monitor. Delivery happens after the publisher's own state change has
been committed, so a failing subscriber is logged and never reported back to
the publisher.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, DefaultDict, Dict, List

SESSION_CHANGED = "session.changed"
UPLOAD_PROGRESS = "uploads.progress"
RECORDS_CHANGED = "records.changed"
REPLICA_HEALTH = "replica.health"
TRASH_PURGED = "trash.purged"

Handler = Callable[["MessageEnvelope"], None]

logger = logging.getLogger(__name__)


@dataclass
class MessageEnvelope:
    topic: str
    payload: Dict[str, Any]


class InMemoryBus:
    """Synchronous pub/sub bus; handlers run on the publisher's thread."""

    def __init__(self) -> None:
        self._subscribers: DefaultDict[str, List[Handler]] = defaultdict(list)

    def publish(self, envelope: MessageEnvelope) -> int:
        """Deliver ``envelope`` to every subscriber and return how many accepted it."""
        delivered = 0
        for callback in list(self._subscribers[envelope.topic]):
            try:
                callback(envelope)
            except Exception:
                logger.exception("Subscriber %r failed on %s", callback, envelope.topic)
                continue
            delivered += 1
        return delivered

    def emit(self, topic: str, **payload: Any) -> int:
        return self.publish(MessageEnvelope(topic=topic, payload=payload))

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        self._subscribers[topic].append(handler)

        def _unsubscribe() -> None:
            if handler in self._subscribers[topic]:
                self._subscribers[topic].remove(handler)

        return _unsubscribe


def build_bus(backend: str = "in-memory") -> InMemoryBus:
    if backend != "in-memory":
        raise NotImplementedError("Only the in-memory event bus is available")
    return InMemoryBus()
