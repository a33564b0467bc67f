from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, DefaultDict, Dict, List

OPERATOR_ALERTS_TOPIC = "operator-alerts"


class AsyncNotificationQueue(ABC):
    """
    Abstract async message queue for dispatching operator alerts.
    Concrete implementations could use Redis, RabbitMQ, Kafka, etc.
    Payloads must be JSON-serialisable.
    """

    @abstractmethod
    async def enqueue(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """
    In-memory queue used for tests and as a reference implementation.
    """

    def __init__(self) -> None:
        self._topics: DefaultDict[str, List[Dict[str, Any]]] = defaultdict(list)

    async def enqueue(self, topic: str, payload: Dict[str, Any]) -> None:
        self._topics[topic].append(payload)

    def pending(self, topic: str = OPERATOR_ALERTS_TOPIC) -> List[Dict[str, Any]]:
        return list(self._topics.get(topic, []))

    def drain(self, topic: str = OPERATOR_ALERTS_TOPIC) -> List[Dict[str, Any]]:
        return self._topics.pop(topic, [])
