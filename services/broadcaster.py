"""
Stream Broadcaster

Topic-based fan-out of JSON payloads to connected WebSocket clients.

- Each client registers once with a sender (anything with `async send_json(payload)`,
  e.g. a Starlette WebSocket)
- Topics are symbols ("BTCUSDT") or channels ("basis:BTCUSDT")
- publish() delivers to every current subscriber concurrently; a subscriber
  whose delivery fails is logged and dropped from every topic, and never
  stops delivery to the others
- No filtering happens here; producers decide what is worth publishing
"""

import asyncio
from collections import defaultdict
from typing import Any, DefaultDict, Dict, List, Optional, Protocol, Set

from core.logging import get_logger


class Sender(Protocol):
    async def send_json(self, data: Any) -> None:
        ...


class StreamBroadcaster:
    """
    Subscriber registry and fan-out.

    Example:
        >>> broadcaster = StreamBroadcaster()
        >>> broadcaster.register("client-1", websocket)
        >>> broadcaster.subscribe("client-1", "BTCUSDT")
        >>> await broadcaster.publish("BTCUSDT", {"type": "indicator_update", ...})
        1
    """

    def __init__(self) -> None:
        self._senders: Dict[str, Sender] = {}
        self._topics: DefaultDict[str, Set[str]] = defaultdict(set)
        self._client_topics: DefaultDict[str, Set[str]] = defaultdict(set)
        self._delivered = 0
        self._dropped = 0
        self._logger = get_logger(__name__)

    # ============================================
    # Registry
    # ============================================

    def register(self, client_id: str, sender: Sender) -> None:
        self._senders[client_id] = sender
        self._logger.debug(f"Client registered: {client_id} (total={len(self._senders)})")

    def is_registered(self, client_id: str) -> bool:
        return client_id in self._senders

    def subscribe(self, client_id: str, topic: str) -> bool:
        """
        Add a client to a topic.

        Returns:
            bool: True if the subscription is new

        Raises:
            ValueError: If the client is not registered
        """
        if client_id not in self._senders:
            raise ValueError(f"Client '{client_id}' is not registered")

        if client_id in self._topics[topic]:
            return False

        self._topics[topic].add(client_id)
        self._client_topics[client_id].add(topic)
        self._logger.debug(f"{client_id} subscribed to '{topic}' (total={len(self._topics[topic])})")
        return True

    def unsubscribe(self, client_id: str, topic: str) -> bool:
        """Remove a client from a topic; returns True if it was subscribed."""
        subscribers = self._topics.get(topic)
        if not subscribers or client_id not in subscribers:
            return False

        subscribers.discard(client_id)
        if not subscribers:
            del self._topics[topic]
        self._client_topics[client_id].discard(topic)
        self._logger.debug(f"{client_id} unsubscribed from '{topic}'")
        return True

    def disconnect(self, client_id: str) -> None:
        """Forget a client and remove it from every topic."""
        for topic in list(self._client_topics.pop(client_id, set())):
            subscribers = self._topics.get(topic)
            if subscribers is not None:
                subscribers.discard(client_id)
                if not subscribers:
                    del self._topics[topic]
        if self._senders.pop(client_id, None) is not None:
            self._logger.debug(f"Client disconnected: {client_id} (total={len(self._senders)})")

    def subscribers(self, topic: str) -> Set[str]:
        return set(self._topics.get(topic, set()))

    def topics_for(self, client_id: str) -> Set[str]:
        return set(self._client_topics.get(client_id, set()))

    # ============================================
    # Delivery
    # ============================================

    async def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        """
        Deliver payload to every subscriber of topic.

        Returns:
            int: Number of successful deliveries
        """
        client_ids: List[str] = list(self._topics.get(topic, set()))
        if not client_ids:
            return 0

        results = await asyncio.gather(*(self._deliver(cid, payload, topic) for cid in client_ids))
        return sum(1 for ok in results if ok)

    async def send(self, client_id: str, payload: Dict[str, Any]) -> bool:
        """Deliver payload to one client (replies to control messages)."""
        return await self._deliver(client_id, payload)

    async def _deliver(self, client_id: str, payload: Dict[str, Any], topic: Optional[str] = None) -> bool:
        sender = self._senders.get(client_id)
        if sender is None:
            return False

        try:
            await sender.send_json(payload)
        except Exception as e:
            where = f" on '{topic}'" if topic else ""
            self._logger.warning(f"Delivery to {client_id}{where} failed, dropping client: {e}")
            self._dropped += 1
            self.disconnect(client_id)
            return False

        self._delivered += 1
        return True

    def stats(self) -> Dict[str, Any]:
        return {
            "clients": len(self._senders),
            "topics": {topic: len(ids) for topic, ids in self._topics.items()},
            "delivered": self._delivered,
            "dropped": self._dropped,
        }

    def __len__(self) -> int:
        return len(self._senders)
