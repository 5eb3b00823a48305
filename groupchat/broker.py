"""Topic routing for the single chat group.

GroupBroker — maps publish destinations onto topics and fans messages out
to every subscriber of the topic, in subscription order.
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from groupchat.chat_config import GROUP_TOPIC, JOIN_DESTINATION, SEND_DESTINATION
from groupchat.chat_models import ChatMessage

logger = logging.getLogger(__name__)

Deliver = Callable[[str, ChatMessage], Awaitable[None]]
OnClose = Callable[[str], Awaitable[None]]

DEFAULT_ROUTES = {
    SEND_DESTINATION: GROUP_TOPIC,
    JOIN_DESTINATION: GROUP_TOPIC,
}


@dataclass
class BrokerSubscription:
    """A subscriber registered on one topic."""
    subscription_id: str
    topic: str
    deliver: Deliver
    owner: Optional[str] = None
    on_close: Optional[OnClose] = None


class GroupBroker:
    """In-memory pub/sub broker shared by every connection of one server."""

    _instance: Optional["GroupBroker"] = None

    def __init__(self, routes: Optional[Dict[str, str]] = None):
        self._routes: Dict[str, str] = dict(DEFAULT_ROUTES if routes is None else routes)
        self._topics: Dict[str, Dict[str, BrokerSubscription]] = {}
        self._ids = itertools.count(1)

    @classmethod
    def get(cls) -> "GroupBroker":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def route(self, destination: str) -> str:
        """Topic a destination is delivered to (itself when unrouted)."""
        return self._routes.get(destination, destination)

    def subscribe(
        self,
        topic: str,
        deliver: Deliver,
        owner: Optional[str] = None,
        on_close: Optional[OnClose] = None,
    ) -> BrokerSubscription:
        subscription = BrokerSubscription(
            subscription_id=f"brk-{next(self._ids)}",
            topic=topic,
            deliver=deliver,
            owner=owner,
            on_close=on_close,
        )
        self._topics.setdefault(topic, {})[subscription.subscription_id] = subscription
        logger.debug(f"[BROKER] {owner or 'anonymous'} subscribed to {topic}")
        return subscription

    def unsubscribe(self, subscription: BrokerSubscription) -> bool:
        subscribers = self._topics.get(subscription.topic, {})
        removed = subscribers.pop(subscription.subscription_id, None) is not None
        if not subscribers:
            self._topics.pop(subscription.topic, None)
        return removed

    def unsubscribe_owner(self, owner: str) -> int:
        """Remove every subscription of one connection. Returns count removed."""
        owned = [s for s in self._all_subscriptions() if s.owner == owner]
        for subscription in owned:
            self.unsubscribe(subscription)
        return len(owned)

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, {}))

    async def publish(self, destination: str, message: ChatMessage) -> int:
        """Deliver a message to all subscribers of the routed topic.

        Subscribers whose delivery fails are dropped. Returns the number of
        successful deliveries.
        """
        topic = self.route(destination)
        delivered = 0
        for subscription in list(self._topics.get(topic, {}).values()):
            try:
                await subscription.deliver(topic, message)
                delivered += 1
            except Exception as e:
                logger.error(f"[BROKER] Delivery to {subscription.owner or subscription.subscription_id} "
                             f"failed: {type(e).__name__}: {e}")
                self.unsubscribe(subscription)
        logger.debug(f"[BROKER] {destination} -> {topic}: {delivered} deliveries")
        return delivered

    async def shutdown(self, reason: str = "broker shutting down") -> None:
        """Drop all subscriptions, telling their owners the broker went away."""
        subscriptions = self._all_subscriptions()
        self._topics.clear()
        for subscription in subscriptions:
            if subscription.on_close is None:
                continue
            try:
                await subscription.on_close(reason)
            except Exception as e:
                logger.warning(f"[BROKER] Close callback failed: {type(e).__name__}: {e}")
        if subscriptions:
            logger.info(f"[BROKER] Shut down, dropped {len(subscriptions)} subscriptions")

    def _all_subscriptions(self) -> List[BrokerSubscription]:
        return [s for subscribers in self._topics.values() for s in subscribers.values()]
