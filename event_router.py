# Event Router
# File: event_router.py

"""
Synchronous fan-out of decoded fleet events to their consumers.

Every subscriber sees every event in arrival order. A failing handler is
logged and counted; it does not stop the remaining handlers and nothing is
raised back to the connection that delivered the frame.
"""

import logging
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from models import FleetEvent
from monitoring import MetricsCollector

logger = logging.getLogger(__name__)

WILDCARD = '*'


class EventRouter:
    """Event router with per-handler error isolation"""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.subscribers: Dict[str, List[Callable]] = defaultdict(list)
        self.metrics = metrics
        self.closed = False

    def subscribe(self, event_type: str, handler: Callable):
        """
        Subscribe to event type

        Args:
            event_type: Event class's event_type, or '*' for everything
            handler: Called with the event
        """
        self.subscribers[event_type].append(handler)
        logger.debug(f"Subscribed {getattr(handler, '__qualname__', handler)} to {event_type}")

    def publish(self, event: FleetEvent) -> int:
        """
        Dispatch event to subscribers

        Returns:
            Number of handlers that completed without raising
        """
        if self.closed:
            logger.debug(f"Router closed, dropping {event.event_type}")
            return 0

        handlers = self.subscribers.get(event.event_type, []) + self.subscribers.get(WILDCARD, [])

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.exception(f"Handler error for {event.event_type}: {e}")
                if self.metrics is not None:
                    self.metrics.record_counter('handler_errors', labels={'event': event.event_type})
        return delivered

    def close(self):
        self.closed = True
        logger.debug("Event router closed")

