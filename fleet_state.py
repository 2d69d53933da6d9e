# Fleet State Reconciler
# File: fleet_state.py

"""
Authoritative client-side registry of tracked drones.

Updates are field-level overlays: anything missing from a frame keeps its
previous value, and the last frame to arrive wins per field. A mission-ending
event starts a fixed grace period after which the drone is removed; later
updates for the same drone are still merged but do not postpone removal.
Display numbers are handed out once per drone id, in first-seen order, and
are never reused within a session.
"""

import logging
from collections import deque
from dataclasses import replace
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional

from models import (
    DeliveryStatusUpdate, DroneEntity, DroneUpdate, FleetEvent, FleetSnapshot,
    SystemStateUpdate, SystemStats, delivery_ends_mission,
)
from monitoring import MetricsCollector
from scheduler import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)

MERGED_FIELDS = ('status', 'position', 'progress', 'batch', 'capacity', 'delivery_id')

# ============================================================================
# ENTITY STORE
# ============================================================================

class EntityStore:
    """Live entities plus the session-wide id -> display number table"""

    def __init__(self):
        self._entities: Dict[str, DroneEntity] = {}
        self._display_numbers: Dict[str, int] = {}
        self._next_number = 1

    def get(self, drone_id: str) -> Optional[DroneEntity]:
        return self._entities.get(drone_id)

    def put(self, entity: DroneEntity):
        self._entities[entity.id] = entity

    def remove(self, drone_id: str) -> Optional[DroneEntity]:
        return self._entities.pop(drone_id, None)

    def ids(self) -> List[str]:
        return list(self._entities)

    def display_number_for(self, drone_id: str) -> int:
        """Assign on first sight; the table outlives the entity"""
        number = self._display_numbers.get(drone_id)
        if number is None:
            number = self._next_number
            self._next_number += 1
            self._display_numbers[drone_id] = number
        return number

    def snapshot(self) -> Mapping[str, DroneEntity]:
        return MappingProxyType(dict(self._entities))

    def __contains__(self, drone_id: str) -> bool:
        return drone_id in self._entities

    def __len__(self) -> int:
        return len(self._entities)

# ============================================================================
# RECONCILER
# ============================================================================

class FleetStateReconciler:
    """Applies decoded events to the entity store"""

    def __init__(self, store: EntityStore, scheduler: Scheduler, grace_period: float = 3.0,
                 delivery_history: int = 50, metrics: Optional[MetricsCollector] = None):
        """
        Args:
            store: Entity store owned by this reconciler
            scheduler: Timer source for grace-period removals
            grace_period: Seconds a terminal drone stays visible
            delivery_history: Number of delivery-status events kept
            metrics: Optional collector
        """
        self.store = store
        self.scheduler = scheduler
        self.grace_period = grace_period
        self.metrics = metrics
        self.system = SystemStats()
        self.recent_deliveries: deque = deque(maxlen=delivery_history)
        self._removals: Dict[str, ScheduledTask] = {}
        self._listeners: List[Callable[[], None]] = []

    def add_listener(self, listener: Callable[[], None]):
        """listener() is called after every mutation"""
        self._listeners.append(listener)

    def snapshot(self) -> Mapping[str, DroneEntity]:
        """Read-only view of the live entities"""
        return self.store.snapshot()

    def pending_removal(self, drone_id: str) -> bool:
        return drone_id in self._removals

    def apply(self, event: FleetEvent):
        """Merge one event into the registry"""
        if isinstance(event, DroneUpdate):
            self._apply_update(event)
        elif isinstance(event, FleetSnapshot):
            self._apply_snapshot(event)
        elif isinstance(event, DeliveryStatusUpdate):
            self._apply_delivery_status(event)
        elif isinstance(event, SystemStateUpdate):
            self.system = event.stats
            logger.debug(f"System state: {event.stats.active_drones} active, "
                         f"{event.stats.available_drones} available")
        else:
            logger.warning(f"Reconciler ignoring unknown event {type(event).__name__}")
            return
        self._notify()

    def _apply_update(self, update: DroneUpdate):
        entity = self.store.get(update.drone_id)
        if entity is None:
            entity = DroneEntity(
                id=update.drone_id,
                display_number=self.store.display_number_for(update.drone_id),
                first_seen=update.received_at,
            )
            logger.info(f"Tracking drone {update.drone_id} as #{entity.display_number}")

        changes = {}
        for name in MERGED_FIELDS:
            value = getattr(update, name)
            if value is not None:
                changes[name] = value
        entity = replace(entity, last_update=update.received_at, **changes)
        self.store.put(entity)

        if update.terminal:
            self._schedule_removal(entity.id, f"status {update.status.value}")

        if self.metrics is not None:
            self.metrics.record_gauge('live_entities', len(self.store))

    def _apply_snapshot(self, snapshot: FleetSnapshot):
        for update in snapshot.updates:
            self._apply_update(update)

        present = snapshot.drone_ids
        for drone_id in self.store.ids():
            if drone_id not in present:
                self._schedule_removal(drone_id, "absent from fleet snapshot")

    def _apply_delivery_status(self, event: DeliveryStatusUpdate):
        self.recent_deliveries.appendleft(event)
        entity = self.store.get(event.drone_id)
        if entity is None:
            logger.debug(f"Delivery {event.delivery_id} status for untracked drone {event.drone_id}")
            return

        logger.info(f"Delivery {event.delivery_id} on drone #{entity.display_number}: "
                    f"{getattr(event.outcome, 'value', event.outcome)}")
        if delivery_ends_mission(event, entity.batch):
            self._schedule_removal(entity.id, f"delivery {getattr(event.outcome, 'value', event.outcome)}")

    def _schedule_removal(self, drone_id: str, reason: str):
        # Terminal is final: the first timer stands, later events do not move it
        if drone_id in self._removals:
            return
        entity = self.store.get(drone_id)
        if entity is None:
            return

        self.store.put(replace(entity, removing=True))
        self._removals[drone_id] = self.scheduler.call_later(self.grace_period, self._remove, drone_id)
        logger.info(f"Drone #{entity.display_number} ({drone_id}) ends mission ({reason}), "
                    f"removing in {self.grace_period:.1f}s")

    def _remove(self, drone_id: str):
        self._removals.pop(drone_id, None)
        entity = self.store.remove(drone_id)
        if entity is None:
            return
        logger.info(f"Removed drone #{entity.display_number} ({drone_id})")
        if self.metrics is not None:
            self.metrics.record_counter('entities_removed')
            self.metrics.record_gauge('live_entities', len(self.store))
        self._notify()

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.exception(f"Fleet state listener failed: {e}")
