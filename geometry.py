# Derived Geometry Tracker
# File: geometry.py

"""
Client-side flight geometry: the planned route captured from the first
update that carries one, and per-stop completion markers for batch orders.

The tracker consumes the same event stream as the reconciler rather than its
output and runs its own grace-period timers, so it never depends on the
reconciler's removal having happened.
"""

import logging
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional

from models import (
    Batch, DeliveryStatusUpdate, DroneUpdate, FleetEvent, FleetSnapshot,
    FlightGeometry, Path, compute_markers, delivery_ends_mission,
)
from monitoring import MetricsCollector
from scheduler import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)


@dataclass
class _MarkerInputs:
    """Latest values the marker flags are derived from"""
    destinations: Optional[Path] = None
    batch: Optional[Batch] = None
    status: object = None


class GeometryStore:
    """Per-drone geometry records"""

    def __init__(self):
        self._records: Dict[str, FlightGeometry] = {}

    def get(self, drone_id: str) -> Optional[FlightGeometry]:
        return self._records.get(drone_id)

    def put(self, geometry: FlightGeometry):
        self._records[geometry.drone_id] = geometry

    def remove(self, drone_id: str) -> Optional[FlightGeometry]:
        return self._records.pop(drone_id, None)

    def ids(self) -> List[str]:
        return list(self._records)

    def snapshot(self) -> Mapping[str, FlightGeometry]:
        return MappingProxyType(dict(self._records))

    def __len__(self) -> int:
        return len(self._records)


class GeometryTracker:
    """Maintains the geometry store from fleet events"""

    def __init__(self, store: GeometryStore, scheduler: Scheduler, grace_period: float = 3.0,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.scheduler = scheduler
        self.grace_period = grace_period
        self.metrics = metrics
        self._inputs: Dict[str, _MarkerInputs] = {}
        self._purges: Dict[str, ScheduledTask] = {}
        self._listeners: List[Callable[[], None]] = []

    def add_listener(self, listener: Callable[[], None]):
        self._listeners.append(listener)

    def geometry(self, drone_id: str) -> Optional[FlightGeometry]:
        return self.store.get(drone_id)

    def snapshot(self) -> Mapping[str, FlightGeometry]:
        return self.store.snapshot()

    def apply(self, event: FleetEvent):
        if isinstance(event, DroneUpdate):
            self._apply_update(event)
        elif isinstance(event, FleetSnapshot):
            for update in event.updates:
                self._apply_update(update)
            present = event.drone_ids
            for drone_id in self.store.ids():
                if drone_id not in present:
                    self._start_fading(drone_id)
        elif isinstance(event, DeliveryStatusUpdate):
            inputs = self._inputs.get(event.drone_id)
            if inputs is None or not delivery_ends_mission(event, inputs.batch):
                return
            self._start_fading(event.drone_id)
        else:
            return
        self._notify()

    def _apply_update(self, update: DroneUpdate):
        geometry = self.store.get(update.drone_id)
        if geometry is None:
            geometry = FlightGeometry(drone_id=update.drone_id)
            self._inputs[update.drone_id] = _MarkerInputs()

        inputs = self._inputs[update.drone_id]
        if inputs.destinations is None and update.destinations:
            inputs.destinations = update.destinations
        if update.batch is not None:
            inputs.batch = update.batch
        if update.status is not None:
            inputs.status = update.status

        # Planned path is captured once and never replaced
        if geometry.planned_path is None and update.route:
            geometry = replace(geometry, planned_path=update.route)
            logger.debug(f"Captured {len(update.route)}-point route for {update.drone_id}")

        geometry = replace(
            geometry,
            waypoint_markers=compute_markers(inputs.destinations, inputs.batch, inputs.status),
        )
        self.store.put(geometry)

        if update.terminal:
            self._start_fading(update.drone_id)

    def _start_fading(self, drone_id: str):
        if drone_id in self._purges:
            return
        geometry = self.store.get(drone_id)
        if geometry is None:
            return

        fading = geometry.planned_path if geometry.planned_path is not None else ()
        self.store.put(replace(geometry, fading_path=tuple(fading)))
        self._purges[drone_id] = self.scheduler.call_later(self.grace_period, self._purge, drone_id)
        logger.debug(f"Geometry for {drone_id} fading, purge in {self.grace_period:.1f}s")

    def _purge(self, drone_id: str):
        self._purges.pop(drone_id, None)
        self._inputs.pop(drone_id, None)
        if self.store.remove(drone_id) is None:
            return
        logger.debug(f"Purged geometry for {drone_id}")
        if self.metrics is not None:
            self.metrics.record_counter('geometry_purged')
        self._notify()

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.exception(f"Geometry listener failed: {e}")
