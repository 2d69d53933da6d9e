# View Projection
# File: projection.py

"""
Read model for the rendering surface. Rebuilt from the two stores whenever
either changes or the connectivity signal flips; consumers only ever get the
immutable FleetView.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from fleet_state import FleetStateReconciler
from geometry import GeometryTracker
from models import (
    Batch, Capacity, DeliveryStatusUpdate, Path, Position, SystemStats, WaypointMarker,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DroneView:
    id: str
    display_number: int
    status: Optional[str]
    position: Optional[Position]
    progress: Optional[float]
    batch: Optional[Batch]
    capacity: Optional[Capacity]
    delivery_id: Optional[int]
    removing: bool
    planned_path: Optional[Path]
    waypoint_markers: Tuple[WaypointMarker, ...]
    fading_path: Optional[Path]


@dataclass(frozen=True)
class FleetView:
    drones: Tuple[DroneView, ...] = ()
    system: SystemStats = SystemStats()
    connected: bool = False
    recent_deliveries: Tuple[DeliveryStatusUpdate, ...] = ()
    version: int = 0

    def drone(self, drone_id: str) -> Optional[DroneView]:
        return next((d for d in self.drones if d.id == drone_id), None)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready form for the HTTP/WebSocket read model"""
        return {
            'version': self.version,
            'connected': self.connected,
            'system': {
                'active_drones': self.system.active_drones,
                'available_drones': self.system.available_drones,
                'active_simulations': self.system.active_simulations,
            },
            'drones': [drone_to_dict(d) for d in self.drones],
            'recent_deliveries': [delivery_to_dict(d) for d in self.recent_deliveries],
        }


def drone_to_dict(drone: DroneView) -> Dict[str, Any]:
    return {
        'id': drone.id,
        'display_number': drone.display_number,
        'status': drone.status,
        'position': drone.position.as_pair() if drone.position else None,
        'progress': drone.progress,
        'batch': asdict(drone.batch) if drone.batch else None,
        'capacity': asdict(drone.capacity) if drone.capacity else None,
        'delivery_id': drone.delivery_id,
        'removing': drone.removing,
        'planned_path': _path(drone.planned_path),
        'waypoint_markers': [
            {'position': m.position.as_pair(), 'step_index': m.step_index, 'completed': m.completed}
            for m in drone.waypoint_markers
        ],
        'fading_path': _path(drone.fading_path),
    }


def delivery_to_dict(event: DeliveryStatusUpdate) -> Dict[str, Any]:
    return {
        'drone_id': event.drone_id,
        'delivery_id': event.delivery_id,
        'status': getattr(event.outcome, 'value', event.outcome),
        'message': event.message,
    }


def _path(path: Optional[Path]):
    if path is None:
        return None
    return [p.as_pair() for p in path]


class ViewProjection:
    """Keeps an up-to-date FleetView"""

    def __init__(self, reconciler: FleetStateReconciler, tracker: GeometryTracker,
                 connected: Callable[[], bool] = lambda: False):
        """
        Args:
            reconciler: Source of entities, system stats and delivery history
            tracker: Source of geometry
            connected: Returns the debounced connectivity signal
        """
        self.reconciler = reconciler
        self.tracker = tracker
        self.connected = connected
        self._view = FleetView()
        self._listeners: List[Callable[[FleetView], None]] = []

        reconciler.add_listener(self.refresh)
        tracker.add_listener(self.refresh)

    def add_listener(self, listener: Callable[[FleetView], None]):
        self._listeners.append(listener)

    def current(self) -> FleetView:
        return self._view

    def refresh(self, *_):
        """Rebuild the view; accepts and ignores listener arguments"""
        entities = self.reconciler.snapshot()
        geometry = self.tracker.snapshot()

        drones = []
        for entity in sorted(entities.values(), key=lambda e: e.display_number):
            geo = geometry.get(entity.id)
            drones.append(DroneView(
                id=entity.id,
                display_number=entity.display_number,
                status=getattr(entity.status, 'value', entity.status),
                position=entity.position,
                progress=entity.progress,
                batch=entity.batch,
                capacity=entity.capacity,
                delivery_id=entity.delivery_id,
                removing=entity.removing,
                planned_path=geo.planned_path if geo else None,
                waypoint_markers=geo.waypoint_markers if geo else (),
                fading_path=geo.fading_path if geo else None,
            ))

        self._view = FleetView(
            drones=tuple(drones),
            system=self.reconciler.system,
            connected=self.connected(),
            recent_deliveries=tuple(self.reconciler.recent_deliveries),
            version=self._view.version + 1,
        )

        for listener in list(self._listeners):
            try:
                listener(self._view)
            except Exception as e:
                logger.exception(f"Projection listener failed: {e}")
        return self._view
