# Fleet Data Models
# File: models.py

"""
Domain types shared by the decoder, reconciler, geometry tracker and view
projection. Entities and geometry are frozen: stores swap whole records on
every merge, so readers holding a snapshot never see it change.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple, Union

# ============================================================================
# ENUMS
# ============================================================================

class DroneStatus(str, Enum):
    DEPLOYING = "DEPLOYING"
    FLYING = "FLYING"
    DELIVERING = "DELIVERING"
    RETURNING = "RETURNING"
    COMPLETED = "COMPLETED"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional[Union["DroneStatus", str]]:
        """Known statuses become enum members, anything else is kept verbatim"""
        if value is None:
            return None
        try:
            return cls(value.upper())
        except ValueError:
            return value


class DeliveryOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


# Statuses after which every stop of a batch counts as served
STOPS_SERVED_STATUSES = (DroneStatus.COMPLETED, DroneStatus.RETURNING)

# ============================================================================
# VALUE TYPES
# ============================================================================

@dataclass(frozen=True)
class Position:
    lat: float
    lon: float

    def as_pair(self) -> Tuple[float, float]:
        return (self.lat, self.lon)


Path = Tuple[Position, ...]


@dataclass(frozen=True)
class Batch:
    """Multi-stop order progress; step_index is the backend's currentDeliveryInBatch"""
    batch_id: str
    step_index: int
    step_count: int

    @property
    def on_last_stop(self) -> bool:
        return self.step_index >= self.step_count


@dataclass(frozen=True)
class Capacity:
    used: float
    total: float


@dataclass(frozen=True)
class SystemStats:
    active_drones: int = 0
    available_drones: Optional[int] = None
    active_simulations: Optional[int] = None
    received_at: Optional[float] = None

# ============================================================================
# ENTITIES
# ============================================================================

@dataclass(frozen=True)
class DroneEntity:
    id: str
    display_number: int
    status: Optional[Union[DroneStatus, str]] = None
    position: Optional[Position] = None
    progress: Optional[float] = None
    batch: Optional[Batch] = None
    capacity: Optional[Capacity] = None
    delivery_id: Optional[int] = None
    first_seen: float = 0.0
    last_update: float = 0.0
    removing: bool = False  # terminal, waiting out the grace period


@dataclass(frozen=True)
class WaypointMarker:
    position: Position
    step_index: int
    completed: bool


@dataclass(frozen=True)
class FlightGeometry:
    drone_id: str
    planned_path: Optional[Path] = None
    waypoint_markers: Tuple[WaypointMarker, ...] = ()
    fading_path: Optional[Path] = None

    @property
    def fading(self) -> bool:
        return self.fading_path is not None

# ============================================================================
# EVENTS
# ============================================================================

@dataclass(frozen=True)
class DroneUpdate:
    """Partial drone state; None means the field was not in the frame"""
    drone_id: str
    status: Optional[Union[DroneStatus, str]] = None
    position: Optional[Position] = None
    progress: Optional[float] = None
    batch: Optional[Batch] = None
    capacity: Optional[Capacity] = None
    delivery_id: Optional[int] = None
    route: Optional[Path] = None
    destinations: Optional[Path] = None
    received_at: float = 0.0

    event_type = "drone_update"

    @property
    def terminal(self) -> bool:
        return self.status == DroneStatus.COMPLETED


@dataclass(frozen=True)
class FleetSnapshot:
    """Array payload on the drone topic: every live drone, absent ids are gone"""
    updates: Tuple[DroneUpdate, ...] = ()
    received_at: float = 0.0

    event_type = "fleet_snapshot"

    @property
    def drone_ids(self) -> frozenset:
        return frozenset(u.drone_id for u in self.updates)


@dataclass(frozen=True)
class SystemStateUpdate:
    stats: SystemStats = field(default_factory=SystemStats)
    received_at: float = 0.0

    event_type = "system_state"


@dataclass(frozen=True)
class DeliveryStatusUpdate:
    drone_id: str
    outcome: Union[DeliveryOutcome, str]
    delivery_id: Optional[int] = None
    message: Optional[str] = None
    received_at: float = 0.0

    event_type = "delivery_status"


FleetEvent = Union[DroneUpdate, FleetSnapshot, SystemStateUpdate, DeliveryStatusUpdate]


def delivery_ends_mission(event: DeliveryStatusUpdate, batch: Optional[Batch]) -> bool:
    """
    A finished delivery ends the drone's mission unless more batch stops remain

    Args:
        event: Delivery status event
        batch: Last batch known for the drone, if any

    Returns:
        True when the drone should start its removal grace period
    """
    if event.outcome not in (DeliveryOutcome.COMPLETED, DeliveryOutcome.FAILED):
        return False
    return batch is None or batch.on_last_stop


def compute_markers(destinations: Optional[Path], batch: Optional[Batch],
                    status) -> Tuple[WaypointMarker, ...]:
    """Recompute every stop's completion flag from scratch"""
    if not destinations:
        return ()
    current = batch.step_index if batch is not None else 0
    all_served = status in STOPS_SERVED_STATUSES
    return tuple(
        WaypointMarker(position=pos, step_index=idx, completed=all_served or idx < current)
        for idx, pos in enumerate(destinations)
    )
