# Update Decoder
# File: decoder.py

"""
Turns raw frame bodies into typed fleet events.

Payload shapes are declared as pydantic models. A body that is not JSON or
that fails validation is logged, counted and dropped; decode failures are
never retried and never reach the connection.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import TopicConfig
from errors import DecodeError
from models import (
    Batch, Capacity, DeliveryOutcome, DeliveryStatusUpdate, DroneStatus,
    DroneUpdate, FleetEvent, FleetSnapshot, Position, SystemStats,
    SystemStateUpdate,
)
from monitoring import MetricsCollector

logger = logging.getLogger(__name__)

# ============================================================================
# PAYLOAD MODELS
# ============================================================================

class PayloadModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _as_id(value: Any) -> Any:
    # Drone ids arrive as strings or integers depending on backend version
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(int(value)) if float(value).is_integer() else str(value)
    return value


def _as_point(value: Any) -> Any:
    if isinstance(value, dict):
        lat = value.get('lat', value.get('latitude'))
        lon = value.get('lng', value.get('lon', value.get('longitude')))
        return (lat, lon)
    return value


class DroneUpdatePayload(PayloadModel):
    drone_id: str = Field(alias="droneId", min_length=1)
    delivery_id: Optional[int] = Field(None, alias="deliveryId")
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    status: Optional[str] = None
    progress: Optional[float] = None
    capacity_used: Optional[float] = Field(None, alias="capacityUsed")
    total_capacity: Optional[float] = Field(None, alias="totalCapacity")
    batch_id: Optional[str] = Field(None, alias="batchId")
    current_delivery_in_batch: Optional[int] = Field(None, alias="currentDeliveryInBatch")
    total_deliveries_in_batch: Optional[int] = Field(None, alias="totalDeliveriesInBatch")
    route: Optional[List[Tuple[float, float]]] = None
    all_delivery_destinations: Optional[List[Tuple[float, float]]] = Field(
        None, alias="allDeliveryDestinations")

    @field_validator("drone_id", mode="before")
    @classmethod
    def _normalise_id(cls, value):
        return _as_id(value)

    @field_validator("batch_id", mode="before")
    @classmethod
    def _normalise_batch_id(cls, value):
        return _as_id(value)

    @field_validator("route", "all_delivery_destinations", mode="before")
    @classmethod
    def _normalise_points(cls, value):
        if isinstance(value, list):
            return [_as_point(point) for point in value]
        return value


class SystemStatePayload(PayloadModel):
    active_drones: int = Field(alias="activeDrones", ge=0)
    available_drones: Optional[int] = Field(None, alias="availableDrones")
    active_simulations: Optional[int] = Field(None, alias="activeSimulations")


class DeliveryStatusPayload(PayloadModel):
    drone_id: str = Field(alias="droneId", min_length=1)
    status: str
    delivery_id: Optional[int] = Field(None, alias="deliveryId")
    message: Optional[str] = None

    @field_validator("drone_id", mode="before")
    @classmethod
    def _normalise_id(cls, value):
        return _as_id(value)

# ============================================================================
# DECODER
# ============================================================================

class UpdateDecoder:
    """Topic-aware payload decoder"""

    def __init__(self, topics: TopicConfig, clock: Callable[[], float],
                 metrics: Optional[MetricsCollector] = None):
        """
        Args:
            topics: Topic names; each maps to one payload kind
            clock: Time source stamped on every event as received_at
            metrics: Optional collector for decode counters
        """
        self.clock = clock
        self.metrics = metrics
        self._parsers: Dict[str, Callable[[Any, float], FleetEvent]] = {
            topics.drone_updates: self._drone_event,
            topics.system_state: self._system_event,
            topics.delivery_status: self._delivery_event,
        }

    def decode(self, topic: str, raw: Union[str, bytes]) -> Optional[FleetEvent]:
        """
        Decode one frame body

        Args:
            topic: Destination the frame arrived on
            raw: Frame body

        Returns:
            Typed event, or None if the frame was dropped
        """
        try:
            event = self.parse(topic, raw)
        except DecodeError as e:
            logger.warning(f"Dropping frame on {e.topic}: {e.reason}")
            if self.metrics is not None:
                self.metrics.record_counter('decode_failures', labels={'topic': topic})
            return None

        if self.metrics is not None:
            self.metrics.record_counter('events_decoded', labels={'event': event.event_type})
        return event

    def parse(self, topic: str, raw: Union[str, bytes]) -> FleetEvent:
        """
        Like decode() but raising instead of logging

        Raises:
            DecodeError: unknown topic, invalid JSON or invalid payload
        """
        parser = self._parsers.get(topic)
        if parser is None:
            raise DecodeError(topic, "no decoder for topic")

        if isinstance(raw, str):
            try:
                raw.encode("utf-8")
            except UnicodeEncodeError:
                raise DecodeError(topic, "body is not valid utf-8") from None

        try:
            data = json.loads(raw)
        except (ValueError, TypeError) as e:
            raise DecodeError(topic, f"malformed JSON ({e})") from None

        try:
            return parser(data, self.clock())
        except ValidationError as e:
            raise DecodeError(topic, _summarise(e)) from None

    def _drone_event(self, data: Any, now: float) -> FleetEvent:
        if isinstance(data, list):
            updates = tuple(
                _to_drone_update(DroneUpdatePayload.model_validate(item), now)
                for item in data
            )
            return FleetSnapshot(updates=updates, received_at=now)
        return _to_drone_update(DroneUpdatePayload.model_validate(data), now)

    def _system_event(self, data: Any, now: float) -> FleetEvent:
        payload = SystemStatePayload.model_validate(data)
        return SystemStateUpdate(
            stats=SystemStats(
                active_drones=payload.active_drones,
                available_drones=payload.available_drones,
                active_simulations=payload.active_simulations,
                received_at=now,
            ),
            received_at=now,
        )

    def _delivery_event(self, data: Any, now: float) -> FleetEvent:
        payload = DeliveryStatusPayload.model_validate(data)
        try:
            outcome = DeliveryOutcome(payload.status.upper())
        except ValueError:
            outcome = payload.status
        return DeliveryStatusUpdate(
            drone_id=payload.drone_id,
            outcome=outcome,
            delivery_id=payload.delivery_id,
            message=payload.message,
            received_at=now,
        )


def _to_drone_update(payload: DroneUpdatePayload, now: float) -> DroneUpdate:
    position = None
    if payload.latitude is not None and payload.longitude is not None:
        position = Position(payload.latitude, payload.longitude)

    batch = None
    if (payload.batch_id is not None and payload.current_delivery_in_batch is not None
            and payload.total_deliveries_in_batch is not None):
        batch = Batch(
            batch_id=payload.batch_id,
            step_index=payload.current_delivery_in_batch,
            step_count=payload.total_deliveries_in_batch,
        )

    capacity = None
    if payload.capacity_used is not None and payload.total_capacity is not None:
        capacity = Capacity(used=payload.capacity_used, total=payload.total_capacity)

    progress = payload.progress
    if progress is not None:
        progress = min(max(progress, 0.0), 1.0)

    return DroneUpdate(
        drone_id=payload.drone_id,
        status=DroneStatus.parse(payload.status),
        position=position,
        progress=progress,
        batch=batch,
        capacity=capacity,
        delivery_id=payload.delivery_id,
        route=_to_path(payload.route),
        destinations=_to_path(payload.all_delivery_destinations),
        received_at=now,
    )


def _to_path(points) -> Optional[Tuple[Position, ...]]:
    if not points:
        return None
    return tuple(Position(lat, lon) for lat, lon in points)


def _summarise(error: ValidationError) -> str:
    parts = []
    for item in error.errors()[:3]:
        location = '.'.join(str(p) for p in item.get('loc', ()))
        parts.append(f"{location or 'payload'}: {item.get('msg')}")
    return '; '.join(parts)
