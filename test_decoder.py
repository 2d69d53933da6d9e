#!/usr/bin/env python3
"""Update decoder: payload validation and mapping to events"""

import json

import pytest

from config import TopicConfig
from decoder import UpdateDecoder
from errors import DecodeError
from models import (
    Batch, Capacity, DeliveryOutcome, DeliveryStatusUpdate, DroneStatus,
    DroneUpdate, FleetSnapshot, Position, SystemStateUpdate,
)
from monitoring import MetricsCollector

TOPICS = TopicConfig()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def decoder(metrics):
    return UpdateDecoder(TOPICS, clock=lambda: 42.0, metrics=metrics)


def test_full_drone_update(decoder):
    body = json.dumps({
        "droneId": "D1", "deliveryId": 7, "latitude": 55.94, "longitude": -3.19,
        "status": "FLYING", "progress": 0.25, "capacityUsed": 1.5, "totalCapacity": 4.0,
        "batchId": "B-1", "currentDeliveryInBatch": 2, "totalDeliveriesInBatch": 4,
        "route": [[55.94, -3.19], [55.95, -3.18]],
        "allDeliveryDestinations": [{"lat": 55.95, "lng": -3.18}],
    })
    event = decoder.decode(TOPICS.drone_updates, body)

    assert isinstance(event, DroneUpdate)
    assert event.drone_id == "D1"
    assert event.status is DroneStatus.FLYING
    assert event.position == Position(55.94, -3.19)
    assert event.batch == Batch("B-1", 2, 4)
    assert event.capacity == Capacity(1.5, 4.0)
    assert event.route == (Position(55.94, -3.19), Position(55.95, -3.18))
    assert event.destinations == (Position(55.95, -3.18),)
    assert event.received_at == 42.0


def test_partial_update_leaves_absent_fields_none(decoder):
    event = decoder.decode(TOPICS.drone_updates, '{"droneId": "D1", "status": "DELIVERING", "progress": 0.5}')
    assert event.status is DroneStatus.DELIVERING
    assert event.progress == 0.5
    assert event.position is None
    assert event.batch is None
    assert event.capacity is None


def test_nulls_and_incomplete_groups_are_absent(decoder):
    body = json.dumps({"droneId": "D1", "latitude": 55.9, "longitude": None,
                       "batchId": "B", "currentDeliveryInBatch": None, "totalDeliveriesInBatch": 3})
    event = decoder.decode(TOPICS.drone_updates, body)
    assert event.position is None
    assert event.batch is None


def test_numeric_drone_id_is_normalised(decoder):
    event = decoder.decode(TOPICS.drone_updates, '{"droneId": 3, "status": "flying"}')
    assert event.drone_id == "3"
    assert event.status is DroneStatus.FLYING


def test_unknown_status_is_preserved(decoder):
    event = decoder.decode(TOPICS.drone_updates, '{"droneId": "D1", "status": "HOVERING"}')
    assert event.status == "HOVERING"
    assert not event.terminal


def test_progress_is_clamped(decoder):
    event = decoder.decode(TOPICS.drone_updates, '{"droneId": "D1", "progress": 1.7}')
    assert event.progress == 1.0


def test_array_payload_is_a_snapshot(decoder):
    event = decoder.decode(TOPICS.drone_updates, '[{"droneId": "A"}, {"droneId": "B", "status": "FLYING"}]')
    assert isinstance(event, FleetSnapshot)
    assert event.drone_ids == frozenset({"A", "B"})


@pytest.mark.parametrize("body", [
    "{not json",
    "",
    "null",
    '"just a string"',
    '{"status": "FLYING"}',
    '{"droneId": ""}',
    '{"droneId": "D1", "latitude": "north"}',
    '[{"droneId": "A"}, {"nope": 1}]',
])
def test_malformed_drone_frames_are_dropped(decoder, metrics, body):
    assert decoder.decode(TOPICS.drone_updates, body) is None
    assert metrics.get_counter("decode_failures", {"topic": TOPICS.drone_updates}) == 1


def test_parse_raises_decode_error(decoder):
    with pytest.raises(DecodeError) as info:
        decoder.parse(TOPICS.drone_updates, '{"latitude": 1}')
    assert info.value.topic == TOPICS.drone_updates


def test_invalid_utf8_body_is_a_decode_error(decoder):
    body = b'{"droneId": "\xff"}'.decode("utf-8", errors="surrogateescape")
    with pytest.raises(DecodeError) as info:
        decoder.parse(TOPICS.drone_updates, body)
    assert "utf-8" in info.value.reason


def test_unknown_topic_is_dropped(decoder):
    assert decoder.decode("/topic/other", '{"droneId": "D1"}') is None


def test_system_state(decoder):
    event = decoder.decode(TOPICS.system_state, '{"activeDrones": 3, "availableDrones": 5}')
    assert isinstance(event, SystemStateUpdate)
    assert event.stats.active_drones == 3
    assert event.stats.available_drones == 5
    assert event.stats.active_simulations is None

    assert decoder.decode(TOPICS.system_state, '{"availableDrones": 5}') is None


def test_delivery_status(decoder):
    event = decoder.decode(TOPICS.delivery_status,
                           '{"deliveryId": 12, "droneId": "D1", "status": "COMPLETED", "message": "ok"}')
    assert isinstance(event, DeliveryStatusUpdate)
    assert event.outcome is DeliveryOutcome.COMPLETED
    assert event.delivery_id == 12

    odd = decoder.decode(TOPICS.delivery_status, '{"droneId": "D1", "status": "DELAYED"}')
    assert odd.outcome == "DELAYED"
