from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import RecordingPublisher
from tactical_api.controller.errors import ParseError, ValidationError
from tactical_api.controller.telemetry import (
    TeamDroneRegistry,
    normalize_update,
    parse_number,
    parse_telemetry_json,
)


class StepClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now


def _registry(publisher=None) -> TeamDroneRegistry:
    return TeamDroneRegistry(publisher, default_id="team-drone-1", default_name="Alpha", clock=StepClock())


def test_string_update_is_normalized() -> None:
    registry = _registry()

    ok = asyncio.run(registry.update_entity({"lat": "13.75", "lng": "100.50", "height": "-12.3"}))

    drone = registry.get()
    assert ok is True
    assert drone.location.lat == 13.75
    assert drone.location.lng == 100.5
    assert drone.height == 12.3
    assert drone.status == "active"
    assert drone.previousLocation is None


@pytest.mark.parametrize("height", [-0.5, -12.3, -400.0, "-7"])
def test_negative_height_is_mirrored(height) -> None:
    update = normalize_update({"lat": 1, "lng": 2, "height": height})

    assert update.height == abs(float(height))


def test_same_update_twice_keeps_state_and_tracks_previous() -> None:
    registry = _registry()
    payload = {"lat": 13.75, "lng": 100.5, "height": 20}

    async def scenario():
        await registry.update_entity(payload)
        first = registry.get()
        await registry.update_entity(payload)
        return first, registry.get()

    first, second = asyncio.run(scenario())

    assert second.status == first.status == "active"
    assert second.location == first.location
    assert second.previousLocation == first.location
    assert second.lastUpdate > first.lastUpdate
    assert len(registry.all()) == 1


def test_movement_derives_heading_and_speed() -> None:
    registry = _registry()

    async def scenario():
        await registry.update_entity({"lat": 0.0, "lng": 0.0})
        await registry.update_entity({"lat": 0.001, "lng": 0.0})

    asyncio.run(scenario())

    drone = registry.get()
    assert drone.heading == pytest.approx(0.0, abs=1e-6)
    # ~110.6 m over one clock step of 1 s
    assert drone.speed == pytest.approx(110.6, abs=1.0)


def test_lon_alias_and_rejections() -> None:
    registry = _registry()

    async def scenario():
        return [
            await registry.update_entity({"lat": "1.5", "lon": "2.5"}),
            await registry.update_entity({"lat": "north", "lng": "2"}),
            await registry.update_entity({"lng": "2"}),
            await registry.update_entity({"lat": "nan", "lng": "2"}),
            await registry.update_entity(["not", "a", "mapping"]),
            await registry.update_entity({"lat": 95, "lng": 200}),
        ]

    results = asyncio.run(scenario())

    assert results == [True, False, False, False, False, False]
    assert registry.get().location.lng == 2.5


def test_swapped_axes_are_fixed() -> None:
    update = normalize_update({"lat": 100.5, "lng": 13.75})

    assert (update.lat, update.lng) == (13.75, 100.5)


def test_submit_raises_validation_error() -> None:
    with pytest.raises(ValidationError):
        asyncio.run(_registry().submit({"lat": None, "lng": 1}))


def test_accepted_update_broadcasts_full_registry() -> None:
    publisher = RecordingPublisher()
    registry = _registry(publisher)

    async def scenario():
        await registry.update_entity({"lat": 1, "lng": 1})
        await registry.update_entity({"id": "scout-2", "name": "Scout", "lat": 2, "lng": 2})
        await registry.update_entity({"lat": "bad", "lng": 2})

    asyncio.run(scenario())

    assert len(publisher.calls) == 2
    event, payload = publisher.calls[-1]
    assert event == "team-drones-update"
    assert [d["id"] for d in payload["drones"]] == ["team-drone-1", "scout-2"]
    assert payload["drones"][1]["name"] == "Scout"
    assert isinstance(payload["drones"][0]["lastUpdate"], str)


def test_parse_helpers() -> None:
    assert parse_number(" 4.5 ") == 4.5
    assert parse_number(True) is None
    assert parse_number("inf") is None
    assert parse_telemetry_json(b'{"lat": 1}') == {"lat": 1}
    with pytest.raises(ParseError):
        parse_telemetry_json(b"{nope")
    with pytest.raises(ParseError):
        parse_telemetry_json("[1, 2]")
