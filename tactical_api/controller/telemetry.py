# telemetry.py
import asyncio
import json
import logging
import math
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Dict, Optional

from pyproj import Geod

from .errors import ParseError, ValidationError
from .models import DroneUpdate, Location, TrackedDrone
from .publisher import TELEMETRY_EVENT

logger = logging.getLogger(__name__)

DEFAULT_DRONE_ID = "team-drone-1"
DEFAULT_DRONE_NAME = "Team Drone 1"

_GEOD = Geod(ellps="WGS84")


def parse_number(value) -> Optional[float]:
    """Finite float from a number or numeric string, else None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def parse_telemetry_json(raw) -> dict:
    """Decode an MQTT/file payload into a mapping; raises ParseError."""
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        payload = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(f"Telemetry payload is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise ParseError("Telemetry payload must be a JSON object")
    return payload


def fix_coordinates(lat: float, lng: float):
    # swapped axes: latitude can't exceed 90
    if abs(lat) > 90 and abs(lng) <= 90:
        lat, lng = lng, lat
    if abs(lat) > 90 or abs(lng) > 180:
        raise ValidationError(f"Coordinates out of range: lat={lat}, lng={lng}")
    return lat, lng


def normalize_update(raw, default_id=DEFAULT_DRONE_ID, source="http") -> DroneUpdate:
    if not isinstance(raw, Mapping):
        raise ValidationError("Telemetry payload must be an object")

    lng_raw = raw.get("lng")
    if lng_raw is None or lng_raw == "":
        lng_raw = raw.get("lon")
    lat = parse_number(raw.get("lat"))
    lng = parse_number(lng_raw)
    if lat is None or lng is None:
        raise ValidationError("lat and lng (or lon) are required and must be numeric")
    lat, lng = fix_coordinates(lat, lng)

    height = 0.0
    if raw.get("height") not in (None, ""):
        height = parse_number(raw.get("height"))
        if height is None:
            logger.warning(f"[TELEMETRY] Ignoring non-numeric height {raw.get('height')!r}")
            height = 0.0
    # upstream reports altitude with inverted sign
    if height < 0:
        height = -height

    drone_id = str(raw.get("id") or default_id)
    name = raw.get("name")
    return DroneUpdate(
        id=drone_id,
        name=str(name) if name else None,
        lat=lat,
        lng=lng,
        height=height,
        source=source,
    )


def compute_heading(previous: Location, current: Location) -> float:
    azimuth, _, _ = _GEOD.inv(previous.lng, previous.lat, current.lng, current.lat)
    return (azimuth + 360) % 360


def distance_m(previous: Location, current: Location) -> float:
    _, _, dist = _GEOD.inv(previous.lng, previous.lat, current.lng, current.lat)
    return dist


def _utcnow():
    return datetime.now(timezone.utc)


class TeamDroneRegistry:
    """In-memory registry of tracked drones, one record per id.

    Updates are applied in arrival order and fully overwrite the previous
    record (last writer wins); the prior location is kept as
    `previousLocation`. Every accepted update broadcasts the whole registry.
    """

    def __init__(self, publisher=None, default_id=DEFAULT_DRONE_ID, default_name=DEFAULT_DRONE_NAME, clock=_utcnow):
        self.publisher = publisher
        self.default_id = default_id
        self.default_name = default_name
        self.clock = clock
        self._drones: Dict[str, TrackedDrone] = {}
        self._lock = asyncio.Lock()

    def get(self, drone_id=None) -> Optional[TrackedDrone]:
        return self._drones.get(drone_id or self.default_id)

    def all(self):
        return list(self._drones.values())

    def snapshot(self) -> dict:
        return {
            "drones": [drone.to_payload() for drone in self._drones.values()],
            "timestamp": self.clock().isoformat(),
        }

    def apply(self, update: DroneUpdate) -> TrackedDrone:
        """Merge one normalized update. Synchronous, so it is atomic on the loop."""
        now = self.clock()
        location = Location(lat=update.lat, lng=update.lng)
        existing = self._drones.get(update.id)

        previous = None
        heading = None
        speed = 0.0
        name = update.name or self.default_name
        if existing is not None:
            previous = existing.location
            heading = existing.heading
            name = update.name or existing.name
            if (previous.lat, previous.lng) != (location.lat, location.lng):
                heading = compute_heading(previous, location)
                elapsed = (now - existing.lastUpdate).total_seconds()
                if elapsed > 0:
                    speed = distance_m(previous, location) / elapsed

        drone = TrackedDrone(
            id=update.id,
            name=name,
            status="active",
            location=location,
            previousLocation=previous,
            height=update.height,
            heading=heading,
            speed=speed,
            lastUpdate=now,
            source=update.source,
        )
        self._drones[update.id] = drone
        return drone

    async def submit(self, raw, source="http") -> TrackedDrone:
        """Validate, merge and broadcast; raises ValidationError on a bad payload."""
        update = normalize_update(raw, default_id=self.default_id, source=source)
        async with self._lock:
            drone = self.apply(update)
            logger.info(
                f"[TELEMETRY] {drone.id} via {source}: "
                f"({drone.location.lat:.6f}, {drone.location.lng:.6f}) h={drone.height}"
            )
            if self.publisher is not None:
                await self.publisher.broadcast(TELEMETRY_EVENT, self.snapshot())
        return drone

    async def update_entity(self, raw, source="http") -> bool:
        try:
            await self.submit(raw, source=source)
        except ValidationError as e:
            logger.warning(f"[TELEMETRY] Rejected update from {source}: {e.message}")
            return False
        return True
