# models.py

from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from datetime import datetime


class Location(BaseModel):
    lat: float
    lng: float


class DroneUpdate(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    lat: float
    lng: float
    height: float = 0.0
    source: str = "http"


class TrackedDrone(BaseModel):
    id: str
    name: str
    status: str = "active"
    location: Location
    previousLocation: Optional[Location] = None
    height: float = 0.0
    heading: Optional[float] = None
    speed: float = 0.0
    lastUpdate: datetime
    source: str = "http"

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump()
        payload["lastUpdate"] = self.lastUpdate.isoformat()
        return payload


class CsvTable(BaseModel):
    headers: List[str]
    data: List[Dict[str, str]]
