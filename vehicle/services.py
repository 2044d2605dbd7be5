"""
Time-driven simulation of a single vehicle replaying a recorded route.
"""
from __future__ import annotations

import json
import logging
import math
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
DEFAULT_STEP_SECONDS = 3.0
DEFAULT_ROUTE_FILE = Path(__file__).resolve().parent / "data" / "vehicle_route.json"


class DatasetError(Exception):
    """The route dataset is missing, empty or malformed."""


@dataclass(frozen=True)
class Waypoint:
    latitude: float
    longitude: float
    timestamp: str
    speed: float
    heading: float

    @property
    def coords(self) -> Tuple[float, float]:
        return self.latitude, self.longitude

    @classmethod
    def from_dict(cls, record: Dict, position: int = 0) -> "Waypoint":
        if not isinstance(record, dict):
            raise DatasetError(f"Waypoint {position} is not an object.")
        try:
            latitude = record["latitude"]
            longitude = record["longitude"]
        except KeyError as exc:
            raise DatasetError(f"Waypoint {position} is missing {exc.args[0]!r}.") from exc

        values = {
            "latitude": latitude,
            "longitude": longitude,
            "speed": record.get("speed", 0.0),
            "heading": record.get("heading", 0.0),
        }
        for key, value in values.items():
            # bool is an int subclass but never a valid coordinate.
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise DatasetError(f"Waypoint {position} has a non-numeric {key}: {value!r}")
            if not math.isfinite(value):
                raise DatasetError(f"Waypoint {position} has a non-finite {key}: {value!r}")

        return cls(
            latitude=float(values["latitude"]),
            longitude=float(values["longitude"]),
            timestamp=str(record.get("timestamp", "")),
            speed=float(values["speed"]),
            heading=float(values["heading"]),
        )

    def as_dict(self) -> Dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": self.timestamp,
            "speed": self.speed,
            "heading": self.heading,
        }


@dataclass(frozen=True)
class PositionReport:
    current: Waypoint
    next: Waypoint
    route: Tuple[Waypoint, ...]
    progress: int
    total_distance: int
    current_index: int
    total_points: int
    is_complete: bool

    def as_dict(self) -> Dict:
        return {
            "current": self.current.as_dict(),
            "next": self.next.as_dict(),
            "route": [waypoint.as_dict() for waypoint in self.route],
            "progress": self.progress,
            "totalDistance": self.total_distance,
            "currentIndex": self.current_index,
            "totalPoints": self.total_points,
            "isComplete": self.is_complete,
        }


def haversine_km(start: Tuple[float, float], end: Tuple[float, float]) -> float:
    """
    Compute the great-circle distance between two coordinates in kilometres.
    """
    lat1, lng1 = map(math.radians, start)
    lat2, lng2 = map(math.radians, end)
    d_lat = lat2 - lat1
    d_lng = lng2 - lng1
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def path_length_km(points: Sequence[Waypoint]) -> float:
    return sum(
        haversine_km(start.coords, end.coords)
        for start, end in zip(points[:-1], points[1:])
    )


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def load_route(path: Path | str) -> Tuple[Waypoint, ...]:
    """
    Read the bundled waypoint file. Raises DatasetError for anything other
    than a non-empty JSON list of waypoint objects.
    """
    path = Path(path)
    try:
        with path.open(encoding="utf-8") as handle:
            payload = json.load(handle)
    except OSError as exc:
        raise DatasetError(f"Cannot read route dataset {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise DatasetError(f"Route dataset {path} is not valid JSON: {exc}") from exc

    if not isinstance(payload, list) or not payload:
        raise DatasetError(f"Route dataset {path} must be a non-empty list of waypoints.")

    route = tuple(Waypoint.from_dict(record, position) for position, record in enumerate(payload))
    logger.info(f"Loaded {len(route)} waypoints from {path}")
    return route


class SimulationState:
    """
    Owns the simulation clock. The index along the route is re-derived from
    elapsed time on every query, one waypoint per step.

    ``start_time`` and ``current_index`` are read and written together under
    a lock so a query never sees a half-applied reset.
    """

    def __init__(
        self,
        route: Optional[Sequence[Waypoint]],
        step_seconds: float = DEFAULT_STEP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        load_error: Optional[DatasetError] = None,
    ):
        if step_seconds <= 0:
            raise ValueError("step_seconds must be positive.")
        self.route: Optional[Tuple[Waypoint, ...]] = tuple(route) if route is not None else None
        self.step_seconds = float(step_seconds)
        self.clock = clock
        self.load_error = load_error
        self._lock = threading.Lock()
        self.start_time = clock()
        self.current_index = 0

    @classmethod
    def from_file(
        cls,
        path: Path | str,
        step_seconds: float = DEFAULT_STEP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> "SimulationState":
        """
        Build a state from a dataset file. A broken dataset is kept as the
        load error so that queries fail while the process stays up.
        """
        try:
            route = load_route(path)
        except DatasetError as exc:
            logger.error(f"Vehicle route unavailable: {exc}")
            return cls(None, step_seconds=step_seconds, clock=clock, load_error=exc)
        return cls(route, step_seconds=step_seconds, clock=clock)

    def waypoints(self) -> Tuple[Waypoint, ...]:
        if not self.route:
            if self.load_error is not None:
                # The stored error is never re-raised, so its traceback stays fixed.
                raise DatasetError(str(self.load_error)) from self.load_error
            raise DatasetError("Route dataset is empty.")
        return self.route

    def reset(self) -> None:
        with self._lock:
            self.start_time = self.clock()
            self.current_index = 0
        logger.info("Simulation reset")

    def index_at(self, now: float) -> int:
        route = self.waypoints()
        with self._lock:
            elapsed = max(now - self.start_time, 0.0)
            buckets = int(elapsed // self.step_seconds)
            self.current_index = buckets % len(route)
            return self.current_index

    def position_report(self) -> PositionReport:
        route = self.waypoints()
        index = self.index_at(self.clock())
        total_points = len(route)

        prefix = route[: index + 1]
        distance_km = path_length_km(prefix)

        return PositionReport(
            current=route[index],
            next=route[(index + 1) % total_points],
            route=prefix,
            progress=round_half_up((index + 1) / total_points * 100),
            total_distance=round_half_up(distance_km * 1000),
            current_index=index,
            total_points=total_points,
            is_complete=index >= total_points - 1,
        )


def get_simulation() -> SimulationState:
    """
    Return the simulation owned by the ``vehicle`` app.
    """
    from django.apps import apps

    return apps.get_app_config("vehicle").simulation
