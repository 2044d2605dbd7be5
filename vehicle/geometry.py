from __future__ import annotations

from typing import Dict, Sequence

from shapely.geometry import LineString, Point, mapping

from .services import Waypoint, path_length_km, round_half_up


def route_geometry(route: Sequence[Waypoint]):
    # GeoJSON axis order is (lng, lat).
    coords = [(waypoint.longitude, waypoint.latitude) for waypoint in route]
    if len(coords) == 1:
        return Point(coords[0])
    return LineString(coords)


def route_feature(route: Sequence[Waypoint]) -> Dict:
    """
    Describe the whole route as a GeoJSON Feature for the map layer.

    ``bounds`` is given in Leaflet order, ``[[south, west], [north, east]]``.
    """
    geometry = route_geometry(route)
    min_lng, min_lat, max_lng, max_lat = geometry.bounds
    return {
        "type": "Feature",
        "geometry": mapping(geometry),
        "properties": {
            "totalPoints": len(route),
            "lengthMeters": round_half_up(path_length_km(route) * 1000),
            "bounds": [[min_lat, min_lng], [max_lat, max_lng]],
        },
    }
