"""GPX parsing into a distance-annotated track.

`parse_gpx` turns GPX markup into a `Track`: every track point and route point
in document order, each annotated with the cumulative haversine distance from
the first point, plus route aggregates (distance, elevation gain/loss,
min/max elevation).
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import gpxpy
import gpxpy.gpx
import numpy as np

from routecast.backend.errors import ParseError, UploadTooLargeError

log = logging.getLogger('routecast.gpx')

EARTH_RADIUS_KM = 6371.0
DEFAULT_ROUTE_NAME = 'Unnamed Route'
LOOP_THRESHOLD_KM = 0.5

_POINT_TAG_RE = re.compile(r'<(trkpt|rtept)\b([^>]*)>', re.IGNORECASE)
_ATTR_RE = {
    'lat': re.compile(r'\blat\s*=\s*["\']([^"\']*)["\']'),
    'lon': re.compile(r'\blon\s*=\s*["\']([^"\']*)["\']'),
}


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute haversine distance between two lat/lon points in kilometers."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def haversine_km_array(lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    """Distances between consecutive coordinates (length n-1)."""
    phi = np.radians(lats)
    dphi = np.diff(phi)
    dlambda = np.radians(np.diff(lons))
    a = np.sin(dphi / 2) ** 2 + np.cos(phi[:-1]) * np.cos(phi[1:]) * np.sin(dlambda / 2) ** 2
    c = 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


@dataclass(frozen=True)
class TrackPoint:
    lat: float
    lon: float
    elevation: float = 0.0
    time: Optional[datetime] = None
    distance: float = 0.0  # km from first point


@dataclass(frozen=True)
class Track:
    name: str
    points: Tuple[TrackPoint, ...]
    total_distance: float
    elevation_gain: float
    elevation_loss: float
    max_elevation: float
    min_elevation: float

    @property
    def is_loop(self) -> bool:
        if len(self.points) < 2:
            return False
        first, last = self.points[0], self.points[-1]
        return haversine_km(first.lat, first.lon, last.lat, last.lon) < LOOP_THRESHOLD_KM

    def summary(self) -> Dict[str, Any]:
        first = self.points[0] if self.points else None
        last = self.points[-1] if self.points else None
        return {
            'name': self.name,
            'total_distance_km': round(self.total_distance, 3),
            'elevation_gain_m': round(self.elevation_gain, 1),
            'elevation_loss_m': round(self.elevation_loss, 1),
            'max_elevation_m': self.max_elevation,
            'min_elevation_m': self.min_elevation,
            'points_count': len(self.points),
            'start': [first.lat, first.lon] if first else None,
            'end': [last.lat, last.lon] if last else None,
            'is_loop': self.is_loop,
        }

    def to_geojson(self) -> Dict[str, Any]:
        line_coords = [[p.lon, p.lat] for p in self.points]
        return {
            'type': 'Feature',
            'geometry': {'type': 'LineString', 'coordinates': line_coords},
            'properties': {'name': self.name, 'total_distance_km': self.total_distance},
        }


def _coerce_text(content: Union[str, bytes]) -> str:
    if isinstance(content, bytes):
        try:
            content = content.decode('utf-8-sig')
        except UnicodeDecodeError as e:
            raise ParseError(f"GPX file is not valid UTF-8: {e}")
    return content.strip()


def _locate_bad_point(text: str) -> Optional[Tuple[int, str]]:
    """Find the first trkpt/rtept whose lat/lon attribute is not a number."""
    for idx, m in enumerate(_POINT_TAG_RE.finditer(text)):
        attrs = m.group(2)
        for attr, rx in _ATTR_RE.items():
            found = rx.search(attrs)
            if found is None:
                return idx, f"missing '{attr}' attribute"
            try:
                float(found.group(1))
            except ValueError:
                return idx, f"non-numeric {attr}={found.group(1)!r}"
    return None


def _routes_first(text: str) -> bool:
    rte = re.search(r'<rte[\s>]', text)
    trk = re.search(r'<trk[\s>]', text)
    return rte is not None and (trk is None or rte.start() < trk.start())


def _collect_points(gpx: gpxpy.gpx.GPX, text: str) -> List[Any]:
    track_points = [p for track in gpx.tracks for seg in track.segments for p in seg.points]
    route_points = [p for route in gpx.routes for p in route.points]
    if _routes_first(text):
        return route_points + track_points
    return track_points + route_points


def _route_name(gpx: gpxpy.gpx.GPX) -> str:
    for candidate in [gpx.name] + [t.name for t in gpx.tracks] + [r.name for r in gpx.routes]:
        if candidate and candidate.strip():
            return candidate.strip()
    return DEFAULT_ROUTE_NAME


def _check_point(idx: int, lat: Any, lon: Any, ele: float) -> None:
    if lat is None or lon is None:
        raise ParseError(f"Point {idx}: missing latitude/longitude", point_index=idx)
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise ParseError(f"Point {idx}: latitude/longitude must be finite numbers (lat={lat}, lon={lon})", point_index=idx)
    if not -90.0 <= lat <= 90.0:
        raise ParseError(f"Point {idx}: latitude {lat} outside [-90, 90]", point_index=idx)
    if not -180.0 <= lon <= 180.0:
        raise ParseError(f"Point {idx}: longitude {lon} outside [-180, 180]", point_index=idx)
    if not math.isfinite(ele):
        raise ParseError(f"Point {idx}: elevation must be a finite number", point_index=idx)


def parse_gpx(content: Union[str, bytes]) -> Track:
    """Parse GPX markup into a `Track`.

    Raises:
        ParseError: empty or malformed markup, a point with unusable
            coordinates (the message names its index), or no points at all.
    """
    text = _coerce_text(content)
    if not text:
        raise ParseError('Empty GPX content')

    try:
        gpx = gpxpy.parse(text)
    except (gpxpy.gpx.GPXException, ValueError) as e:
        bad = _locate_bad_point(text)
        if bad is not None:
            idx, why = bad
            log.warning('[GPX] rejected point %d: %s', idx, why)
            raise ParseError(f"Point {idx}: {why}", point_index=idx) from e
        log.warning('[GPX] parse failed: %s', e)
        raise ParseError(f"Invalid GPX file: {e}") from e

    raw_points = _collect_points(gpx, text)
    if not raw_points:
        raise ParseError('No track points found in GPX file')

    lats = np.empty(len(raw_points), dtype=float)
    lons = np.empty(len(raw_points), dtype=float)
    eles = np.empty(len(raw_points), dtype=float)
    for i, p in enumerate(raw_points):
        ele = float(p.elevation) if p.elevation is not None else 0.0
        _check_point(i, p.latitude, p.longitude, ele)
        lats[i] = p.latitude
        lons[i] = p.longitude
        eles[i] = ele

    distances = np.zeros(len(raw_points), dtype=float)
    if len(raw_points) > 1:
        distances[1:] = np.cumsum(haversine_km_array(lats, lons))
    deltas = np.diff(eles)
    gain = float(deltas[deltas > 0].sum()) if deltas.size else 0.0
    loss = float(-deltas[deltas < 0].sum()) if deltas.size else 0.0

    points = tuple(
        TrackPoint(
            lat=float(lats[i]),
            lon=float(lons[i]),
            elevation=float(eles[i]),
            time=raw_points[i].time,
            distance=float(distances[i]),
        )
        for i in range(len(raw_points))
    )
    track = Track(
        name=_route_name(gpx),
        points=points,
        total_distance=points[-1].distance,
        elevation_gain=gain,
        elevation_loss=loss,
        max_elevation=float(eles.max()),
        min_elevation=float(eles.min()),
    )
    log.info('[GPX] parsed name=%r points=%d distance=%.2fkm gain=%.0fm',
             track.name, len(points), track.total_distance, track.elevation_gain)
    return track


def load_gpx(gpx_path: Union[str, Path]) -> Track:
    """Load a GPX file from disk and parse it."""
    with open(gpx_path, 'r', encoding='utf-8') as f:
        return parse_gpx(f.read())


def validate_gpx_upload(filename: Optional[str], size: int, max_bytes: int) -> None:
    """Reject uploads that cannot be a usable GPX file before reading them."""
    name = filename or ''
    ext = Path(name).suffix.lower()
    if ext != '.gpx':
        raise ParseError(f"Invalid file type. Expected .gpx but received {ext or 'no extension'}")
    if size == 0:
        raise ParseError('File is empty')
    if size > max_bytes:
        raise UploadTooLargeError(
            f"File is too large ({size / (1024 * 1024):.2f}MB). "
            f"Maximum size is {max_bytes / (1024 * 1024):.0f}MB"
        )
