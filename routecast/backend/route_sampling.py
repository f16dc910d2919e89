import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import List, Dict, Any, Tuple, Union

import numpy as np

from routecast.backend.errors import InvalidIntervalError
from routecast.backend.gpx_parser import Track

log = logging.getLogger('routecast.sampling')

# Final stepped point closer than this to the route end is replaced by the endpoint.
ENDPOINT_EPSILON_KM = 0.001

# Unix seconds representable both by datetime and by pandas nanosecond timestamps (up to 2262-04-11).
MIN_TIMESTAMP = 0
MAX_TIMESTAMP = 9_223_372_035

MAX_FORECAST_POINTS = 5000

StartTime = Union[datetime, int, float]


@dataclass(frozen=True)
class ForecastPoint:
    lat: float
    lon: float
    distance: float  # km from route start
    timestamp: int  # unix seconds
    index: int = 0

    @property
    def key(self) -> Tuple[float, float, int]:
        return (self.lat, self.lon, self.timestamp)

    @property
    def when(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lat': self.lat,
            'lon': self.lon,
            'distance': self.distance,
            'timestamp': self.timestamp,
            'index': self.index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> 'ForecastPoint':
        return cls(
            lat=float(data['lat']),
            lon=float(data['lon']),
            distance=float(data['distance']),
            timestamp=int(math.floor(float(data['timestamp']))),
            index=int(data.get('index', index)),
        )


def to_epoch_seconds(start_time: StartTime) -> float:
    """Unix seconds for a datetime (naive means UTC) or a number."""
    if isinstance(start_time, datetime):
        if start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=timezone.utc)
        return start_time.timestamp()
    return float(start_time)


def timestamp_in_range(ts: float) -> bool:
    return math.isfinite(ts) and MIN_TIMESTAMP <= ts <= MAX_TIMESTAMP


def _check_positive(name: str, value: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise InvalidIntervalError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(v) or v <= 0:
        raise InvalidIntervalError(f"{name} must be a positive number, got {value!r}")
    return v


def _arrival(start_s: float, distance_km: float, avg_speed_kmh: float) -> int:
    return int(math.floor(start_s + (distance_km / avg_speed_kmh) * 3600.0))


def _interpolate(distances: np.ndarray, lats: np.ndarray, lons: np.ndarray, target: float) -> Tuple[float, float]:
    """Linear lat/lon at `target` km between the bracketing track points."""
    # first i with distances[i] >= target; the bracket is (i-1, i)
    after = int(np.searchsorted(distances, target, side='left'))
    after = min(max(after, 1), len(distances) - 1)
    before = after - 1
    span = distances[after] - distances[before]
    ratio = (target - distances[before]) / span if span > 0 else 0.0
    lat = lats[before] + ratio * (lats[after] - lats[before])
    lon = lons[before] + ratio * (lons[after] - lons[before])
    return float(lat), float(lon)


def sample_route(track: Track, interval_km: float, start_time: StartTime, avg_speed_kmh: float,
                 max_points: int = MAX_FORECAST_POINTS) -> List[ForecastPoint]:
    """
    Sample forecast points every `interval_km` along a parsed track.
    - first point at distance 0 and `start_time`
    - interpolated points at k * interval_km while short of the route end
    - final point at `track.total_distance` with the last track point's coordinates
    Timestamps assume constant `avg_speed_kmh`. Raises InvalidIntervalError when
    the interval would yield more than `max_points` points or an arrival time
    falls outside the representable timestamp range.
    """
    interval_km = _check_positive('interval_km', interval_km)
    avg_speed_kmh = _check_positive('avg_speed_kmh', avg_speed_kmh)
    start_s = to_epoch_seconds(start_time)
    if not timestamp_in_range(start_s):
        raise InvalidIntervalError(f"start_time {start_time!r} is outside the supported range")

    if not track.points:
        return []

    distances = np.array([p.distance for p in track.points], dtype=float)
    lats = np.array([p.lat for p in track.points], dtype=float)
    lons = np.array([p.lon for p in track.points], dtype=float)
    total = float(track.total_distance)

    # at most ceil(total / interval) + 1 points
    if total > 0 and total / interval_km > max_points - 1:
        raise InvalidIntervalError(
            f"interval_km {interval_km} over {total:.2f}km exceeds the limit of {max_points} forecast points")
    if not timestamp_in_range(start_s + total / avg_speed_kmh * 3600.0):
        raise InvalidIntervalError(
            f"avg_speed_kmh {avg_speed_kmh} puts the arrival time outside the supported range")

    first = track.points[0]
    sampled: List[Tuple[float, float, float]] = [(first.lat, first.lon, 0.0)]

    if len(track.points) > 1:
        k = 1
        while True:
            # k * interval, not a running sum
            target = k * interval_km
            if target >= total:
                break
            lat, lon = _interpolate(distances, lats, lons, target)
            sampled.append((lat, lon, target))
            k += 1

    last = track.points[-1]
    if len(sampled) > 1 and total - sampled[-1][2] <= ENDPOINT_EPSILON_KM:
        sampled[-1] = (last.lat, last.lon, total)
    elif total > 0:
        sampled.append((last.lat, last.lon, total))

    points = [
        ForecastPoint(lat=lat, lon=lon, distance=dist, timestamp=_arrival(start_s, dist, avg_speed_kmh), index=i)
        for i, (lat, lon, dist) in enumerate(sampled)
    ]
    log.info('[SAMPLE] %d forecast points every %.2fkm over %.2fkm', len(points), interval_km, total)
    return points


def estimate_schedule(track: Track, start_time: StartTime, avg_speed_kmh: float) -> Dict[str, Any]:
    """Start, arrival and duration for riding the whole track at constant speed."""
    avg_speed_kmh = _check_positive('avg_speed_kmh', avg_speed_kmh)
    start_s = to_epoch_seconds(start_time)
    hours = track.total_distance / avg_speed_kmh
    start_dt = datetime.fromtimestamp(start_s, tz=timezone.utc)
    end_dt = start_dt + timedelta(hours=hours)
    return {
        'start_time': start_dt.isoformat(),
        'end_time': end_dt.isoformat(),
        'duration_hours': round(hours, 3),
        'avg_speed_kmh': avg_speed_kmh,
    }
