import math
import threading
from typing import Iterable, Optional, Sequence

import pytest

from routecast.backend.gpx_parser import EARTH_RADIUS_KM, Track, TrackPoint
from routecast.backend.weather_providers import WeatherProvider, build_record, iso_utc

# Along the equator one degree of longitude is exactly this many km under haversine.
KM_PER_DEG = EARTH_RADIUS_KM * math.pi / 180.0

T0 = 1_750_000_000


def equator_lon(km: float) -> float:
    return km / KM_PER_DEG


def make_track(distances_km: Sequence[float], name: str = 'Test Route') -> Track:
    """Track along the equator with exact cumulative distances."""
    points = tuple(TrackPoint(lat=0.0, lon=equator_lon(d), distance=float(d)) for d in distances_km)
    return Track(
        name=name,
        points=points,
        total_distance=points[-1].distance if points else 0.0,
        elevation_gain=0.0,
        elevation_loss=0.0,
        max_elevation=0.0,
        min_elevation=0.0,
    )


def gpx_doc(trkpts: Iterable[str] = (), rtepts: Iterable[str] = (), name: Optional[str] = None) -> str:
    head = '<?xml version="1.0" encoding="UTF-8"?>\n<gpx version="1.1" creator="tests" xmlns="http://www.topografix.com/GPX/1/1">'
    meta = f"<metadata><name>{name}</name></metadata>" if name else ''
    trk = ''
    if trkpts:
        trk = '<trk><trkseg>' + ''.join(trkpts) + '</trkseg></trk>'
    rte = ''
    if rtepts:
        rte = '<rte>' + ''.join(rtepts) + '</rte>'
    return f"{head}{meta}{trk}{rte}</gpx>"


def trkpt(lat, lon, ele=None) -> str:
    inner = f"<ele>{ele}</ele>" if ele is not None else ''
    return f'<trkpt lat="{lat}" lon="{lon}">{inner}</trkpt>'


def rtept(lat, lon, ele=None) -> str:
    inner = f"<ele>{ele}</ele>" if ele is not None else ''
    return f'<rtept lat="{lat}" lon="{lon}">{inner}</rtept>'


@pytest.fixture
def equator_gpx():
    """Four track points 1 km apart along the equator."""
    return gpx_doc([trkpt(0.0, equator_lon(k), 100 + 10 * k) for k in range(4)], name='Equator Ride')


@pytest.fixture
def hilly_gpx():
    return gpx_doc([
        trkpt(45.0, 6.0, 500),
        trkpt(45.01, 6.01, 650),
        trkpt(45.02, 6.02, 600),
        trkpt(45.03, 6.03, 900),
    ])


class FakeClock:
    """Monotonic clock whose `sleep` advances time instantly."""

    def __init__(self, start=100.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeProvider(WeatherProvider):
    """Scripted provider that records every call."""

    requires_api_key = False

    def __init__(self, name, available=True, fail=None, fail_for=(), release=None):
        super().__init__(requests_per_second=1000)
        self.name = name
        self.available = available
        self.fail = fail
        self.fail_for = set(fail_for)
        self.release = release
        self.calls = []
        self._calls_lock = threading.Lock()

    def is_available(self):
        return self.available

    def _probe(self):
        pass

    def get_weather(self, lat, lon, when):
        with self._calls_lock:
            self.calls.append((lat, lon, when))
        if self.release is not None:
            self.release.wait(5)
        if self.fail is not None and (not self.fail_for or lat in self.fail_for):
            raise self.fail
        return build_record({
            'temperature': lat, 'feels_like': lat, 'humidity': 50, 'wind_speed': 10, 'wind_direction': 90,
            'precipitation': 0, 'pressure': 1013, 'weather_icon': '01d', 'weather_description': 'clear',
            'time': iso_utc(when.timestamp()),
        }, self.name)
