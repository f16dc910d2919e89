"""Synthetic weather for demos and offline UI work.

Never used as a fallback by the resolver. Records are labelled
`provider="simulated"` and their description starts with "Simulated: ".
"""
from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np

from routecast.backend.route_sampling import ForecastPoint
from routecast.backend.weather_providers import WeatherRecord, build_record, iso_utc

SIMULATED_PROVIDER = 'simulated'


def _base_temperature(hour: int) -> float:
    # cool night, warming morning, peak mid-afternoon, cooling evening
    if 6 <= hour < 12:
        return 15 + (hour - 6) * 1.5
    if 12 <= hour < 18:
        return 24 + (hour - 12) * 0.5
    if 18 <= hour < 24:
        return 26 - (hour - 18) * 1.5
    return 15 + (hour - 6) * 0.5


def simulate_point(point: ForecastPoint, rng: np.random.Generator) -> WeatherRecord:
    hour = point.when.hour
    temperature = _base_temperature(hour) - point.distance / 5.0 * 0.1 + rng.uniform(-2, 2)
    humidity = rng.uniform(40, 80)
    wind_speed = rng.uniform(5, 20)
    rain = float(rng.uniform(0, 5)) if 12 <= hour < 18 and rng.random() > 0.7 else 0.0
    if rain >= 2:
        icon, text = '09', 'Moderate rain'
    elif rain > 0:
        icon, text = '10', 'Light rain'
    elif humidity > 70:
        icon, text = '03', 'Scattered clouds'
    else:
        icon, text = '01', 'Clear sky'
    icon += 'n' if hour < 6 or hour >= 18 else 'd'
    return build_record({
        'temperature': round(temperature, 1),
        'feels_like': round(temperature - rng.uniform(0, 3), 1),
        'humidity': round(humidity, 1),
        'pressure': round(rng.uniform(1000, 1030), 1),
        'wind_speed': round(wind_speed, 1),
        'wind_gust': round(wind_speed + rng.uniform(0, 10), 1),
        'wind_direction': round(rng.uniform(0, 360), 0),
        'precipitation': round(rain, 2),
        'precipitation_probability': round(rng.uniform(0.5, 1.0) if rain > 0 else rng.uniform(0, 0.3), 2),
        'cloud_cover': round(rng.uniform(0, 100), 0),
        'uv_index': float(max(0, min(11, int((6 - abs(hour - 12)) * 1.5)))),
        'weather_icon': icon,
        'weather_description': f"Simulated: {text}",
        'time': iso_utc(point.timestamp),
        'timezone': 'UTC',
    }, SIMULATED_PROVIDER)


def simulate_weather(points: Sequence[ForecastPoint], seed: Optional[int] = None) -> List[WeatherRecord]:
    """One simulated record per point; identical seeds give identical records."""
    rng = np.random.default_rng(seed)
    return [simulate_point(p, rng) for p in points]


def is_simulated(record: Optional[WeatherRecord]) -> bool:
    return record is not None and record.provider == SIMULATED_PROVIDER
