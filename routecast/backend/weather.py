from typing import Dict, Any, Optional, Sequence
import io
import logging

import numpy as np
import pandas as pd

from routecast.backend.route_sampling import ForecastPoint
from routecast.backend.weather_providers import WeatherRecord

log = logging.getLogger('routecast.weather')

WEATHER_COLUMNS = [
    'temperature', 'feels_like', 'humidity', 'wind_speed', 'wind_gust', 'wind_direction',
    'precipitation', 'precipitation_probability', 'pressure', 'cloud_cover', 'uv_index',
    'weather_icon', 'weather_description', 'time', 'provider',
]
WET_PRECIP_MM = 0.1
WET_PROBABILITY = 0.5


def compute_wind_statistics(directions_deg: pd.Series) -> Dict[str, float]:
    """
    Compute circular mean direction and variability from wind direction series (degrees).
    Variability reported as circular standard deviation in degrees.
    """
    dirs = pd.to_numeric(pd.Series(directions_deg), errors='coerce').dropna().to_numpy(dtype=float)
    if dirs.size == 0:
        return {"wind_dir_deg": 0.0, "wind_var_deg": 180.0}
    radians = np.deg2rad(dirs)
    mean_sin = np.mean(np.sin(radians))
    mean_cos = np.mean(np.cos(radians))
    mean_dir = np.rad2deg(np.arctan2(mean_sin, mean_cos)) % 360.0
    R = np.sqrt(mean_sin ** 2 + mean_cos ** 2)
    if R <= 0:
        circ_std_rad = np.pi
    else:
        circ_std_rad = np.sqrt(-2.0 * np.log(min(R, 1.0)))
    circ_std_deg = float(np.rad2deg(circ_std_rad))
    return {"wind_dir_deg": float(mean_dir), "wind_var_deg": circ_std_deg}


def weather_frame(points: Sequence[ForecastPoint], records: Sequence[Optional[WeatherRecord]]) -> pd.DataFrame:
    """One row per forecast point; weather columns are NaN where unresolved."""
    if len(points) != len(records):
        raise ValueError(f"points and records differ in length ({len(points)} != {len(records)})")
    rows = []
    for p, r in zip(points, records):
        row: Dict[str, Any] = {
            'index': p.index,
            'distance_km': p.distance,
            'timestamp': p.timestamp,
            'lat': p.lat,
            'lon': p.lon,
        }
        data = r.model_dump() if r is not None else {}
        for c in WEATHER_COLUMNS:
            row[c] = data.get(c)
        rows.append(row)
    df = pd.DataFrame(rows, columns=['index', 'distance_km', 'timestamp', 'lat', 'lon'] + WEATHER_COLUMNS)
    numeric = [c for c in WEATHER_COLUMNS if c not in ('weather_icon', 'weather_description', 'time', 'provider')]
    for c in numeric:
        df[c] = pd.to_numeric(df[c], errors='coerce')
    df['eta'] = pd.to_datetime(df['timestamp'], unit='s', utc=True)
    return df


def _opt(v: Any, digits: int = 2) -> Optional[float]:
    if v is None or pd.isna(v):
        return None
    return round(float(v), digits)


def summarize_route_weather(points: Sequence[ForecastPoint], records: Sequence[Optional[WeatherRecord]]) -> Dict[str, Any]:
    """Route-level aggregates over the resolved points.
    `available` is False when no point resolved; numeric fields are then None.
    """
    df = weather_frame(points, records)
    resolved = df[df['provider'].notna()]
    total = int(len(df))
    n = int(len(resolved))
    summary: Dict[str, Any] = {
        'available': n > 0,
        'resolved': n,
        'total': total,
        'coverage': round(n / total, 3) if total else 0.0,
        'temperature_min': None,
        'temperature_max': None,
        'temperature_mean': None,
        'precipitation_total_mm': None,
        'precipitation_probability_max': None,
        'wind_speed_max': None,
        'wind_gust_max': None,
        'wind_dir_deg': None,
        'wind_var_deg': None,
        'wet_points': [],
        'providers': {},
    }
    if n == 0:
        log.warning('[WEATHER] no resolved points; weather unavailable for route')
        return summary
    wind = compute_wind_statistics(resolved['wind_direction'])
    wet = resolved[(resolved['precipitation'] > WET_PRECIP_MM) | (resolved['precipitation_probability'] >= WET_PROBABILITY)]
    summary.update({
        'temperature_min': _opt(resolved['temperature'].min()),
        'temperature_max': _opt(resolved['temperature'].max()),
        'temperature_mean': _opt(resolved['temperature'].mean()),
        'precipitation_total_mm': _opt(resolved['precipitation'].sum()),
        'precipitation_probability_max': _opt(resolved['precipitation_probability'].max()),
        'wind_speed_max': _opt(resolved['wind_speed'].max()),
        'wind_gust_max': _opt(resolved['wind_gust'].max()),
        'wind_dir_deg': _opt(wind['wind_dir_deg'], 1),
        'wind_var_deg': _opt(wind['wind_var_deg'], 1),
        'wet_points': [int(i) for i in wet['index'].tolist()],
        'providers': {str(k): int(v) for k, v in resolved['provider'].value_counts().items()},
    })
    log.info('[WEATHER] summary resolved=%d/%d temp=%.1f..%.1f rain=%.1fmm',
             n, total, summary['temperature_min'], summary['temperature_max'], summary['precipitation_total_mm'])
    return summary


def to_csv(points: Sequence[ForecastPoint], records: Sequence[Optional[WeatherRecord]]) -> str:
    df = weather_frame(points, records)
    df['eta'] = df['eta'].map(lambda t: t.isoformat())
    buf = io.StringIO()
    df.to_csv(buf, index=False)
    return buf.getvalue()
