"""Open-Meteo hourly forecast provider.
Keyless, so it is the provider of last resort in the default chain.
Requests one UTC day of hourly values per point and picks the hour closest
to the requested time.
"""
from datetime import date, datetime, timezone
from typing import Any, Dict, Tuple
import logging

import pandas as pd

from routecast.backend.errors import ProviderDataError
from routecast.backend.weather_providers import WeatherProvider, WeatherRecord

log = logging.getLogger('routecast.weather.openmeteo')

FORECAST_URL = 'https://api.open-meteo.com/v1/forecast'
HOURLY_FIELDS = (
    'temperature_2m,apparent_temperature,relative_humidity_2m,pressure_msl,'
    'wind_speed_10m,wind_gusts_10m,wind_direction_10m,precipitation,'
    'precipitation_probability,cloud_cover,uv_index,weather_code,is_day'
)
MAX_HOUR_GAP = pd.Timedelta(hours=1)

# WMO weather interpretation codes -> (icon stem, description)
WMO_CODES: Dict[int, Tuple[str, str]] = {
    0: ('01', 'Clear sky'),
    1: ('02', 'Mainly clear'),
    2: ('03', 'Partly cloudy'),
    3: ('04', 'Overcast'),
    45: ('50', 'Fog'),
    48: ('50', 'Depositing rime fog'),
    51: ('09', 'Light drizzle'),
    53: ('09', 'Moderate drizzle'),
    55: ('09', 'Dense drizzle'),
    56: ('09', 'Light freezing drizzle'),
    57: ('09', 'Dense freezing drizzle'),
    61: ('10', 'Slight rain'),
    63: ('10', 'Moderate rain'),
    65: ('10', 'Heavy rain'),
    66: ('13', 'Light freezing rain'),
    67: ('13', 'Heavy freezing rain'),
    71: ('13', 'Slight snow fall'),
    73: ('13', 'Moderate snow fall'),
    75: ('13', 'Heavy snow fall'),
    77: ('13', 'Snow grains'),
    80: ('09', 'Slight rain showers'),
    81: ('09', 'Moderate rain showers'),
    82: ('09', 'Violent rain showers'),
    85: ('13', 'Slight snow showers'),
    86: ('13', 'Heavy snow showers'),
    95: ('11', 'Thunderstorm'),
    96: ('11', 'Thunderstorm with slight hail'),
    99: ('11', 'Thunderstorm with heavy hail'),
}


def describe_weather_code(code: Any, is_day: Any = 1) -> Tuple[str, str]:
    """Map a WMO code to an OpenWeather-style icon and a description."""
    try:
        stem, text = WMO_CODES[int(code)]
    except (KeyError, TypeError, ValueError):
        return '', 'Unknown'
    suffix = 'n' if is_day is not None and int(is_day) == 0 else 'd'
    return f"{stem}{suffix}", text


def _build_params(lat: float, lon: float, d: date) -> Dict[str, Any]:
    return {
        'latitude': f"{lat:.6f}",
        'longitude': f"{lon:.6f}",
        'hourly': HOURLY_FIELDS,
        'start_date': d.isoformat(),
        'end_date': d.isoformat(),
        'wind_speed_unit': 'kmh',
        'timezone': 'UTC',
    }


class OpenMeteoProvider(WeatherProvider):
    name = 'Open-Meteo'
    requires_api_key = False

    def get_weather(self, lat: float, lon: float, when: datetime) -> WeatherRecord:
        target = pd.Timestamp(when).tz_convert('UTC') if when.tzinfo else pd.Timestamp(when, tz='UTC')
        j = self._request(FORECAST_URL, _build_params(lat, lon, target.date()))
        hourly = (j or {}).get('hourly') if isinstance(j, dict) else None
        times = (hourly or {}).get('time') or []
        if not times:
            raise ProviderDataError('No hourly data in response', provider=self.name)
        try:
            stamps = pd.to_datetime(pd.Series(times), utc=True)
        except (ValueError, TypeError) as e:
            raise ProviderDataError(f"Unparseable hourly times: {e}", provider=self.name) from e
        gaps = (stamps - target).abs()
        i = int(gaps.idxmin())
        if gaps.iloc[i] > MAX_HOUR_GAP:
            raise ProviderDataError('No weather data available for the requested hour', provider=self.name)
        log.debug('[API] Open-Meteo hour %s for target %s', stamps.iloc[i], target)
        return self._validate(self._transform(hourly, i, stamps.iloc[i], j.get('timezone')))

    def _transform(self, hourly: Dict[str, Any], i: int, stamp: pd.Timestamp, tz: Any) -> Dict[str, Any]:
        def col(name):
            values = hourly.get(name) or []
            return values[i] if i < len(values) else None

        icon, text = describe_weather_code(col('weather_code'), col('is_day'))
        prob = col('precipitation_probability')
        return {
            'temperature': col('temperature_2m'),
            'feels_like': col('apparent_temperature'),
            'humidity': col('relative_humidity_2m'),
            'pressure': col('pressure_msl'),
            'wind_speed': col('wind_speed_10m'),
            'wind_gust': col('wind_gusts_10m'),
            'wind_direction': col('wind_direction_10m'),
            'precipitation': col('precipitation') or 0.0,
            'precipitation_probability': float(prob) / 100.0 if prob is not None else None,
            'cloud_cover': col('cloud_cover'),
            'uv_index': col('uv_index'),
            'weather_icon': icon,
            'weather_description': text,
            'time': stamp.to_pydatetime().astimezone(timezone.utc).isoformat(),
            'timezone': tz,
        }

    def _probe(self) -> None:
        self._request(FORECAST_URL, {'latitude': '0.0', 'longitude': '0.0', 'current': 'temperature_2m'})
