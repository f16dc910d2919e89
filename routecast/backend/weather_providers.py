"""Weather providers: common record schema, rate limiting and HTTP adapters.

Every provider turns a vendor-specific JSON payload into a validated
`WeatherRecord`. Providers own their rate limiter, availability memo and a
429 circuit breaker; nothing here is module-global.
"""
from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

import requests
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from routecast.backend.errors import (
    ProviderDataError,
    ProviderError,
    ProviderHttpError,
    ProviderTransportError,
    ValidationError,
)

log = logging.getLogger('routecast.weather.provider')

MS_TO_KMH = 3.6


class WeatherRecord(BaseModel):
    """Forecast weather for one forecast point (camelCase on the wire)."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        allow_inf_nan=False,
    )

    temperature: float
    feels_like: float
    humidity: float = Field(ge=0, le=100)
    wind_speed: float = Field(ge=0)
    wind_gust: Optional[float] = Field(default=None, ge=0)
    wind_direction: float = Field(ge=0, le=360)
    precipitation: float = Field(ge=0)
    precipitation_probability: Optional[float] = Field(default=None, ge=0, le=1)
    pressure: float = Field(ge=800, le=1200)
    cloud_cover: Optional[float] = Field(default=None, ge=0, le=100)
    uv_index: Optional[float] = Field(default=None, ge=0)
    weather_icon: str
    weather_description: str
    time: str
    timezone: Optional[str] = None
    provider: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def build_record(data: Dict[str, Any], provider: str) -> WeatherRecord:
    """Validate a transformed payload; failures raise our ValidationError."""
    try:
        return WeatherRecord.model_validate({**data, 'provider': provider})
    except PydanticValidationError as e:
        errors = [
            {'field': '.'.join(str(p) for p in err.get('loc', ())), 'message': err.get('msg', '')}
            for err in e.errors()
        ]
        fields = ', '.join(err['field'] for err in errors)
        raise ValidationError(f"{provider} returned invalid weather data ({fields})", provider=provider, errors=errors) from e


def iso_utc(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class RateLimiter:
    """Minimum spacing between dispatches to one provider.

    `acquire` holds the limiter's lock while it sleeps, so concurrent callers of
    the same provider are released one interval apart.
    """

    def __init__(self, requests_per_second: float,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        if requests_per_second <= 0:
            raise ValueError('requests_per_second must be positive')
        self.min_interval = 1.0 / float(requests_per_second)
        self.last_request_ts: Optional[float] = None
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

    def acquire(self) -> float:
        """Block until a request may be dispatched; return seconds waited."""
        with self._lock:
            waited = 0.0
            if self.last_request_ts is not None:
                elapsed = self._clock() - self.last_request_ts
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    log.debug('[QUEUE] rate limiter sleep=%.3fs', waited)
                    self._sleep(waited)
            self.last_request_ts = self._clock()
            return waited

    def reset(self) -> None:
        with self._lock:
            self.last_request_ts = None


class WeatherProvider(ABC):
    """A named upstream weather service.

    Subclasses implement `get_weather` and `_probe`; the base class handles
    pacing, HTTP error mapping, the circuit breaker and availability memo.
    """

    name = 'provider'
    requires_api_key = True

    def __init__(self, api_key: Optional[str] = None, requests_per_second: float = 1.0,
                 timeout: float = 15.0, availability_ttl: float = 60.0, cooldown: float = 60.0,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.monotonic,
                 now: Callable[[], float] = time.time,
                 rate_limiter: Optional[RateLimiter] = None):
        if self.requires_api_key and not api_key:
            raise ValueError(f"{self.name} requires an API key")
        self.api_key = api_key
        self.timeout = float(timeout)
        self.availability_ttl = float(availability_ttl)
        self.cooldown = float(cooldown)
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter or RateLimiter(requests_per_second, clock=clock)
        self._clock = clock
        self._now = now
        self._state_lock = threading.Lock()
        self._disabled_until = 0.0
        self._availability: Optional[Tuple[bool, float]] = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"

    @abstractmethod
    def get_weather(self, lat: float, lon: float, when: datetime) -> WeatherRecord:
        """Forecast for a coordinate at a moment; raises a WeatherError subclass."""

    @abstractmethod
    def _probe(self) -> None:
        """Cheap liveness request; raises ProviderError when the service is unusable."""

    def is_available(self) -> bool:
        with self._state_lock:
            now = self._clock()
            if now < self._disabled_until:
                log.info('[BREAKER] %s disabled for %.0fs more', self.name, self._disabled_until - now)
                return False
            cached = self._availability
            if cached is not None and now - cached[1] < self.availability_ttl:
                return cached[0]
        try:
            self._probe()
            ok = True
        except ProviderError as e:
            log.warning('[API] %s unavailable: %s', self.name, e)
            ok = False
        with self._state_lock:
            # a probe that tripped the breaker is not memoised past the cooldown
            tripped = self._disabled_until > self._clock()
            self._availability = None if tripped else (ok, self._clock())
        return ok

    def reset(self) -> None:
        """Close the circuit breaker and forget the availability memo."""
        with self._state_lock:
            self._disabled_until = 0.0
            self._availability = None
        log.info('[BREAKER] %s reset; requests re-enabled', self.name)

    def _trip_breaker(self) -> None:
        with self._state_lock:
            self._disabled_until = self._clock() + self.cooldown
            self._availability = None
        log.error('[BREAKER] %s circuit breaker activated for %.0fs (429)', self.name, self.cooldown)

    @staticmethod
    def _error_message(resp: requests.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return (resp.text or '')[:200] or 'Unknown error'
        if isinstance(body, dict):
            return str(body.get('message') or body.get('reason') or 'Unknown error')
        return 'Unknown error'

    def _request(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        self.rate_limiter.acquire()
        log.info('[API] %s start %s', self.name, url)
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise ProviderTransportError(f"{self.name} timed out after {self.timeout:.0f}s", provider=self.name) from e
        except requests.RequestException as e:
            raise ProviderTransportError(f"{self.name} request failed: {e}", provider=self.name) from e
        status = resp.status_code
        if status == 429:
            self._trip_breaker()
        if not 200 <= status < 300:
            raise ProviderHttpError(
                f"{self.name} API error ({status}): {self._error_message(resp)}", status, provider=self.name)
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderDataError(f"{self.name} returned a non-JSON body", provider=self.name) from e

    def _validate(self, data: Dict[str, Any]) -> WeatherRecord:
        return build_record(data, self.name)


def _offset_label(seconds: Any) -> Optional[str]:
    if seconds is None:
        return None
    try:
        total = int(seconds)
    except (TypeError, ValueError):
        return str(seconds)
    sign = '+' if total >= 0 else '-'
    hours, rem = divmod(abs(total), 3600)
    return f"UTC{sign}{hours:02d}:{rem // 60:02d}"


class OpenWeatherProvider(WeatherProvider):
    """OpenWeather 2.5: current conditions near now, 3-hourly forecast otherwise."""

    name = 'OpenWeather'
    BASE_URL = 'https://api.openweathermap.org/data/2.5'
    CURRENT_WINDOW_S = 3 * 3600
    MAX_FORECAST_GAP_S = 3 * 3600

    def _params(self, lat: float, lon: float) -> Dict[str, Any]:
        return {'lat': lat, 'lon': lon, 'units': 'metric', 'appid': self.api_key}

    def get_weather(self, lat: float, lon: float, when: datetime) -> WeatherRecord:
        target = when.timestamp()
        if abs(target - self._now()) < self.CURRENT_WINDOW_S:
            data = self._request(f"{self.BASE_URL}/weather", self._params(lat, lon))
            if not isinstance(data, dict):
                raise ProviderDataError('No current weather in response', provider=self.name)
            entry, tz = data, data.get('timezone')
        else:
            data = self._request(f"{self.BASE_URL}/forecast", self._params(lat, lon))
            entries = data.get('list') if isinstance(data, dict) else None
            if not entries:
                raise ProviderDataError('No weather data available for the requested time', provider=self.name)
            entry = min(entries, key=lambda e: abs(float(e.get('dt', 0)) - target))
            if abs(float(entry.get('dt', 0)) - target) > self.MAX_FORECAST_GAP_S:
                raise ProviderDataError('Requested time is outside the forecast range', provider=self.name)
            tz = (data.get('city') or {}).get('timezone')
        return self._validate(self._transform(entry, tz))

    def _transform(self, entry: Dict[str, Any], tz: Any) -> Dict[str, Any]:
        try:
            main = entry['main']
            wind = entry.get('wind') or {}
            condition = (entry.get('weather') or [{}])[0]
            rain = entry.get('rain') or {}
            snow = entry.get('snow') or {}
            gust = wind.get('gust')
            return {
                'temperature': main['temp'],
                'feels_like': main['feels_like'],
                'humidity': main['humidity'],
                'pressure': main['pressure'],
                'wind_speed': float(wind['speed']) * MS_TO_KMH,
                'wind_gust': float(gust) * MS_TO_KMH if gust is not None else None,
                'wind_direction': wind.get('deg', 0),
                'precipitation': float(rain.get('1h', rain.get('3h', 0.0))) + float(snow.get('1h', snow.get('3h', 0.0))),
                'precipitation_probability': entry.get('pop'),
                'cloud_cover': (entry.get('clouds') or {}).get('all'),
                'weather_icon': condition.get('icon', ''),
                'weather_description': condition.get('description', ''),
                'time': iso_utc(float(entry['dt'])),
                'timezone': _offset_label(tz),
            }
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderDataError(f"Malformed OpenWeather payload: {e!r}", provider=self.name) from e

    def _probe(self) -> None:
        self._request(f"{self.BASE_URL}/weather", {'q': 'London', 'appid': self.api_key})


class VisualCrossingProvider(WeatherProvider):
    """Visual Crossing timeline API, hourly resolution (fallback provider)."""

    name = 'Visual Crossing'
    BASE_URL = 'https://weather.visualcrossing.com/VisualCrossingWebServices/rest/services/timeline'
    ELEMENTS = ('datetime,datetimeEpoch,temp,feelslike,humidity,windspeed,windgust,winddir,'
                'pressure,cloudcover,precip,precipprob,uvindex,icon,conditions')
    HOUR_TOLERANCE_S = 3600

    def get_weather(self, lat: float, lon: float, when: datetime) -> WeatherRecord:
        target = when.timestamp()
        day = datetime.fromtimestamp(target, tz=timezone.utc).date()
        # local days straddle the UTC date; ask for its neighbours too
        url = f"{self.BASE_URL}/{lat},{lon}/{(day - timedelta(days=1)).isoformat()}/{(day + timedelta(days=1)).isoformat()}"
        params = {'key': self.api_key, 'include': 'hours', 'unitGroup': 'metric', 'elements': self.ELEMENTS}
        data = self._request(url, params)
        days = data.get('days') if isinstance(data, dict) else None
        if not days:
            raise ProviderDataError('No weather data available for the requested time', provider=self.name)
        hours = [h for d in days for h in (d.get('hours') or []) if h.get('datetimeEpoch') is not None]
        if not hours:
            raise ProviderDataError('No hourly data in response', provider=self.name)
        hour = min(hours, key=lambda h: abs(float(h['datetimeEpoch']) - target))
        if abs(float(hour['datetimeEpoch']) - target) > self.HOUR_TOLERANCE_S:
            raise ProviderDataError('No weather data available for the requested hour', provider=self.name)
        return self._validate(self._transform(hour, data.get('timezone')))

    def _transform(self, hour: Dict[str, Any], tz: Any) -> Dict[str, Any]:
        prob = hour.get('precipprob')
        return {
            'temperature': hour.get('temp'),
            'feels_like': hour.get('feelslike', hour.get('temp')),
            'humidity': hour.get('humidity'),
            'pressure': hour.get('pressure'),
            'wind_speed': hour.get('windspeed'),
            'wind_gust': hour.get('windgust'),
            'wind_direction': hour.get('winddir', 0),
            'precipitation': hour.get('precip') or 0.0,
            'precipitation_probability': float(prob) / 100.0 if prob is not None else None,
            'cloud_cover': hour.get('cloudcover'),
            'uv_index': hour.get('uvindex'),
            'weather_icon': hour.get('icon') or '',
            'weather_description': hour.get('conditions') or '',
            'time': iso_utc(float(hour['datetimeEpoch'])),
            'timezone': tz,
        }

    def _probe(self) -> None:
        self._request(f"{self.BASE_URL}/London", {'key': self.api_key, 'include': 'current'})
