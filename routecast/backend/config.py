"""Runtime settings read from the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

DEFAULT_PROVIDER_ORDER = ('openweather', 'visualcrossing', 'openmeteo')


def _env_flag(raw: Optional[str], default: bool = False) -> bool:
    if raw is None:
        return default
    return str(raw).strip().lower() in ('1', 'true', 'yes', 'on')


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    return int(_env_float(env, name, default))


@dataclass(frozen=True)
class Settings:
    openweather_api_key: Optional[str] = None
    visualcrossing_api_key: Optional[str] = None
    provider_order: Tuple[str, ...] = DEFAULT_PROVIDER_ORDER
    openweather_rps: float = 10.0
    visualcrossing_rps: float = 5.0
    openmeteo_rps: float = 1.0
    request_timeout_s: float = 15.0
    availability_ttl_s: float = 60.0
    rate_limit_cooldown_s: float = 60.0
    max_concurrency: int = 5
    max_batch_points: int = 100
    max_forecast_points: int = 5000
    max_upload_mb: float = 10.0
    default_interval_km: float = 5.0
    default_avg_speed_kmh: float = 15.0
    log_level: str = 'INFO'
    port: int = 5000
    debug: bool = False

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'Settings':
        env = os.environ if env is None else env
        order_raw = env.get('WEATHER_PROVIDERS', '')
        order = tuple(p.strip().lower() for p in order_raw.split(',') if p.strip()) or DEFAULT_PROVIDER_ORDER
        return cls(
            openweather_api_key=env.get('OPENWEATHER_API_KEY') or None,
            visualcrossing_api_key=env.get('VISUALCROSSING_API_KEY') or None,
            provider_order=order,
            openweather_rps=_env_float(env, 'OPENWEATHER_RPS', 10.0),
            visualcrossing_rps=_env_float(env, 'VISUALCROSSING_RPS', 5.0),
            openmeteo_rps=_env_float(env, 'OPENMETEO_RPS', 1.0),
            request_timeout_s=_env_float(env, 'REQUEST_TIMEOUT_S', 15.0),
            availability_ttl_s=_env_float(env, 'AVAILABILITY_TTL_S', 60.0),
            rate_limit_cooldown_s=_env_float(env, 'RATE_LIMIT_COOLDOWN_S', 60.0),
            max_concurrency=max(1, _env_int(env, 'MAX_CONCURRENCY', 5)),
            max_batch_points=max(1, _env_int(env, 'MAX_BATCH_POINTS', 100)),
            max_forecast_points=max(2, _env_int(env, 'MAX_FORECAST_POINTS', 5000)),
            max_upload_mb=_env_float(env, 'MAX_UPLOAD_MB', 10.0),
            default_interval_km=_env_float(env, 'DEFAULT_INTERVAL_KM', 5.0),
            default_avg_speed_kmh=_env_float(env, 'DEFAULT_AVG_SPEED_KMH', 15.0),
            log_level=str(env.get('LOG_LEVEL', 'INFO')).upper(),
            port=_env_int(env, 'PORT', 5000),
            debug=_env_flag(env.get('DEBUG')),
        )

    @property
    def max_upload_bytes(self) -> int:
        return int(self.max_upload_mb * 1024 * 1024)
