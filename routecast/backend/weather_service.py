"""WeatherResolver: deduplicated, multi-provider weather resolution.
- Providers tried in priority order; first success wins
- Unavailable providers skipped, failing providers fall through to the next
- Pending request de-duplication keyed by (lat, lon, timestamp)
- Batch resolution on a thread pool, results written by index
"""
from __future__ import annotations
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, FIRST_COMPLETED, wait
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from routecast.backend.config import Settings
from routecast.backend.errors import (
    ProviderHttpError,
    ProvidersUnreachableError,
    WeatherError,
    WeatherUnavailableError,
)
from routecast.backend.route_sampling import ForecastPoint
from routecast.backend.weather_openmeteo import OpenMeteoProvider
from routecast.backend.weather_providers import (
    OpenWeatherProvider,
    VisualCrossingProvider,
    WeatherProvider,
    WeatherRecord,
)

log = logging.getLogger('routecast.weather.service')

Key = Tuple[float, float, int]


@dataclass
class _Pending:
    event: threading.Event = field(default_factory=threading.Event)
    result: Optional[WeatherRecord] = None
    error: Optional[Exception] = None
    waiters: int = 0


def build_providers(settings: Settings) -> List[WeatherProvider]:
    """Provider chain in configured order; keyed providers without a key are skipped."""
    common = dict(
        timeout=settings.request_timeout_s,
        availability_ttl=settings.availability_ttl_s,
        cooldown=settings.rate_limit_cooldown_s,
    )
    providers: List[WeatherProvider] = []
    for name in settings.provider_order:
        if name == 'openweather':
            if settings.openweather_api_key:
                providers.append(OpenWeatherProvider(
                    settings.openweather_api_key, requests_per_second=settings.openweather_rps, **common))
            else:
                log.info('[CONFIG] OpenWeather skipped: OPENWEATHER_API_KEY not set')
        elif name == 'visualcrossing':
            if settings.visualcrossing_api_key:
                providers.append(VisualCrossingProvider(
                    settings.visualcrossing_api_key, requests_per_second=settings.visualcrossing_rps, **common))
            else:
                log.info('[CONFIG] Visual Crossing skipped: VISUALCROSSING_API_KEY not set')
        elif name == 'openmeteo':
            providers.append(OpenMeteoProvider(requests_per_second=settings.openmeteo_rps, **common))
        else:
            raise ValueError(f"Unknown weather provider: {name!r}")
    return providers


class WeatherResolver:
    """Resolves forecast points to weather records through a provider chain.

    One resolver owns its providers (and their rate limiters) and its table of
    in-flight requests. Construct one per process, or one per test.
    """

    def __init__(self, providers: Sequence[WeatherProvider], max_concurrency: int = 5):
        self.providers: Tuple[WeatherProvider, ...] = tuple(providers)
        self.max_concurrency = max(1, int(max_concurrency))
        self._pending: Dict[Key, _Pending] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> 'WeatherResolver':
        return cls(build_providers(settings), max_concurrency=settings.max_concurrency)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _run_chain(self, point: ForecastPoint) -> WeatherRecord:
        try:
            when = point.when
        except (ValueError, OverflowError, OSError) as e:
            raise WeatherUnavailableError(f"point={point.index} timestamp {point.timestamp} out of range: {e}")
        failures: List[str] = []
        for provider in self.providers:
            try:
                if not provider.is_available():
                    log.info('[API] %s unavailable; skipping point=%d', provider.name, point.index)
                    failures.append(f"{provider.name}: unavailable")
                    continue
                record = provider.get_weather(point.lat, point.lon, when)
                log.info('[API] point=%d resolved by %s', point.index, provider.name)
                return record
            except ProviderHttpError as e:
                log.warning('[API] %s HTTP %d for point=%d: %s', provider.name, e.status_code, point.index, e)
                failures.append(f"{provider.name}: HTTP {e.status_code}")
            except WeatherError as e:
                log.warning('[API] %s failed for point=%d: %s', provider.name, point.index, e)
                failures.append(f"{provider.name}: {e}")
            except Exception as e:
                log.exception('[API] %s raised unexpectedly for point=%d', provider.name, point.index)
                failures.append(f"{provider.name}: {type(e).__name__}")
        raise WeatherUnavailableError(
            'All weather providers failed to fetch data'
            + (f" ({'; '.join(failures)})" if failures else ' (no providers configured)'))

    def resolve(self, point: ForecastPoint) -> WeatherRecord:
        """Weather for one point. Concurrent calls for the same key share one provider run."""
        key = point.key
        with self._lock:
            pending = self._pending.get(key)
            if pending is not None:
                pending.waiters += 1
                owner = False
            else:
                pending = _Pending()
                self._pending[key] = pending
                owner = True
        if not owner:
            log.info('[QUEUE] duplicate wait key=%s', key)
            pending.event.wait()
            if pending.error is not None:
                raise pending.error
            return pending.result  # type: ignore[return-value]
        try:
            pending.result = self._run_chain(point)
            return pending.result
        except Exception as e:
            pending.error = e
            raise
        finally:
            with self._lock:
                self._pending.pop(key, None)
            pending.event.set()

    def _resolve_or_none(self, point: ForecastPoint) -> Optional[WeatherRecord]:
        try:
            return self.resolve(point)
        except WeatherError as e:
            log.warning('[WEATHER] point=%d unresolved: %s', point.index, e)
            return None
        except Exception:
            log.exception('[WEATHER] point=%d failed unexpectedly', point.index)
            return None

    def _preflight(self) -> None:
        if not self.providers:
            raise ProvidersUnreachableError('No weather providers configured')
        if not any(p.is_available() for p in self.providers):
            raise ProvidersUnreachableError('No weather provider is reachable')

    def resolve_batch(self, points: Sequence[ForecastPoint],
                      cancel: Optional[threading.Event] = None) -> List[Optional[WeatherRecord]]:
        """Resolve every point; the result has the same length and order as `points`.

        Unresolvable points are None. Raises ProvidersUnreachableError only when
        no provider is reachable before any point is attempted. Setting `cancel`
        stops waiting: unfinished points stay None.
        """
        results: List[Optional[WeatherRecord]] = [None] * len(points)
        if not points:
            return results
        self._preflight()
        log.info('[WEATHER] resolving %d points with %d providers', len(points), len(self.providers))
        executor = ThreadPoolExecutor(max_workers=min(self.max_concurrency, len(points)),
                                      thread_name_prefix='WeatherResolver')
        try:
            futures = {executor.submit(self._resolve_or_none, p): i for i, p in enumerate(points)}
            outstanding = set(futures)
            while outstanding:
                if cancel is not None and cancel.is_set():
                    log.warning('[WEATHER] batch cancelled; %d points left unresolved', len(outstanding))
                    break
                done, outstanding = wait(outstanding, timeout=0.1 if cancel is not None else None,
                                         return_when=FIRST_COMPLETED)
                for fut in done:
                    results[futures[fut]] = fut.result()
        finally:
            executor.shutdown(wait=cancel is None or not cancel.is_set(), cancel_futures=True)
        resolved = sum(1 for r in results if r is not None)
        log.info('[WEATHER] batch done resolved=%d/%d', resolved, len(points))
        return results
