import threading
import time

import pytest

from routecast.backend.config import Settings
from routecast.backend.errors import (
    ProviderDataError,
    ProviderHttpError,
    ProvidersUnreachableError,
    WeatherUnavailableError,
)
from routecast.backend.route_sampling import ForecastPoint
from routecast.backend.weather_service import WeatherResolver, build_providers

from conftest import T0, FakeProvider


def point(i, lat=None):
    return ForecastPoint(lat=float(i if lat is None else lat), lon=1.0, distance=float(i), timestamp=T0 + 60 * i, index=i)


def test_fallback_to_secondary_on_429():
    primary = FakeProvider('primary', fail=ProviderHttpError('rate limited', 429, provider='primary'))
    secondary = FakeProvider('secondary')
    resolver = WeatherResolver([primary, secondary])
    results = resolver.resolve_batch([point(1)])
    assert results[0] is not None
    assert results[0].provider == 'secondary'
    assert len(primary.calls) == 1


def test_all_providers_failing_leaves_slot_null():
    # both providers fail only for the point at lat=2
    primary = FakeProvider('primary', fail=ProviderHttpError('boom', 500), fail_for={2.0})
    secondary = FakeProvider('secondary', fail=ProviderDataError('empty'), fail_for={2.0})
    resolver = WeatherResolver([primary, secondary])
    results = resolver.resolve_batch([point(1), point(2), point(3)])
    assert results[1] is None
    assert [r.provider for r in (results[0], results[2])] == ['primary', 'primary']


def test_unavailable_provider_is_skipped():
    down = FakeProvider('down', available=False)
    up = FakeProvider('up')
    resolver = WeatherResolver([down, up])
    assert resolver.resolve(point(1)).provider == 'up'
    assert down.calls == []


def test_unexpected_provider_exception_falls_through():
    broken = FakeProvider('broken', fail=RuntimeError('bug'))
    backup = FakeProvider('backup')
    resolver = WeatherResolver([broken, backup])
    assert resolver.resolve(point(1)).provider == 'backup'


def test_resolve_raises_when_exhausted_and_clears_pending():
    only = FakeProvider('only', fail=ProviderDataError('nothing'))
    resolver = WeatherResolver([only])
    with pytest.raises(WeatherUnavailableError, match='All weather providers failed'):
        resolver.resolve(point(1))
    assert resolver.pending_count == 0


def test_batch_preserves_length_and_order():
    provider = FakeProvider('p')
    resolver = WeatherResolver([provider], max_concurrency=3)
    points = [point(i) for i in range(7)]
    results = resolver.resolve_batch(points)
    assert len(results) == len(points)
    assert [r.temperature for r in results] == [p.lat for p in points]


def test_empty_batch_returns_empty_list():
    resolver = WeatherResolver([FakeProvider('down', available=False)])
    assert resolver.resolve_batch([]) == []


def test_unreachable_providers_raise_before_any_point():
    a = FakeProvider('a', available=False)
    b = FakeProvider('b', available=False)
    resolver = WeatherResolver([a, b])
    with pytest.raises(ProvidersUnreachableError):
        resolver.resolve_batch([point(1), point(2)])
    assert a.calls == [] and b.calls == []


def test_no_providers_configured_is_unreachable():
    with pytest.raises(ProvidersUnreachableError):
        WeatherResolver([]).resolve_batch([point(1)])


def test_concurrent_duplicate_requests_share_one_call():
    release = threading.Event()
    provider = FakeProvider('slow', release=release)
    resolver = WeatherResolver([provider])
    p = point(5)
    results = [None, None]

    def run(slot):
        results[slot] = resolver.resolve(p)

    owner = threading.Thread(target=run, args=(0,))
    owner.start()
    deadline = time.time() + 5
    while resolver.pending_count == 0 and time.time() < deadline:
        time.sleep(0.01)
    waiter = threading.Thread(target=run, args=(1,))
    waiter.start()
    while time.time() < deadline:
        pending = resolver._pending.get(p.key)
        if pending is not None and pending.waiters == 1:
            break
        time.sleep(0.01)
    release.set()
    owner.join(5)
    waiter.join(5)
    assert len(provider.calls) == 1
    assert results[0] is results[1]
    assert resolver.pending_count == 0


def test_duplicate_points_in_batch_resolve_once():
    release = threading.Event()
    provider = FakeProvider('slow', release=release)
    resolver = WeatherResolver([provider], max_concurrency=2)
    p = point(3)
    out = {}
    batch = threading.Thread(target=lambda: out.update(results=resolver.resolve_batch([p, p])))
    batch.start()
    # hold the provider until the second worker is parked on the first one's request
    deadline = time.time() + 5
    while time.time() < deadline:
        with resolver._lock:
            pending = resolver._pending.get(p.key)
            if pending is not None and pending.waiters == 1:
                break
        time.sleep(0.01)
    release.set()
    batch.join(5)
    assert len(provider.calls) == 1
    assert out['results'][0] is out['results'][1]
    assert resolver.pending_count == 0


def test_out_of_range_timestamp_leaves_only_its_slot_null():
    provider = FakeProvider('p')
    resolver = WeatherResolver([provider], max_concurrency=2)
    bad = ForecastPoint(lat=2.0, lon=1.0, distance=2.0, timestamp=10 ** 13, index=1)
    results = resolver.resolve_batch([point(1), bad])
    assert results[0] is not None
    assert results[1] is None
    assert len(provider.calls) == 1
    assert resolver.pending_count == 0


def test_out_of_range_timestamp_is_weather_unavailable():
    resolver = WeatherResolver([FakeProvider('p')])
    bad = ForecastPoint(lat=2.0, lon=1.0, distance=2.0, timestamp=10 ** 13)
    with pytest.raises(WeatherUnavailableError, match='out of range'):
        resolver.resolve(bad)


def test_unexpected_error_outside_chain_leaves_slot_null(monkeypatch):
    resolver = WeatherResolver([FakeProvider('p')], max_concurrency=2)
    real = resolver._run_chain

    def flaky(pt):
        if pt.index == 0:
            raise RuntimeError('bug')
        return real(pt)

    monkeypatch.setattr(resolver, '_run_chain', flaky)
    results = resolver.resolve_batch([point(0), point(1)])
    assert results[0] is None
    assert results[1] is not None


def test_cancelled_batch_leaves_points_null():
    release = threading.Event()
    provider = FakeProvider('slow', release=release)
    resolver = WeatherResolver([provider], max_concurrency=2)
    cancel = threading.Event()
    cancel.set()
    try:
        results = resolver.resolve_batch([point(i) for i in range(4)], cancel=cancel)
    finally:
        release.set()
    assert results == [None, None, None, None]


def test_build_providers_skips_keyless_entries():
    providers = build_providers(Settings())
    assert [p.name for p in providers] == ['Open-Meteo']


def test_build_providers_order_and_keys():
    settings = Settings(openweather_api_key='ow', visualcrossing_api_key='vc',
                        provider_order=('visualcrossing', 'openmeteo', 'openweather'))
    providers = build_providers(settings)
    assert [p.name for p in providers] == ['Visual Crossing', 'Open-Meteo', 'OpenWeather']
    assert providers[0].rate_limiter.min_interval == pytest.approx(1 / 5)


def test_build_providers_unknown_name():
    with pytest.raises(ValueError):
        build_providers(Settings(provider_order=('darksky',)))


def test_from_settings_uses_concurrency():
    resolver = WeatherResolver.from_settings(Settings(max_concurrency=3))
    assert resolver.max_concurrency == 3
