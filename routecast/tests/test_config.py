import pytest

from routecast.backend.config import DEFAULT_PROVIDER_ORDER, Settings


def test_defaults_from_empty_environment():
    s = Settings.from_env({})
    assert s.provider_order == DEFAULT_PROVIDER_ORDER
    assert s.openweather_api_key is None
    assert (s.openweather_rps, s.visualcrossing_rps, s.openmeteo_rps) == (10.0, 5.0, 1.0)
    assert s.max_batch_points == 100
    assert s.max_forecast_points == 5000
    assert s.max_upload_bytes == 10 * 1024 * 1024
    assert s.port == 5000
    assert s.debug is False


def test_values_from_environment():
    s = Settings.from_env({
        'OPENWEATHER_API_KEY': 'abc',
        'WEATHER_PROVIDERS': ' OpenMeteo , openweather ',
        'MAX_CONCURRENCY': '8',
        'MAX_FORECAST_POINTS': '250',
        'REQUEST_TIMEOUT_S': '2.5',
        'LOG_LEVEL': 'debug',
        'DEBUG': 'yes',
    })
    assert s.openweather_api_key == 'abc'
    assert s.provider_order == ('openmeteo', 'openweather')
    assert s.max_concurrency == 8
    assert s.max_forecast_points == 250
    assert s.request_timeout_s == 2.5
    assert s.log_level == 'DEBUG'
    assert s.debug is True


def test_bad_number_names_variable():
    with pytest.raises(ValueError, match='OPENMETEO_RPS'):
        Settings.from_env({'OPENMETEO_RPS': 'fast'})
