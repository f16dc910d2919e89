from flask import Flask, jsonify, request, Response
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import logging
import math
import time

from routecast.backend.config import Settings
from routecast.backend.errors import (
    ParseError,
    RequestValidationError,
    RoutecastError,
    WeatherError,
)
from routecast.backend.gpx_parser import parse_gpx, validate_gpx_upload
from routecast.backend.route_sampling import (
    MAX_TIMESTAMP,
    MIN_TIMESTAMP,
    ForecastPoint,
    estimate_schedule,
    sample_route,
    timestamp_in_range,
)
from routecast.backend.simulated_weather import simulate_weather
from routecast.backend.weather import summarize_route_weather, to_csv
from routecast.backend.weather_providers import WeatherRecord
from routecast.backend.weather_service import WeatherResolver

log = logging.getLogger('routecast.api')

UNAVAILABLE_MESSAGE = 'Weather data unavailable'


def _truthy(raw: Optional[str]) -> bool:
    return str(raw or '').strip().lower() in ('1', 'true', 'yes', 'on')


def _number(value: Any, name: str, where: str) -> float:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RequestValidationError(f"{where}: '{name}' must be a number")
    v = float(value)
    if not math.isfinite(v):
        raise RequestValidationError(f"{where}: '{name}' must be finite")
    return v


def _check_point(raw: Any, position: int) -> ForecastPoint:
    where = f"points[{position}]"
    if not isinstance(raw, dict):
        raise RequestValidationError(f"{where} must be an object")
    for name in ('lat', 'lon', 'timestamp', 'distance'):
        if name not in raw:
            raise RequestValidationError(f"{where}: missing '{name}'")
    lat = _number(raw['lat'], 'lat', where)
    lon = _number(raw['lon'], 'lon', where)
    ts = _number(raw['timestamp'], 'timestamp', where)
    dist = _number(raw['distance'], 'distance', where)
    if not -90.0 <= lat <= 90.0:
        raise RequestValidationError(f"{where}: lat {lat} outside [-90, 90]")
    if not -180.0 <= lon <= 180.0:
        raise RequestValidationError(f"{where}: lon {lon} outside [-180, 180]")
    if dist < 0:
        raise RequestValidationError(f"{where}: distance must be >= 0")
    if not timestamp_in_range(ts):
        raise RequestValidationError(
            f"{where}: timestamp {ts:g} outside [{MIN_TIMESTAMP}, {MAX_TIMESTAMP}]")
    index = raw.get('index', position)
    if isinstance(index, bool) or not isinstance(index, int):
        raise RequestValidationError(f"{where}: 'index' must be an integer")
    return ForecastPoint(lat=lat, lon=lon, distance=dist, timestamp=int(math.floor(ts)), index=index)


def parse_points_payload(body: Any, max_points: int) -> List[ForecastPoint]:
    """Validate a `{"points": [...]}` body; raises RequestValidationError."""
    if not isinstance(body, dict):
        raise RequestValidationError('Request body must be a JSON object')
    raw = body.get('points')
    if not isinstance(raw, list):
        raise RequestValidationError("'points' must be an array")
    if not raw:
        raise RequestValidationError("'points' must contain at least one point")
    if len(raw) > max_points:
        raise RequestValidationError(f"Too many points ({len(raw)}); maximum is {max_points}")
    return [_check_point(p, i) for i, p in enumerate(raw)]


def parse_start_time(raw: Optional[str]) -> float:
    """ISO-8601 (naive means UTC) or Unix seconds; None means now."""
    if raw is None or not str(raw).strip():
        return time.time()
    s = str(raw).strip()
    try:
        v = float(s)
    except ValueError:
        pass
    else:
        if not timestamp_in_range(v):
            raise RequestValidationError(f"Invalid start_time: {raw!r}")
        return v
    try:
        dt = datetime.fromisoformat(s.replace('Z', '+00:00'))
    except ValueError:
        raise RequestValidationError(f"Invalid start_time: {raw!r}; expected ISO-8601 or Unix seconds")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    v = dt.timestamp()
    if not timestamp_in_range(v):
        raise RequestValidationError(f"Invalid start_time: {raw!r}; outside the supported range")
    return v


def _float_param(name: str, default: float) -> float:
    raw = request.values.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise RequestValidationError(f"'{name}' must be a number, got {raw!r}")


def _read_upload(max_bytes: int) -> Tuple[str, bytes]:
    f = request.files.get('file')
    if f is not None:
        data = f.read(max_bytes + 1)
        return f.filename or '', data
    data = request.get_data(cache=False)
    if not data:
        raise ParseError('No file uploaded')
    return request.args.get('filename') or 'route.gpx', data


def _records_json(records: List[Optional[WeatherRecord]]) -> List[Optional[Dict[str, Any]]]:
    return [r.to_json() if r is not None else None for r in records]


def create_app(settings: Optional[Settings] = None, resolver: Optional[WeatherResolver] = None) -> Flask:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO),
                        format='[%(levelname)s] %(message)s')
    if resolver is None:
        resolver = WeatherResolver.from_settings(settings)

    app = Flask(__name__)
    app.config['ROUTECAST_SETTINGS'] = settings
    app.config['ROUTECAST_RESOLVER'] = resolver
    log.info('[STEP] providers: %s', ', '.join(p.name for p in resolver.providers) or 'none')

    @app.errorhandler(RoutecastError)
    def handle_routecast_error(e: RoutecastError):
        status = type(e).status_code
        body: Dict[str, Any] = {'success': False, 'error': str(e)}
        if isinstance(e, ParseError) and e.point_index is not None:
            body['point_index'] = e.point_index
        if status >= 500:
            log.error('[API] %s: %s', type(e).__name__, e)
        else:
            log.info('[API] rejected (%d): %s', status, e)
        return jsonify(body), status

    def _resolve(points: List[ForecastPoint], simulate: bool) -> List[Optional[WeatherRecord]]:
        if simulate:
            seed = request.args.get('seed')
            try:
                seed_value = int(seed) if seed is not None else None
            except ValueError:
                raise RequestValidationError(f"'seed' must be an integer, got {seed!r}")
            log.info('[SIMULATE] %d points', len(points))
            return list(simulate_weather(points, seed=seed_value))
        return resolver.resolve_batch(points)

    @app.route('/api/weather', methods=['POST'])
    def api_weather_batch():
        points = parse_points_payload(request.get_json(silent=True), settings.max_batch_points)
        simulate = _truthy(request.args.get('simulate'))
        records = _resolve(points, simulate)
        resolved = sum(1 for r in records if r is not None)
        body: Dict[str, Any] = {
            'success': resolved > 0,
            'data': _records_json(records),
            'resolved': resolved,
            'summary': summarize_route_weather(points, records),
        }
        if simulate:
            body['simulated'] = True
        if resolved == 0:
            body['error'] = UNAVAILABLE_MESSAGE
        return jsonify(body)

    @app.route('/api/weather', methods=['GET'])
    def api_weather_single():
        args = request.args
        raw: Dict[str, Any] = {}
        for name in ('lat', 'lon', 'timestamp', 'distance'):
            value = args.get(name)
            if value is None:
                raise RequestValidationError(f"Missing '{name}' query parameter")
            try:
                raw[name] = float(value)
            except ValueError:
                raise RequestValidationError(f"'{name}' must be a number, got {value!r}")
        point = _check_point(raw, 0)
        try:
            record = resolver.resolve(point)
        except WeatherError as e:
            log.warning('[API] single point unresolved: %s', e)
            return jsonify({'success': False, 'data': [None], 'error': UNAVAILABLE_MESSAGE}), 404
        return jsonify({'success': True, 'data': [record.to_json()]})

    @app.route('/api/weather/export', methods=['POST'])
    def api_weather_export():
        points = parse_points_payload(request.get_json(silent=True), settings.max_batch_points)
        records = _resolve(points, _truthy(request.args.get('simulate')))
        return Response(to_csv(points, records), mimetype='text/csv',
                        headers={'Content-Disposition': 'attachment; filename=route_weather.csv'})

    @app.route('/api/route', methods=['POST'])
    def api_route():
        filename, data = _read_upload(settings.max_upload_bytes)
        validate_gpx_upload(filename, len(data), settings.max_upload_bytes)
        interval_km = _float_param('interval_km', settings.default_interval_km)
        avg_speed_kmh = _float_param('avg_speed_kmh', settings.default_avg_speed_kmh)
        start_s = parse_start_time(request.values.get('start_time'))
        track = parse_gpx(data)
        points = sample_route(track, interval_km, start_s, avg_speed_kmh,
                              max_points=settings.max_forecast_points)
        log.info('[UPLOAD] %s -> %d forecast points', filename, len(points))
        return jsonify({
            'success': True,
            'track': track.summary(),
            'schedule': estimate_schedule(track, start_s, avg_speed_kmh),
            'points': [p.to_dict() for p in points],
            'route': track.to_geojson(),
        })

    @app.route('/api/health')
    def api_health():
        providers = [{'name': p.name, 'available': p.is_available()} for p in resolver.providers]
        return jsonify({
            'status': 'ok' if any(p['available'] for p in providers) else 'degraded',
            'providers': providers,
            'pending': resolver.pending_count,
        })

    return app


def main() -> None:
    settings = Settings.from_env()
    app = create_app(settings)
    app.run(host='0.0.0.0', port=settings.port, debug=settings.debug, use_reloader=False)


if __name__ == '__main__':
    main()
