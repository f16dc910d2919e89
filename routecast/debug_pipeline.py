import json
import logging
from pathlib import Path
import argparse

from routecast.backend.config import Settings
from routecast.backend.gpx_parser import load_gpx
from routecast.backend.route_sampling import estimate_schedule, sample_route
from routecast.backend.simulated_weather import simulate_weather
from routecast.backend.weather import summarize_route_weather, to_csv
from routecast.backend.weather_service import WeatherResolver

DEFAULT_OUT = Path.cwd() / 'debug_output'


def main(gpx_path: Path, interval_km: float, avg_speed_kmh: float, start_time: float,
         sample_count: int = 0, simulate: bool = False, out_dir: Path = DEFAULT_OUT) -> int:
    out_dir.mkdir(parents=True, exist_ok=True)
    print(f"[STEP] Loading GPX track: {gpx_path}")
    track = load_gpx(gpx_path)
    print(f"[STEP] Track '{track.name}': {len(track.points)} points, {track.total_distance:.2f} km, "
          f"+{track.elevation_gain:.0f} m / -{track.elevation_loss:.0f} m")

    points = sample_route(track, interval_km, start_time, avg_speed_kmh)
    if sample_count > 0:
        points = points[:sample_count]
    print(f"[STEP] Sampling route points: total={len(points)} first={points[0].to_dict() if points else None}")

    if simulate:
        records = simulate_weather(points, seed=0)
    else:
        resolver = WeatherResolver.from_settings(Settings.from_env())
        print(f"[STEP] Providers: {', '.join(p.name for p in resolver.providers) or 'none'}")
        records = resolver.resolve_batch(points)

    for p, r in zip(points, records):
        print(f"\nPOINT {p.index}  km={p.distance:.2f}  eta={p.when.isoformat()}")
        if r is None:
            print('  weather: unavailable')
            continue
        print(f"  {r.provider}: {r.temperature:.1f}°C, {r.weather_description}, "
              f"wind {r.wind_speed:.1f} km/h @ {r.wind_direction:.0f}°, rain {r.precipitation:.1f} mm")

    summary = summarize_route_weather(points, records)
    (out_dir / 'track.json').write_text(json.dumps(track.summary(), indent=2), encoding='utf-8')
    (out_dir / 'schedule.json').write_text(
        json.dumps(estimate_schedule(track, start_time, avg_speed_kmh), indent=2), encoding='utf-8')
    (out_dir / 'forecast_points.json').write_text(
        json.dumps([p.to_dict() for p in points], indent=2), encoding='utf-8')
    (out_dir / 'weather.json').write_text(
        json.dumps([r.to_json() if r is not None else None for r in records], indent=2), encoding='utf-8')
    (out_dir / 'summary.json').write_text(json.dumps(summary, indent=2), encoding='utf-8')
    (out_dir / 'route_weather.csv').write_text(to_csv(points, records), encoding='utf-8')
    print(f"\n[STEP] resolved {summary['resolved']}/{summary['total']}; artifacts in {out_dir}")
    return 0 if summary['available'] else 1


if __name__ == '__main__':
    import time

    parser = argparse.ArgumentParser(description='Debug GPX -> forecast points -> weather pipeline')
    parser.add_argument('gpx', type=str)
    parser.add_argument('--interval-km', type=float, default=5.0)
    parser.add_argument('--speed', type=float, default=15.0, help='average speed in km/h')
    parser.add_argument('--start', type=float, default=None, help='start time, Unix seconds (default: now)')
    parser.add_argument('--samples', type=int, default=0, help='only resolve the first N points')
    parser.add_argument('--simulate', action='store_true', help='use simulated weather instead of providers')
    parser.add_argument('--out', type=str, default=str(DEFAULT_OUT))
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(message)s')
    raise SystemExit(main(Path(args.gpx), args.interval_km, args.speed,
                          args.start if args.start is not None else time.time(),
                          sample_count=args.samples, simulate=args.simulate, out_dir=Path(args.out)))
