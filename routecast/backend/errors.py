"""Exception taxonomy for the route weather pipeline.

Parser and sampler errors are configuration/input problems and are raised to
the immediate caller. Weather errors are recoverable per point: the resolver
falls back across providers and only a systemic failure escapes a batch.
"""
from __future__ import annotations

from typing import Optional


class RoutecastError(Exception):
    """Base class for all errors raised by routecast."""

    status_code = 500


class ParseError(RoutecastError, ValueError):
    """GPX input is empty, malformed or has no usable points."""

    status_code = 400

    def __init__(self, message: str, point_index: Optional[int] = None):
        super().__init__(message)
        self.point_index = point_index


class UploadTooLargeError(ParseError):
    """Uploaded GPX exceeds the configured size limit."""

    status_code = 413


class InvalidIntervalError(RoutecastError, ValueError):
    """Sampling interval, average speed or start time is unusable for a route."""

    status_code = 400


class RequestValidationError(RoutecastError, ValueError):
    """HTTP payload rejected before any provider call."""

    status_code = 400


class WeatherError(RoutecastError):
    status_code = 502


class ProviderError(WeatherError):
    def __init__(self, message: str, provider: str = ''):
        super().__init__(message)
        self.provider = provider


class ProviderHttpError(ProviderError):
    """Upstream answered with a non-2xx status (429 and 401 are the usual ones)."""

    def __init__(self, message: str, status_code: int, provider: str = ''):
        super().__init__(message, provider=provider)
        # upstream status, not the status this service answers with
        self.status_code = int(status_code)


class ProviderDataError(ProviderError):
    """Upstream answered 2xx but the payload is missing or unusable."""


class ProviderTransportError(ProviderError):
    """Timeout or connection failure talking to a provider."""


class ValidationError(WeatherError):
    """A transformed record failed range checks."""

    def __init__(self, message: str, provider: str = '', errors: Optional[list] = None):
        super().__init__(message)
        self.provider = provider
        self.errors = errors or []


class WeatherUnavailableError(WeatherError):
    """Every configured provider failed or was unavailable for a point."""

    status_code = 404


class ProvidersUnreachableError(WeatherError):
    """No provider could be reached before any per-point attempt."""

    status_code = 503
