"""
Open-Meteo integration for weather-based automation conditions.

Provides hourly solar radiation and cloud cover forecasts plus the current
weather code, which is classified into:
- sunny: WMO code 0-1 (clear, mainly clear)
- cloudy: WMO code 2-48 (partly cloudy, overcast, fog)
- rainy: WMO code 51+ (drizzle, rain, snow, storms)
"""

import logging
from typing import Dict, Any, Optional, Tuple

import requests
from flask import current_app

from chargesync.errors import UpstreamTimeout, UpstreamUnavailable
from chargesync.models import User

_LOGGER = logging.getLogger(__name__)

OPEN_METEO_FORECAST_URL = 'https://api.open-meteo.com/v1/forecast'
OPEN_METEO_GEOCODE_URL = 'https://geocoding-api.open-meteo.com/v1/search'

# Default coordinates (Sydney, Australia) - used if user location unknown
DEFAULT_LAT = -33.9215
DEFAULT_LON = 151.0390

HOURLY_VARIABLES = 'shortwave_radiation,cloudcover,temperature_2m,precipitation_probability'


def _config(key: str, default):
    return current_app.config.get(key, default)


def _record_weather_call(user: Optional[User]):
    if user is None:
        return
    from chargesync.metrics import record_api_call
    record_api_call(user, 'weather')


def geocode_location(location: str, user: Optional[User] = None) -> Optional[Dict[str, Any]]:
    """
    Geocode a place name (city or postcode) with the Open-Meteo geocoding API.

    Returns:
        {'latitude', 'longitude', 'timezone', 'name'} or None if geocoding fails
    """
    try:
        response = requests.get(
            _config('OPEN_METEO_GEOCODE_URL', OPEN_METEO_GEOCODE_URL),
            params={'name': location, 'count': 1, 'language': 'en', 'format': 'json'},
            timeout=_config('HTTP_TIMEOUT', 10)
        )
        _record_weather_call(user)
        response.raise_for_status()
        data = response.json()
    except requests.RequestException as e:
        _LOGGER.error(f"Failed to geocode location '{location}': {e}")
        return None
    except ValueError as e:
        _LOGGER.error(f"Failed to parse geocoding response: {e}")
        return None

    results = data.get('results') or []
    if not results:
        _LOGGER.warning(f"No geocoding results for '{location}'")
        return None

    place = results[0]
    _LOGGER.info(f"Geocoded '{location}' to ({place.get('latitude')}, {place.get('longitude')})")
    return {
        'latitude': place.get('latitude'),
        'longitude': place.get('longitude'),
        'timezone': place.get('timezone'),
        'name': place.get('name', location),
    }


def get_coordinates_for_user(user: User) -> Tuple[float, float]:
    """
    Get coordinates for the user's location.

    Priority:
    1. Cached coordinates (weather_latitude, weather_longitude)
    2. Geocoded from weather_location (cached back onto the user, caller commits)
    3. Sydney
    """
    if user.weather_latitude is not None and user.weather_longitude is not None:
        return (user.weather_latitude, user.weather_longitude)

    if user.weather_location:
        place = geocode_location(user.weather_location, user)
        if place and place['latitude'] is not None and place['longitude'] is not None:
            user.weather_latitude = place['latitude']
            user.weather_longitude = place['longitude']
            return (place['latitude'], place['longitude'])

    return (DEFAULT_LAT, DEFAULT_LON)


def fetch_forecast(user: User, days: Optional[int] = None) -> Dict[str, Any]:
    """
    Fetch the hourly forecast and current weather for a user's location.

    Raises:
        UpstreamTimeout / UpstreamUnavailable so the cache can fall back to
        the last good forecast.
    """
    days = days or user.forecast_days or 6
    days = max(1, min(16, int(days)))
    lat, lon = get_coordinates_for_user(user)

    try:
        response = requests.get(
            _config('OPEN_METEO_FORECAST_URL', OPEN_METEO_FORECAST_URL),
            params={
                'latitude': lat,
                'longitude': lon,
                'hourly': HOURLY_VARIABLES,
                'current_weather': 'true',
                'timezone': 'auto',
                'forecast_days': days,
            },
            timeout=_config('HTTP_TIMEOUT', 10)
        )
    except requests.Timeout as e:
        raise UpstreamTimeout("Open-Meteo forecast timed out") from e
    except requests.RequestException as e:
        raise UpstreamUnavailable(f"Open-Meteo forecast failed: {e}") from e

    _record_weather_call(user)

    if response.status_code != 200:
        raise UpstreamUnavailable(
            f"Open-Meteo HTTP {response.status_code}: {response.text[:200]}", errno=response.status_code
        )

    try:
        data = response.json()
    except ValueError as e:
        raise UpstreamUnavailable("Open-Meteo returned invalid JSON") from e

    data['place'] = {
        'latitude': lat,
        'longitude': lon,
        'name': user.weather_location or 'Sydney',
    }
    return data


def detect_timezone(weather: Optional[Dict[str, Any]]) -> Optional[str]:
    """IANA timezone Open-Meteo resolved for the forecast location (timezone=auto)."""
    if not weather:
        return None
    return weather.get('timezone')


def classify_weather_code(code: Optional[int]) -> Optional[str]:
    """Classify a WMO weather code into sunny/cloudy/rainy."""
    if code is None:
        return None
    if code <= 1:
        return 'sunny'
    if code <= 48:
        return 'cloudy'
    return 'rainy'


def describe_weather_code(code: int) -> str:
    if code <= 1:
        return 'Clear'
    if code <= 3:
        return 'Partly Cloudy'
    if code <= 48:
        return 'Cloudy/Fog'
    if code <= 67:
        return 'Rain'
    return 'Storm'
