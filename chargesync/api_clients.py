"""
HTTP clients for FoxESS Cloud (inverter telemetry and control) and Amber
Electric (spot prices).

FoxESS auth uses signature-based headers:
  - token: API key
  - timestamp: milliseconds since epoch
  - signature: MD5 of path, token and timestamp joined by a literal "\\r\\n"

All calls are blocking with a bounded timeout. Failures are raised as the
typed errors in :mod:`chargesync.errors`; rate-limited FoxESS responses are
not counted against the user's API metrics.
"""

import hashlib
import logging
import time
from datetime import date
from typing import Any, Callable, Dict, List, Optional

import requests
from flask import current_app

from chargesync.errors import (
    HardwareRejection,
    RateLimited,
    UpstreamTimeout,
    UpstreamUnavailable,
)

_LOGGER = logging.getLogger(__name__)

FOXESS_BASE_URL = 'https://www.foxesscloud.com'
AMBER_BASE_URL = 'https://api.amber.com.au/v1'
DEFAULT_TIMEOUT = 10  # seconds

# FoxESS errno values
FOXESS_OK = 0
FOXESS_RATE_LIMITED = 40402
FOXESS_TIMEOUT = 408

FOXESS_MAX_SCHEDULE_GROUPS = 8

# Variables needed by automation conditions
TELEMETRY_VARIABLES = [
    'SoC',
    'batTemperature',
    'ambientTemperation',
    'pvPower',
    'loadsPower',
    'gridConsumptionPower',
    'feedinPower',
]


class FoxESSClient:
    """Client for the FoxESS Cloud Open API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = FOXESS_BASE_URL,
        timeout: int = DEFAULT_TIMEOUT,
        on_call: Optional[Callable[[], Any]] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._on_call = on_call

    def _generate_signature(self, path: str) -> Dict[str, str]:
        """Build auth headers for a request to ``path``."""
        timestamp = str(round(time.time() * 1000))
        sign_text = fr"{path}\r\n{self.api_key}\r\n{timestamp}"
        signature = hashlib.md5(sign_text.encode('utf-8')).hexdigest()
        return {
            'token': self.api_key,
            'timestamp': timestamp,
            'signature': signature,
            'lang': 'en',
            'Content-Type': 'application/json',
        }

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        """
        Make an authenticated request and return the ``result`` field.

        Raises:
            UpstreamTimeout: request exceeded the timeout
            UpstreamUnavailable: connection failure, 5xx, or unparseable body
            RateLimited: FoxESS errno 40402
            HardwareRejection: any other non-zero errno
        """
        url = f"{self.base_url}{path}"
        headers = self._generate_signature(path)

        try:
            response = requests.request(method, url, headers=headers, json=payload, timeout=self.timeout)
        except requests.Timeout as e:
            raise UpstreamTimeout(f"FoxESS API timeout on {path}", errno=FOXESS_TIMEOUT) from e
        except requests.RequestException as e:
            raise UpstreamUnavailable(f"FoxESS API request failed on {path}: {e}") from e

        if response.status_code >= 500:
            raise UpstreamUnavailable(
                f"FoxESS API HTTP {response.status_code} on {path}", errno=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"FoxESS API returned invalid JSON on {path}") from e

        errno = data.get('errno', -1)
        if errno == FOXESS_RATE_LIMITED:
            _LOGGER.warning(f"FoxESS API rate limited on {path}")
            raise RateLimited(f"FoxESS API rate limited on {path}", errno=errno)

        if self._on_call:
            self._on_call()

        if errno != FOXESS_OK:
            msg = data.get('msg', 'Unknown error')
            raise HardwareRejection(f"FoxESS API error {errno}: {msg}", errno=errno)

        return data.get('result')

    def query_real_time(self, sn: str, variables: Optional[List[str]] = None) -> List[dict]:
        """Query real-time telemetry. Returns the raw ``result`` list."""
        payload = {'sn': sn, 'variables': variables or TELEMETRY_VARIABLES}
        return self._request('POST', '/op/v0/device/real/query', payload) or []

    def get_schedule(self, sn: str) -> dict:
        return self._request('POST', '/op/v1/device/scheduler/get', {'deviceSN': sn}) or {}

    def set_schedule(self, sn: str, groups: List[dict]) -> Any:
        """Write scheduler groups (time periods). At most 8 groups are sent."""
        if len(groups) > FOXESS_MAX_SCHEDULE_GROUPS:
            _LOGGER.warning(
                f"FoxESS scheduler supports {FOXESS_MAX_SCHEDULE_GROUPS} groups, "
                f"truncating {len(groups)}"
            )
            groups = groups[:FOXESS_MAX_SCHEDULE_GROUPS]
        _LOGGER.info(f"FoxESS Cloud: setting {len(groups)} scheduler group(s) on {sn}")
        return self._request('POST', '/op/v1/device/scheduler/enable', {'deviceSN': sn, 'groups': groups})

    def set_scheduler_flag(self, sn: str, enabled: bool) -> Any:
        return self._request(
            'POST', '/op/v1/device/scheduler/set/flag', {'deviceSN': sn, 'enable': 1 if enabled else 0}
        )

    def set_setting(self, sn: str, key: str, value: Any) -> Any:
        """Write a single device setting, e.g. ExportLimitPower."""
        return self._request('POST', '/op/v0/device/setting/set', {'sn': sn, 'key': key, 'value': value})


def parse_real_time(result: Optional[List[dict]]) -> Dict[str, Any]:
    """Flatten a real-time query result into {variable: value}."""
    values: Dict[str, Any] = {}
    if not result:
        return values
    for item in result[0].get('datas', []) if isinstance(result[0], dict) else []:
        variable = item.get('variable')
        if variable:
            values[variable] = item.get('value')
    return values


class AmberAPIClient:
    """Client for the Amber Electric public API (prices in c/kWh)."""

    def __init__(
        self,
        api_key: str,
        base_url: str = AMBER_BASE_URL,
        timeout: int = DEFAULT_TIMEOUT,
        on_call: Optional[Callable[[], Any]] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._on_call = on_call

    def _get(self, path: str, params: Optional[dict] = None) -> Any:
        url = f"{self.base_url}{path}"
        headers = {'Authorization': f'Bearer {self.api_key}', 'Accept': 'application/json'}

        try:
            response = requests.get(url, headers=headers, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise UpstreamTimeout(f"Amber API timeout on {path}") from e
        except requests.RequestException as e:
            raise UpstreamUnavailable(f"Amber API request failed on {path}: {e}") from e

        if self._on_call:
            self._on_call()

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get('Retry-After'))
            _LOGGER.warning(f"Amber API rate limited on {path}, retry after {retry_after}s")
            raise RateLimited(f"Amber API rate limited on {path}", errno=429, retry_after=retry_after)

        if response.status_code != 200:
            raise UpstreamUnavailable(
                f"Amber API HTTP {response.status_code} on {path}: {response.text[:200]}",
                errno=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"Amber API returned invalid JSON on {path}") from e

    def get_sites(self) -> List[dict]:
        return self._get('/sites') or []

    def get_current_prices(self, site_id: str, next_intervals: int = 288) -> List[dict]:
        """Current interval plus ``next_intervals`` forecast intervals for both channels."""
        return self._get(f'/sites/{site_id}/prices/current', params={'next': next_intervals}) or []

    def get_prices(self, site_id: str, start_date: date, end_date: date, resolution: int = 30) -> List[dict]:
        """Historical prices for an inclusive date range (Amber caps a request at ~30 days)."""
        params = {
            'startDate': start_date.isoformat(),
            'endDate': end_date.isoformat(),
            'resolution': resolution,
        }
        return self._get(f'/sites/{site_id}/prices', params=params) or []


def _parse_retry_after(value: Optional[str]) -> float:
    if not value:
        return 60.0
    try:
        return max(float(value), 0.0)
    except ValueError:
        return 60.0


def get_foxess_client(user) -> Optional[FoxESSClient]:
    """Create a FoxESS client for a user, or None when no API key is configured."""
    if not user.foxess_api_key:
        return None

    from chargesync.metrics import record_api_call

    config = current_app.config
    return FoxESSClient(
        user.foxess_api_key,
        base_url=config.get('FOXESS_BASE_URL', FOXESS_BASE_URL),
        timeout=config.get('HTTP_TIMEOUT', DEFAULT_TIMEOUT),
        on_call=lambda: record_api_call(user, 'foxess'),
    )


def get_amber_client(user) -> Optional[AmberAPIClient]:
    """Create an Amber client for a user, or None when no API key is configured."""
    if not user.amber_api_key:
        return None

    from chargesync.metrics import record_api_call

    config = current_app.config
    return AmberAPIClient(
        user.amber_api_key,
        base_url=config.get('AMBER_BASE_URL', AMBER_BASE_URL),
        timeout=config.get('HTTP_TIMEOUT', DEFAULT_TIMEOUT),
        on_call=lambda: record_api_call(user, 'amber'),
    )
