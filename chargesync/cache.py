"""
Per-user cache for upstream price, telemetry and weather data.

Two kinds of data are cached:

- Single payloads (current prices, telemetry, weather, Amber sites) stored
  in :class:`CachedPayload` with a per-source TTL that users may override.
  Within the TTL no upstream call is made; on upstream failure the last
  good payload is served if one exists.
- Historical price intervals stored row-per-interval in
  :class:`PriceCacheEntry`. A refresh only fetches the dates missing before
  or after the cached span, in chunks of at most 30 days, and merges the
  result by (startTime, channelType).

Concurrent fetches for the same (user, source) share one Future so that a
burst of requests produces a single upstream call. Nothing here commits;
callers own the transaction.
"""

import json
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from chargesync import db
from chargesync.errors import RateLimited, UpstreamError
from chargesync.models import CachedPayload, PriceCacheEntry, User
from chargesync.time_utils import now_ms

_LOGGER = logging.getLogger(__name__)

DEFAULT_TTLS = {
    'prices': 60,
    'telemetry': 300,
    'weather': 1800,
    'sites': 7 * 24 * 3600,
}

PRICE_CHANNELS = ('general', 'feedIn')
MAX_DAYS_PER_REQUEST = 30


@dataclass
class CacheResult:
    """A cached or freshly fetched payload."""
    data: Any
    fetched_at: int  # epoch ms
    from_cache: bool
    stale: bool = False
    error: Optional[str] = None


def find_gaps(start: date, end: date, cached_dates: Iterable[date]) -> List[Tuple[date, date]]:
    """
    Work out which dates of [start, end] still need fetching.

    Only the span of cached dates is considered (holes inside it are not
    gaps), so the result is at most a "before" and an "after" range.
    """
    dates = sorted({d for d in cached_dates if start <= d <= end})
    if not dates:
        return [(start, end)]

    gaps = []
    first, last = dates[0], dates[-1]
    if start < first:
        gaps.append((start, first - timedelta(days=1)))
    if end > last:
        gaps.append((last + timedelta(days=1), end))
    return gaps


def split_date_range(start: date, end: date, max_days: int = MAX_DAYS_PER_REQUEST) -> List[Tuple[date, date]]:
    """Split an inclusive date range into chunks of at most ``max_days`` days."""
    chunks = []
    chunk_start = start
    while chunk_start <= end:
        chunk_end = min(chunk_start + timedelta(days=max_days - 1), end)
        chunks.append((chunk_start, chunk_end))
        chunk_start = chunk_end + timedelta(days=1)
    return chunks


def parse_timestamp(value: str) -> datetime:
    """Parse an Amber ISO timestamp into a naive UTC datetime."""
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _entry_key(entry: Dict[str, Any]) -> Tuple[datetime, str]:
    return (parse_timestamp(entry['startTime']), entry.get('channelType'))


def merge_price_entries(existing: List[Dict[str, Any]], incoming: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Merge price intervals by (startTime, channelType); incoming wins on conflict."""
    merged: Dict[Tuple[datetime, str], Dict[str, Any]] = {}
    for entry in list(existing) + list(incoming):
        if not entry.get('startTime'):
            continue
        merged[_entry_key(entry)] = entry
    return [merged[key] for key in sorted(merged, key=lambda k: (k[0], k[1] or ''))]


def missing_channels(entries: List[Dict[str, Any]]) -> List[str]:
    present = {entry.get('channelType') for entry in entries}
    return [channel for channel in PRICE_CHANNELS if channel not in present]


class DataCache:
    """Explicit cache object shared by the automation engine and routes."""

    def __init__(self, ttl_defaults: Optional[Dict[str, int]] = None, clock: Callable[[], int] = now_ms):
        self._ttl_defaults = dict(DEFAULT_TTLS)
        self._ttl_defaults.update(ttl_defaults or {})
        self._clock = clock
        self._lock = threading.Lock()
        self._in_flight: Dict[Tuple[int, str], Future] = {}
        self._backoff_until: Dict[Tuple[int, str], int] = {}

    # ------------------------------------------------------------------
    # TTL payloads
    # ------------------------------------------------------------------

    def ttl_for(self, user: User, source: str) -> int:
        """TTL in seconds for a source, honouring the user's override."""
        return user.cache_ttl_overrides().get(source, self._ttl_defaults.get(source, 60))

    def get_cached(self, user: User, source: str) -> Optional[CacheResult]:
        """Return whatever is stored for a source without contacting upstream."""
        record = CachedPayload.query.filter_by(user_id=user.id, source=source).first()
        if record is None:
            return None
        return CacheResult(data=record.data, fetched_at=record.fetched_at, from_cache=True)

    def get(self, user: User, source: str, fetcher: Callable[[], Any], force: bool = False) -> CacheResult:
        """
        Return the payload for ``source``, fetching only when the TTL has lapsed.

        Raises:
            UpstreamError: the fetch failed and nothing is cached to fall back on
        """
        key = (user.id, source)
        record = CachedPayload.query.filter_by(user_id=user.id, source=source).first()
        now = self._clock()
        ttl_ms = self.ttl_for(user, source) * 1000

        if record is not None and not force and now - (record.fetched_at or 0) < ttl_ms:
            _LOGGER.debug(f"Cache hit for {source} (user {user.id}), age {(now - record.fetched_at) / 1000:.0f}s")
            return CacheResult(data=record.data, fetched_at=record.fetched_at, from_cache=True)

        backoff_until = self._backoff_until.get(key)
        if backoff_until and now < backoff_until:
            error = RateLimited(
                f"{source} fetch backing off for {(backoff_until - now) / 1000:.0f}s",
                retry_after=(backoff_until - now) / 1000,
            )
            return self._serve_last_good(user, source, record, error)

        try:
            data, owner = self._fetch_shared(key, fetcher)
        except UpstreamError as e:
            self._note_rate_limit(key, e, now)
            return self._serve_last_good(user, source, record, e)

        if owner:
            if record is None:
                record = CachedPayload(user_id=user.id, source=source)
                db.session.add(record)
            record.payload = json.dumps(data)
            record.fetched_at = now
        return CacheResult(data=data, fetched_at=now, from_cache=False)

    def invalidate(self, user: User, source: Optional[str] = None):
        """Drop cached payloads (all sources when ``source`` is None)."""
        query = CachedPayload.query.filter_by(user_id=user.id)
        if source:
            query = query.filter_by(source=source)
        deleted = query.delete()
        _LOGGER.info(f"Invalidated {deleted} cached payload(s) for user {user.id} ({source or 'all'})")

    def _serve_last_good(self, user: User, source: str, record: Optional[CachedPayload], error: Exception) -> CacheResult:
        if record is None:
            raise error
        _LOGGER.warning(f"Serving last good {source} for user {user.id} after upstream failure: {error}")
        return CacheResult(
            data=record.data,
            fetched_at=record.fetched_at,
            from_cache=True,
            stale=True,
            error=str(error),
        )

    def _note_rate_limit(self, key: Tuple[int, str], error: Exception, now: int):
        retry_after = getattr(error, 'retry_after', None)
        if isinstance(error, RateLimited) and retry_after:
            self._backoff_until[key] = now + int(retry_after * 1000)

    def _fetch_shared(self, key: Tuple[int, str], fetcher: Callable[[], Any]) -> Tuple[Any, bool]:
        """
        Run ``fetcher`` unless an identical fetch is already running.

        Returns:
            (result, owner) where owner is True for the caller that actually
            performed the fetch and should persist the result.
        """
        with self._lock:
            future = self._in_flight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[key] = future

        if not owner:
            _LOGGER.debug(f"Joining in-flight fetch for {key}")
            return future.result(), False

        try:
            result = fetcher()
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result, True
        finally:
            with self._lock:
                self._in_flight.pop(key, None)

    # ------------------------------------------------------------------
    # Historical prices
    # ------------------------------------------------------------------

    def get_cached_prices(self, user: User, site_id: str, start: date, end: date) -> List[Dict[str, Any]]:
        """Cached intervals whose start falls within [start 00:00, end 23:59:59.999]."""
        range_start = datetime.combine(start, dt_time.min)
        range_end = datetime.combine(end, dt_time.max)
        rows = PriceCacheEntry.query.filter(
            PriceCacheEntry.user_id == user.id,
            PriceCacheEntry.site_id == site_id,
            PriceCacheEntry.start_time >= range_start,
            PriceCacheEntry.start_time <= range_end,
        ).order_by(PriceCacheEntry.start_time, PriceCacheEntry.channel_type).all()
        return [row.to_dict() for row in rows]

    def plan_price_fetch(self, cached: List[Dict[str, Any]], start: date, end: date) -> List[Tuple[date, date]]:
        """Ranges to fetch for [start, end] given the cached intervals."""
        if cached:
            absent = missing_channels(cached)
            if absent:
                _LOGGER.info(f"Price cache has no {', '.join(absent)} intervals, refetching {start} to {end}")
                return [(start, end)]
        gaps = find_gaps(start, end, (parse_timestamp(entry['startTime']).date() for entry in cached))
        chunks = []
        for gap_start, gap_end in gaps:
            chunks.extend(split_date_range(gap_start, gap_end))
        return chunks

    def refresh_prices(
        self,
        user: User,
        site_id: str,
        start: date,
        end: date,
        fetch_range: Callable[[date, date], List[Dict[str, Any]]],
    ) -> List[Dict[str, Any]]:
        """
        Fetch only the missing parts of [start, end] and merge them into the cache.

        Returns:
            The merged intervals for the whole requested range
        """
        cached = self.get_cached_prices(user, site_id, start, end)
        chunks = self.plan_price_fetch(cached, start, end)
        if not chunks:
            _LOGGER.debug(f"Price cache complete for {start} to {end} (user {user.id})")
            return cached

        def fetch_missing():
            fetched = []
            for chunk_start, chunk_end in chunks:
                _LOGGER.info(f"Fetching prices {chunk_start} to {chunk_end} for site {site_id}")
                fetched.extend(fetch_range(chunk_start, chunk_end))
            return fetched

        try:
            fetched, owner = self._fetch_shared((user.id, f'price_history:{site_id}'), fetch_missing)
        except UpstreamError as e:
            if not cached:
                raise
            _LOGGER.warning(f"Price fetch failed for site {site_id}, serving {len(cached)} cached interval(s): {e}")
            return cached
        if owner:
            self._store_price_entries(user, site_id, fetched)
        return merge_price_entries(cached, fetched)

    def _store_price_entries(self, user: User, site_id: str, entries: List[Dict[str, Any]]):
        entries = [entry for entry in entries if entry.get('startTime') and entry.get('endTime')]
        if not entries:
            return

        starts = [parse_timestamp(entry['startTime']) for entry in entries]
        existing = PriceCacheEntry.query.filter(
            PriceCacheEntry.user_id == user.id,
            PriceCacheEntry.site_id == site_id,
            PriceCacheEntry.start_time >= min(starts),
            PriceCacheEntry.start_time <= max(starts),
        ).all()
        by_key = {(row.start_time, row.channel_type): row for row in existing}

        added = 0
        for entry, start_time in zip(entries, starts):
            channel = entry.get('channelType')
            row = by_key.get((start_time, channel))
            if row is None:
                row = PriceCacheEntry(
                    user_id=user.id,
                    site_id=site_id,
                    start_time=start_time,
                    channel_type=channel,
                )
                db.session.add(row)
                by_key[(start_time, channel)] = row
                added += 1
            row.end_time = parse_timestamp(entry['endTime'])
            row.per_kwh = entry.get('perKwh')
            row.interval_type = entry.get('type')

        _LOGGER.info(f"Merged {len(entries)} price interval(s) for site {site_id} ({added} new)")
