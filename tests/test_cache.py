from __future__ import annotations

import threading
import time
from datetime import date
from unittest import TestCase

from chargesync import db
from chargesync.cache import DataCache, find_gaps, merge_price_entries, split_date_range
from chargesync.errors import RateLimited, UpstreamTimeout, UpstreamUnavailable
from fakes import AppTestCase, FakeClock, price_intervals


class GapDetectionTests(TestCase):
    def test_only_dates_after_cached_span_are_fetched(self) -> None:
        gaps = find_gaps(date(2024, 12, 6), date(2024, 12, 10), [date(2024, 12, 6), date(2024, 12, 7)])
        self.assertEqual(gaps, [(date(2024, 12, 8), date(2024, 12, 10))])

    def test_gaps_before_and_after(self) -> None:
        gaps = find_gaps(date(2024, 12, 1), date(2024, 12, 10), [date(2024, 12, 4), date(2024, 12, 6)])
        self.assertEqual(gaps, [
            (date(2024, 12, 1), date(2024, 12, 3)),
            (date(2024, 12, 7), date(2024, 12, 10)),
        ])

    def test_empty_cache_fetches_everything(self) -> None:
        self.assertEqual(find_gaps(date(2024, 12, 1), date(2024, 12, 2), []),
                         [(date(2024, 12, 1), date(2024, 12, 2))])

    def test_fully_cached_range(self) -> None:
        cached = [date(2024, 12, 1), date(2024, 12, 2)]
        self.assertEqual(find_gaps(date(2024, 12, 1), date(2024, 12, 2), cached), [])

    def test_long_ranges_are_chunked(self) -> None:
        chunks = split_date_range(date(2024, 1, 1), date(2024, 3, 5))
        self.assertEqual([(start.isoformat(), end.isoformat()) for start, end in chunks], [
            ('2024-01-01', '2024-01-30'),
            ('2024-01-31', '2024-02-29'),
            ('2024-03-01', '2024-03-05'),
        ])

    def test_merge_prefers_incoming_and_sorts(self) -> None:
        existing = [
            {'startTime': '2024-12-06T02:00:00Z', 'channelType': 'general', 'perKwh': 10.0},
            {'startTime': '2024-12-05T02:00:00Z', 'channelType': 'general', 'perKwh': 11.0},
        ]
        incoming = [{'startTime': '2024-12-06T02:00:00+00:00', 'channelType': 'general', 'perKwh': 12.0}]
        merged = merge_price_entries(existing, incoming)
        self.assertEqual([entry['perKwh'] for entry in merged], [11.0, 12.0])


class InFlightTests(TestCase):
    def test_concurrent_fetches_share_one_upstream_call(self) -> None:
        cache = DataCache(clock=FakeClock(0))
        started = threading.Event()
        release = threading.Event()
        calls = []
        results = {}

        def slow_fetch():
            calls.append(1)
            started.set()
            release.wait(5)
            return {'value': 42}

        def run(name):
            results[name] = cache._fetch_shared((1, 'prices'), slow_fetch)

        first = threading.Thread(target=run, args=('first',))
        first.start()
        started.wait(5)
        second = threading.Thread(target=run, args=('second',))
        second.start()
        time.sleep(0.2)
        release.set()
        first.join(5)
        second.join(5)

        self.assertEqual(len(calls), 1)
        self.assertEqual(results['first'], ({'value': 42}, True))
        self.assertEqual(results['second'], ({'value': 42}, False))


class PayloadCacheTests(AppTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.cache = self.engine.cache
        self.calls = 0

    def _fetch(self):
        self.calls += 1
        return {'call': self.calls}

    def test_ttl_hit_makes_no_upstream_call(self) -> None:
        first = self.cache.get(self.user, 'prices', self._fetch)
        self.clock.advance(30)
        second = self.cache.get(self.user, 'prices', self._fetch)

        self.assertFalse(first.from_cache)
        self.assertTrue(second.from_cache)
        self.assertEqual(second.data, {'call': 1})
        self.assertEqual(self.calls, 1)

    def test_expired_entry_is_refetched(self) -> None:
        self.cache.get(self.user, 'prices', self._fetch)
        self.clock.advance(61)
        result = self.cache.get(self.user, 'prices', self._fetch)
        self.assertEqual(result.data, {'call': 2})

    def test_force_bypasses_ttl(self) -> None:
        self.cache.get(self.user, 'weather', self._fetch)
        self.assertEqual(self.cache.get(self.user, 'weather', self._fetch, force=True).data, {'call': 2})

    def test_user_ttl_override(self) -> None:
        self.user.price_cache_ttl = 5
        self.cache.get(self.user, 'prices', self._fetch)
        self.clock.advance(6)
        self.cache.get(self.user, 'prices', self._fetch)
        self.assertEqual(self.calls, 2)

    def test_last_good_payload_served_on_upstream_failure(self) -> None:
        self.cache.get(self.user, 'telemetry', self._fetch)
        self.clock.advance(301)

        def failing():
            raise UpstreamTimeout("FoxESS API timeout")

        result = self.cache.get(self.user, 'telemetry', failing)
        self.assertTrue(result.stale)
        self.assertEqual(result.data, {'call': 1})
        self.assertIn("timeout", result.error)

    def test_failure_without_cached_payload_raises(self) -> None:
        def failing():
            raise UpstreamTimeout("FoxESS API timeout")

        with self.assertRaises(UpstreamTimeout):
            self.cache.get(self.user, 'telemetry', failing)

    def test_rate_limit_backs_off(self) -> None:
        self.cache.get(self.user, 'prices', self._fetch)
        self.clock.advance(61)

        def limited():
            self.calls += 1
            raise RateLimited("Amber API rate limited", errno=429, retry_after=120)

        self.assertTrue(self.cache.get(self.user, 'prices', limited).stale)
        self.clock.advance(60)
        result = self.cache.get(self.user, 'prices', limited)
        self.assertTrue(result.stale)
        self.assertEqual(self.calls, 2)

        self.clock.advance(61)
        self.assertEqual(self.cache.get(self.user, 'prices', self._fetch).data, {'call': 3})

    def test_invalidate(self) -> None:
        self.cache.get(self.user, 'prices', self._fetch)
        self.cache.invalidate(self.user, 'prices')
        self.cache.get(self.user, 'prices', self._fetch)
        self.assertEqual(self.calls, 2)


class PriceHistoryCacheTests(AppTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.cache = self.engine.cache
        self.requests = []

    def _fetch_range(self, start, end):
        self.requests.append((start, end))
        return price_intervals(start, end)

    def test_only_missing_dates_are_fetched(self) -> None:
        self.cache._store_price_entries(self.user, 'site-1', price_intervals(date(2024, 12, 6), date(2024, 12, 7)))
        db.session.commit()

        merged = self.cache.refresh_prices(self.user, 'site-1', date(2024, 12, 6), date(2024, 12, 10), self._fetch_range)

        self.assertEqual(self.requests, [(date(2024, 12, 8), date(2024, 12, 10))])
        self.assertEqual(len(merged), 10)
        self.assertEqual(merged[0]['startTime'], '2024-12-06T02:00:00Z')

    def test_failed_gap_fetch_serves_cached_rows(self) -> None:
        self.cache._store_price_entries(self.user, 'site-1', price_intervals(date(2024, 12, 6), date(2024, 12, 7)))
        db.session.commit()

        def failing_fetch(start, end):
            self.requests.append((start, end))
            raise UpstreamUnavailable("Amber API unavailable")

        served = self.cache.refresh_prices(self.user, 'site-1', date(2024, 12, 6), date(2024, 12, 10), failing_fetch)

        self.assertEqual(self.requests, [(date(2024, 12, 8), date(2024, 12, 10))])
        self.assertEqual(len(served), 4)

    def test_failed_fetch_without_cached_rows_raises(self) -> None:
        def failing_fetch(start, end):
            raise UpstreamUnavailable("Amber API unavailable")

        with self.assertRaises(UpstreamUnavailable):
            self.cache.refresh_prices(self.user, 'site-1', date(2024, 12, 6), date(2024, 12, 7), failing_fetch)

    def test_second_refresh_is_served_from_cache(self) -> None:
        self.cache.refresh_prices(self.user, 'site-1', date(2024, 12, 6), date(2024, 12, 8), self._fetch_range)
        db.session.commit()
        cached = self.cache.refresh_prices(self.user, 'site-1', date(2024, 12, 6), date(2024, 12, 8), self._fetch_range)

        self.assertEqual(len(self.requests), 1)
        self.assertEqual(len(cached), 6)

    def test_missing_channel_refetches_whole_range(self) -> None:
        general_only = price_intervals(date(2024, 12, 6), date(2024, 12, 7), channels=('general',))
        self.cache._store_price_entries(self.user, 'site-1', general_only)
        db.session.commit()

        merged = self.cache.refresh_prices(self.user, 'site-1', date(2024, 12, 6), date(2024, 12, 7), self._fetch_range)

        self.assertEqual(self.requests, [(date(2024, 12, 6), date(2024, 12, 7))])
        self.assertEqual(len(merged), 4)

    def test_merge_does_not_duplicate_rows(self) -> None:
        self.cache._store_price_entries(self.user, 'site-1', price_intervals(date(2024, 12, 6), date(2024, 12, 6)))
        self.cache._store_price_entries(self.user, 'site-1', price_intervals(date(2024, 12, 6), date(2024, 12, 6)))
        db.session.commit()
        cached = self.cache.get_cached_prices(self.user, 'site-1', date(2024, 12, 6), date(2024, 12, 6))
        self.assertEqual(len(cached), 2)

    def test_engine_price_history_uses_the_users_site(self) -> None:
        prices = self.engine.get_price_history(self.user, date(2024, 12, 1), date(2024, 12, 2))
        self.assertEqual(self.amber.history_requests, [(date(2024, 12, 1), date(2024, 12, 2))])
        self.assertEqual(len(prices), 4)
