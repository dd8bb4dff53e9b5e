"""Per-user daily counters of upstream API calls."""

import logging
from datetime import datetime, timedelta
from typing import Dict, List

from chargesync import db
from chargesync.models import ApiMetrics, User
from chargesync.time_utils import get_user_time, resolve_timezone

_LOGGER = logging.getLogger(__name__)

METRIC_SOURCES = ('foxess', 'amber', 'weather')


def record_api_call(user: User, source: str, count: int = 1) -> ApiMetrics:
    """
    Increment today's counter for ``source``.

    The date is taken in the user's timezone so that a day's usage lines up
    with the user's own midnight. Caller commits.
    """
    if source not in METRIC_SOURCES:
        raise ValueError(f"Unknown metrics source: {source}")

    date_key = get_user_time(user.timezone).date_key()
    metrics = ApiMetrics.query.filter_by(user_id=user.id, date_key=date_key).first()
    if metrics is None:
        metrics = ApiMetrics(user_id=user.id, date_key=date_key, foxess=0, amber=0, weather=0)
        db.session.add(metrics)

    setattr(metrics, source, (getattr(metrics, source) or 0) + count)
    _LOGGER.debug(f"API call recorded for user {user.id}: {source} ({date_key})")
    return metrics


def get_recent_metrics(user: User, days: int = 7) -> List[Dict[str, int]]:
    """Return counters for the last ``days`` days (newest first), zero-filled."""
    tz = resolve_timezone(user.timezone)
    today = datetime.now(tz).date()
    keys = [(today - timedelta(days=offset)).isoformat() for offset in range(max(days, 1))]

    rows = ApiMetrics.query.filter(
        ApiMetrics.user_id == user.id,
        ApiMetrics.date_key.in_(keys)
    ).all()
    by_date = {row.date_key: row.to_dict() for row in rows}

    return [
        by_date.get(key, {'date': key, 'foxess': 0, 'amber': 0, 'weather': 0})
        for key in keys
    ]
