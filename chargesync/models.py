# chargesync/models.py
import json
import logging

from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from chargesync import db, login
from chargesync.time_utils import utcnow

_LOGGER = logging.getLogger(__name__)


@login.user_loader
def load_user(id):
    return db.session.get(User, int(id))


def _load_json(raw, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        _LOGGER.warning(f"Discarding unparseable JSON column value: {str(raw)[:100]}")
        return default


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), index=True, unique=True, nullable=False)
    password_hash = db.Column(db.String(256))
    api_token = db.Column(db.String(64), index=True, unique=True)  # Bearer token for scheduler/mobile access

    # Inverter (FoxESS Cloud)
    device_sn = db.Column(db.String(50))  # Inverter serial number
    foxess_api_key = db.Column(db.String(100))

    # Amber Electric
    amber_api_key = db.Column(db.String(100))
    amber_site_id = db.Column(db.String(100))  # Selected site (first site used when empty)

    # User Preferences
    timezone = db.Column(db.String(50), default='Australia/Sydney')  # IANA timezone string

    # Weather/Location settings (Open-Meteo)
    weather_location = db.Column(db.String(100), nullable=True)  # City name or postcode
    weather_latitude = db.Column(db.Float, nullable=True)  # Cached geocoded latitude
    weather_longitude = db.Column(db.Float, nullable=True)  # Cached geocoded longitude
    forecast_days = db.Column(db.Integer, default=6)  # 1-16

    # Per-user overrides (seconds); None uses the app defaults
    automation_interval_seconds = db.Column(db.Integer, nullable=True)
    price_cache_ttl = db.Column(db.Integer, nullable=True)
    telemetry_cache_ttl = db.Column(db.Integer, nullable=True)
    weather_cache_ttl = db.Column(db.Integer, nullable=True)

    # JSON: [{"enabled": true, "start": "22:00", "end": "06:00"}, ...]
    blackout_windows = db.Column(db.Text, nullable=True)

    # Solar curtailment (export limit to zero when feed-in drops below threshold)
    curtailment_enabled = db.Column(db.Boolean, default=False)
    curtailment_price_threshold = db.Column(db.Float, default=-2.0)  # c/kWh feed-in

    created_at = db.Column(db.DateTime, default=utcnow)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def get_blackout_windows(self):
        windows = _load_json(self.blackout_windows, [])
        return windows if isinstance(windows, list) else []

    def set_blackout_windows(self, windows):
        self.blackout_windows = json.dumps(windows or [])

    def cache_ttl_overrides(self):
        overrides = {
            'prices': self.price_cache_ttl,
            'telemetry': self.telemetry_cache_ttl,
            'weather': self.weather_cache_ttl,
        }
        return {source: ttl for source, ttl in overrides.items() if ttl is not None}

    def __repr__(self):
        return f'<User {self.email}>'


class AutomationState(db.Model):
    """Per-user automation state, read and written by each cycle"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)

    enabled = db.Column(db.Boolean, default=False)

    # Rule currently driving the inverter (None when idle)
    active_rule = db.Column(db.String(100), nullable=True)
    active_rule_name = db.Column(db.String(100), nullable=True)
    active_segment_enabled = db.Column(db.Boolean, default=False)

    last_check = db.Column(db.BigInteger, default=0)  # epoch ms
    clear_segments_on_next_cycle = db.Column(db.Boolean, default=False)  # One-shot
    segments_cleared = db.Column(db.Boolean, default=False)  # Cleared while disabled
    in_blackout = db.Column(db.Boolean, default=False)

    last_action_result = db.Column(db.Text, nullable=True)  # JSON

    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    user = db.relationship('User', backref=db.backref('automation_state', uselist=False))

    def to_dict(self):
        return {
            'enabled': bool(self.enabled),
            'activeRule': self.active_rule,
            'activeRuleName': self.active_rule_name,
            'activeSegmentEnabled': bool(self.active_segment_enabled),
            'lastCheck': self.last_check,
            'clearSegmentsOnNextCycle': bool(self.clear_segments_on_next_cycle),
            'segmentsCleared': bool(self.segments_cleared),
            'inBlackout': bool(self.in_blackout),
            'lastActionResult': _load_json(self.last_action_result, None),
        }

    def __repr__(self):
        return f'<AutomationState user={self.user_id} enabled={self.enabled} active={self.active_rule}>'


class Rule(db.Model):
    """User-defined automation rule"""
    __table_args__ = (db.UniqueConstraint('user_id', 'rule_key', name='uq_rule_user_key'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)

    rule_key = db.Column(db.String(100), nullable=False)  # Slug of the name, e.g. "low_soc_charge"
    name = db.Column(db.String(100), nullable=False)
    enabled = db.Column(db.Boolean, default=True)
    priority = db.Column(db.Integer, default=5)  # Lower number wins
    cooldown_minutes = db.Column(db.Integer, default=5)

    # Conditions as JSON, keyed by kind:
    #   {"soc": {"enabled": true, "operator": "<", "value": 20},
    #    "price": {"enabled": true, "type": "feedIn", "operator": ">", "value": 30}}
    conditions_json = db.Column(db.Text, nullable=True)

    # Action as JSON:
    #   {"workMode": "ForceCharge", "durationMinutes": 30, "fdPwr": 5000, "fdSoc": 90}
    action_json = db.Column(db.Text, nullable=True)

    last_triggered = db.Column(db.DateTime, nullable=True)  # Naive UTC

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    user = db.relationship('User', backref=db.backref('rules', lazy='dynamic', cascade='all, delete-orphan'))

    @property
    def conditions(self):
        conditions = _load_json(self.conditions_json, {})
        return conditions if isinstance(conditions, dict) else {}

    @conditions.setter
    def conditions(self, value):
        self.conditions_json = json.dumps(value or {})

    @property
    def action(self):
        action = _load_json(self.action_json, {})
        return action if isinstance(action, dict) else {}

    @action.setter
    def action(self, value):
        self.action_json = json.dumps(value or {})

    def to_dict(self):
        return {
            'id': self.rule_key,
            'name': self.name,
            'enabled': bool(self.enabled),
            'priority': self.priority,
            'cooldownMinutes': self.cooldown_minutes,
            'conditions': self.conditions,
            'action': self.action,
            'lastTriggered': self.last_triggered.isoformat() if self.last_triggered else None,
        }

    def __repr__(self):
        return f'<Rule {self.rule_key} (priority={self.priority}, enabled={self.enabled})>'


class QuickControlState(db.Model):
    """Active manual charge/discharge override (at most one per user)"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)

    active = db.Column(db.Boolean, default=True)
    control_type = db.Column(db.String(20), nullable=False)  # 'charge' or 'discharge'
    power = db.Column(db.Integer, nullable=False)  # W
    duration_minutes = db.Column(db.Integer, nullable=False)
    started_at = db.Column(db.BigInteger, nullable=False)  # epoch ms
    expires_at = db.Column(db.BigInteger, nullable=False)  # epoch ms

    def to_dict(self):
        return {
            'active': bool(self.active),
            'type': self.control_type,
            'power': self.power,
            'durationMinutes': self.duration_minutes,
            'startedAt': self.started_at,
            'expiresAt': self.expires_at,
        }

    def __repr__(self):
        return f'<QuickControlState {self.control_type} {self.power}W until {self.expires_at}>'


class AutomationHistory(db.Model):
    """Append-only audit trail of automation cycles and rule changes"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)

    event_type = db.Column(db.String(30), nullable=False)  # cycle, rule_triggered, quick_control, ...
    epoch_ms = db.Column(db.BigInteger, nullable=False, index=True)

    active_rule_before = db.Column(db.String(100), nullable=True)
    active_rule_after = db.Column(db.String(100), nullable=True)
    rule_id = db.Column(db.String(100), nullable=True)
    rule_name = db.Column(db.String(100), nullable=True)
    action_taken = db.Column(db.String(50), nullable=True)  # triggered, continuing, cleared, none, ...

    evaluation_results = db.Column(db.Text, nullable=True)  # JSON list of per-rule evaluations
    details = db.Column(db.Text, nullable=True)  # JSON

    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.event_type,
            'epochMs': self.epoch_ms,
            'activeRuleBefore': self.active_rule_before,
            'activeRuleAfter': self.active_rule_after,
            'ruleId': self.rule_id,
            'ruleName': self.rule_name,
            'actionTaken': self.action_taken,
            'evaluationResults': _load_json(self.evaluation_results, []),
            'details': _load_json(self.details, {}),
        }

    def __repr__(self):
        return f'<AutomationHistory {self.event_type} {self.active_rule_before}->{self.active_rule_after}>'


class ApiMetrics(db.Model):
    """Per-user, per-day upstream API call counters (date in the user's timezone)"""
    __table_args__ = (db.UniqueConstraint('user_id', 'date_key', name='uq_metrics_user_date'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    date_key = db.Column(db.String(10), nullable=False)  # YYYY-MM-DD

    foxess = db.Column(db.Integer, default=0)
    amber = db.Column(db.Integer, default=0)
    weather = db.Column(db.Integer, default=0)

    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'date': self.date_key,
            'foxess': self.foxess or 0,
            'amber': self.amber or 0,
            'weather': self.weather or 0,
        }

    def __repr__(self):
        return f'<ApiMetrics {self.date_key} foxess={self.foxess} amber={self.amber} weather={self.weather}>'


class PriceCacheEntry(db.Model):
    """Cached historical Amber price interval, unique per (start time, channel)"""
    __table_args__ = (
        db.UniqueConstraint('user_id', 'site_id', 'start_time', 'channel_type', name='uq_price_interval'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    site_id = db.Column(db.String(100), nullable=False)

    start_time = db.Column(db.DateTime, nullable=False, index=True)  # Naive UTC
    end_time = db.Column(db.DateTime, nullable=False)
    channel_type = db.Column(db.String(20), nullable=False)  # 'general' or 'feedIn'
    per_kwh = db.Column(db.Float)  # c/kWh
    interval_type = db.Column(db.String(30))  # ActualInterval, CurrentInterval, ForecastInterval

    def to_dict(self):
        return {
            'startTime': self.start_time.isoformat() + 'Z',
            'endTime': self.end_time.isoformat() + 'Z',
            'channelType': self.channel_type,
            'perKwh': self.per_kwh,
            'type': self.interval_type,
        }

    def __repr__(self):
        return f'<PriceCacheEntry {self.start_time} {self.channel_type} {self.per_kwh}c/kWh>'


class CachedPayload(db.Model):
    """Last good upstream payload per user and source, used for TTL checks and fallback"""
    __table_args__ = (db.UniqueConstraint('user_id', 'source', name='uq_cached_payload'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    source = db.Column(db.String(30), nullable=False)  # prices, telemetry, weather, sites
    payload = db.Column(db.Text, nullable=False)  # JSON
    fetched_at = db.Column(db.BigInteger, nullable=False)  # epoch ms

    @property
    def data(self):
        return _load_json(self.payload, None)

    def __repr__(self):
        return f'<CachedPayload {self.source} user={self.user_id} at {self.fetched_at}>'


class CurtailmentState(db.Model):
    """Last applied solar curtailment state, so the export limit is only written on change"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)

    active = db.Column(db.Boolean, default=False)
    last_price = db.Column(db.Float, nullable=True)
    threshold = db.Column(db.Float, nullable=True)
    last_activated = db.Column(db.DateTime, nullable=True)
    last_deactivated = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            'active': bool(self.active),
            'lastPrice': self.last_price,
            'threshold': self.threshold,
            'lastActivated': self.last_activated.isoformat() if self.last_activated else None,
            'lastDeactivated': self.last_deactivated.isoformat() if self.last_deactivated else None,
        }

    def __repr__(self):
        return f'<CurtailmentState active={self.active} threshold={self.threshold}>'
