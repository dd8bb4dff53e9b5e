"""
Automation engine for ChargeSync.

One cycle, for one user:
1. Skip if the automation interval has not elapsed since the last check
2. Skip while a quick control override is running (clean it up once expired)
3. Disabled: clear the inverter schedule once, then do nothing
4. Enabled: honour a pending one-shot clear, then skip inside blackout windows
5. Build a metric snapshot (telemetry, prices, weather) from the cache
6. Select the rule that should drive the inverter and apply build/clear/none
7. Apply solar curtailment
8. Record the cycle in the history and persist state

Only one cycle runs per user at a time. Hardware writes go through a retry
policy; a failed write rolls the active rule back so the next cycle starts
clean.
"""

import json
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from chargesync import db
from chargesync.api_clients import get_amber_client, get_foxess_client, parse_real_time
from chargesync.cache import DataCache
from chargesync.errors import (
    ChargeSyncError,
    DeviceNotConfigured,
    HardwareRejection,
    NotFound,
    UpstreamError,
)
from chargesync.models import AutomationState, CurtailmentState, User
from chargesync.retry import RetryPolicy
from chargesync.route_helpers import db_commit_with_retry
from chargesync.time_utils import LocalTime, get_user_time, in_window, now_ms, parse_hhmm

from .actions import HardwareController, execute_command
from .audit import build_audit_report, record_event
from .curtailment import DEFAULT_RESTORE_EXPORT_LIMIT, apply_curtailment
from .locking import UserLocks
from .quick_control import QuickControlService
from .rules import list_rules
from .segments import SegmentAction, plan_segment
from .selector import CONTINUING, DEACTIVATED, IDLE, TRIGGERED, select_rule
from .state import get_or_create_state, reset_active_rule
from .triggers import MetricSnapshot, extract_current_prices, normalize_conditions
from .weather import detect_timezone, fetch_forecast

_LOGGER = logging.getLogger(__name__)

# Cycle outcome codes
SUCCESS = 'success'
AUTOMATION_DISABLED = 'automation_disabled'
DEVICE_NOT_CONFIGURED = 'device_not_configured'
UPSTREAM_TIMEOUT = 'upstream_timeout'
HARDWARE_REJECTED = 'hardware_rejected'

DEFAULT_INTERVAL_SECONDS = 60
WEATHER_CONDITION_KINDS = ('solarRadiation', 'cloudCover', 'weather')


def needs_weather(rules) -> bool:
    """True if any enabled rule has an enabled weather-based condition."""
    for rule in rules:
        if not rule.enabled:
            continue
        conditions = normalize_conditions(rule.conditions)
        if any(conditions[kind].enabled for kind in WEATHER_CONDITION_KINDS if kind in conditions):
            return True
    return False


def find_blackout_window(windows: List[Dict[str, Any]], local_time: LocalTime) -> Optional[Dict[str, Any]]:
    """
    Return the blackout window in effect at ``local_time``, if any.

    Windows look like {"enabled": true, "start": "22:00", "end": "06:00",
    "days": [1, 2, 3, 4, 5]}. They may cross midnight; end is exclusive;
    days (0 = Sunday) is optional.
    """
    for window in windows or []:
        if not isinstance(window, dict) or not window.get('enabled', True):
            continue
        days = window.get('days')
        if isinstance(days, list) and days and local_time.day_of_week not in days:
            continue
        start = parse_hhmm(window.get('start'), '00:00')
        end = parse_hhmm(window.get('end'), '00:00')
        if in_window(local_time.minutes, start, end):
            return window
    return None


def _float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _outcome_for(error: ChargeSyncError) -> str:
    if isinstance(error, DeviceNotConfigured):
        return DEVICE_NOT_CONFIGURED
    if isinstance(error, UpstreamError):
        return UPSTREAM_TIMEOUT
    return HARDWARE_REJECTED


class AutomationEngine:
    """Runs automation cycles. One instance per app, holding the cache and per-user locks."""

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        foxess_client_factory: Callable = get_foxess_client,
        amber_client_factory: Callable = get_amber_client,
        weather_fetcher: Callable = fetch_forecast,
        clock: Callable[[], int] = now_ms,
    ):
        config = config or {}
        self.interval_seconds = config.get('AUTOMATION_INTERVAL_SECONDS', DEFAULT_INTERVAL_SECONDS)
        self.restore_export_limit = config.get('CURTAILMENT_RESTORE_EXPORT_LIMIT', DEFAULT_RESTORE_EXPORT_LIMIT)
        self.retry_policy = RetryPolicy(
            max_attempts=config.get('HARDWARE_RETRY_ATTEMPTS', 3),
            base_delay=config.get('HARDWARE_RETRY_BASE_DELAY', 1.0),
        )
        self.cache = DataCache(
            ttl_defaults={
                'prices': config.get('CACHE_TTL_PRICES', 60),
                'telemetry': config.get('CACHE_TTL_TELEMETRY', 300),
                'weather': config.get('CACHE_TTL_WEATHER', 1800),
                'sites': config.get('CACHE_TTL_SITES', 7 * 24 * 3600),
            },
            clock=clock,
        )
        self.locks = UserLocks()
        self.foxess_client_factory = foxess_client_factory
        self.amber_client_factory = amber_client_factory
        self.weather_fetcher = weather_fetcher
        self._clock = clock
        self.quick_control = QuickControlService(self.get_controller, clock=clock)

    # ------------------------------------------------------------------
    # Hardware and data access
    # ------------------------------------------------------------------

    def get_controller(self, user: User) -> HardwareController:
        """
        Raises:
            DeviceNotConfigured: no serial number or no FoxESS API key
        """
        if not user.device_sn:
            raise DeviceNotConfigured("Device serial number not configured")
        client = self.foxess_client_factory(user)
        if client is None:
            raise DeviceNotConfigured("FoxESS API key not configured")
        return HardwareController(client, user.device_sn, self.retry_policy)

    def _resolve_site_id(self, user: User, amber) -> Optional[str]:
        if user.amber_site_id:
            return user.amber_site_id
        sites = self.cache.get(user, 'sites', amber.get_sites).data or []
        if not sites:
            return None
        return sites[0].get('id')

    def get_current_prices(self, user: User, force: bool = False) -> Optional[List[Dict[str, Any]]]:
        """Current + forecast price intervals, or None when Amber is not configured."""
        amber = self.amber_client_factory(user)
        if amber is None:
            return None

        def fetch():
            site_id = self._resolve_site_id(user, amber)
            if not site_id:
                _LOGGER.warning(f"No Amber sites for user {user.id}")
                return []
            return amber.get_current_prices(site_id)

        return self.cache.get(user, 'prices', fetch, force=force).data

    def get_price_history(self, user: User, start: date, end: date) -> List[Dict[str, Any]]:
        """Historical intervals for [start, end], fetching only what the cache is missing."""
        amber = self.amber_client_factory(user)
        if amber is None:
            raise ChargeSyncError("Amber API not configured", errno=400)
        site_id = self._resolve_site_id(user, amber)
        if not site_id:
            raise NotFound("No Amber site found")
        return self.cache.refresh_prices(
            user, site_id, start, end,
            lambda chunk_start, chunk_end: amber.get_prices(site_id, chunk_start, chunk_end),
        )

    def build_snapshot(self, user: User, rules, now: Optional[datetime] = None) -> MetricSnapshot:
        """
        Gather the metrics rules are evaluated against.

        Each source degrades independently: a failure is recorded in
        snapshot.errors and the conditions that need it evaluate unmet.
        """
        now = now or datetime.now(timezone.utc)
        snapshot = MetricSnapshot(local_time=get_user_time(user.timezone, now), now=now)

        client = self.foxess_client_factory(user)
        if client is not None and user.device_sn:
            try:
                telemetry = self.cache.get(user, 'telemetry', lambda: client.query_real_time(user.device_sn))
                values = parse_real_time(telemetry.data)
                snapshot.soc = _float(values.get('SoC'))
                snapshot.battery_temp = _float(values.get('batTemperature'))
                snapshot.ambient_temp = _float(values.get('ambientTemperation'))
                snapshot.pv_power_kw = _float(values.get('pvPower'))
                snapshot.load_power_kw = _float(values.get('loadsPower'))
                snapshot.grid_import_kw = _float(values.get('gridConsumptionPower'))
                snapshot.feed_in_power_kw = _float(values.get('feedinPower'))
                if telemetry.stale:
                    snapshot.errors['telemetry'] = telemetry.error
            except ChargeSyncError as e:
                _LOGGER.warning(f"Telemetry unavailable for user {user.id}: {e}")
                snapshot.errors['telemetry'] = str(e)

        try:
            prices = self.get_current_prices(user)
            if prices is not None:
                snapshot.prices = prices
                current = extract_current_prices(prices)
                snapshot.buy_price = current['buy_price']
                snapshot.feed_in_price = current['feed_in_price']
        except ChargeSyncError as e:
            _LOGGER.warning(f"Prices unavailable for user {user.id}: {e}")
            snapshot.errors['prices'] = str(e)

        if needs_weather(rules):
            try:
                weather = self.cache.get(user, 'weather', lambda: self.weather_fetcher(user))
                snapshot.weather = weather.data
                detected = detect_timezone(weather.data)
                if detected and not user.timezone:
                    _LOGGER.info(f"Setting timezone for user {user.id} from weather location: {detected}")
                    user.timezone = detected
            except ChargeSyncError as e:
                _LOGGER.warning(f"Weather unavailable for user {user.id}: {e}")
                snapshot.errors['weather'] = str(e)
        else:
            _LOGGER.debug(f"Skipping weather fetch for user {user.id}, no rule needs it")

        return snapshot

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self, user_id: int, force: bool = False) -> Dict[str, Any]:
        """
        Run one automation cycle for a user.

        Args:
            user_id: User to run for
            force: Ignore the interval gate

        Returns:
            Result dict with an 'outcome' code

        Raises:
            CycleInProgress: a cycle is already running for this user
            NotFound: unknown user
        """
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")

        with self.locks.hold(user_id):
            try:
                return self._run_cycle(user, force)
            except Exception:
                db.session.rollback()
                self._touch_last_check(user_id)
                raise

    def _touch_last_check(self, user_id: int):
        try:
            state = get_or_create_state(user_id)
            state.last_check = self._clock()
            db_commit_with_retry()
        except SQLAlchemyError as e:
            _LOGGER.error(f"Failed to update lastCheck for user {user_id}: {e}")

    def _finish(self, state: AutomationState, current_ms: int, outcome: str, **result) -> Dict[str, Any]:
        state.last_check = current_ms
        db_commit_with_retry()
        result.setdefault('skipped', False)
        result['outcome'] = outcome
        result['lastCheck'] = current_ms
        return result

    def _run_cycle(self, user: User, force: bool) -> Dict[str, Any]:
        current_ms = self._clock()
        state = get_or_create_state(user.id)

        interval_seconds = user.automation_interval_seconds or self.interval_seconds
        elapsed_ms = current_ms - (state.last_check or 0)
        if not force and state.last_check and elapsed_ms < interval_seconds * 1000:
            db_commit_with_retry()
            return {
                'outcome': SUCCESS,
                'skipped': True,
                'reason': 'Interval not elapsed',
                'nextCheckInMs': interval_seconds * 1000 - elapsed_ms,
                'lastCheck': state.last_check,
            }

        # Quick control
        expired_control = None
        control = self.quick_control.get_state(user)
        if control is not None and control.active:
            if not self.quick_control.is_expired(control, current_ms):
                _LOGGER.info(f"Quick control active for user {user.id}, skipping automation")
                return self._finish(
                    state, current_ms, SUCCESS,
                    skipped=True, reason='Quick control active', quickControl=control.to_dict(),
                )
            try:
                expired_control = self.quick_control.expire_if_due(user, current_ms)
            except ChargeSyncError as e:
                _LOGGER.error(f"Failed to clear expired quick control for user {user.id}: {e}")
                return self._finish(state, current_ms, _outcome_for(e), error=e.message, errno=e.errno)

        if not state.enabled:
            return self._run_disabled(user, state, current_ms)

        state.segments_cleared = False
        active_before = state.active_rule

        if state.clear_segments_on_next_cycle:
            try:
                self.get_controller(user).clear_segments()
            except ChargeSyncError as e:
                _LOGGER.error(f"Pending segment clear failed for user {user.id}: {e}")
                return self._finish(state, current_ms, _outcome_for(e), error=e.message, errno=e.errno)
            _LOGGER.info(f"Pending segment clear done for user {user.id}")
            state.clear_segments_on_next_cycle = False
            reset_active_rule(state)

        if not user.device_sn or self.foxess_client_factory(user) is None:
            _LOGGER.warning(f"Automation enabled for user {user.id} but no device is configured")
            return self._finish(state, current_ms, DEVICE_NOT_CONFIGURED, error='Device not configured')

        now = datetime.fromtimestamp(current_ms / 1000, tz=timezone.utc)
        blackout = find_blackout_window(user.get_blackout_windows(), get_user_time(user.timezone, now))
        if blackout is not None:
            _LOGGER.info(f"User {user.id} in blackout window {blackout.get('start')}-{blackout.get('end')}, skipping")
            state.in_blackout = True
            return self._finish(
                state, current_ms, SUCCESS,
                skipped=True, reason='In blackout window', blackoutWindow=blackout,
            )
        state.in_blackout = False

        rules = list_rules(user)
        snapshot = self.build_snapshot(user, rules, now)
        selection = select_rule(rules, snapshot, state.active_rule, now.replace(tzinfo=None))

        result = self._apply_selection(user, state, selection, snapshot)
        result['curtailment'] = apply_curtailment(
            user, snapshot.feed_in_price, lambda: self.get_controller(user), self.restore_export_limit
        )
        if expired_control:
            result['expiredQuickControl'] = expired_control

        record_event(
            user.id,
            'cycle',
            active_rule_before=active_before,
            active_rule_after=state.active_rule,
            rule_id=result.get('ruleId'),
            rule_name=result.get('ruleName'),
            action_taken=result['actionTaken'],
            evaluation_results=result['evaluationResults'],
            details={
                'outcome': result['outcome'],
                'action': result.get('action'),
                'segment': result.get('segment'),
                'deactivationReason': result.get('deactivationReason'),
                'error': result.get('error'),
                'curtailment': result['curtailment'],
                'snapshot': snapshot.to_dict(),
            },
            epoch_ms=current_ms,
        )
        outcome = result.pop('outcome')
        return self._finish(state, current_ms, outcome, **result)

    def _run_disabled(self, user: User, state: AutomationState, current_ms: int) -> Dict[str, Any]:
        result: Dict[str, Any] = {'skipped': True, 'reason': 'Automation disabled'}

        if state.active_rule:
            _LOGGER.info(f"Automation disabled with rule '{state.active_rule}' active for user {user.id}")
            record_event(
                user.id,
                'automation_disabled',
                active_rule_before=state.active_rule,
                rule_id=state.active_rule,
                rule_name=state.active_rule_name,
                action_taken='deactivated',
                details={'reason': 'Automation disabled'},
                epoch_ms=current_ms,
            )
            reset_active_rule(state)

        if not state.segments_cleared:
            try:
                result['clearResult'] = self.get_controller(user).clear_segments()
                state.segments_cleared = True
                _LOGGER.info(f"Segments cleared for disabled automation (user {user.id})")
            except ChargeSyncError as e:
                _LOGGER.warning(f"Could not clear segments for disabled automation (user {user.id}): {e}")
                result['error'] = e.message
                result['errno'] = e.errno

        return self._finish(state, current_ms, AUTOMATION_DISABLED, **result)

    def _apply_selection(self, user: User, state: AutomationState, selection, snapshot: MetricSnapshot) -> Dict[str, Any]:
        """Carry out the selector's decision and update state. Never raises for hardware failures."""
        command = selection.command
        reapply = selection.outcome == CONTINUING and not state.active_segment_enabled
        if reapply:
            _LOGGER.info(f"Active rule '{selection.rule.name}' has no live segment, re-applying")
            command = 'build'

        result: Dict[str, Any] = {
            'outcome': SUCCESS,
            'selection': selection.outcome,
            'triggered': selection.outcome == TRIGGERED,
            'evaluationResults': [evaluation.to_dict() for evaluation in selection.evaluations],
            'snapshotErrors': dict(snapshot.errors),
        }
        if selection.rule is not None:
            result['ruleId'] = selection.rule.rule_key
            result['ruleName'] = selection.rule.name
        elif selection.deactivated_rule is not None:
            result['ruleId'] = selection.deactivated_rule.rule_key
            result['ruleName'] = selection.deactivated_rule.name
        if selection.deactivation_reason:
            result['deactivationReason'] = selection.deactivation_reason

        try:
            segment = None
            if command == 'build':
                action = SegmentAction.from_dict(selection.rule.action)
                result['action'] = action.to_dict()
                segment = plan_segment(snapshot.local_time, action)
                result['segment'] = segment.to_dict()
            action_result = execute_command(self.get_controller(user), command, segment) if command else None
        except (HardwareRejection, UpstreamError, DeviceNotConfigured) as e:
            _LOGGER.error(f"Hardware {command} failed for user {user.id}: {e}")
            if command == 'clear' or state.active_rule is not None:
                # The previous segment may still be on the device
                state.clear_segments_on_next_cycle = True
            if selection.deactivated_rule is not None:
                selection.deactivated_rule.last_triggered = None
            reset_active_rule(state)
            state.last_action_result = json.dumps(e.to_dict())
            result.update(outcome=_outcome_for(e), actionTaken='failed', error=e.message, errno=e.errno)
            return result

        if action_result is not None:
            state.last_action_result = json.dumps(action_result, default=str)
            result['actionResult'] = action_result

        if selection.deactivated_rule is not None:
            selection.deactivated_rule.last_triggered = None

        if command == 'build':
            rule = selection.rule
            if selection.outcome == TRIGGERED:
                rule.last_triggered = snapshot.now.replace(tzinfo=None)
            state.active_rule = rule.rule_key
            state.active_rule_name = rule.name
            state.active_segment_enabled = True
            result['actionTaken'] = 'reapplied' if reapply else 'triggered'
        elif selection.outcome == DEACTIVATED:
            reset_active_rule(state)
            state.clear_segments_on_next_cycle = False
            result['actionTaken'] = 'cleared'
        elif selection.outcome == CONTINUING:
            result['actionTaken'] = 'continuing'
        else:
            result['actionTaken'] = 'none'

        if selection.outcome == IDLE:
            _LOGGER.debug(f"No rule triggered for user {user.id}")
        return result

    def run_due_cycles(self) -> Dict[str, int]:
        """Run a cycle for every user with automation state. Used by the scheduler command."""
        outcomes: Dict[str, int] = {}
        user_ids = [row.user_id for row in AutomationState.query.with_entities(AutomationState.user_id).all()]
        for user_id in user_ids:
            try:
                result = self.run_cycle(user_id)
                key = 'skipped' if result.get('skipped') and result['outcome'] == SUCCESS else result['outcome']
            except ChargeSyncError as e:
                _LOGGER.warning(f"Automation cycle for user {user_id} not run: {e}")
                key = 'error'
            except Exception as e:
                _LOGGER.error(f"Automation cycle for user {user_id} failed: {e}")
                key = 'error'
            outcomes[key] = outcomes.get(key, 0) + 1
        _LOGGER.info(f"Automation cycles complete for {len(user_ids)} user(s): {outcomes}")
        return outcomes

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def status(self, user: User) -> Dict[str, Any]:
        """Automation state plus rules, blackout and override information."""
        state = get_or_create_state(user.id)
        current_ms = self._clock()
        local_time = get_user_time(user.timezone, datetime.fromtimestamp(current_ms / 1000, tz=timezone.utc))
        blackout = find_blackout_window(user.get_blackout_windows(), local_time)
        interval_seconds = user.automation_interval_seconds or self.interval_seconds

        control = self.quick_control.get_state(user)
        curtailment = CurtailmentState.query.filter_by(user_id=user.id).first()

        data = state.to_dict()
        data.update({
            'rules': {rule.rule_key: rule.to_dict() for rule in list_rules(user)},
            'serverTime': current_ms,
            'nextCheckIn': interval_seconds * 1000,
            'inBlackout': blackout is not None,
            'currentBlackoutWindow': blackout,
            'cycleRunning': self.locks.is_locked(user.id),
            'quickControl': control.to_dict() if control else None,
            'curtailment': curtailment.to_dict() if curtailment else None,
            'timezone': local_time.timezone,
        })
        return data

    def get_audit_report(self, user: User, days: int = 7) -> Dict[str, Any]:
        return build_audit_report(user.id, days=days, current_ms=self._clock())
