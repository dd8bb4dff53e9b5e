"""
Condition evaluation for automation rules.

A rule holds a map of condition kind -> condition. Supported kinds:
- soc: Battery state of charge (%)
- price: Current price, with type 'feedIn' or 'buy' (c/kWh)
- feedInPrice / buyPrice: Current feed-in or buy price (c/kWh)
- temperature: Battery or ambient inverter temperature (C)
- time: Local time window, may cross midnight (end exclusive)
- solarRadiation: Forecast shortwave radiation look-ahead (W/m2)
- cloudCover: Forecast cloud cover look-ahead (%)
- forecastPrice: Amber forecast price look-ahead (c/kWh)
- weather: Current weather class (sunny, cloudy, rainy, any)

Every enabled condition must be met for a rule to trigger. A rule with no
enabled conditions never triggers. Missing data makes a condition unmet;
it never raises.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from chargesync.automations.weather import classify_weather_code, describe_weather_code
from chargesync.time_utils import LocalTime, format_hhmm, in_window, parse_hhmm, resolve_timezone

_LOGGER = logging.getLogger(__name__)

OPERATORS = ('>', '>=', '<', '<=', '==', '!=', 'between')

# Legacy/alternate kind names -> canonical kind
KIND_ALIASES = {
    'temp': 'temperature',
    'timeWindow': 'time',
}

CONDITION_KINDS = (
    'soc', 'price', 'feedInPrice', 'buyPrice', 'temperature', 'time',
    'solarRadiation', 'cloudCover', 'forecastPrice', 'weather',
)

FORECAST_INTERVAL_MINUTES = 5


def _as_number(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return value
    return value


def compare_value(actual: Any, operator: Optional[str], target: Any) -> bool:
    """
    Compare a live metric against a target.

    ``between`` takes a two-element [low, high] sequence or a {min, max}
    mapping (missing min is 0, missing max is 100) and is inclusive at both
    ends. Anything that cannot be compared returns False.
    """
    if actual is None:
        return False

    actual = _as_number(actual)
    try:
        if operator == 'between':
            if isinstance(target, (list, tuple)):
                if len(target) != 2:
                    return False
                low, high = target
            elif isinstance(target, dict):
                low = target.get('min')
                high = target.get('max')
                low = 0 if low is None else low
                high = 100 if high is None else high
            else:
                return False
            if low is None or high is None:
                return False
            return _as_number(low) <= actual <= _as_number(high)

        target = _as_number(target)
        if target is None:
            return False
        if operator == '>':
            return actual > target
        elif operator == '>=':
            return actual >= target
        elif operator == '<':
            return actual < target
        elif operator == '<=':
            return actual <= target
        elif operator == '==':
            return actual == target
        elif operator == '!=':
            return actual != target
    except TypeError:
        return False

    return False


@dataclass
class Condition:
    """A single normalized rule condition."""
    kind: str
    enabled: bool = False
    operator: Optional[str] = None
    value: Any = None
    value2: Any = None
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, kind: str, data: Any) -> 'Condition':
        """Build a condition from stored JSON, folding 'op' into 'operator'."""
        kind = KIND_ALIASES.get(kind, kind)
        if not isinstance(data, dict):
            return cls(kind=kind)

        options = dict(data)
        enabled = bool(options.pop('enabled', False))
        operator = options.pop('operator', None)
        legacy_op = options.pop('op', None)
        value = options.pop('value', None)
        value2 = options.pop('value2', None)

        if kind == 'time':
            start = options.pop('startTime', None) or options.pop('start', None)
            end = options.pop('endTime', None) or options.pop('end', None)
            options.pop('start', None)
            options.pop('end', None)
            options['startTime'] = start or '00:00'
            options['endTime'] = end or '23:59'

        return cls(
            kind=kind,
            enabled=enabled,
            operator=operator or legacy_op,
            value=value,
            value2=value2,
            options=options,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.options)
        data['enabled'] = self.enabled
        if self.operator is not None:
            data['operator'] = self.operator
        if self.value is not None:
            data['value'] = self.value
        if self.value2 is not None:
            data['value2'] = self.value2
        return data


def normalize_conditions(raw: Any) -> Dict[str, Condition]:
    """Normalize a stored conditions map. Canonical names win over aliases."""
    conditions: Dict[str, Condition] = {}
    if not isinstance(raw, dict):
        return conditions

    # Canonical keys first so an alias never shadows them
    ordered = sorted(raw.items(), key=lambda item: item[0] in KIND_ALIASES)
    for kind, data in ordered:
        condition = Condition.from_dict(kind, data)
        if condition.kind in conditions:
            continue
        conditions[condition.kind] = condition
    return conditions


def serialize_conditions(raw: Any) -> Dict[str, Dict[str, Any]]:
    """Normalize conditions for storage."""
    return {kind: condition.to_dict() for kind, condition in normalize_conditions(raw).items()}


@dataclass
class MetricSnapshot:
    """Everything a rule can be evaluated against in one cycle."""
    local_time: LocalTime
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    soc: Optional[float] = None
    battery_temp: Optional[float] = None
    ambient_temp: Optional[float] = None
    pv_power_kw: Optional[float] = None
    load_power_kw: Optional[float] = None
    grid_import_kw: Optional[float] = None
    feed_in_power_kw: Optional[float] = None
    buy_price: Optional[float] = None
    feed_in_price: Optional[float] = None
    prices: List[Dict[str, Any]] = field(default_factory=list)
    weather: Optional[Dict[str, Any]] = None
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'localTime': format_hhmm(self.local_time.minutes),
            'timezone': self.local_time.timezone,
            'soc': self.soc,
            'batteryTemp': self.battery_temp,
            'ambientTemp': self.ambient_temp,
            'pvPowerKw': self.pv_power_kw,
            'loadPowerKw': self.load_power_kw,
            'gridImportKw': self.grid_import_kw,
            'feedInPowerKw': self.feed_in_power_kw,
            'buyPrice': self.buy_price,
            'feedInPrice': self.feed_in_price,
            'errors': dict(self.errors),
        }


def extract_current_prices(prices: Optional[List[Dict[str, Any]]]) -> Dict[str, Optional[float]]:
    """
    Pull the current buy and feed-in prices out of an Amber price list.

    Amber reports feed-in as a negative perKwh (what the user pays); it is
    negated here so a higher feed-in price means more earned.
    """
    buy_price = None
    feed_in_price = None
    for interval in prices or []:
        if interval.get('type') != 'CurrentInterval':
            continue
        per_kwh = interval.get('perKwh')
        if per_kwh is None:
            continue
        if interval.get('channelType') == 'general' and buy_price is None:
            buy_price = per_kwh
        elif interval.get('channelType') == 'feedIn' and feed_in_price is None:
            feed_in_price = -per_kwh
    return {'buy_price': buy_price, 'feed_in_price': feed_in_price}


@dataclass
class ConditionResult:
    """Outcome of one condition."""
    condition: str
    met: bool
    actual: Any = None
    operator: Optional[str] = None
    target: Any = None
    reason: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {'condition': self.condition, 'met': self.met}
        if self.actual is not None:
            data['actual'] = self.actual
        if self.operator is not None:
            data['operator'] = self.operator
        if self.target is not None:
            data['target'] = self.target
        if self.reason:
            data['reason'] = self.reason
        data.update(self.extra)
        return data


@dataclass
class RuleEvaluation:
    """Outcome of all conditions on a rule."""
    rule_id: Optional[str]
    rule_name: Optional[str]
    triggered: bool
    results: List[ConditionResult] = field(default_factory=list)
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'ruleId': self.rule_id,
            'ruleName': self.rule_name,
            'triggered': self.triggered,
            'results': [result.to_dict() for result in self.results],
        }
        if self.reason:
            data['reason'] = self.reason
        return data


def evaluate_conditions(
    raw_conditions: Any,
    snapshot: MetricSnapshot,
    rule_id: Optional[str] = None,
    rule_name: Optional[str] = None,
) -> RuleEvaluation:
    """
    Evaluate every enabled condition against a snapshot (AND semantics).

    Args:
        raw_conditions: Stored conditions map (aliases allowed)
        snapshot: Current metrics
        rule_id: Rule identifier for logging and the result
        rule_name: Rule display name for logging and the result
    """
    conditions = normalize_conditions(raw_conditions)
    enabled = [condition for condition in conditions.values() if condition.enabled]
    if not enabled:
        return RuleEvaluation(rule_id, rule_name, triggered=False, reason="No conditions enabled")

    results = []
    for condition in enabled:
        try:
            result = _evaluate_condition(condition, snapshot)
        except Exception as e:
            _LOGGER.error(f"Error evaluating {condition.kind} condition on rule '{rule_name or rule_id}': {e}")
            result = ConditionResult(condition.kind, met=False, reason=f"Evaluation error: {e}")
        results.append(result)

    triggered = all(result.met for result in results)
    unmet = [result.condition for result in results if not result.met]
    reason = "All conditions met" if triggered else f"Not met: {', '.join(unmet)}"

    _LOGGER.debug(f"Rule '{rule_name or rule_id}' evaluated: triggered={triggered} ({reason})")
    return RuleEvaluation(rule_id, rule_name, triggered=triggered, results=results, reason=reason)


def evaluate_rule(rule, snapshot: MetricSnapshot) -> RuleEvaluation:
    """Evaluate a Rule model (or anything with rule_key, name and conditions)."""
    return evaluate_conditions(rule.conditions, snapshot, rule_id=rule.rule_key, rule_name=rule.name)


def _compare_condition(actual: Any, condition: Condition) -> bool:
    if condition.operator == 'between' and condition.value2 is not None:
        return compare_value(actual, 'between', [condition.value, condition.value2])
    return compare_value(actual, condition.operator, condition.value)


def _evaluate_condition(condition: Condition, snapshot: MetricSnapshot) -> ConditionResult:
    kind = condition.kind
    if kind == 'soc':
        return _evaluate_metric(condition, snapshot.soc, "No SoC data")
    elif kind == 'price':
        return _evaluate_price(condition, snapshot)
    elif kind == 'feedInPrice':
        return _evaluate_metric(condition, snapshot.feed_in_price, "No Amber data")
    elif kind == 'buyPrice':
        return _evaluate_metric(condition, snapshot.buy_price, "No Amber data")
    elif kind == 'temperature':
        return _evaluate_temperature(condition, snapshot)
    elif kind == 'time':
        return _evaluate_time(condition, snapshot)
    elif kind == 'solarRadiation':
        return _evaluate_hourly(condition, snapshot, 'shortwave_radiation', 200, '>', 'W/m²')
    elif kind == 'cloudCover':
        return _evaluate_hourly(condition, snapshot, 'cloudcover', 50, '<', '%')
    elif kind == 'forecastPrice':
        return _evaluate_forecast_price(condition, snapshot)
    elif kind == 'weather':
        return _evaluate_weather(condition, snapshot)
    else:
        _LOGGER.warning(f"Unknown condition kind: {kind}")
        return ConditionResult(kind, met=False, reason=f"Unknown condition kind: {kind}")


def _evaluate_metric(condition: Condition, actual: Optional[float], missing_reason: str) -> ConditionResult:
    if actual is None:
        return ConditionResult(condition.kind, met=False, reason=missing_reason)
    met = _compare_condition(actual, condition)
    target = [condition.value, condition.value2] if condition.operator == 'between' and condition.value2 is not None else condition.value
    return ConditionResult(condition.kind, met=met, actual=actual, operator=condition.operator, target=target)


def _evaluate_price(condition: Condition, snapshot: MetricSnapshot) -> ConditionResult:
    price_type = condition.options.get('type')
    if price_type not in ('feedIn', 'buy'):
        return ConditionResult('price', met=False, reason="No price type (feedIn or buy)")
    actual = snapshot.feed_in_price if price_type == 'feedIn' else snapshot.buy_price
    result = _evaluate_metric(condition, actual, "No Amber price data")
    result.extra['type'] = price_type
    return result


def _evaluate_temperature(condition: Condition, snapshot: MetricSnapshot) -> ConditionResult:
    temp_type = condition.options.get('type') or 'battery'
    actual = snapshot.battery_temp if temp_type == 'battery' else snapshot.ambient_temp
    result = _evaluate_metric(condition, actual, f"No {temp_type} temperature data")
    result.extra['type'] = temp_type
    return result


def _evaluate_time(condition: Condition, snapshot: MetricSnapshot) -> ConditionResult:
    start_time = condition.options.get('startTime', '00:00')
    end_time = condition.options.get('endTime', '23:59')
    current = snapshot.local_time.minutes
    met = in_window(current, parse_hhmm(start_time, '00:00'), parse_hhmm(end_time, '23:59'))
    return ConditionResult(
        'time',
        met=met,
        actual=format_hhmm(current),
        extra={'window': f"{start_time}-{end_time}"},
    )


def _look_ahead_hours(condition: Condition) -> int:
    unit = condition.options.get('lookAheadUnit') or 'hours'
    value = condition.options.get('lookAhead') or 6
    return int(value) * 24 if unit == 'days' else int(value)


def _hourly_start_index(weather: Dict[str, Any], now: datetime) -> Optional[int]:
    """Index of the first forecast hour at or after the current hour in the forecast's timezone."""
    times = weather.get('hourly', {}).get('time') or []
    tz = resolve_timezone(weather.get('timezone'))
    current_hour = now.astimezone(tz).strftime('%Y-%m-%dT%H:00')
    for index, value in enumerate(times):
        if value[:16] >= current_hour:
            return index
    return None


def _aggregate(values: List[float], check_type: str) -> float:
    if check_type == 'min':
        return min(values)
    if check_type == 'max':
        return max(values)
    return sum(values) / len(values)


def _evaluate_hourly(
    condition: Condition,
    snapshot: MetricSnapshot,
    variable: str,
    default_threshold: float,
    default_operator: str,
    unit: str,
) -> ConditionResult:
    hourly = (snapshot.weather or {}).get('hourly') or {}
    series = hourly.get(variable)
    if not series or not hourly.get('time'):
        return ConditionResult(condition.kind, met=False, reason=f"No hourly {variable} data")

    start_index = _hourly_start_index(snapshot.weather, snapshot.now)
    if start_index is None:
        return ConditionResult(condition.kind, met=False, reason="No forecast data for timeframe")

    hours = _look_ahead_hours(condition)
    values = [value for value in series[start_index:start_index + hours] if value is not None]
    if not values:
        return ConditionResult(condition.kind, met=False, reason="No forecast data for timeframe")

    threshold = condition.value if condition.value is not None else default_threshold
    operator = condition.operator or default_operator
    check_type = condition.options.get('checkType') or 'average'
    actual = _aggregate(values, check_type)
    met = compare_value(actual, operator, threshold)

    return ConditionResult(
        condition.kind,
        met=met,
        actual=round(actual),
        operator=operator,
        target=threshold,
        extra={'unit': unit, 'checkType': check_type, 'hoursChecked': len(values)},
    )


def _look_ahead_minutes(condition: Condition) -> int:
    unit = condition.options.get('lookAheadUnit') or 'minutes'
    value = condition.options.get('lookAhead')
    if unit == 'days':
        return int(value or 1) * 24 * 60
    if unit == 'hours':
        return int(value or 1) * 60
    return int(value or 30)


def _evaluate_forecast_price(condition: Condition, snapshot: MetricSnapshot) -> ConditionResult:
    if not snapshot.prices:
        return ConditionResult('forecastPrice', met=False, reason="No Amber data")

    price_type = condition.options.get('type') or 'general'
    channel = 'feedIn' if price_type == 'feedIn' else 'general'
    forecasts = [
        interval for interval in snapshot.prices
        if interval.get('channelType') == channel
        and interval.get('type') == 'ForecastInterval'
        and interval.get('perKwh') is not None
    ]
    forecasts.sort(key=lambda interval: interval.get('startTime', ''))

    minutes = _look_ahead_minutes(condition)
    needed = math.ceil(minutes / FORECAST_INTERVAL_MINUTES)
    relevant = forecasts[:needed]
    if not relevant:
        return ConditionResult('forecastPrice', met=False, reason="No forecast data")

    prices = [-interval['perKwh'] if channel == 'feedIn' else interval['perKwh'] for interval in relevant]
    check_type = condition.options.get('checkType') or 'average'
    extra = {
        'type': price_type,
        'checkType': check_type,
        'lookAheadMinutes': minutes,
        'intervalsChecked': len(relevant),
        'intervalsAvailable': len(forecasts),
    }

    if check_type == 'any':
        matches = [price for price in prices if _compare_condition(price, condition)]
        actual = matches[0] if matches else None
        met = bool(matches)
    else:
        actual = _aggregate(prices, check_type)
        met = _compare_condition(actual, condition)

    return ConditionResult(
        'forecastPrice',
        met=met,
        actual=round(actual, 1) if actual is not None else None,
        operator=condition.operator,
        target=condition.value,
        extra=extra,
    )


def _evaluate_weather(condition: Condition, snapshot: MetricSnapshot) -> ConditionResult:
    current = (snapshot.weather or {}).get('current_weather') or {}
    code = current.get('weathercode')
    if code is None:
        return ConditionResult('weather', met=False, reason="No weather data")

    wanted = condition.options.get('condition') or condition.options.get('type') or 'any'
    if wanted == 'clear':
        wanted = 'sunny'
    actual_class = classify_weather_code(code)
    met = wanted == 'any' or wanted == actual_class

    return ConditionResult(
        'weather',
        met=met,
        actual=describe_weather_code(code),
        target=wanted,
        extra={'weatherCode': code},
    )
