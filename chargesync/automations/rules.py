"""
Rule management: create, update, delete, manual trigger, reset, cancel and
dry-run evaluation.

Rules are addressed by a slug of their name ("Low SoC Charge" ->
"low_soc_charge"). Nothing here commits; the route layer owns the
transaction.
"""

import dataclasses
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from chargesync import db
from chargesync.automations.actions import HardwareController
from chargesync.automations.audit import record_event
from chargesync.automations.segments import SegmentAction, plan_segment
from chargesync.automations.state import get_or_create_state, reset_active_rule
from chargesync.automations.triggers import (
    CONDITION_KINDS,
    KIND_ALIASES,
    OPERATORS,
    MetricSnapshot,
    evaluate_rule,
    serialize_conditions,
)
from chargesync.errors import NotFound, ValidationError
from chargesync.models import Rule, User
from chargesync.time_utils import get_user_time, parse_hhmm, utcnow

_LOGGER = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5
DEFAULT_COOLDOWN_MINUTES = 5


def slugify(name: str) -> str:
    """Rule id for a display name: lowercase, runs of other characters become '_'."""
    return re.sub(r'[^a-z0-9]+', '_', (name or '').lower())


def validate_conditions(conditions: Any) -> Dict[str, Dict[str, Any]]:
    """Validate a conditions map and return it normalized for storage."""
    if conditions is None:
        return {}
    if not isinstance(conditions, dict):
        raise ValidationError("conditions must be an object keyed by condition type")

    for kind, data in conditions.items():
        canonical = KIND_ALIASES.get(kind, kind)
        if canonical not in CONDITION_KINDS:
            raise ValidationError(f"Unknown condition type '{kind}'")
        if not isinstance(data, dict):
            raise ValidationError(f"Condition '{kind}' must be an object")
        operator = data.get('operator', data.get('op'))
        if operator is not None and operator not in OPERATORS:
            raise ValidationError(f"Invalid operator '{operator}' on condition '{kind}'")

    return serialize_conditions(conditions)


def validate_action(action: Any) -> Dict[str, Any]:
    if action is None:
        return {}
    if not isinstance(action, dict):
        raise ValidationError("action must be an object")
    SegmentAction.from_dict(action, strict=True)
    return action


def _int_or_default(value: Any, default: int, field_name: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field_name} must be a number")
    return int(value)


def _validate_priority(priority: int) -> int:
    if priority < 1:
        raise ValidationError("priority must be a positive integer")
    return priority


def list_rules(user: User) -> List[Rule]:
    return user.rules.order_by(Rule.priority, Rule.rule_key).all()


def get_rule(user: User, name_or_id: Optional[str]) -> Rule:
    """Look a rule up by id or display name."""
    if not name_or_id:
        raise ValidationError("Rule name is required")
    rule = Rule.query.filter_by(user_id=user.id, rule_key=slugify(name_or_id)).first()
    if rule is None:
        rule = Rule.query.filter_by(user_id=user.id, rule_key=name_or_id).first()
    if rule is None:
        raise NotFound(f"Unknown rule: {name_or_id}")
    return rule


def create_rule(user: User, data: Dict[str, Any]) -> Rule:
    """Create a rule, replacing any existing rule with the same id."""
    name = (data.get('name') or '').strip()
    if not name:
        raise ValidationError("Rule name is required")
    rule_key = slugify(name)
    if not rule_key.strip('_'):
        raise ValidationError("Rule name must contain letters or digits")

    conditions = validate_conditions(data.get('conditions'))
    action = validate_action(data.get('action'))
    priority = _validate_priority(_int_or_default(data.get('priority'), DEFAULT_PRIORITY, 'priority'))
    cooldown = _int_or_default(data.get('cooldownMinutes'), DEFAULT_COOLDOWN_MINUTES, 'cooldownMinutes')
    if cooldown < 0:
        raise ValidationError("cooldownMinutes must not be negative")

    rule = Rule.query.filter_by(user_id=user.id, rule_key=rule_key).first()
    if rule is None:
        rule = Rule(user_id=user.id, rule_key=rule_key)
        db.session.add(rule)
    else:
        _LOGGER.info(f"Replacing existing rule '{rule_key}' for user {user.id}")

    rule.name = name
    rule.enabled = data.get('enabled') is not False
    rule.priority = priority
    rule.cooldown_minutes = cooldown
    rule.conditions = conditions
    rule.action = action
    rule.last_triggered = None

    _LOGGER.info(f"Rule '{rule_key}' saved for user {user.id} (priority {priority})")
    return rule


def update_rule(user: User, data: Dict[str, Any]) -> Rule:
    """
    Apply a partial update. Only supplied fields change; a supplied action
    is merged over the stored one.

    Disabling a rule clears its cooldown, and if it was driving the
    inverter the active rule is dropped from the automation state.
    """
    rule = get_rule(user, data.get('ruleName') or data.get('ruleId') or data.get('name'))

    if 'name' in data and data['name']:
        rule.name = data['name']
    if 'priority' in data:
        rule.priority = _validate_priority(_int_or_default(data['priority'], rule.priority, 'priority'))
    if 'cooldownMinutes' in data:
        cooldown = _int_or_default(data['cooldownMinutes'], rule.cooldown_minutes, 'cooldownMinutes')
        if cooldown < 0:
            raise ValidationError("cooldownMinutes must not be negative")
        rule.cooldown_minutes = cooldown
    if 'conditions' in data:
        rule.conditions = validate_conditions(data['conditions'])
    if 'action' in data:
        if data['action'] is not None and not isinstance(data['action'], dict):
            raise ValidationError("action must be an object")
        merged = dict(rule.action)
        merged.update(data['action'] or {})
        rule.action = validate_action(merged)

    if 'enabled' in data:
        rule.enabled = bool(data['enabled'])
        if not rule.enabled:
            rule.last_triggered = None
            _LOGGER.info(f"Rule '{rule.rule_key}' disabled, cooldown reset")
            state = get_or_create_state(user.id)
            if state.active_rule == rule.rule_key:
                _LOGGER.info(f"Disabled rule '{rule.rule_key}' was active, clearing automation state")
                reset_active_rule(state)
                state.clear_segments_on_next_cycle = True

    return rule


def delete_rule(user: User, name_or_id: str) -> str:
    rule = get_rule(user, name_or_id)
    rule_key = rule.rule_key
    db.session.delete(rule)
    _LOGGER.info(f"Rule '{rule_key}' deleted for user {user.id}")
    return rule_key


def toggle_automation(user: User, enabled: Any) -> Dict[str, Any]:
    """Switch automation on or off, leaving every other state field alone."""
    state = get_or_create_state(user.id)
    state.enabled = bool(enabled)
    _LOGGER.info(f"Automation {'enabled' if state.enabled else 'disabled'} for user {user.id}")
    return {'enabled': state.enabled}


def reset_automation(user: User) -> Dict[str, Any]:
    """Clear every rule's cooldown and the active rule."""
    state = get_or_create_state(user.id)
    reset_active_rule(state)
    state.last_check = 0
    count = 0
    for rule in user.rules:
        rule.last_triggered = None
        count += 1
    _LOGGER.info(f"Automation state reset for user {user.id} ({count} rule cooldowns cleared)")
    return {'reset': True, 'rules': count}


def cancel_automation(user: User, controller: HardwareController) -> Dict[str, Any]:
    """Clear all segments, disable the scheduler flag and drop the active rule."""
    result = controller.clear_segments(disable_flag=True)
    state = get_or_create_state(user.id)
    previous = state.active_rule
    reset_active_rule(state)
    state.clear_segments_on_next_cycle = False
    record_event(
        user.id,
        'automation_cancel',
        active_rule_before=previous,
        action_taken='cleared',
        details={'flagErrno': result.get('flagErrno')},
    )
    _LOGGER.info(f"Automation cancelled for user {user.id}")
    return result


def trigger_rule(
    user: User,
    name_or_id: str,
    controller: HardwareController,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Apply a rule's action right now, regardless of its conditions and cooldown."""
    rule = get_rule(user, name_or_id)
    action = SegmentAction.from_dict(rule.action)
    segment = plan_segment(get_user_time(user.timezone, now), action)
    result = controller.apply_segment(segment)

    state = get_or_create_state(user.id)
    previous = state.active_rule
    state.active_rule = rule.rule_key
    state.active_rule_name = rule.name
    state.active_segment_enabled = True
    rule.last_triggered = utcnow()

    record_event(
        user.id,
        'manual_trigger',
        active_rule_before=previous,
        active_rule_after=rule.rule_key,
        rule_id=rule.rule_key,
        rule_name=rule.name,
        action_taken='triggered',
        details={'action': action.to_dict(), 'segment': result.get('segment')},
    )
    _LOGGER.info(f"Rule '{rule.name}' triggered manually for user {user.id}")
    return {'ruleId': rule.rule_key, 'ruleName': rule.name, 'result': result}


def build_test_snapshot(user: User, mock_data: Dict[str, Any], now: Optional[datetime] = None) -> MetricSnapshot:
    """Snapshot from user-supplied values; testTime (HH:MM) overrides the local time."""
    now = now or datetime.now(timezone.utc)
    local_time = get_user_time(user.timezone, now)
    if mock_data.get('testTime'):
        minutes = parse_hhmm(str(mock_data['testTime']))
        local_time = dataclasses.replace(local_time, hour=minutes // 60, minute=minutes % 60, second=0)

    def number(key):
        value = mock_data.get(key)
        if value is None or value == '':
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{key} must be a number")

    return MetricSnapshot(
        local_time=local_time,
        now=now,
        soc=number('soc'),
        battery_temp=number('batteryTemp'),
        ambient_temp=number('ambientTemp'),
        pv_power_kw=number('pvPowerKw'),
        load_power_kw=number('loadPowerKw'),
        buy_price=number('buyPrice'),
        feed_in_price=number('feedInPrice'),
        prices=mock_data.get('prices') or [],
        weather=mock_data.get('weather'),
    )


def dry_run_rules(
    user: User,
    mock_data: Dict[str, Any],
    evaluate: Callable = evaluate_rule,
) -> Dict[str, Any]:
    """
    Dry run: evaluate enabled rules in priority order against supplied
    values. First match wins. Cooldowns are ignored and nothing is written.
    """
    snapshot = build_test_snapshot(user, mock_data or {})
    all_results = []
    for rule in list_rules(user):
        if not rule.enabled:
            continue
        evaluation = evaluate(rule, snapshot)
        all_results.append(dict(evaluation.to_dict(), priority=rule.priority))
        if evaluation.triggered:
            return {
                'triggered': True,
                'result': {
                    'ruleId': rule.rule_key,
                    'ruleName': rule.name,
                    'priority': rule.priority,
                    'action': rule.action,
                },
                'testData': mock_data,
                'allResults': all_results,
            }
    return {'triggered': False, 'result': None, 'testData': mock_data, 'allResults': all_results}
