# chargesync/routes.py
"""JSON API for automation, rules, quick control, prices and metrics"""

import logging
from datetime import date, timedelta

from flask import Blueprint, request

from chargesync import get_engine
from chargesync.automations import rules as rule_ops
from chargesync.automations.audit import get_history
from chargesync.automations.weather import fetch_forecast
from chargesync.errors import ValidationError
from chargesync.metrics import get_recent_metrics
from chargesync.route_helpers import (
    api_login_required,
    db_commit_with_retry,
    db_transaction,
    handle_errors,
    ok,
    require_device,
)

_LOGGER = logging.getLogger(__name__)

bp = Blueprint('automation', __name__)

# How long a manual operation waits for a running cycle to finish
LOCK_WAIT_SECONDS = 30


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _int_arg(name, default, minimum=1, maximum=None):
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")
    value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def _date_arg(name, default):
    raw = request.args.get(name)
    if not raw:
        return default
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a date (YYYY-MM-DD)")


# ============================================================================
# Automation cycle and state
# ============================================================================

@bp.route('/api/automation/cycle', methods=['POST'])
@api_login_required
@handle_errors
def run_cycle(api_user=None):
    force = bool(_json_body().get('force')) or request.args.get('force') == '1'
    result = get_engine().run_cycle(api_user.id, force=force)
    return ok(result)


@bp.route('/api/automation/status', methods=['GET'])
@api_login_required
@handle_errors
def automation_status(api_user=None):
    result = get_engine().status(api_user)
    db_commit_with_retry()
    return ok(result)


@bp.route('/api/automation/toggle', methods=['POST'])
@bp.route('/api/automation/enable', methods=['POST'])
@api_login_required
@handle_errors
def toggle_automation(api_user=None):
    enabled = _json_body().get('enabled')
    with db_transaction(logger_context=f"Toggle automation for user {api_user.id}"):
        result = rule_ops.toggle_automation(api_user, enabled)
    return ok(result)


@bp.route('/api/automation/reset', methods=['POST'])
@api_login_required
@handle_errors
def reset_automation(api_user=None):
    with get_engine().locks.hold(api_user.id, timeout=LOCK_WAIT_SECONDS, what='Reset'):
        with db_transaction(logger_context=f"Reset automation for user {api_user.id}"):
            result = rule_ops.reset_automation(api_user)
    return ok(result)


@bp.route('/api/automation/cancel', methods=['POST'])
@api_login_required
@require_device
@handle_errors
def cancel_automation(api_user=None):
    engine = get_engine()
    with engine.locks.hold(api_user.id, timeout=LOCK_WAIT_SECONDS, what='Cancel'):
        with db_transaction(logger_context=f"Cancel automation for user {api_user.id}"):
            result = rule_ops.cancel_automation(api_user, engine.get_controller(api_user))
    return ok(result, msg='Automation cancelled')


@bp.route('/api/automation/trigger', methods=['POST'])
@api_login_required
@require_device
@handle_errors
def trigger_rule(api_user=None):
    engine = get_engine()
    rule_name = _json_body().get('ruleName')
    with engine.locks.hold(api_user.id, timeout=LOCK_WAIT_SECONDS, what='Manual trigger'):
        with db_transaction(logger_context=f"Manual trigger of '{rule_name}' for user {api_user.id}"):
            result = rule_ops.trigger_rule(api_user, rule_name, engine.get_controller(api_user))
    return ok(result)


@bp.route('/api/automation/history', methods=['GET'])
@api_login_required
@handle_errors
def automation_history(api_user=None):
    limit = _int_arg('limit', 50, maximum=500)
    return ok(get_history(api_user.id, limit=limit, event_type=request.args.get('type')))


@bp.route('/api/automation/audit', methods=['GET'])
@api_login_required
@handle_errors
def automation_audit(api_user=None):
    days = _int_arg('days', 7, maximum=90)
    return ok(get_engine().get_audit_report(api_user, days=days))


@bp.route('/api/automation/test', methods=['POST'])
@api_login_required
@handle_errors
def dry_run_automation(api_user=None):
    body = _json_body()
    mock_data = body.get('mockData') if isinstance(body.get('mockData'), dict) else body
    result = rule_ops.dry_run_rules(api_user, mock_data)
    return ok(result.pop('result'), **result)


# ============================================================================
# Rules
# ============================================================================

@bp.route('/api/automation/rules', methods=['GET'])
@api_login_required
@handle_errors
def list_rules(api_user=None):
    return ok({rule.rule_key: rule.to_dict() for rule in rule_ops.list_rules(api_user)})


@bp.route('/api/automation/rule/create', methods=['POST'])
@api_login_required
@handle_errors
def create_rule(api_user=None):
    data = _json_body()
    with db_transaction(logger_context=f"Create rule for user {api_user.id}"):
        rule = rule_ops.create_rule(api_user, data)
    return ok(rule.to_dict())


@bp.route('/api/automation/rule/update', methods=['POST'])
@api_login_required
@handle_errors
def update_rule(api_user=None):
    data = _json_body()
    if not (data.get('ruleName') or data.get('ruleId') or data.get('name')):
        raise ValidationError("Rule name or ruleId is required")
    with db_transaction(logger_context=f"Update rule for user {api_user.id}"):
        rule = rule_ops.update_rule(api_user, data)
    return ok(rule.to_dict())


@bp.route('/api/automation/rule/delete', methods=['POST'])
@api_login_required
@handle_errors
def delete_rule(api_user=None):
    rule_name = _json_body().get('ruleName')
    with db_transaction(logger_context=f"Delete rule '{rule_name}' for user {api_user.id}"):
        deleted = rule_ops.delete_rule(api_user, rule_name)
    return ok({'deleted': deleted})


# ============================================================================
# Quick control
# ============================================================================

@bp.route('/api/quickcontrol/start', methods=['POST'])
@api_login_required
@handle_errors
def quick_control_start(api_user=None):
    data = _json_body()
    engine = get_engine()
    with engine.locks.hold(api_user.id, timeout=LOCK_WAIT_SECONDS, what='Quick control'):
        with db_transaction(logger_context=f"Quick control start for user {api_user.id}"):
            result = engine.quick_control.start(
                api_user, data.get('type'), data.get('power'), data.get('durationMinutes')
            )
    return ok(result, state=result['state'])


@bp.route('/api/quickcontrol/end', methods=['POST'])
@api_login_required
@handle_errors
def quick_control_end(api_user=None):
    engine = get_engine()
    with engine.locks.hold(api_user.id, timeout=LOCK_WAIT_SECONDS, what='Quick control'):
        with db_transaction(logger_context=f"Quick control end for user {api_user.id}"):
            result = engine.quick_control.end(api_user)
    return ok(result, msg=result['msg'])


@bp.route('/api/quickcontrol/status', methods=['GET'])
@api_login_required
@handle_errors
def quick_control_status(api_user=None):
    engine = get_engine()
    with engine.locks.hold(api_user.id, timeout=LOCK_WAIT_SECONDS, what='Quick control'):
        with db_transaction():
            result = engine.quick_control.status(api_user)
    return ok(result)


# ============================================================================
# Prices, weather and metrics
# ============================================================================

@bp.route('/api/amber/prices/current', methods=['GET'])
@api_login_required
@handle_errors
def current_prices(api_user=None):
    force = request.args.get('force') == '1'
    with db_transaction():
        prices = get_engine().get_current_prices(api_user, force=force)
    if prices is None:
        raise ValidationError("Amber API not configured")
    return ok(prices)


@bp.route('/api/amber/prices', methods=['GET'])
@api_login_required
@handle_errors
def price_history(api_user=None):
    today = date.today()
    start = _date_arg('startDate', today - timedelta(days=1))
    end = _date_arg('endDate', today)
    if end < start:
        raise ValidationError("endDate must not be before startDate")
    with db_transaction():
        prices = get_engine().get_price_history(api_user, start, end)
    return ok(prices)


@bp.route('/api/weather', methods=['GET'])
@api_login_required
@handle_errors
def weather(api_user=None):
    days = _int_arg('days', api_user.forecast_days or 6, maximum=16)
    force = request.args.get('force') == '1'
    engine = get_engine()
    with db_transaction():
        if days != (api_user.forecast_days or 6):
            data = fetch_forecast(api_user, days)
        else:
            data = engine.cache.get(api_user, 'weather', lambda: fetch_forecast(api_user), force=force).data
    return ok(data)


@bp.route('/api/metrics/api-calls', methods=['GET'])
@api_login_required
@handle_errors
def api_call_metrics(api_user=None):
    days = _int_arg('days', 7, maximum=90)
    return ok(get_recent_metrics(api_user, days=days))
