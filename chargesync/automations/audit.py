"""
Automation history (audit trail) and rule on/off event reporting.

Each cycle appends one entry recording the active rule before and after the
cycle, the per-rule evaluation results and the action taken. The audit
report folds those entries back into rule activation periods.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from chargesync import db
from chargesync.models import AutomationHistory
from chargesync.time_utils import now_ms

_LOGGER = logging.getLogger(__name__)

DEFAULT_AUDIT_DAYS = 7
MAX_HISTORY_LIMIT = 500


def record_event(
    user_id: int,
    event_type: str,
    active_rule_before: Optional[str] = None,
    active_rule_after: Optional[str] = None,
    rule_id: Optional[str] = None,
    rule_name: Optional[str] = None,
    action_taken: Optional[str] = None,
    evaluation_results: Optional[List[Dict[str, Any]]] = None,
    details: Optional[Dict[str, Any]] = None,
    epoch_ms: Optional[int] = None,
) -> AutomationHistory:
    """Append a history entry. Caller commits."""
    entry = AutomationHistory(
        user_id=user_id,
        event_type=event_type,
        epoch_ms=epoch_ms if epoch_ms is not None else now_ms(),
        active_rule_before=active_rule_before,
        active_rule_after=active_rule_after,
        rule_id=rule_id,
        rule_name=rule_name,
        action_taken=action_taken,
        evaluation_results=json.dumps(evaluation_results or [], default=str),
        details=json.dumps(details or {}, default=str),
    )
    db.session.add(entry)
    return entry


def get_history(
    user_id: int,
    limit: int = 50,
    event_type: Optional[str] = None,
    since_ms: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """History entries, newest first."""
    limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
    query = AutomationHistory.query.filter_by(user_id=user_id)
    if event_type:
        query = query.filter_by(event_type=event_type)
    if since_ms is not None:
        query = query.filter(AutomationHistory.epoch_ms > since_ms)
    entries = query.order_by(AutomationHistory.epoch_ms.desc(), AutomationHistory.id.desc()).limit(limit).all()
    return [entry.to_dict() for entry in entries]


def build_rule_events(entries: List[Dict[str, Any]], current_ms: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Turn history entries into rule activation periods.

    A period opens when the active rule changes to a rule and closes when it
    changes away from it. Closed periods are 'complete'; periods still open
    at the end are 'ongoing'. Newest period first.
    """
    current_ms = current_ms if current_ms is not None else now_ms()
    events: List[Dict[str, Any]] = []
    open_periods: Dict[str, Dict[str, Any]] = {}

    for entry in sorted(entries, key=lambda e: e.get('epochMs') or 0):
        before = entry.get('activeRuleBefore')
        after = entry.get('activeRuleAfter')
        if before == after:
            continue
        epoch = entry.get('epochMs') or 0
        conditions = entry.get('evaluationResults') or []

        if before and before in open_periods:
            period = open_periods.pop(before)
            events.append({
                'type': 'complete',
                'ruleId': before,
                'ruleName': period['ruleName'],
                'startTime': period['startTime'],
                'endTime': epoch,
                'durationMs': epoch - period['startTime'],
                'startConditions': period['startConditions'],
                'endConditions': conditions,
                'action': period['action'],
            })

        if after:
            open_periods[after] = {
                'ruleName': entry.get('ruleName') or after,
                'startTime': epoch,
                'startConditions': conditions,
                'action': (entry.get('details') or {}).get('action') or {},
            }

    for rule_id, period in open_periods.items():
        events.append({
            'type': 'ongoing',
            'ruleId': rule_id,
            'ruleName': period['ruleName'],
            'startTime': period['startTime'],
            'endTime': None,
            'durationMs': current_ms - period['startTime'],
            'startConditions': period['startConditions'],
            'endConditions': None,
            'action': period['action'],
        })

    events.sort(key=lambda event: event['startTime'], reverse=True)
    return events


def build_audit_report(user_id: int, days: int = DEFAULT_AUDIT_DAYS, current_ms: Optional[int] = None) -> Dict[str, Any]:
    """Rule activation periods over the last ``days`` days."""
    current_ms = current_ms if current_ms is not None else now_ms()
    cutoff = current_ms - days * 24 * 60 * 60 * 1000
    entries = get_history(user_id, limit=MAX_HISTORY_LIMIT, since_ms=cutoff)
    events = build_rule_events(entries, current_ms)
    return {
        'days': days,
        'entries': len(entries),
        'ruleEvents': events,
        'completed': sum(1 for event in events if event['type'] == 'complete'),
        'ongoing': sum(1 for event in events if event['type'] == 'ongoing'),
    }
