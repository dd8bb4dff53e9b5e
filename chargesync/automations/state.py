"""Loading and repairing the per-user AutomationState row."""

import json
import logging

from chargesync import db
from chargesync.models import AutomationState

_LOGGER = logging.getLogger(__name__)

BOOLEAN_FIELDS = (
    'enabled',
    'active_segment_enabled',
    'clear_segments_on_next_cycle',
    'segments_cleared',
    'in_blackout',
)


def get_or_create_state(user_id: int) -> AutomationState:
    """Return the user's automation state, creating a disabled one if missing. Caller commits."""
    state = AutomationState.query.filter_by(user_id=user_id).first()
    if state is None:
        _LOGGER.info(f"Creating automation state for user {user_id}")
        state = AutomationState(
            user_id=user_id,
            enabled=False,
            active_segment_enabled=False,
            last_check=0,
            clear_segments_on_next_cycle=False,
            segments_cleared=False,
            in_blackout=False,
        )
        db.session.add(state)
    return repair_state(state)


def repair_state(state: AutomationState) -> AutomationState:
    """Replace missing or mistyped fields with safe defaults."""
    repaired = []

    for name in BOOLEAN_FIELDS:
        value = getattr(state, name)
        if not isinstance(value, bool):
            setattr(state, name, bool(value) if isinstance(value, int) else False)
            repaired.append(name)

    if not isinstance(state.last_check, int) or state.last_check < 0:
        state.last_check = 0
        repaired.append('last_check')

    if state.active_rule is not None and (not isinstance(state.active_rule, str) or not state.active_rule.strip()):
        state.active_rule = None
        state.active_rule_name = None
        state.active_segment_enabled = False
        repaired.append('active_rule')

    if state.active_rule is None and state.active_rule_name is not None:
        state.active_rule_name = None
        repaired.append('active_rule_name')

    if state.last_action_result:
        try:
            json.loads(state.last_action_result)
        except (TypeError, ValueError):
            state.last_action_result = None
            repaired.append('last_action_result')

    if repaired:
        _LOGGER.warning(f"Repaired automation state for user {state.user_id}: {', '.join(repaired)}")
    return state


def reset_active_rule(state: AutomationState):
    state.active_rule = None
    state.active_rule_name = None
    state.active_segment_enabled = False
