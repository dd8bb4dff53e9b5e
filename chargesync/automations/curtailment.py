"""
Solar curtailment: drop the export limit to 0 W while the feed-in price is
below the user's threshold, and restore it once the price recovers.

The export limit is only written when the curtailment state changes. Any
failure is logged and reported in the result; it never fails the cycle.
"""

import logging
from typing import Any, Callable, Dict, Optional

from chargesync import db
from chargesync.automations.actions import HardwareController
from chargesync.errors import ChargeSyncError
from chargesync.models import CurtailmentState, User
from chargesync.time_utils import utcnow

_LOGGER = logging.getLogger(__name__)

DEFAULT_RESTORE_EXPORT_LIMIT = 12000  # W


def get_curtailment_state(user: User) -> CurtailmentState:
    state = CurtailmentState.query.filter_by(user_id=user.id).first()
    if state is None:
        state = CurtailmentState(user_id=user.id, active=False)
        db.session.add(state)
    return state


def apply_curtailment(
    user: User,
    feed_in_price: Optional[float],
    get_controller: Callable[[], HardwareController],
    restore_limit: int = DEFAULT_RESTORE_EXPORT_LIMIT,
) -> Optional[Dict[str, Any]]:
    """
    Bring the export limit in line with the current feed-in price.

    Args:
        user: User whose curtailment settings apply
        feed_in_price: Current feed-in price in c/kWh (None when unknown)
        get_controller: Returns the hardware controller; only called when a write is needed
        restore_limit: Export limit to restore when curtailment ends (W)

    Returns:
        Result dict for the cycle report, or None when curtailment is off and idle
    """
    state = CurtailmentState.query.filter_by(user_id=user.id).first()
    was_active = bool(state and state.active)
    threshold = user.curtailment_price_threshold if user.curtailment_price_threshold is not None else -2.0

    if not user.curtailment_enabled:
        if not was_active:
            return None
        # Disabled while curtailed: put the export limit back
        should_curtail = False
        reason = "Curtailment disabled"
    elif feed_in_price is None:
        return {'enabled': True, 'active': was_active, 'changed': False, 'reason': "No feed-in price"}
    else:
        should_curtail = feed_in_price < threshold
        reason = f"Feed-in {feed_in_price:.2f}c {'<' if should_curtail else '>='} threshold {threshold:.2f}c"

    state = state or get_curtailment_state(user)
    state.last_price = feed_in_price
    state.threshold = threshold

    if should_curtail == was_active:
        return {
            'enabled': bool(user.curtailment_enabled),
            'active': was_active,
            'changed': False,
            'reason': reason,
        }

    target_limit = 0 if should_curtail else restore_limit
    try:
        get_controller().set_export_limit(target_limit)
    except ChargeSyncError as e:
        _LOGGER.error(f"Curtailment export limit change failed for user {user.id}: {e}")
        return {
            'enabled': bool(user.curtailment_enabled),
            'active': was_active,
            'changed': False,
            'error': e.message,
            'errno': e.errno,
        }

    now = utcnow()
    state.active = should_curtail
    if should_curtail:
        state.last_activated = now
        _LOGGER.info(f"Solar curtailment activated for user {user.id}: {reason}")
    else:
        state.last_deactivated = now
        _LOGGER.info(f"Solar curtailment deactivated for user {user.id}: {reason}")

    return {
        'enabled': bool(user.curtailment_enabled),
        'active': should_curtail,
        'changed': True,
        'exportLimit': target_limit,
        'reason': reason,
    }
