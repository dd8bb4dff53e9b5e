"""
Quick control: a time-boxed manual charge or discharge override.

While a quick control is active the automation cycle leaves the inverter
alone. The override ends when the user stops it, or lazily once it has
expired (the next status check or automation cycle clears the segment).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from chargesync import db
from chargesync.automations.actions import HardwareController
from chargesync.automations.audit import record_event
from chargesync.automations.segments import MAX_FD_PWR, SegmentAction, plan_segment
from chargesync.automations.state import reset_active_rule
from chargesync.errors import DeviceNotConfigured, ValidationError
from chargesync.models import AutomationState, QuickControlState, User
from chargesync.time_utils import get_user_time, now_ms

_LOGGER = logging.getLogger(__name__)

CONTROL_TYPES = {
    'charge': 'ForceCharge',
    'discharge': 'ForceDischarge',
}
STOP_SOC = {
    'charge': 90,
    'discharge': 30,
}
MIN_SOC_ON_GRID = 20
MAX_SOC = 100
MAX_DURATION_MINUTES = 360


def validate_request(control_type: Any, power: Any, duration_minutes: Any):
    """
    Check a quick control request before anything touches the device.

    Returns:
        (control_type, power, duration_minutes) with numbers coerced to int

    Raises:
        ValidationError: on any out-of-range value
    """
    if control_type not in CONTROL_TYPES:
        raise ValidationError("type must be 'charge' or 'discharge'")

    try:
        power = int(power)
    except (TypeError, ValueError):
        raise ValidationError(f"power must be between 1 and {MAX_FD_PWR} W")
    if not 0 < power <= MAX_FD_PWR:
        raise ValidationError(f"power must be between 1 and {MAX_FD_PWR} W")

    try:
        duration_minutes = int(duration_minutes)
    except (TypeError, ValueError):
        raise ValidationError(f"durationMinutes must be between 1 and {MAX_DURATION_MINUTES}")
    if not 1 <= duration_minutes <= MAX_DURATION_MINUTES:
        raise ValidationError(f"durationMinutes must be between 1 and {MAX_DURATION_MINUTES}")

    return control_type, power, duration_minutes


def build_action(control_type: str, power: int, duration_minutes: int) -> SegmentAction:
    return SegmentAction(
        work_mode=CONTROL_TYPES[control_type],
        duration_minutes=duration_minutes,
        fd_pwr=power,
        fd_soc=STOP_SOC[control_type],
        min_soc_on_grid=MIN_SOC_ON_GRID,
        max_soc=MAX_SOC,
    )


class QuickControlService:
    """Start, stop and report on a user's quick control."""

    def __init__(self, get_controller: Callable[[User], HardwareController], clock: Callable[[], int] = now_ms):
        self._get_controller = get_controller
        self._clock = clock

    def get_state(self, user: User) -> Optional[QuickControlState]:
        return QuickControlState.query.filter_by(user_id=user.id).first()

    def is_expired(self, control: QuickControlState, current_ms: Optional[int] = None) -> bool:
        current_ms = current_ms if current_ms is not None else self._clock()
        return current_ms > control.expires_at

    def start(self, user: User, control_type: Any, power: Any, duration_minutes: Any) -> Dict[str, Any]:
        """
        Send a single-slot force charge/discharge segment and record the override.

        Raises:
            ValidationError: bad request
            DeviceNotConfigured: user has no inverter serial number
            HardwareRejection / UpstreamError: device write failed after retries
        """
        control_type, power, duration_minutes = validate_request(control_type, power, duration_minutes)
        if not user.device_sn:
            raise DeviceNotConfigured("Device serial number not configured")

        controller = self._get_controller(user)
        started_at = self._clock()
        local_time = get_user_time(user.timezone, datetime.fromtimestamp(started_at / 1000, tz=timezone.utc))
        segment = plan_segment(local_time, build_action(control_type, power, duration_minutes))
        result = controller.apply_segment(segment)

        control = self.get_state(user)
        if control is None:
            control = QuickControlState(user_id=user.id)
            db.session.add(control)
        control.active = True
        control.control_type = control_type
        control.power = power
        control.duration_minutes = duration_minutes
        control.started_at = started_at
        control.expires_at = started_at + duration_minutes * 60 * 1000

        # The override replaced whatever segment a rule had written
        state = AutomationState.query.filter_by(user_id=user.id).first()
        previous_rule = state.active_rule if state else None
        if state is not None:
            reset_active_rule(state)

        record_event(
            user.id,
            'quick_control_start',
            active_rule_before=previous_rule,
            action_taken='quick_control',
            details={'type': control_type, 'power': power, 'durationMinutes': duration_minutes,
                     'segment': result.get('segment')},
            epoch_ms=started_at,
        )
        _LOGGER.info(
            f"Quick {control_type} started for user {user.id}: {power}W for {duration_minutes} min"
        )
        return {'state': control.to_dict(), 'segment': result.get('segment'), 'flagErrno': result.get('flagErrno')}

    def _clear(self, user: User, control: QuickControlState, event_type: str) -> Dict[str, Any]:
        """Clear the scheduler, disable the flag and delete the record. Caller commits."""
        completed = control.to_dict()
        result = self._get_controller(user).clear_segments(disable_flag=True)
        db.session.delete(control)
        record_event(
            user.id,
            event_type,
            action_taken='cleared',
            details={'completedControl': completed, 'flagErrno': result.get('flagErrno')},
            epoch_ms=self._clock(),
        )
        return completed

    def end(self, user: User) -> Dict[str, Any]:
        control = self.get_state(user)
        if control is None:
            return {'msg': 'No active control'}
        completed = self._clear(user, control, 'quick_control_end')
        _LOGGER.info(f"Quick {completed['type']} stopped for user {user.id}")
        return {'msg': 'Quick control stopped', 'completedControl': completed}

    def expire_if_due(self, user: User, current_ms: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """
        Clean up an expired override.

        Returns:
            The completed control, or None when nothing was due
        """
        control = self.get_state(user)
        if control is None or not self.is_expired(control, current_ms):
            return None
        completed = self._clear(user, control, 'quick_control_expired')
        _LOGGER.info(f"Quick {completed['type']} expired for user {user.id}, segments cleared")
        return completed

    def status(self, user: User) -> Dict[str, Any]:
        control = self.get_state(user)
        if control is None:
            return {'active': False}

        current_ms = self._clock()
        if self.is_expired(control, current_ms):
            completed = self.expire_if_due(user, current_ms)
            return {'active': False, 'justExpired': True, 'completedControl': completed}

        remaining_ms = control.expires_at - current_ms
        data = control.to_dict()
        data['remainingMinutes'] = round(remaining_ms / 60000, 1)
        data['expired'] = False
        return data
