"""
FoxESS scheduler segment building.

The inverter scheduler has exactly 8 time-period slots. Automation always
writes its segment to slot 0 and leaves the other 7 neutral, so every
write replaces the whole schedule. A segment may not wrap past midnight:
a window that would end on the next day is cut short at 23:59.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from chargesync.errors import SegmentRejected, ValidationError
from chargesync.time_utils import LocalTime, MINUTES_PER_DAY, format_hhmm

_LOGGER = logging.getLogger(__name__)

SEGMENT_SLOTS = 8
LAST_MINUTE_OF_DAY = MINUTES_PER_DAY - 1  # 23:59

WORK_MODES = ('SelfUse', 'ForceCharge', 'ForceDischarge', 'Feedin', 'Backup')

DEFAULT_DURATION_MINUTES = 30
DEFAULT_FD_PWR = 5000  # W
MAX_FD_PWR = 30000  # W
DEFAULT_MIN_SOC_ON_GRID = 20
DEFAULT_MAX_SOC = 90

# Stop thresholds (fdSoc) when the action does not set one
DEFAULT_STOP_SOC = {
    'ForceCharge': 90,
    'ForceDischarge': 30,
}
DEFAULT_FD_SOC = 35


def empty_group() -> Dict[str, Any]:
    """A disabled, neutral scheduler slot."""
    return {
        'enable': 0,
        'workMode': 'SelfUse',
        'startHour': 0,
        'startMinute': 0,
        'endHour': 0,
        'endMinute': 0,
        'minSocOnGrid': 10,
        'fdSoc': 10,
        'fdPwr': 0,
        'maxSoc': 100,
    }


def build_clear_groups() -> List[Dict[str, Any]]:
    """All 8 slots disabled."""
    return [empty_group() for _ in range(SEGMENT_SLOTS)]


def _clamp_percent(value: Any) -> int:
    return max(0, min(100, int(round(float(value)))))


def _first_present(data: Dict[str, Any], *keys):
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


@dataclass
class SegmentAction:
    """What a rule (or quick control) wants the inverter to do."""
    work_mode: str = 'SelfUse'
    duration_minutes: int = DEFAULT_DURATION_MINUTES
    fd_pwr: int = DEFAULT_FD_PWR
    fd_soc: int = DEFAULT_FD_SOC
    min_soc_on_grid: int = DEFAULT_MIN_SOC_ON_GRID
    max_soc: int = DEFAULT_MAX_SOC

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], strict: bool = False) -> 'SegmentAction':
        """
        Build an action from stored JSON.

        Power may be given as fdPwr or power (W), or powerKw (kW). The stop
        threshold may be given as fdSoc or targetSoc.

        Args:
            data: Stored action
            strict: Raise ValidationError on bad values instead of falling back to defaults
        """
        data = data or {}

        work_mode = data.get('workMode') or 'SelfUse'
        if work_mode not in WORK_MODES:
            if strict:
                raise ValidationError(f"Invalid workMode '{work_mode}', expected one of {', '.join(WORK_MODES)}")
            _LOGGER.warning(f"Unknown workMode '{work_mode}', using SelfUse")
            work_mode = 'SelfUse'

        try:
            duration = int(data.get('durationMinutes') or DEFAULT_DURATION_MINUTES)

            power = _first_present(data, 'fdPwr', 'power')
            if power is None and data.get('powerKw') is not None:
                power = float(data['powerKw']) * 1000
            fd_pwr = int(round(float(power))) if power is not None else DEFAULT_FD_PWR

            fd_soc = _first_present(data, 'fdSoc', 'targetSoc')
            fd_soc = _clamp_percent(fd_soc) if fd_soc is not None else DEFAULT_STOP_SOC.get(work_mode, DEFAULT_FD_SOC)
            min_soc = _clamp_percent(data.get('minSocOnGrid', DEFAULT_MIN_SOC_ON_GRID))
            max_soc = _clamp_percent(data.get('maxSoc', DEFAULT_MAX_SOC))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid action value: {e}")

        if strict:
            if not 1 <= duration <= MINUTES_PER_DAY:
                raise ValidationError("durationMinutes must be between 1 and 1440")
            if not 0 <= fd_pwr <= MAX_FD_PWR:
                raise ValidationError(f"fdPwr must be between 0 and {MAX_FD_PWR} W")

        return cls(
            work_mode=work_mode,
            duration_minutes=max(duration, 1),
            fd_pwr=max(0, min(MAX_FD_PWR, fd_pwr)),
            fd_soc=fd_soc,
            min_soc_on_grid=min_soc,
            max_soc=max_soc,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'workMode': self.work_mode,
            'durationMinutes': self.duration_minutes,
            'fdPwr': self.fd_pwr,
            'fdSoc': self.fd_soc,
            'minSocOnGrid': self.min_soc_on_grid,
            'maxSoc': self.max_soc,
        }


@dataclass
class SegmentWindow:
    """Start/end of a segment in minutes since local midnight."""
    start: int
    end: int
    requested_minutes: int

    @property
    def duration_minutes(self) -> int:
        return self.end - self.start

    @property
    def capped(self) -> bool:
        return self.duration_minutes < self.requested_minutes

    def to_dict(self) -> Dict[str, Any]:
        return {
            'start': format_hhmm(self.start),
            'end': format_hhmm(self.end),
            'durationMinutes': self.duration_minutes,
            'requestedMinutes': self.requested_minutes,
            'capped': self.capped,
        }


def plan_window(start_hour: int, start_minute: int, duration_minutes: int) -> SegmentWindow:
    """
    Work out the segment window, capping at 23:59 rather than crossing midnight.

    Raises:
        SegmentRejected: the window is empty even after capping (start at 23:59)
    """
    start = (start_hour % 24) * 60 + start_minute
    end = start + duration_minutes

    if end >= MINUTES_PER_DAY:
        end = LAST_MINUTE_OF_DAY
        _LOGGER.warning(
            f"Segment starting {format_hhmm(start)} would cross midnight; capped at 23:59 "
            f"({duration_minutes} -> {end - start} min)"
        )

    if end <= start:
        raise SegmentRejected(
            f"Segment starting {format_hhmm(start)} has no time left before midnight"
        )

    return SegmentWindow(start=start, end=end, requested_minutes=duration_minutes)


def build_segment_group(window: SegmentWindow, action: SegmentAction) -> Dict[str, Any]:
    """The enabled slot for a window and action."""
    return {
        'enable': 1,
        'workMode': action.work_mode,
        'startHour': window.start // 60,
        'startMinute': window.start % 60,
        'endHour': window.end // 60,
        'endMinute': window.end % 60,
        'minSocOnGrid': _clamp_percent(action.min_soc_on_grid),
        'fdSoc': _clamp_percent(action.fd_soc),
        'fdPwr': action.fd_pwr,
        'maxSoc': _clamp_percent(action.max_soc),
    }


@dataclass
class Segment:
    """A full 8-slot scheduler payload plus the window it covers."""
    window: SegmentWindow
    action: SegmentAction
    groups: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        data = self.window.to_dict()
        data['workMode'] = self.action.work_mode
        data['fdPwr'] = self.action.fd_pwr
        data['fdSoc'] = self.action.fd_soc
        return data


def plan_segment(local_time: LocalTime, action: SegmentAction) -> Segment:
    """Build the scheduler payload for an action starting now (user local time)."""
    window = plan_window(local_time.hour, local_time.minute, action.duration_minutes)
    groups = build_clear_groups()
    groups[0] = build_segment_group(window, action)
    _LOGGER.info(
        f"Segment planned: {action.work_mode} {format_hhmm(window.start)}-{format_hhmm(window.end)} "
        f"({window.duration_minutes}min, fdPwr={action.fd_pwr}W, fdSoc={action.fd_soc}%)"
    )
    return Segment(window=window, action=action, groups=groups)
