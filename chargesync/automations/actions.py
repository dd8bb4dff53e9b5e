"""
Hardware command execution for automations and quick control.

Supported commands:
- build: Write an 8-slot schedule with one enabled segment and enable the scheduler
- clear: Write 8 disabled slots (optionally disabling the scheduler flag)
- export_limit: Set the inverter export limit in W (used by curtailment)

All writes go through a bounded RetryPolicy; timeouts and rate limits are
retried, device rejections are not.
"""

import logging
from typing import Any, Dict, Optional

from chargesync.api_clients import FoxESSClient
from chargesync.automations.segments import Segment, build_clear_groups
from chargesync.errors import ChargeSyncError, DeviceNotConfigured
from chargesync.retry import RetryPolicy

_LOGGER = logging.getLogger(__name__)

EXPORT_LIMIT_KEY = 'ExportLimitPower'


class HardwareController:
    """Writes scheduler segments and settings to one inverter."""

    def __init__(self, client: FoxESSClient, device_sn: str, retry_policy: Optional[RetryPolicy] = None):
        if not device_sn:
            raise DeviceNotConfigured()
        self.client = client
        self.device_sn = device_sn
        self.retry_policy = retry_policy or RetryPolicy()

    def _call(self, description: str, func, *args):
        return self.retry_policy.call(func, *args, description=f"{description} ({self.device_sn})")

    def _set_flag(self, enabled: bool) -> Optional[int]:
        """Set the scheduler flag. Failures are logged and reported, not raised."""
        try:
            self._call('Set scheduler flag', self.client.set_scheduler_flag, self.device_sn, enabled)
            return 0
        except ChargeSyncError as e:
            _LOGGER.warning(f"Failed to set scheduler flag={enabled} on {self.device_sn}: {e}")
            return e.errno

    def apply_segment(self, segment: Segment) -> Dict[str, Any]:
        """Write the segment's groups and enable the scheduler."""
        self._call('Apply segment', self.client.set_schedule, self.device_sn, segment.groups)
        flag_errno = self._set_flag(True)
        _LOGGER.info(f"Segment applied to {self.device_sn}: {segment.to_dict()}")
        return {'errno': 0, 'segment': segment.to_dict(), 'flagErrno': flag_errno}

    def clear_segments(self, disable_flag: bool = False) -> Dict[str, Any]:
        """Disable all 8 slots."""
        groups = build_clear_groups()
        self._call('Clear segments', self.client.set_schedule, self.device_sn, groups)
        flag_errno = self._set_flag(False) if disable_flag else None
        _LOGGER.info(f"All segments cleared on {self.device_sn}")
        return {'errno': 0, 'cleared': len(groups), 'flagErrno': flag_errno}

    def set_export_limit(self, watts: int) -> Dict[str, Any]:
        self._call('Set export limit', self.client.set_setting, self.device_sn, EXPORT_LIMIT_KEY, watts)
        _LOGGER.info(f"Export limit set to {watts}W on {self.device_sn}")
        return {'errno': 0, 'exportLimit': watts}


def execute_command(
    controller: HardwareController,
    command: Optional[str],
    segment: Optional[Segment] = None,
    **params
) -> Optional[Dict[str, Any]]:
    """
    Execute a single hardware command.

    Args:
        controller: Controller for the user's inverter
        command: 'build', 'clear', 'export_limit' or None (no-op)
        segment: Segment to write for 'build'

    Returns:
        Result dict, or None for a no-op

    Raises:
        HardwareRejection / UpstreamError when the device call fails
    """
    if command is None:
        return None
    elif command == 'build':
        if segment is None:
            raise ValueError("build command requires a segment")
        return controller.apply_segment(segment)
    elif command == 'clear':
        return controller.clear_segments(disable_flag=params.get('disable_flag', False))
    elif command == 'export_limit':
        return controller.set_export_limit(params['watts'])
    else:
        raise ValueError(f"Unknown hardware command: {command}")
