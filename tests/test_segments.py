from __future__ import annotations

from unittest import TestCase

from chargesync.automations.actions import HardwareController, execute_command
from chargesync.automations.segments import (
    SEGMENT_SLOTS,
    SegmentAction,
    build_clear_groups,
    plan_segment,
    plan_window,
)
from chargesync.errors import DeviceNotConfigured, HardwareRejection, SegmentRejected, ValidationError
from chargesync.retry import RetryPolicy
from chargesync.time_utils import LocalTime
from fakes import FakeFoxESSClient


def _local(hour: int, minute: int) -> LocalTime:
    return LocalTime(hour=hour, minute=minute, second=0, day=15, month=1, year=2025,
                     day_of_week=3, timezone='Australia/Sydney')


class SegmentWindowTests(TestCase):
    def test_window_is_capped_at_end_of_day(self) -> None:
        window = plan_window(23, 30, 60)
        self.assertEqual(window.end, 23 * 60 + 59)
        self.assertEqual(window.duration_minutes, 29)
        self.assertTrue(window.capped)
        self.assertEqual(window.to_dict()['end'], '23:59')

    def test_window_within_the_day_is_not_capped(self) -> None:
        window = plan_window(14, 0, 30)
        self.assertEqual(window.to_dict()['start'], '14:00')
        self.assertEqual(window.to_dict()['end'], '14:30')
        self.assertFalse(window.capped)

    def test_window_with_no_time_left_is_rejected(self) -> None:
        with self.assertRaises(SegmentRejected):
            plan_window(23, 59, 30)


class SegmentPlanTests(TestCase):
    def test_single_enabled_slot_and_seven_neutral_slots(self) -> None:
        action = SegmentAction.from_dict({'workMode': 'ForceCharge', 'durationMinutes': 45, 'fdPwr': 4200})
        segment = plan_segment(_local(14, 5), action)

        self.assertEqual(len(segment.groups), SEGMENT_SLOTS)
        first = segment.groups[0]
        self.assertEqual(first['enable'], 1)
        self.assertEqual(first['workMode'], 'ForceCharge')
        self.assertEqual((first['startHour'], first['startMinute']), (14, 5))
        self.assertEqual((first['endHour'], first['endMinute']), (14, 50))
        self.assertEqual(first['fdPwr'], 4200)
        self.assertEqual(first['fdSoc'], 90)
        for group in segment.groups[1:]:
            self.assertEqual(group['enable'], 0)

    def test_segment_near_midnight_never_wraps(self) -> None:
        segment = plan_segment(_local(23, 30), SegmentAction(work_mode='ForceDischarge', duration_minutes=60))
        first = segment.groups[0]
        self.assertEqual((first['endHour'], first['endMinute']), (23, 59))
        self.assertEqual(segment.to_dict()['durationMinutes'], 29)
        self.assertEqual(segment.to_dict()['requestedMinutes'], 60)

    def test_clear_writes_eight_disabled_slots(self) -> None:
        groups = build_clear_groups()
        self.assertEqual(len(groups), 8)
        self.assertTrue(all(group['enable'] == 0 for group in groups))


class SegmentActionTests(TestCase):
    def test_power_in_kilowatts(self) -> None:
        self.assertEqual(SegmentAction.from_dict({'powerKw': 2.5}).fd_pwr, 2500)

    def test_target_soc_alias_and_mode_defaults(self) -> None:
        self.assertEqual(SegmentAction.from_dict({'workMode': 'ForceCharge', 'targetSoc': 75}).fd_soc, 75)
        self.assertEqual(SegmentAction.from_dict({'workMode': 'ForceDischarge'}).fd_soc, 30)

    def test_strict_rejects_unknown_work_mode(self) -> None:
        with self.assertRaises(ValidationError):
            SegmentAction.from_dict({'workMode': 'Turbo'}, strict=True)
        self.assertEqual(SegmentAction.from_dict({'workMode': 'Turbo'}).work_mode, 'SelfUse')

    def test_power_limit(self) -> None:
        with self.assertRaises(ValidationError):
            SegmentAction.from_dict({'fdPwr': 40000}, strict=True)
        self.assertEqual(SegmentAction.from_dict({'fdPwr': 40000}).fd_pwr, 30000)

    def test_non_numeric_value_is_a_validation_error(self) -> None:
        with self.assertRaises(ValidationError):
            SegmentAction.from_dict({'durationMinutes': 'soon'})


class HardwareControllerTests(TestCase):
    def setUp(self) -> None:
        self.client = FakeFoxESSClient()
        self.controller = HardwareController(self.client, 'SN-TEST-001', RetryPolicy(base_delay=0))

    def test_apply_segment_enables_the_scheduler(self) -> None:
        segment = plan_segment(_local(10, 0), SegmentAction(work_mode='ForceCharge'))
        result = self.controller.apply_segment(segment)

        self.assertEqual(result['errno'], 0)
        self.assertEqual(result['flagErrno'], 0)
        self.assertEqual(self.client.schedules, [segment.groups])
        self.assertEqual(self.client.flags, [True])

    def test_clear_only_touches_the_flag_when_asked(self) -> None:
        self.controller.clear_segments()
        self.assertEqual(self.client.flags, [])

        result = self.controller.clear_segments(disable_flag=True)
        self.assertEqual(result['cleared'], 8)
        self.assertEqual(self.client.flags, [False])
        self.assertTrue(all(group['enable'] == 0 for group in self.client.schedules[-1]))

    def test_flag_failure_is_reported_not_raised(self) -> None:
        self.client.flag_failures.append(HardwareRejection("flag refused", errno=40257))
        segment = plan_segment(_local(10, 0), SegmentAction(work_mode='ForceCharge'))
        result = self.controller.apply_segment(segment)
        self.assertEqual(result['flagErrno'], 40257)
        self.assertEqual(len(self.client.schedules), 1)

    def test_device_rejection_is_not_retried(self) -> None:
        self.client.schedule_failures.append(HardwareRejection("busy", errno=44096))
        with self.assertRaises(HardwareRejection):
            self.controller.clear_segments()
        self.assertEqual(self.client.schedules, [])

    def test_missing_serial_number(self) -> None:
        with self.assertRaises(DeviceNotConfigured):
            HardwareController(self.client, '')

    def test_execute_command(self) -> None:
        self.assertIsNone(execute_command(self.controller, None))
        self.assertEqual(execute_command(self.controller, 'export_limit', watts=0)['exportLimit'], 0)
        self.assertEqual(self.client.settings, [('ExportLimitPower', 0)])
        with self.assertRaises(ValueError):
            execute_command(self.controller, 'build')
        with self.assertRaises(ValueError):
            execute_command(self.controller, 'reboot')
