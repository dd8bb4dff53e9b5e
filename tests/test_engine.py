from __future__ import annotations

from chargesync import db
from chargesync.automations import find_blackout_window, needs_weather
from chargesync.automations.audit import get_history
from chargesync.automations.rules import toggle_automation
from chargesync.errors import CycleInProgress, HardwareRejection, NotFound, UpstreamTimeout
from chargesync.models import QuickControlState
from chargesync.time_utils import LocalTime
from fakes import AppTestCase, local_ms


def _all_disabled(groups: list[dict]) -> bool:
    return len(groups) == 8 and all(group['enable'] == 0 for group in groups)


class CycleSelectionTests(AppTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.enable_automation()

    def test_low_soc_charge_beats_high_feed_in(self) -> None:
        self.foxess.telemetry['SoC'] = 20
        self.amber.feed_in_price = 15.0
        self.add_feed_in_rule(priority=2)
        self.add_low_soc_rule(priority=1)

        result = self.engine.run_cycle(self.user.id)

        self.assertEqual(result['outcome'], 'success')
        self.assertEqual(result['ruleId'], 'low_soc_charge')
        self.assertEqual(result['actionTaken'], 'triggered')
        groups = self.foxess.schedules[-1]
        self.assertEqual(len(groups), 8)
        self.assertEqual(groups[0]['workMode'], 'ForceCharge')
        self.assertEqual((groups[0]['startHour'], groups[0]['startMinute']), (10, 0))
        self.assertEqual((groups[0]['endHour'], groups[0]['endMinute']), (11, 0))
        self.assertTrue(all(group['enable'] == 0 for group in groups[1:]))
        self.assertEqual(self.foxess.flags, [True])

        state = self.state()
        self.assertEqual(state.active_rule, 'low_soc_charge')
        self.assertEqual(state.active_rule_name, 'Low SoC Charge')
        self.assertTrue(state.active_segment_enabled)
        self.assertIsNotNone(self.rule('low_soc_charge').last_triggered)

    def test_continuing_rule_makes_no_hardware_call(self) -> None:
        self.foxess.telemetry['SoC'] = 20
        self.add_low_soc_rule()
        self.engine.run_cycle(self.user.id)

        self.clock.advance(61)
        result = self.engine.run_cycle(self.user.id)

        self.assertEqual(result['selection'], 'continuing')
        self.assertEqual(result['actionTaken'], 'continuing')
        self.assertEqual(len(self.foxess.schedules), 1)
        self.assertEqual(self.state().active_rule, 'low_soc_charge')

    def test_active_rule_retriggers_after_cooldown(self) -> None:
        self.foxess.telemetry['SoC'] = 20
        self.add_low_soc_rule()
        self.engine.run_cycle(self.user.id)

        self.clock.advance(6 * 60)
        result = self.engine.run_cycle(self.user.id)

        self.assertEqual(result['selection'], 'triggered')
        self.assertEqual(len(self.foxess.schedules), 2)
        groups = self.foxess.schedules[-1]
        self.assertEqual((groups[0]['startHour'], groups[0]['startMinute']), (10, 6))

    def test_unmet_active_rule_clears_segments_and_cooldown(self) -> None:
        self.foxess.telemetry['SoC'] = 20
        self.add_low_soc_rule()
        self.engine.run_cycle(self.user.id)

        self.foxess.telemetry['SoC'] = 80
        self.clock.advance(301)
        result = self.engine.run_cycle(self.user.id)

        self.assertEqual(result['actionTaken'], 'cleared')
        self.assertIn('Not met', result['deactivationReason'])
        self.assertEqual(len(self.foxess.schedules), 2)
        self.assertTrue(_all_disabled(self.foxess.schedules[-1]))
        self.assertIsNone(self.state().active_rule)
        self.assertFalse(self.state().active_segment_enabled)
        self.assertIsNone(self.rule('low_soc_charge').last_triggered)

    def test_segment_near_midnight_is_capped(self) -> None:
        self.clock.current = local_ms(2025, 1, 15, 23, 30)
        self.foxess.telemetry['SoC'] = 20
        self.add_low_soc_rule()

        result = self.engine.run_cycle(self.user.id)

        first = self.foxess.schedules[-1][0]
        self.assertEqual((first['endHour'], first['endMinute']), (23, 59))
        self.assertEqual(result['segment']['durationMinutes'], 29)

    def test_no_rule_met_is_idle(self) -> None:
        self.add_low_soc_rule()
        result = self.engine.run_cycle(self.user.id)
        self.assertEqual(result['selection'], 'idle')
        self.assertEqual(result['actionTaken'], 'none')
        self.assertEqual(self.foxess.schedules, [])

    def test_cycle_is_recorded_in_history(self) -> None:
        self.foxess.telemetry['SoC'] = 20
        self.add_low_soc_rule()
        self.engine.run_cycle(self.user.id)

        entry = get_history(self.user.id, event_type='cycle')[0]
        self.assertIsNone(entry['activeRuleBefore'])
        self.assertEqual(entry['activeRuleAfter'], 'low_soc_charge')
        self.assertEqual(entry['actionTaken'], 'triggered')
        self.assertEqual(entry['epochMs'], self.start_ms)
        self.assertEqual(entry['details']['snapshot']['soc'], 20.0)
        self.assertEqual(entry['evaluationResults'][0]['ruleId'], 'low_soc_charge')


class CycleFailureTests(AppTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.enable_automation()
        self.foxess.telemetry['SoC'] = 20
        self.add_low_soc_rule()

    def test_rejected_segment_rolls_back_active_rule(self) -> None:
        self.foxess.schedule_failures.append(HardwareRejection("FoxESS API error 44096: busy", errno=44096))

        result = self.engine.run_cycle(self.user.id)

        self.assertEqual(result['outcome'], 'hardware_rejected')
        self.assertEqual(result['actionTaken'], 'failed')
        self.assertEqual(result['errno'], 44096)
        self.assertIsNone(self.state().active_rule)
        self.assertIsNone(self.rule('low_soc_charge').last_triggered)

        self.clock.advance(61)
        retry = self.engine.run_cycle(self.user.id)
        self.assertEqual(retry['actionTaken'], 'triggered')
        self.assertEqual(len(self.foxess.schedules), 1)

    def test_transient_timeout_is_retried(self) -> None:
        self.foxess.schedule_failures.append(UpstreamTimeout("FoxESS API timeout"))
        result = self.engine.run_cycle(self.user.id)
        self.assertEqual(result['actionTaken'], 'triggered')
        self.assertEqual(len(self.foxess.schedules), 1)

    def test_persistent_timeout_reports_upstream_timeout(self) -> None:
        self.foxess.schedule_failures.extend(UpstreamTimeout("FoxESS API timeout") for _ in range(3))
        result = self.engine.run_cycle(self.user.id)
        self.assertEqual(result['outcome'], 'upstream_timeout')
        self.assertIsNone(self.state().active_rule)

    def test_failed_clear_is_retried_next_cycle(self) -> None:
        self.engine.run_cycle(self.user.id)
        self.foxess.telemetry['SoC'] = 80
        self.foxess.schedule_failures.append(HardwareRejection("busy", errno=44096))
        self.clock.advance(301)

        result = self.engine.run_cycle(self.user.id)
        self.assertEqual(result['outcome'], 'hardware_rejected')
        self.assertTrue(self.state().clear_segments_on_next_cycle)

        self.clock.advance(61)
        self.engine.run_cycle(self.user.id)
        self.assertTrue(_all_disabled(self.foxess.schedules[-1]))
        self.assertFalse(self.state().clear_segments_on_next_cycle)

    def test_failed_replacement_clears_previous_segment_next_cycle(self) -> None:
        self.add_feed_in_rule(priority=2)
        self.engine.run_cycle(self.user.id)
        self.assertEqual(self.foxess.schedules[-1][0]['workMode'], 'ForceCharge')

        self.foxess.telemetry['SoC'] = 80
        self.amber.feed_in_price = 15.0
        self.foxess.schedule_failures.append(HardwareRejection("busy", errno=44096))
        self.clock.advance(301)

        result = self.engine.run_cycle(self.user.id)

        self.assertEqual(result['outcome'], 'hardware_rejected')
        self.assertIsNone(self.state().active_rule)
        self.assertTrue(self.state().clear_segments_on_next_cycle)
        self.assertIsNone(self.rule('low_soc_charge').last_triggered)

        self.clock.advance(61)
        self.engine.run_cycle(self.user.id)

        self.assertTrue(_all_disabled(self.foxess.schedules[1]))
        self.assertEqual(self.foxess.schedules[-1][0]['workMode'], 'ForceDischarge')
        self.assertEqual(self.state().active_rule, 'high_feed_in')
        self.assertFalse(self.state().clear_segments_on_next_cycle)

    def test_price_outage_degrades_to_available_metrics(self) -> None:
        self.amber.failure = UpstreamTimeout("Amber API timeout")
        result = self.engine.run_cycle(self.user.id)
        self.assertEqual(result['actionTaken'], 'triggered')
        self.assertIn('prices', result['snapshotErrors'])

    def test_concurrent_cycle_is_rejected(self) -> None:
        with self.engine.locks.hold(self.user.id):
            with self.assertRaises(CycleInProgress):
                self.engine.run_cycle(self.user.id)
        self.assertEqual(self.foxess.schedules, [])

    def test_unknown_user(self) -> None:
        with self.assertRaises(NotFound):
            self.engine.run_cycle(9999)


class CycleGateTests(AppTestCase):
    def test_interval_not_elapsed_skips(self) -> None:
        self.enable_automation()
        self.engine.run_cycle(self.user.id)
        self.clock.advance(10)

        result = self.engine.run_cycle(self.user.id)

        self.assertTrue(result['skipped'])
        self.assertEqual(result['reason'], 'Interval not elapsed')
        self.assertEqual(result['nextCheckInMs'], 50000)
        self.assertEqual(self.foxess.telemetry_queries, 1)

    def test_force_ignores_interval(self) -> None:
        self.enable_automation()
        self.engine.run_cycle(self.user.id)
        self.clock.advance(10)
        self.assertFalse(self.engine.run_cycle(self.user.id, force=True)['skipped'])

    def test_disabled_automation_clears_exactly_once(self) -> None:
        result = self.engine.run_cycle(self.user.id)
        self.assertEqual(result['outcome'], 'automation_disabled')
        self.assertEqual(len(self.foxess.schedules), 1)
        self.assertTrue(_all_disabled(self.foxess.schedules[0]))
        self.assertEqual(self.foxess.flags, [])
        self.assertTrue(self.state().segments_cleared)

        self.clock.advance(61)
        self.engine.run_cycle(self.user.id)
        self.assertEqual(len(self.foxess.schedules), 1)

    def test_reenabling_resets_segments_cleared(self) -> None:
        self.engine.run_cycle(self.user.id)
        toggle_automation(self.user, True)
        db.session.commit()
        self.clock.advance(61)

        self.engine.run_cycle(self.user.id)

        self.assertFalse(self.state().segments_cleared)

    def test_disabling_with_active_rule_records_deactivation(self) -> None:
        self.enable_automation()
        self.foxess.telemetry['SoC'] = 20
        self.add_low_soc_rule()
        self.engine.run_cycle(self.user.id)

        toggle_automation(self.user, False)
        db.session.commit()
        self.clock.advance(61)
        self.engine.run_cycle(self.user.id)

        self.assertIsNone(self.state().active_rule)
        entry = get_history(self.user.id, event_type='automation_disabled')[0]
        self.assertEqual(entry['activeRuleBefore'], 'low_soc_charge')

    def test_missing_device(self) -> None:
        self.user.device_sn = None
        db.session.commit()
        self.enable_automation()
        self.assertEqual(self.engine.run_cycle(self.user.id)['outcome'], 'device_not_configured')

    def test_pending_clear_runs_first(self) -> None:
        state = self.enable_automation()
        state.active_rule = 'old_rule'
        state.active_rule_name = 'Old Rule'
        state.clear_segments_on_next_cycle = True
        db.session.commit()

        self.engine.run_cycle(self.user.id)

        self.assertTrue(_all_disabled(self.foxess.schedules[0]))
        self.assertFalse(self.state().clear_segments_on_next_cycle)
        self.assertIsNone(self.state().active_rule)

    def test_blackout_window_skips_cycle(self) -> None:
        self.enable_automation()
        self.foxess.telemetry['SoC'] = 20
        self.add_low_soc_rule()
        self.user.set_blackout_windows([{'enabled': True, 'start': '09:00', 'end': '11:00'}])
        db.session.commit()

        result = self.engine.run_cycle(self.user.id)

        self.assertEqual(result['reason'], 'In blackout window')
        self.assertEqual(self.foxess.schedules, [])
        self.assertTrue(self.state().in_blackout)

    def test_blackout_window_for_other_days_does_not_apply(self) -> None:
        self.enable_automation()
        self.user.set_blackout_windows([{'start': '09:00', 'end': '11:00', 'days': [0, 6]}])
        db.session.commit()
        self.assertFalse(self.engine.run_cycle(self.user.id)['skipped'])

    def test_active_quick_control_suspends_automation(self) -> None:
        self.engine.quick_control.start(self.user, 'charge', 3000, 30)
        db.session.commit()
        self.enable_automation()
        self.foxess.telemetry['SoC'] = 20
        self.add_low_soc_rule()

        result = self.engine.run_cycle(self.user.id)

        self.assertEqual(result['reason'], 'Quick control active')
        self.assertEqual(len(self.foxess.schedules), 1)

    def test_expired_quick_control_is_cleared_before_rules_run(self) -> None:
        self.engine.quick_control.start(self.user, 'charge', 3000, 30)
        db.session.commit()
        self.enable_automation()
        self.clock.advance(31 * 60)

        result = self.engine.run_cycle(self.user.id)

        self.assertEqual(result['expiredQuickControl']['type'], 'charge')
        self.assertIsNone(QuickControlState.query.filter_by(user_id=self.user.id).first())
        self.assertTrue(_all_disabled(self.foxess.schedules[-1]))
        self.assertEqual(self.foxess.flags, [True, False])


class CycleExtrasTests(AppTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.enable_automation()

    def test_curtailment_follows_feed_in_price(self) -> None:
        self.user.curtailment_enabled = True
        self.user.curtailment_price_threshold = -2.0
        db.session.commit()
        self.amber.feed_in_price = -5.0

        result = self.engine.run_cycle(self.user.id)
        self.assertTrue(result['curtailment']['active'])
        self.assertEqual(self.foxess.settings, [('ExportLimitPower', 0)])

        self.clock.advance(61)
        self.engine.run_cycle(self.user.id)
        self.assertEqual(len(self.foxess.settings), 1)

        self.amber.feed_in_price = 8.0
        self.clock.advance(61)
        result = self.engine.run_cycle(self.user.id)
        self.assertFalse(result['curtailment']['active'])
        self.assertEqual(self.foxess.settings[-1], ('ExportLimitPower', 12000))

    def test_weather_fetched_only_when_a_rule_needs_it(self) -> None:
        self.add_low_soc_rule()
        self.engine.run_cycle(self.user.id)
        self.assertEqual(self.weather_calls, 0)

        self.add_rule('Cloudy Charge', {'cloudCover': {'enabled': True, 'operator': '>', 'value': 80}},
                      {'workMode': 'ForceCharge'})
        self.clock.advance(61)
        self.engine.run_cycle(self.user.id)
        self.assertEqual(self.weather_calls, 1)

    def test_status_report(self) -> None:
        self.add_low_soc_rule()
        status = self.engine.status(self.user)
        self.assertTrue(status['enabled'])
        self.assertIn('low_soc_charge', status['rules'])
        self.assertEqual(status['serverTime'], self.start_ms)
        self.assertFalse(status['cycleRunning'])
        self.assertFalse(status['inBlackout'])
        self.assertIsNone(status['quickControl'])

    def test_run_due_cycles_counts_outcomes(self) -> None:
        other = self.create_user('second@example.com', device_sn=None)
        self.enable_automation(other)
        outcomes = self.engine.run_due_cycles()
        self.assertEqual(outcomes, {'success': 1, 'device_not_configured': 1})


class EngineHelperTests(AppTestCase):
    def test_blackout_window_crossing_midnight(self) -> None:
        windows = [{'start': '22:00', 'end': '06:00'}]
        late = LocalTime(23, 0, 0, 15, 1, 2025, 3, 'Australia/Sydney')
        morning = LocalTime(6, 0, 0, 16, 1, 2025, 4, 'Australia/Sydney')
        self.assertEqual(find_blackout_window(windows, late), windows[0])
        self.assertIsNone(find_blackout_window(windows, morning))
        self.assertIsNone(find_blackout_window([{'enabled': False, 'start': '22:00', 'end': '06:00'}], late))

    def test_needs_weather(self) -> None:
        rule = self.add_rule('Sunny', {'weather': {'enabled': True, 'condition': 'sunny'}}, {})
        self.assertTrue(needs_weather([rule]))
        rule.enabled = False
        self.assertFalse(needs_weather([rule]))
