from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest import TestCase

from chargesync.automations.selector import (
    CONTINUING,
    DEACTIVATED,
    IDLE,
    TRIGGERED,
    is_in_cooldown,
    select_rule,
)
from chargesync.automations.triggers import MetricSnapshot
from chargesync.time_utils import get_user_time

NOW = datetime(2025, 1, 15, 0, 0)


def _rule(key: str, priority: int = 5, cooldown: int = 5, last_triggered: datetime | None = None,
          enabled: bool = True, soc_below: float = 30) -> SimpleNamespace:
    return SimpleNamespace(
        rule_key=key,
        name=key.replace('_', ' ').title(),
        priority=priority,
        cooldown_minutes=cooldown,
        last_triggered=last_triggered,
        enabled=enabled,
        conditions={'soc': {'enabled': True, 'operator': '<', 'value': soc_below}},
        action={'workMode': 'ForceCharge'},
    )


def _snapshot(soc: float) -> MetricSnapshot:
    now = NOW.replace(tzinfo=timezone.utc)
    return MetricSnapshot(local_time=get_user_time('Australia/Sydney', now), now=now, soc=soc)


class CooldownTests(TestCase):
    def test_cooldown_window(self) -> None:
        self.assertTrue(is_in_cooldown(_rule('a', cooldown=60, last_triggered=NOW - timedelta(minutes=30)), NOW))
        self.assertFalse(is_in_cooldown(_rule('a', cooldown=60, last_triggered=NOW - timedelta(minutes=90)), NOW))
        self.assertFalse(is_in_cooldown(_rule('a', cooldown=60), NOW))


class SelectRuleTests(TestCase):
    def test_lowest_priority_number_wins(self) -> None:
        rules = [_rule('third', priority=3), _rule('first', priority=1), _rule('second', priority=2)]
        selection = select_rule(rules, _snapshot(soc=10), None, NOW)
        self.assertEqual(selection.outcome, TRIGGERED)
        self.assertEqual(selection.rule.rule_key, 'first')
        self.assertEqual(selection.command, 'build')

    def test_equal_priority_broken_by_rule_id(self) -> None:
        rules = [_rule('zeta', priority=1), _rule('alpha', priority=1)]
        self.assertEqual(select_rule(rules, _snapshot(soc=10), None, NOW).rule.rule_key, 'alpha')

    def test_rules_in_cooldown_are_skipped(self) -> None:
        rules = [
            _rule('first', priority=1, cooldown=60, last_triggered=NOW - timedelta(minutes=30)),
            _rule('second', priority=2),
        ]
        self.assertEqual(select_rule(rules, _snapshot(soc=10), None, NOW).rule.rule_key, 'second')

    def test_disabled_rules_are_ignored(self) -> None:
        selection = select_rule([_rule('off', enabled=False)], _snapshot(soc=10), None, NOW)
        self.assertEqual(selection.outcome, IDLE)
        self.assertIsNone(selection.command)

    def test_active_rule_keeps_control_while_met(self) -> None:
        rules = [
            _rule('urgent', priority=1),
            _rule('running', priority=5, last_triggered=NOW - timedelta(minutes=1)),
        ]
        selection = select_rule(rules, _snapshot(soc=10), 'running', NOW)
        self.assertEqual(selection.outcome, CONTINUING)
        self.assertEqual(selection.rule.rule_key, 'running')
        self.assertIsNone(selection.command)
        self.assertEqual(selection.active_rule_key, 'running')

    def test_active_rule_retriggers_once_cooldown_elapsed(self) -> None:
        rules = [_rule('running', cooldown=5, last_triggered=NOW - timedelta(minutes=10))]
        selection = select_rule(rules, _snapshot(soc=10), 'running', NOW)
        self.assertEqual(selection.outcome, TRIGGERED)
        self.assertTrue(selection.restarted)

    def test_unmet_active_rule_hands_over_to_next_candidate(self) -> None:
        rules = [
            _rule('running', priority=1, soc_below=20, last_triggered=NOW - timedelta(minutes=1)),
            _rule('fallback', priority=2, soc_below=50),
        ]
        selection = select_rule(rules, _snapshot(soc=30), 'running', NOW)
        self.assertEqual(selection.outcome, TRIGGERED)
        self.assertEqual(selection.rule.rule_key, 'fallback')
        self.assertEqual(selection.deactivated_rule.rule_key, 'running')

    def test_unmet_active_rule_with_no_replacement_is_deactivated(self) -> None:
        rules = [_rule('running', last_triggered=NOW - timedelta(minutes=1))]
        selection = select_rule(rules, _snapshot(soc=80), 'running', NOW)
        self.assertEqual(selection.outcome, DEACTIVATED)
        self.assertEqual(selection.command, 'clear')
        self.assertTrue(selection.deactivation_reason.startswith("Not met"))
        self.assertIsNone(selection.active_rule_key)

    def test_deleted_active_rule_is_deactivated(self) -> None:
        selection = select_rule([], _snapshot(soc=10), 'gone', NOW)
        self.assertEqual(selection.outcome, DEACTIVATED)
        self.assertEqual(selection.deactivation_reason, "Active rule disabled or deleted")
        self.assertIsNone(selection.deactivated_rule)

    def test_nothing_met_and_nothing_active_is_idle(self) -> None:
        selection = select_rule([_rule('a'), _rule('b')], _snapshot(soc=90), None, NOW)
        self.assertEqual(selection.outcome, IDLE)
        self.assertEqual(len(selection.evaluations), 2)
