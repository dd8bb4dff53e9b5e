"""
Rule selection and priority resolution.

Exactly one rule may drive the inverter at a time. The active rule keeps
control for as long as its conditions hold, even if a higher priority rule
becomes eligible meanwhile; only when it stops matching (or is disabled or
deleted) do the other rules get a chance. Among eligible candidates the
lowest priority number wins, ties broken by rule id.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from chargesync.automations.triggers import MetricSnapshot, RuleEvaluation, evaluate_rule

_LOGGER = logging.getLogger(__name__)

IDLE = 'idle'
TRIGGERED = 'triggered'
CONTINUING = 'continuing'
DEACTIVATED = 'deactivated'

LOWEST_PRIORITY = 10 ** 6


def is_in_cooldown(rule, now: datetime) -> bool:
    """True while less than cooldown_minutes have passed since the rule last triggered."""
    if rule.last_triggered is None:
        return False
    cooldown = timedelta(minutes=rule.cooldown_minutes or 0)
    return now - rule.last_triggered < cooldown


def priority_key(rule):
    priority = rule.priority if rule.priority is not None else LOWEST_PRIORITY
    return (priority, rule.rule_key)


@dataclass
class Selection:
    """Result of one selection pass."""
    outcome: str
    rule: Optional[object] = None  # Rule to build (triggered) or keep (continuing)
    previous_rule_key: Optional[str] = None
    deactivated_rule: Optional[object] = None
    deactivation_reason: str = ""
    restarted: bool = False  # Active rule re-triggered after its cooldown elapsed
    evaluations: List[RuleEvaluation] = field(default_factory=list)

    @property
    def command(self) -> Optional[str]:
        """Hardware command implied by the outcome: 'build', 'clear' or None."""
        if self.outcome == TRIGGERED:
            return 'build'
        if self.outcome == DEACTIVATED:
            return 'clear'
        return None

    @property
    def active_rule_key(self) -> Optional[str]:
        if self.outcome in (TRIGGERED, CONTINUING) and self.rule is not None:
            return self.rule.rule_key
        return None


def select_rule(
    rules: Iterable,
    snapshot: MetricSnapshot,
    active_rule_key: Optional[str],
    now: datetime,
    evaluate: Callable = evaluate_rule,
) -> Selection:
    """
    Decide which rule should be active this cycle.

    Args:
        rules: All of the user's rules (disabled ones are ignored)
        snapshot: Current metrics
        active_rule_key: Rule currently driving the inverter, if any
        now: Naive UTC time used for cooldown checks
        evaluate: Rule evaluation function
    """
    enabled = [rule for rule in rules if rule.enabled]
    active = None
    if active_rule_key:
        active = next((rule for rule in enabled if rule.rule_key == active_rule_key), None)

    evaluations: List[RuleEvaluation] = []
    deactivated_rule = None
    deactivation_reason = ""

    if active_rule_key:
        if active is None:
            deactivation_reason = "Active rule disabled or deleted"
            _LOGGER.info(f"Active rule '{active_rule_key}' no longer enabled, deactivating")
        else:
            # Cooldown does not apply while re-evaluating the active rule
            evaluation = evaluate(active, snapshot)
            evaluations.append(evaluation)
            if evaluation.triggered:
                if not is_in_cooldown(active, now):
                    _LOGGER.info(f"Active rule '{active.name}' still met and cooldown elapsed, re-triggering")
                    return Selection(
                        outcome=TRIGGERED,
                        rule=active,
                        previous_rule_key=active_rule_key,
                        restarted=True,
                        evaluations=evaluations,
                    )
                _LOGGER.debug(f"Active rule '{active.name}' continuing")
                return Selection(
                    outcome=CONTINUING,
                    rule=active,
                    previous_rule_key=active_rule_key,
                    evaluations=evaluations,
                )
            deactivated_rule = active
            deactivation_reason = evaluation.reason or "Conditions no longer met"
            _LOGGER.info(f"Active rule '{active.name}' no longer met: {deactivation_reason}")

    candidates = sorted(
        (rule for rule in enabled if rule is not active and not is_in_cooldown(rule, now)),
        key=priority_key,
    )

    winner = None
    for rule in candidates:
        evaluation = evaluate(rule, snapshot)
        evaluations.append(evaluation)
        if evaluation.triggered and winner is None:
            winner = rule

    if winner is not None:
        _LOGGER.info(f"Rule '{winner.name}' selected (priority {winner.priority})")
        return Selection(
            outcome=TRIGGERED,
            rule=winner,
            previous_rule_key=active_rule_key,
            deactivated_rule=deactivated_rule,
            deactivation_reason=deactivation_reason,
            evaluations=evaluations,
        )

    if active_rule_key:
        return Selection(
            outcome=DEACTIVATED,
            previous_rule_key=active_rule_key,
            deactivated_rule=deactivated_rule,
            deactivation_reason=deactivation_reason,
            evaluations=evaluations,
        )

    return Selection(outcome=IDLE, evaluations=evaluations)
