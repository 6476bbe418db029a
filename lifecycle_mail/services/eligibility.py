"""Eligibility evaluator — segment targeting and step conditions.

Conditions are data; this module interprets them. Evaluation never raises:
an unknown condition kind passes (so a newer definition cannot block an
otherwise-ready send), incompatible operand types fail, and an operand that
cannot be fetched fails for this tick only.
"""

import logging
from numbers import Real
from typing import Any, Iterable

from lifecycle_mail.models import Condition, ConditionKind, Operator, WorkflowDefinition

logger = logging.getLogger(__name__)

_COLLECTIONS = (list, tuple, set, frozenset)


def is_eligible(user_segments: Iterable[str], workflow: WorkflowDefinition) -> bool:
    """Target segments (if any) must intersect; exclude segments (if any) must not."""
    segments = set(user_segments)
    if workflow.target_segments and not (workflow.target_segments & segments):
        return False
    if workflow.exclude_segments and (workflow.exclude_segments & segments):
        return False
    return True


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def apply_operator(operand: Any, op: Operator | str, target: Any) -> bool:
    """Compare ``operand`` against ``target``. Unknown operators pass."""
    if op == Operator.EQUALS:
        return operand == target
    if op == Operator.NOT_EQUALS:
        return operand != target
    if op in (Operator.GREATER_THAN, Operator.LESS_THAN):
        if not (_is_number(operand) and _is_number(target)):
            return False
        return operand > target if op == Operator.GREATER_THAN else operand < target
    if op in (Operator.CONTAINS, Operator.NOT_CONTAINS):
        if operand is None:
            found = False
        elif isinstance(operand, _COLLECTIONS):
            found = target in operand
        else:
            found = str(target) in str(operand)
        return found if op == Operator.CONTAINS else not found
    return True


class EligibilityEvaluator:
    """Resolves condition operands through the profile accessor and scorer."""

    def __init__(self, profiles, scorer):
        self._profiles = profiles
        self._scorer = scorer

    def is_eligible(self, user_segments: Iterable[str], workflow: WorkflowDefinition) -> bool:
        return is_eligible(user_segments, workflow)

    def check_conditions(self, user_id: str, conditions: Iterable[Condition]) -> bool:
        """True iff every condition holds (vacuously true for none)."""
        return all(self._evaluate(user_id, c) for c in conditions)

    def _evaluate(self, user_id: str, condition: Condition) -> bool:
        try:
            kind = ConditionKind(condition.kind)
        except ValueError:
            return True

        try:
            operand = self._resolve(user_id, kind, condition)
        except Exception:
            logger.warning(
                "Could not resolve %s operand for %s; condition fails this tick",
                kind.value, user_id, exc_info=True,
            )
            return False

        return apply_operator(operand, condition.operator, condition.value)

    def _resolve(self, user_id: str, kind: ConditionKind, condition: Condition) -> Any:
        if kind is ConditionKind.SEGMENT:
            return sorted(self._profiles.get_user_segments(user_id))
        if kind is ConditionKind.PROFILE_FIELD:
            return self._profiles.get_profile_field(user_id, condition.field)
        if kind is ConditionKind.ENGAGEMENT_SCORE:
            return self._scorer.score(user_id)
        return self._profiles.get_subscription_status(user_id)
