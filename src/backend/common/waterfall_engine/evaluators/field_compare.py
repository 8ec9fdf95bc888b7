from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Optional

from ..context import EvaluationContext
from ..errors import FieldTypeError, RuleEvaluationFailure
from ..evaluator import Evaluation, RuleEvaluator
from ..models import FieldRole, FieldValue, Rule, ValidationErrorRecord
from ..registry import register_evaluator


def _as_decimal(field_id: str, value: FieldValue) -> Optional[Decimal]:
    """Numeric view of a value, or None when it is text. Non-finite numbers are a type error."""
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, str):
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            return None
    else:
        return None
    if not number.is_finite():
        raise FieldTypeError(field_id, "finite number", value)
    return number


def _normalize_text(value: FieldValue) -> str:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return " ".join(str(value).split()).casefold()


@register_evaluator
class FieldCompareEvaluator(RuleEvaluator):
    """Pairwise Input vs Compare comparison.

    Numeric pairs pass when `|actual - expected| <= tolerance`, where the
    tolerance is the matching Delta field (or the first one, or the
    `tolerance` param). Everything else compares as normalized text.
    Each mismatching pair produces one validation error.
    """

    evaluator_key = "field_compare"
    description = "Input fields equal their Compare fields (numeric within Delta)"

    def evaluate(self, rule: Rule, ctx: EvaluationContext) -> Evaluation:
        inputs = ctx.field_ids(rule, FieldRole.INPUT)
        compares = ctx.field_ids(rule, FieldRole.COMPARE)
        if not inputs or len(inputs) != len(compares):
            raise RuleEvaluationFailure(
                f"Rule '{rule.name}' needs matching Input/Compare fields ({len(inputs)} vs {len(compares)})"
            )
        deltas = ctx.field_ids(rule, FieldRole.DELTA)

        errors = []
        for idx, (actual_id, expected_id) in enumerate(zip(inputs, compares)):
            actual = ctx.require(actual_id)
            expected = ctx.require(expected_id)
            actual_num = _as_decimal(actual_id, actual)
            expected_num = _as_decimal(expected_id, expected)

            if actual_num is not None and expected_num is not None:
                tolerance = self._tolerance(rule, ctx, deltas, idx)
                diff = abs(actual_num - expected_num)
                if diff > tolerance:
                    errors.append(
                        ValidationErrorRecord(
                            rule_name=rule.name,
                            document_id=ctx.document_id,
                            field_id=actual_id,
                            expected=str(expected_num),
                            actual=str(actual_num),
                            delta=str(diff),
                            message=f"{actual_id} differs from {expected_id} by {diff} (tolerance {tolerance})",
                        )
                    )
            elif _normalize_text(actual) != _normalize_text(expected):
                errors.append(
                    ValidationErrorRecord(
                        rule_name=rule.name,
                        document_id=ctx.document_id,
                        field_id=actual_id,
                        expected=str(expected),
                        actual=str(actual),
                        message=f"{actual_id} does not match {expected_id}",
                    )
                )

        if errors:
            return self.outcome(
                rule,
                False,
                f"{rule.name}: {len(errors)} of {len(inputs)} field(s) mismatched",
                errors=tuple(errors),
            )
        return self.outcome(rule, True, f"{rule.name}: {len(inputs)} field(s) matched")

    def _tolerance(self, rule: Rule, ctx: EvaluationContext, deltas: list[str], idx: int) -> Decimal:
        if deltas:
            field_id = deltas[idx] if idx < len(deltas) else deltas[0]
            return abs(ctx.require_number(field_id))
        return abs(Decimal(str(rule.params.get("tolerance", "0"))))
