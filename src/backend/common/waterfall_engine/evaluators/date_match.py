from __future__ import annotations

from typing import List, Tuple

from ..context import EvaluationContext
from ..errors import RuleEvaluationFailure
from ..evaluator import Evaluation, RuleEvaluator
from ..models import FieldRole, Rule, ValidationErrorRecord
from ..registry import register_evaluator


@register_evaluator
class DateMatchEvaluator(RuleEvaluator):
    """Pass when every Input date matches its Compare date (or, without Compare
    fields, when all Input dates agree). A Delta field or `tolerance_days`
    param allows a day window."""

    evaluator_key = "date_match"
    description = "Input dates match compare dates within a tolerance in days"

    def evaluate(self, rule: Rule, ctx: EvaluationContext) -> Evaluation:
        inputs = ctx.field_ids(rule, FieldRole.INPUT)
        if not inputs:
            raise RuleEvaluationFailure(f"Rule '{rule.name}' declares no Input fields")
        compares = ctx.field_ids(rule, FieldRole.COMPARE)
        tolerance = self._tolerance_days(rule, ctx)

        pairs: List[Tuple[str, str]]
        if compares:
            if len(compares) == 1:
                pairs = [(field_id, compares[0]) for field_id in inputs]
            elif len(compares) == len(inputs):
                pairs = list(zip(inputs, compares))
            else:
                raise RuleEvaluationFailure(
                    f"Rule '{rule.name}' has {len(inputs)} Input and {len(compares)} Compare fields"
                )
        else:
            pairs = [(inputs[0], other) for other in inputs[1:]]

        errors = []
        for actual_id, expected_id in pairs:
            actual = ctx.require_date(actual_id)
            expected = ctx.require_date(expected_id)
            delta = abs((actual - expected).days)
            if delta > tolerance:
                errors.append(
                    ValidationErrorRecord(
                        rule_name=rule.name,
                        document_id=ctx.document_id,
                        field_id=actual_id,
                        expected=expected.isoformat(),
                        actual=actual.isoformat(),
                        delta=str(delta),
                        message=f"{actual_id} differs from {expected_id} by {delta} day(s)",
                    )
                )

        if errors:
            fields = ", ".join(e.field_id for e in errors if e.field_id)
            return self.outcome(rule, False, f"{rule.name}: date mismatch on {fields}", errors=tuple(errors))
        return self.outcome(rule, True, f"{rule.name}: dates match")

    def _tolerance_days(self, rule: Rule, ctx: EvaluationContext) -> int:
        delta_fields = ctx.field_ids(rule, FieldRole.DELTA)
        if delta_fields:
            return int(ctx.require_number(delta_fields[0]))
        return int(rule.params.get("tolerance_days", 0))

