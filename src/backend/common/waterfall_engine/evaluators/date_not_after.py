from __future__ import annotations

from ..context import EvaluationContext
from ..errors import RuleEvaluationFailure
from ..evaluator import Evaluation, RuleEvaluator
from ..models import FieldRole, Rule, ValidationErrorRecord
from ..registry import register_evaluator


@register_evaluator
class DateNotAfterEvaluator(RuleEvaluator):
    """Yes when every Input date falls on or before the (single) Compare date."""

    evaluator_key = "date_not_after"
    description = "Input dates are on or before the Compare date"

    def evaluate(self, rule: Rule, ctx: EvaluationContext) -> Evaluation:
        inputs = ctx.field_ids(rule, FieldRole.INPUT)
        compares = ctx.field_ids(rule, FieldRole.COMPARE)
        if not inputs or len(compares) != 1:
            raise RuleEvaluationFailure(f"Rule '{rule.name}' needs Input fields and exactly one Compare field")

        limit = ctx.require_date(compares[0])
        late = []
        for field_id in inputs:
            value = ctx.require_date(field_id)
            if value > limit:
                late.append(
                    ValidationErrorRecord(
                        rule_name=rule.name,
                        document_id=ctx.document_id,
                        field_id=field_id,
                        expected=f"<= {limit.isoformat()}",
                        actual=value.isoformat(),
                        delta=str((value - limit).days),
                        message=f"{field_id} is {(value - limit).days} day(s) after {compares[0]}",
                    )
                )

        if late:
            # Being later is an answer, not a data defect.
            return self.outcome(rule, False, f"{rule.name}: after {compares[0]} ({late[0].actual})")
        return self.outcome(rule, True, f"{rule.name}: on or before {compares[0]} ({limit.isoformat()})")
