from __future__ import annotations

from ..context import EvaluationContext
from ..errors import RuleEvaluationFailure
from ..evaluator import Evaluation, RuleEvaluator
from ..models import FieldRole, Rule
from ..registry import register_evaluator


@register_evaluator
class FieldsPresentEvaluator(RuleEvaluator):
    """Yes when all Input fields carry a value (`match: any` for at least one).

    Absence is the question being asked here, so it never raises
    `MissingFieldError`.
    """

    evaluator_key = "fields_present"
    description = "Input fields are present on the document or loan"

    def evaluate(self, rule: Rule, ctx: EvaluationContext) -> Evaluation:
        values = ctx.field_values(rule, FieldRole.INPUT)
        if not values:
            raise RuleEvaluationFailure(f"Rule '{rule.name}' declares no Input fields")

        present = [field_id for field_id, value in values if value is not None and value != ""]
        missing = [field_id for field_id, value in values if value is None or value == ""]
        if str(rule.params.get("match", "all")).lower() == "any":
            result = bool(present)
        else:
            result = not missing

        if result:
            decision = f"{rule.name}: present ({', '.join(present)})"
        else:
            decision = f"{rule.name}: missing ({', '.join(missing)})"
        return self.outcome(rule, result, decision)
