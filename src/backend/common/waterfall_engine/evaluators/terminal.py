from __future__ import annotations

from ..context import EvaluationContext
from ..evaluator import Evaluation, RuleEvaluator
from ..models import Rule
from ..registry import register_evaluator


@register_evaluator
class TerminalEvaluator(RuleEvaluator):
    evaluator_key = "terminal"
    description = "Fixed decision for leaves and manual-review sentinels"

    def evaluate(self, rule: Rule, ctx: EvaluationContext) -> Evaluation:
        result = bool(rule.params.get("result", True))
        return self.outcome(rule, result, rule.description or rule.name)
