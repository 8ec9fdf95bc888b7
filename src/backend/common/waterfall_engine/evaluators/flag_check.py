from __future__ import annotations

from ..bitflags import FLAG_BITS
from ..context import EvaluationContext
from ..errors import RuleEvaluationFailure
from ..evaluator import Evaluation, RuleEvaluator
from ..models import Rule
from ..registry import register_evaluator


def _valid_bit(bit) -> bool:
    return isinstance(bit, int) and not isinstance(bit, bool) and 0 <= bit < FLAG_BITS


@register_evaluator
class FlagCheckEvaluator(RuleEvaluator):
    """Branch on facts recorded by earlier rules.

    Params: `bits` (list of bit indexes), `scope` (`document` or `loan`),
    `match` (`all` or `any`).
    """

    evaluator_key = "flag_check"
    description = "Previously recorded bit flags are set"

    def evaluate(self, rule: Rule, ctx: EvaluationContext) -> Evaluation:
        bits = rule.params.get("bits")
        if not isinstance(bits, list) or not bits:
            raise RuleEvaluationFailure(f"Rule '{rule.name}' has no 'bits' param")
        invalid = [bit for bit in bits if not _valid_bit(bit)]
        if invalid:
            raise RuleEvaluationFailure(
                f"Rule '{rule.name}' has bit index(es) outside 0..{FLAG_BITS - 1}: {invalid}",
                expected=f"0..{FLAG_BITS - 1}",
                actual=invalid,
            )
        scope = str(rule.params.get("scope", "document")).lower()
        state = ctx.loan_flags if scope == "loan" else ctx.flags

        hits = [bit for bit in bits if state.is_set(bit)]
        if str(rule.params.get("match", "all")).lower() == "any":
            result = bool(hits)
        else:
            result = len(hits) == len(bits)
        return self.outcome(rule, result, f"{rule.name}: {len(hits)}/{len(bits)} {scope} flag(s) set")
