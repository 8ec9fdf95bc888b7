from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .bitflags import BitFlagDelta
from .context import EvaluationContext
from .models import Rule, ValidationErrorRecord


@dataclass(frozen=True)
class Evaluation:
    result: bool
    decision: str = ""
    delta: BitFlagDelta = field(default_factory=BitFlagDelta)
    validation_errors: Tuple[ValidationErrorRecord, ...] = ()
    # Overrides the rule's attached path type when this node turns out to be a leaf.
    path_type_code: Optional[str] = None


class RuleEvaluator(ABC):
    """Domain comparison logic for one kind of rule.

    Evaluators are stateless and shared across runs. Raise
    `RuleEvaluationFailure` for expected data problems; anything else is
    treated as an unrecoverable fault for the run.
    """

    evaluator_key: str
    description: str = ""

    def __init__(self):
        if not getattr(self, "evaluator_key", None):
            raise ValueError("Evaluator must define evaluator_key")

    @abstractmethod
    def evaluate(self, rule: Rule, ctx: EvaluationContext) -> Evaluation:  # pragma: no cover
        raise NotImplementedError

    def flag_delta(self, rule: Rule, result: bool) -> BitFlagDelta:
        if rule.flag_bit is None or not result:
            return BitFlagDelta.none()
        return BitFlagDelta.for_bit(rule.flag_bit, rule.flag_op)

    def outcome(
        self,
        rule: Rule,
        result: bool,
        decision: str,
        *,
        errors: Tuple[ValidationErrorRecord, ...] = (),
        path_type_code: Optional[str] = None,
    ) -> Evaluation:
        return Evaluation(
            result=result,
            decision=decision,
            delta=self.flag_delta(rule, result),
            validation_errors=errors,
            path_type_code=path_type_code,
        )
