from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .bitflags import BitFlagState
from .catalog import RuleCatalog
from .context import EvaluationContext
from .errors import (
    CancelledError,
    DepthExceededError,
    EvaluatorFaultError,
    RuleEvaluationFailure,
)
from .evaluator import Evaluation
from .models import AuditEntry, Rule, ValidationErrorRecord
from .registry import EvaluatorRegistry, registry as default_registry

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CancellationToken:
    """Cooperative cancellation, honoured at rule boundaries only."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class ExecutionResult:
    root: str
    document_id: Optional[str]
    initial_flags: BitFlagState
    final_flags: BitFlagState
    audit_entries: List[AuditEntry] = field(default_factory=list)
    validation_errors: List[ValidationErrorRecord] = field(default_factory=list)

    last_rule: Optional[str] = None
    accepted: bool = False
    decision: str = ""
    path_type_code: Optional[str] = None
    manual_review_reason: Optional[str] = None

    @property
    def steps(self) -> int:
        return len(self.audit_entries)

    @property
    def validation_passed(self) -> bool:
        return not self.validation_errors

    def visited(self) -> List[str]:
        return [entry.rule_name for entry in self.audit_entries]


class WaterfallExecutor:
    """Walks the flow graph from a root rule, one evaluator call per node.

    Every visited node yields exactly one audit entry. Traversal is bounded by
    the catalog's rule count so a cycle the graph build could not see still
    terminates (`DepthExceededError`).
    """

    def __init__(
        self,
        catalog: RuleCatalog,
        *,
        registry: Optional[EvaluatorRegistry] = None,
        clock: Clock = utc_now,
        max_depth: Optional[int] = None,
    ):
        self.catalog = catalog
        self.graph = catalog.graph
        self.registry = registry or default_registry
        self.clock = clock
        self.max_steps = max(1, max_depth or catalog.rule_count)

    def run(
        self,
        root: Rule,
        ctx: EvaluationContext,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        result = ExecutionResult(
            root=root.name,
            document_id=ctx.document_id,
            initial_flags=ctx.flags,
            final_flags=ctx.flags,
        )
        flags = ctx.flags
        rule: Optional[Rule] = root

        while rule is not None:
            if cancel_token is not None and cancel_token.cancelled:
                raise CancelledError(rule.name, partial=result)
            if result.steps >= self.max_steps:
                raise DepthExceededError(root.name, self.max_steps, partial=result)

            evaluation = self._evaluate(rule, ctx.with_flags(flags), result)
            after = flags.apply(evaluation.delta)
            sequence = result.steps + 1
            result.audit_entries.append(
                AuditEntry(
                    sequence=sequence,
                    rule_name=rule.name,
                    rule_id=rule.rule_id,
                    execution_order=rule.execution_order,
                    document_id=ctx.document_id,
                    subtype=rule.subtype,
                    result=evaluation.result,
                    outcome=self.graph.condition_for(rule, evaluation.result),
                    decision=evaluation.decision,
                    flags_before=flags.snapshot(),
                    flags_after=after.snapshot(),
                    timestamp=self.clock(),
                )
            )
            for error in evaluation.validation_errors:
                result.validation_errors.append(
                    error.model_copy(
                        update={
                            "audit_sequence": sequence,
                            "document_id": error.document_id or ctx.document_id,
                        }
                    )
                )

            flags = after
            result.final_flags = flags
            result.last_rule = rule.name
            result.accepted = evaluation.result
            result.decision = evaluation.decision

            if rule.manual_review:
                result.manual_review_reason = evaluation.decision or f"Manual review required at '{rule.name}'"
                logger.warning("Waterfall %s reached manual review sentinel %s", root.name, rule.name)
                break

            next_rule = self.graph.next_rule(rule, evaluation.result)
            if next_rule is None:
                result.path_type_code = evaluation.path_type_code or rule.path_type_code
            rule = next_rule

        logger.debug(
            "Waterfall %s for %s finished at %s after %d step(s)",
            root.name,
            ctx.subject_id,
            result.last_rule,
            result.steps,
        )
        return result

    def _evaluate(self, rule: Rule, ctx: EvaluationContext, partial: ExecutionResult) -> Evaluation:
        try:
            evaluator = self.registry.resolve(rule)
        except KeyError as exc:
            raise EvaluatorFaultError(rule.name, exc, partial=partial) from exc

        try:
            return evaluator.evaluate(rule, ctx)
        except RuleEvaluationFailure as exc:
            logger.info("Rule %s failed validation for %s: %s", rule.name, ctx.subject_id, exc)
            return Evaluation(
                result=False,
                decision=f"{rule.name}: {exc}",
                validation_errors=(
                    ValidationErrorRecord(
                        rule_name=rule.name,
                        document_id=ctx.document_id,
                        field_id=exc.field_id,
                        expected=None if exc.expected is None else str(exc.expected),
                        actual=None if exc.actual is None else str(exc.actual),
                        message=str(exc),
                    ),
                ),
            )
        except Exception as exc:
            raise EvaluatorFaultError(rule.name, exc, partial=partial) from exc
