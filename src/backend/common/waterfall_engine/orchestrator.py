from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .bitflags import BitFlagState
from .catalog import RuleCatalog
from .config import EngineConfig
from .context import EvaluationContext, FieldValueProvider
from .discriminators import TiebreakContext
from .errors import DepthExceededError, ExecutionError
from .executor import CancellationToken, Clock, ExecutionResult, WaterfallExecutor, utc_now
from .models import (
    ClosingDisclosure,
    DocumentResult,
    Loan,
    Rule,
    RuleLevel,
    RuleSubtype,
    RunStatus,
    TagType,
    WaterfallRun,
)
from .registry import EvaluatorRegistry, registry as default_registry
from .tiebreak import TiebreakResolver

logger = logging.getLogger(__name__)

SUBTYPE_SEQUENCE = (RuleSubtype.INITIAL, RuleSubtype.FINAL, RuleSubtype.PCCD)
TAG_FOR_SUBTYPE = {
    RuleSubtype.INITIAL: TagType.INITIAL,
    RuleSubtype.FINAL: TagType.FINAL,
    RuleSubtype.PCCD: TagType.PCCD,
}


class RunAborted(Exception):
    """Internal signal: the run hit a fatal condition and must end in Error."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class _CatalogState:
    catalog: RuleCatalog
    executor: WaterfallExecutor
    resolver: TiebreakResolver


@dataclass
class _DocState:
    document: ClosingDisclosure
    result: DocumentResult
    flags: BitFlagState = field(default_factory=BitFlagState)


@dataclass
class _DocOutcome:
    state: _DocState
    results: List[ExecutionResult] = field(default_factory=list)
    escalation: Optional[str] = None
    fatal: Optional[ExecutionError] = None

    @property
    def accepted(self) -> bool:
        return bool(self.results) and self.fatal is None and self.escalation is None and all(
            res.accepted and res.manual_review_reason is None for res in self.results
        )


class _RunRecorder:
    """Assigns run-wide sequence numbers as execution results are merged in."""

    def __init__(self, run: WaterfallRun):
        self.run = run

    def absorb(self, result: Optional[ExecutionResult]) -> None:
        if result is None:
            return
        offset = len(self.run.audit_trail)
        for entry in result.audit_entries:
            self.run.audit_trail.append(
                entry.model_copy(update={"run_id": self.run.run_id, "sequence": offset + entry.sequence})
            )
        for error in result.validation_errors:
            self.run.validation_errors.append(
                error.model_copy(update={"run_id": self.run.run_id, "audit_sequence": offset + error.audit_sequence})
            )

    def escalate(self, reason: str) -> None:
        logger.warning("Run %s escalated to manual review: %s", self.run.run_id, reason)
        self.run.manual_review_reasons.append(reason)


class RunOrchestrator:
    """Runs the Initial, Final and PCCD waterfalls for one loan's CD set.

    The orchestrator holds an immutable catalog snapshot; `refresh_catalog`
    swaps in a new one without affecting runs already in flight. It does no
    I/O: persisting the terminal run is the caller's job.
    """

    def __init__(
        self,
        catalog: RuleCatalog,
        field_provider: FieldValueProvider,
        *,
        config: Optional[EngineConfig] = None,
        registry: Optional[EvaluatorRegistry] = None,
        clock: Clock = utc_now,
    ):
        self.config = config or EngineConfig()
        self.provider = field_provider
        self.registry = registry or default_registry
        self.clock = clock
        self._lock = threading.Lock()
        self._state = self._build_state(catalog)

    @property
    def catalog(self) -> RuleCatalog:
        return self._state.catalog

    def refresh_catalog(self, catalog: RuleCatalog) -> None:
        state = self._build_state(catalog)
        with self._lock:
            self._state = state
        logger.info("Catalog refreshed to version %s", catalog.version[:12])

    def _build_state(self, catalog: RuleCatalog) -> _CatalogState:
        executor = WaterfallExecutor(
            catalog,
            registry=self.registry,
            clock=self.clock,
            max_depth=self.config.max_depth,
        )
        return _CatalogState(catalog=catalog, executor=executor, resolver=TiebreakResolver(catalog))

    def execute(
        self,
        loan: Loan,
        documents: Iterable[ClosingDisclosure],
        *,
        cancel_token: Optional[CancellationToken] = None,
        run_id: Optional[str] = None,
    ) -> WaterfallRun:
        with self._lock:
            state = self._state
        run = WaterfallRun(
            run_id=run_id or str(uuid.uuid4()),
            loan_id=loan.loan_id,
            catalog_version=state.catalog.version,
            started_at=self.clock(),
        )
        run.transition(RunStatus.PROCESSING)
        logger.info("Run %s started for loan %s", run.run_id, loan.loan_id)
        recorder = _RunRecorder(run)

        try:
            self._execute(state, run, recorder, loan, list(documents), cancel_token)
        except RunAborted as exc:
            logger.error("Run %s for loan %s failed: %s", run.run_id, loan.loan_id, exc.message)
            run.transition(RunStatus.ERROR, message=exc.message)
        else:
            if run.manual_review_reasons:
                run.transition(RunStatus.MANUAL_REVIEW, message=run.manual_review_reasons[0])
            else:
                run.transition(RunStatus.COMPLETED)

        run.completed_at = self.clock()
        logger.info(
            "Run %s for loan %s finished with status %s (%d audit entries)",
            run.run_id,
            loan.loan_id,
            run.status.value,
            len(run.audit_trail),
        )
        return run

    def _execute(
        self,
        state: _CatalogState,
        run: WaterfallRun,
        recorder: _RunRecorder,
        loan: Loan,
        documents: List[ClosingDisclosure],
        cancel_token: Optional[CancellationToken],
    ) -> None:
        if not documents:
            raise RunAborted(f"No closing disclosures supplied for loan {loan.loan_id}")
        seen = set()
        for doc in documents:
            if doc.loan_id != loan.loan_id:
                raise RunAborted(f"Document {doc.document_id} belongs to loan {doc.loan_id}, not {loan.loan_id}")
            if doc.document_id in seen:
                raise RunAborted(f"Duplicate document id {doc.document_id}")
            seen.add(doc.document_id)

        ordered = sorted(documents, key=lambda d: (d.issue_date, d.document_id))
        doc_states = [
            _DocState(document=doc, result=DocumentResult(document_id=doc.document_id, issue_date=doc.issue_date))
            for doc in ordered
        ]
        run.documents = [s.result for s in doc_states]
        graph = state.catalog.graph
        loan_flags = BitFlagState()
        unresolved: Set[RuleSubtype] = set()

        for subtype in SUBTYPE_SEQUENCE:
            for root in graph.roots_for(subtype, RuleLevel.LOAN):
                ctx = EvaluationContext(
                    loan=loan,
                    provider=self.provider,
                    catalog=state.catalog,
                    flags=loan_flags,
                    loan_flags=loan_flags,
                )
                result = self._run_loan_waterfall(state, recorder, root, ctx, cancel_token)
                if result is not None:
                    loan_flags = result.final_flags

            candidates = self._candidates(subtype, doc_states, unresolved)
            roots = graph.roots_for(subtype, RuleLevel.DOCUMENT)
            if not candidates or not roots:
                continue
            outcomes = self._run_documents(state, loan, loan_flags, roots, candidates, cancel_token)

            # Barrier: merge in document order so sequence numbers are deterministic.
            fatal: Optional[ExecutionError] = None
            for outcome in outcomes:
                for result in outcome.results:
                    recorder.absorb(result)
                    if result.manual_review_reason:
                        recorder.escalate(f"{outcome.state.document.document_id}: {result.manual_review_reason}")
                if outcome.escalation:
                    recorder.escalate(outcome.escalation)
                if outcome.fatal is not None and fatal is None:
                    fatal = outcome.fatal
                self._update_document(outcome)
                loan_flags = loan_flags.merge(outcome.state.flags)
            run.loan_flags = loan_flags.snapshot()
            if fatal is not None:
                raise RunAborted(str(fatal))

            if not self._assign_tags(state, recorder, loan, subtype, outcomes):
                unresolved.add(subtype)

        run.loan_flags = loan_flags.snapshot()

    def _run_loan_waterfall(
        self,
        state: _CatalogState,
        recorder: _RunRecorder,
        root: Rule,
        ctx: EvaluationContext,
        cancel_token: Optional[CancellationToken],
    ) -> Optional[ExecutionResult]:
        try:
            result = state.executor.run(root, ctx, cancel_token=cancel_token)
        except DepthExceededError as exc:
            recorder.absorb(exc.partial)
            recorder.escalate(f"loan {ctx.loan.loan_id}: {exc}")
            return exc.partial
        except ExecutionError as exc:
            recorder.absorb(exc.partial)
            raise RunAborted(str(exc)) from exc
        recorder.absorb(result)
        if result.manual_review_reason:
            recorder.escalate(f"loan {ctx.loan.loan_id}: {result.manual_review_reason}")
        return result

    def _candidates(
        self,
        subtype: RuleSubtype,
        doc_states: List[_DocState],
        unresolved: Set[RuleSubtype],
    ) -> List[_DocState]:
        if subtype == RuleSubtype.INITIAL:
            return list(doc_states)
        untagged = [s for s in doc_states if s.result.tag_type is None]
        if subtype == RuleSubtype.FINAL:
            return untagged

        # An ambiguous Final leaves no point to measure "post-consummation" from.
        if RuleSubtype.FINAL in unresolved:
            return []
        anchor: Optional[date] = None
        for tag in (TagType.FINAL, TagType.INITIAL):
            tagged = [s for s in doc_states if s.result.tag_type == tag]
            if tagged:
                anchor = tagged[0].document.issue_date
                break
        if anchor is None:
            return []
        return [s for s in untagged if s.document.issue_date > anchor]

    def _run_documents(
        self,
        state: _CatalogState,
        loan: Loan,
        loan_flags: BitFlagState,
        roots: List[Rule],
        candidates: List[_DocState],
        cancel_token: Optional[CancellationToken],
    ) -> List[_DocOutcome]:
        def _one(doc_state: _DocState) -> _DocOutcome:
            return self._run_document(state, loan, loan_flags, roots, doc_state, cancel_token)

        workers = min(self.config.max_document_workers, len(candidates))
        if workers <= 1:
            return [_one(s) for s in candidates]
        with ThreadPoolExecutor(max_workers=workers) as pool:
            # map() yields in submission order regardless of completion order.
            return list(pool.map(_one, candidates))

    def _run_document(
        self,
        state: _CatalogState,
        loan: Loan,
        loan_flags: BitFlagState,
        roots: List[Rule],
        doc_state: _DocState,
        cancel_token: Optional[CancellationToken],
    ) -> _DocOutcome:
        outcome = _DocOutcome(state=doc_state)
        flags = doc_state.flags
        for root in roots:
            ctx = EvaluationContext(
                loan=loan,
                provider=self.provider,
                catalog=state.catalog,
                document=doc_state.document,
                flags=flags,
                loan_flags=loan_flags,
            )
            try:
                result = state.executor.run(root, ctx, cancel_token=cancel_token)
            except DepthExceededError as exc:
                if exc.partial is not None:
                    outcome.results.append(exc.partial)
                    flags = exc.partial.final_flags
                outcome.escalation = f"{doc_state.document.document_id}: {exc}"
                break
            except ExecutionError as exc:
                if exc.partial is not None:
                    outcome.results.append(exc.partial)
                    flags = exc.partial.final_flags
                outcome.fatal = exc
                break
            outcome.results.append(result)
            flags = result.final_flags
            if result.manual_review_reason:
                break
        doc_state.flags = flags
        return outcome

    def _update_document(self, outcome: _DocOutcome) -> None:
        doc = outcome.state.result
        doc.bit_flags = outcome.state.flags.snapshot()
        if any(res.validation_errors for res in outcome.results):
            doc.validation_passed = False
        if outcome.results:
            doc.decision = outcome.results[-1].decision

    def _assign_tags(
        self,
        state: _CatalogState,
        recorder: _RunRecorder,
        loan: Loan,
        subtype: RuleSubtype,
        outcomes: Sequence[_DocOutcome],
    ) -> bool:
        """Tag the selected candidates; False when a tie could not be broken."""
        accepted = [o for o in outcomes if o.accepted]
        if not accepted:
            logger.info("No %s candidate accepted for loan %s", subtype.value, loan.loan_id)
            return True

        by_date: Dict[date, List[_DocOutcome]] = {}
        for o in accepted:
            by_date.setdefault(o.state.document.issue_date, []).append(o)

        if subtype == RuleSubtype.INITIAL:
            groups = [by_date[min(by_date)]]
        elif subtype == RuleSubtype.FINAL:
            groups = [by_date[max(by_date)]]
        else:
            groups = [by_date[d] for d in sorted(by_date)]

        tag = TAG_FOR_SUBTYPE[subtype]
        resolved_all = True
        for group in groups:
            if len(group) == 1:
                self._tag(group[0], tag, self._leaf_path_type(group[0]))
                continue

            tiebreak_ctx = TiebreakContext(loan=loan, provider=self.provider)
            resolved = state.resolver.resolve([o.state.result for o in group], tiebreak_ctx, subtype)
            if resolved.winner is not None:
                winner = next(o for o in group if o.state.result.document_id == resolved.winner.document_id)
                self._tag(winner, tag, resolved.path_type_code or self._leaf_path_type(winner))
                winner.state.result.decision = resolved.reason
                logger.info(
                    "Tiebreak for %s on loan %s picked %s (path %s)",
                    subtype.value,
                    loan.loan_id,
                    resolved.winner.document_id,
                    resolved.path_type_code,
                )
                continue

            for o in group:
                o.state.result.path_type_code = resolved.path_type_code
                o.state.result.decision = resolved.reason
            ids = ", ".join(o.state.document.document_id for o in group)
            recorder.escalate(f"{subtype.value} tiebreak among [{ids}]: {resolved.reason}")
            resolved_all = False
        return resolved_all

    @staticmethod
    def _leaf_path_type(outcome: _DocOutcome) -> Optional[str]:
        for result in reversed(outcome.results):
            if result.path_type_code:
                return result.path_type_code
        return None

    @staticmethod
    def _tag(outcome: _DocOutcome, tag: TagType, path_type_code: Optional[str]) -> None:
        outcome.state.result.tag_type = tag
        outcome.state.result.path_type_code = path_type_code


def failed_run(loan: Loan, message: str, *, catalog_version: str = "", clock: Clock = utc_now) -> WaterfallRun:
    """A terminal Error run for a loan that could not be processed at all (e.g. catalog load failure)."""
    run = WaterfallRun(run_id=str(uuid.uuid4()), loan_id=loan.loan_id, catalog_version=catalog_version)
    run.started_at = clock()
    run.transition(RunStatus.ERROR, message=message)
    run.completed_at = run.started_at
    return run


def replay_audit_trail(run: WaterfallRun, document_id: Optional[str] = None) -> List[str]:
    """Human-readable decision path, one line per audit entry."""
    lines = []
    for entry in run.audit_trail:
        if document_id is not None and entry.document_id != document_id:
            continue
        subject = entry.document_id or f"loan {run.loan_id}"
        lines.append(
            f"{entry.sequence:>4} {subject} {entry.rule_name} -> {entry.outcome.value}"
            f" [flags {entry.flags_before:#x} -> {entry.flags_after:#x}] {entry.decision}".rstrip()
        )
    return lines
