from datetime import date

import pytest

from common.waterfall_engine.config import EngineConfig
from common.waterfall_engine.errors import InvalidStatusTransition
from common.waterfall_engine.evaluator import RuleEvaluator
from common.waterfall_engine.evaluators import TerminalEvaluator
from common.waterfall_engine.models import RunStatus, TagType, WaterfallRun
from common.waterfall_engine.orchestrator import RunOrchestrator, failed_run, replay_audit_trail
from common.waterfall_engine.registry import EvaluatorRegistry


@pytest.fixture
def make_orchestrator(cd_catalog, fixed_clock):
    def _make(provider, *, catalog=None, **kwargs) -> RunOrchestrator:
        return RunOrchestrator(catalog or cd_catalog, provider, clock=fixed_clock, **kwargs)

    return _make


@pytest.fixture
def same_day_cds(make_cd):
    return [
        make_cd("CD-1", date(2025, 6, 1)),
        make_cd("CD-2a", date(2025, 6, 25)),
        make_cd("CD-2b", date(2025, 6, 25)),
        make_cd("CD-3", date(2025, 7, 15)),
    ]


def _final_values(**extra):
    return {
        "ReceivedDate": "2025-06-25",
        "ClosingDate": "2025-06-30",
        "DisbursementDate": "2025-06-30",
        "SigningDate": "2025-06-30",
        **extra,
    }


def test_full_run_tags_initial_final_and_pccd(
    make_orchestrator, make_provider, standard_values, loan, standard_cds, cd_catalog
):
    run = make_orchestrator(make_provider(standard_values)).execute(loan, standard_cds)

    assert run.status == RunStatus.COMPLETED
    assert run.message is None
    assert run.catalog_version == cd_catalog.version
    assert (run.document("CD-1").tag_type, run.document("CD-1").path_type_code) == (TagType.INITIAL, "I1")
    assert (run.document("CD-2").tag_type, run.document("CD-2").path_type_code) == (TagType.FINAL, "F1")
    assert (run.document("CD-3").tag_type, run.document("CD-3").path_type_code) == (TagType.PCCD, "P1")

    assert len(run.audit_trail) == 15
    assert [e.sequence for e in run.audit_trail] == list(range(1, 16))
    assert {e.run_id for e in run.audit_trail} == {run.run_id}
    loan_entry = run.audit_trail[6]
    assert (loan_entry.rule_name, loan_entry.document_id) == ("LoanAmountMatchesNoteBit", None)

    assert run.document("CD-1").bit_flags == 0b1
    assert run.document("CD-2").bit_flags == 0b100111
    assert run.document("CD-3").bit_flags == 0b10001
    assert run.loan_flags == (1 << 40) | 0b110111
    assert run.validation_errors == []
    assert all(doc.validation_passed for doc in run.documents)


def test_replay_lists_one_line_per_entry(make_orchestrator, make_provider, standard_values, loan, standard_cds):
    run = make_orchestrator(make_provider(standard_values)).execute(loan, standard_cds)

    lines = replay_audit_trail(run, "CD-2")
    assert len(lines) == 6
    assert "InitialCDReceivedBit -> Yes" in lines[0]
    assert "FinalCDAccepted -> Yes" in lines[-1]
    assert len(replay_audit_trail(run)) == len(run.audit_trail)


def test_loan_level_mismatch_is_recorded_not_escalated(
    make_orchestrator, make_provider, standard_values, loan_values, loan, standard_cds
):
    provider = make_provider(standard_values, loan={**loan_values, "NoteAmount": "351000.00"})
    run = make_orchestrator(provider).execute(loan, standard_cds)

    assert run.status == RunStatus.COMPLETED
    [error] = run.validation_errors
    assert error.rule_name == "LoanAmountMatchesNoteBit"
    assert error.document_id is None
    assert error.audit_sequence == 7
    assert error.run_id == run.run_id
    assert not run.loan_flags & (1 << 40)


@pytest.mark.parametrize("amount", [float("nan"), "NaN"])
def test_nan_loan_amount_fails_the_rule_and_run_completes(
    make_orchestrator, make_provider, standard_values, loan_values, loan, standard_cds, amount
):
    provider = make_provider(standard_values, loan={**loan_values, "LoanAmount": amount})
    run = make_orchestrator(provider).execute(loan, standard_cds)

    assert run.status == RunStatus.COMPLETED
    [error] = run.validation_errors
    assert (error.rule_name, error.field_id) == ("LoanAmountMatchesNoteBit", "LoanAmount")
    assert not run.loan_flags & (1 << 40)
    assert run.document("CD-2").tag_type == TagType.FINAL


def test_same_day_final_candidates_resolved_by_tiebreak(make_orchestrator, make_provider, loan, same_day_cds):
    provider = make_provider(
        {
            "CD-1": {"ReceivedDate": "2025-06-02"},
            "CD-2a": _final_values(IssueTimestamp="2025-06-25T09:00:00"),
            "CD-2b": _final_values(IssueTimestamp="2025-06-25T16:45:00"),
            "CD-3": {"ReceivedDate": "2025-07-15", "ChangeReason": "Recording fee cure"},
        }
    )
    run = make_orchestrator(provider).execute(loan, same_day_cds)

    assert run.status == RunStatus.COMPLETED
    assert run.document("CD-2b").tag_type == TagType.FINAL
    assert run.document("CD-2b").path_type_code == "1"
    assert run.document("CD-2a").tag_type is None
    assert [doc.document_id for doc in run.tagged(TagType.PCCD)] == ["CD-3"]


def test_unbreakable_final_tie_escalates(make_orchestrator, make_provider, loan, same_day_cds):
    # Both CDs fail the 3 Dates Test and neither is signed.
    provider = make_provider(
        {
            "CD-1": {"ReceivedDate": "2025-06-02"},
            "CD-2a": _final_values(DisbursementDate="2025-07-02"),
            "CD-2b": _final_values(DisbursementDate="2025-07-02"),
            "CD-3": {"ReceivedDate": "2025-07-15", "ChangeReason": "Recording fee cure"},
        }
    )
    run = make_orchestrator(provider).execute(loan, same_day_cds)

    assert run.status == RunStatus.MANUAL_REVIEW
    assert "signature_present" in run.message
    assert len(run.manual_review_reasons) == 1
    for doc_id in ("CD-2a", "CD-2b"):
        doc = run.document(doc_id)
        assert doc.tag_type is None
        assert doc.path_type_code == "2"
        assert not doc.validation_passed
    # No Final CD means no post-consummation anchor.
    assert run.tagged(TagType.PCCD) == []


def test_pccd_without_change_reason_needs_review(make_orchestrator, make_provider, standard_values, loan, standard_cds):
    standard_values["CD-3"].pop("ChangeReason")
    run = make_orchestrator(make_provider(standard_values)).execute(loan, standard_cds)

    assert run.status == RunStatus.MANUAL_REVIEW
    assert run.message.startswith("CD-3:")
    assert run.document("CD-3").tag_type is None
    assert run.document("CD-2").tag_type == TagType.FINAL


def test_no_documents_is_an_error(make_orchestrator, make_provider, loan):
    run = make_orchestrator(make_provider()).execute(loan, [])
    assert run.status == RunStatus.ERROR
    assert "No closing disclosures" in run.message
    assert run.audit_trail == []
    assert run.completed_at is not None


def test_document_from_another_loan_is_an_error(make_orchestrator, make_provider, loan, make_cd):
    run = make_orchestrator(make_provider()).execute(loan, [make_cd("CD-X", date(2025, 6, 1), loan_id="L-9999")])
    assert run.status == RunStatus.ERROR
    assert "L-9999" in run.message


def test_duplicate_document_ids_are_an_error(make_orchestrator, make_provider, loan, make_cd):
    docs = [make_cd("CD-1", date(2025, 6, 1)), make_cd("CD-1", date(2025, 6, 2))]
    run = make_orchestrator(make_provider()).execute(loan, docs)
    assert run.status == RunStatus.ERROR
    assert "Duplicate document" in run.message


def test_cancelled_run_keeps_its_audit_entries(
    make_orchestrator, make_provider, standard_values, loan, standard_cds, cancel_after
):
    run = make_orchestrator(make_provider(standard_values)).execute(
        loan, standard_cds, cancel_token=cancel_after(3)
    )

    assert run.status == RunStatus.ERROR
    assert "cancelled" in run.message
    assert [e.rule_name for e in run.audit_trail] == [
        "InitialCDReceivedBit",
        "InitialCDAccepted",
        "InitialCDReceivedBit",
    ]
    assert [e.sequence for e in run.audit_trail] == [1, 2, 3]


def test_parallel_document_workers_match_sequential_run(
    make_orchestrator, make_provider, standard_values, loan, standard_cds
):
    provider = make_provider(standard_values)
    sequential = make_orchestrator(provider).execute(loan, standard_cds)
    parallel = make_orchestrator(provider, config=EngineConfig(max_document_workers=4)).execute(loan, standard_cds)

    def _trail(run):
        return [(e.sequence, e.rule_name, e.document_id, e.flags_before, e.flags_after) for e in run.audit_trail]

    assert _trail(parallel) == _trail(sequential)
    assert [d.model_dump() for d in parallel.documents] == [d.model_dump() for d in sequential.documents]
    assert parallel.loan_flags == sequential.loan_flags
    assert parallel.status == sequential.status


def test_depth_exceeded_escalates_to_manual_review(
    make_orchestrator, make_provider, make_rule, make_edge, build_catalog, loan, standard_cds
):
    catalog = build_catalog(
        [
            make_rule("LoopStart", subtype="Initial", evaluator="terminal"),
            make_rule("LoopGate", subtype="Initial", evaluator="terminal", is_root=True),
        ],
        edges=[make_edge("LoopStart", "LoopGate"), make_edge("LoopGate", "LoopStart")],
    )
    run = make_orchestrator(make_provider(), catalog=catalog).execute(loan, standard_cds)

    assert run.status == RunStatus.MANUAL_REVIEW
    assert "traversal bound" in run.message
    assert len(run.audit_trail) == 2 * len(standard_cds)
    assert run.tagged(TagType.INITIAL) == []


def test_evaluator_fault_fails_the_run(make_orchestrator, make_provider, make_rule, build_catalog, loan, standard_cds):
    class ExplodingEvaluator(RuleEvaluator):
        evaluator_key = "explode"

        def evaluate(self, rule, ctx):
            raise RuntimeError("boom")

    local = EvaluatorRegistry()
    local.register(TerminalEvaluator)
    local.register(ExplodingEvaluator)
    catalog = build_catalog([make_rule("Broken", subtype="Initial", evaluator="explode")], registry=local)

    run = make_orchestrator(make_provider(), catalog=catalog, registry=local).execute(loan, standard_cds)

    assert run.status == RunStatus.ERROR
    assert "boom" in run.message


def test_refresh_catalog_applies_to_next_run(
    make_orchestrator, make_provider, make_rule, build_catalog, loan, standard_cds
):
    orchestrator = make_orchestrator(make_provider())
    replacement = build_catalog([make_rule("AlwaysInitial", subtype="Initial", evaluator="terminal")])

    orchestrator.refresh_catalog(replacement)
    run = orchestrator.execute(loan, standard_cds)

    assert orchestrator.catalog is replacement
    assert run.catalog_version == replacement.version
    assert run.status == RunStatus.COMPLETED
    assert [doc.document_id for doc in run.tagged(TagType.INITIAL)] == ["CD-1"]


def test_failed_run_is_terminal(loan, fixed_clock):
    run = failed_run(loan, "Rule catalog unavailable", clock=fixed_clock)
    assert run.status == RunStatus.ERROR
    assert run.message == "Rule catalog unavailable"
    assert run.started_at == run.completed_at == fixed_clock()

    with pytest.raises(InvalidStatusTransition) as exc:
        run.transition(RunStatus.COMPLETED)
    assert (exc.value.current, exc.value.requested) == (RunStatus.ERROR, RunStatus.COMPLETED)


def test_run_status_only_moves_forward():
    run = WaterfallRun(run_id="R-1", loan_id="L-1001")
    run.transition(RunStatus.PROCESSING)
    run.transition(RunStatus.MANUAL_REVIEW, message="Final tie unresolved")
    assert run.status == RunStatus.MANUAL_REVIEW
    assert run.message == "Final tie unresolved"

    fresh = WaterfallRun(run_id="R-2", loan_id="L-1001")
    with pytest.raises(InvalidStatusTransition):
        fresh.transition(RunStatus.COMPLETED)
