import os
import sys


# Ensure `src/backend` is on sys.path so imports like `import common...` work.
BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

import itertools
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from common.waterfall_engine.bitflags import BitFlagState
from common.waterfall_engine.catalog import RuleCatalog
from common.waterfall_engine.context import EvaluationContext
from common.waterfall_engine.executor import CancellationToken
from common.waterfall_engine.models import ClosingDisclosure, Loan, Rule, RuleFlowEdge
from pipelines.field_values import InMemoryFieldValueProvider
from pipelines.repositories import YamlRuleRepository, load_catalog

FIXTURES_DIR = Path(__file__).parent / "fixtures"
LOAN_ID = "L-1001"


class CancelAfter(CancellationToken):
    """Token that trips itself after `checks` rule boundaries have passed."""

    def __init__(self, checks: int):
        super().__init__()
        self._remaining = checks

    @property
    def cancelled(self) -> bool:
        self._remaining -= 1
        if self._remaining < 0:
            self.cancel()
        return super().cancelled


@pytest.fixture
def catalog_path() -> Path:
    return FIXTURES_DIR / "cd_catalog.yaml"


@pytest.fixture
def cd_catalog(catalog_path) -> RuleCatalog:
    return load_catalog(YamlRuleRepository(catalog_path))


@pytest.fixture
def fixed_clock():
    stamp = datetime(2025, 7, 20, 12, 0, tzinfo=timezone.utc)
    return lambda: stamp


@pytest.fixture
def loan() -> Loan:
    return Loan(loan_id=LOAN_ID, closing_date=date(2025, 6, 30), consummation_date=date(2025, 6, 30))


@pytest.fixture
def loan_values() -> dict:
    return {
        "ConsummationDate": "2025-06-30",
        "LoanAmount": "350000.00",
        "NoteAmount": "350000.00",
    }


@pytest.fixture
def standard_values() -> dict:
    """Initial CD-1, Final CD-2 and a PCCD CD-3 with a change reason."""
    return {
        "CD-1": {"ReceivedDate": "2025-06-02"},
        "CD-2": {
            "ReceivedDate": "2025-06-25",
            "ClosingDate": "2025-06-30",
            "DisbursementDate": "2025-06-30",
            "SigningDate": "2025-06-30",
            "SignatureDate": "2025-06-30",
        },
        "CD-3": {"ReceivedDate": "2025-07-15", "ChangeReason": "Cure for fee tolerance"},
    }


@pytest.fixture
def make_cd():
    def _make(document_id: str, issue_date: date, *, loan_id: str = LOAN_ID) -> ClosingDisclosure:
        return ClosingDisclosure(document_id=document_id, loan_id=loan_id, issue_date=issue_date)

    return _make


@pytest.fixture
def standard_cds(make_cd):
    return [
        make_cd("CD-1", date(2025, 6, 1)),
        make_cd("CD-2", date(2025, 6, 25)),
        make_cd("CD-3", date(2025, 7, 15)),
    ]


@pytest.fixture
def make_provider(loan_values):
    def _make(documents: dict | None = None, *, loan: dict | None = None) -> InMemoryFieldValueProvider:
        values = {LOAN_ID: loan_values if loan is None else loan}
        values.update(documents or {})
        return InMemoryFieldValueProvider(values)

    return _make


@pytest.fixture
def make_rule():
    ids = itertools.count(1000)

    def _make(
        name: str,
        *,
        rule_type: str = "waterfall",
        subtype: str | None = "Final",
        level: str | None = "Document",
        execution_order: int = 0,
        **extra,
    ) -> Rule:
        rule_id = extra.pop("rule_id", None)
        return Rule(
            rule_id=next(ids) if rule_id is None else rule_id,
            name=name,
            rule_type=rule_type,
            subtype=subtype,
            level=level,
            execution_order=execution_order,
            **extra,
        )

    return _make


@pytest.fixture
def make_edge():
    def _make(parent: str, child: str, condition: str = "Yes", **extra) -> RuleFlowEdge:
        return RuleFlowEdge(parent=parent, child=child, condition=condition, **extra)

    return _make


@pytest.fixture
def build_catalog():
    def _make(rules, *, fields=(), edges=(), path_types=(), registry=None) -> RuleCatalog:
        return RuleCatalog.from_rows(
            rules=rules,
            fields=fields,
            edges=edges,
            path_types=path_types,
            registry=registry,
        )

    return _make


@pytest.fixture
def make_ctx(cd_catalog, loan):
    def _make(
        provider,
        *,
        document: ClosingDisclosure | None = None,
        catalog: RuleCatalog | None = None,
        flags: int = 0,
        loan_flags: int = 0,
    ) -> EvaluationContext:
        return EvaluationContext(
            loan=loan,
            provider=provider,
            catalog=catalog or cd_catalog,
            document=document,
            flags=BitFlagState(flags),
            loan_flags=BitFlagState(loan_flags),
        )

    return _make


@pytest.fixture
def cancel_after():
    return CancelAfter
