import os
import sys


BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from common.waterfall_engine.models import ClosingDisclosure, Loan, RunStatus, WaterfallRun
from common.waterfall_engine.orchestrator import RunOrchestrator
from pipelines.field_values import InMemoryFieldValueProvider
from pipelines.repositories import YamlRuleRepository, load_catalog

CATALOG_PATH = Path(__file__).parent.parent / "waterfall_engine" / "fixtures" / "cd_catalog.yaml"


@pytest.fixture
def catalog_path() -> Path:
    return CATALOG_PATH


@pytest.fixture
def loan() -> Loan:
    return Loan(loan_id="L-1001", consummation_date=date(2025, 6, 30))


@pytest.fixture
def documents(loan):
    return [
        ClosingDisclosure(document_id="CD-1", loan_id=loan.loan_id, issue_date=date(2025, 6, 1)),
        ClosingDisclosure(document_id="CD-2", loan_id=loan.loan_id, issue_date=date(2025, 6, 25)),
    ]


@pytest.fixture
def provider() -> InMemoryFieldValueProvider:
    return InMemoryFieldValueProvider(
        {
            "L-1001": {"ConsummationDate": "2025-06-30", "LoanAmount": "350000", "NoteAmount": "350000"},
            "CD-1": {"ReceivedDate": "2025-06-02"},
            "CD-2": {
                "ReceivedDate": "2025-06-25",
                "ClosingDate": "2025-06-30",
                "DisbursementDate": "2025-06-30",
                "SigningDate": "2025-06-30",
            },
            # Loan L-2002 has a CD with nothing extracted yet.
            "CD-20": {},
        }
    )


@pytest.fixture
def completed_run(catalog_path, provider, loan, documents) -> WaterfallRun:
    clock = lambda: datetime(2025, 7, 20, tzinfo=timezone.utc)  # noqa: E731
    orchestrator = RunOrchestrator(load_catalog(YamlRuleRepository(catalog_path)), provider, clock=clock)
    run = orchestrator.execute(loan, documents)
    assert run.status == RunStatus.COMPLETED
    return run
