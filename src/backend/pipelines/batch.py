from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from common.waterfall_engine.catalog import RuleCatalog
from common.waterfall_engine.config import EngineConfig
from common.waterfall_engine.context import FieldValueProvider
from common.waterfall_engine.errors import CatalogError, RepositoryError
from common.waterfall_engine.executor import CancellationToken
from common.waterfall_engine.models import ClosingDisclosure, Loan, RunStatus, WaterfallRun
from common.waterfall_engine.orchestrator import RunOrchestrator, failed_run

from .persistence import RunPersister
from .repositories import RuleRepository, RunRepository, load_catalog

logger = logging.getLogger(__name__)

LoanWork = Tuple[Loan, Sequence[ClosingDisclosure]]


@dataclass(frozen=True)
class ProcessedLoan:
    run: WaterfallRun
    persisted: bool
    error: Optional[str] = None

    @property
    def status(self) -> RunStatus:
        # A run that could not be persisted is reported as failed even though its own status is terminal.
        return RunStatus.ERROR if self.error else self.run.status


class WaterfallService:
    """Catalog loading, run execution and persistence for one or many loans.

    If the catalog cannot be loaded every loan still gets an Error run, so no
    processing attempt is silently lost.
    """

    def __init__(
        self,
        rule_repository: RuleRepository,
        field_provider: FieldValueProvider,
        *,
        run_repository: Optional[RunRepository] = None,
        config: Optional[EngineConfig] = None,
        persister: Optional[RunPersister] = None,
    ):
        self.config = config or EngineConfig()
        self.rule_repository = rule_repository
        self.field_provider = field_provider
        if persister is None and run_repository is not None:
            persister = RunPersister(run_repository, config=self.config)
        self.persister = persister
        self.orchestrator: Optional[RunOrchestrator] = None
        self.catalog_error: Optional[str] = None
        self.refresh_catalog()

    def refresh_catalog(self) -> Optional[RuleCatalog]:
        try:
            catalog = load_catalog(self.rule_repository, config=self.config)
        except (CatalogError, RepositoryError) as exc:
            # A previously loaded catalog stays in service; only a first load failure blocks runs.
            logger.error("Rule catalog load failed: %s", exc)
            if self.orchestrator is None:
                self.catalog_error = f"Rule catalog unavailable: {exc}"
            return None
        if self.orchestrator is None:
            self.orchestrator = RunOrchestrator(catalog, self.field_provider, config=self.config)
        else:
            self.orchestrator.refresh_catalog(catalog)
        self.catalog_error = None
        return catalog

    def process_loan(
        self,
        loan: Loan,
        documents: Sequence[ClosingDisclosure],
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ProcessedLoan:
        if self.orchestrator is None:
            run = failed_run(loan, self.catalog_error or "Rule catalog unavailable")
        else:
            run = self.orchestrator.execute(loan, documents, cancel_token=cancel_token)

        if self.persister is None:
            return ProcessedLoan(run=run, persisted=False)
        try:
            self.persister.persist(run)
        except RepositoryError as exc:
            return ProcessedLoan(run=run, persisted=False, error=f"Run persistence failed: {exc}")
        return ProcessedLoan(run=run, persisted=True)

    def process_batch(
        self,
        work: Iterable[LoanWork],
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[ProcessedLoan]:
        """One run per loan across a worker pool; results come back in input order."""
        items = list(work)
        if not items:
            return []
        results: Dict[int, ProcessedLoan] = {}
        with ThreadPoolExecutor(max_workers=min(self.config.max_run_workers, len(items))) as pool:
            future_to_index = {
                pool.submit(self.process_loan, loan, docs, cancel_token=cancel_token): idx
                for idx, (loan, docs) in enumerate(items)
            }
            for future in as_completed(future_to_index):
                idx = future_to_index[future]
                loan = items[idx][0]
                try:
                    results[idx] = future.result()
                except Exception as exc:
                    logger.error("Unexpected error processing loan %s: %s", loan.loan_id, exc)
                    results[idx] = ProcessedLoan(
                        run=failed_run(loan, f"Unexpected error: {exc}"),
                        persisted=False,
                        error=str(exc),
                    )
        return [results[idx] for idx in range(len(items))]
