from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, TypeVar

from common.waterfall_engine.config import EngineConfig
from common.waterfall_engine.errors import RepositoryError, RepositoryTimeoutError, WaterfallEngineError
from common.waterfall_engine.models import WaterfallRun

if TYPE_CHECKING:
    from .repositories import RunRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_timeout(fn: Callable[..., T], *args, timeout: float, operation: str = "", **kwargs) -> T:
    """Run a repository call on a helper thread and give up after `timeout` seconds.

    A call that times out keeps running in the background; callers must be
    able to retry it safely.
    """
    name = operation or getattr(fn, "__name__", "repository call")
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="repo-call")
    future = pool.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        raise RepositoryTimeoutError(name, timeout) from None
    except WaterfallEngineError:
        raise
    except Exception as exc:
        raise RepositoryError(f"Repository call '{name}' failed: {exc}") from exc
    finally:
        pool.shutdown(wait=False)


class RunPersister:
    """Saves a terminal run, its audit trail and validation errors as one unit.

    Failed units are retried with exponential backoff; a run that still could
    not be saved stays in `pending` so it is never dropped.
    """

    def __init__(
        self,
        repository: "RunRepository",
        *,
        config: Optional[EngineConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repository = repository
        self.config = config or EngineConfig()
        self._sleep = sleep
        self._lock = threading.Lock()
        self._pending: Dict[str, WaterfallRun] = {}

    @property
    def pending(self) -> List[WaterfallRun]:
        with self._lock:
            return list(self._pending.values())

    def persist(self, run: WaterfallRun) -> None:
        if not run.status.terminal:
            raise ValueError(f"Run {run.run_id} is {run.status.value}; only terminal runs are persisted")
        with self._lock:
            self._pending[run.run_id] = run

        retries = 0
        backoff = self.config.persist_backoff_seconds
        while True:
            try:
                self._save_unit(run)
            except RepositoryError as exc:
                if retries < self.config.persist_max_retries:
                    retries += 1
                    logger.warning(
                        "Persisting run %s failed (attempt %d/%d): %s",
                        run.run_id,
                        retries,
                        self.config.persist_max_retries + 1,
                        exc,
                    )
                    self._sleep(backoff)
                    backoff *= 2
                    continue
                logger.error("Giving up persisting run %s; holding it in memory: %s", run.run_id, exc)
                raise
            break

        with self._lock:
            self._pending.pop(run.run_id, None)
        logger.info("Persisted run %s (%d audit entries)", run.run_id, len(run.audit_trail))

    def retry_pending(self) -> List[str]:
        """Retry every held run once more; returns the ids that are still pending."""
        for run in self.pending:
            try:
                self.persist(run)
            except RepositoryError:
                continue
        return [run.run_id for run in self.pending]

    def _save_unit(self, run: WaterfallRun) -> None:
        timeout = self.config.repository_timeout_seconds
        call_with_timeout(self.repository.save_run, run, timeout=timeout, operation="save_run")
        call_with_timeout(
            self.repository.save_audit_trail,
            run.run_id,
            list(run.audit_trail),
            timeout=timeout,
            operation="save_audit_trail",
        )
        call_with_timeout(
            self.repository.save_validation_errors,
            run.run_id,
            list(run.validation_errors),
            timeout=timeout,
            operation="save_validation_errors",
        )
