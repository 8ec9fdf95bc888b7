from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import yaml
from pydantic import ValidationError

from common.waterfall_engine.catalog import RuleCatalog
from common.waterfall_engine.config import EngineConfig
from common.waterfall_engine.errors import CatalogError, RepositoryError
from common.waterfall_engine.models import (
    AuditEntry,
    PathType,
    Rule,
    RuleField,
    RuleFlowEdge,
    ValidationErrorRecord,
    WaterfallRun,
)
from common.waterfall_engine.registry import EvaluatorRegistry

from .persistence import call_with_timeout

logger = logging.getLogger(__name__)


class RuleRepository(Protocol):
    def load_active_rules(self) -> List[Rule]:
        ...

    def load_rule_fields(self) -> List[RuleField]:
        ...

    def load_rule_flow_edges(self) -> List[RuleFlowEdge]:
        ...

    def load_path_types(self) -> List[PathType]:
        ...


class RunRepository(Protocol):
    def save_run(self, run: WaterfallRun) -> None:
        ...

    def save_audit_trail(self, run_id: str, entries: List[AuditEntry]) -> None:
        ...

    def save_validation_errors(self, run_id: str, errors: List[ValidationErrorRecord]) -> None:
        ...


@dataclass(frozen=True)
class InMemoryRuleRepository:
    rules: tuple[Rule, ...] = ()
    fields: tuple[RuleField, ...] = ()
    edges: tuple[RuleFlowEdge, ...] = ()
    path_types: tuple[PathType, ...] = ()

    def load_active_rules(self) -> List[Rule]:
        return [rule for rule in self.rules if rule.active]

    def load_rule_fields(self) -> List[RuleField]:
        return list(self.fields)

    def load_rule_flow_edges(self) -> List[RuleFlowEdge]:
        return list(self.edges)

    def load_path_types(self) -> List[PathType]:
        return list(self.path_types)


class YamlRuleRepository:
    """Rule catalog stored as a YAML document with `rules`, `fields`, `edges` and `path_types` lists."""

    def __init__(self, path: Path):
        self._path = Path(path)

    def _load(self) -> Dict[str, Any]:
        try:
            with self._path.open(encoding="utf-8") as handle:
                raw = yaml.safe_load(handle) or {}
        except OSError as exc:
            raise RepositoryError(f"Cannot read rule catalog {self._path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise CatalogError(f"Malformed rule catalog {self._path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise CatalogError(f"Rule catalog {self._path} must be a mapping")
        return raw

    def _rows(self, key: str, model):
        rows = self._load().get(key) or []
        try:
            return [model.model_validate(row) for row in rows]
        except ValidationError as exc:
            raise CatalogError(f"Invalid '{key}' entry in {self._path}: {exc}") from exc

    def load_active_rules(self) -> List[Rule]:
        return [rule for rule in self._rows("rules", Rule) if rule.active]

    def load_rule_fields(self) -> List[RuleField]:
        return self._rows("fields", RuleField)

    def load_rule_flow_edges(self) -> List[RuleFlowEdge]:
        return self._rows("edges", RuleFlowEdge)

    def load_path_types(self) -> List[PathType]:
        return self._rows("path_types", PathType)


def load_catalog(
    repository: RuleRepository,
    *,
    config: Optional[EngineConfig] = None,
    registry: Optional[EvaluatorRegistry] = None,
) -> RuleCatalog:
    """Snapshot the repository into an immutable catalog, bounding each call by the repository timeout."""
    cfg = config or EngineConfig()
    timeout = cfg.repository_timeout_seconds
    logger.info("Loading rule catalog from %s", type(repository).__name__)
    rules = call_with_timeout(repository.load_active_rules, timeout=timeout, operation="load_active_rules")
    fields = call_with_timeout(repository.load_rule_fields, timeout=timeout, operation="load_rule_fields")
    edges = call_with_timeout(repository.load_rule_flow_edges, timeout=timeout, operation="load_rule_flow_edges")
    path_types = call_with_timeout(repository.load_path_types, timeout=timeout, operation="load_path_types")
    if registry is None:
        from common.waterfall_engine.registry import registry as default_registry

        registry = default_registry
    return RuleCatalog.from_rows(
        rules=rules,
        fields=fields,
        edges=edges,
        path_types=path_types,
        registry=registry,
    )


@dataclass
class InMemoryRunRepository:
    runs: Dict[str, WaterfallRun] = field(default_factory=dict)
    audit_trails: Dict[str, List[AuditEntry]] = field(default_factory=dict)
    validation_errors: Dict[str, List[ValidationErrorRecord]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def save_run(self, run: WaterfallRun) -> None:
        with self._lock:
            self.runs[run.run_id] = run.model_copy(deep=True)

    def save_audit_trail(self, run_id: str, entries: List[AuditEntry]) -> None:
        with self._lock:
            existing = self.audit_trails.get(run_id)
            if existing is not None and existing != list(entries):
                raise RepositoryError(f"Audit trail for run {run_id} already written")
            self.audit_trails[run_id] = list(entries)

    def save_validation_errors(self, run_id: str, errors: List[ValidationErrorRecord]) -> None:
        with self._lock:
            self.validation_errors[run_id] = list(errors)


@dataclass(frozen=True)
class LocalRunRepository:
    """Writes each run as JSON files under `root_dir/<loan_id>/<run_id>/`."""

    root_dir: Path

    def _run_dir(self, run_id: str, loan_id: Optional[str] = None) -> Path:
        if loan_id is not None:
            return self.root_dir / loan_id / run_id
        matches = sorted(self.root_dir.glob(f"*/{run_id}"))
        if not matches:
            raise RepositoryError(f"Run {run_id} has not been saved")
        return matches[0]

    def save_run(self, run: WaterfallRun) -> None:
        out_dir = self._run_dir(run.run_id, run.loan_id)
        out_dir.mkdir(parents=True, exist_ok=True)
        payload = run.model_dump(mode="json", exclude={"audit_trail", "validation_errors"})
        self._write(out_dir / "run.json", payload)

    def save_audit_trail(self, run_id: str, entries: List[AuditEntry]) -> None:
        out_path = self._run_dir(run_id) / "audit_trail.json"
        payload = [e.model_dump(mode="json") for e in entries]
        if out_path.exists():
            # Audit trails are write-once; an identical retry is a no-op.
            if json.loads(out_path.read_text()) == payload:
                return
            raise RepositoryError(f"Audit trail for run {run_id} already written")
        self._write(out_path, payload)

    def save_validation_errors(self, run_id: str, errors: List[ValidationErrorRecord]) -> None:
        self._write(self._run_dir(run_id) / "validation_errors.json", [e.model_dump(mode="json") for e in errors])

    @staticmethod
    def _write(path: Path, payload: Any) -> None:
        try:
            path.write_text(json.dumps(payload, indent=2))
        except OSError as exc:
            raise RepositoryError(f"Cannot write {path}: {exc}") from exc
