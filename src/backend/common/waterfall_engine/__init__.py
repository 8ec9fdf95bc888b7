"""Rule-driven waterfall engine tagging Closing Disclosures as Initial, Final or PCCD.

This package intentionally contains only domain logic:
- Inputs are an immutable rule catalog, a loan, its CDs and a field value provider.
- No database, file or network access lives here; see `pipelines` for adapters.
"""

from .bitflags import BitFlagDelta, BitFlagState
from .catalog import RuleCatalog
from .config import EngineConfig, get_engine_config
from .context import EvaluationContext, FieldValueProvider
from .evaluator import Evaluation, RuleEvaluator
from .executor import CancellationToken, ExecutionResult, WaterfallExecutor
from .graph import RuleFlowGraph
from .models import (
    AuditEntry,
    ClosingDisclosure,
    DocumentResult,
    Loan,
    PathType,
    Rule,
    RuleField,
    RuleFlowEdge,
    RunStatus,
    TagType,
    ValidationErrorRecord,
    WaterfallRun,
)
from .orchestrator import RunOrchestrator, replay_audit_trail
from .tiebreak import TiebreakOutcome, TiebreakResolver

# Import built-in evaluators so they self-register with the global registry.
from . import evaluators as _builtin_evaluators  # noqa: F401
