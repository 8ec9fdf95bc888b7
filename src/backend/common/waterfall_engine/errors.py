from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .executor import ExecutionResult
    from .models import RunStatus


class WaterfallEngineError(Exception):
    pass


# Catalog errors are fatal at load time and block every run.


class CatalogError(WaterfallEngineError):
    pass


class GraphError(CatalogError):
    pass


class DuplicateBranchError(GraphError):
    def __init__(self, parent: str, outcome: bool, children: tuple[str, ...]):
        label = "positive" if outcome else "negative"
        super().__init__(
            f"Rule '{parent}' has more than one active {label} branch: {', '.join(children)}"
        )
        self.parent = parent
        self.outcome = outcome
        self.children = children


class DanglingReferenceError(GraphError):
    def __init__(self, parent: str, child: str, missing: str):
        super().__init__(f"Flow edge {parent} -> {child} references unknown or inactive rule '{missing}'")
        self.parent = parent
        self.child = child
        self.missing = missing


class CycleError(GraphError):
    def __init__(self, path: tuple[str, ...]):
        super().__init__(f"Flow graph contains a cycle: {' -> '.join(path)}")
        self.path = path


class UnknownEvaluatorError(CatalogError):
    def __init__(self, rule_name: str, key: str):
        super().__init__(f"Rule '{rule_name}' references unregistered evaluator '{key}'")
        self.rule_name = rule_name
        self.key = key


# Execution errors are fatal for a single run only.


class ExecutionError(WaterfallEngineError):
    def __init__(self, message: str, *, partial: Optional["ExecutionResult"] = None):
        super().__init__(message)
        self.partial = partial


class DepthExceededError(ExecutionError):
    def __init__(self, root: str, limit: int, *, partial: Optional["ExecutionResult"] = None):
        super().__init__(
            f"Waterfall from '{root}' exceeded the traversal bound of {limit} steps", partial=partial
        )
        self.root = root
        self.limit = limit


class CancelledError(ExecutionError):
    def __init__(self, rule_name: Optional[str] = None, *, partial: Optional["ExecutionResult"] = None):
        where = f" before rule '{rule_name}'" if rule_name else ""
        super().__init__(f"Run cancelled{where}", partial=partial)
        self.rule_name = rule_name


class EvaluatorFaultError(ExecutionError):
    def __init__(self, rule_name: str, cause: BaseException, *, partial: Optional["ExecutionResult"] = None):
        super().__init__(f"Evaluator for rule '{rule_name}' failed: {cause}", partial=partial)
        self.rule_name = rule_name
        self.cause = cause


# Validation failures are expected; the executor absorbs them into a Fail outcome.


class RuleEvaluationFailure(WaterfallEngineError):
    def __init__(
        self,
        message: str,
        *,
        field_id: Optional[str] = None,
        expected: Any = None,
        actual: Any = None,
    ):
        super().__init__(message)
        self.field_id = field_id
        self.expected = expected
        self.actual = actual


class MissingFieldError(RuleEvaluationFailure):
    def __init__(self, subject_id: str, field_id: str):
        super().__init__(f"Required field '{field_id}' is absent for '{subject_id}'", field_id=field_id)
        self.subject_id = subject_id


class FieldTypeError(RuleEvaluationFailure):
    def __init__(self, field_id: str, expected_type: str, actual: Any):
        super().__init__(
            f"Field '{field_id}' expected {expected_type}, got {type(actual).__name__}",
            field_id=field_id,
            expected=expected_type,
            actual=actual,
        )


class RepositoryError(WaterfallEngineError):
    pass


class RepositoryTimeoutError(RepositoryError):
    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(f"Repository call '{operation}' timed out after {timeout_seconds}s")
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class InvalidStatusTransition(WaterfallEngineError):
    def __init__(self, current: "RunStatus", requested: "RunStatus"):
        super().__init__(f"Invalid run status transition {current.value} -> {requested.value}")
        self.current = current
        self.requested = requested
