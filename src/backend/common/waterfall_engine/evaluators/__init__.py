from ..models import RuleType
from ..registry import registry
from .date_match import DateMatchEvaluator
from .date_not_after import DateNotAfterEvaluator
from .field_compare import FieldCompareEvaluator
from .fields_present import FieldsPresentEvaluator
from .flag_check import FlagCheckEvaluator
from .terminal import TerminalEvaluator

registry.set_default(RuleType.DATA, FieldCompareEvaluator.evaluator_key)
registry.set_default(RuleType.WATERFALL, FieldsPresentEvaluator.evaluator_key)

__all__ = [
    "DateMatchEvaluator",
    "DateNotAfterEvaluator",
    "FieldCompareEvaluator",
    "FieldsPresentEvaluator",
    "FlagCheckEvaluator",
    "TerminalEvaluator",
]
