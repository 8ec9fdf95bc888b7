from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, List, Optional, Protocol, Tuple

from .bitflags import BitFlagState
from .errors import FieldTypeError, MissingFieldError
from .models import ClosingDisclosure, FieldRole, FieldValue, Loan, Rule

if TYPE_CHECKING:
    from .catalog import RuleCatalog

LOAN_FIELD_PREFIX = "loan."
# Provider values win; the loan record fills gaps.
LOAN_RECORD_FIELDS = {"ClosingDate": "closing_date", "ConsummationDate": "consummation_date"}


class FieldValueProvider(Protocol):
    def get_value(self, subject_id: str, field_id: str) -> Optional[FieldValue]:
        """Return the typed value of `field_id` for a document or loan, or None when absent."""
        ...


@dataclass(frozen=True)
class EvaluationContext:
    loan: Loan
    provider: FieldValueProvider
    catalog: "RuleCatalog"
    document: Optional[ClosingDisclosure] = None
    flags: BitFlagState = field(default_factory=BitFlagState)
    loan_flags: BitFlagState = field(default_factory=BitFlagState)

    @property
    def subject_id(self) -> str:
        if self.document is not None:
            return self.document.document_id
        return self.loan.loan_id

    @property
    def document_id(self) -> Optional[str]:
        return self.document.document_id if self.document is not None else None

    def with_flags(self, flags: BitFlagState) -> "EvaluationContext":
        return replace(self, flags=flags)

    def value(self, field_id: str) -> Optional[FieldValue]:
        # `loan.<field>` reads the loan record even from a document-level rule.
        if field_id.startswith(LOAN_FIELD_PREFIX):
            return self._loan_value(field_id[len(LOAN_FIELD_PREFIX):])
        if field_id == "IssueDate" and self.document is not None:
            return self.document.issue_date
        if self.document is None:
            return self._loan_value(field_id)
        return self.provider.get_value(self.subject_id, field_id)

    def _loan_value(self, field_id: str) -> Optional[FieldValue]:
        value = self.provider.get_value(self.loan.loan_id, field_id)
        if value is None and field_id in LOAN_RECORD_FIELDS:
            value = getattr(self.loan, LOAN_RECORD_FIELDS[field_id])
        return value

    def require(self, field_id: str) -> FieldValue:
        value = self.value(field_id)
        if value is None or value == "":
            raise MissingFieldError(self.subject_id, field_id)
        return value

    def require_date(self, field_id: str) -> date:
        value = self.require(field_id)
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            try:
                return date.fromisoformat(value.strip())
            except ValueError:
                pass
        raise FieldTypeError(field_id, "date", value)

    def require_number(self, field_id: str) -> Decimal:
        value = self.require(field_id)
        number = None
        if isinstance(value, Decimal):
            number = value
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            number = Decimal(str(value))
        elif isinstance(value, str):
            try:
                number = Decimal(value.strip())
            except InvalidOperation:
                pass
        # NaN and Infinity cannot be ordered against a tolerance.
        if number is None or not number.is_finite():
            raise FieldTypeError(field_id, "number", value)
        return number

    def field_ids(self, rule: Rule, role: FieldRole) -> List[str]:
        return [row.field_id for row in self.catalog.fields_for(rule, role)]

    def field_values(self, rule: Rule, role: FieldRole) -> List[Tuple[str, Optional[FieldValue]]]:
        return [(field_id, self.value(field_id)) for field_id in self.field_ids(rule, role)]
