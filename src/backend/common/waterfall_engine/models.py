from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import InvalidStatusTransition

FieldValue = Union[Decimal, date, str]


class RuleType(str, Enum):
    DATA = "data"
    WATERFALL = "waterfall"


class RuleSubtype(str, Enum):
    INITIAL = "Initial"
    FINAL = "Final"
    PCCD = "PCCD"


class RuleLevel(str, Enum):
    LOAN = "Loan"
    DOCUMENT = "Document"


class FieldRole(str, Enum):
    INPUT = "Input"
    OUTPUT = "Output"
    COMPARE = "Compare"
    DELTA = "Delta"


class FlowCondition(str, Enum):
    YES = "Yes"
    NO = "No"
    PASS = "Pass"
    FAIL = "Fail"

    @property
    def positive(self) -> bool:
        return self in (FlowCondition.YES, FlowCondition.PASS)

    @classmethod
    def for_result(cls, result: bool, rule_type: "RuleType") -> "FlowCondition":
        # Branching rules answer Yes/No, validation rules Pass/Fail.
        if rule_type == RuleType.WATERFALL:
            return cls.YES if result else cls.NO
        return cls.PASS if result else cls.FAIL


class FlagOp(str, Enum):
    OR = "or"
    AND_NOT = "and_not"
    XOR = "xor"
    NONE = "none"


class TagType(str, Enum):
    INITIAL = "Initial"
    FINAL = "Final"
    PCCD = "PCCD"


class RunStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    MANUAL_REVIEW = "ManualReview"
    ERROR = "Error"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.MANUAL_REVIEW, RunStatus.ERROR)


class DiscriminatorOutcome(str, Enum):
    SINGLE = "single"
    NONE = "none"
    UNRESOLVED = "unresolved"


_ALLOWED_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.PROCESSING, RunStatus.ERROR},
    RunStatus.PROCESSING: {RunStatus.COMPLETED, RunStatus.MANUAL_REVIEW, RunStatus.ERROR},
}


class Rule(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: int
    name: str
    rule_type: RuleType
    subtype: Optional[RuleSubtype] = None
    level: Optional[RuleLevel] = None
    execution_order: int = 0
    active: bool = True

    description: str = ""
    # Plugin key; when unset the registry falls back to the default for `rule_type`.
    evaluator: Optional[str] = None
    flag_bit: Optional[int] = None
    flag_op: FlagOp = FlagOp.OR
    path_type_code: Optional[str] = None
    manual_review: bool = False
    is_root: bool = False
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("flag_bit")
    @classmethod
    def _flag_bit_in_range(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and not 0 <= value < 64:
            raise ValueError("flag_bit must be between 0 and 63")
        return value


class RuleField(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_name: str
    field_id: str
    role: FieldRole
    order: int = 0


class RuleFlowEdge(BaseModel):
    model_config = ConfigDict(frozen=True)

    parent: str
    child: str
    condition: FlowCondition
    order: int = 0
    active: bool = True


class PathType(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    name: str
    subtype: RuleSubtype
    order: int = 0
    discriminator: Optional[str] = None
    outcome: Optional[DiscriminatorOutcome] = None


class Loan(BaseModel):
    model_config = ConfigDict(frozen=True)

    loan_id: str
    closing_date: Optional[date] = None
    consummation_date: Optional[date] = None


class ClosingDisclosure(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: str
    loan_id: str
    issue_date: date


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str = ""
    sequence: int = 0
    rule_name: str
    rule_id: int
    execution_order: int
    document_id: Optional[str] = None
    subtype: Optional[RuleSubtype] = None
    result: bool
    outcome: FlowCondition
    decision: str = ""
    flags_before: int
    flags_after: int
    timestamp: datetime


class ValidationErrorRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str = ""
    rule_name: str
    document_id: Optional[str] = None
    field_id: Optional[str] = None
    expected: Optional[str] = None
    actual: Optional[str] = None
    delta: Optional[str] = None
    message: str = ""
    audit_sequence: int = 0


class DocumentResult(BaseModel):
    document_id: str
    issue_date: date
    tag_type: Optional[TagType] = None
    path_type_code: Optional[str] = None
    bit_flags: int = 0
    validation_passed: bool = True
    decision: str = ""


class WaterfallRun(BaseModel):
    run_id: str
    loan_id: str
    catalog_version: str = ""
    status: RunStatus = RunStatus.PENDING
    message: Optional[str] = None
    manual_review_reasons: List[str] = Field(default_factory=list)
    loan_flags: int = 0

    documents: List[DocumentResult] = Field(default_factory=list)
    audit_trail: List[AuditEntry] = Field(default_factory=list)
    validation_errors: List[ValidationErrorRecord] = Field(default_factory=list)

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def transition(self, status: RunStatus, *, message: Optional[str] = None) -> None:
        if status not in _ALLOWED_TRANSITIONS.get(self.status, set()):
            raise InvalidStatusTransition(self.status, status)
        self.status = status
        if message is not None and self.message is None:
            self.message = message

    def document(self, document_id: str) -> Optional[DocumentResult]:
        for doc in self.documents:
            if doc.document_id == document_id:
                return doc
        return None

    def tagged(self, tag_type: TagType) -> List[DocumentResult]:
        return [doc for doc in self.documents if doc.tag_type == tag_type]
