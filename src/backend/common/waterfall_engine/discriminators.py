"""Built-in tie-break discriminators.

A discriminator receives the still-tied candidates and returns the subset
that satisfies it. Which discriminators run, and in what order, comes from
the catalog's path types; this module only supplies the predicates.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Sequence

from .context import FieldValueProvider
from .models import DocumentResult, FieldValue, Loan

CLOSING_DATE_FIELD = "ClosingDate"
SIGNING_DATE_FIELD = "SigningDate"
ISSUE_TIMESTAMP_FIELD = "IssueTimestamp"
SIGNATURE_DATE_FIELD = "SignatureDate"
SIGNATURE_COUNT_FIELD = "SignatureCount"
KEY_DATA_FIELDS = ("LoanAmount", "InterestRate", "CashToClose")


@dataclass(frozen=True)
class TiebreakContext:
    loan: Loan
    provider: FieldValueProvider
    key_data_fields: Sequence[str] = KEY_DATA_FIELDS

    def value(self, subject_id: str, field_id: str) -> Optional[FieldValue]:
        return self.provider.get_value(subject_id, field_id)


Discriminator = Callable[[Sequence[DocumentResult], TiebreakContext], List[DocumentResult]]

_DISCRIMINATORS: Dict[str, Discriminator] = {}


def register_discriminator(key: str) -> Callable[[Discriminator], Discriminator]:
    def _register(fn: Discriminator) -> Discriminator:
        if key in _DISCRIMINATORS:
            raise ValueError(f"Duplicate discriminator registered: {key}")
        _DISCRIMINATORS[key] = fn
        return fn

    return _register


def get_discriminator(key: str) -> Discriminator:
    try:
        return _DISCRIMINATORS[key]
    except KeyError:
        raise KeyError(f"Unknown discriminator '{key}' (registered: {', '.join(discriminator_ids())})") from None


def discriminator_ids() -> List[str]:
    return sorted(_DISCRIMINATORS)


def _as_date(value: Optional[FieldValue]) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            return None
    return None


def _as_naive_utc(stamp: datetime) -> datetime:
    # Naive timestamps are taken as UTC already.
    if stamp.tzinfo is None:
        return stamp
    return stamp.astimezone(timezone.utc).replace(tzinfo=None)


def _as_number(value: Optional[FieldValue]) -> Optional[Decimal]:
    number = None
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        number = Decimal(str(value))
    elif isinstance(value, str) and value.strip():
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            return None
    if number is None or not number.is_finite():
        return None
    return number


def _keep_max(candidates: Sequence[DocumentResult], key: Callable[[DocumentResult], object]) -> List[DocumentResult]:
    keyed = [(key(doc), doc) for doc in candidates]
    present = [(k, doc) for k, doc in keyed if k is not None]
    if not present:
        return []
    best = max(k for k, _ in present)
    return [doc for k, doc in present if k == best]


@register_discriminator("closing_signing_date_match")
def closing_signing_date_match(candidates: Sequence[DocumentResult], ctx: TiebreakContext) -> List[DocumentResult]:
    matched = []
    for doc in candidates:
        closing = _as_date(ctx.value(doc.document_id, CLOSING_DATE_FIELD))
        signing = _as_date(ctx.value(doc.document_id, SIGNING_DATE_FIELD))
        if closing is not None and closing == signing:
            matched.append(doc)
    return matched


@register_discriminator("latest_issue_date")
def latest_issue_date(candidates: Sequence[DocumentResult], ctx: TiebreakContext) -> List[DocumentResult]:
    def _issued(doc: DocumentResult):
        stamp = ctx.value(doc.document_id, ISSUE_TIMESTAMP_FIELD)
        if isinstance(stamp, str) and stamp.strip():
            try:
                stamp = datetime.fromisoformat(stamp.strip())
            except ValueError:
                stamp = None
        if isinstance(stamp, datetime):
            return _as_naive_utc(stamp)
        return datetime.combine(doc.issue_date, datetime.min.time())

    return _keep_max(candidates, _issued)


@register_discriminator("key_data_match")
def key_data_match(candidates: Sequence[DocumentResult], ctx: TiebreakContext) -> List[DocumentResult]:
    expected = {field_id: ctx.value(ctx.loan.loan_id, field_id) for field_id in ctx.key_data_fields}
    if any(value is None for value in expected.values()):
        # Without the loan's key data nothing can be told apart.
        return list(candidates)

    matched = []
    for doc in candidates:
        ok = True
        for field_id, want in expected.items():
            got = ctx.value(doc.document_id, field_id)
            want_num, got_num = _as_number(want), _as_number(got)
            if want_num is not None and got_num is not None:
                ok = want_num == got_num
            else:
                ok = got is not None and str(got).strip() == str(want).strip()
            if not ok:
                break
        if ok:
            matched.append(doc)
    return matched


def _signature_count(ctx: TiebreakContext, doc: DocumentResult) -> Decimal:
    count = _as_number(ctx.value(doc.document_id, SIGNATURE_COUNT_FIELD))
    if count is not None:
        return count
    return Decimal(1) if _as_date(ctx.value(doc.document_id, SIGNATURE_DATE_FIELD)) else Decimal(0)


@register_discriminator("signature_present")
def signature_present(candidates: Sequence[DocumentResult], ctx: TiebreakContext) -> List[DocumentResult]:
    return [doc for doc in candidates if _signature_count(ctx, doc) > 0]


@register_discriminator("signature_count")
def signature_count(candidates: Sequence[DocumentResult], ctx: TiebreakContext) -> List[DocumentResult]:
    signed = [doc for doc in candidates if _signature_count(ctx, doc) > 0]
    return _keep_max(signed, lambda doc: _signature_count(ctx, doc))


@register_discriminator("signature_recency")
def signature_recency(candidates: Sequence[DocumentResult], ctx: TiebreakContext) -> List[DocumentResult]:
    return _keep_max(candidates, lambda doc: _as_date(ctx.value(doc.document_id, SIGNATURE_DATE_FIELD)))
