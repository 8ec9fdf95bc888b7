from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from common.waterfall_engine.models import FieldValue

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
# Plain decimals, or thousands grouped in threes: "1,250.00" but not "1,2,3".
_NUMBER = re.compile(r"-?\d{1,3}(?:,\d{3})+(?:\.\d+)?|-?\d*\.?\d+")


def coerce_field_value(value: Any) -> Optional[FieldValue]:
    """Normalize raw extracted values to Decimal, date or text; blanks and NaN become absent."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float, Decimal)):
        number = value if isinstance(value, Decimal) else Decimal(str(value))
        return number if number.is_finite() else None
    text = str(value).strip()
    if not text:
        return None
    if _ISO_DATE.match(text):
        try:
            return date.fromisoformat(text)
        except ValueError:
            return text
    if not _NUMBER.fullmatch(text):
        return text
    try:
        return Decimal(text.replace(",", ""))
    except InvalidOperation:
        return text


class InMemoryFieldValueProvider:
    """Field values keyed by document or loan id, then by field identifier."""

    def __init__(self, values: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self._values: Dict[str, Dict[str, Optional[FieldValue]]] = {}
        for subject_id, fields in (values or {}).items():
            self.update(subject_id, fields)

    def update(self, subject_id: str, fields: Mapping[str, Any]) -> None:
        bucket = self._values.setdefault(subject_id, {})
        for field_id, raw in fields.items():
            bucket[field_id] = coerce_field_value(raw)

    def get_value(self, subject_id: str, field_id: str) -> Optional[FieldValue]:
        return self._values.get(subject_id, {}).get(field_id)
