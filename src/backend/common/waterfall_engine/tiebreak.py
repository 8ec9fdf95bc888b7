from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .catalog import RuleCatalog
from .discriminators import TiebreakContext, get_discriminator
from .errors import CatalogError
from .models import DiscriminatorOutcome, DocumentResult, PathType, RuleSubtype

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TiebreakStep:
    discriminator: str
    order: int
    codes: Dict[DiscriminatorOutcome, PathType] = field(default_factory=dict)

    def code(self, outcome: DiscriminatorOutcome) -> Optional[PathType]:
        return self.codes.get(outcome)


@dataclass(frozen=True)
class TiebreakOutcome:
    winner: Optional[DocumentResult]
    path_type_code: Optional[str]
    reason: str
    discriminator: Optional[str] = None
    attempted: Tuple[str, ...] = ()

    @property
    def manual_review(self) -> bool:
        return self.winner is None


class TiebreakResolver:
    """Picks one document out of a group sharing an issue date.

    Discriminators run in catalog path-type order. Each one either singles
    out a winner, eliminates everybody (manual review), leaves the group as
    is, or narrows it for the next step. The loop is bounded by the number
    of steps and every discriminator failure becomes manual review, so
    `resolve` always returns.
    """

    def __init__(self, catalog: RuleCatalog):
        self.catalog = catalog
        self._steps: Dict[RuleSubtype, Tuple[TiebreakStep, ...]] = {}
        self._unresolved: Dict[RuleSubtype, Optional[PathType]] = {}
        for subtype in RuleSubtype:
            self._steps[subtype], self._unresolved[subtype] = self._build_steps(subtype)

    def steps_for(self, subtype: RuleSubtype) -> Tuple[TiebreakStep, ...]:
        return self._steps[subtype]

    def _build_steps(self, subtype: RuleSubtype) -> Tuple[Tuple[TiebreakStep, ...], Optional[PathType]]:
        by_key: Dict[str, TiebreakStep] = {}
        unresolved: Optional[PathType] = None
        for path_type in self.catalog.path_types_for(subtype):
            if path_type.discriminator is None:
                if path_type.outcome == DiscriminatorOutcome.UNRESOLVED and unresolved is None:
                    unresolved = path_type
                continue
            try:
                get_discriminator(path_type.discriminator)
            except KeyError as exc:
                raise CatalogError(f"Path type '{path_type.code}': {exc.args[0]}") from None
            step = by_key.get(path_type.discriminator)
            if step is None:
                step = TiebreakStep(discriminator=path_type.discriminator, order=path_type.order)
                by_key[path_type.discriminator] = step
            outcome = path_type.outcome or DiscriminatorOutcome.SINGLE
            if outcome in step.codes:
                raise CatalogError(
                    f"Discriminator '{path_type.discriminator}' has more than one '{outcome.value}' path type"
                )
            step.codes[outcome] = path_type
        steps = sorted(by_key.values(), key=lambda s: (s.order, s.discriminator))
        return tuple(steps), unresolved

    def resolve(
        self,
        group: Sequence[DocumentResult],
        context: TiebreakContext,
        subtype: RuleSubtype,
    ) -> TiebreakOutcome:
        candidates: List[DocumentResult] = sorted(group, key=lambda d: d.document_id)
        if not candidates:
            return TiebreakOutcome(winner=None, path_type_code=None, reason="Tiebreak invoked with an empty group")
        steps = self._steps[subtype]
        if not steps:
            return TiebreakOutcome(
                winner=None,
                path_type_code=self._code(self._unresolved[subtype]),
                reason=f"No tiebreak discriminators configured for {subtype.value}",
            )

        attempted: List[str] = []
        for step in steps:
            attempted.append(step.discriminator)
            try:
                matched = get_discriminator(step.discriminator)(candidates, context)
            except Exception as exc:
                logger.exception("Tiebreak discriminator %s failed", step.discriminator)
                return TiebreakOutcome(
                    winner=None,
                    path_type_code=self._code(step.code(DiscriminatorOutcome.NONE)),
                    reason=f"Discriminator '{step.discriminator}' failed: {exc}",
                    discriminator=step.discriminator,
                    attempted=tuple(attempted),
                )
            matched_ids = {doc.document_id for doc in matched}
            matched = [doc for doc in candidates if doc.document_id in matched_ids]

            if len(matched) == 1:
                path_type = step.code(DiscriminatorOutcome.SINGLE)
                label = path_type.name if path_type else step.discriminator
                return TiebreakOutcome(
                    winner=matched[0],
                    path_type_code=self._code(path_type),
                    reason=f"Resolved by '{step.discriminator}': {label}",
                    discriminator=step.discriminator,
                    attempted=tuple(attempted),
                )
            if not matched:
                path_type = step.code(DiscriminatorOutcome.NONE)
                detail = f" ({path_type.name})" if path_type else ""
                return TiebreakOutcome(
                    winner=None,
                    path_type_code=self._code(path_type),
                    reason=f"No candidate satisfied discriminator '{step.discriminator}'{detail}",
                    discriminator=step.discriminator,
                    attempted=tuple(attempted),
                )
            candidates = matched

        last = steps[-1]
        path_type = self._unresolved[subtype] or last.code(DiscriminatorOutcome.UNRESOLVED)
        return TiebreakOutcome(
            winner=None,
            path_type_code=self._code(path_type),
            reason=(
                f"{len(candidates)} candidates still tied after discriminator '{last.discriminator}': "
                + ", ".join(doc.document_id for doc in candidates)
            ),
            discriminator=last.discriminator,
            attempted=tuple(attempted),
        )

    @staticmethod
    def _code(path_type: Optional[PathType]) -> Optional[str]:
        return path_type.code if path_type is not None else None
