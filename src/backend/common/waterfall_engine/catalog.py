from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import CatalogError, UnknownEvaluatorError
from .graph import RuleFlowGraph
from .models import FieldRole, PathType, Rule, RuleField, RuleFlowEdge, RuleSubtype

if TYPE_CHECKING:
    from .registry import EvaluatorRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleCatalog:
    """Immutable snapshot of rule definitions, field roles, flow edges and path types.

    A catalog is built once per repository load and passed by reference into
    every run; refreshing means building a new catalog, never mutating this one.
    """

    rules: Tuple[Rule, ...]
    fields: Mapping[str, Tuple[RuleField, ...]]
    path_types: Tuple[PathType, ...]
    graph: RuleFlowGraph
    version: str

    @classmethod
    def from_rows(
        cls,
        *,
        rules: Iterable[Rule],
        fields: Iterable[RuleField] = (),
        edges: Iterable[RuleFlowEdge] = (),
        path_types: Iterable[PathType] = (),
        registry: Optional["EvaluatorRegistry"] = None,
    ) -> "RuleCatalog":
        active = [rule for rule in rules if rule.active]
        names: Dict[str, Rule] = {}
        for rule in active:
            if rule.name in names:
                raise CatalogError(f"Duplicate rule name in catalog: {rule.name}")
            names[rule.name] = rule
        active.sort(key=lambda r: (r.execution_order, r.name))

        field_rows = list(fields)
        by_rule: Dict[str, List[RuleField]] = {}
        for row in field_rows:
            if row.rule_name not in names:
                # Fields of inactive rules are simply not loaded.
                continue
            by_rule.setdefault(row.rule_name, []).append(row)

        path_rows = sorted(path_types, key=lambda p: (p.subtype.value, p.order, p.code))
        codes = set()
        for path_type in path_rows:
            key = (path_type.subtype, path_type.code)
            if key in codes:
                raise CatalogError(f"Duplicate path type code '{path_type.code}' for {path_type.subtype.value}")
            codes.add(key)
        known_codes = {p.code for p in path_rows}
        for rule in active:
            if rule.path_type_code and rule.path_type_code not in known_codes:
                raise CatalogError(f"Rule '{rule.name}' references unknown path type '{rule.path_type_code}'")

        edge_rows = list(edges)
        graph = RuleFlowGraph.build(active, edge_rows)

        if registry is not None:
            for rule in active:
                if not registry.has_evaluator_for(rule):
                    raise UnknownEvaluatorError(rule.name, rule.evaluator or rule.rule_type.value)

        catalog = cls(
            rules=tuple(active),
            fields={
                name: tuple(sorted(rows, key=lambda f: (f.role.value, f.order, f.field_id)))
                for name, rows in by_rule.items()
            },
            path_types=tuple(path_rows),
            graph=graph,
            version=_content_version(active, field_rows, edge_rows, path_rows),
        )
        logger.info(
            "Loaded rule catalog %s (%d rules, %d edges, %d path types)",
            catalog.version[:12],
            len(catalog.rules),
            len(graph.edges),
            len(catalog.path_types),
        )
        return catalog

    @property
    def rule_count(self) -> int:
        return len(self.rules)

    def get_rule(self, name: str) -> Rule:
        try:
            return self.graph.rules[name]
        except KeyError:
            raise KeyError(f"Unknown rule: {name}") from None

    def fields_for(self, rule: Rule, role: Optional[FieldRole] = None) -> Tuple[RuleField, ...]:
        rows = self.fields.get(rule.name, ())
        if role is None:
            return rows
        return tuple(row for row in rows if row.role == role)

    def path_types_for(self, subtype: RuleSubtype) -> Tuple[PathType, ...]:
        return tuple(p for p in self.path_types if p.subtype == subtype)

    def path_type(self, code: str, subtype: Optional[RuleSubtype] = None) -> Optional[PathType]:
        for path_type in self.path_types:
            if path_type.code == code and (subtype is None or path_type.subtype == subtype):
                return path_type
        return None


def _content_version(
    rules: List[Rule],
    fields: List[RuleField],
    edges: List[RuleFlowEdge],
    path_types: List[PathType],
) -> str:
    payload = {
        "rules": sorted((r.model_dump(mode="json") for r in rules), key=lambda r: r["name"]),
        "fields": sorted(
            (f.model_dump(mode="json") for f in fields),
            key=lambda f: (f["rule_name"], f["role"], f["order"], f["field_id"]),
        ),
        "edges": sorted(
            (e.model_dump(mode="json") for e in edges),
            key=lambda e: (e["parent"], e["condition"], e["order"], e["child"]),
        ),
        "path_types": [p.model_dump(mode="json") for p in path_types],
    }
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
