from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import CycleError, DanglingReferenceError, DuplicateBranchError
from .models import FlowCondition, Rule, RuleFlowEdge, RuleLevel, RuleSubtype

logger = logging.getLogger(__name__)

# (parent rule name, positive outcome?) -> child rule name
BranchKey = Tuple[str, bool]


@dataclass(frozen=True)
class RuleFlowGraph:
    """Parent -> child adjacency keyed by (rule, outcome).

    `Yes`/`Pass` edges are the positive branch and `No`/`Fail` edges the
    negative one, so every (rule, outcome) pair resolves to at most one child.
    """

    rules: Mapping[str, Rule]
    branches: Mapping[BranchKey, str]
    conditions: Mapping[BranchKey, FlowCondition]
    edges: Tuple[RuleFlowEdge, ...] = ()
    _incoming: Mapping[str, Tuple[str, ...]] = field(default_factory=dict, repr=False)

    @classmethod
    def build(cls, rules: Iterable[Rule], edges: Iterable[RuleFlowEdge]) -> "RuleFlowGraph":
        by_name = {rule.name: rule for rule in rules if rule.active}
        active_edges = sorted(
            (edge for edge in edges if edge.active),
            key=lambda e: (e.parent, e.order, e.condition.value, e.child),
        )

        branches: Dict[BranchKey, str] = {}
        conditions: Dict[BranchKey, FlowCondition] = {}
        seen: Dict[BranchKey, List[str]] = {}
        incoming: Dict[str, List[str]] = {}
        for edge in active_edges:
            for name in (edge.parent, edge.child):
                if name not in by_name:
                    raise DanglingReferenceError(edge.parent, edge.child, name)
            key = (edge.parent, edge.condition.positive)
            seen.setdefault(key, []).append(edge.child)
            if len(seen[key]) > 1:
                raise DuplicateBranchError(edge.parent, key[1], tuple(seen[key]))
            branches[key] = edge.child
            conditions[key] = edge.condition
            incoming.setdefault(edge.child, []).append(edge.parent)

        graph = cls(
            rules=by_name,
            branches=branches,
            conditions=conditions,
            edges=tuple(active_edges),
            _incoming={k: tuple(v) for k, v in incoming.items()},
        )
        graph._check_acyclic()
        logger.debug("Built rule flow graph with %d rules and %d branches", len(by_name), len(branches))
        return graph

    def next_rule(self, rule: Rule, result: bool) -> Optional[Rule]:
        child = self.branches.get((rule.name, result))
        if child is None:
            return None
        return self.rules[child]

    def condition_for(self, rule: Rule, result: bool) -> FlowCondition:
        """The condition of the edge taken, or the rule type's own vocabulary at a leaf."""
        return self.conditions.get((rule.name, result)) or FlowCondition.for_result(result, rule.rule_type)

    def children(self, rule_name: str) -> List[str]:
        return [self.branches[key] for key in ((rule_name, True), (rule_name, False)) if key in self.branches]

    def roots_for(self, subtype: Optional[RuleSubtype], level: Optional[RuleLevel]) -> List[Rule]:
        roots = []
        for rule in self.rules.values():
            if rule.subtype != subtype or rule.level != level:
                continue
            if rule.is_root or not self._has_scoped_parent(rule):
                roots.append(rule)
        roots.sort(key=lambda r: (r.execution_order, r.name))
        return roots

    def _has_scoped_parent(self, rule: Rule) -> bool:
        for parent in self._incoming.get(rule.name, ()):
            if self.rules[parent].subtype == rule.subtype:
                return True
        return False

    def _follows(self, parent: str, child: str) -> bool:
        # Gate rules and cross-subtype references start their own subgraph.
        target = self.rules[child]
        return not target.is_root and target.subtype == self.rules[parent].subtype

    def _check_acyclic(self) -> None:
        white, grey, black = 0, 1, 2
        color = {name: white for name in self.rules}

        for start in sorted(self.rules):
            if color[start] != white:
                continue
            color[start] = grey
            path = [start]
            stack = [iter(self.children(start))]
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    stack.pop()
                    color[path.pop()] = black
                    continue
                if not self._follows(path[-1], child):
                    continue
                if color[child] == grey:
                    cycle = path[path.index(child):] + [child]
                    raise CycleError(tuple(cycle))
                if color[child] == white:
                    color[child] = grey
                    path.append(child)
                    stack.append(iter(self.children(child)))
