from __future__ import annotations

from typing import Dict, Iterable, Optional, Type

from .evaluator import RuleEvaluator
from .models import Rule, RuleType


class EvaluatorRegistry:
    def __init__(self):
        self._evaluators: Dict[str, Type[RuleEvaluator]] = {}
        self._instances: Dict[str, RuleEvaluator] = {}
        self._defaults: Dict[RuleType, str] = {}

    def register(self, evaluator_cls: Type[RuleEvaluator]) -> None:
        key = getattr(evaluator_cls, "evaluator_key", None)
        if not key:
            raise ValueError("Evaluator class missing evaluator_key")
        if key in self._evaluators:
            raise ValueError(f"Duplicate evaluator_key registered: {key}")
        self._evaluators[key] = evaluator_cls

    def set_default(self, rule_type: RuleType, key: str) -> None:
        if key not in self._evaluators:
            raise KeyError(f"Unknown evaluator: {key}")
        self._defaults[rule_type] = key

    def key_for(self, rule: Rule) -> Optional[str]:
        return rule.evaluator or self._defaults.get(rule.rule_type)

    def has_evaluator_for(self, rule: Rule) -> bool:
        key = self.key_for(rule)
        return key is not None and key in self._evaluators

    def resolve(self, rule: Rule) -> RuleEvaluator:
        key = self.key_for(rule)
        if key is None or key not in self._evaluators:
            raise KeyError(f"No evaluator registered for rule '{rule.name}' (key={key})")
        instance = self._instances.get(key)
        if instance is None:
            instance = self._evaluators[key]()
            self._instances[key] = instance
        return instance

    def get(self, key: str) -> Type[RuleEvaluator]:
        return self._evaluators[key]

    def ids(self) -> Iterable[str]:
        return self._evaluators.keys()


registry = EvaluatorRegistry()


def register_evaluator(evaluator_cls: Type[RuleEvaluator]) -> Type[RuleEvaluator]:
    registry.register(evaluator_cls)
    return evaluator_cls
