"""
Rule Registry
=============

Immutable, ordered catalog of rules with lookup by id and filtering by
category, type and severity. Works for both detection and alert rules.

Usage:
    from lifecycle_observer.registry import default_alert_registry

    registry = default_alert_registry()
    for rule in registry.list_enabled():
        print(rule.id)
    critical = registry.by_severity("critical")
"""

from typing import Generic, Iterable, Iterator, Optional, TypeVar

from lifecycle_observer.alert_rules import BUILTIN_ALERT_RULES, AlertRule
from lifecycle_observer.detection_rules import BUILTIN_DETECTION_RULES, DetectionRule

RuleT = TypeVar("RuleT", DetectionRule, AlertRule)


class RuleRegistry(Generic[RuleT]):
    """Read-only rule catalog preserving declaration order."""

    def __init__(self, rules: Iterable[RuleT]):
        self._rules: tuple[RuleT, ...] = tuple(rules)
        self._by_id: dict[str, RuleT] = {}
        for rule in self._rules:
            if rule.id in self._by_id:
                raise ValueError(f"Duplicate rule id: {rule.id}")
            self._by_id[rule.id] = rule

    def all(self) -> list[RuleT]:
        return list(self._rules)

    def list_enabled(self) -> list[RuleT]:
        """Enabled rules in declaration order."""
        return [rule for rule in self._rules if rule.enabled]

    def by_id(self, rule_id: str) -> Optional[RuleT]:
        return self._by_id.get(rule_id)

    def by_category(self, category: str) -> list[RuleT]:
        return [rule for rule in self._rules if rule.category == category]

    def by_type(self, rule_type: str) -> list[RuleT]:
        return [rule for rule in self._rules if rule.type == rule_type]

    def by_severity(self, severity: str) -> list[RuleT]:
        return [rule for rule in self._rules if rule.severity == severity]

    def ids(self) -> list[str]:
        return [rule.id for rule in self._rules]

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self) -> Iterator[RuleT]:
        return iter(self._rules)

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._by_id


def default_detection_registry() -> RuleRegistry[DetectionRule]:
    return RuleRegistry(BUILTIN_DETECTION_RULES)


def default_alert_registry() -> RuleRegistry[AlertRule]:
    return RuleRegistry(BUILTIN_ALERT_RULES)
