from __future__ import annotations

import logging
import uuid
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Optional

from tms.constants import DEFAULT_RULE_PRIORITY
from tms.errors import NotFoundError, ValidationError
from tms.schemas import RuleType, normalize_rule_type
from tms.services.storage import OrchestrationRepository, utcnow

LOGGER = logging.getLogger("tms.rules")

_RULE_TYPES = {rule_type.value for rule_type in RuleType}


def pattern_matches(pattern: Optional[str], value: Optional[str]) -> bool:
    """Glob or exact match; an unset pattern is a wildcard.

    SQL ``LIKE`` wildcards (``%``) are accepted as ``*`` for rules imported
    from older deployments.
    """
    if pattern is None or not str(pattern).strip():
        return True
    if value is None:
        return False
    glob = str(pattern).replace("%", "*")
    return fnmatchcase(value, glob) or value == pattern


def rule_matches(rule: Dict[str, Any], execution: Dict[str, Any]) -> bool:
    if not rule.get("active", True):
        return False
    if not pattern_matches(rule.get("test_suite_pattern"), execution.get("test_suite")):
        return False
    if not pattern_matches(rule.get("environment_pattern"), execution.get("environment")):
        return False
    requested_type = execution.get("requested_runner_type")
    if requested_type and not pattern_matches(rule.get("runner_type_filter"), requested_type):
        return False
    return True


class LoadBalancingRuleStore:
    """Ordered, pattern-matched policies that steer runner selection."""

    def __init__(self, repo: OrchestrationRepository) -> None:
        self._repo = repo

    def create_rule(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        name = (payload.get("name") or "").strip()
        rule_type = normalize_rule_type(getattr(payload.get("rule_type"), "value", payload.get("rule_type")))
        if not name or not rule_type:
            raise ValidationError("Rule 'name' and 'rule_type' are required.")
        if rule_type not in _RULE_TYPES:
            raise ValidationError(
                f"Unknown rule_type '{rule_type}'.", context={"allowed": sorted(_RULE_TYPES)}
            )
        rule_id = str(uuid.uuid4())
        priority = payload.get("priority")
        active = payload.get("active")
        record = {
            "id": rule_id,
            "name": name,
            "rule_type": rule_type,
            "test_suite_pattern": payload.get("test_suite_pattern"),
            "environment_pattern": payload.get("environment_pattern"),
            "runner_type_filter": payload.get("runner_type_filter"),
            "priority": DEFAULT_RULE_PRIORITY if priority is None else int(priority),
            "active": True if active is None else bool(active),
            "rule_config": dict(payload.get("rule_config") or {}),
            "created_at": utcnow(),
        }
        self._repo.save_rule(record)
        LOGGER.info("Created %s rule %s (%s) at priority %s", rule_type, rule_id, name, record["priority"])
        return record

    def list_rules(self) -> List[Dict[str, Any]]:
        rules = sorted(self._repo.list_rules(), key=lambda it: it["created_at"], reverse=True)
        return sorted(rules, key=lambda it: int(it.get("priority", 0)), reverse=True)

    def delete_rule(self, rule_id: str) -> None:
        if not self._repo.get_rule(rule_id):
            raise NotFoundError("Load balancing rule", rule_id)
        self._repo.delete_rule(rule_id)
        LOGGER.info("Deleted rule %s", rule_id)

    def first_match(self, execution: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for rule in self.list_rules():
            if rule_matches(rule, execution):
                return rule
        return None
