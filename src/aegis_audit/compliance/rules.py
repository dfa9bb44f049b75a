"""Compliance Rule Engine - rule storage and per-event applicability.

Rules are seeded from YAML (packaged defaults or AEGIS_AUDIT_RULES_FILE),
validated with pydantic and persisted as a single blob. Every non-synthetic
event is matched against each rule's applicability conditions; the caller
turns matches into derived compliance events.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from aegis_audit.audit.blob_store import BlobStore
from aegis_audit.audit.schemas import AuditEvent
from aegis_audit.common.clock import Clock, SystemClock
from aegis_audit.common.exceptions import (
    ConfigurationError,
    RuleNotFoundError,
    ValidationError,
)
from aegis_audit.compliance.schemas import (
    ApplicabilityRule,
    AutomatedCheck,
    ComplianceFramework,
    ComplianceRule,
    RuleSet,
)

logger = logging.getLogger(__name__)


MISSING = object()


def resolve_path(document: Dict[str, Any], path: str) -> Any:
    """Look up a dotted path in a nested dict; MISSING if absent."""
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return MISSING
        current = current[part]
    return current


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def condition_matches(document: Dict[str, Any], condition: ApplicabilityRule) -> bool:
    """Evaluate one applicability condition against an event document."""
    actual = resolve_path(document, condition.context)
    expected = condition.value
    op = condition.operator

    if actual is MISSING:
        # Absent fields only satisfy negative operators
        return op in ("not_equals", "not_contains")

    if op == "equals":
        return actual == expected or str(actual) == str(expected)
    if op == "not_equals":
        return not (actual == expected or str(actual) == str(expected))
    if op in ("contains", "not_contains"):
        if isinstance(actual, (list, tuple)):
            found = expected in actual or str(expected) in [str(a) for a in actual]
        else:
            found = str(expected) in str(actual)
        return found if op == "contains" else not found

    # greater_than / less_than: numeric when both sides are numbers, else lexical
    a, b = _as_number(actual), _as_number(expected)
    if a is None or b is None:
        a, b = str(actual), str(expected)
    return a > b if op == "greater_than" else a < b


class ComplianceRuleEngine:
    """Owns compliance rules and matches events against them."""

    RULES_KEY = "compliance_rules.json"
    DEFAULT_RULES_FILE = Path(__file__).parent / "default_rules.yaml"

    def __init__(
        self,
        blob_store: BlobStore,
        clock: Optional[Clock] = None,
        rules_file: Optional[Union[str, Path]] = None,
    ):
        """Initialize rule engine.

        Args:
            blob_store: Persistence for the rule set
            clock: Time source for created_at/updated_at
            rules_file: YAML used to seed rules when none are persisted.
                Uses the packaged defaults if not provided.
        """
        self.blob_store = blob_store
        self.clock = clock or SystemClock()
        self.rules_file = Path(rules_file) if rules_file else self.DEFAULT_RULES_FILE

        self._rules: Dict[str, ComplianceRule] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Loading & persistence
    # ------------------------------------------------------------------

    def load_rule_file(self, path: Optional[Union[str, Path]] = None) -> List[ComplianceRule]:
        """Load and validate rules from a YAML file."""
        path = Path(path) if path else self.rules_file
        if not path.exists():
            raise ConfigurationError(f"Compliance rules file not found: {path}")

        with open(path, "r") as f:
            raw_config = yaml.safe_load(f) or {}

        try:
            rule_set = RuleSet.model_validate(raw_config)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid compliance rules in {path}: {e}") from e

        now = self.clock.now()
        for rule in rule_set.rules:
            rule.created_at = rule.created_at or now
            rule.updated_at = rule.updated_at or now
        return rule_set.rules

    def load(self) -> int:
        """Load persisted rules, seeding from YAML when nothing is persisted.

        Returns:
            Number of rules loaded
        """
        raw = self.blob_store.get(self.RULES_KEY)
        with self._lock:
            if raw is None:
                rules = self.load_rule_file()
                logger.info(f"Seeding {len(rules)} compliance rules from {self.rules_file}")
            else:
                rules = RuleSet.model_validate_json(raw).rules

            self._rules = {rule.id: rule for rule in rules}
            if raw is None:
                self.save()
        return len(self._rules)

    def save(self) -> None:
        with self._lock:
            payload = RuleSet(rules=list(self._rules.values())).model_dump_json()
        self.blob_store.put(self.RULES_KEY, payload)

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def add_rule(self, rule: Union[ComplianceRule, Dict[str, Any]]) -> ComplianceRule:
        """Add a rule.

        Raises:
            ValidationError: If the rule is malformed or its id already exists
        """
        if isinstance(rule, dict):
            try:
                rule = ComplianceRule.model_validate(rule)
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid compliance rule",
                    details={"errors": e.errors(include_url=False, include_context=False)},
                ) from e

        now = self.clock.now()
        rule.created_at = rule.created_at or now
        rule.updated_at = now
        with self._lock:
            if rule.id in self._rules:
                raise ValidationError(f"Compliance rule already exists: {rule.id}")
            self._rules[rule.id] = rule
            self.save()
        logger.info(f"Added compliance rule {rule.id} ({rule.framework.value} {rule.section})")
        return rule

    def update_rule(self, rule_id: str, **changes: Any) -> ComplianceRule:
        """Apply field changes to a rule, re-validating the result."""
        with self._lock:
            current = self.get_rule(rule_id)
            data = current.model_dump()
            data.update(changes)
            data["id"] = rule_id
            data["updated_at"] = self.clock.now()
            try:
                updated = ComplianceRule.model_validate(data)
            except PydanticValidationError as e:
                raise ValidationError(
                    f"Invalid update for rule {rule_id}",
                    details={"errors": e.errors(include_url=False, include_context=False)},
                ) from e
            self._rules[rule_id] = updated
            self.save()
        return updated

    def get_rule(self, rule_id: str) -> ComplianceRule:
        with self._lock:
            rule = self._rules.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def list_rules(self, framework: Optional[ComplianceFramework] = None) -> List[ComplianceRule]:
        with self._lock:
            rules = list(self._rules.values())
        if framework is not None:
            rules = [r for r in rules if r.framework == framework]
        return rules

    def iter_checks(self) -> Iterator[Tuple[ComplianceRule, AutomatedCheck]]:
        """All (rule, automated check) pairs."""
        for rule in self.list_rules():
            for check in rule.automated_checks:
                yield rule, check

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    @staticmethod
    def matches(event: AuditEvent, rule: ComplianceRule) -> bool:
        """True when every applicability condition holds for the event."""
        if not rule.applicability:
            return False
        document = event.model_dump(mode="json")
        return all(condition_matches(document, c) for c in rule.applicability)

    def evaluate(self, event: AuditEvent) -> List[ComplianceRule]:
        """Rules triggered by an event.

        Synthetic events (produced from earlier rule matches) are never
        evaluated. A rule that raises is logged and skipped.
        """
        if event.metadata.synthetic:
            return []

        triggered = []
        for rule in self.list_rules():
            try:
                if self.matches(event, rule):
                    triggered.append(rule)
            except Exception as e:
                logger.error(f"Compliance rule {rule.id} failed on event {event.id}: {e}")
        return triggered
