"""
Rule predicates.

Each condition compares one field of a transaction with the same field of a
settlement and returns a confidence in [0, 1] when it passes, or None when
it does not. A None amount (failed FX conversion) always fails.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from ..config import get_settings
from ..exceptions import ConfigurationError
from ..models import (
    Cardinality,
    FinancialRecord,
    MatchingRulesConfig,
    Money,
    RuleCondition,
    RuleType,
)
from ..utils.text_similarity import levenshtein_similarity, normalize_text

AMOUNT_FIELD = "amount"
DATE_FIELD = "date"

FIELD_ALIASES = {
    "amount": "amount",
    "date": "date",
    "timestamp": "date",
    "currency": "currency",
    "id": "id",
    "status": "status",
    "provider": "provider",
    "description": "description",
    "referenceId": "reference_id",
    "reference_id": "reference_id",
    "providerTransactionId": "provider_transaction_id",
    "provider_transaction_id": "provider_transaction_id",
}

STRING_FIELDS = {"currency", "id", "status", "provider", "description", "reference_id", "provider_transaction_id"}


def canonical_field(name: str) -> Optional[str]:
    """Canonical accessor name, or None when the field is unknown."""
    if name.startswith("metadata."):
        return name if len(name) > len("metadata.") else None
    return FIELD_ALIASES.get(name)


@dataclass
class RecordView:
    """
    A record as seen by the rules: its amount may be FX-converted, or None
    when conversion failed.
    """
    record: FinancialRecord
    amount: Optional[Money]
    fx: Optional[dict] = None
    fx_error: Optional[str] = None

    @property
    def id(self) -> str:
        return self.record.id

    def value(self, field_name: str) -> Any:
        name = canonical_field(field_name)
        if name == AMOUNT_FIELD:
            return self.amount
        if name == DATE_FIELD:
            return self.record.timestamp
        if name == "status":
            return self.record.status.value
        if name and name.startswith("metadata."):
            return self.record.metadata.get(name[len("metadata."):])
        return getattr(self.record, name) if name else None


@dataclass(frozen=True)
class RuleDefaults:
    amount_tolerance: Decimal
    date_tolerance_days: float
    fuzzy_threshold: float

    @classmethod
    def from_settings(cls) -> "RuleDefaults":
        settings = get_settings()
        return cls(
            amount_tolerance=Decimal(str(settings.default_amount_tolerance)),
            date_tolerance_days=float(settings.default_date_tolerance_days),
            fuzzy_threshold=float(settings.fuzzy_match_threshold),
        )


def tolerance_score(diff: Decimal, tolerance: Decimal) -> Optional[float]:
    """
    1.0 at zero difference, falling linearly to 0.5 at the tolerance edge;
    None beyond it.
    """
    if diff > tolerance:
        return None
    if diff == 0:
        return 1.0
    return float(Decimal("1") - Decimal("0.5") * diff / tolerance)


def days_between(a: datetime, b: datetime) -> float:
    return abs((a - b).total_seconds()) / 86400.0


def _as_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, Money):
        return value.value
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Money):
        return format(value.value.normalize(), "f")
    if isinstance(value, datetime):
        return value.date().isoformat()
    return str(value)


def _compare_amounts(a: Optional[Money], b: Optional[Money], tolerance: Optional[Decimal]) -> Optional[float]:
    if a is None or b is None or a.currency != b.currency:
        return None
    diff = abs(a.value - b.value)
    if tolerance is None:
        return 1.0 if diff == 0 else None
    return tolerance_score(diff, tolerance)


def _compare_dates(a: Optional[datetime], b: Optional[datetime], tolerance_days: Optional[float]) -> Optional[float]:
    if a is None or b is None:
        return None
    if tolerance_days is None:
        return 1.0 if a.date() == b.date() else None
    days = Decimal(str(days_between(a, b)))
    return tolerance_score(days, Decimal(str(tolerance_days)))


def _regex_key(pattern: "re.Pattern", text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    found = pattern.search(text)
    if found is None:
        return None
    key = found.group(1) if pattern.groups else found.group(0)
    return normalize_text(key)


def _condition_score(
    condition: RuleCondition,
    transaction: RecordView,
    settlement: RecordView,
    defaults: RuleDefaults,
) -> Optional[float]:
    """Raw confidence for one condition, or None when the values disagree."""
    name = canonical_field(condition.field)
    left = transaction.value(condition.field)
    right = settlement.value(condition.field)

    if condition.type is RuleType.FUZZY:
        left_text, right_text = _as_text(left), _as_text(right)
        if not left_text or not right_text:
            return None
        threshold = condition.threshold if condition.threshold is not None else defaults.fuzzy_threshold
        similarity = levenshtein_similarity(left_text, right_text)
        return similarity if similarity >= threshold else None

    if condition.type is RuleType.REGEX:
        pattern = re.compile(condition.pattern, re.IGNORECASE)
        left_text, right_text = _as_text(left), _as_text(right)
        if condition.apply_to == "transaction":
            left_key, right_key = _regex_key(pattern, left_text), normalize_text(right_text) or None
        elif condition.apply_to == "settlement":
            left_key, right_key = normalize_text(left_text) or None, _regex_key(pattern, right_text)
        else:
            left_key, right_key = _regex_key(pattern, left_text), _regex_key(pattern, right_text)
        if left_key is None or right_key is None:
            return None
        return 1.0 if left_key == right_key else None

    # exact / range
    if name == AMOUNT_FIELD:
        tolerance = condition.tolerance
        if tolerance is None and condition.type is RuleType.RANGE:
            tolerance = defaults.amount_tolerance
        return _compare_amounts(left, right, tolerance)

    if name == DATE_FIELD:
        tolerance_days = float(condition.tolerance) if condition.tolerance is not None else None
        if tolerance_days is None and condition.type is RuleType.RANGE:
            tolerance_days = defaults.date_tolerance_days
        return _compare_dates(left, right, tolerance_days)

    if condition.type is RuleType.RANGE or (condition.tolerance is not None and name not in STRING_FIELDS):
        # Numeric metadata
        left_num, right_num = _as_decimal(left), _as_decimal(right)
        if left_num is None or right_num is None:
            return None
        tolerance = condition.tolerance if condition.tolerance is not None else defaults.amount_tolerance
        return tolerance_score(abs(left_num - right_num), tolerance)

    left_text, right_text = normalize_text(_as_text(left)), normalize_text(_as_text(right))
    if not left_text or not right_text:
        return None
    return 1.0 if left_text == right_text else None


def evaluate_condition(
    condition: RuleCondition,
    transaction: RecordView,
    settlement: RecordView,
    defaults: RuleDefaults,
) -> Optional[float]:
    """Confidence for one condition, or None when it does not pass or falls below its threshold."""
    score = _condition_score(condition, transaction, settlement, defaults)
    if score is None or condition.threshold is None:
        return score
    return score if score >= condition.threshold else None


def evaluate_conditions(conditions, transaction: RecordView, settlement: RecordView, defaults: RuleDefaults) -> Optional[float]:
    """AND of conditions; the weakest condition sets the confidence."""
    scores = []
    for condition in conditions:
        score = evaluate_condition(condition, transaction, settlement, defaults)
        if score is None:
            return None
        scores.append(score)
    return min(scores) if scores else None


def validate_rules_config(config: MatchingRulesConfig) -> None:
    """
    Semantic checks on a parsed rule set. Raises ConfigurationError with
    the offending rule index.
    """
    if not config.rules:
        raise ConfigurationError("Rule set is empty", field="rules")

    for index, rule in enumerate(config.rules):
        for condition in rule.conditions:
            name = canonical_field(condition.field)
            if name is None:
                raise ConfigurationError(
                    f"Unknown field '{condition.field}'",
                    rule_index=index,
                    field="field",
                    value=condition.field,
                )
            if condition.type is RuleType.REGEX:
                if not condition.pattern:
                    raise ConfigurationError(
                        "Regex rule requires a pattern", rule_index=index, field="pattern"
                    )
                try:
                    re.compile(condition.pattern)
                except re.error as e:
                    raise ConfigurationError(
                        f"Invalid regex: {e}", rule_index=index, field="pattern", value=condition.pattern
                    ) from None
            if condition.type is RuleType.RANGE and name in STRING_FIELDS:
                raise ConfigurationError(
                    f"Range rule cannot apply to text field '{condition.field}'",
                    rule_index=index,
                    field="type",
                    value=condition.type.value,
                )

        if rule.cardinality is Cardinality.ONE_TO_MANY:
            keys = [c for c in rule.conditions if canonical_field(c.field) != AMOUNT_FIELD]
            if not keys:
                raise ConfigurationError(
                    "one-to-many rule needs a non-amount condition to group settlements",
                    rule_index=index,
                    field="conditions",
                )
