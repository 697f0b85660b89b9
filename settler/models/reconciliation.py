"""Rule configuration and reconciliation result models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
from uuid import uuid4

from ..exceptions import ConfigurationError, InvalidTransitionError
from .enums import (
    AuditAction,
    Cardinality,
    ConflictResolution,
    ExceptionCategory,
    ExceptionSeverity,
    ExecutionStatus,
    MatchType,
    ResolutionStatus,
    RuleType,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_value(enum_cls, raw: Any, rule_index: Optional[int], field_name: str):
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(
            f"Unknown {field_name} '{raw}' (expected one of: {allowed})",
            rule_index=rule_index,
            field=field_name,
            value=raw,
        ) from None


def _decimal_or_none(raw: Any, rule_index: Optional[int], field_name: str) -> Optional[Decimal]:
    if raw is None:
        return None
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise ConfigurationError(
            f"{field_name} must be numeric", rule_index=rule_index, field=field_name, value=raw
        ) from None
    if not value.is_finite() or value < 0:
        raise ConfigurationError(
            f"{field_name} must be a non-negative number",
            rule_index=rule_index,
            field=field_name,
            value=raw,
        )
    return value


@dataclass(frozen=True)
class RuleCondition:
    """A single field predicate. Plain rules are one condition; composite rules AND several."""
    field: str
    type: RuleType
    tolerance: Optional[Decimal] = None  # Amount units, or days for dates
    threshold: Optional[float] = None    # Minimum confidence; fuzzy similarity floor
    pattern: Optional[str] = None        # Regex pattern
    apply_to: str = "both"               # Regex: both | transaction | settlement

    def describe(self) -> str:
        parts = [f"{self.field}:{self.type.value}"]
        if self.tolerance is not None:
            parts.append(f"tol={self.tolerance}")
        if self.threshold is not None:
            parts.append(f"thr={self.threshold}")
        return "/".join(parts)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], rule_index: Optional[int] = None) -> "RuleCondition":
        if "type" not in data:
            raise ConfigurationError("Rule type is required", rule_index=rule_index, field="type")
        rule_type = _enum_value(RuleType, data["type"], rule_index, "type")
        if rule_type is RuleType.COMPOSITE:
            raise ConfigurationError(
                "Composite conditions cannot be nested",
                rule_index=rule_index,
                field="type",
                value=data["type"],
            )
        if not data.get("field"):
            raise ConfigurationError("Rule field is required", rule_index=rule_index, field="field")

        tolerance = data.get("tolerance")
        if isinstance(tolerance, dict):
            # {"amount": 0.01} or {"days": 2}
            tolerance = tolerance.get("amount", tolerance.get("days"))

        threshold = data.get("threshold")
        if threshold is not None:
            try:
                threshold = float(threshold)
            except (TypeError, ValueError):
                raise ConfigurationError(
                    "threshold must be numeric", rule_index=rule_index, field="threshold", value=threshold
                ) from None
            if not 0.0 <= threshold <= 1.0:
                raise ConfigurationError(
                    "threshold must be within [0, 1]",
                    rule_index=rule_index,
                    field="threshold",
                    value=threshold,
                )

        apply_to = data.get("apply_to", data.get("applyTo", "both"))
        if apply_to not in ("both", "transaction", "settlement"):
            raise ConfigurationError(
                "apply_to must be one of: both, transaction, settlement",
                rule_index=rule_index,
                field="apply_to",
                value=apply_to,
            )

        return cls(
            field=str(data["field"]),
            type=rule_type,
            tolerance=_decimal_or_none(tolerance, rule_index, "tolerance"),
            threshold=threshold,
            pattern=data.get("pattern"),
            apply_to=apply_to,
        )


@dataclass(frozen=True)
class MatchingRule:
    """
    One entry of the rule set. Lower priority numbers are evaluated first.
    """
    name: str
    type: RuleType
    priority: int
    conditions: Tuple[RuleCondition, ...]
    cardinality: Cardinality = Cardinality.ONE_TO_ONE
    amount_tolerance: Optional[Decimal] = None  # Group total check for 1:many / many:1

    @property
    def field(self) -> str:
        return "+".join(c.field for c in self.conditions)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], rule_index: Optional[int] = None) -> "MatchingRule":
        if not isinstance(data, dict):
            raise ConfigurationError("Rule must be a mapping", rule_index=rule_index, value=data)
        if "type" not in data:
            raise ConfigurationError("Rule type is required", rule_index=rule_index, field="type")
        rule_type = _enum_value(RuleType, data["type"], rule_index, "type")

        if rule_type is RuleType.COMPOSITE:
            raw_conditions = data.get("conditions") or data.get("fields")
            if not raw_conditions or not isinstance(raw_conditions, list):
                raise ConfigurationError(
                    "Composite rule requires a non-empty 'conditions' list",
                    rule_index=rule_index,
                    field="conditions",
                )
            conditions = tuple(RuleCondition.from_dict(c, rule_index) for c in raw_conditions)
        else:
            conditions = (RuleCondition.from_dict(data, rule_index),)

        priority = data.get("priority", rule_index if rule_index is not None else 0)
        try:
            priority = int(priority)
        except (TypeError, ValueError):
            raise ConfigurationError(
                "priority must be an integer", rule_index=rule_index, field="priority", value=priority
            ) from None

        cardinality = _enum_value(
            Cardinality, data.get("cardinality", Cardinality.ONE_TO_ONE.value), rule_index, "cardinality"
        )

        name = data.get("name") or "+".join(c.describe() for c in conditions)

        return cls(
            name=name,
            type=rule_type,
            priority=priority,
            conditions=conditions,
            cardinality=cardinality,
            amount_tolerance=_decimal_or_none(
                data.get("amount_tolerance", data.get("amountTolerance")), rule_index, "amount_tolerance"
            ),
        )


@dataclass(frozen=True)
class FXConversionSettings:
    enabled: bool = False
    base_currency: str = "USD"


@dataclass(frozen=True)
class MatchingRulesConfig:
    """Rule set for one job. Immutable for the duration of a run."""
    rules: Tuple[MatchingRule, ...]
    conflict_resolution: ConflictResolution = ConflictResolution.FIRST_WINS
    fx_conversion: FXConversionSettings = field(default_factory=FXConversionSettings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MatchingRulesConfig":
        """
        Parse a rule set. Raises ConfigurationError on anything malformed so
        a bad config is rejected before any matching starts.
        """
        if not isinstance(data, dict):
            raise ConfigurationError("Rules config must be a mapping", value=data)
        raw_rules = data.get("rules", data.get("strategies"))
        if not isinstance(raw_rules, list) or not raw_rules:
            raise ConfigurationError("Rules config requires a non-empty 'rules' list", field="rules")

        rules = tuple(MatchingRule.from_dict(r, i) for i, r in enumerate(raw_rules))

        conflict = _enum_value(
            ConflictResolution,
            data.get("conflict_resolution", data.get("conflictResolution", ConflictResolution.FIRST_WINS.value)),
            None,
            "conflict_resolution",
        )

        raw_fx = data.get("fx_conversion", data.get("fxConversion")) or {}
        fx = FXConversionSettings(
            enabled=bool(raw_fx.get("enabled", False)),
            base_currency=str(raw_fx.get("base_currency", raw_fx.get("baseCurrency", "USD"))).upper(),
        )

        return cls(rules=rules, conflict_resolution=conflict, fx_conversion=fx)

    def sorted_rules(self) -> List[MatchingRule]:
        """Rules by ascending priority; equal priorities keep input order."""
        return sorted(self.rules, key=lambda r: r.priority)


@dataclass(frozen=True)
class ReconciliationMatch:
    """A confirmed correspondence between transaction(s) and settlement(s)."""
    id: str
    tenant_id: str
    transaction_ids: Tuple[str, ...]
    settlement_ids: Tuple[str, ...]
    match_type: MatchType
    confidence: float
    matched_by_rule: str
    created_at: datetime = field(default_factory=utcnow)
    execution_id: Optional[str] = None
    job_id: Optional[str] = None
    superseded: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def signature(self) -> Tuple[FrozenSet[str], FrozenSet[str], str, float]:
        """Identity of the match independent of timestamps."""
        return (
            frozenset(self.transaction_ids),
            frozenset(self.settlement_ids),
            self.matched_by_rule,
            round(self.confidence, 9),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "transaction_ids": list(self.transaction_ids),
            "settlement_ids": list(self.settlement_ids),
            "match_type": self.match_type.value,
            "confidence": self.confidence,
            "matched_by_rule": self.matched_by_rule,
            "created_at": self.created_at.isoformat(),
            "execution_id": self.execution_id,
            "job_id": self.job_id,
            "superseded": self.superseded,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReconciliationMatch":
        return cls(
            id=data["id"],
            tenant_id=data["tenant_id"],
            transaction_ids=tuple(data["transaction_ids"]),
            settlement_ids=tuple(data["settlement_ids"]),
            match_type=MatchType(data["match_type"]),
            confidence=float(data["confidence"]),
            matched_by_rule=data["matched_by_rule"],
            created_at=datetime.fromisoformat(data["created_at"]),
            execution_id=data.get("execution_id"),
            job_id=data.get("job_id"),
            superseded=bool(data.get("superseded", False)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class ExceptionRecord:
    """
    An unmatched or ambiguous record awaiting review (the "exception queue"
    item). This is matcher output, not a Python exception.
    """
    id: str
    tenant_id: str
    category: ExceptionCategory
    severity: ExceptionSeverity
    description: str
    resolution_status: ResolutionStatus = ResolutionStatus.OPEN
    related_transaction_id: Optional[str] = None
    related_settlement_id: Optional[str] = None
    execution_id: Optional[str] = None
    job_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.resolution_status in (ResolutionStatus.OPEN, ResolutionStatus.IN_PROGRESS)

    @property
    def record_id(self) -> Optional[str]:
        return self.related_transaction_id or self.related_settlement_id

    def signature(self) -> Tuple[str, Optional[str], Optional[str]]:
        return (self.category.value, self.related_transaction_id, self.related_settlement_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "category": self.category.value,
            "severity": self.severity.value,
            "description": self.description,
            "resolution_status": self.resolution_status.value,
            "related_transaction_id": self.related_transaction_id,
            "related_settlement_id": self.related_settlement_id,
            "execution_id": self.execution_id,
            "job_id": self.job_id,
            "details": dict(self.details),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "resolved_by": self.resolved_by,
            "resolution_notes": self.resolution_notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExceptionRecord":
        return cls(
            id=data["id"],
            tenant_id=data["tenant_id"],
            category=ExceptionCategory(data["category"]),
            severity=ExceptionSeverity(data["severity"]),
            description=data["description"],
            resolution_status=ResolutionStatus(data.get("resolution_status", "open")),
            related_transaction_id=data.get("related_transaction_id"),
            related_settlement_id=data.get("related_settlement_id"),
            execution_id=data.get("execution_id"),
            job_id=data.get("job_id"),
            details=dict(data.get("details") or {}),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            resolved_by=data.get("resolved_by"),
            resolution_notes=data.get("resolution_notes"),
        )


@dataclass
class MatchingResult:
    """Output of one matching pass."""
    matches: List[ReconciliationMatch] = field(default_factory=list)
    exceptions: List[ExceptionRecord] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)
    audit_entries: List["AuditEntry"] = field(default_factory=list)


@dataclass
class ExecutionSummary:
    matched: int = 0
    unmatched: int = 0
    errors: int = 0
    accuracy: Optional[float] = None

    @classmethod
    def compute(cls, matched: int, unmatched: int, errors: int = 0) -> "ExecutionSummary":
        """accuracy = matched / (matched + unmatched) * 100, undefined for an empty run."""
        total = matched + unmatched
        accuracy = (matched / total) * 100 if total > 0 else None
        return cls(matched=matched, unmatched=unmatched, errors=errors, accuracy=accuracy)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched": self.matched,
            "unmatched": self.unmatched,
            "errors": self.errors,
            "accuracy": self.accuracy,
        }


@dataclass
class Execution:
    """
    One run of a reconciliation job.

    running -> completed | failed | cancelled; terminal states are final.
    """
    job_id: str
    tenant_id: str
    id: str = field(default_factory=lambda: str(uuid4()))
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    summary: Optional[ExecutionSummary] = None

    def _ensure_running(self, operation: str) -> None:
        if self.status.is_terminal:
            raise InvalidTransitionError(self.id, self.status.value, operation)

    def complete(self, summary: ExecutionSummary, at: Optional[datetime] = None) -> None:
        self._ensure_running("complete")
        self.status = ExecutionStatus.COMPLETED
        self.completed_at = at or utcnow()
        self.summary = summary

    def fail(self, error: str, at: Optional[datetime] = None) -> None:
        self._ensure_running("fail")
        self.status = ExecutionStatus.FAILED
        self.completed_at = at or utcnow()
        self.error = error

    def cancel(self, at: Optional[datetime] = None) -> None:
        self._ensure_running("cancel")
        self.status = ExecutionStatus.CANCELLED
        self.completed_at = at or utcnow()


@dataclass
class AuditEntry:
    """An entry in the audit log."""
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    action: AuditAction = AuditAction.RULE_STARTED

    # Context
    tenant_id: Optional[str] = None
    record_ids: List[str] = field(default_factory=list)
    rule: Optional[str] = None

    # Details
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    # Outcome
    success: bool = True
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "tenant_id": self.tenant_id,
            "record_ids": list(self.record_ids),
            "rule": self.rule,
            "message": self.message,
            "details": dict(self.details),
            "success": self.success,
            "error_message": self.error_message,
        }
