"""Enumerations for the reconciliation core."""

from enum import Enum


class RecordKind(str, Enum):
    """Which side of the reconciliation a record belongs to."""
    TRANSACTION = "transaction"  # Payment-side (charge, order)
    SETTLEMENT = "settlement"    # Target-side (payout, deposit, ledger entry)


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class FeeType(str, Enum):
    PROCESSING = "processing"
    FX = "fx"
    DISPUTE = "dispute"
    REFUND = "refund"
    CHARGEBACK = "chargeback"


class RuleType(str, Enum):
    """Matching strategy of a rule."""
    EXACT = "exact"          # Equality, or abs diff <= tolerance for numbers
    RANGE = "range"          # abs diff <= tolerance (days for dates)
    FUZZY = "fuzzy"          # Normalized Levenshtein similarity >= threshold
    REGEX = "regex"          # Pattern-derived comparison key
    COMPOSITE = "composite"  # AND of sub-conditions


class ConflictResolution(str, Enum):
    FIRST_WINS = "first-wins"
    LAST_WINS = "last-wins"
    MANUAL_REVIEW = "manual-review"


class Cardinality(str, Enum):
    ONE_TO_ONE = "one-to-one"
    ONE_TO_MANY = "one-to-many"    # One transaction, split settlements
    MANY_TO_ONE = "many-to-one"    # Batch payout referencing several transactions


class MatchType(str, Enum):
    ONE_TO_ONE = "1-to-1"
    ONE_TO_MANY = "1-to-many"
    MANY_TO_ONE = "many-to-1"


class ExceptionCategory(str, Enum):
    AMOUNT_MISMATCH = "amount_mismatch"
    DATE_MISMATCH = "date_mismatch"
    CURRENCY_MISMATCH = "currency_mismatch"
    REFERENCE_MISMATCH = "reference_mismatch"
    MISSING_COUNTERPART = "missing_counterpart"
    AMBIGUOUS_MATCH = "ambiguous_match"
    FX_RATE_UNAVAILABLE = "fx_rate_unavailable"


class ExceptionSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ResolutionStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class ExecutionStatus(str, Enum):
    """Status of one reconciliation run. Everything but RUNNING is terminal."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


# Sagas share the execution state machine.
SagaStatus = ExecutionStatus


class StepStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"
    DEFERRED = "deferred"


class AuditAction(str, Enum):
    """Type of audit action."""
    RECORD_NORMALIZED = "record_normalized"
    RECORD_REJECTED = "record_rejected"
    FEES_EXTRACTED = "fees_extracted"
    RULE_STARTED = "rule_started"
    RULE_COMPLETED = "rule_completed"
    MATCH_CREATED = "match_created"
    AMBIGUITY_DETECTED = "ambiguity_detected"
    FX_CONVERSION_FAILED = "fx_conversion_failed"
    EXCEPTION_RAISED = "exception_raised"
    EXCEPTION_RESOLVED = "exception_resolved"
