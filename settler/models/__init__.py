"""Data models for the reconciliation core."""

from .enums import (
    RecordKind,
    TransactionStatus,
    FeeType,
    RuleType,
    ConflictResolution,
    Cardinality,
    MatchType,
    ExceptionCategory,
    ExceptionSeverity,
    ResolutionStatus,
    ExecutionStatus,
    SagaStatus,
    StepStatus,
    AuditAction,
)
from .transaction import (
    Money,
    FinancialRecord,
    Transaction,
    Settlement,
    Fee,
    NormalizedRecord,
)
from .reconciliation import (
    RuleCondition,
    MatchingRule,
    FXConversionSettings,
    MatchingRulesConfig,
    ReconciliationMatch,
    ExceptionRecord,
    MatchingResult,
    ExecutionSummary,
    Execution,
    AuditEntry,
    utcnow,
)

__all__ = [
    "RecordKind",
    "TransactionStatus",
    "FeeType",
    "RuleType",
    "ConflictResolution",
    "Cardinality",
    "MatchType",
    "ExceptionCategory",
    "ExceptionSeverity",
    "ResolutionStatus",
    "ExecutionStatus",
    "SagaStatus",
    "StepStatus",
    "AuditAction",
    "Money",
    "FinancialRecord",
    "Transaction",
    "Settlement",
    "Fee",
    "NormalizedRecord",
    "RuleCondition",
    "MatchingRule",
    "FXConversionSettings",
    "MatchingRulesConfig",
    "ReconciliationMatch",
    "ExceptionRecord",
    "MatchingResult",
    "ExecutionSummary",
    "Execution",
    "AuditEntry",
    "utcnow",
]
