"""
Matching Engine - rule-priority greedy allocation of transactions to settlements.

Rules run in ascending priority. Each rule only sees records no earlier
rule matched, so a higher-priority rule always claims a pair first. Whatever
is left after the last rule becomes an exception, categorised by its
nearest miss.

The pass is synchronous and deterministic: records are ordered by
(timestamp, id) and all ids are derived from content, so re-running on the
same input yields the same matches and exceptions.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, MutableMapping, Optional, Set, Tuple
from uuid import NAMESPACE_URL, uuid5

import structlog

from ..exceptions import ConfigurationError, RateLookupError, SecurityError, ValidationError
from ..models import (
    AuditAction,
    Cardinality,
    ConflictResolution,
    ExceptionCategory,
    ExceptionRecord,
    ExceptionSeverity,
    MatchingResult,
    MatchingRule,
    MatchingRulesConfig,
    MatchType,
    ReconciliationMatch,
    RuleType,
    Settlement,
    Transaction,
    utcnow,
)
from ..utils.audit_logger import AuditLogger
from .fx import FXConverter, RateProvider
from .rules import (
    AMOUNT_FIELD,
    DATE_FIELD,
    RecordView,
    RuleDefaults,
    canonical_field,
    days_between,
    evaluate_conditions,
    tolerance_score,
    validate_rules_config,
)

logger = structlog.get_logger()

LARGE_AMOUNT_DIFFERENCE = Decimal("100")


@dataclass
class MatchingContext:
    """Input of one matching pass."""
    transactions: List[Transaction]
    settlements: List[Settlement]
    rules: MatchingRulesConfig
    tenant_id: str
    job_id: Optional[str] = None
    execution_id: Optional[str] = None


@dataclass
class _Pair:
    transaction: RecordView
    settlement: RecordView
    score: float


class _RunState:
    """Candidate pools and outputs of a single pass."""

    def __init__(self, transactions: List[RecordView], settlements: List[RecordView]):
        self.transactions = transactions
        self.settlements = settlements
        self.matched: Set[str] = set()
        self.flagged: Set[str] = set()
        # Record id -> flagged records it tied for
        self.contended: Dict[str, List[str]] = {}
        self.matches: List[ReconciliationMatch] = []
        self.exceptions: List[ExceptionRecord] = []

    def is_free(self, view: RecordView) -> bool:
        return view.id not in self.matched and view.id not in self.flagged

    def free_transactions(self) -> List[RecordView]:
        return [v for v in self.transactions if self.is_free(v)]

    def free_settlements(self) -> List[RecordView]:
        return [v for v in self.settlements if self.is_free(v)]


class MatchingEngine:
    """
    Evaluates a rule set over transactions and settlements.

    The rate provider, rate cache and clock are injected; the engine keeps
    no state between calls.
    """

    def __init__(
        self,
        rate_provider: Optional[RateProvider] = None,
        rate_cache: Optional[MutableMapping] = None,
        clock: Callable[[], datetime] = utcnow,
        defaults: Optional[RuleDefaults] = None,
    ):
        self.rate_provider = rate_provider
        self.rate_cache = rate_cache if rate_cache is not None else {}
        self.clock = clock
        self.defaults = defaults or RuleDefaults.from_settings()

    def match(self, context: MatchingContext) -> MatchingResult:
        """
        Run one matching pass.

        Raises SecurityError or ConfigurationError before any record is
        touched; never raises for unmatched records.
        """
        self._check_tenant(context)
        self._check_config(context.rules)

        audit = AuditLogger(context.job_id or "adhoc", tenant_id=context.tenant_id)
        logger.info(
            "Starting matching",
            tenant_id=context.tenant_id,
            job_id=context.job_id,
            transactions=len(context.transactions),
            settlements=len(context.settlements),
            rules=len(context.rules.rules),
        )

        state = _RunState(
            self._build_views(context.transactions, context.rules, audit),
            self._build_views(context.settlements, context.rules, audit),
        )
        stats: Dict[str, int] = {
            "transactions": len(context.transactions),
            "settlements": len(context.settlements),
            "fx_failures": sum(1 for v in state.transactions + state.settlements if v.fx_error),
        }

        for rule in context.rules.sorted_rules():
            before = len(state.matches)
            audit.record(AuditAction.RULE_STARTED, f"Evaluating rule {rule.name}", rule=rule.name)

            if rule.cardinality is Cardinality.MANY_TO_ONE:
                self._apply_many_to_one(rule, context, state, audit)
            elif rule.cardinality is Cardinality.ONE_TO_MANY:
                self._apply_one_to_many(rule, context, state, audit)
            else:
                self._apply_one_to_one(rule, context, state, audit)

            created = len(state.matches) - before
            stats[f"rule:{rule.name}"] = created
            audit.record(
                AuditAction.RULE_COMPLETED,
                f"Rule {rule.name} produced {created} matches",
                rule=rule.name,
                matches=created,
            )

        self._raise_unmatched(context, state, audit)

        stats.update({
            "matches": len(state.matches),
            "matched_transactions": sum(len(m.transaction_ids) for m in state.matches),
            "matched_settlements": sum(len(m.settlement_ids) for m in state.matches),
            "exceptions": len(state.exceptions),
            "ambiguous": len(state.flagged),
        })

        logger.info("Matching complete", tenant_id=context.tenant_id, job_id=context.job_id, **stats)

        return MatchingResult(
            matches=state.matches,
            exceptions=state.exceptions,
            stats=stats,
            audit_entries=audit.entries,
        )

    # Validation

    def _check_tenant(self, context: MatchingContext) -> None:
        for label, records in (("transaction", context.transactions), ("settlement", context.settlements)):
            seen = set()
            for record in records:
                if record.tenant_id != context.tenant_id:
                    logger.error(
                        "Cross-tenant record rejected",
                        tenant_id=context.tenant_id,
                        record_id=record.id,
                        record_tenant_id=record.tenant_id,
                    )
                    raise SecurityError(
                        f"{label.capitalize()} {record.id} belongs to another tenant",
                        tenant_id=context.tenant_id,
                        resource_tenant_id=record.tenant_id,
                    )
                if record.id in seen:
                    raise ValidationError(f"Duplicate {label} id {record.id}", field="id", value=record.id)
                seen.add(record.id)

    def _check_config(self, config: MatchingRulesConfig) -> None:
        validate_rules_config(config)
        if config.fx_conversion.enabled and self.rate_provider is None:
            raise ConfigurationError(
                "FX conversion is enabled but no rate provider is configured",
                field="fx_conversion",
                value=config.fx_conversion.base_currency,
            )

    # Views

    def _build_views(self, records, config: MatchingRulesConfig, audit: AuditLogger) -> List[RecordView]:
        ordered = sorted(records, key=lambda r: (r.timestamp, r.id))
        if not config.fx_conversion.enabled:
            return [RecordView(record=r, amount=r.amount) for r in ordered]

        converter = FXConverter(self.rate_provider, config.fx_conversion.base_currency, cache=self.rate_cache)
        views = []
        for record in ordered:
            if record.currency == converter.base_currency:
                views.append(RecordView(record=record, amount=record.amount))
                continue
            try:
                converted = converter.convert(record.amount, on=record.timestamp.date())
            except RateLookupError as e:
                # The amount stays unknown so every amount predicate fails for this record
                views.append(RecordView(record=record, amount=None, fx_error=str(e)))
                audit.record(
                    AuditAction.FX_CONVERSION_FAILED,
                    "FX conversion failed",
                    record_ids=[record.id],
                    success=False,
                    error_message=str(e),
                )
                continue
            views.append(RecordView(
                record=record,
                amount=converted,
                fx={
                    "original_amount": str(record.amount.value),
                    "original_currency": record.currency,
                    "converted_amount": str(converted.value),
                    "base_currency": converted.currency,
                    "rate": str(converter.rate(record.currency, converted.currency, record.timestamp.date())),
                },
            ))
        return views

    # 1:1

    def _candidate_pairs(self, rule: MatchingRule, transactions, settlements) -> List[_Pair]:
        pairs = []
        for t in transactions:
            for s in settlements:
                score = evaluate_conditions(rule.conditions, t, s, self.defaults)
                if score is not None:
                    pairs.append(_Pair(t, s, score))
        return pairs

    def _apply_one_to_one(self, rule, context, state: _RunState, audit: AuditLogger) -> None:
        policy = context.rules.conflict_resolution
        if policy is ConflictResolution.MANUAL_REVIEW:
            self._one_to_one_manual_review(rule, context, state, audit)
            return

        transactions = state.free_transactions()
        settlements = state.free_settlements()
        if policy is ConflictResolution.LAST_WINS:
            transactions = list(reversed(transactions))

        for t in transactions:
            best: Optional[_Pair] = None
            for s in settlements:
                if not state.is_free(s):
                    continue
                score = evaluate_conditions(rule.conditions, t, s, self.defaults)
                if score is None:
                    continue
                # Ties go to the earliest candidate (first-wins) or the latest (last-wins)
                if best is None or score > best.score or (
                    score == best.score and policy is ConflictResolution.LAST_WINS
                ):
                    best = _Pair(t, s, score)
            if best is not None:
                self._record_match(rule, context, state, audit, [best.transaction], [best.settlement], best.score)

    def _one_to_one_manual_review(self, rule, context, state: _RunState, audit: AuditLogger) -> None:
        """
        Match only mutual unique best pairs. A record whose best score is
        shared by several counterparts is taken out of the pool and flagged.
        Repeats until a round changes nothing.
        """
        while True:
            pairs = self._candidate_pairs(rule, state.free_transactions(), state.free_settlements())
            if not pairs:
                return

            by_tx: Dict[str, List[_Pair]] = {}
            by_st: Dict[str, List[_Pair]] = {}
            for pair in pairs:
                by_tx.setdefault(pair.transaction.id, []).append(pair)
                by_st.setdefault(pair.settlement.id, []).append(pair)

            changed = False
            best_tx = {}
            for tx_id, tx_pairs in by_tx.items():
                top = max(p.score for p in tx_pairs)
                tied = [p for p in tx_pairs if p.score == top]
                if len(tied) > 1:
                    self._flag_ambiguous(
                        rule, context, state, audit, tied[0].transaction,
                        [p.settlement.id for p in tied], top,
                    )
                    changed = True
                else:
                    best_tx[tx_id] = tied[0]

            best_st = {}
            for st_id, st_pairs in by_st.items():
                top = max(p.score for p in st_pairs)
                tied = [p for p in st_pairs if p.score == top]
                if len(tied) > 1:
                    self._flag_ambiguous(
                        rule, context, state, audit, tied[0].settlement,
                        [p.transaction.id for p in tied], top,
                    )
                    changed = True
                else:
                    best_st[st_id] = tied[0]

            for tx_id, pair in best_tx.items():
                if not (state.is_free(pair.transaction) and state.is_free(pair.settlement)):
                    continue
                mutual = best_st.get(pair.settlement.id)
                if mutual is not None and mutual.transaction.id == tx_id:
                    self._record_match(
                        rule, context, state, audit, [pair.transaction], [pair.settlement], pair.score
                    )
                    changed = True

            if not changed:
                return

    # 1:many

    def _apply_one_to_many(self, rule, context, state: _RunState, audit: AuditLogger) -> None:
        """One transaction against a group of settlements sharing its key fields."""
        key_conditions = [c for c in rule.conditions if canonical_field(c.field) != AMOUNT_FIELD]
        policy = context.rules.conflict_resolution

        transactions = state.free_transactions()
        if policy is ConflictResolution.LAST_WINS:
            transactions = list(reversed(transactions))

        # Settlements each free transaction could claim
        compatible: Dict[str, List[Tuple[RecordView, float]]] = {}
        claimed_by: Dict[str, Set[str]] = {}
        for t in transactions:
            group = []
            for s in state.free_settlements():
                score = evaluate_conditions(key_conditions, t, s, self.defaults)
                if score is not None:
                    group.append((s, score))
                    claimed_by.setdefault(s.id, set()).add(t.id)
            compatible[t.id] = group

        for t in transactions:
            group = [(s, score) for s, score in compatible[t.id] if state.is_free(s)]
            if len(group) < 2 or t.amount is None:
                continue
            if any(s.amount is None or s.amount.currency != t.amount.currency for s, _ in group):
                continue

            total = sum((s.amount.value for s, _ in group), Decimal("0"))
            amount_score = tolerance_score(abs(total - t.amount.value), self._group_tolerance(rule))
            if amount_score is None:
                continue

            if policy is ConflictResolution.MANUAL_REVIEW and any(len(claimed_by[s.id]) > 1 for s, _ in group):
                contested = sorted({tid for s, _ in group for tid in claimed_by[s.id]} - {t.id})
                self._flag_ambiguous(rule, context, state, audit, t, contested, amount_score)
                continue

            confidence = min([amount_score] + [score for _, score in group])
            self._record_match(rule, context, state, audit, [t], [s for s, _ in group], confidence)

    # many:1

    def _apply_many_to_one(self, rule, context, state: _RunState, audit: AuditLogger) -> None:
        """A batch settlement against the transactions it lists in transaction_ids."""
        key_conditions = [c for c in rule.conditions if canonical_field(c.field) != AMOUNT_FIELD]
        policy = context.rules.conflict_resolution

        settlements = [s for s in state.free_settlements() if s.record.transaction_ids]
        if policy is ConflictResolution.LAST_WINS:
            settlements = list(reversed(settlements))

        def linked(settlement: RecordView) -> List[RecordView]:
            wanted = set(settlement.record.transaction_ids)
            return [
                t for t in state.transactions
                if t.id in wanted or t.record.provider_transaction_id in wanted
            ]

        claims: Dict[str, Set[str]] = {}
        for s in settlements:
            for t in linked(s):
                claims.setdefault(t.id, set()).add(s.id)

        for s in settlements:
            if not state.is_free(s) or s.amount is None:
                continue
            group = linked(s)
            # Every listed transaction must be present and still unallocated
            if len(group) != len(set(s.record.transaction_ids)) or not all(state.is_free(t) for t in group):
                continue
            if any(t.amount is None or t.amount.currency != s.amount.currency for t in group):
                continue

            scores = []
            for t in group:
                score = evaluate_conditions(key_conditions, t, s, self.defaults) if key_conditions else 1.0
                if score is None:
                    break
                scores.append(score)
            else:
                total = sum((t.amount.value for t in group), Decimal("0"))
                amount_score = tolerance_score(abs(total - s.amount.value), self._group_tolerance(rule))
                if amount_score is None:
                    continue

                if policy is ConflictResolution.MANUAL_REVIEW and any(len(claims[t.id]) > 1 for t in group):
                    contested = sorted({sid for t in group for sid in claims[t.id]} - {s.id})
                    self._flag_ambiguous(rule, context, state, audit, s, contested, amount_score)
                    continue

                self._record_match(rule, context, state, audit, group, [s], min([amount_score] + scores))

    def _group_tolerance(self, rule: MatchingRule) -> Decimal:
        if rule.amount_tolerance is not None:
            return rule.amount_tolerance
        for condition in rule.conditions:
            if canonical_field(condition.field) == AMOUNT_FIELD and condition.tolerance is not None:
                return condition.tolerance
        return self.defaults.amount_tolerance

    # Outputs

    def _record_match(
        self,
        rule: MatchingRule,
        context: MatchingContext,
        state: _RunState,
        audit: AuditLogger,
        transactions: List[RecordView],
        settlements: List[RecordView],
        confidence: float,
    ) -> None:
        tx_ids = tuple(t.id for t in transactions)
        st_ids = tuple(s.id for s in settlements)
        if len(tx_ids) > 1:
            match_type = MatchType.MANY_TO_ONE
        elif len(st_ids) > 1:
            match_type = MatchType.ONE_TO_MANY
        else:
            match_type = MatchType.ONE_TO_ONE

        metadata = {"rule_priority": rule.priority}
        fx = {v.id: v.fx for v in transactions + settlements if v.fx}
        if fx:
            metadata["fx"] = fx

        match = ReconciliationMatch(
            id=str(uuid5(
                NAMESPACE_URL,
                f"settler-match:{context.tenant_id}:{','.join(sorted(tx_ids))}:{','.join(sorted(st_ids))}:{rule.name}",
            )),
            tenant_id=context.tenant_id,
            transaction_ids=tx_ids,
            settlement_ids=st_ids,
            match_type=match_type,
            confidence=max(0.0, min(1.0, confidence)),
            matched_by_rule=rule.name,
            created_at=self.clock(),
            execution_id=context.execution_id,
            job_id=context.job_id,
            metadata=metadata,
        )
        state.matches.append(match)
        state.matched.update(tx_ids)
        state.matched.update(st_ids)

        audit.record(
            AuditAction.MATCH_CREATED,
            f"Matched {match_type.value} by {rule.name}",
            record_ids=list(tx_ids + st_ids),
            rule=rule.name,
            confidence=match.confidence,
        )

    def _new_exception(
        self,
        context: MatchingContext,
        category: ExceptionCategory,
        severity: ExceptionSeverity,
        description: str,
        transaction_id: Optional[str] = None,
        settlement_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> ExceptionRecord:
        now = self.clock()
        return ExceptionRecord(
            id=str(uuid5(
                NAMESPACE_URL,
                f"settler-exception:{context.tenant_id}:{category.value}:{transaction_id}:{settlement_id}",
            )),
            tenant_id=context.tenant_id,
            category=category,
            severity=severity,
            description=description,
            related_transaction_id=transaction_id,
            related_settlement_id=settlement_id,
            execution_id=context.execution_id,
            job_id=context.job_id,
            details=details or {},
            created_at=now,
            updated_at=now,
        )

    def _flag_ambiguous(
        self,
        rule: MatchingRule,
        context: MatchingContext,
        state: _RunState,
        audit: AuditLogger,
        view: RecordView,
        candidate_ids: List[str],
        score: float,
    ) -> None:
        if not state.is_free(view):
            return
        is_settlement = isinstance(view.record, Settlement)
        exception = self._new_exception(
            context,
            ExceptionCategory.AMBIGUOUS_MATCH,
            ExceptionSeverity.MEDIUM,
            f"{len(candidate_ids)} candidates tie at confidence {score:.3f} under rule {rule.name}",
            transaction_id=None if is_settlement else view.id,
            settlement_id=view.id if is_settlement else None,
            details={"rule": rule.name, "candidates": list(candidate_ids), "confidence": score},
        )
        state.exceptions.append(exception)
        state.flagged.add(view.id)
        for candidate_id in candidate_ids:
            state.contended.setdefault(candidate_id, []).append(view.id)
        audit.record(
            AuditAction.AMBIGUITY_DETECTED,
            "Tie left for manual review",
            record_ids=[view.id] + list(candidate_ids),
            rule=rule.name,
        )

    # Nearest miss

    def _miss_tolerances(self, config: MatchingRulesConfig) -> Tuple[Decimal, float]:
        amount_tol: Optional[Decimal] = None
        date_tol: Optional[float] = None
        for rule in config.sorted_rules():
            for condition in rule.conditions:
                if condition.type in (RuleType.FUZZY, RuleType.REGEX) or condition.tolerance is None:
                    continue
                name = canonical_field(condition.field)
                if name == AMOUNT_FIELD and amount_tol is None:
                    amount_tol = condition.tolerance
                elif name == DATE_FIELD and date_tol is None:
                    date_tol = float(condition.tolerance)
        return (
            amount_tol if amount_tol is not None else self.defaults.amount_tolerance,
            date_tol if date_tol is not None else self.defaults.date_tolerance_days,
        )

    def _nearest_miss(
        self,
        view: RecordView,
        counterparts: List[RecordView],
        config: MatchingRulesConfig,
    ) -> Tuple[ExceptionCategory, ExceptionSeverity, Optional[RecordView], str]:
        """Category, severity, the closest counterpart (if any) and a description."""
        if view.amount is None:
            return (
                ExceptionCategory.FX_RATE_UNAVAILABLE,
                ExceptionSeverity.HIGH,
                None,
                f"No FX rate for {view.record.currency}: {view.fx_error}",
            )

        amount_tol, date_tol = self._miss_tolerances(config)

        def diff(c: RecordView) -> Decimal:
            return abs(c.amount.value - view.amount.value)

        def days(c: RecordView) -> float:
            return days_between(c.record.timestamp, view.record.timestamp)

        def same_reference(c: RecordView) -> bool:
            a, b = view.record.reference_id, c.record.reference_id
            return bool(a and b and a.strip().lower() == b.strip().lower())

        priced = [c for c in counterparts if c.amount is not None]
        same_currency = [c for c in priced if c.amount.currency == view.amount.currency]

        close = [c for c in same_currency if diff(c) <= amount_tol]
        if close:
            in_window = [c for c in close if days(c) <= date_tol]
            if in_window:
                nearest = min(in_window, key=lambda c: (diff(c), days(c)))
                return (
                    ExceptionCategory.REFERENCE_MISMATCH,
                    ExceptionSeverity.LOW,
                    nearest,
                    f"Amount and date agree with {nearest.id} but no rule matched their references",
                )
            nearest = min(close, key=lambda c: (days(c), diff(c)))
            return (
                ExceptionCategory.DATE_MISMATCH,
                ExceptionSeverity.LOW,
                nearest,
                f"Same amount as {nearest.id} but {days(nearest):.1f} days apart (tolerance {date_tol:g})",
            )

        related = [c for c in same_currency if days(c) <= date_tol or same_reference(c)]
        if related:
            nearest = min(related, key=lambda c: (diff(c), days(c)))
            difference = diff(nearest)
            severity = (
                ExceptionSeverity.HIGH if difference >= LARGE_AMOUNT_DIFFERENCE else ExceptionSeverity.MEDIUM
            )
            return (
                ExceptionCategory.AMOUNT_MISMATCH,
                severity,
                nearest,
                f"Amount differs from {nearest.id} by {difference} {view.amount.currency} "
                f"(tolerance {amount_tol})",
            )

        if not config.fx_conversion.enabled:
            foreign = [
                c for c in priced
                if c.amount.currency != view.amount.currency and (days(c) <= date_tol or same_reference(c))
            ]
            if foreign:
                nearest = min(foreign, key=lambda c: (days(c), c.id))
                return (
                    ExceptionCategory.CURRENCY_MISMATCH,
                    ExceptionSeverity.MEDIUM,
                    nearest,
                    f"Counterpart {nearest.id} is in {nearest.amount.currency}, "
                    f"record is in {view.amount.currency} and FX conversion is off",
                )

        return (
            ExceptionCategory.MISSING_COUNTERPART,
            ExceptionSeverity.MEDIUM,
            None,
            "No counterpart found",
        )

    def _raise_unmatched(self, context: MatchingContext, state: _RunState, audit: AuditLogger) -> None:
        """
        One exception per leftover record. A transaction and its nearest-miss
        settlement share a single exception. Records that lost a candidate
        to a manual-review tie are reported as part of that ambiguity.
        """
        covered: Set[str] = set()

        for view in state.free_transactions() + state.free_settlements():
            flagged_ids = state.contended.get(view.id)
            if not flagged_ids:
                continue
            covered.add(view.id)
            is_settlement = isinstance(view.record, Settlement)
            self._emit_exception(
                context, state, audit,
                ExceptionCategory.AMBIGUOUS_MATCH,
                ExceptionSeverity.MEDIUM,
                f"Tied with other records for {', '.join(flagged_ids)}, left for manual review",
                transaction_id=None if is_settlement else view.id,
                settlement_id=view.id if is_settlement else None,
                details={"contended_ids": list(flagged_ids)},
            )

        for t in state.free_transactions():
            if t.id in covered:
                continue
            counterparts = [s for s in state.free_settlements() if s.id not in covered]
            category, severity, nearest, description = self._nearest_miss(t, counterparts, context.rules)
            settlement_id = nearest.id if nearest is not None else None
            if settlement_id:
                covered.add(settlement_id)
            self._emit_exception(
                context, state, audit, category, severity, description,
                transaction_id=t.id, settlement_id=settlement_id,
            )

        for s in state.free_settlements():
            if s.id in covered:
                continue
            category, severity, nearest, description = self._nearest_miss(s, state.free_transactions(), context.rules)
            details = {"nearest_counterpart_id": nearest.id} if nearest is not None else {}
            self._emit_exception(
                context, state, audit, category, severity, description,
                settlement_id=s.id, details=details,
            )

    def _emit_exception(
        self,
        context: MatchingContext,
        state: _RunState,
        audit: AuditLogger,
        category: ExceptionCategory,
        severity: ExceptionSeverity,
        description: str,
        transaction_id: Optional[str] = None,
        settlement_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        exception = self._new_exception(
            context, category, severity, description,
            transaction_id=transaction_id, settlement_id=settlement_id, details=details,
        )
        state.exceptions.append(exception)
        audit.record(
            AuditAction.EXCEPTION_RAISED,
            description,
            record_ids=[i for i in (transaction_id, settlement_id) if i],
            category=category.value,
            severity=severity.value,
        )
