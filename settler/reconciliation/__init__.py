"""Matching engine and exception queue."""

from .engine import MatchingContext, MatchingEngine
from .exception_queue import ExceptionQueue
from .fx import FXConverter, HttpRateProvider, RateProvider, StaticRateProvider
from .rules import RecordView, RuleDefaults, evaluate_condition, evaluate_conditions, validate_rules_config

__all__ = [
    "MatchingEngine",
    "MatchingContext",
    "ExceptionQueue",
    "FXConverter",
    "RateProvider",
    "StaticRateProvider",
    "HttpRateProvider",
    "RecordView",
    "RuleDefaults",
    "evaluate_condition",
    "evaluate_conditions",
    "validate_rules_config",
]
