"""Utility modules."""

from .audit_logger import AuditLogger
from .text_similarity import levenshtein_similarity, normalize_text

__all__ = ["AuditLogger", "levenshtein_similarity", "normalize_text"]
