"""
Audit trail for reconciliation decisions.
"""

import json
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from ..config import get_settings
from ..models import AuditAction, AuditEntry, utcnow

logger = structlog.get_logger()


class AuditLogger:
    """
    Decision log for one matching run.

    Every entry is kept in memory (the engine hands them back on the
    result) and echoed to structlog at debug level.
    """

    def __init__(self, job_id: str, tenant_id: Optional[str] = None):
        self.job_id = job_id
        self.tenant_id = tenant_id
        self.entries: List[AuditEntry] = []

    def record(
        self,
        action: AuditAction,
        message: str,
        record_ids: Optional[List[str]] = None,
        rule: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        **details,
    ) -> AuditEntry:
        entry = AuditEntry(
            action=action,
            tenant_id=self.tenant_id,
            record_ids=list(record_ids or []),
            rule=rule,
            message=message,
            details=details,
            success=success,
            error_message=error_message,
        )
        self.entries.append(entry)
        logger.debug(
            message,
            action=action.value,
            job_id=self.job_id,
            tenant_id=self.tenant_id,
            record_ids=entry.record_ids,
            rule=rule,
            success=success,
        )
        return entry

    def for_action(self, action: AuditAction) -> List[AuditEntry]:
        return [e for e in self.entries if e.action is action]

    def failures(self) -> List[AuditEntry]:
        return [e for e in self.entries if not e.success]

    def counts(self) -> Dict[str, Any]:
        by_action = Counter(e.action.value for e in self.entries)
        failed = len(self.failures())
        return {
            "total": len(self.entries),
            "failed": failed,
            "succeeded": len(self.entries) - failed,
            "by_action": dict(by_action),
        }

    def export_to_file(self, output_path: Optional[Path] = None) -> Path:
        """Write the trail as JSON; defaults to `<reports_dir>/audit_<job_id>.json`."""
        path = output_path or get_settings().reports_dir / f"audit_{self.job_id}.json"
        path.parent.mkdir(parents=True, exist_ok=True)

        payload = {
            "job_id": self.job_id,
            "tenant_id": self.tenant_id,
            "exported_at": utcnow().isoformat(),
            "counts": self.counts(),
            "entries": [e.to_dict() for e in self.entries],
        }
        path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")

        logger.info("Audit trail exported", path=str(path), entries=len(self.entries))
        return path
