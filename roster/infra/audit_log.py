# roster/infra/audit_log.py
"""
Audit logging for operator actions that change workflow state.

Records position fills, call-card sends and pushes to a dedicated
"audit" logger (separate from the application log) so they can be
routed to their own sink via logging configuration.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    company_id: str | None = None,
    entity: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "position.fill", "call_sheet.push")
        company_id: Company affected (if applicable)
        entity: Affected entity reference (e.g., "position:42")
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "company_id": company_id or "",
        "entity": entity or "",
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} company={company_id or '-'} entity={entity or '-'} {detail}",
        extra=record,
    )
