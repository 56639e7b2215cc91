# leadflow/infra/audit_log.py
"""
Audit trail for caller-driven mutations (manual assign, self assign,
accept job).

Written at INFO to the ``audit`` logger so deployments can route it to
its own sink. Automatic reactions are not audited here; they leave
activity records instead.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    caller_uid: Optional[str] = None,
    caller_role: Optional[str] = None,
    team_id: Optional[str] = None,
    lead_id: Optional[str] = None,
    detail: str = "",
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Dotted action name (``lead.manual_assign``)
        caller_uid / caller_role: who did it
        team_id / lead_id: what it touched
        detail: human-readable summary
    """
    record = {
        "audit_action": action,
        "caller_uid": caller_uid or "",
        "caller_role": caller_role or "",
        "team_id": team_id or "",
        "lead_id": lead_id or "",
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} by={caller_uid or '-'}({caller_role or '-'}) lead={lead_id or '-'} {detail}",
        extra=record,
    )
