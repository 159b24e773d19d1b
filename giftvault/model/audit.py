# model/audit.py
from __future__ import annotations
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ..helpers import now_ts, to_iso
from ..infra.sql import Gated
from .db import AuditLog

log = structlog.get_logger(__name__)


class AuditTrail:
    """Append-only record of sensitive actions.

    Writes are best-effort: a failed insert is logged and swallowed so an
    audit outage never undoes the business operation that triggered it.
    """

    def __init__(self, SessionAsync, gated: Gated) -> None:
        self.SessionAsync = SessionAsync
        self.gated = gated

    async def record(
        self,
        company_id: str,
        actor: str,
        action: str,
        resource_type: str,
        resource_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = AuditLog(
            company_id=company_id,
            actor=actor,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=metadata or {},
            created_at=now_ts(),
        )
        try:
            async with self.gated():
                async with self.SessionAsync() as s:
                    async with s.begin():
                        s.add(entry)
        except SQLAlchemyError as e:
            log.error("audit.write_failed", action=action,
                      resource_id=resource_id, error=str(e))

    async def list(self, company_id: str,
                   limit: int = 100) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.SessionAsync() as s:
                rows = (await s.execute(
                    select(AuditLog)
                    .where(AuditLog.company_id == company_id)
                    .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
                    .limit(limit)
                )).scalars().all()
        return [
            {
                "id": r.id,
                "actor": r.actor,
                "action": r.action,
                "resource_type": r.resource_type,
                "resource_id": r.resource_id,
                "metadata": r.details,
                "created_at": to_iso(r.created_at),
            }
            for r in rows
        ]
