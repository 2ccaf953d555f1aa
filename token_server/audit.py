"""
Audit trail for the token endpoint: one row per issued, refreshed or rejected token request.
Rows hold grant type, client, subject, IP and the OAuth error code. Never tokens, secrets or form bodies.
"""
import logging

from fastapi import APIRouter, Request
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from token_server.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_TOKEN_FAILED = "token_failed"
EVENT_CODE_REPLAYED = "code_replayed"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"

MAX_AUDIT_ROWS = 500


def _as_dict(row: AuditLog) -> dict:
    return {
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "event_type": row.event_type,
        "grant_type": row.grant_type,
        "client_id": row.client_id,
        "subject": row.subject,
        "ip": row.ip,
        "outcome": row.outcome,
        "error": row.error,
    }


class AuditTrail:
    """Writes audit records in their own session so they survive a failed request."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def record(
        self,
        event_type: str,
        *,
        grant_type: str | None = None,
        client_id: str | None = None,
        subject: str | None = None,
        ip: str | None = None,
        outcome: str = OUTCOME_SUCCESS,
        error: str | None = None,
    ) -> None:
        db = self._session_factory()
        try:
            db.add(
                AuditLog(
                    event_type=event_type,
                    grant_type=grant_type,
                    client_id=client_id,
                    subject=subject,
                    ip=ip,
                    outcome=outcome,
                    error=error,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            # Audit failures never change the token response
            logger.exception("Failed to write audit record %s", event_type)
        finally:
            db.close()

    def recent(self, *, limit: int = 100, **filters) -> list[dict]:
        """Newest first. Filters: event_type, outcome, client_id (None values are ignored)."""
        stmt = select(AuditLog).order_by(AuditLog.id.desc())
        for column in ("event_type", "outcome", "client_id"):
            value = filters.get(column)
            if value:
                stmt = stmt.where(getattr(AuditLog, column) == value)
        stmt = stmt.limit(min(max(1, limit), MAX_AUDIT_ROWS))
        db = self._session_factory()
        try:
            return [_as_dict(row) for row in db.scalars(stmt)]
        finally:
            db.close()


router = APIRouter(tags=["audit"])


@router.get("/audit")
def audit_events(
    request: Request,
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    client_id: str | None = None,
):
    trail: AuditTrail = request.app.state.audit
    return trail.recent(limit=limit, event_type=event_type, outcome=outcome, client_id=client_id)
