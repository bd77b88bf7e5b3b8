"""
Audit Recorder
==============

Append-only audit trail for authorization decisions and completed mutations.

Each entry is written and committed in its own session so that it survives a
rollback of the business operation that triggered it. Writing is never gated
by policy. A failed write raises StoreUnavailable; callers treat that as Deny.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db.models import AuditEntry
from .db.session import new_session
from .errors import StoreUnavailable
from .policy import Action, Decision, ResourceRef

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 500


@dataclass(frozen=True)
class RequestContext:
    """Where a request came from"""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditRecorder:
    """Writes AuditEntry rows through a dedicated session per entry"""

    def __init__(self, session_factory: Callable[[], Session] = new_session):
        self._session_factory = session_factory

    def record(
        self,
        user_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> AuditEntry:
        """
        Append one entry.

        Raises:
            StoreUnavailable: the entry could not be made durable
        """
        context = context or RequestContext()
        entry = AuditEntry(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details or {},
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )

        db = None
        try:
            db = self._session_factory()
            db.add(entry)
            db.commit()
            db.refresh(entry)
            db.expunge(entry)
        except SQLAlchemyError as e:
            if db is not None:
                db.rollback()
            logger.error(f"Audit write failed for {action} on {resource_type}: {e}", exc_info=True)
            raise StoreUnavailable("Audit store unavailable") from e
        finally:
            if db is not None:
                db.close()

        return entry

    def record_decision(
        self,
        actor_id: Optional[str],
        action: Action,
        ref: ResourceRef,
        decision: Decision,
        context: Optional[RequestContext] = None,
    ) -> AuditEntry:
        details = {
            "phase": "authorization",
            "decision": "allow" if decision.allowed else "deny",
            "reason": decision.reason.value,
            "rule": decision.rule,
        }
        if ref.parent_id:
            details["parent_id"] = ref.parent_id
        return self.record(
            actor_id,
            action.value,
            ref.resource_type.value,
            ref.resource_id,
            details,
            context,
        )

    def record_mutation(
        self,
        actor_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> AuditEntry:
        return self.record(
            actor_id,
            action,
            resource_type,
            resource_id,
            {"phase": "mutation", **(details or {})},
            context,
        )

    def list_entries(
        self,
        user_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """Newest first."""
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        db = None
        try:
            db = self._session_factory()
            query = db.query(AuditEntry)
            if user_id:
                query = query.filter(AuditEntry.user_id == user_id)
            if resource_type:
                query = query.filter(AuditEntry.resource_type == resource_type)
            if resource_id:
                query = query.filter(AuditEntry.resource_id == resource_id)
            if action:
                query = query.filter(AuditEntry.action == action)
            entries = query.order_by(AuditEntry.created_at.desc()).limit(limit).all()
            db.expunge_all()
            return entries
        except SQLAlchemyError as e:
            logger.error(f"Audit read failed: {e}", exc_info=True)
            raise StoreUnavailable("Audit store unavailable") from e
        finally:
            if db is not None:
                db.close()
