"""
Database Package - PostgreSQL with SQLAlchemy
==============================================

Persistence layer for circles, cases and the audit trail.
"""

from .models import (
    Base,
    Circle, UserProfile,
    Case, CaseCircleLink,
    Thread, Message,
    Document,
    AuditEntry,
    UserRole, CaseStatus, CasePriority, LinkRole,
)
from .session import get_db, get_db_session, init_db, get_engine, new_session

__all__ = [
    # Base
    "Base",
    # Organization
    "Circle", "UserProfile",
    # Case Management
    "Case", "CaseCircleLink",
    # Discussions
    "Thread", "Message",
    # Documents
    "Document",
    # Audit
    "AuditEntry",
    # Enums
    "UserRole", "CaseStatus", "CasePriority", "LinkRole",
    # Session
    "get_db", "get_db_session", "init_db", "get_engine", "new_session",
]
