"""
SQLAlchemy Models for Database
==============================

Schema for judicial cases shared across circles:
- Organization (Circles, User profiles)
- Case management with circle-to-case collaboration links
- Discussion threads and messages
- Case documents
- Append-only audit trail

Supports both PostgreSQL and SQLite via SQLAlchemy.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Text, BigInteger, DateTime, Enum, ForeignKey,
    UniqueConstraint, Index, JSON
)
from sqlalchemy.orm import relationship, declarative_base

# Use JSON for cross-database compatibility (works with both PostgreSQL and SQLite)
JSONB = JSON

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class UserRole(str, enum.Enum):
    """Judicial roles"""
    JUDGE = "judge"
    CLERK = "clerk"
    TRAINEE = "trainee"


class CaseStatus(str, enum.Enum):
    """Case lifecycle status (cases close, they are never deleted)"""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    UNDER_REVIEW = "under_review"
    CLOSED = "closed"


class CasePriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class LinkRole(str, enum.Enum):
    """Role of a circle on a case"""
    PRIMARY = "primary"
    COLLABORATING = "collaborating"
    CONSULTING = "consulting"


# =============================================================================
# ORGANIZATION MODELS
# =============================================================================

class Circle(Base):
    """Judicial circle (department)"""
    __tablename__ = "circles"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    members = relationship("UserProfile", back_populates="home_circle")
    case_links = relationship("CaseCircleLink", back_populates="circle")


class UserProfile(Base):
    """User profile with exactly one home circle"""
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    full_name = Column(String(255), nullable=False)
    role = Column(Enum(UserRole), default=UserRole.TRAINEE, nullable=False)
    home_circle_id = Column(String(36), ForeignKey("circles.id", ondelete="RESTRICT"), nullable=False)
    employee_id = Column(String(50), nullable=False, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_profile_home_circle", "home_circle_id"),
    )

    # Relationships
    home_circle = relationship("Circle", back_populates="members")


# =============================================================================
# CASE MANAGEMENT MODELS
# =============================================================================

class Case(Base):
    """Judicial case owned by one primary circle"""
    __tablename__ = "cases"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_number = Column(String(100), nullable=False, unique=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(Enum(CaseStatus), default=CaseStatus.OPEN, nullable=False)
    priority = Column(Enum(CasePriority), default=CasePriority.MEDIUM, nullable=False)
    primary_circle_id = Column(String(36), ForeignKey("circles.id", ondelete="RESTRICT"), nullable=False)
    created_by = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    assigned_judge = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_case_primary_circle", "primary_circle_id"),
    )

    # Relationships
    circle_links = relationship("CaseCircleLink", back_populates="case")
    threads = relationship("Thread", back_populates="case")
    documents = relationship("Document", back_populates="case")


class CaseCircleLink(Base):
    """Circle entitled to collaborate on a case (add-only)"""
    __tablename__ = "case_circles"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="RESTRICT"), nullable=False)
    circle_id = Column(String(36), ForeignKey("circles.id", ondelete="RESTRICT"), nullable=False)
    role = Column(Enum(LinkRole), default=LinkRole.COLLABORATING, nullable=False)
    added_at = Column(DateTime, default=datetime.utcnow)
    added_by = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)

    # One link per (case, circle)
    __table_args__ = (
        UniqueConstraint("case_id", "circle_id", name="uq_case_circle"),
        Index("ix_case_circle_circle", "circle_id"),
    )

    # Relationships
    case = relationship("Case", back_populates="circle_links")
    circle = relationship("Circle", back_populates="case_links")


# =============================================================================
# DISCUSSION MODELS
# =============================================================================

class Thread(Base):
    """Discussion thread inside a case"""
    __tablename__ = "threads"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="RESTRICT"), nullable=False)
    title = Column(String(500), nullable=False)
    created_by = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_thread_case", "case_id"),
    )

    # Relationships
    case = relationship("Case", back_populates="threads")
    messages = relationship("Message", back_populates="thread", order_by="Message.created_at")


class Message(Base):
    """Message in a thread (editable, never deleted)"""
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    thread_id = Column(String(36), ForeignKey("threads.id", ondelete="RESTRICT"), nullable=False)
    content = Column(Text, nullable=False)
    sender_id = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    edited_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_message_thread", "thread_id", "created_at"),
    )

    # Relationships
    thread = relationship("Thread", back_populates="messages")


# =============================================================================
# DOCUMENT MODELS
# =============================================================================

class Document(Base):
    """Document attached to a case"""
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="RESTRICT"), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=False)  # Path or object-store key
    file_type = Column(String(100), nullable=False)
    file_size = Column(BigInteger, nullable=True)
    extracted_text = Column(Text, nullable=True)
    uploaded_by = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    uploaded_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_document_case", "case_id"),
    )

    # Relationships
    case = relationship("Case", back_populates="documents")


# =============================================================================
# AUDIT TRAIL
# =============================================================================

class AuditEntry(Base):
    """Append-only audit record (user_id is empty for system actions)"""
    __tablename__ = "audit_log"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=True)  # No FK: denials may name unknown callers
    action = Column(String(50), nullable=False)
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(String(36), nullable=True)
    details = Column(JSONB, default=dict)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_audit_resource", "resource_type", "resource_id"),
        Index("ix_audit_user", "user_id", "created_at"),
    )
