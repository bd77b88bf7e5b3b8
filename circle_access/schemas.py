"""
Pydantic Schemas for the Circle Access Service
==============================================

Request/response models for the HTTP surface. Responses are built from ORM
rows (`from_attributes`).
"""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime

from .db.models import CasePriority, CaseStatus, LinkRole, UserRole
from .policy import Action, ResourceType


class OrmModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# ACCESS CHECKS
# =============================================================================

class AccessCheckRequest(BaseModel):
    """canView / canMutate query"""
    action: Action = Field(Action.VIEW, description="Requested action")
    resource_type: ResourceType = Field(..., description="Target resource type")
    resource_id: Optional[str] = Field(None, description="Existing resource id")
    parent_id: Optional[str] = Field(None, description="Container id for creates (case or thread)")


class AccessCheckResponse(BaseModel):
    # Reason and rule stay in the audit trail only
    allowed: bool


# =============================================================================
# CASES
# =============================================================================

class CreateCaseRequest(BaseModel):
    case_number: str = Field(..., min_length=1, max_length=100)
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    priority: CasePriority = CasePriority.MEDIUM
    assigned_judge: Optional[str] = Field(None, description="Profile id of a judge")


class UpdateCaseRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    status: Optional[CaseStatus] = None
    priority: Optional[CasePriority] = None
    assigned_judge: Optional[str] = None


class CaseResponse(OrmModel):
    id: str
    case_number: str
    title: str
    description: Optional[str] = None
    status: CaseStatus
    priority: CasePriority
    primary_circle_id: str
    created_by: Optional[str] = None
    assigned_judge: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AddCollaborationRequest(BaseModel):
    circle_id: str
    role: LinkRole = LinkRole.COLLABORATING


class AddCollaborationResponse(BaseModel):
    case_id: str
    circle_id: str
    created: bool = Field(..., description="False when the circle was already entitled")
    entitled_circles: List[str]


class EntitledCirclesResponse(BaseModel):
    case_id: str
    entitled_circles: List[str]


class CollaborationResponse(OrmModel):
    id: str
    case_id: str
    circle_id: str
    role: LinkRole
    added_at: Optional[datetime] = None
    added_by: Optional[str] = None


# =============================================================================
# THREADS / MESSAGES / DOCUMENTS
# =============================================================================

class CreateThreadRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)


class MessageRequest(BaseModel):
    content: str = Field(..., min_length=1)


class MessageResponse(OrmModel):
    id: str
    thread_id: str
    content: str
    sender_id: Optional[str] = None
    created_at: Optional[datetime] = None
    edited_at: Optional[datetime] = None


class ThreadSummaryResponse(OrmModel):
    """Thread without its messages (case thread listing)"""
    id: str
    case_id: str
    title: str
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None


class ThreadResponse(ThreadSummaryResponse):
    messages: List[MessageResponse] = []


class CreateDocumentRequest(BaseModel):
    """Document metadata; the file is stored elsewhere"""
    file_name: str = Field(..., min_length=1, max_length=255)
    file_path: str = Field(..., min_length=1, max_length=500)
    file_type: str = Field(..., min_length=1, max_length=100)
    file_size: Optional[int] = Field(None, ge=0)
    extracted_text: Optional[str] = None


class DocumentResponse(OrmModel):
    id: str
    case_id: str
    file_name: str
    file_path: str
    file_type: str
    file_size: Optional[int] = None
    extracted_text: Optional[str] = None
    uploaded_by: Optional[str] = None
    uploaded_at: Optional[datetime] = None


# =============================================================================
# CIRCLES / PROFILES
# =============================================================================

class CircleResponse(OrmModel):
    id: str
    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class ProfileResponse(OrmModel):
    id: str
    full_name: str
    role: UserRole
    home_circle_id: str
    employee_id: str
    created_at: Optional[datetime] = None


class UpdateProfileRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=255)


# =============================================================================
# AUDIT
# =============================================================================

class AuditEntryRequest(BaseModel):
    action: str = Field(..., min_length=1, max_length=50)
    resource_type: str = Field(..., min_length=1, max_length=50)
    resource_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class AuditEntryResponse(OrmModel):
    id: str
    user_id: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None


# =============================================================================
# SERVICE
# =============================================================================

class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    database: str


class ErrorResponse(BaseModel):
    detail: str
    code: str
