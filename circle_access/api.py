"""
Circle Access Service API
=========================

FastAPI endpoints over the access-control engine.

Core Endpoints:
- GET  /health                               - Health check
- POST /api/v1/access/check                  - canView / canMutate

Case Endpoints:
- GET|POST  /api/v1/cases                    - List accessible cases / create case
- GET|PATCH /api/v1/cases/{case_id}          - Get / update case
- GET|POST  /api/v1/cases/{case_id}/circles  - Entitled circles / add collaboration
- GET  /api/v1/cases/{case_id}/collaborations
- GET|POST  /api/v1/cases/{case_id}/threads
- GET|POST  /api/v1/cases/{case_id}/documents - List / register document metadata
- GET  /api/v1/threads/{thread_id}
- POST /api/v1/threads/{thread_id}/messages
- PATCH /api/v1/messages/{message_id}
- GET  /api/v1/documents/{document_id}

Circles / profile / audit:
- GET  /api/v1/circles/{circle_id}
- GET|PATCH /api/v1/me
- GET|POST  /api/v1/audit

Run with:
    uvicorn circle_access.api:app --host 0.0.0.0 --port 8000
"""

import logging
from typing import List, Optional

from fastapi import FastAPI, Depends, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .audit import RequestContext
from .config import get_settings
from .db.models import CaseStatus
from .db.session import get_db, init_db
from .errors import AccessError, NotFound
from .identity import resolve_caller_id
from .middleware.security import SecurityHeadersMiddleware
from .policy import ResourceRef
from .schemas import (
    AccessCheckRequest,
    AccessCheckResponse,
    AddCollaborationRequest,
    AddCollaborationResponse,
    AuditEntryRequest,
    AuditEntryResponse,
    CaseResponse,
    CircleResponse,
    CollaborationResponse,
    CreateCaseRequest,
    CreateDocumentRequest,
    CreateThreadRequest,
    DocumentResponse,
    EntitledCirclesResponse,
    ErrorResponse,
    HealthResponse,
    MessageRequest,
    MessageResponse,
    ProfileResponse,
    ThreadResponse,
    ThreadSummaryResponse,
    UpdateCaseRequest,
    UpdateProfileRequest,
)
from .service import AccessService

settings = get_settings()

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Circle Access Service",
    description="Access-control decisions for judicial cases shared across circles",
    version=settings.service_version,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)
app.add_middleware(SecurityHeadersMiddleware)


# =============================================================================
# Startup / Errors
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize on startup"""
    logger.info(f"Starting Circle Access Service v{settings.service_version}")
    for warning in settings.validate_identity_config():
        logger.warning(warning)
    init_db()


@app.exception_handler(AccessError)
async def access_error_handler(request: Request, exc: AccessError):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(detail=exc.message, code=exc.code).model_dump(),
    )


# =============================================================================
# Dependencies
# =============================================================================

def get_service(db: Session = Depends(get_db)) -> AccessService:
    return AccessService(db)


def get_request_context(
    request: Request,
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent,
    )


async def require_actor(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    service: AccessService = Depends(get_service),
) -> str:
    """
    Resolve the caller to an existing profile id.

    - `Authorization: Bearer <jwt>` (preferred when present)
    - `X-User-Id` header (when ALLOW_HEADER_IDENTITY is on)
    """
    actor_id = resolve_caller_id(authorization, x_user_id)
    if not actor_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        service.index.actor(actor_id)
    except NotFound:
        logger.warning(f"Auth failed: profile {actor_id} not found")
        raise HTTPException(status_code=401, detail="User not found")
    return actor_id


# =============================================================================
# Health / Access checks
# =============================================================================

@app.get("/health", tags=["System"], response_model=HealthResponse)
async def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error(f"Health check database failure: {e}")
        database = "unavailable"
    return HealthResponse(version=settings.service_version, database=database)


@app.post("/api/v1/access/check", tags=["Access"], response_model=AccessCheckResponse)
async def check_access(
    request: AccessCheckRequest,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    """canView / canMutate for the caller. Only the outcome is returned."""
    ref = ResourceRef(request.resource_type, request.resource_id, request.parent_id)
    decision = service.can_mutate(actor_id, request.action, ref, context)
    return AccessCheckResponse(allowed=decision.allowed)


# =============================================================================
# Cases
# =============================================================================

@app.get("/api/v1/cases", tags=["Cases"], response_model=List[CaseResponse])
async def list_cases(
    status: Optional[CaseStatus] = Query(None),
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.list_cases(actor_id, status=status, context=context)


@app.post("/api/v1/cases", tags=["Cases"], response_model=CaseResponse, status_code=201)
async def create_case(
    request: CreateCaseRequest,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.create_case(
        actor_id,
        case_number=request.case_number,
        title=request.title,
        description=request.description,
        priority=request.priority,
        assigned_judge=request.assigned_judge,
        context=context,
    )


@app.get("/api/v1/cases/{case_id}", tags=["Cases"], response_model=CaseResponse)
async def get_case(
    case_id: str,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.get_case(actor_id, case_id, context)


@app.patch("/api/v1/cases/{case_id}", tags=["Cases"], response_model=CaseResponse)
async def update_case(
    case_id: str,
    request: UpdateCaseRequest,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    changes = request.model_dump(exclude_unset=True)
    return service.update_case(actor_id, case_id, changes, context)


@app.get("/api/v1/cases/{case_id}/circles", tags=["Collaboration"], response_model=EntitledCirclesResponse)
async def get_entitled_circles(
    case_id: str,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    circles = service.entitled_circles(actor_id, case_id, context)
    return EntitledCirclesResponse(case_id=case_id, entitled_circles=circles)


@app.post("/api/v1/cases/{case_id}/circles", tags=["Collaboration"], response_model=AddCollaborationResponse)
async def add_collaboration(
    case_id: str,
    request: AddCollaborationRequest,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    created = service.add_collaboration(actor_id, case_id, request.circle_id, request.role, context)
    return AddCollaborationResponse(
        case_id=case_id,
        circle_id=request.circle_id,
        created=created,
        entitled_circles=sorted(service.index.entitled_circles(case_id)),
    )


@app.get(
    "/api/v1/cases/{case_id}/collaborations",
    tags=["Collaboration"],
    response_model=List[CollaborationResponse],
)
async def list_collaborations(
    case_id: str,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.list_collaborations(actor_id, case_id, context)


# =============================================================================
# Threads / Messages
# =============================================================================

@app.get("/api/v1/cases/{case_id}/threads", tags=["Discussions"], response_model=List[ThreadSummaryResponse])
async def list_threads(
    case_id: str,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.list_threads(actor_id, case_id, context)


@app.post("/api/v1/cases/{case_id}/threads", tags=["Discussions"], response_model=ThreadResponse, status_code=201)
async def create_thread(
    case_id: str,
    request: CreateThreadRequest,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.create_thread(actor_id, case_id, request.title, context)


@app.get("/api/v1/threads/{thread_id}", tags=["Discussions"], response_model=ThreadResponse)
async def get_thread(
    thread_id: str,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.get_thread(actor_id, thread_id, context)


@app.post(
    "/api/v1/threads/{thread_id}/messages",
    tags=["Discussions"],
    response_model=MessageResponse,
    status_code=201,
)
async def send_message(
    thread_id: str,
    request: MessageRequest,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.send_message(actor_id, thread_id, request.content, context)


@app.patch("/api/v1/messages/{message_id}", tags=["Discussions"], response_model=MessageResponse)
async def edit_message(
    message_id: str,
    request: MessageRequest,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.edit_message(actor_id, message_id, request.content, context)


# =============================================================================
# Documents
# =============================================================================

@app.post(
    "/api/v1/cases/{case_id}/documents",
    tags=["Documents"],
    response_model=DocumentResponse,
    status_code=201,
)
async def upload_document(
    case_id: str,
    request: CreateDocumentRequest,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.upload_document(
        actor_id,
        case_id,
        file_name=request.file_name,
        file_path=request.file_path,
        file_type=request.file_type,
        file_size=request.file_size,
        extracted_text=request.extracted_text,
        context=context,
    )


@app.get("/api/v1/cases/{case_id}/documents", tags=["Documents"], response_model=List[DocumentResponse])
async def list_documents(
    case_id: str,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.list_documents(actor_id, case_id, context)


@app.get("/api/v1/documents/{document_id}", tags=["Documents"], response_model=DocumentResponse)
async def get_document(
    document_id: str,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.get_document(actor_id, document_id, context)


# =============================================================================
# Circles / Profile
# =============================================================================

@app.get("/api/v1/circles/{circle_id}", tags=["Circles"], response_model=CircleResponse)
async def get_circle(
    circle_id: str,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.get_circle(actor_id, circle_id, context)


@app.get("/api/v1/me", tags=["Profile"], response_model=ProfileResponse)
async def get_me(
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.get_profile(actor_id, actor_id, context)


@app.patch("/api/v1/me", tags=["Profile"], response_model=ProfileResponse)
async def update_me(
    request: UpdateProfileRequest,
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.update_profile(actor_id, actor_id, request.full_name, context)


# =============================================================================
# Audit
# =============================================================================

@app.get("/api/v1/audit", tags=["Audit"], response_model=List[AuditEntryResponse])
async def list_audit(
    user_id: Optional[str] = Query(None),
    resource_type: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    actor_id: str = Depends(require_actor),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    return service.list_audit(
        actor_id,
        user_id=user_id,
        resource_type=resource_type,
        resource_id=resource_id,
        action=action,
        limit=limit,
        context=context,
    )


@app.post("/api/v1/audit", tags=["Audit"], response_model=AuditEntryResponse, status_code=201)
async def record_audit(
    request: AuditEntryRequest,
    authorization: Optional[str] = Header(None, alias="Authorization"),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    service: AccessService = Depends(get_service),
    context: RequestContext = Depends(get_request_context),
):
    """Append an audit entry. Anonymous callers are recorded as system actions."""
    return service.record_audit(
        resolve_caller_id(authorization, x_user_id),
        request.action,
        request.resource_type,
        request.resource_id,
        request.details,
        context,
    )
