"""
Access Service
==============

Entry point used by the application layer.

Every read or write on a case, thread, message, document, circle or profile is
preceded by one policy evaluation. The decision is audited before the
operation proceeds; if the audit entry cannot be written the decision becomes
Deny.

Decision API (never raises on a rule failure):
- can_view(actor_id, ref)
- can_mutate(actor_id, action, ref)

Gated operations (raise NotFound / PermissionDenied / ConstraintViolation /
StoreUnavailable):
- create_case, get_case, list_cases, update_case, close_case
- add_collaboration, entitled_circles, list_collaborations
- create_thread, get_thread, list_threads, list_messages, send_message, edit_message
- upload_document, get_document, list_documents
- get_circle, get_profile, update_profile
- list_audit, record_audit (ungated)
"""

import logging
from datetime import datetime
from functools import partial
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .audit import AuditRecorder, RequestContext
from .db.models import (
    AuditEntry, Case, CaseCircleLink, CasePriority, CaseStatus, Circle, Document,
    LinkRole, Message, Thread, UserProfile, UserRole,
)
from .errors import ConstraintViolation, NotFound, PermissionDenied, StoreUnavailable
from .policy import (
    CASE_SCOPED, Action, Decision, DecisionReason, ResourceRef, ResourceType, evaluate,
)
from .relationships import EntitlementCache, RelationshipIndex, get_entitlement_cache

logger = logging.getLogger(__name__)

CASE_UPDATABLE_FIELDS = ("title", "description", "status", "priority", "assigned_judge")


class AccessService:
    """Policy-gated operations over one SQLAlchemy session"""

    def __init__(
        self,
        db: Session,
        recorder: Optional[AuditRecorder] = None,
        cache: Optional[EntitlementCache] = None,
    ):
        self.db = db
        self.recorder = recorder or AuditRecorder()
        self.index = RelationshipIndex(db, cache=cache or get_entitlement_cache())

    # =========================================================================
    # DECISIONS
    # =========================================================================

    def _decide(self, actor_id: Optional[str], action: Action, ref: ResourceRef) -> Decision:
        try:
            try:
                actor = self.index.actor(actor_id) if actor_id else None
            except NotFound:
                actor = None
            snapshot = self.index.snapshot(ref)
        except StoreUnavailable:
            return Decision.deny("store", DecisionReason.STORE_UNAVAILABLE)
        return evaluate(actor, action, snapshot, ref.resource_type)

    def _decide_and_record(
        self,
        actor_id: Optional[str],
        action: Action,
        ref: ResourceRef,
        context: Optional[RequestContext],
    ) -> Decision:
        decision = self._decide(actor_id, action, ref)
        if not decision:
            logger.warning(
                f"Permission denied: {actor_id} cannot {action.value} {ref.describe()} "
                f"({decision.reason.value}/{decision.rule})"
            )

        try:
            self.recorder.record_decision(actor_id, action, ref, decision, context)
        except StoreUnavailable:
            if decision:
                logger.error(f"Audit unavailable, denying {action.value} {ref.describe()} for {actor_id}")
                return Decision.deny("audit", DecisionReason.STORE_UNAVAILABLE)
        return decision

    def can_view(
        self,
        actor_id: Optional[str],
        ref: ResourceRef,
        context: Optional[RequestContext] = None,
    ) -> Decision:
        return self._decide_and_record(actor_id, Action.VIEW, ref, context)

    def can_mutate(
        self,
        actor_id: Optional[str],
        action: Action,
        ref: ResourceRef,
        context: Optional[RequestContext] = None,
    ) -> Decision:
        return self._decide_and_record(actor_id, action, ref, context)

    def _sees_parent_case(self, actor_id: Optional[str], ref: ResourceRef) -> bool:
        # Not audited: the audited decision for this request was already written.
        try:
            actor = self.index.actor(actor_id) if actor_id else None
            snapshot = self.index.snapshot(ref)
        except (NotFound, StoreUnavailable):
            return False
        if actor is None or snapshot is None:
            return False
        return actor.home_circle_id in snapshot.entitled_circles

    def authorize(
        self,
        actor_id: Optional[str],
        action: Action,
        ref: ResourceRef,
        context: Optional[RequestContext] = None,
    ) -> Decision:
        """
        can_mutate, raising on Deny.

        Case-scoped denials for actors who cannot see the parent case raise
        NotFound, so existence is not revealed across circle boundaries.
        """
        decision = self.can_mutate(actor_id, action, ref, context)
        if decision:
            return decision

        if decision.reason == DecisionReason.STORE_UNAVAILABLE:
            raise StoreUnavailable("Authorization data unavailable")

        targets_existing = bool(ref.resource_id or ref.parent_id)
        if ref.resource_type in CASE_SCOPED and targets_existing:
            if not self._sees_parent_case(actor_id, ref):
                raise NotFound("Not found")

        if decision.reason == DecisionReason.NOT_FOUND:
            raise NotFound(f"{ref.resource_type.value.capitalize()} not found")
        raise PermissionDenied(f"Cannot {action.value} {ref.resource_type.value}")

    # =========================================================================
    # AUDIT
    # =========================================================================

    def record_audit(
        self,
        user_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> AuditEntry:
        """Append an audit entry. Never gated."""
        return self.recorder.record(user_id, action, resource_type, resource_id, details, context)

    def _record_mutation(
        self,
        actor_id: str,
        action: str,
        resource_type: ResourceType,
        resource_id: str,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> None:
        try:
            self.recorder.record_mutation(actor_id, action, resource_type.value, resource_id, details, context)
        except StoreUnavailable:
            # Already committed; the authorization entry for this request exists.
            logger.error(f"Mutation audit lost for {action} {resource_type.value} {resource_id}")

    def list_audit(
        self,
        actor_id: str,
        user_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
        context: Optional[RequestContext] = None,
    ) -> List[AuditEntry]:
        self.authorize(actor_id, Action.VIEW_AUDIT, ResourceRef(ResourceType.AUDIT_ENTRY), context)
        return self.recorder.list_entries(
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            limit=limit,
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _commit(self, what: str) -> None:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"Constraint violation on {what}: {e.orig}")
            raise ConstraintViolation(f"Conflicting {what}") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Write failed on {what}: {e}", exc_info=True)
            raise StoreUnavailable(f"Could not save {what}") from e

    def _load(self, model, resource_id: str, label: str):
        try:
            row = self.db.query(model).filter(model.id == resource_id).first()
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Could not read {label}") from e
        if not row:
            raise NotFound(f"{label.capitalize()} not found")
        return row

    def _check_judge(self, profile_id: Optional[str]) -> None:
        if not profile_id:
            return
        try:
            profile = self.db.query(UserProfile).filter(UserProfile.id == profile_id).first()
        except SQLAlchemyError as e:
            raise StoreUnavailable("Could not read profile") from e
        if not profile or profile.role != UserRole.JUDGE:
            raise ConstraintViolation("Assigned judge must be an existing judge profile")

    # =========================================================================
    # CASES
    # =========================================================================

    def create_case(
        self,
        actor_id: str,
        case_number: str,
        title: str,
        description: Optional[str] = None,
        priority: CasePriority = CasePriority.MEDIUM,
        assigned_judge: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Case:
        """Create a case whose primary circle is the creator's home circle."""
        self.authorize(actor_id, Action.CREATE, ResourceRef(ResourceType.CASE), context)
        actor = self.index.actor(actor_id)
        self._check_judge(assigned_judge)

        case = Case(
            case_number=case_number,
            title=title,
            description=description,
            priority=priority,
            status=CaseStatus.OPEN,
            primary_circle_id=actor.home_circle_id,
            created_by=actor.user_id,
            assigned_judge=assigned_judge,
        )
        self.db.add(case)
        self.db.add(CaseCircleLink(
            case=case,
            circle_id=actor.home_circle_id,
            role=LinkRole.PRIMARY,
            added_by=actor.user_id,
        ))
        self._commit("case number")
        self.db.refresh(case)

        logger.info(f"Case {case.case_number} ({case.id}) created in circle {case.primary_circle_id}")
        self._record_mutation(
            actor_id, Action.CREATE.value, ResourceType.CASE, case.id,
            {"case_number": case.case_number, "primary_circle_id": case.primary_circle_id},
            context,
        )
        return case

    def get_case(self, actor_id: str, case_id: str, context: Optional[RequestContext] = None) -> Case:
        self.authorize(actor_id, Action.VIEW, ResourceRef(ResourceType.CASE, case_id), context)
        return self.index.get_case(case_id)

    def list_cases(
        self,
        actor_id: str,
        status: Optional[CaseStatus] = None,
        context: Optional[RequestContext] = None,
    ) -> List[Case]:
        """
        Cases the actor may view.

        Candidates come from the index; each one is still decided by the
        evaluator. One audit entry covers the listing and names the cases
        returned. If that entry cannot be written nothing is returned.
        """
        actor = self.index.actor(actor_id)
        visible = [
            case_id
            for case_id in self.index.cases_for_circle(actor.home_circle_id)
            if evaluate(actor, Action.VIEW, self.index.snapshot(ResourceRef(ResourceType.CASE, case_id)))
        ]

        cases = []
        if visible:
            try:
                query = self.db.query(Case).filter(Case.id.in_(visible))
                if status:
                    query = query.filter(Case.status == status)
                cases = query.order_by(Case.updated_at.desc()).all()
            except SQLAlchemyError as e:
                raise StoreUnavailable("Could not read cases") from e

        details = {
            "phase": "authorization",
            "decision": "allow",
            "reason": DecisionReason.ALLOWED.value,
            "rule": "case_view",
            "case_ids": [case.id for case in cases],
        }
        if status:
            details["status"] = CaseStatus(status).value
        self.recorder.record(actor_id, "list", ResourceType.CASE.value, None, details, context)
        return cases

    def update_case(
        self,
        actor_id: str,
        case_id: str,
        changes: Dict[str, Any],
        context: Optional[RequestContext] = None,
    ) -> Case:
        self.authorize(actor_id, Action.UPDATE, ResourceRef(ResourceType.CASE, case_id), context)

        unknown = sorted(set(changes) - set(CASE_UPDATABLE_FIELDS))
        if unknown:
            raise ConstraintViolation(f"Fields cannot be updated: {', '.join(unknown)}")

        changes = dict(changes)
        case = self.index.get_case(case_id)

        if "assigned_judge" in changes:
            self._check_judge(changes["assigned_judge"])
        if "status" in changes and changes["status"] is not None:
            changes["status"] = CaseStatus(changes["status"])
        if "priority" in changes and changes["priority"] is not None:
            changes["priority"] = CasePriority(changes["priority"])

        for key, value in changes.items():
            setattr(case, key, value)
        case.updated_at = datetime.utcnow()
        self._commit("case")
        self.db.refresh(case)

        self._record_mutation(
            actor_id, Action.UPDATE.value, ResourceType.CASE, case.id,
            {"fields": sorted(changes)},
            context,
        )
        return case

    def close_case(self, actor_id: str, case_id: str, context: Optional[RequestContext] = None) -> Case:
        return self.update_case(actor_id, case_id, {"status": CaseStatus.CLOSED}, context)

    # =========================================================================
    # COLLABORATION
    # =========================================================================

    def add_collaboration(
        self,
        actor_id: str,
        case_id: str,
        circle_id: str,
        role: LinkRole = LinkRole.COLLABORATING,
        context: Optional[RequestContext] = None,
    ) -> bool:
        created = self.index.add_collaboration(
            case_id,
            circle_id,
            actor_id,
            role=role,
            authorizer=partial(self.authorize, context=context),
        )
        if created:
            self._record_mutation(
                actor_id, Action.MANAGE_COLLABORATION.value, ResourceType.CASE, case_id,
                {"circle_id": circle_id, "role": role.value},
                context,
            )
        return created

    def entitled_circles(self, actor_id: str, case_id: str, context: Optional[RequestContext] = None) -> List[str]:
        self.authorize(actor_id, Action.VIEW, ResourceRef(ResourceType.CASE, case_id), context)
        return sorted(self.index.entitled_circles(case_id))

    def list_collaborations(
        self, actor_id: str, case_id: str, context: Optional[RequestContext] = None
    ) -> List[CaseCircleLink]:
        self.authorize(actor_id, Action.VIEW, ResourceRef(ResourceType.CASE, case_id), context)
        return self.index.list_links(case_id)

    # =========================================================================
    # THREADS / MESSAGES
    # =========================================================================

    def create_thread(
        self, actor_id: str, case_id: str, title: str, context: Optional[RequestContext] = None
    ) -> Thread:
        self.authorize(actor_id, Action.CREATE, ResourceRef(ResourceType.THREAD, parent_id=case_id), context)

        thread = Thread(case_id=case_id, title=title, created_by=actor_id)
        self.db.add(thread)
        self._commit("thread")
        self.db.refresh(thread)

        self._record_mutation(
            actor_id, Action.CREATE.value, ResourceType.THREAD, thread.id, {"case_id": case_id}, context
        )
        return thread

    def get_thread(self, actor_id: str, thread_id: str, context: Optional[RequestContext] = None) -> Thread:
        self.authorize(actor_id, Action.VIEW, ResourceRef(ResourceType.THREAD, thread_id), context)
        return self._load(Thread, thread_id, "thread")

    def list_threads(self, actor_id: str, case_id: str, context: Optional[RequestContext] = None) -> List[Thread]:
        """Threads of a case, newest first."""
        self.authorize(actor_id, Action.VIEW, ResourceRef(ResourceType.THREAD, parent_id=case_id), context)
        try:
            return (
                self.db.query(Thread)
                .filter(Thread.case_id == case_id)
                .order_by(Thread.created_at.desc())
                .all()
            )
        except SQLAlchemyError as e:
            raise StoreUnavailable("Could not read threads") from e

    def list_messages(self, actor_id: str, thread_id: str, context: Optional[RequestContext] = None) -> List[Message]:
        self.authorize(actor_id, Action.VIEW, ResourceRef(ResourceType.MESSAGE, parent_id=thread_id), context)
        try:
            return (
                self.db.query(Message)
                .filter(Message.thread_id == thread_id)
                .order_by(Message.created_at.asc())
                .all()
            )
        except SQLAlchemyError as e:
            raise StoreUnavailable("Could not read messages") from e

    def send_message(
        self, actor_id: str, thread_id: str, content: str, context: Optional[RequestContext] = None
    ) -> Message:
        self.authorize(
            actor_id, Action.SEND_MESSAGE, ResourceRef(ResourceType.MESSAGE, parent_id=thread_id), context
        )

        message = Message(thread_id=thread_id, content=content, sender_id=actor_id)
        self.db.add(message)
        self._commit("message")
        self.db.refresh(message)

        self._record_mutation(
            actor_id, Action.SEND_MESSAGE.value, ResourceType.MESSAGE, message.id, {"thread_id": thread_id}, context
        )
        return message

    def edit_message(
        self, actor_id: str, message_id: str, content: str, context: Optional[RequestContext] = None
    ) -> Message:
        self.authorize(actor_id, Action.UPDATE, ResourceRef(ResourceType.MESSAGE, message_id), context)

        message = self._load(Message, message_id, "message")
        message.content = content
        message.edited_at = datetime.utcnow()
        self._commit("message")
        self.db.refresh(message)

        self._record_mutation(actor_id, Action.UPDATE.value, ResourceType.MESSAGE, message.id, None, context)
        return message

    # =========================================================================
    # DOCUMENTS
    # =========================================================================

    def upload_document(
        self,
        actor_id: str,
        case_id: str,
        file_name: str,
        file_path: str,
        file_type: str,
        file_size: Optional[int] = None,
        extracted_text: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Document:
        """Register document metadata; the file itself lives in external storage."""
        self.authorize(
            actor_id, Action.UPLOAD_DOCUMENT, ResourceRef(ResourceType.DOCUMENT, parent_id=case_id), context
        )

        document = Document(
            case_id=case_id,
            file_name=file_name,
            file_path=file_path,
            file_type=file_type,
            file_size=file_size,
            extracted_text=extracted_text,
            uploaded_by=actor_id,
        )
        self.db.add(document)
        self._commit("document")
        self.db.refresh(document)

        self._record_mutation(
            actor_id, Action.UPLOAD_DOCUMENT.value, ResourceType.DOCUMENT, document.id,
            {"case_id": case_id, "file_name": file_name},
            context,
        )
        return document

    def get_document(self, actor_id: str, document_id: str, context: Optional[RequestContext] = None) -> Document:
        self.authorize(actor_id, Action.VIEW, ResourceRef(ResourceType.DOCUMENT, document_id), context)
        return self._load(Document, document_id, "document")

    def list_documents(self, actor_id: str, case_id: str, context: Optional[RequestContext] = None) -> List[Document]:
        """Documents of a case, newest upload first."""
        self.authorize(actor_id, Action.VIEW, ResourceRef(ResourceType.DOCUMENT, parent_id=case_id), context)
        try:
            return (
                self.db.query(Document)
                .filter(Document.case_id == case_id)
                .order_by(Document.uploaded_at.desc())
                .all()
            )
        except SQLAlchemyError as e:
            raise StoreUnavailable("Could not read documents") from e

    # =========================================================================
    # CIRCLES / PROFILES
    # =========================================================================

    def get_circle(self, actor_id: str, circle_id: str, context: Optional[RequestContext] = None) -> Circle:
        self.authorize(actor_id, Action.VIEW, ResourceRef(ResourceType.CIRCLE, circle_id), context)
        return self._load(Circle, circle_id, "circle")

    def get_profile(self, actor_id: str, profile_id: str, context: Optional[RequestContext] = None) -> UserProfile:
        self.authorize(actor_id, Action.VIEW, ResourceRef(ResourceType.PROFILE, profile_id), context)
        return self._load(UserProfile, profile_id, "profile")

    def update_profile(
        self, actor_id: str, profile_id: str, full_name: str, context: Optional[RequestContext] = None
    ) -> UserProfile:
        """Self-service update. Role and home circle change only through provisioning."""
        self.authorize(actor_id, Action.UPDATE, ResourceRef(ResourceType.PROFILE, profile_id), context)

        profile = self._load(UserProfile, profile_id, "profile")
        profile.full_name = full_name
        self._commit("profile")
        self.db.refresh(profile)

        self._record_mutation(
            actor_id, Action.UPDATE.value, ResourceType.PROFILE, profile.id, {"fields": ["full_name"]}, context
        )
        return profile
