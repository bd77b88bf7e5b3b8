"""
Relationship Index
==================

Derived adjacency between cases, circles and users:

- case   -> entitled circles ({primary} + collaboration links)
- circle -> member users
- user   -> home circle
- thread/message/document -> parent case

All reads go through the SQLAlchemy session handed in by the caller. Store
failures surface as StoreUnavailable so that callers can fail closed.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, FrozenSet, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import get_settings
from .db.models import (
    Case, CaseCircleLink, Circle, Document, LinkRole, Message, Thread, UserProfile,
)
from .errors import NotFound, PermissionDenied, StoreUnavailable
from .policy import Action, Actor, ResourceRef, ResourceSnapshot, ResourceType, evaluate

logger = logging.getLogger(__name__)

Authorizer = Callable[[Optional[str], Action, ResourceRef], None]


# =============================================================================
# ENTITLEMENT CACHE
# =============================================================================

class EntitlementCache:
    """
    In-process cache of entitled-circle sets.

    Entries are dropped synchronously when a collaboration link is added, so a
    reader never sees a set older than the last successful add in this process.
    Each case carries a generation that `invalidate` bumps; `put` only stores a
    set if no invalidation happened since the caller read the generation, so a
    slow reader cannot write back a set loaded before a concurrent add.

    Single-process only: adds committed by another process never reach this
    cache. Leave ENTITLEMENT_CACHE_ENABLED off when several workers share the
    database.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, FrozenSet[str]] = {}
        self._generations: Dict[str, int] = {}

    def get(self, case_id: str) -> Optional[FrozenSet[str]]:
        with self._lock:
            return self._entries.get(case_id)

    def generation(self, case_id: str) -> int:
        with self._lock:
            return self._generations.get(case_id, 0)

    def put(self, case_id: str, circles: FrozenSet[str], generation: int) -> bool:
        """Store `circles` if the case was not invalidated since `generation` was read."""
        with self._lock:
            if self._generations.get(case_id, 0) != generation:
                return False
            self._entries[case_id] = circles
            return True

    def invalidate(self, case_id: str) -> None:
        with self._lock:
            self._generations[case_id] = self._generations.get(case_id, 0) + 1
            self._entries.pop(case_id, None)


_shared_cache = EntitlementCache()


def get_entitlement_cache() -> Optional[EntitlementCache]:
    """Process-wide cache, or None when caching is disabled"""
    if get_settings().entitlement_cache_enabled:
        return _shared_cache
    return None


# =============================================================================
# INDEX
# =============================================================================

class RelationshipIndex:
    """Case/circle/user relationships backed by SQLAlchemy"""

    def __init__(
        self,
        db: Session,
        cache: Optional[EntitlementCache] = None,
        authorizer: Optional[Authorizer] = None,
    ):
        self.db = db
        self.cache = cache
        # Collaboration changes are authorized by the caller's policy hook;
        # without one the pure evaluator decides and nothing is audited.
        self.authorizer = authorizer or self._evaluate_or_raise

    @contextmanager
    def _store(self, what: str):
        try:
            yield
        except SQLAlchemyError as e:
            logger.error(f"Relationship store read failed ({what}): {e}", exc_info=True)
            raise StoreUnavailable(f"Relationship data unavailable: {what}") from e

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_case(self, case_id: str) -> Case:
        with self._store("case"):
            case = self.db.query(Case).filter(Case.id == case_id).first()
        if not case:
            raise NotFound("Case not found")
        return case

    def entitled_circles(self, case_id: str) -> FrozenSet[str]:
        """Primary circle of the case plus every linked circle."""
        generation = None
        if self.cache is not None:
            cached = self.cache.get(case_id)
            if cached is not None:
                return cached
            generation = self.cache.generation(case_id)

        case = self.get_case(case_id)
        with self._store("case links"):
            linked = [
                row[0]
                for row in self.db.query(CaseCircleLink.circle_id)
                .filter(CaseCircleLink.case_id == case_id)
                .all()
            ]
        circles = frozenset([case.primary_circle_id, *linked])

        if self.cache is not None:
            self.cache.put(case_id, circles, generation)
        return circles

    def home_circle(self, user_id: str) -> str:
        return self.actor(user_id).home_circle_id

    def actor(self, user_id: str) -> Actor:
        """Resolve a caller id to a profile snapshot."""
        with self._store("profile"):
            profile = self.db.query(UserProfile).filter(UserProfile.id == user_id).first()
        if not profile:
            raise NotFound("User profile not found")
        return Actor(user_id=profile.id, role=profile.role, home_circle_id=profile.home_circle_id)

    def circle_members(self, circle_id: str) -> List[str]:
        with self._store("circle members"):
            return [
                row[0]
                for row in self.db.query(UserProfile.id)
                .filter(UserProfile.home_circle_id == circle_id)
                .all()
            ]

    def cases_for_circle(self, circle_id: str) -> List[str]:
        """Ids of every case the circle is entitled on."""
        with self._store("circle cases"):
            primary = {
                row[0]
                for row in self.db.query(Case.id).filter(Case.primary_circle_id == circle_id).all()
            }
            linked = {
                row[0]
                for row in self.db.query(CaseCircleLink.case_id)
                .filter(CaseCircleLink.circle_id == circle_id)
                .all()
            }
        return sorted(primary | linked)

    def list_links(self, case_id: str) -> List[CaseCircleLink]:
        self.get_case(case_id)
        with self._store("case links"):
            return (
                self.db.query(CaseCircleLink)
                .filter(CaseCircleLink.case_id == case_id)
                .order_by(CaseCircleLink.added_at.asc())
                .all()
            )

    def parent_case_id(self, ref: ResourceRef) -> Optional[str]:
        """
        Walk message -> thread -> case. Returns None when any hop is missing.
        """
        rtype = ref.resource_type
        with self._store("parent case"):
            if rtype == ResourceType.CASE:
                return ref.resource_id

            if rtype in (ResourceType.THREAD, ResourceType.DOCUMENT):
                if not ref.resource_id:
                    return ref.parent_id
                model = Thread if rtype == ResourceType.THREAD else Document
                row = self.db.query(model.case_id).filter(model.id == ref.resource_id).first()
                return row[0] if row else None

            if rtype == ResourceType.MESSAGE:
                thread_id = ref.parent_id
                if ref.resource_id:
                    row = self.db.query(Message.thread_id).filter(Message.id == ref.resource_id).first()
                    if not row:
                        return None
                    thread_id = row[0]
                if not thread_id:
                    return None
                row = self.db.query(Thread.case_id).filter(Thread.id == thread_id).first()
                return row[0] if row else None

        return None

    def snapshot(self, ref: ResourceRef) -> Optional[ResourceSnapshot]:
        """
        Load the facts the evaluator needs, or None if the resource is absent.
        """
        rtype = ref.resource_type

        if rtype == ResourceType.CIRCLE:
            with self._store("circle"):
                exists = self.db.query(Circle.id).filter(Circle.id == ref.resource_id).first()
            return ResourceSnapshot(rtype, ref.resource_id) if exists else None

        if rtype == ResourceType.PROFILE:
            with self._store("profile"):
                exists = self.db.query(UserProfile.id).filter(UserProfile.id == ref.resource_id).first()
            return ResourceSnapshot(rtype, ref.resource_id) if exists else None

        if rtype == ResourceType.AUDIT_ENTRY:
            return ResourceSnapshot(rtype, ref.resource_id)

        case_id = self.parent_case_id(ref)
        if not case_id:
            return None
        try:
            case = self.get_case(case_id)
        except NotFound:
            return None

        owner_id = None
        if rtype == ResourceType.MESSAGE and ref.resource_id:
            with self._store("message"):
                row = self.db.query(Message.sender_id).filter(Message.id == ref.resource_id).first()
            owner_id = row[0] if row else None

        return ResourceSnapshot(
            resource_type=rtype,
            resource_id=ref.resource_id,
            case_id=case.id,
            primary_circle_id=case.primary_circle_id,
            entitled_circles=self.entitled_circles(case.id),
            owner_id=owner_id,
        )

    # ------------------------------------------------------------------
    # Collaboration
    # ------------------------------------------------------------------

    def _evaluate_or_raise(self, actor_id: Optional[str], action: Action, ref: ResourceRef) -> None:
        try:
            actor = self.actor(actor_id) if actor_id else None
        except NotFound:
            actor = None
        decision = evaluate(actor, action, self.snapshot(ref), ref.resource_type)
        if not decision:
            raise PermissionDenied(f"Cannot {action.value} {ref.describe()}")

    def _find_link(self, case_id: str, circle_id: str) -> Optional[CaseCircleLink]:
        with self._store("case link"):
            return (
                self.db.query(CaseCircleLink)
                .filter(CaseCircleLink.case_id == case_id, CaseCircleLink.circle_id == circle_id)
                .first()
            )

    def add_collaboration(
        self,
        case_id: str,
        circle_id: str,
        added_by: Optional[str],
        role: LinkRole = LinkRole.COLLABORATING,
        authorizer: Optional[Authorizer] = None,
    ) -> bool:
        """
        Entitle a circle on a case. Idempotent per (case, circle).

        The manage_collaboration check goes through `authorizer` (or the
        index default), the one place the index calls back into policy.

        Returns:
            True if a link was inserted, False if the circle was already entitled
        """
        (authorizer or self.authorizer)(added_by, Action.MANAGE_COLLABORATION, ResourceRef(ResourceType.CASE, case_id))

        case = self.get_case(case_id)
        with self._store("circle"):
            circle = self.db.query(Circle.id).filter(Circle.id == circle_id).first()
        if not circle:
            raise NotFound("Circle not found")

        if circle_id == case.primary_circle_id or self._find_link(case_id, circle_id):
            return False
        if role == LinkRole.PRIMARY:
            role = LinkRole.COLLABORATING

        try:
            self.db.add(CaseCircleLink(
                case_id=case_id,
                circle_id=circle_id,
                role=role,
                added_by=added_by,
            ))
            self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent add of the same pair
            self.db.rollback()
            logger.info(f"Collaboration {case_id}/{circle_id} already present (concurrent add)")
            return False
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Collaboration insert failed for case {case_id}: {e}", exc_info=True)
            raise StoreUnavailable("Relationship data unavailable: case link") from e
        finally:
            if self.cache is not None:
                self.cache.invalidate(case_id)

        logger.info(f"Circle {circle_id} added to case {case_id} as {role.value} by {added_by}")
        return True
