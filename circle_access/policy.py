"""
Policy Evaluator
================

Pure decision function for (actor, action, resource) triples.

Rules are evaluated in priority order; the first matching rule decides:

0. audit_write          - create on an audit entry is always allowed (any actor, even none)
1. circle_self_view     - view on a Circle iff it is the actor's home circle
2. profile_self_access  - view/update on a UserProfile iff it is the actor's own
3. case_view            - view on a Case iff the actor's home circle is entitled
4. case_create          - create on a Case iff role is judge or clerk
5. case_update          - update on a Case iff judge/clerk of the primary circle
6. manage_collaboration - same condition as case_update
7. case_content         - view/create/send/upload on Thread/Message/Document iff entitled
7a. message_edit        - update on a Message iff sender and still entitled
8. audit_view           - view_audit iff role is judge (no circle restriction)
9. default_deny

Nothing here touches the database: callers pass an `Actor` and a
`ResourceSnapshot` carrying the entitled-circle set of the parent case.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, FrozenSet

from .db.models import UserRole


# =============================================================================
# ACTIONS / RESOURCES
# =============================================================================

class Action(str, Enum):
    """Actions the evaluator understands"""
    VIEW = "view"
    CREATE = "create"
    UPDATE = "update"
    MANAGE_COLLABORATION = "manage_collaboration"
    SEND_MESSAGE = "send_message"
    UPLOAD_DOCUMENT = "upload_document"
    VIEW_AUDIT = "view_audit"


class ResourceType(str, Enum):
    CIRCLE = "circle"
    PROFILE = "profile"
    CASE = "case"
    THREAD = "thread"
    MESSAGE = "message"
    DOCUMENT = "document"
    AUDIT_ENTRY = "audit_entry"


# Resource types whose access is inherited from a case's entitled-circle set
CASE_SCOPED = frozenset({
    ResourceType.CASE,
    ResourceType.THREAD,
    ResourceType.MESSAGE,
    ResourceType.DOCUMENT,
})

CASE_MANAGERS = frozenset({UserRole.JUDGE, UserRole.CLERK})

CONTENT_ACTIONS = {
    ResourceType.THREAD: frozenset({Action.VIEW, Action.CREATE}),
    ResourceType.MESSAGE: frozenset({Action.VIEW, Action.CREATE, Action.SEND_MESSAGE}),
    ResourceType.DOCUMENT: frozenset({Action.VIEW, Action.CREATE, Action.UPLOAD_DOCUMENT}),
}


class DecisionReason(str, Enum):
    ALLOWED = "allowed"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class ResourceRef:
    """
    Reference to a resource as supplied by a caller.

    `resource_id` names an existing resource. For creates, `resource_id` is
    empty and `parent_id` names the container: the case for threads and
    documents, the thread for messages.
    """
    resource_type: ResourceType
    resource_id: Optional[str] = None
    parent_id: Optional[str] = None

    def describe(self) -> str:
        return f"{self.resource_type.value} {self.resource_id or self.parent_id or '-'}"


@dataclass(frozen=True)
class Actor:
    """Snapshot of the caller's profile taken for one decision"""
    user_id: str
    role: UserRole
    home_circle_id: str

    @property
    def manages_cases(self) -> bool:
        return self.role in CASE_MANAGERS

    @property
    def is_judge(self) -> bool:
        return self.role == UserRole.JUDGE


@dataclass(frozen=True)
class ResourceSnapshot:
    """
    Facts about a resource needed by the rules.

    For case-scoped resources `case_id`, `primary_circle_id` and
    `entitled_circles` describe the parent case. `owner_id` is the message
    sender (used by message_edit).
    """
    resource_type: ResourceType
    resource_id: Optional[str] = None
    case_id: Optional[str] = None
    primary_circle_id: Optional[str] = None
    entitled_circles: FrozenSet[str] = field(default_factory=frozenset)
    owner_id: Optional[str] = None


@dataclass(frozen=True)
class Decision:
    """Outcome of one evaluation"""
    allowed: bool
    reason: DecisionReason
    rule: str

    def __bool__(self) -> bool:
        return self.allowed

    @classmethod
    def allow(cls, rule: str) -> "Decision":
        return cls(True, DecisionReason.ALLOWED, rule)

    @classmethod
    def deny(cls, rule: str, reason: DecisionReason = DecisionReason.PERMISSION_DENIED) -> "Decision":
        return cls(False, reason, rule)

    @classmethod
    def check(cls, condition: bool, rule: str) -> "Decision":
        return cls.allow(rule) if condition else cls.deny(rule)


# =============================================================================
# EVALUATOR
# =============================================================================

def evaluate(
    actor: Optional[Actor],
    action: Action,
    resource: Optional[ResourceSnapshot],
    resource_type: Optional[ResourceType] = None,
) -> Decision:
    """
    Decide Allow/Deny.

    Args:
        actor: Caller snapshot, or None when the caller has no profile
        action: Requested action
        resource: Snapshot of the target, or None when it does not exist
        resource_type: Target type, needed when `resource` is None

    Returns:
        Decision naming the rule that matched
    """
    rtype = resource.resource_type if resource is not None else resource_type

    # Rule 0: audit writes are never gated
    if rtype == ResourceType.AUDIT_ENTRY and action == Action.CREATE:
        return Decision.allow("audit_write")

    if actor is None:
        return Decision.deny("actor", DecisionReason.NOT_FOUND)

    # Rule 8 has no resource to load
    if action == Action.VIEW_AUDIT or (rtype == ResourceType.AUDIT_ENTRY and action == Action.VIEW):
        return Decision.check(actor.is_judge, "audit_view")

    # Rule 4 needs no existing resource either
    if rtype == ResourceType.CASE and action == Action.CREATE:
        return Decision.check(actor.manages_cases, "case_create")

    if resource is None:
        return Decision.deny("resource", DecisionReason.NOT_FOUND)

    if rtype == ResourceType.CIRCLE:
        if action == Action.VIEW:
            return Decision.check(actor.home_circle_id == resource.resource_id, "circle_self_view")

    elif rtype == ResourceType.PROFILE:
        if action in (Action.VIEW, Action.UPDATE):
            return Decision.check(actor.user_id == resource.resource_id, "profile_self_access")

    elif rtype == ResourceType.CASE:
        entitled = actor.home_circle_id in resource.entitled_circles
        if action == Action.VIEW:
            return Decision.check(entitled, "case_view")
        if action in (Action.UPDATE, Action.MANAGE_COLLABORATION):
            rule = "case_update" if action == Action.UPDATE else "manage_collaboration"
            return Decision.check(
                actor.manages_cases and actor.home_circle_id == resource.primary_circle_id,
                rule,
            )

    elif rtype in CONTENT_ACTIONS:
        entitled = actor.home_circle_id in resource.entitled_circles
        if action in CONTENT_ACTIONS[rtype]:
            return Decision.check(entitled, "case_content")
        if rtype == ResourceType.MESSAGE and action == Action.UPDATE:
            return Decision.check(entitled and resource.owner_id == actor.user_id, "message_edit")

    return Decision.deny("default_deny")
