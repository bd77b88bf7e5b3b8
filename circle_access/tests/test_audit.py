"""
Audit Recorder Tests
====================

Tests for:
- One authorization entry per decision, allow or deny
- Mutation entries after commit
- Ungated writes (anonymous/system callers)
- Fail-closed behavior when the audit store is down
- Judge-only audit listing
"""

import pytest
from sqlalchemy.exc import OperationalError

from circle_access.audit import AuditRecorder, RequestContext
from circle_access.db.models import AuditEntry
from circle_access.errors import PermissionDenied, StoreUnavailable
from circle_access.policy import Action, DecisionReason, ResourceRef, ResourceType
from circle_access.service import AccessService


def broken_session():
    raise OperationalError("INSERT", {}, Exception("audit disk full"))


@pytest.fixture
def dead_audit_service(db):
    return AccessService(db, recorder=AuditRecorder(session_factory=broken_session))


# =============================================================================
# Recording decisions
# =============================================================================

def test_each_decision_writes_exactly_one_entry(world, service, audit_count):
    case_ref = ResourceRef(ResourceType.CASE, world.case_1)

    before = audit_count()
    service.can_mutate(world.clerk_a, Action.UPDATE, case_ref)
    assert audit_count() == before + 1

    service.can_view(world.trainee_c, case_ref)
    assert audit_count() == before + 2


def test_denial_is_recorded_with_reason_and_rule(world, service):
    context = RequestContext(ip_address="10.0.0.7", user_agent="pytest")
    service.can_view(world.trainee_c, ResourceRef(ResourceType.CASE, world.case_1), context)

    entries = AuditRecorder().list_entries(user_id=world.trainee_c)
    assert len(entries) == 1
    entry = entries[0]
    assert entry.action == "view"
    assert entry.resource_type == "case"
    assert entry.resource_id == world.case_1
    assert entry.details["phase"] == "authorization"
    assert entry.details["decision"] == "deny"
    assert entry.details["rule"] == "case_view"
    assert entry.ip_address == "10.0.0.7"
    assert entry.user_agent == "pytest"


def test_create_records_parent_id(world, service):
    ref = ResourceRef(ResourceType.THREAD, parent_id=world.case_1)
    service.can_mutate(world.clerk_b, Action.CREATE, ref)

    entry = AuditRecorder().list_entries(user_id=world.clerk_b)[0]
    assert entry.details["parent_id"] == world.case_1
    assert entry.details["decision"] == "deny"


def test_completed_mutation_adds_mutation_entry(world, service):
    service.update_case(world.judge_a, world.case_1, {"title": "Renamed"})

    entries = AuditRecorder().list_entries(resource_id=world.case_1, action="update")
    phases = sorted(e.details["phase"] for e in entries)
    assert phases == ["authorization", "mutation"]


def test_unknown_actor_denial_is_still_recorded(world, service, audit_count):
    decision = service.can_view("ghost", ResourceRef(ResourceType.CASE, world.case_1))

    assert not decision
    assert decision.reason == DecisionReason.NOT_FOUND
    assert audit_count(user_id="ghost") == 1


# =============================================================================
# Ungated writes
# =============================================================================

def test_record_audit_without_actor(audit_count):
    entry = AuditRecorder().record(None, "login_failed", "profile", details={"employee_id": "EMP-X"})

    assert entry.id
    assert entry.user_id is None
    assert audit_count(action="login_failed") == 1


def test_record_audit_by_trainee_is_not_gated(world, service):
    entry = service.record_audit(world.trainee_c, "export", "case", world.case_1)

    assert entry.user_id == world.trainee_c
    assert entry.details == {}


def test_provisioning_is_audited_as_system(world):
    entries = AuditRecorder().list_entries(resource_type="profile", limit=500)

    assert entries
    assert all(e.user_id is None for e in entries)
    assert all(e.details["phase"] == "provisioning" for e in entries)


# =============================================================================
# Fail closed
# =============================================================================

def test_recorder_raises_store_unavailable(sqlalchemy_db):
    recorder = AuditRecorder(session_factory=broken_session)

    with pytest.raises(StoreUnavailable):
        recorder.record("user-1", "view", "case", "case-1")


def test_allow_becomes_deny_when_audit_is_down(world, dead_audit_service):
    ref = ResourceRef(ResourceType.CASE, world.case_1)

    view = dead_audit_service.can_view(world.judge_a, ref)
    update = dead_audit_service.can_mutate(world.judge_a, Action.UPDATE, ref)

    assert not view
    assert not update
    assert update.reason == DecisionReason.STORE_UNAVAILABLE


def test_mutation_is_refused_when_audit_is_down(db, world, dead_audit_service):
    from circle_access.db.models import Case

    with pytest.raises(StoreUnavailable):
        dead_audit_service.update_case(world.judge_a, world.case_1, {"title": "Never saved"})

    db.expire_all()
    case = db.query(Case).filter(Case.id == world.case_1).one()
    assert case.title == "State v. Example"


def test_case_listing_is_refused_when_audit_is_down(world, dead_audit_service):
    with pytest.raises(StoreUnavailable):
        dead_audit_service.list_cases(world.judge_a)


# =============================================================================
# Listings and rejected updates
# =============================================================================

def test_case_listing_writes_one_entry_naming_cases(world, service, audit_count):
    before = audit_count(action="list")

    listed = service.list_cases(world.trainee_a)

    assert [case.id for case in listed] == [world.case_1]
    assert audit_count(action="list") == before + 1
    entry = AuditRecorder().list_entries(user_id=world.trainee_a, action="list")[0]
    assert entry.resource_type == "case"
    assert entry.resource_id is None
    assert entry.details["decision"] == "allow"
    assert entry.details["case_ids"] == [world.case_1]


def test_empty_case_listing_is_still_recorded(world, service, audit_count):
    assert service.list_cases(world.trainee_c) == []

    assert audit_count(user_id=world.trainee_c, action="list") == 1


def test_update_with_unknown_field_is_authorized_and_recorded_first(world, service, audit_count):
    from circle_access.errors import ConstraintViolation

    with pytest.raises(ConstraintViolation):
        service.update_case(world.judge_a, world.case_1, {"case_number": "CASE-9"})

    assert audit_count(user_id=world.judge_a, action="update", resource_id=world.case_1) == 1


def test_outsider_update_with_unknown_field_is_concealed(world, service):
    from circle_access.errors import NotFound

    with pytest.raises(NotFound):
        service.update_case(world.trainee_c, world.case_1, {"case_number": "CASE-9"})

    entry = AuditRecorder().list_entries(user_id=world.trainee_c, action="update")[0]
    assert entry.details["decision"] == "deny"


# =============================================================================
# Listing
# =============================================================================

def test_list_is_newest_first_and_limited(world, service):
    for i in range(3):
        service.record_audit(world.judge_a, f"note_{i}", "case", world.case_1)

    entries = service.list_audit(world.judge_a, user_id=world.judge_a, resource_type="case", limit=2)

    assert [e.action for e in entries] == ["note_2", "note_1"]


def test_any_judge_can_list_audit(world, service):
    entries = service.list_audit(world.judge_b)

    assert all(isinstance(e, AuditEntry) for e in entries)


@pytest.mark.parametrize("who", ["clerk_a", "trainee_a", "trainee_c"])
def test_non_judges_cannot_list_audit(world, service, who):
    with pytest.raises(PermissionDenied):
        service.list_audit(getattr(world, who))
