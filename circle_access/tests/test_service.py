"""
Access Service Tests
====================

End-to-end flows over a real SQLite database:
- Cross-circle collaboration (view granted, update withheld)
- Concealment of cases outside the caller's circles
- Inheritance of case visibility by threads, messages and documents
- Constraint violations on duplicate identifiers
- Store failures turning into Deny
"""

import pytest
from sqlalchemy.exc import OperationalError

from circle_access.db.models import CaseStatus, LinkRole, UserRole
from circle_access.errors import ConstraintViolation, NotFound, PermissionDenied, StoreUnavailable
from circle_access.policy import Action, DecisionReason, ResourceRef, ResourceType
from circle_access.provisioning import change_role, create_profile
from circle_access.service import AccessService


@pytest.fixture
def shared(world, service):
    """CASE-1 shared with circle B, with one thread, message and document"""
    service.add_collaboration(world.judge_a, world.case_1, world.circle_b)
    thread = service.create_thread(world.clerk_a, world.case_1, "Evidence review")
    world.thread = thread.id
    world.message = service.send_message(world.clerk_b, thread.id, "Exhibit 4 looks altered").id
    world.document = service.upload_document(
        world.trainee_a, world.case_1, "exhibit4.pdf", "cases/case-1/exhibit4.pdf", "application/pdf", 2048
    ).id
    return world


# =============================================================================
# Collaboration scenarios
# =============================================================================

def test_collaborating_clerk_can_view_but_not_update(shared, service):
    case_ref = ResourceRef(ResourceType.CASE, shared.case_1)

    assert service.can_view(shared.clerk_b, case_ref)
    assert not service.can_mutate(shared.clerk_b, Action.UPDATE, case_ref)

    case = service.get_case(shared.clerk_b, shared.case_1)
    assert case.case_number == "CASE-1"

    with pytest.raises(PermissionDenied):
        service.update_case(shared.clerk_b, shared.case_1, {"title": "Hijacked"})


def test_unlinked_circle_cannot_tell_case_exists(world, service):
    with pytest.raises(NotFound) as hidden:
        service.get_case(world.trainee_c, world.case_1)
    with pytest.raises(NotFound) as missing:
        service.get_case(world.trainee_c, "no-such-case")

    assert str(hidden.value) == str(missing.value)
    assert hidden.value.code == missing.value.code


def test_unlinked_manager_update_is_concealed(world, service):
    with pytest.raises(NotFound):
        service.update_case(world.judge_b, world.case_1, {"title": "Nope"})


def test_created_case_belongs_to_creator_circle(world, service):
    case = service.create_case(world.clerk_b, case_number="CASE-2", title="Civil matter")

    assert case.primary_circle_id == world.circle_b
    assert service.entitled_circles(world.clerk_b, case.id) == [world.circle_b]
    assert case.status == CaseStatus.OPEN


def test_trainee_cannot_create_case(world, service):
    with pytest.raises(PermissionDenied):
        service.create_case(world.trainee_a, case_number="CASE-9", title="Not allowed")


def test_repeated_collaboration_keeps_single_link(world, service):
    assert service.add_collaboration(world.judge_a, world.case_1, world.circle_b) is True
    assert service.add_collaboration(world.clerk_a, world.case_1, world.circle_b) is False

    circles = service.entitled_circles(world.judge_a, world.case_1)
    assert circles.count(world.circle_b) == 1
    assert sorted(circles) == sorted([world.circle_a, world.circle_b])


def test_collaboration_by_collaborator_is_denied(shared, service):
    with pytest.raises(PermissionDenied):
        service.add_collaboration(shared.judge_b, shared.case_1, shared.circle_c)


def test_list_collaborations(shared, service):
    links = service.list_collaborations(shared.clerk_b, shared.case_1)

    roles = {link.circle_id: link.role for link in links}
    assert roles == {shared.circle_a: LinkRole.PRIMARY, shared.circle_b: LinkRole.COLLABORATING}


def test_list_cases_spans_primary_and_linked(shared, service):
    own = service.create_case(shared.judge_b, case_number="CASE-B1", title="B's own case")

    listed = {case.id for case in service.list_cases(shared.clerk_b)}
    assert listed == {shared.case_1, own.id}
    assert service.list_cases(shared.trainee_c) == []


def test_list_cases_filters_by_status(world, service):
    service.close_case(world.clerk_a, world.case_1)

    assert service.list_cases(world.judge_a, status=CaseStatus.OPEN) == []
    assert [c.id for c in service.list_cases(world.judge_a, status=CaseStatus.CLOSED)] == [world.case_1]


# =============================================================================
# Case updates
# =============================================================================

def test_primary_clerk_updates_case(world, service):
    case = service.update_case(world.clerk_a, world.case_1, {"status": "in_progress", "priority": "urgent"})

    assert case.status == CaseStatus.IN_PROGRESS
    assert case.priority.value == "urgent"


def test_primary_trainee_cannot_update_case(world, service):
    with pytest.raises(PermissionDenied):
        service.update_case(world.trainee_a, world.case_1, {"title": "x"})


def test_primary_circle_cannot_be_reassigned(world, service):
    with pytest.raises(ConstraintViolation):
        service.update_case(world.judge_a, world.case_1, {"primary_circle_id": world.circle_b})


def test_assigned_judge_must_be_judge(world, service):
    with pytest.raises(ConstraintViolation):
        service.update_case(world.judge_a, world.case_1, {"assigned_judge": world.clerk_a})

    case = service.update_case(world.judge_a, world.case_1, {"assigned_judge": world.judge_a})
    assert case.assigned_judge == world.judge_a


def test_update_does_not_modify_callers_changes(world, service):
    changes = {"status": "in_progress"}

    service.update_case(world.clerk_a, world.case_1, changes)

    assert changes == {"status": "in_progress"}
    assert type(changes["status"]) is str


def test_duplicate_case_number_is_constraint_violation(world, service):
    with pytest.raises(ConstraintViolation):
        service.create_case(world.judge_a, case_number="CASE-1", title="Duplicate")

    # Session is usable after the rollback
    assert service.get_case(world.judge_a, world.case_1).title == "State v. Example"


# =============================================================================
# Case content inheritance
# =============================================================================

@pytest.mark.parametrize("who", ["judge_a", "clerk_a", "trainee_a", "judge_b", "clerk_b", "trainee_c"])
def test_content_visibility_matches_case_visibility(shared, service, who):
    actor_id = getattr(shared, who)
    case_view = service.can_view(actor_id, ResourceRef(ResourceType.CASE, shared.case_1)).allowed

    assert service.can_view(actor_id, ResourceRef(ResourceType.THREAD, shared.thread)).allowed == case_view
    assert service.can_view(actor_id, ResourceRef(ResourceType.MESSAGE, shared.message)).allowed == case_view
    assert service.can_view(actor_id, ResourceRef(ResourceType.DOCUMENT, shared.document)).allowed == case_view


def test_collaborating_trainee_participates(shared, service, db):
    trainee_b = create_profile(db, "Trainee B", "EMP-B3", shared.circle_b, UserRole.TRAINEE).id

    message = service.send_message(trainee_b, shared.thread, "Noted")
    document = service.upload_document(trainee_b, shared.case_1, "notes.txt", "cases/case-1/notes.txt", "text/plain")
    thread = service.create_thread(trainee_b, shared.case_1, "Questions")

    assert message.sender_id == trainee_b
    assert document.uploaded_by == trainee_b
    assert thread.case_id == shared.case_1


def test_thread_lists_messages_in_order(shared, service):
    service.send_message(shared.judge_a, shared.thread, "Second")

    thread = service.get_thread(shared.trainee_a, shared.thread)
    assert [m.content for m in thread.messages] == ["Exhibit 4 looks altered", "Second"]
    assert [m.content for m in service.list_messages(shared.clerk_b, shared.thread)] == [
        "Exhibit 4 looks altered", "Second",
    ]


def test_outsider_content_access_is_concealed(shared, service):
    with pytest.raises(NotFound):
        service.get_thread(shared.trainee_c, shared.thread)
    with pytest.raises(NotFound):
        service.get_document(shared.trainee_c, shared.document)
    with pytest.raises(NotFound):
        service.send_message(shared.trainee_c, shared.thread, "Hello?")
    with pytest.raises(NotFound):
        service.create_thread(shared.trainee_c, shared.case_1, "Sneaky")


def test_send_message_to_missing_thread(world, service):
    with pytest.raises(NotFound):
        service.send_message(world.judge_a, "missing-thread", "Lost")


def test_case_threads_and_documents_listed_for_collaborator(shared, service):
    later = service.create_thread(shared.judge_a, shared.case_1, "Sentencing")

    threads = service.list_threads(shared.clerk_b, shared.case_1)
    documents = service.list_documents(shared.clerk_b, shared.case_1)

    assert {t.id for t in threads} == {shared.thread, later.id}
    assert [d.id for d in documents] == [shared.document]


def test_case_listings_are_concealed_from_outsiders(shared, service):
    with pytest.raises(NotFound):
        service.list_threads(shared.trainee_c, shared.case_1)
    with pytest.raises(NotFound):
        service.list_documents(shared.trainee_c, shared.case_1)
    with pytest.raises(NotFound):
        service.list_threads(shared.judge_a, "missing-case")


# =============================================================================
# Message edits
# =============================================================================

def test_sender_edits_own_message(shared, service):
    message = service.edit_message(shared.clerk_b, shared.message, "Exhibit 4 is altered")

    assert message.content == "Exhibit 4 is altered"
    assert message.edited_at is not None


def test_other_member_cannot_edit_message(shared, service):
    with pytest.raises(PermissionDenied):
        service.edit_message(shared.judge_a, shared.message, "Rewritten by the judge")


# =============================================================================
# Circles and profiles
# =============================================================================

def test_circle_visible_to_members_only(world, service):
    assert service.get_circle(world.trainee_a, world.circle_a).name == "First Criminal Circle"

    with pytest.raises(PermissionDenied):
        service.get_circle(world.trainee_a, world.circle_b)


def test_profile_self_access(world, service):
    assert service.get_profile(world.clerk_a, world.clerk_a).employee_id == "EMP-A2"

    profile = service.update_profile(world.clerk_a, world.clerk_a, "Clerk A. Renamed")
    assert profile.full_name == "Clerk A. Renamed"

    with pytest.raises(PermissionDenied):
        service.get_profile(world.judge_a, world.clerk_a)
    with pytest.raises(PermissionDenied):
        service.update_profile(world.judge_a, world.clerk_a, "Overwritten")


def test_duplicate_employee_id_is_constraint_violation(world, db):
    with pytest.raises(ConstraintViolation):
        create_profile(db, "Someone Else", "EMP-A1", world.circle_a)


def test_role_change_takes_effect_on_next_decision(world, service, db):
    case_ref = ResourceRef(ResourceType.CASE, world.case_1)
    assert not service.can_mutate(world.trainee_a, Action.UPDATE, case_ref)

    change_role(db, world.trainee_a, UserRole.CLERK)

    assert service.can_mutate(world.trainee_a, Action.UPDATE, case_ref)


# =============================================================================
# Store failures
# =============================================================================

def test_relationship_store_failure_denies(world, db, monkeypatch):
    service = AccessService(db)

    def fail(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    monkeypatch.setattr(db, "query", fail)
    decision = service.can_view(world.judge_a, ResourceRef(ResourceType.CASE, world.case_1))

    assert not decision
    assert decision.reason == DecisionReason.STORE_UNAVAILABLE


def test_relationship_store_failure_raises_on_gated_call(world, db, monkeypatch):
    service = AccessService(db)

    def fail(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    monkeypatch.setattr(db, "query", fail)
    with pytest.raises(StoreUnavailable):
        service.get_case(world.judge_a, world.case_1)


def test_provisioning_write_failure_raises_store_unavailable(world, db, monkeypatch):
    from circle_access.provisioning import create_circle

    def fail():
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db, "commit", fail)

    with pytest.raises(StoreUnavailable):
        create_circle(db, "Family Circle")
    with pytest.raises(StoreUnavailable):
        change_role(db, world.trainee_a, UserRole.CLERK)


def test_judge_lookup_failure_raises_store_unavailable(world, db, monkeypatch):
    service = AccessService(db)

    def fail(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    monkeypatch.setattr(db, "query", fail)
    with pytest.raises(StoreUnavailable):
        service._check_judge(world.judge_a)


def test_message_listing_failure_raises_store_unavailable(shared, db, monkeypatch):
    service = AccessService(db)
    monkeypatch.setattr(service, "authorize", lambda *args, **kwargs: None)

    def fail(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    monkeypatch.setattr(db, "query", fail)
    with pytest.raises(StoreUnavailable):
        service.list_messages(shared.clerk_b, shared.thread)
    with pytest.raises(StoreUnavailable):
        service.list_documents(shared.clerk_b, shared.case_1)
