"""
Privileged setup flows for circles and user profiles.

These run outside the policy (administrative tooling, seeding) and are
audited as system actions with no user id.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .audit import AuditRecorder
from .db.models import Circle, UserProfile, UserRole
from .errors import ConstraintViolation, NotFound, StoreUnavailable

logger = logging.getLogger(__name__)


def _commit(db: Session, what: str, conflict: Optional[str] = None) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ConstraintViolation(conflict or f"Conflicting {what}") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Provisioning write failed on {what}: {e}", exc_info=True)
        raise StoreUnavailable(f"Could not save {what}") from e


def create_circle(
    db: Session,
    name: str,
    description: Optional[str] = None,
    recorder: Optional[AuditRecorder] = None,
) -> Circle:
    circle = Circle(name=name, description=description)
    db.add(circle)
    _commit(db, "circle")
    db.refresh(circle)

    (recorder or AuditRecorder()).record(
        None, "create", "circle", circle.id, {"phase": "provisioning", "name": name}
    )
    return circle


def create_profile(
    db: Session,
    full_name: str,
    employee_id: str,
    home_circle_id: str,
    role: UserRole = UserRole.TRAINEE,
    recorder: Optional[AuditRecorder] = None,
) -> UserProfile:
    try:
        exists = db.query(Circle.id).filter(Circle.id == home_circle_id).first()
    except SQLAlchemyError as e:
        raise StoreUnavailable("Could not read circle") from e
    if not exists:
        raise NotFound("Circle not found")

    profile = UserProfile(
        full_name=full_name,
        employee_id=employee_id,
        home_circle_id=home_circle_id,
        role=role,
    )
    db.add(profile)
    _commit(db, "profile", conflict=f"Employee id {employee_id} already registered")
    db.refresh(profile)

    (recorder or AuditRecorder()).record(
        None, "create", "profile", profile.id,
        {"phase": "provisioning", "role": role.value, "home_circle_id": home_circle_id},
    )
    return profile


def change_role(
    db: Session,
    profile_id: str,
    role: UserRole,
    recorder: Optional[AuditRecorder] = None,
) -> UserProfile:
    try:
        profile = db.query(UserProfile).filter(UserProfile.id == profile_id).first()
    except SQLAlchemyError as e:
        raise StoreUnavailable("Could not read profile") from e
    if not profile:
        raise NotFound("User profile not found")

    previous = profile.role
    profile.role = role
    _commit(db, "profile")
    db.refresh(profile)

    logger.info(f"Profile {profile_id} role changed {previous.value} -> {role.value}")
    (recorder or AuditRecorder()).record(
        None, "update", "profile", profile.id,
        {"phase": "provisioning", "role": role.value, "previous_role": previous.value},
    )
    return profile
