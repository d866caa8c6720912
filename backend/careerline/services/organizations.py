"""Organizations and their memberships."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from .. import audit, models, schemas
from ..errors import BusinessRuleViolation, NotFoundError, ValidationFailed
from ..rbac import check_org_role, get_membership

# purpose: keep org membership current so org-scoped grants resolve
# status: active

logger = logging.getLogger(__name__)


def create_organization(
    db: Session,
    payload: schemas.OrganizationCreate,
    *,
    creator_id: UUID,
) -> models.Organization:
    """Create an organization; its creator becomes the first admin."""

    org = models.Organization(
        name=payload.name,
        type=payload.type,
        meta=payload.meta,
        created_by=creator_id,
    )
    db.add(org)
    db.flush()
    db.add(models.OrgMember(org_id=org.id, user_id=creator_id, role=models.OrgMemberRole.ADMIN))
    audit.log_action(db, creator_id, "organization.created", "organization", org.id, {"name": org.name})
    db.flush()
    return org


def get_organization(db: Session, org_id: UUID) -> models.Organization:
    org = db.get(models.Organization, org_id)
    if org is None:
        raise NotFoundError("Organization not found")
    return org


def search_organizations(
    db: Session,
    query: str | None = None,
    org_type: models.OrganizationType | None = None,
    limit: int = 20,
) -> list[models.Organization]:
    q = db.query(models.Organization)
    if query:
        q = q.filter(models.Organization.name.ilike(f"%{query}%"))
    if org_type is not None:
        q = q.filter(models.Organization.type == org_type)
    return q.order_by(models.Organization.name.asc()).limit(limit).all()


def list_user_organizations(db: Session, user_id: UUID) -> list[models.Organization]:
    return (
        db.query(models.Organization)
        .join(models.OrgMember, models.OrgMember.org_id == models.Organization.id)
        .filter(models.OrgMember.user_id == user_id)
        .order_by(models.Organization.name.asc())
        .all()
    )


def list_members(db: Session, org_id: UUID) -> list[models.OrgMember]:
    get_organization(db, org_id)
    return (
        db.query(models.OrgMember)
        .filter(models.OrgMember.org_id == org_id)
        .order_by(models.OrgMember.joined_at.asc())
        .all()
    )


def add_member(
    db: Session,
    org_id: UUID,
    payload: schemas.OrgMemberCreate,
    *,
    actor: models.User,
) -> models.OrgMember:
    check_org_role(db, actor, org_id)
    if db.get(models.User, payload.user_id) is None:
        raise ValidationFailed(f"Unknown user: {payload.user_id}")
    membership = get_membership(db, payload.user_id, org_id)
    if membership is not None:
        membership.role = payload.role
    else:
        membership = models.OrgMember(org_id=org_id, user_id=payload.user_id, role=payload.role)
        db.add(membership)
    audit.log_action(
        db,
        actor.id,
        "organization.member_added",
        "organization",
        org_id,
        {"userId": str(payload.user_id), "role": payload.role.value},
    )
    db.flush()
    return membership


def remove_member(db: Session, org_id: UUID, user_id: UUID, *, actor: models.User) -> None:
    check_org_role(db, actor, org_id)
    membership = get_membership(db, user_id, org_id)
    if membership is None:
        raise NotFoundError("Membership not found")
    if membership.role == models.OrgMemberRole.ADMIN:
        admins = (
            db.query(models.OrgMember)
            .filter(
                models.OrgMember.org_id == org_id,
                models.OrgMember.role == models.OrgMemberRole.ADMIN,
            )
            .count()
        )
        if admins <= 1:
            raise BusinessRuleViolation("An organization must keep at least one admin")
    db.delete(membership)
    audit.log_action(
        db, actor.id, "organization.member_removed", "organization", org_id, {"userId": str(user_id)}
    )
    db.flush()
    logger.info("Removed user %s from organization %s", user_id, org_id)
