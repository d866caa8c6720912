from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from . import models
from .errors import AccessDenied, NodeNotFound, NotFoundError

# purpose: centralize ownership and organization role guards used by routes and services
# status: active


def get_membership(db: Session, user_id: UUID, org_id: UUID) -> models.OrgMember | None:
    return (
        db.query(models.OrgMember)
        .filter(models.OrgMember.org_id == org_id, models.OrgMember.user_id == user_id)
        .first()
    )


def check_org_role(
    db: Session,
    user: models.User,
    org_id: UUID,
    roles: list[models.OrgMemberRole] | tuple[models.OrgMemberRole, ...] = (models.OrgMemberRole.ADMIN,),
) -> models.OrgMember:
    if db.get(models.Organization, org_id) is None:
        raise NotFoundError("Organization not found")
    membership = get_membership(db, user.id, org_id)
    if not membership or membership.role not in roles:
        raise AccessDenied("Not authorized for this organization")
    return membership


def user_org_ids(db: Session, user_id: UUID | None) -> set[UUID]:
    """Return the organizations the user belongs to (any role)."""
    if user_id is None:
        return set()
    rows = (
        db.query(models.OrgMember.org_id)
        .filter(models.OrgMember.user_id == user_id)
        .all()
    )
    return {row[0] for row in rows}


def ensure_node_owner(db: Session, user_id: UUID, node_id: UUID) -> models.TimelineNode:
    """Return the node when owned by the user; otherwise report it as missing."""
    node = db.get(models.TimelineNode, node_id)
    if node is None or node.user_id != user_id:
        raise NodeNotFound(node_id)
    return node


def ensure_nodes_owned(db: Session, user_id: UUID, node_ids: list[UUID]) -> list[models.TimelineNode]:
    unique_ids = list(dict.fromkeys(node_ids))
    if not unique_ids:
        return []
    nodes = (
        db.query(models.TimelineNode)
        .filter(models.TimelineNode.id.in_(unique_ids), models.TimelineNode.user_id == user_id)
        .all()
    )
    if len(nodes) != len(unique_ids):
        found = {node.id for node in nodes}
        missing = [str(node_id) for node_id in unique_ids if node_id not in found]
        raise NodeNotFound(details={"missingNodeIds": missing})
    by_id = {node.id: node for node in nodes}
    return [by_id[node_id] for node_id in unique_ids]
