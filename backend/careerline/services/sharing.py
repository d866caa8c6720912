"""Turn a staged share configuration into node policies, and report who has access.

The staged selection itself is :class:`careerline.schemas.ShareConfiguration`;
this module only touches the database. Every function flushes inside the
caller's transaction so one route commit applies a whole share or none of it.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy.orm import Session

from .. import audit, models
from ..errors import NotFoundError, ValidationFailed
from ..rbac import ensure_node_owner, ensure_nodes_owned
from ..schemas import ShareConfiguration, ShareTarget
from . import policy_store

# purpose: apply and inspect sharing grants across a user's timeline nodes
# status: active

logger = logging.getLogger(__name__)

_UNTITLED = {
    models.NodeType.JOB: "Untitled Job",
    models.NodeType.EDUCATION: "Untitled Education",
}


def node_title(node: models.TimelineNode) -> str:
    meta = node.meta or {}
    if node.type == models.NodeType.JOB:
        title = meta.get("company")
    elif node.type == models.NodeType.EDUCATION:
        title = meta.get("institution")
    else:
        title = meta.get("title")
    return title or node.label or _UNTITLED.get(node.type, "Untitled")


def _check_targets(db: Session, owner_id: UUID, targets: Iterable[ShareTarget]) -> None:
    for target in targets:
        if target.type == models.SubjectType.USER:
            if target.id == owner_id:
                raise ValidationFailed("You already own these nodes")
            if db.get(models.User, target.id) is None:
                raise ValidationFailed(f"Unknown user: {target.id}")
        elif target.type == models.SubjectType.ORG:
            if db.get(models.Organization, target.id) is None:
                raise ValidationFailed(f"Unknown organization: {target.id}")


def _resolve_node_ids(db: Session, owner_id: UUID, configuration: ShareConfiguration) -> list[UUID]:
    if configuration.share_all_nodes:
        rows = (
            db.query(models.TimelineNode.id)
            .filter(models.TimelineNode.user_id == owner_id)
            .order_by(models.TimelineNode.created_at.asc())
            .all()
        )
        return [row[0] for row in rows]
    return list(configuration.selected_node_ids)


def execute_share(
    db: Session,
    configuration: ShareConfiguration,
    *,
    owner_id: UUID,
) -> list[models.NodePolicy]:
    """Grant every target its level on every selected node.

    All validation happens before the first write, and nothing is committed
    here: a failure leaves the caller's transaction to roll back whole.
    """
    if not configuration.targets:
        raise ValidationFailed("Choose at least one person, organization or public access")
    node_ids = _resolve_node_ids(db, owner_id, configuration)
    if not node_ids:
        raise ValidationFailed("Choose at least one node to share")
    ensure_nodes_owned(db, owner_id, node_ids)
    _check_targets(db, owner_id, configuration.targets)

    granted: list[models.NodePolicy] = []
    for target in configuration.targets:
        for node_id in node_ids:
            granted.append(
                policy_store.replace_subject_grant(
                    db,
                    node_id=node_id,
                    level=target.access_level,
                    subject_type=target.type,
                    subject_id=target.id,
                    granted_by=owner_id,
                    expires_at=target.expires_at,
                )
            )
    audit.log_action(
        db,
        owner_id,
        "sharing.granted",
        "timeline_node",
        None,
        {
            "targets": [
                {"subject": target.key, "level": target.access_level.value}
                for target in configuration.targets
            ],
            "nodeIds": [str(node_id) for node_id in node_ids],
        },
    )
    logger.info(
        "User %s shared %d nodes with %d targets", owner_id, len(node_ids), len(configuration.targets)
    )
    return granted


def _node_info(node: models.TimelineNode) -> dict[str, Any]:
    return {"nodeId": str(node.id), "nodeTitle": node_title(node), "nodeType": node.type.value}


def fetch_current_permissions(
    db: Session,
    node_ids: list[UUID],
    *,
    owner_id: UUID,
) -> dict[str, Any]:
    """Group the active view grants on the nodes by subject for display."""
    if node_ids:
        nodes = ensure_nodes_owned(db, owner_id, node_ids)
    else:
        nodes = (
            db.query(models.TimelineNode)
            .filter(models.TimelineNode.user_id == owner_id)
            .order_by(models.TimelineNode.created_at.asc())
            .all()
        )
    by_id = {node.id: node for node in nodes}
    now = policy_store.utcnow()
    policies = [
        policy
        for policy in policy_store.list_policies_for_nodes(db, by_id, models.PolicyEffect.ALLOW)
        if policy.action == models.PermissionAction.VIEW and policy_store.is_active(policy, now)
    ]

    groups: dict[tuple[models.SubjectType, UUID | None], dict[str, Any]] = {}
    for policy in policies:
        key = (policy.subject_type, policy.subject_id)
        group = groups.get(key)
        if group is None:
            group = {
                "accessLevel": policy.level,
                "policyIds": [],
                "nodes": {},
                "expiresAt": None,
            }
            groups[key] = group
        group["policyIds"].append(str(policy.id))
        expires_at = policy_store.as_utc(policy.expires_at)
        info = group["nodes"].get(policy.node_id)
        if info is None:
            info = {**_node_info(by_id[policy.node_id]), "expiresAt": expires_at}
            group["nodes"][policy.node_id] = info
        elif expires_at is not None and (info["expiresAt"] is None or expires_at < info["expiresAt"]):
            info["expiresAt"] = expires_at
        # the group reports whichever of its grants lapses first
        if expires_at is not None and (group["expiresAt"] is None or expires_at < group["expiresAt"]):
            group["expiresAt"] = expires_at
        if models.LEVEL_RANK[policy.level] > models.LEVEL_RANK[group["accessLevel"]]:
            group["accessLevel"] = policy.level

    users: list[dict[str, Any]] = []
    organizations: list[dict[str, Any]] = []
    public = None
    for (subject_type, subject_id), group in groups.items():
        entry = {
            "subjectKey": policy_store.subject_key(subject_type, subject_id),
            "accessLevel": group["accessLevel"].value,
            "policyIds": group["policyIds"],
            "expiresAt": group["expiresAt"].isoformat() if group["expiresAt"] else None,
            "nodes": [
                {**info, "expiresAt": info["expiresAt"].isoformat() if info["expiresAt"] else None}
                for info in group["nodes"].values()
            ],
        }
        if subject_type == models.SubjectType.USER:
            user = db.get(models.User, subject_id)
            users.append(
                {
                    "id": str(subject_id),
                    "name": (user.full_name or user.email) if user else None,
                    "email": user.email if user else None,
                    **entry,
                }
            )
        elif subject_type == models.SubjectType.ORG:
            org = db.get(models.Organization, subject_id)
            organizations.append(
                {
                    "id": str(subject_id),
                    "name": org.name if org else None,
                    "type": org.type.value if org else None,
                    **entry,
                }
            )
        else:
            public = entry
    return {"users": users, "organizations": organizations, "public": public}


def _subject_grants(
    db: Session,
    owner_id: UUID,
    subject_key: str,
    node_id: UUID | None,
) -> list[models.NodePolicy]:
    subject_type, subject_id = policy_store.parse_subject_key(subject_key)
    if node_id is not None:
        node_ids = [ensure_node_owner(db, owner_id, node_id).id]
    else:
        node_ids = [
            row[0]
            for row in db.query(models.TimelineNode.id)
            .filter(models.TimelineNode.user_id == owner_id)
            .all()
        ]
    grants = [
        policy
        for policy in policy_store.list_policies_for_nodes(db, node_ids, models.PolicyEffect.ALLOW)
        if policy.action == models.PermissionAction.VIEW
        and policy.subject_type == subject_type
        and policy.subject_id == subject_id
    ]
    if not grants:
        raise NotFoundError(f"No permissions found for {subject_key}")
    return grants


def update_permission(
    db: Session,
    subject_key: str,
    new_level: models.VisibilityLevel,
    *,
    owner_id: UUID,
    node_id: UUID | None = None,
) -> list[models.NodePolicy]:
    """Move a subject's grants (on one node, or all the owner's nodes) to a new level."""
    grants = _subject_grants(db, owner_id, subject_key, node_id)
    now = policy_store.utcnow()
    per_node: dict[UUID, models.NodePolicy] = {}
    for policy in grants:
        current = per_node.get(policy.node_id)
        if current is None or (
            not policy_store.is_active(current, now) and policy_store.is_active(policy, now)
        ):
            per_node[policy.node_id] = policy

    updated = [
        policy_store.replace_subject_grant(
            db,
            node_id=grant_node_id,
            level=new_level,
            subject_type=policy.subject_type,
            subject_id=policy.subject_id,
            granted_by=owner_id,
            # a lapsed expiry is not carried onto the new grant
            expires_at=policy.expires_at if policy_store.is_active(policy, now) else None,
        )
        for grant_node_id, policy in per_node.items()
    ]
    audit.log_action(
        db,
        owner_id,
        "sharing.updated",
        "timeline_node",
        node_id,
        {"subject": subject_key, "level": new_level.value, "nodes": len(updated)},
    )
    return updated


def remove_permission(
    db: Session,
    subject_key: str,
    *,
    owner_id: UUID,
    node_id: UUID | None = None,
) -> int:
    grants = _subject_grants(db, owner_id, subject_key, node_id)
    for policy in grants:
        db.delete(policy)
    db.flush()
    audit.log_action(
        db,
        owner_id,
        "sharing.revoked",
        "timeline_node",
        node_id,
        {"subject": subject_key, "removed": len(grants)},
    )
    logger.info("User %s revoked %d grants from %s", owner_id, len(grants), subject_key)
    return len(grants)
