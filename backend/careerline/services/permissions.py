"""Effective permission resolution for timeline nodes.

A node's owner always has full access. Everyone else is resolved against the
node's policy rows: for a requested level, each level at or above it is
resolved on its own, and the request succeeds when any of them does. A single
level resolves to true when an active ALLOW row matches the caller (public,
the user, or one of the user's organizations) and no active DENY row at that
exact level matches the user or their organizations. Public rows never deny.

Single-node checks and the bulk listing share :func:`resolve_policies` so the
two can never disagree.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .. import models
from ..errors import NodeNotFound
from ..rbac import user_org_ids
from . import policy_store

# purpose: answer who may view or edit which node, and at what level
# status: active

logger = logging.getLogger(__name__)

LEVELS_DESCENDING = sorted(models.LEVEL_RANK, key=models.LEVEL_RANK.get, reverse=True)


@dataclass(frozen=True)
class AccessibleNode:
    node_id: UUID
    level: models.VisibilityLevel
    can_edit: bool


def _matches_subject(
    policy: models.NodePolicy,
    user_id: UUID | None,
    org_ids: set[UUID],
    *,
    include_public: bool,
) -> bool:
    if policy.subject_type == models.SubjectType.PUBLIC:
        return include_public
    if policy.subject_type == models.SubjectType.USER:
        return user_id is not None and policy.subject_id == user_id
    return policy.subject_id in org_ids


def _resolve_exact_level(
    policies: Sequence[models.NodePolicy],
    user_id: UUID | None,
    org_ids: set[UUID],
    action: models.PermissionAction,
    level: models.VisibilityLevel,
    now: datetime,
) -> bool:
    relevant = [
        p
        for p in policies
        if p.action == action and p.level == level and policy_store.is_active(p, now)
    ]
    allowed = any(
        p.effect == models.PolicyEffect.ALLOW
        and _matches_subject(p, user_id, org_ids, include_public=True)
        for p in relevant
    )
    if not allowed:
        return False
    denied = any(
        p.effect == models.PolicyEffect.DENY
        and _matches_subject(p, user_id, org_ids, include_public=False)
        for p in relevant
    )
    return not denied


def resolve_policies(
    policies: Sequence[models.NodePolicy],
    user_id: UUID | None,
    org_ids: set[UUID],
    action: models.PermissionAction,
    level: models.VisibilityLevel,
    now: datetime | None = None,
) -> bool:
    """Decide access for a non-owner from one node's policy rows."""
    now = now or policy_store.utcnow()
    wanted = models.LEVEL_RANK[level]
    return any(
        _resolve_exact_level(policies, user_id, org_ids, action, candidate, now)
        for candidate in LEVELS_DESCENDING
        if models.LEVEL_RANK[candidate] >= wanted
    )


def resolve_level(
    policies: Sequence[models.NodePolicy],
    user_id: UUID | None,
    org_ids: set[UUID],
    action: models.PermissionAction = models.PermissionAction.VIEW,
    now: datetime | None = None,
) -> models.VisibilityLevel | None:
    now = now or policy_store.utcnow()
    for level in LEVELS_DESCENDING:
        if resolve_policies(policies, user_id, org_ids, action, level, now):
            return level
    return None


def can_access(
    db: Session,
    user_id: UUID | None,
    node_id: UUID,
    action: models.PermissionAction = models.PermissionAction.VIEW,
    level: models.VisibilityLevel = models.VisibilityLevel.OVERVIEW,
) -> bool:
    node = db.get(models.TimelineNode, node_id)
    if node is None:
        return False
    if user_id is not None and node.user_id == user_id:
        return True
    allowed = resolve_policies(
        policy_store.list_node_policies(db, node_id),
        user_id,
        user_org_ids(db, user_id),
        action,
        level,
    )
    if not allowed:
        logger.info(
            "Access denied: user=%s node=%s action=%s level=%s",
            user_id or "anonymous",
            node_id,
            action.value,
            level.value,
        )
    return allowed


def get_node_access_level(
    db: Session, user_id: UUID | None, node_id: UUID
) -> models.VisibilityLevel | None:
    """Return the most detailed view level the caller holds, or None."""
    if can_access(db, user_id, node_id, models.PermissionAction.VIEW, models.VisibilityLevel.FULL):
        return models.VisibilityLevel.FULL
    if can_access(db, user_id, node_id, models.PermissionAction.VIEW, models.VisibilityLevel.OVERVIEW):
        return models.VisibilityLevel.OVERVIEW
    return None


def require_view_level(
    db: Session, user_id: UUID | None, node_id: UUID
) -> tuple[models.TimelineNode, models.VisibilityLevel]:
    """Load a node for a caller who may see it; missing and hidden look the same."""
    level = get_node_access_level(db, user_id, node_id)
    if level is None:
        raise NodeNotFound(node_id)
    return db.get(models.TimelineNode, node_id), level


def batch_can_access(
    db: Session,
    user_id: UUID | None,
    node_ids: Iterable[UUID],
    action: models.PermissionAction = models.PermissionAction.VIEW,
    level: models.VisibilityLevel = models.VisibilityLevel.OVERVIEW,
) -> dict[UUID, bool]:
    ids = list(dict.fromkeys(node_ids))
    if not ids:
        return {}
    owners = dict(
        db.query(models.TimelineNode.id, models.TimelineNode.user_id)
        .filter(models.TimelineNode.id.in_(ids))
        .all()
    )
    by_node: dict[UUID, list[models.NodePolicy]] = defaultdict(list)
    for policy in policy_store.list_policies_for_nodes(db, [i for i in ids if i in owners]):
        by_node[policy.node_id].append(policy)
    org_ids = user_org_ids(db, user_id)
    now = policy_store.utcnow()
    results: dict[UUID, bool] = {}
    for node_id in ids:
        if node_id not in owners:
            results[node_id] = False
        elif user_id is not None and owners[node_id] == user_id:
            results[node_id] = True
        else:
            results[node_id] = resolve_policies(by_node[node_id], user_id, org_ids, action, level, now)
    return results


def list_accessible_nodes(
    db: Session,
    user_id: UUID | None,
    action: models.PermissionAction = models.PermissionAction.VIEW,
    min_level: models.VisibilityLevel = models.VisibilityLevel.OVERVIEW,
) -> list[AccessibleNode]:
    """List every node the caller can reach at ``min_level`` or above."""
    org_ids = user_org_ids(db, user_id)
    results: list[AccessibleNode] = []

    if user_id is not None:
        owned = (
            db.query(models.TimelineNode.id)
            .filter(models.TimelineNode.user_id == user_id)
            .order_by(models.TimelineNode.created_at.asc())
            .all()
        )
        results.extend(
            AccessibleNode(node_id=row[0], level=models.VisibilityLevel.FULL, can_edit=True)
            for row in owned
        )

    subject_filters = [models.NodePolicy.subject_type == models.SubjectType.PUBLIC]
    if user_id is not None:
        subject_filters.append(
            (models.NodePolicy.subject_type == models.SubjectType.USER)
            & (models.NodePolicy.subject_id == user_id)
        )
    if org_ids:
        subject_filters.append(
            (models.NodePolicy.subject_type == models.SubjectType.ORG)
            & (models.NodePolicy.subject_id.in_(list(org_ids)))
        )
    candidate_query = (
        db.query(models.NodePolicy.node_id)
        .join(models.TimelineNode, models.TimelineNode.id == models.NodePolicy.node_id)
        .filter(models.NodePolicy.effect == models.PolicyEffect.ALLOW, or_(*subject_filters))
    )
    if user_id is not None:
        candidate_query = candidate_query.filter(models.TimelineNode.user_id != user_id)
    candidate_ids = list(dict.fromkeys(row[0] for row in candidate_query.all()))

    by_node: dict[UUID, list[models.NodePolicy]] = defaultdict(list)
    for policy in policy_store.list_policies_for_nodes(db, candidate_ids):
        by_node[policy.node_id].append(policy)

    now = policy_store.utcnow()
    wanted = models.LEVEL_RANK[min_level]
    for node_id in candidate_ids:
        policies = by_node[node_id]
        level = resolve_level(policies, user_id, org_ids, action, now)
        if level is None or models.LEVEL_RANK[level] < wanted:
            continue
        can_edit = resolve_policies(
            policies, user_id, org_ids, models.PermissionAction.EDIT, models.VisibilityLevel.FULL, now
        )
        results.append(AccessibleNode(node_id=node_id, level=level, can_edit=can_edit))
    return results


def list_visible_timeline(
    db: Session, viewer_id: UUID | None, owner_id: UUID
) -> list[tuple[models.TimelineNode, models.VisibilityLevel]]:
    """Another user's nodes as the viewer may see them, each with its resolved level."""
    levels = {
        row.node_id: row.level
        for row in list_accessible_nodes(db, viewer_id)
    }
    if not levels:
        return []
    nodes = (
        db.query(models.TimelineNode)
        .filter(
            models.TimelineNode.user_id == owner_id,
            models.TimelineNode.id.in_(list(levels)),
        )
        .order_by(models.TimelineNode.created_at.asc())
        .all()
    )
    return [(node, levels[node.id]) for node in nodes]


def access_summary(db: Session, user_id: UUID | None, node_id: UUID) -> dict:
    node = db.get(models.TimelineNode, node_id)
    is_owner = node is not None and user_id is not None and node.user_id == user_id
    level = get_node_access_level(db, user_id, node_id)
    return {
        "nodeId": node_id,
        "canView": level is not None,
        "canEdit": can_access(
            db, user_id, node_id, models.PermissionAction.EDIT, models.VisibilityLevel.FULL
        ),
        "canShare": is_owner,
        "canDelete": is_owner,
        "accessLevel": level.value if level else None,
    }


def effective_permissions(db: Session, node_id: UUID) -> dict:
    """Summarize active view grants on a node, most permissive level per subject."""
    best: dict[tuple[models.SubjectType, UUID | None], models.VisibilityLevel] = {}
    now = policy_store.utcnow()
    for policy in policy_store.list_node_policies(db, node_id):
        if (
            policy.effect != models.PolicyEffect.ALLOW
            or policy.action != models.PermissionAction.VIEW
            or not policy_store.is_active(policy, now)
        ):
            continue
        key = (policy.subject_type, policy.subject_id)
        current = best.get(key)
        if current is None or models.LEVEL_RANK[policy.level] > models.LEVEL_RANK[current]:
            best[key] = policy.level

    public_level = best.get((models.SubjectType.PUBLIC, None))
    return {
        "nodeId": node_id,
        "public": public_level.value if public_level else None,
        "users": [
            {"userId": subject_id, "level": level.value}
            for (subject_type, subject_id), level in best.items()
            if subject_type == models.SubjectType.USER
        ],
        "organizations": [
            {"orgId": subject_id, "level": level.value}
            for (subject_type, subject_id), level in best.items()
            if subject_type == models.SubjectType.ORG
        ],
    }
