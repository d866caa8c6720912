"""Durable storage of node access policies.

Rows are addressed by their unique coordinate
``(node_id, level, action, subject_type, subject_id)``; every write path goes
through :func:`upsert_policy` so the coordinate never holds two rows.
Expiry is passive: expired rows stay in the table until the maintenance task
removes them and readers filter them with :func:`is_active`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable
from uuid import UUID

from sqlalchemy.orm import Session

from .. import models
from ..errors import BusinessRuleViolation, ValidationFailed

# purpose: own every read and write against node_policies
# status: active

logger = logging.getLogger(__name__)

PUBLIC_SUBJECT_KEY = "public"
_UNSET = object()


@dataclass(frozen=True)
class PolicySpec:
    """A requested policy row, before it is persisted."""

    level: models.VisibilityLevel
    subject_type: models.SubjectType
    subject_id: UUID | None = None
    action: models.PermissionAction = models.PermissionAction.VIEW
    effect: models.PolicyEffect = models.PolicyEffect.ALLOW
    expires_at: datetime | None = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_active(policy: models.NodePolicy, now: datetime | None = None) -> bool:
    expires_at = as_utc(policy.expires_at)
    return expires_at is None or expires_at > (now or utcnow())


def subject_key(subject_type: models.SubjectType, subject_id: UUID | None) -> str:
    if subject_type == models.SubjectType.PUBLIC:
        return PUBLIC_SUBJECT_KEY
    return f"{subject_type.value}-{subject_id}"


def parse_subject_key(key: str) -> tuple[models.SubjectType, UUID | None]:
    """Split ``user-<uuid>``, ``org-<uuid>`` or ``public`` into its parts."""
    if key == PUBLIC_SUBJECT_KEY:
        return models.SubjectType.PUBLIC, None
    prefix, _, raw_id = key.partition("-")
    try:
        subject_type = models.SubjectType(prefix)
        subject_id = UUID(raw_id)
    except ValueError as exc:
        raise ValidationFailed(f"Invalid subject key: {key}") from exc
    if subject_type == models.SubjectType.PUBLIC:
        raise ValidationFailed(f"Invalid subject key: {key}")
    return subject_type, subject_id


def validate_subject(subject_type: models.SubjectType, subject_id: UUID | None) -> None:
    if subject_type == models.SubjectType.PUBLIC and subject_id is not None:
        raise ValidationFailed("Public policies cannot name a subject id")
    if subject_type != models.SubjectType.PUBLIC and subject_id is None:
        raise ValidationFailed(f"A {subject_type.value} policy requires a subject id")


def _coordinate_query(
    db: Session,
    node_id: UUID,
    level: models.VisibilityLevel,
    action: models.PermissionAction,
    subject_type: models.SubjectType,
    subject_id: UUID | None,
):
    query = db.query(models.NodePolicy).filter(
        models.NodePolicy.node_id == node_id,
        models.NodePolicy.level == level,
        models.NodePolicy.action == action,
        models.NodePolicy.subject_type == subject_type,
    )
    if subject_id is None:
        return query.filter(models.NodePolicy.subject_id.is_(None))
    return query.filter(models.NodePolicy.subject_id == subject_id)


def get_policy(db: Session, policy_id: UUID) -> models.NodePolicy | None:
    return db.get(models.NodePolicy, policy_id)


def list_node_policies(db: Session, node_id: UUID) -> list[models.NodePolicy]:
    return (
        db.query(models.NodePolicy)
        .filter(models.NodePolicy.node_id == node_id)
        .order_by(models.NodePolicy.created_at.asc())
        .all()
    )


def list_policies_for_nodes(
    db: Session,
    node_ids: Iterable[UUID],
    effect: models.PolicyEffect | None = None,
) -> list[models.NodePolicy]:
    ids = list(node_ids)
    if not ids:
        return []
    query = db.query(models.NodePolicy).filter(models.NodePolicy.node_id.in_(ids))
    if effect is not None:
        query = query.filter(models.NodePolicy.effect == effect)
    return query.order_by(models.NodePolicy.created_at.asc()).all()


def upsert_policy(
    db: Session,
    *,
    node_id: UUID,
    level: models.VisibilityLevel,
    subject_type: models.SubjectType,
    subject_id: UUID | None,
    granted_by: UUID,
    action: models.PermissionAction = models.PermissionAction.VIEW,
    effect: models.PolicyEffect = models.PolicyEffect.ALLOW,
    expires_at: datetime | None = None,
) -> models.NodePolicy:
    """Insert the row at the coordinate, or update the one already there."""
    validate_subject(subject_type, subject_id)
    policy = _coordinate_query(db, node_id, level, action, subject_type, subject_id).first()
    if policy is None:
        policy = models.NodePolicy(
            node_id=node_id,
            level=level,
            action=action,
            subject_type=subject_type,
            subject_id=subject_id,
            effect=effect,
            granted_by=granted_by,
            created_at=utcnow(),
            expires_at=expires_at,
        )
        db.add(policy)
    else:
        policy.effect = effect
        policy.granted_by = granted_by
        policy.expires_at = expires_at
    db.flush()
    return policy


def replace_subject_grant(
    db: Session,
    *,
    node_id: UUID,
    level: models.VisibilityLevel,
    subject_type: models.SubjectType,
    subject_id: UUID | None,
    granted_by: UUID,
    action: models.PermissionAction = models.PermissionAction.VIEW,
    expires_at: datetime | None = None,
) -> models.NodePolicy:
    """Leave the subject with exactly one ALLOW row per node and action."""
    stale = (
        db.query(models.NodePolicy)
        .filter(
            models.NodePolicy.node_id == node_id,
            models.NodePolicy.action == action,
            models.NodePolicy.subject_type == subject_type,
            models.NodePolicy.effect == models.PolicyEffect.ALLOW,
            models.NodePolicy.level != level,
        )
    )
    if subject_id is None:
        stale = stale.filter(models.NodePolicy.subject_id.is_(None))
    else:
        stale = stale.filter(models.NodePolicy.subject_id == subject_id)
    for row in stale.all():
        db.delete(row)
    db.flush()
    return upsert_policy(
        db,
        node_id=node_id,
        level=level,
        action=action,
        subject_type=subject_type,
        subject_id=subject_id,
        effect=models.PolicyEffect.ALLOW,
        granted_by=granted_by,
        expires_at=expires_at,
    )


def update_policy(
    db: Session,
    policy: models.NodePolicy,
    *,
    level: models.VisibilityLevel | None = None,
    expires_at=_UNSET,
) -> models.NodePolicy:
    if level is not None and level != policy.level:
        clash = (
            _coordinate_query(
                db, policy.node_id, level, policy.action, policy.subject_type, policy.subject_id
            )
            .filter(models.NodePolicy.id != policy.id)
            .first()
        )
        if clash is not None:
            raise BusinessRuleViolation(
                "A policy already exists for this subject at that level",
                details={"conflictingPolicyId": str(clash.id)},
            )
        policy.level = level
    if expires_at is not _UNSET:
        policy.expires_at = expires_at
    db.flush()
    return policy


def delete_policy(db: Session, policy: models.NodePolicy) -> None:
    db.delete(policy)
    db.flush()


def set_node_policies(
    db: Session,
    node_id: UUID,
    granted_by: UUID,
    policies: Iterable[PolicySpec],
) -> list[models.NodePolicy]:
    """Replace the node's whole policy set; the caller commits once."""
    requested: dict[tuple, PolicySpec] = {}
    for spec in policies:
        validate_subject(spec.subject_type, spec.subject_id)
        coordinate = (spec.level, spec.action, spec.subject_type, spec.subject_id)
        requested[coordinate] = spec

    for existing in list_node_policies(db, node_id):
        db.delete(existing)
    db.flush()

    created = []
    now = utcnow()
    for spec in requested.values():
        policy = models.NodePolicy(
            node_id=node_id,
            level=spec.level,
            action=spec.action,
            subject_type=spec.subject_type,
            subject_id=spec.subject_id,
            effect=spec.effect,
            granted_by=granted_by,
            created_at=now,
            expires_at=spec.expires_at,
        )
        db.add(policy)
        created.append(policy)
    db.flush()
    return created


def cleanup_expired_policies(db: Session, now: datetime | None = None) -> int:
    """Delete rows whose expiry has passed and return how many went."""
    now = now or utcnow()
    candidates = (
        db.query(models.NodePolicy)
        .filter(models.NodePolicy.expires_at.isnot(None))
        .all()
    )
    removed = 0
    for policy in candidates:
        if not is_active(policy, now):
            db.delete(policy)
            removed += 1
    db.flush()
    if removed:
        logger.info("Removed %d expired node policies", removed)
    return removed
