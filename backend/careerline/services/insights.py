"""Free-text insights attached to a node by its owner."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from .. import models, schemas
from ..errors import NotFoundError
from .hierarchy import require_node


def serialize_insight(insight: models.NodeInsight) -> dict[str, Any]:
    return {
        "id": str(insight.id),
        "nodeId": str(insight.node_id),
        "description": insight.description,
        "resources": list(insight.resources or []),
        "createdAt": insight.created_at.isoformat() if insight.created_at else None,
        "updatedAt": insight.updated_at.isoformat() if insight.updated_at else None,
    }


def list_insights(db: Session, node_id: UUID, *, owner_id: UUID) -> list[models.NodeInsight]:
    require_node(db, node_id, owner_id)
    return (
        db.query(models.NodeInsight)
        .filter(models.NodeInsight.node_id == node_id)
        .order_by(models.NodeInsight.created_at.asc())
        .all()
    )


def create_insight(
    db: Session,
    node_id: UUID,
    payload: schemas.InsightCreate,
    *,
    owner_id: UUID,
) -> models.NodeInsight:
    require_node(db, node_id, owner_id)
    insight = models.NodeInsight(
        node_id=node_id,
        user_id=owner_id,
        description=payload.description,
        resources=payload.resources,
    )
    db.add(insight)
    db.flush()
    return insight


def _require_insight(db: Session, insight_id: UUID, owner_id: UUID) -> models.NodeInsight:
    insight = db.get(models.NodeInsight, insight_id)
    if insight is None or insight.user_id != owner_id:
        raise NotFoundError("Insight not found")
    return insight


def update_insight(
    db: Session,
    insight_id: UUID,
    payload: schemas.InsightUpdate,
    *,
    owner_id: UUID,
) -> models.NodeInsight:
    insight = _require_insight(db, insight_id, owner_id)
    if payload.description is not None:
        insight.description = payload.description
    if payload.resources is not None:
        insight.resources = payload.resources
    db.flush()
    return insight


def delete_insight(db: Session, insight_id: UUID, *, owner_id: UUID) -> None:
    insight = _require_insight(db, insight_id, owner_id)
    db.delete(insight)
    db.flush()
