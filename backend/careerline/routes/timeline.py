from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..database import get_db, commit_session
from ..auth import get_current_user
from ..errors import parse_node_id, success
from .. import models, schemas
from ..services import cycle_detection, hierarchy, insights, node_schemas

router = APIRouter(prefix="/api/v2/timeline", tags=["timeline"])


def _serialize(nodes):
    return [node_schemas.serialize_node(node) for node in nodes]


@router.post("/nodes", status_code=201)
def create_node(
    payload: schemas.NodeCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    node = hierarchy.create_node(db, payload, owner_id=user.id)
    commit_session(db)
    db.refresh(node)
    return JSONResponse(status_code=201, content=success(node_schemas.serialize_node(node)))


@router.get("/nodes")
def list_nodes(
    type: Optional[models.NodeType] = Query(None),
    max_depth: int = Query(
        hierarchy.DEFAULT_SUBTREE_DEPTH, ge=1, le=20, alias="maxDepth"
    ),
    include_children: bool = Query(False, alias="includeChildren"),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    nodes = hierarchy.list_nodes(
        db,
        user.id,
        node_type=type,
        include_children=include_children,
        max_depth=max_depth,
    )
    return success(nodes)


@router.get("/nodes/{node_id}")
def get_node(
    node_id: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    node = hierarchy.require_node(db, parse_node_id(node_id), user.id)
    return success(node_schemas.serialize_node(node))


@router.patch("/nodes/{node_id}")
def update_node(
    node_id: str,
    payload: schemas.NodeUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    node = hierarchy.update_node(db, parse_node_id(node_id), payload, owner_id=user.id)
    commit_session(db)
    db.refresh(node)
    return success(node_schemas.serialize_node(node))


@router.delete("/nodes/{node_id}")
def delete_node(
    node_id: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    node_uuid = parse_node_id(node_id)
    hierarchy.delete_node(db, node_uuid, owner_id=user.id)
    commit_session(db)
    return success({"deleted": True, "nodeId": str(node_uuid)})


@router.get("/nodes/{node_id}/children")
def get_children(
    node_id: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return success(_serialize(hierarchy.get_children(db, parse_node_id(node_id), user.id)))


@router.get("/nodes/{node_id}/ancestors")
def get_ancestors(
    node_id: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return success(_serialize(hierarchy.get_ancestors(db, parse_node_id(node_id), user.id)))


@router.get("/nodes/{node_id}/subtree")
def get_subtree(
    node_id: str,
    max_depth: int = Query(
        hierarchy.DEFAULT_SUBTREE_DEPTH, ge=1, le=20, alias="maxDepth"
    ),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    entries = hierarchy.get_subtree(db, parse_node_id(node_id), user.id, max_depth)
    return success(
        [{**node_schemas.serialize_node(node), "depth": depth} for node, depth in entries]
    )


@router.post("/nodes/{node_id}/move")
def move_node(
    node_id: str,
    payload: schemas.NodeMove,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    node = hierarchy.move_node(
        db,
        parse_node_id(node_id),
        payload.new_parent_id,
        owner_id=user.id,
        expected_version=payload.expected_version,
    )
    commit_session(db)
    db.refresh(node)
    return success(node_schemas.serialize_node(node))


@router.get("/tree")
def get_tree(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return success(hierarchy.get_full_tree(db, user.id))


@router.get("/roots")
def get_roots(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return success(_serialize(hierarchy.get_root_nodes(db, user.id)))


@router.get("/stats")
def get_stats(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return success(hierarchy.get_hierarchy_stats(db, user.id))


@router.get("/validate")
def validate_hierarchy(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    analysis = cycle_detection.analyze_hierarchy_for_cycles(db, user.id)
    suggestions = cycle_detection.get_recovery_suggestions(db, user.id, analysis)
    return success(
        {
            "isValid": not analysis.has_cycles and not analysis.orphaned_nodes,
            "analysis": analysis.as_dict(),
            "suggestions": [suggestion.as_dict() for suggestion in suggestions],
        }
    )


@router.post("/validate/changes")
def validate_changes(
    payload: schemas.HierarchyChangeBatch,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    changes = [(change.node_id, change.new_parent_id) for change in payload.changes]
    return success(cycle_detection.validate_hierarchy_change(db, changes, user.id))


@router.get("/schema/{node_type}")
def get_schema(node_type: str, user: models.User = Depends(get_current_user)):
    return success(node_schemas.get_node_schema(node_type))


@router.get("/nodes/{node_id}/insights")
def list_insights(
    node_id: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    rows = insights.list_insights(db, parse_node_id(node_id), owner_id=user.id)
    return success([insights.serialize_insight(row) for row in rows])


@router.post("/nodes/{node_id}/insights", status_code=201)
def create_insight(
    node_id: str,
    payload: schemas.InsightCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    insight = insights.create_insight(db, parse_node_id(node_id), payload, owner_id=user.id)
    commit_session(db)
    db.refresh(insight)
    return JSONResponse(status_code=201, content=success(insights.serialize_insight(insight)))


@router.put("/insights/{insight_id}")
def update_insight(
    insight_id: UUID,
    payload: schemas.InsightUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    insight = insights.update_insight(db, insight_id, payload, owner_id=user.id)
    commit_session(db)
    db.refresh(insight)
    return success(insights.serialize_insight(insight))


@router.delete("/insights/{insight_id}")
def delete_insight(
    insight_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    insights.delete_insight(db, insight_id, owner_id=user.id)
    commit_session(db)
    return success({"deleted": True, "insightId": str(insight_id)})
