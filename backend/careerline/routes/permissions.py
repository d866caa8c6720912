from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db, commit_session
from ..auth import get_current_user
from ..errors import NotFoundError, parse_node_id, success
from ..rbac import ensure_node_owner, ensure_nodes_owned
from .. import audit, models, schemas
from ..services import node_schemas, permissions, policy_store

router = APIRouter(prefix="/api/v2", tags=["permissions"])


def _policy_out(policy: models.NodePolicy) -> dict:
    return schemas.NodePolicyOut.model_validate(policy).model_dump(mode="json")


@router.get("/nodes/accessible")
def list_accessible_nodes(
    action: models.PermissionAction = Query(models.PermissionAction.VIEW),
    min_level: models.VisibilityLevel = Query(models.VisibilityLevel.OVERVIEW, alias="minLevel"),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    rows = permissions.list_accessible_nodes(db, user.id, action, min_level)
    return success(
        [schemas.AccessibleNodeOut.model_validate(row).model_dump(mode="json") for row in rows]
    )


@router.get("/users/{user_id}/nodes")
def list_user_timeline(
    user_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    """Another user's timeline, each node trimmed to the level the caller holds on it."""
    if db.get(models.User, user_id) is None:
        raise NotFoundError("User not found")
    return success(
        [
            {**node_schemas.serialize_node(node, level), "accessLevel": level.value}
            for node, level in permissions.list_visible_timeline(db, user.id, user_id)
        ]
    )


@router.post("/nodes/permissions/bulk")
def bulk_node_policies(
    payload: schemas.BulkPolicyRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    nodes = ensure_nodes_owned(db, user.id, payload.node_ids)
    grouped: dict[str, list[dict]] = {str(node.id): [] for node in nodes}
    for policy in policy_store.list_policies_for_nodes(db, [node.id for node in nodes]):
        grouped[str(policy.node_id)].append(_policy_out(policy))
    return success([{"nodeId": node_id, "policies": rows} for node_id, rows in grouped.items()])


@router.get("/nodes/{node_id}/permissions")
def list_node_policies(
    node_id: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    node = ensure_node_owner(db, user.id, parse_node_id(node_id))
    return success(
        {
            "policies": [_policy_out(p) for p in policy_store.list_node_policies(db, node.id)],
            "effective": permissions.effective_permissions(db, node.id),
        }
    )


@router.post("/nodes/{node_id}/permissions")
def set_node_policies(
    node_id: str,
    payload: schemas.NodePolicySet,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    node = ensure_node_owner(db, user.id, parse_node_id(node_id))
    created = policy_store.set_node_policies(
        db,
        node.id,
        user.id,
        [
            policy_store.PolicySpec(
                level=item.level,
                action=item.action,
                subject_type=item.subject_type,
                subject_id=item.subject_id,
                effect=item.effect,
                expires_at=item.expires_at,
            )
            for item in payload.policies
        ],
    )
    audit.log_action(
        db, user.id, "permissions.replaced", "timeline_node", node.id, {"count": len(created)}
    )
    commit_session(db)
    return success([_policy_out(p) for p in policy_store.list_node_policies(db, node.id)])


@router.delete("/nodes/{node_id}/permissions/{policy_id}")
def delete_node_policy(
    node_id: str,
    policy_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    node = ensure_node_owner(db, user.id, parse_node_id(node_id))
    policy = policy_store.get_policy(db, policy_id)
    if policy is None or policy.node_id != node.id:
        raise NotFoundError("Policy not found")
    policy_store.delete_policy(db, policy)
    audit.log_action(
        db, user.id, "permissions.deleted", "timeline_node", node.id, {"policyId": str(policy_id)}
    )
    commit_session(db)
    return success({"deleted": True, "policyId": str(policy_id)})


@router.put("/permissions/{policy_id}")
def update_policy(
    policy_id: UUID,
    payload: schemas.PolicyUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    policy = policy_store.get_policy(db, policy_id)
    if policy is None:
        raise NotFoundError("Policy not found")
    ensure_node_owner(db, user.id, policy.node_id)
    changes = {}
    if "expires_at" in payload.model_fields_set:
        changes["expires_at"] = payload.expires_at
    policy_store.update_policy(db, policy, level=payload.level, **changes)
    commit_session(db)
    db.refresh(policy)
    return success(_policy_out(policy))


@router.get("/nodes/{node_id}/access")
def node_access(
    node_id: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return success(permissions.access_summary(db, user.id, parse_node_id(node_id)))


@router.post("/nodes/access/batch")
def batch_node_access(
    payload: schemas.BatchAccessRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    results = permissions.batch_can_access(
        db, user.id, payload.node_ids, payload.action, payload.level
    )
    return success({str(node_id): allowed for node_id, allowed in results.items()})
