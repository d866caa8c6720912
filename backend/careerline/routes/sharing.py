from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db, commit_session
from ..auth import get_current_user
from ..errors import success
from .. import models, schemas
from ..services import sharing

router = APIRouter(prefix="/api/v2/sharing", tags=["sharing"])


def _grant_out(policy: models.NodePolicy) -> dict:
    return schemas.NodePolicyOut.model_validate(policy).model_dump(mode="json")


@router.post("/share")
def execute_share(
    configuration: schemas.ShareConfiguration,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    granted = sharing.execute_share(db, configuration, owner_id=user.id)
    commit_session(db)
    return success({"granted": len(granted), "policies": [_grant_out(p) for p in granted]})


@router.post("/current")
def current_permissions(
    payload: schemas.CurrentPermissionsRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return success(sharing.fetch_current_permissions(db, payload.node_ids, owner_id=user.id))


@router.patch("/subjects/{subject_key}")
def update_subject_permission(
    subject_key: str,
    payload: schemas.SubjectPermissionUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    updated = sharing.update_permission(
        db,
        subject_key,
        payload.access_level,
        owner_id=user.id,
        node_id=payload.node_id,
    )
    commit_session(db)
    return success([_grant_out(p) for p in updated])


@router.delete("/subjects/{subject_key}")
def remove_subject_permission(
    subject_key: str,
    node_id: Optional[UUID] = Query(None, alias="nodeId"),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    removed = sharing.remove_permission(db, subject_key, owner_id=user.id, node_id=node_id)
    commit_session(db)
    return success({"removed": removed, "subjectKey": subject_key})
