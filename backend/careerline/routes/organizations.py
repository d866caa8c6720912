from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db, commit_session
from ..auth import get_current_user
from .. import models, schemas
from ..services import organizations

router = APIRouter(prefix="/api/organizations", tags=["organizations"])


@router.post("", response_model=schemas.OrganizationOut, status_code=201)
def create_organization(
    payload: schemas.OrganizationCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    org = organizations.create_organization(db, payload, creator_id=user.id)
    commit_session(db)
    db.refresh(org)
    return org


@router.get("", response_model=List[schemas.OrganizationOut])
def search_organizations(
    q: Optional[str] = Query(None),
    type: Optional[models.OrganizationType] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return organizations.search_organizations(db, q, type, limit)


@router.get("/mine", response_model=List[schemas.OrganizationOut])
def my_organizations(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return organizations.list_user_organizations(db, user.id)


@router.get("/{org_id}", response_model=schemas.OrganizationOut)
def get_organization(
    org_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return organizations.get_organization(db, org_id)


@router.get("/{org_id}/members", response_model=List[schemas.OrgMemberOut])
def list_members(
    org_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return organizations.list_members(db, org_id)


@router.post("/{org_id}/members", response_model=schemas.OrgMemberOut)
def add_member(
    org_id: UUID,
    payload: schemas.OrgMemberCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    membership = organizations.add_member(db, org_id, payload, actor=user)
    commit_session(db)
    db.refresh(membership)
    return membership


@router.delete("/{org_id}/members/{user_id}")
def remove_member(
    org_id: UUID,
    user_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    organizations.remove_member(db, org_id, user_id, actor=user)
    commit_session(db)
    return {"removed": True}
