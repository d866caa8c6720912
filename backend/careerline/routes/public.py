from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_optional_user
from ..errors import parse_node_id, success
from .. import models
from ..services import node_schemas, permissions

router = APIRouter(prefix="/api/public", tags=["public"])


@router.get("/nodes/{node_id}")
def read_node(
    node_id: str,
    db: Session = Depends(get_db),
    user: Optional[models.User] = Depends(get_optional_user),
):
    """Read a node as whoever is calling, anonymous included, trimmed to their level."""
    node, level = permissions.require_view_level(
        db, user.id if user else None, parse_node_id(node_id)
    )
    return success({**node_schemas.serialize_node(node, level), "accessLevel": level.value})
