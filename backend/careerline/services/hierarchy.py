"""Owner-scoped CRUD and tree navigation over timeline nodes.

Every read and write here is filtered by the owner; a node that belongs to
someone else is reported exactly like a node that does not exist. Sharing is
resolved by :mod:`careerline.services.permissions` at the API boundary, never
inside this module. Functions flush but do not commit; routes commit once per
operation.
"""

from __future__ import annotations

import logging
import os
from collections import Counter, deque
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from .. import audit, models, schemas
from ..errors import ConcurrentModification, DepthExceeded, HierarchyRuleViolation, NodeNotFound
from . import cycle_detection, node_schemas

# purpose: orchestrate node lifecycle and structural reads for one owner's forest
# status: active

logger = logging.getLogger(__name__)

DEFAULT_SUBTREE_DEPTH = int(os.getenv("DEFAULT_SUBTREE_DEPTH", "10"))


def _owned(db: Session, owner_id: UUID):
    return db.query(models.TimelineNode).filter(models.TimelineNode.user_id == owner_id)


def get_node(db: Session, node_id: UUID, owner_id: UUID) -> models.TimelineNode | None:
    return _owned(db, owner_id).filter(models.TimelineNode.id == node_id).first()


def require_node(db: Session, node_id: UUID, owner_id: UUID, *, for_update: bool = False) -> models.TimelineNode:
    query = _owned(db, owner_id).filter(models.TimelineNode.id == node_id)
    if for_update:
        query = query.with_for_update()
    node = query.first()
    if node is None:
        raise NodeNotFound(node_id)
    return node


def validate_parent_child(parent_type: models.NodeType, child_type: models.NodeType) -> None:
    if not node_schemas.is_valid_parent_child(parent_type, child_type):
        allowed = [t.value for t in node_schemas.allowed_children(parent_type)]
        raise HierarchyRuleViolation(
            f"A {child_type.value} node cannot be placed under a {parent_type.value} node",
            details={"parentType": parent_type.value, "allowedChildren": allowed},
        )


def create_node(
    db: Session,
    payload: schemas.NodeCreate,
    *,
    owner_id: UUID,
) -> models.TimelineNode:
    meta = node_schemas.validate_meta(payload.type, payload.meta)
    if payload.parent_id is not None:
        parent = require_node(db, payload.parent_id, owner_id)
        validate_parent_child(parent.type, payload.type)
        parents = cycle_detection.load_parent_map(db, owner_id)
        depth = cycle_detection.node_depth(parents, parent.id) + 1
        if depth > cycle_detection.MAX_HIERARCHY_DEPTH:
            raise DepthExceeded(
                f"Hierarchy depth would reach {depth}, the limit is {cycle_detection.MAX_HIERARCHY_DEPTH}",
                details={"depth": depth, "maxDepth": cycle_detection.MAX_HIERARCHY_DEPTH},
            )

    node = models.TimelineNode(
        type=payload.type,
        label=payload.label,
        parent_id=payload.parent_id,
        user_id=owner_id,
        meta=meta,
    )
    db.add(node)
    db.flush()
    audit.log_action(
        db,
        owner_id,
        "node.created",
        "timeline_node",
        node.id,
        {"type": node.type.value, "parentId": str(node.parent_id) if node.parent_id else None},
    )
    logger.info("Created %s node %s for user %s", node.type.value, node.id, owner_id)
    return node


def update_node(
    db: Session,
    node_id: UUID,
    payload: schemas.NodeUpdate,
    *,
    owner_id: UUID,
) -> models.TimelineNode:
    """Change label and/or meta; the parent pointer only moves through move_node."""
    node = require_node(db, node_id, owner_id)
    if payload.label is not None:
        node.label = payload.label
    if payload.meta is not None:
        node.meta = node_schemas.validate_meta(node.type, payload.meta)
    db.flush()
    return node


def delete_node(db: Session, node_id: UUID, *, owner_id: UUID) -> bool:
    """Delete a node; its children move up to the deleted node's parent."""
    node = require_node(db, node_id, owner_id)
    children = _owned(db, owner_id).filter(models.TimelineNode.parent_id == node.id).all()
    for child in children:
        child.parent_id = node.parent_id
    db.flush()
    db.delete(node)
    db.flush()
    audit.log_action(
        db,
        owner_id,
        "node.deleted",
        "timeline_node",
        node_id,
        {"reparentedChildren": [str(child.id) for child in children]},
    )
    logger.info("Deleted node %s (%d children reparented)", node_id, len(children))
    return True


def get_children(db: Session, node_id: UUID, owner_id: UUID) -> list[models.TimelineNode]:
    require_node(db, node_id, owner_id)
    return (
        _owned(db, owner_id)
        .filter(models.TimelineNode.parent_id == node_id)
        .order_by(models.TimelineNode.created_at.asc())
        .all()
    )


def get_ancestors(db: Session, node_id: UUID, owner_id: UUID) -> list[models.TimelineNode]:
    """Ancestors ordered from the root down to the direct parent."""
    require_node(db, node_id, owner_id)
    parents = cycle_detection.load_parent_map(db, owner_id)
    chain = cycle_detection.ancestor_ids(parents, node_id)
    if not chain:
        return []
    by_id = {
        node.id: node
        for node in _owned(db, owner_id).filter(models.TimelineNode.id.in_(chain)).all()
    }
    return [by_id[ancestor] for ancestor in reversed(chain)]


def get_subtree(
    db: Session,
    node_id: UUID,
    owner_id: UUID,
    max_depth: int = DEFAULT_SUBTREE_DEPTH,
) -> list[tuple[models.TimelineNode, int]]:
    """The node and its descendants down to ``max_depth``, ordered by depth then age."""
    root = require_node(db, node_id, owner_id)
    nodes = get_all_nodes(db, owner_id)
    children: dict[UUID, list[models.TimelineNode]] = {}
    for node in nodes:
        if node.parent_id is not None:
            children.setdefault(node.parent_id, []).append(node)

    result: list[tuple[models.TimelineNode, int]] = []
    seen = {root.id}
    queue = deque([(root, 0)])
    while queue:
        current, depth = queue.popleft()
        result.append((current, depth))
        if depth >= max_depth:
            continue
        for child in children.get(current.id, []):
            if child.id not in seen:
                seen.add(child.id)
                queue.append((child, depth + 1))
    result.sort(key=lambda item: (item[1], item[0].created_at))
    return result


def get_all_nodes(db: Session, owner_id: UUID) -> list[models.TimelineNode]:
    return _owned(db, owner_id).order_by(models.TimelineNode.created_at.asc()).all()


def get_root_nodes(db: Session, owner_id: UUID) -> list[models.TimelineNode]:
    return (
        _owned(db, owner_id)
        .filter(models.TimelineNode.parent_id.is_(None))
        .order_by(models.TimelineNode.created_at.asc())
        .all()
    )


def get_nodes_by_type(
    db: Session, owner_id: UUID, node_type: models.NodeType
) -> list[models.TimelineNode]:
    return (
        _owned(db, owner_id)
        .filter(models.TimelineNode.type == node_type)
        .order_by(models.TimelineNode.created_at.asc())
        .all()
    )


def build_tree(
    nodes: list[models.TimelineNode], max_depth: int | None = None
) -> list[dict[str, Any]]:
    """Nest serialized nodes under their parents; a missing parent makes a root."""
    ids = {node.id for node in nodes}
    children: dict[UUID, list[models.TimelineNode]] = {}
    roots: list[models.TimelineNode] = []
    for node in nodes:
        if node.parent_id is None or node.parent_id not in ids:
            roots.append(node)
        else:
            children.setdefault(node.parent_id, []).append(node)

    seen: set[UUID] = set()

    def render(node: models.TimelineNode, depth: int) -> dict[str, Any]:
        seen.add(node.id)
        item = node_schemas.serialize_node(node)
        if max_depth is not None and depth >= max_depth:
            item["children"] = []
            return item
        item["children"] = [
            render(child, depth + 1)
            for child in children.get(node.id, [])
            if child.id not in seen
        ]
        return item

    return [render(root, 0) for root in roots]


def get_full_tree(db: Session, owner_id: UUID, max_depth: int | None = None) -> list[dict[str, Any]]:
    return build_tree(get_all_nodes(db, owner_id), max_depth)


def _prune(item: dict[str, Any], max_depth: int, depth: int = 0) -> dict[str, Any]:
    if depth >= max_depth:
        item["children"] = []
    else:
        item["children"] = [_prune(child, max_depth, depth + 1) for child in item["children"]]
    return item


def list_nodes(
    db: Session,
    owner_id: UUID,
    *,
    node_type: models.NodeType | None = None,
    include_children: bool = False,
    max_depth: int = DEFAULT_SUBTREE_DEPTH,
) -> list[dict[str, Any]]:
    """Flat list by default; nested trees when ``include_children`` is set."""
    if include_children:
        if node_type is None:
            return get_full_tree(db, owner_id, max_depth)
        # nest each matching node's own subtree, wherever it sits in the forest
        matches: list[dict[str, Any]] = []
        pending = deque(get_full_tree(db, owner_id))
        while pending:
            item = pending.popleft()
            if item["type"] == node_type.value:
                matches.append(_prune(item, max_depth))
            else:
                pending.extend(item["children"])
        return matches
    if node_type is not None:
        nodes = get_nodes_by_type(db, owner_id, node_type)
    else:
        nodes = get_all_nodes(db, owner_id)
    return [node_schemas.serialize_node(node) for node in nodes]


def move_node(
    db: Session,
    node_id: UUID,
    new_parent_id: UUID | None,
    *,
    owner_id: UUID,
    expected_version: int | None = None,
) -> models.TimelineNode:
    """Reparent a node after cycle, type and depth checks.

    The parent chain is read and the new pointer written in the caller's
    transaction; the row's version column makes a concurrent move of the same
    node fail at flush time instead of silently winning.
    """
    node = require_node(db, node_id, owner_id, for_update=True)
    if expected_version is not None and expected_version != node.version:
        raise ConcurrentModification(
            "The node was changed by another request; reload and try again",
            details={"expectedVersion": expected_version, "currentVersion": node.version},
        )
    if new_parent_id == node.parent_id:
        return node

    parents = cycle_detection.load_parent_map(db, owner_id)
    if new_parent_id is not None and new_parent_id not in parents:
        raise NodeNotFound(new_parent_id)
    cycle_detection.ensure_no_cycle(db, node.id, new_parent_id, owner_id, parents=parents)
    if new_parent_id is not None:
        validate_parent_child(_node_type(db, new_parent_id, owner_id), node.type)
    cycle_detection.ensure_depth(parents, node.id, new_parent_id)

    previous_parent = node.parent_id
    node.parent_id = new_parent_id
    db.flush()
    audit.log_action(
        db,
        owner_id,
        "node.moved",
        "timeline_node",
        node.id,
        {
            "from": str(previous_parent) if previous_parent else None,
            "to": str(new_parent_id) if new_parent_id else None,
        },
    )
    logger.info("Moved node %s from %s to %s", node.id, previous_parent, new_parent_id)
    return node


def _node_type(db: Session, parent_id: UUID, owner_id: UUID) -> models.NodeType:
    return require_node(db, parent_id, owner_id).type


def get_hierarchy_stats(db: Session, owner_id: UUID) -> dict[str, Any]:
    parents = cycle_detection.load_parent_map(db, owner_id)
    types = (
        db.query(models.TimelineNode.type)
        .filter(models.TimelineNode.user_id == owner_id)
        .all()
    )
    by_type = Counter(row[0].value for row in types)
    max_depth = max(
        (cycle_detection.node_depth(parents, node_id) for node_id in parents), default=0
    )
    return {
        "totalNodes": len(parents),
        "nodesByType": dict(by_type),
        "maxDepth": max_depth,
        "rootNodes": sum(
            1 for parent_id in parents.values() if parent_id is None or parent_id not in parents
        ),
    }
