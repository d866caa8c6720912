"""Cycle and depth checks for one owner's timeline forest."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from .. import models
from ..errors import CycleDetected, DepthExceeded

# purpose: keep every owner's parent-pointer graph acyclic and bounded in depth
# status: active

logger = logging.getLogger(__name__)

MAX_HIERARCHY_DEPTH = int(os.getenv("MAX_HIERARCHY_DEPTH", "10"))
MAJOR_CYCLE_SIZE = 5

ParentMap = dict[UUID, Optional[UUID]]


@dataclass
class CycleCheckResult:
    would_create_cycle: bool
    cycle_path: list[str] = field(default_factory=list)
    reason: str | None = None

    def as_dict(self) -> dict:
        return {
            "wouldCreateCycle": self.would_create_cycle,
            "cyclePath": self.cycle_path,
            "reason": self.reason,
        }


@dataclass
class DetectedCycle:
    cycle_id: str
    nodes: list[str]
    severity: str

    def as_dict(self) -> dict:
        return {"cycleId": self.cycle_id, "nodes": self.nodes, "severity": self.severity}


@dataclass
class HierarchyAnalysis:
    has_cycles: bool
    cycles: list[DetectedCycle]
    orphaned_nodes: list[str]
    max_depth: int
    total_nodes: int

    def as_dict(self) -> dict:
        return {
            "hasCycles": self.has_cycles,
            "cycles": [cycle.as_dict() for cycle in self.cycles],
            "orphanedNodes": self.orphaned_nodes,
            "maxDepth": self.max_depth,
            "totalNodes": self.total_nodes,
        }


@dataclass
class RecoverySuggestion:
    issue: str
    severity: str
    suggestion: str
    automatic_fix: dict | None = None

    def as_dict(self) -> dict:
        return {
            "issue": self.issue,
            "severity": self.severity,
            "suggestion": self.suggestion,
            "automaticFix": self.automatic_fix,
        }


def load_parent_map(db: Session, owner_id: UUID) -> ParentMap:
    rows = (
        db.query(models.TimelineNode.id, models.TimelineNode.parent_id)
        .filter(models.TimelineNode.user_id == owner_id)
        .all()
    )
    return {node_id: parent_id for node_id, parent_id in rows}


def ancestor_ids(parents: ParentMap, node_id: UUID) -> list[UUID]:
    """Walk upward from ``node_id``, nearest parent first.

    The walk stops at a root, at a parent outside the map, or when it would
    revisit a node, so corrupted data cannot loop forever.
    """
    chain: list[UUID] = []
    seen = {node_id}
    current = parents.get(node_id)
    while current is not None and current in parents and current not in seen:
        chain.append(current)
        seen.add(current)
        current = parents.get(current)
    return chain


def node_depth(parents: ParentMap, node_id: UUID) -> int:
    """Number of edges between the node and its root."""
    return len(ancestor_ids(parents, node_id))


def children_map(parents: ParentMap) -> dict[UUID, list[UUID]]:
    children: dict[UUID, list[UUID]] = {node_id: [] for node_id in parents}
    for node_id, parent_id in parents.items():
        if parent_id is not None and parent_id in children:
            children[parent_id].append(node_id)
    return children


def subtree_height(children: dict[UUID, list[UUID]], node_id: UUID) -> int:
    height = 0
    seen = {node_id}
    frontier = [(node_id, 0)]
    while frontier:
        current, depth = frontier.pop()
        height = max(height, depth)
        for child in children.get(current, []):
            if child not in seen:
                seen.add(child)
                frontier.append((child, depth + 1))
    return height


def detect_cycle_for_move(
    db: Session,
    node_id: UUID,
    new_parent_id: UUID | None,
    owner_id: UUID,
    *,
    parents: ParentMap | None = None,
) -> CycleCheckResult:
    """Would pointing ``node_id`` at ``new_parent_id`` make it its own ancestor?"""
    if new_parent_id is None:
        return CycleCheckResult(would_create_cycle=False)
    if node_id == new_parent_id:
        return CycleCheckResult(
            would_create_cycle=True,
            cycle_path=[str(node_id)],
            reason="Node cannot be parent of itself",
        )
    if parents is None:
        parents = load_parent_map(db, owner_id)

    walked = [new_parent_id]
    for ancestor in ancestor_ids(parents, new_parent_id):
        walked.append(ancestor)
        if ancestor == node_id:
            path = [str(node_id)] + [str(item) for item in walked]
            return CycleCheckResult(
                would_create_cycle=True,
                cycle_path=path,
                reason=f"Moving node would create cycle: {' -> '.join(path)}",
            )
    return CycleCheckResult(would_create_cycle=False)


def resulting_depth(parents: ParentMap, node_id: UUID, new_parent_id: UUID | None) -> int:
    """Depth of the deepest descendant once ``node_id`` hangs under the new parent."""
    height = subtree_height(children_map(parents), node_id)
    if new_parent_id is None:
        return height
    return node_depth(parents, new_parent_id) + 1 + height


def ensure_no_cycle(
    db: Session,
    node_id: UUID,
    new_parent_id: UUID | None,
    owner_id: UUID,
    *,
    parents: ParentMap | None = None,
) -> None:
    result = detect_cycle_for_move(db, node_id, new_parent_id, owner_id, parents=parents)
    if result.would_create_cycle:
        logger.warning(
            "Rejected move of node %s under %s: %s", node_id, new_parent_id, result.reason
        )
        raise CycleDetected(result.cycle_path, result.reason)


def ensure_depth(
    parents: ParentMap,
    node_id: UUID,
    new_parent_id: UUID | None,
    max_depth: int | None = None,
) -> None:
    limit = MAX_HIERARCHY_DEPTH if max_depth is None else max_depth
    depth = resulting_depth(parents, node_id, new_parent_id)
    if depth > limit:
        logger.warning(
            "Rejected move of node %s under %s: depth %d exceeds %d",
            node_id,
            new_parent_id,
            depth,
            limit,
        )
        raise DepthExceeded(
            f"Hierarchy depth would reach {depth}, the limit is {limit}",
            details={"depth": depth, "maxDepth": limit},
        )


def _find_cycles(parents: ParentMap) -> list[list[UUID]]:
    cycles: list[list[UUID]] = []
    finished: set[UUID] = set()
    for start in parents:
        if start in finished:
            continue
        path: list[UUID] = []
        on_path: dict[UUID, int] = {}
        current: UUID | None = start
        while current is not None and current in parents and current not in finished:
            if current in on_path:
                cycles.append(path[on_path[current]:])
                break
            on_path[current] = len(path)
            path.append(current)
            current = parents[current]
        finished.update(path)
    return cycles


def analyze_hierarchy_for_cycles(db: Session, owner_id: UUID) -> HierarchyAnalysis:
    parents = load_parent_map(db, owner_id)
    cycles = _find_cycles(parents)
    in_cycle = {node_id for cycle in cycles for node_id in cycle}
    orphaned = sorted(
        str(node_id)
        for node_id, parent_id in parents.items()
        if parent_id is not None and parent_id not in parents
    )

    max_depth = 0
    for node_id in parents:
        if node_id in in_cycle:
            continue
        chain = ancestor_ids(parents, node_id)
        if any(ancestor in in_cycle for ancestor in chain):
            continue
        max_depth = max(max_depth, len(chain))

    detected = [
        DetectedCycle(
            cycle_id=f"cycle-{index + 1}",
            nodes=[str(node_id) for node_id in cycle],
            severity="major" if len(cycle) > MAJOR_CYCLE_SIZE else "minor",
        )
        for index, cycle in enumerate(cycles)
    ]
    if detected or orphaned:
        logger.warning(
            "Hierarchy for user %s is damaged: %d cycles, %d orphaned nodes",
            owner_id,
            len(detected),
            len(orphaned),
        )
    return HierarchyAnalysis(
        has_cycles=bool(detected),
        cycles=detected,
        orphaned_nodes=orphaned,
        max_depth=max_depth,
        total_nodes=len(parents),
    )


def get_recovery_suggestions(
    db: Session, owner_id: UUID, analysis: HierarchyAnalysis | None = None
) -> list[RecoverySuggestion]:
    """Advisory fixes for damage found by :func:`analyze_hierarchy_for_cycles`."""
    analysis = analysis or analyze_hierarchy_for_cycles(db, owner_id)
    suggestions: list[RecoverySuggestion] = []
    for cycle in analysis.cycles:
        target = cycle.nodes[-1]
        suggestions.append(
            RecoverySuggestion(
                issue=f"Cycle detected involving nodes: {', '.join(cycle.nodes)}",
                severity="high" if cycle.severity == "major" else "medium",
                suggestion="Break the cycle by removing the parent link from one node in it",
                automatic_fix={
                    "action": "remove_parent",
                    "nodeId": target,
                    "details": f"Detach {target} from its parent to break the cycle",
                },
            )
        )
    for orphan_id in analysis.orphaned_nodes:
        suggestions.append(
            RecoverySuggestion(
                issue=f"Node {orphan_id} points to a parent that does not exist",
                severity="medium",
                suggestion="Make the node a root or move it under an existing node",
                automatic_fix={
                    "action": "remove_parent",
                    "nodeId": orphan_id,
                    "details": f"Clear the missing parent reference on {orphan_id}",
                },
            )
        )
    if analysis.max_depth > MAX_HIERARCHY_DEPTH:
        suggestions.append(
            RecoverySuggestion(
                issue=f"Hierarchy depth exceeds recommended limit ({analysis.max_depth} levels)",
                severity="low",
                suggestion="Consider flattening the hierarchy by promoting some child nodes",
            )
        )
    return suggestions


def validate_hierarchy_change(
    db: Session,
    changes: Iterable[tuple[UUID, UUID | None]],
    owner_id: UUID,
) -> dict:
    """Dry-run a batch of moves in order without touching the database."""
    changes = list(changes)
    parents = load_parent_map(db, owner_id)
    errors: list[str] = []
    warnings: list[str] = []

    node_ids = [node_id for node_id, _ in changes]
    if len(node_ids) != len(set(node_ids)):
        errors.append("Duplicate node IDs found in change set")
    if len(changes) > 1:
        warnings.append(
            f"Bulk hierarchy changes ({len(changes)} changes) should be applied with caution"
        )

    for node_id, new_parent_id in changes:
        if node_id not in parents:
            errors.append(f"Node {node_id} not found")
            continue
        if new_parent_id is not None and new_parent_id not in parents:
            errors.append(f"Parent node {new_parent_id} not found")
            continue
        result = detect_cycle_for_move(db, node_id, new_parent_id, owner_id, parents=parents)
        if result.would_create_cycle:
            errors.append(f"Node {node_id} cannot be moved to {new_parent_id}: {result.reason}")
            continue
        depth = resulting_depth(parents, node_id, new_parent_id)
        if depth > MAX_HIERARCHY_DEPTH:
            errors.append(
                f"Node {node_id} cannot be moved to {new_parent_id}: depth {depth} exceeds {MAX_HIERARCHY_DEPTH}"
            )
            continue
        parents[node_id] = new_parent_id

    return {"isValid": not errors, "errors": errors, "warnings": warnings}
