"""Per-type node metadata, parent/child rules and level projections."""

from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from .. import models
from ..errors import InvalidNodeType, SchemaNotFound, ValidationFailed

# purpose: validate node meta as a tagged union keyed by node type
# status: active

YEAR_MONTH = r"^\d{4}-(0[1-9]|1[0-2])$"


class NodeMetaBase(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    description: Optional[str] = None
    start_date: Optional[str] = Field(default=None, pattern=YEAR_MONTH)
    end_date: Optional[str] = Field(default=None, pattern=YEAR_MONTH)

    @model_validator(mode="after")
    def _dates_in_order(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        return self


class JobMeta(NodeMetaBase):
    role: str = Field(..., min_length=1)
    org_id: Optional[UUID] = None
    company: Optional[str] = None
    location: Optional[str] = None
    responsibilities: list[str] = Field(default_factory=list)
    achievements: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    employment_type: Optional[str] = None
    remote: Optional[bool] = None


class EducationMeta(NodeMetaBase):
    degree: str = Field(..., min_length=1)
    org_id: Optional[UUID] = None
    institution: Optional[str] = None
    field_of_study: Optional[str] = Field(default=None, alias="field")
    location: Optional[str] = None
    gpa: Optional[float] = Field(default=None, ge=0, le=4)
    honors: list[str] = Field(default_factory=list)
    coursework: list[str] = Field(default_factory=list)
    activities: list[str] = Field(default_factory=list)


class ProjectMeta(NodeMetaBase):
    title: str = Field(..., min_length=1)
    technologies: list[str] = Field(default_factory=list)
    project_type: Optional[str] = None
    status: Optional[str] = None
    team_size: Optional[int] = Field(default=None, ge=1)
    role: Optional[str] = None
    outcomes: list[str] = Field(default_factory=list)
    links: list[str] = Field(default_factory=list)


class EventMeta(NodeMetaBase):
    title: str = Field(..., min_length=1)
    event_type: Optional[str] = None
    location: Optional[str] = None
    organizer: Optional[str] = None
    outcome: Optional[str] = None


class ActionMeta(NodeMetaBase):
    title: str = Field(..., min_length=1)
    category: Optional[str] = None
    impact: Optional[str] = None
    status: Optional[str] = None
    outcome: Optional[str] = None


class CareerTransitionMeta(NodeMetaBase):
    title: str = Field(..., min_length=1)
    from_role: Optional[str] = None
    to_role: Optional[str] = None
    reason: Optional[str] = None
    challenges: list[str] = Field(default_factory=list)
    learnings: list[str] = Field(default_factory=list)


NODE_META_MODELS: dict[models.NodeType, type[NodeMetaBase]] = {
    models.NodeType.JOB: JobMeta,
    models.NodeType.EDUCATION: EducationMeta,
    models.NodeType.PROJECT: ProjectMeta,
    models.NodeType.EVENT: EventMeta,
    models.NodeType.ACTION: ActionMeta,
    models.NodeType.CAREER_TRANSITION: CareerTransitionMeta,
}

HIERARCHY_RULES: dict[models.NodeType, tuple[models.NodeType, ...]] = {
    models.NodeType.CAREER_TRANSITION: (
        models.NodeType.ACTION,
        models.NodeType.EVENT,
        models.NodeType.PROJECT,
    ),
    models.NodeType.JOB: (models.NodeType.PROJECT, models.NodeType.EVENT, models.NodeType.ACTION),
    models.NodeType.EDUCATION: (
        models.NodeType.PROJECT,
        models.NodeType.EVENT,
        models.NodeType.ACTION,
    ),
    models.NodeType.ACTION: (models.NodeType.PROJECT,),
    models.NodeType.EVENT: (models.NodeType.PROJECT, models.NodeType.ACTION),
    models.NodeType.PROJECT: (),
}

OVERVIEW_FIELDS = ("id", "type", "label", "parentId", "createdAt", "updatedAt")
OVERVIEW_META_FIELDS = (
    "title",
    "role",
    "degree",
    "company",
    "institution",
    "orgId",
    "startDate",
    "endDate",
)


def parse_node_type(value: str) -> models.NodeType:
    try:
        return models.NodeType(value)
    except ValueError as exc:
        raise InvalidNodeType(
            f"Invalid node type: {value}",
            details={"validTypes": [t.value for t in models.NodeType]},
        ) from exc


def validate_meta(node_type: models.NodeType, meta: dict[str, Any] | None) -> dict[str, Any]:
    """Validate meta against the node type's variant and return its JSON form."""
    model = NODE_META_MODELS.get(node_type)
    if model is None:
        raise SchemaNotFound(f"No metadata schema for node type: {node_type.value}")
    try:
        parsed = model.model_validate(meta or {})
    except ValidationError as exc:
        raise ValidationFailed(
            f"Invalid metadata for {node_type.value} node",
            details=exc.errors(include_url=False, include_context=False),
        ) from exc
    return parsed.model_dump(mode="json", by_alias=True, exclude_unset=True, exclude_none=True)


def allowed_children(parent_type: models.NodeType) -> tuple[models.NodeType, ...]:
    return HIERARCHY_RULES.get(parent_type, ())


def is_valid_parent_child(parent_type: models.NodeType, child_type: models.NodeType) -> bool:
    return child_type in allowed_children(parent_type)


def get_node_schema(type_value: str) -> dict[str, Any]:
    node_type = parse_node_type(type_value)
    model = NODE_META_MODELS.get(node_type)
    if model is None:
        raise SchemaNotFound(f"No metadata schema for node type: {type_value}")
    return {
        "nodeType": node_type.value,
        "allowedChildren": [child.value for child in allowed_children(node_type)],
        "metaSchema": model.model_json_schema(by_alias=True),
    }


def serialize_node(
    node: models.TimelineNode,
    level: models.VisibilityLevel = models.VisibilityLevel.FULL,
) -> dict[str, Any]:
    """Render a node, trimmed to what ``level`` may see."""
    full = {
        "id": str(node.id),
        "type": node.type.value,
        "label": node.label,
        "parentId": str(node.parent_id) if node.parent_id else None,
        "userId": str(node.user_id),
        "meta": dict(node.meta or {}),
        "createdAt": node.created_at.isoformat() if node.created_at else None,
        "updatedAt": node.updated_at.isoformat() if node.updated_at else None,
        "version": node.version,
    }
    if level == models.VisibilityLevel.FULL:
        return full
    overview = {key: full[key] for key in OVERVIEW_FIELDS}
    overview["meta"] = {
        key: value for key, value in full["meta"].items() if key in OVERVIEW_META_FIELDS
    }
    return overview
