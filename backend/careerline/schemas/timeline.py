from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..models import NodeType


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class NodeCreate(CamelModel):
    type: NodeType
    label: str = Field(..., min_length=2, max_length=255)
    parent_id: Optional[UUID] = None
    meta: dict[str, Any] = Field(default_factory=dict)


class NodeUpdate(CamelModel):
    label: Optional[str] = Field(default=None, min_length=2, max_length=255)
    meta: Optional[dict[str, Any]] = None


class NodeMove(CamelModel):
    new_parent_id: Optional[UUID] = None
    expected_version: Optional[int] = None


class HierarchyChange(CamelModel):
    node_id: UUID
    new_parent_id: Optional[UUID] = None


class HierarchyChangeBatch(CamelModel):
    changes: list[HierarchyChange] = Field(..., min_length=1)


class InsightCreate(CamelModel):
    description: str = Field(..., min_length=1, max_length=2000)
    resources: list[str] = Field(default_factory=list)


class InsightUpdate(CamelModel):
    description: Optional[str] = Field(default=None, min_length=1, max_length=2000)
    resources: Optional[list[str]] = None
