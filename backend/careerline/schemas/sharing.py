from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..models import PermissionAction, PolicyEffect, SubjectType, VisibilityLevel

# purpose: contracts for node policies and the staged share configuration
# status: active


def _check_subject(subject_type: SubjectType, subject_id: Optional[UUID]) -> None:
    if subject_type == SubjectType.PUBLIC and subject_id is not None:
        raise ValueError("public subjects cannot carry an id")
    if subject_type != SubjectType.PUBLIC and subject_id is None:
        raise ValueError(f"{subject_type.value} subjects require an id")


class ShareTarget(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: SubjectType
    id: Optional[UUID] = None
    name: Optional[str] = None
    access_level: VisibilityLevel = VisibilityLevel.OVERVIEW
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _subject_shape(self):
        _check_subject(self.type, self.id)
        return self

    @property
    def key(self) -> str:
        if self.type == SubjectType.PUBLIC:
            return "public"
        return f"{self.type.value}-{self.id}"


class ShareConfiguration(BaseModel):
    """Staged share selection; every edit returns a new configuration."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    targets: list[ShareTarget] = Field(default_factory=list)
    selected_node_ids: list[UUID] = Field(default_factory=list)
    share_all_nodes: bool = False

    @field_validator("targets")
    @classmethod
    def _dedupe_targets(cls, targets: list[ShareTarget]) -> list[ShareTarget]:
        seen: dict[str, ShareTarget] = {}
        for target in targets:
            seen.setdefault(target.key, target)
        return list(seen.values())

    @field_validator("selected_node_ids")
    @classmethod
    def _dedupe_nodes(cls, node_ids: list[UUID]) -> list[UUID]:
        return list(dict.fromkeys(node_ids))

    def target_keys(self) -> list[str]:
        return [target.key for target in self.targets]

    def add_target(self, target: ShareTarget) -> "ShareConfiguration":
        if target.key in self.target_keys():
            return self
        return self.model_copy(update={"targets": [*self.targets, target]})

    def remove_target(self, key: str) -> "ShareConfiguration":
        return self.model_copy(
            update={"targets": [t for t in self.targets if t.key != key]}
        )

    def set_target_access_level(self, key: str, level: VisibilityLevel) -> "ShareConfiguration":
        targets = [
            t.model_copy(update={"access_level": level}) if t.key == key else t
            for t in self.targets
        ]
        return self.model_copy(update={"targets": targets})

    def clear_targets(self) -> "ShareConfiguration":
        return self.model_copy(update={"targets": []})

    def add_node(self, node_id: UUID) -> "ShareConfiguration":
        selected = self.selected_node_ids
        if node_id not in selected:
            selected = [*selected, node_id]
        return self.model_copy(update={"selected_node_ids": selected, "share_all_nodes": False})

    def remove_node(self, node_id: UUID) -> "ShareConfiguration":
        return self.model_copy(
            update={"selected_node_ids": [n for n in self.selected_node_ids if n != node_id]}
        )

    def toggle_share_all_nodes(self) -> "ShareConfiguration":
        if self.share_all_nodes:
            return self.model_copy(update={"share_all_nodes": False})
        return self.model_copy(update={"share_all_nodes": True, "selected_node_ids": []})


class CurrentPermissionsRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    node_ids: list[UUID] = Field(default_factory=list)


class SubjectPermissionUpdate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    access_level: VisibilityLevel
    node_id: Optional[UUID] = None


class NodePolicyIn(BaseModel):
    level: VisibilityLevel
    action: PermissionAction = PermissionAction.VIEW
    subject_type: SubjectType
    subject_id: Optional[UUID] = None
    effect: PolicyEffect = PolicyEffect.ALLOW
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _subject_shape(self):
        _check_subject(self.subject_type, self.subject_id)
        return self


class NodePolicySet(BaseModel):
    policies: list[NodePolicyIn] = Field(default_factory=list)


class NodePolicyOut(BaseModel):
    id: UUID
    node_id: UUID
    level: VisibilityLevel
    action: PermissionAction
    subject_type: SubjectType
    subject_id: Optional[UUID]
    effect: PolicyEffect
    granted_by: UUID
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class PolicyUpdate(BaseModel):
    level: Optional[VisibilityLevel] = None
    expires_at: Optional[datetime] = None


class BulkPolicyRequest(BaseModel):
    node_ids: list[UUID] = Field(..., min_length=1)


class AccessibleNodeOut(BaseModel):
    node_id: UUID
    level: VisibilityLevel
    can_edit: bool
    model_config = ConfigDict(from_attributes=True)


class BatchAccessRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    node_ids: list[UUID] = Field(..., min_length=1)
    action: PermissionAction = PermissionAction.VIEW
    level: VisibilityLevel = VisibilityLevel.OVERVIEW
