"""Pydantic schemas consolidating backend API contracts."""

# purpose: aggregate request and response schemas for FastAPI surfaces and services
# status: active

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, EmailStr, ConfigDict, Field
from uuid import UUID

from ..models import OrganizationType, OrgMemberRole
from .timeline import (
    HierarchyChange,
    HierarchyChangeBatch,
    InsightCreate,
    InsightUpdate,
    NodeCreate,
    NodeMove,
    NodeUpdate,
)
from .sharing import (
    AccessibleNodeOut,
    BatchAccessRequest,
    BulkPolicyRequest,
    NodePolicyIn,
    NodePolicyOut,
    NodePolicySet,
    PolicyUpdate,
    ShareConfiguration,
    ShareTarget,
    CurrentPermissionsRequest,
    SubjectPermissionUpdate,
)


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    full_name: Optional[str] = None


class UserOut(BaseModel):
    id: UUID
    email: EmailStr
    full_name: Optional[str]
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class UserUpdate(BaseModel):
    full_name: Optional[str] = None


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class AuditLogOut(BaseModel):
    id: UUID
    action: str
    target_type: Optional[str]
    target_id: Optional[UUID]
    details: dict
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class OrganizationCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    type: OrganizationType = OrganizationType.OTHER
    meta: dict = Field(default_factory=dict)


class OrganizationOut(BaseModel):
    id: UUID
    name: str
    type: OrganizationType
    meta: Optional[dict] = None
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class OrgMemberCreate(BaseModel):
    user_id: UUID
    role: OrgMemberRole = OrgMemberRole.MEMBER


class OrgMemberOut(BaseModel):
    org_id: UUID
    user_id: UUID
    role: OrgMemberRole
    joined_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


__all__ = [
    "AccessibleNodeOut",
    "AuditLogOut",
    "BatchAccessRequest",
    "BulkPolicyRequest",
    "CurrentPermissionsRequest",
    "HierarchyChange",
    "HierarchyChangeBatch",
    "InsightCreate",
    "InsightUpdate",
    "LoginRequest",
    "NodeCreate",
    "NodeMove",
    "NodePolicyIn",
    "NodePolicyOut",
    "NodePolicySet",
    "NodeUpdate",
    "OrgMemberCreate",
    "OrgMemberOut",
    "OrganizationCreate",
    "OrganizationOut",
    "PolicyUpdate",
    "ShareConfiguration",
    "ShareTarget",
    "SubjectPermissionUpdate",
    "Token",
    "UserCreate",
    "UserOut",
    "UserUpdate",
]
