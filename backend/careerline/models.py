import enum
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class VisibilityLevel(str, enum.Enum):
    OVERVIEW = "overview"
    FULL = "full"


# full implies overview
LEVEL_RANK: dict[VisibilityLevel, int] = {
    VisibilityLevel.OVERVIEW: 1,
    VisibilityLevel.FULL: 2,
}


class PermissionAction(str, enum.Enum):
    VIEW = "view"
    EDIT = "edit"


class SubjectType(str, enum.Enum):
    USER = "user"
    ORG = "org"
    PUBLIC = "public"


class PolicyEffect(str, enum.Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


class OrganizationType(str, enum.Enum):
    COMPANY = "company"
    EDUCATIONAL_INSTITUTION = "educational_institution"
    NONPROFIT = "nonprofit"
    OTHER = "other"


class OrgMemberRole(str, enum.Enum):
    MEMBER = "member"
    ADMIN = "admin"
    ALUMNI = "alumni"


class NodeType(str, enum.Enum):
    JOB = "job"
    EDUCATION = "education"
    PROJECT = "project"
    EVENT = "event"
    ACTION = "action"
    CAREER_TRANSITION = "careerTransition"


class User(Base):
    __tablename__ = "users"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    memberships = relationship(
        "OrgMember", back_populates="user", cascade="all, delete-orphan"
    )


class Organization(Base):
    __tablename__ = "organizations"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False, index=True)
    type = Column(
        sa.Enum(OrganizationType, name="organization_type", values_callable=_enum_values),
        nullable=False,
        default=OrganizationType.OTHER,
        index=True,
    )
    meta = Column(JSON, default=dict)
    created_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    members = relationship(
        "OrgMember", back_populates="organization", cascade="all, delete-orphan"
    )


class OrgMember(Base):
    __tablename__ = "org_members"
    org_id = Column(
        UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True
    )
    user_id = Column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    role = Column(
        sa.Enum(OrgMemberRole, name="org_member_role", values_callable=_enum_values),
        nullable=False,
        default=OrgMemberRole.MEMBER,
    )
    joined_at = Column(DateTime(timezone=True), default=_utcnow)

    user = relationship("User", back_populates="memberships")
    organization = relationship("Organization", back_populates="members")


class TimelineNode(Base):
    __tablename__ = "timeline_nodes"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    type = Column(
        sa.Enum(NodeType, name="timeline_node_type", values_callable=_enum_values),
        nullable=False,
    )
    label = Column(String(255), nullable=False)
    parent_id = Column(
        UUID(as_uuid=True), ForeignKey("timeline_nodes.id", ondelete="SET NULL"), nullable=True
    )
    user_id = Column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    meta = Column(JSON, default=dict, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    # purpose: optimistic concurrency stamp guarding check-then-move races
    version = Column(Integer, nullable=False, default=1)

    owner = relationship("User")
    policies = relationship(
        "NodePolicy", back_populates="node", cascade="all, delete-orphan"
    )
    insights = relationship(
        "NodeInsight",
        back_populates="node",
        cascade="all, delete-orphan",
        order_by="NodeInsight.created_at",
    )

    __table_args__ = (
        sa.CheckConstraint("id != parent_id", name="ck_timeline_nodes_no_self_reference"),
        sa.Index("ix_timeline_nodes_user_parent", "user_id", "parent_id"),
        sa.Index("ix_timeline_nodes_user_type", "user_id", "type"),
        sa.Index("ix_timeline_nodes_parent", "parent_id"),
    )
    __mapper_args__ = {"version_id_col": version}


class NodePolicy(Base):
    __tablename__ = "node_policies"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    node_id = Column(
        UUID(as_uuid=True), ForeignKey("timeline_nodes.id", ondelete="CASCADE"), nullable=False
    )
    level = Column(
        sa.Enum(VisibilityLevel, name="visibility_level", values_callable=_enum_values),
        nullable=False,
    )
    action = Column(
        sa.Enum(PermissionAction, name="permission_action", values_callable=_enum_values),
        nullable=False,
        default=PermissionAction.VIEW,
    )
    subject_type = Column(
        sa.Enum(SubjectType, name="subject_type", values_callable=_enum_values),
        nullable=False,
    )
    # user id or organization id; NULL for public subjects
    subject_id = Column(UUID(as_uuid=True), nullable=True)
    effect = Column(
        sa.Enum(PolicyEffect, name="policy_effect", values_callable=_enum_values),
        nullable=False,
        default=PolicyEffect.ALLOW,
    )
    granted_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    node = relationship("TimelineNode", back_populates="policies")

    __table_args__ = (
        sa.UniqueConstraint(
            "node_id",
            "level",
            "action",
            "subject_type",
            "subject_id",
            name="uq_node_policies_coordinate",
        ),
        sa.CheckConstraint(
            "(subject_type = 'public' AND subject_id IS NULL) OR "
            "(subject_type IN ('user', 'org') AND subject_id IS NOT NULL)",
            name="ck_node_policies_subject_id",
        ),
        # NULL subject ids never collide in the coordinate constraint
        sa.Index(
            "uq_node_policies_public_coordinate",
            "node_id",
            "level",
            "action",
            unique=True,
            postgresql_where=sa.text("subject_type = 'public'"),
            sqlite_where=sa.text("subject_type = 'public'"),
        ),
        sa.Index("ix_node_policies_node", "node_id"),
        sa.Index("ix_node_policies_subject", "subject_type", "subject_id"),
        sa.Index(
            "ix_node_policies_access_check",
            "node_id",
            "action",
            "level",
            "subject_type",
            "subject_id",
        ),
        sa.Index("ix_node_policies_expires", "expires_at"),
    )


class NodeInsight(Base):
    __tablename__ = "node_insights"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    node_id = Column(
        UUID(as_uuid=True), ForeignKey("timeline_nodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    description = Column(Text, nullable=False)
    resources = Column(JSON, default=list)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    node = relationship("TimelineNode", back_populates="insights")


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    action = Column(String, nullable=False)
    target_type = Column(String)
    target_id = Column(UUID(as_uuid=True))
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
