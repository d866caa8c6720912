"""create users, organizations, timeline nodes and node policies

Revision ID: 0001_initial_careerline
Revises:
Create Date: 2026-10-17 00:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial_careerline"
down_revision = None
branch_labels = None
depends_on = None

organization_type = sa.Enum(
    "company", "educational_institution", "nonprofit", "other", name="organization_type"
)
org_member_role = sa.Enum("member", "admin", "alumni", name="org_member_role")
timeline_node_type = sa.Enum(
    "job", "education", "project", "event", "action", "careerTransition", name="timeline_node_type"
)
visibility_level = sa.Enum("overview", "full", name="visibility_level")
permission_action = sa.Enum("view", "edit", name="permission_action")
subject_type = sa.Enum("user", "org", "public", name="subject_type")
policy_effect = sa.Enum("ALLOW", "DENY", name="policy_effect")

ENUMS = (
    organization_type,
    org_member_role,
    timeline_node_type,
    visibility_level,
    permission_action,
    subject_type,
    policy_effect,
)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("email", sa.String(), nullable=False, unique=True),
        sa.Column("hashed_password", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "organizations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("type", organization_type, nullable=False, server_default="other"),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column(
            "created_by",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_organizations_name", "organizations", ["name"], unique=False)
    op.create_index("ix_organizations_type", "organizations", ["type"], unique=False)

    op.create_table(
        "org_members",
        sa.Column(
            "org_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("role", org_member_role, nullable=False, server_default="member"),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_org_members_user_id", "org_members", ["user_id"], unique=False)

    op.create_table(
        "timeline_nodes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("type", timeline_node_type, nullable=False),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column(
            "parent_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("timeline_nodes.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("meta", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint("id != parent_id", name="ck_timeline_nodes_no_self_reference"),
    )
    op.create_index("ix_timeline_nodes_user_parent", "timeline_nodes", ["user_id", "parent_id"], unique=False)
    op.create_index("ix_timeline_nodes_user_type", "timeline_nodes", ["user_id", "type"], unique=False)
    op.create_index("ix_timeline_nodes_parent", "timeline_nodes", ["parent_id"], unique=False)

    op.create_table(
        "node_policies",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "node_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("timeline_nodes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("level", visibility_level, nullable=False),
        sa.Column("action", permission_action, nullable=False, server_default="view"),
        sa.Column("subject_type", subject_type, nullable=False),
        sa.Column("subject_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("effect", policy_effect, nullable=False, server_default="ALLOW"),
        sa.Column("granted_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
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
    )
    op.create_index(
        "uq_node_policies_public_coordinate",
        "node_policies",
        ["node_id", "level", "action"],
        unique=True,
        postgresql_where=sa.text("subject_type = 'public'"),
    )
    op.create_index("ix_node_policies_node", "node_policies", ["node_id"], unique=False)
    op.create_index("ix_node_policies_subject", "node_policies", ["subject_type", "subject_id"], unique=False)
    op.create_index(
        "ix_node_policies_access_check",
        "node_policies",
        ["node_id", "action", "level", "subject_type", "subject_id"],
        unique=False,
    )
    op.create_index("ix_node_policies_expires", "node_policies", ["expires_at"], unique=False)

    op.create_table(
        "node_insights",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "node_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("timeline_nodes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("resources", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_node_insights_node_id", "node_insights", ["node_id"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("target_type", sa.String(), nullable=True),
        sa.Column("target_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_index("ix_node_insights_node_id", table_name="node_insights")
    op.drop_table("node_insights")
    op.drop_index("ix_node_policies_expires", table_name="node_policies")
    op.drop_index("ix_node_policies_access_check", table_name="node_policies")
    op.drop_index("ix_node_policies_subject", table_name="node_policies")
    op.drop_index("ix_node_policies_node", table_name="node_policies")
    op.drop_index("uq_node_policies_public_coordinate", table_name="node_policies")
    op.drop_table("node_policies")
    op.drop_index("ix_timeline_nodes_parent", table_name="timeline_nodes")
    op.drop_index("ix_timeline_nodes_user_type", table_name="timeline_nodes")
    op.drop_index("ix_timeline_nodes_user_parent", table_name="timeline_nodes")
    op.drop_table("timeline_nodes")
    op.drop_index("ix_org_members_user_id", table_name="org_members")
    op.drop_table("org_members")
    op.drop_index("ix_organizations_type", table_name="organizations")
    op.drop_index("ix_organizations_name", table_name="organizations")
    op.drop_table("organizations")
    op.drop_table("users")
    bind = op.get_bind()
    for enum in ENUMS:
        enum.drop(bind, checkfirst=True)
