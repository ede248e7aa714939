"""library catalog: tenants, users, memberships and the four-level hierarchy

Revision ID: 0001_library_catalog
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_library_catalog"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _catalog_columns(code_len):
    return [
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("code", sa.String(code_len), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    ]


def _active_code_index(table):
    # A code is claimed only by live rows within a tenant
    op.create_index(
        f"uq_{table}_org_code_active",
        table,
        ["org_id", "code"],
        unique=True,
        postgresql_where=sa.text("is_active = true"),
        sqlite_where=sa.text("is_active = 1"),
    )
    op.create_index(f"ix_{table}_org_sort", table, ["org_id", "sort_order"])


def upgrade():
    op.create_table(
        "orgs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("orgs.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_users_org_id", "users", ["org_id"])
    op.create_index("uq_users_email_lower", "users", [sa.text("lower(email)")], unique=True)

    op.create_table(
        "org_memberships",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="member"),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "user_id", name="uq_org_memberships_org_user"),
        sa.CheckConstraint("role IN ('owner','admin','member')", name="ck_org_memberships_role_valid"),
    )
    op.create_index("ix_org_memberships_org_id", "org_memberships", ["org_id"])
    op.create_index("ix_org_memberships_user_id", "org_memberships", ["user_id"])

    op.create_table("divisions", *_catalog_columns(2), *_timestamps())
    _active_code_index("divisions")

    op.create_table(
        "sections",
        *_catalog_columns(5),
        sa.Column("division_id", sa.Integer(), sa.ForeignKey("divisions.id", ondelete="RESTRICT"), nullable=False),
        *_timestamps(),
    )
    _active_code_index("sections")
    op.create_index("ix_sections_division_id", "sections", ["division_id"])

    op.create_table(
        "assemblies",
        *_catalog_columns(8),
        sa.Column("section_id", sa.Integer(), sa.ForeignKey("sections.id", ondelete="RESTRICT"), nullable=False),
        *_timestamps(),
    )
    _active_code_index("assemblies")
    op.create_index("ix_assemblies_section", "assemblies", ["section_id"])

    op.create_table(
        "library_items",
        *_catalog_columns(11),
        sa.Column("assembly_id", sa.Integer(), sa.ForeignKey("assemblies.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("unit", sa.String(32), nullable=False),
        sa.Column("specifications", sa.Text(), nullable=True),
        sa.Column("wastage_percentage", sa.Numeric(5, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("productivity_notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        *_timestamps(),
        sa.CheckConstraint("status IN ('draft','confirmed','actual')", name="ck_library_items_status"),
        sa.CheckConstraint(
            "wastage_percentage >= 0 AND wastage_percentage <= 100",
            name="ck_library_items_wastage_range",
        ),
    )
    _active_code_index("library_items")
    op.create_index("ix_library_items_assembly", "library_items", ["assembly_id"])


def downgrade():
    for table in ("library_items", "assemblies", "sections", "divisions"):
        op.drop_table(table)
    op.drop_table("org_memberships")
    op.drop_table("users")
    op.drop_table("orgs")
