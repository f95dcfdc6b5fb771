"""create project record tables

Revision ID: 202610170001
Revises:
Create Date: 2026-10-17 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610170001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _project_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
    ]


def _project_constraints(table: str) -> list[sa.Constraint]:
    return [
        sa.ForeignKeyConstraint(["project_id"], ["projects_project.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id", name=f"pk_{table}"),
    ]


def upgrade() -> None:
    op.create_table(
        "projects_project",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("client_name", sa.String(length=255), nullable=True),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="qualified"),
        sa.Column("pre_deposit_stage", sa.String(length=32), nullable=True),
        sa.Column("inline_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "projects_status_entry",
        *_project_columns(),
        sa.Column("entry_type", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("author", sa.String(length=128), nullable=False),
        sa.Column("previous_stage", sa.String(length=32), nullable=True),
        sa.Column("new_stage", sa.String(length=32), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        *_project_constraints("projects_status_entry"),
    )
    op.create_index("ix_projects_status_entry_project", "projects_status_entry", ["project_id"])

    op.create_table(
        "projects_opportunity",
        *_project_columns(),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=True),
        sa.Column("amount", sa.Numeric(18, 6), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        *_project_constraints("projects_opportunity"),
    )
    op.create_index("ix_projects_opportunity_project", "projects_opportunity", ["project_id"])

    op.create_table(
        "projects_task",
        *_project_columns(),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="open"),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assignee", sa.String(length=128), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        *_project_constraints("projects_task"),
    )
    op.create_index("ix_projects_task_project", "projects_task", ["project_id"])

    op.create_table(
        "projects_appointment",
        *_project_columns(),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        *_project_constraints("projects_appointment"),
    )
    op.create_index("ix_projects_appointment_project", "projects_appointment", ["project_id"])

    op.create_table(
        "projects_document",
        *_project_columns(),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("file_path", sa.String(length=1024), nullable=False),
        sa.Column("uploaded_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        *_project_constraints("projects_document"),
    )
    op.create_index("ix_projects_document_project", "projects_document", ["project_id"])

    op.create_table(
        "projects_note",
        *_project_columns(),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("author", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        *_project_constraints("projects_note"),
    )
    op.create_index("ix_projects_note_project", "projects_note", ["project_id"])

    op.create_table(
        "projects_quote",
        *_project_columns(),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("invoice_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("file_name", sa.String(length=255), nullable=True),
        sa.Column("file_path", sa.String(length=1024), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
        *_project_constraints("projects_quote"),
    )
    op.create_index("ix_projects_quote_project", "projects_quote", ["project_id"])

    op.create_table(
        "projects_payment",
        *_project_columns(),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False, server_default="regular"),
        sa.Column("method", sa.String(length=32), nullable=False, server_default="cash"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reference", sa.String(length=128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        *_project_constraints("projects_payment"),
    )
    op.create_index("ix_projects_payment_project", "projects_payment", ["project_id"])


def downgrade() -> None:
    for table in (
        "projects_payment",
        "projects_quote",
        "projects_note",
        "projects_document",
        "projects_appointment",
        "projects_task",
        "projects_opportunity",
        "projects_status_entry",
    ):
        op.drop_index(f"ix_{table}_project", table_name=table)
        op.drop_table(table)
    op.drop_table("projects_project")
