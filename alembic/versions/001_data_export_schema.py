"""Data-export schema - workflows, steps, task links, tasks, statements.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- data_export_tasks ---
    op.create_table(
        "data_export_tasks",
        sa.Column("uid", sa.String(64), nullable=False),
        sa.Column("project_uid", sa.String(64), nullable=False),
        sa.Column("create_user_uid", sa.String(64), nullable=False),
        sa.Column("db_service_uid", sa.String(64), nullable=False),
        sa.Column("database_name", sa.String(200), nullable=True),
        sa.Column("export_sql", sa.Text(), nullable=False),
        sa.Column("export_type", sa.String(16), nullable=False, server_default="sql"),
        sa.Column("export_file_type", sa.String(16), nullable=False, server_default="csv"),
        sa.Column("audit_level", sa.String(16), nullable=True),
        sa.Column("audit_score", sa.Integer(), nullable=True),
        sa.Column("audit_pass_rate", sa.Float(), nullable=True),
        sa.Column("export_status", sa.String(16), nullable=False, server_default="init"),
        sa.Column("export_start_time", sa.DateTime(), nullable=True),
        sa.Column("export_end_time", sa.DateTime(), nullable=True),
        sa.Column("export_file_name", sa.String(255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("claimed_by_workflow_uid", sa.String(64), nullable=True),
        sa.Column("create_time", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("uid"),
    )
    op.create_index("ix_data_export_tasks_project_uid", "data_export_tasks", ["project_uid"])
    op.create_index("ix_data_export_tasks_db_service_uid", "data_export_tasks", ["db_service_uid"])
    op.create_index("ix_data_export_tasks_export_status", "data_export_tasks", ["export_status"])
    op.create_index(
        "ix_data_export_tasks_claimed_by_workflow_uid",
        "data_export_tasks",
        ["claimed_by_workflow_uid"],
    )

    # --- data_export_task_statements ---
    op.create_table(
        "data_export_task_statements",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("task_uid", sa.String(64), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("sql", sa.Text(), nullable=False),
        sa.Column("audit_level", sa.String(16), nullable=True),
        sa.Column("audit_results", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["task_uid"], ["data_export_tasks.uid"], ondelete="CASCADE"),
        sa.UniqueConstraint("task_uid", "number", name="uq_task_statement_number"),
    )

    # --- data_export_workflows ---
    op.create_table(
        "data_export_workflows",
        sa.Column("uid", sa.String(64), nullable=False),
        sa.Column("project_uid", sa.String(64), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("desc", sa.Text(), nullable=True),
        sa.Column("create_user_uid", sa.String(64), nullable=False),
        sa.Column("create_time", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("current_step_number", sa.Integer(), nullable=True),
        sa.Column("status_changed_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("uid"),
    )
    op.create_index("ix_data_export_workflows_project_uid", "data_export_workflows", ["project_uid"])
    op.create_index(
        "ix_data_export_workflows_create_user_uid", "data_export_workflows", ["create_user_uid"]
    )
    op.create_index("ix_data_export_workflows_status", "data_export_workflows", ["status"])
    op.create_index(
        "ix_data_export_workflows_status_changed",
        "data_export_workflows",
        ["status", "status_changed_at"],
    )
    op.create_index(
        "ix_data_export_workflows_project_created",
        "data_export_workflows",
        ["project_uid", "create_time"],
    )

    # --- data_export_workflow_steps ---
    op.create_table(
        "data_export_workflow_steps",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("workflow_uid", sa.String(64), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("step_type", sa.String(32), nullable=False),
        sa.Column("assignees", sa.Text(), nullable=False),
        sa.Column("state", sa.String(16), nullable=False, server_default="init"),
        sa.Column("operation_user_uid", sa.String(64), nullable=True),
        sa.Column("operation_time", sa.DateTime(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["workflow_uid"], ["data_export_workflows.uid"], ondelete="CASCADE"
        ),
        sa.UniqueConstraint("workflow_uid", "number", name="uq_workflow_step_number"),
    )

    # --- data_export_workflow_tasks ---
    op.create_table(
        "data_export_workflow_tasks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("workflow_uid", sa.String(64), nullable=False),
        sa.Column("task_uid", sa.String(64), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["workflow_uid"], ["data_export_workflows.uid"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["task_uid"], ["data_export_tasks.uid"]),
        sa.UniqueConstraint("workflow_uid", "task_uid", name="uq_workflow_task"),
    )
    op.create_index(
        "ix_data_export_workflow_tasks_task_uid", "data_export_workflow_tasks", ["task_uid"]
    )


def downgrade() -> None:
    op.drop_table("data_export_workflow_tasks")
    op.drop_table("data_export_workflow_steps")
    op.drop_table("data_export_workflows")
    op.drop_table("data_export_task_statements")
    op.drop_table("data_export_tasks")
