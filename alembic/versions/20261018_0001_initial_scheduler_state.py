"""Initial scheduler state schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "scheduler_tasks",
        sa.Column("collection", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("auto_level", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("enabled_tools_json", sa.Text(), nullable=False),
        sa.Column("disabled_tools_json", sa.Text(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("output_json", sa.Text(), nullable=False),
        sa.Column("input_tokens", sa.Integer(), nullable=True),
        sa.Column("output_tokens", sa.Integer(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("collection", "task_id"),
    )
    op.create_index("ix_scheduler_tasks_position", "scheduler_tasks", ["position"])
    op.create_index("ix_scheduler_tasks_project_id", "scheduler_tasks", ["project_id"])
    op.create_index("ix_scheduler_tasks_agent_id", "scheduler_tasks", ["agent_id"])
    op.create_index("ix_scheduler_tasks_status", "scheduler_tasks", ["status"])

    op.create_table(
        "agent_run_states",
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("path", sa.String(), nullable=False),
        sa.Column("scope", sa.String(), nullable=False),
        sa.Column("project_path", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_task_id", sa.String(), nullable=True),
        sa.Column("queued_task_ids_json", sa.Text(), nullable=False),
        sa.Column("completed_count", sa.Integer(), nullable=False),
        sa.Column("failed_count", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("agent_id"),
    )
    op.create_index("ix_agent_run_states_position", "agent_run_states", ["position"])

    op.create_table(
        "scheduler_config",
        sa.Column("config_id", sa.Integer(), nullable=False),
        sa.Column("max_parallel_tasks", sa.Integer(), nullable=False),
        sa.Column("max_tasks_per_agent", sa.Integer(), nullable=False),
        sa.Column("default_auto_level", sa.String(), nullable=False),
        sa.Column("default_model", sa.String(), nullable=False),
        sa.Column("task_timeout_seconds", sa.Float(), nullable=False),
        sa.Column("watchdog_interval_seconds", sa.Float(), nullable=False),
        sa.Column("retry_on_failure", sa.Boolean(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("retry_delay_seconds", sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint("config_id"),
    )

    op.create_table(
        "projects",
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("path", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("main_agent_id", sa.String(), nullable=True),
        sa.Column("default_model", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("project_id"),
    )
    op.create_index("ix_projects_position", "projects", ["position"])

    op.create_table(
        "agent_definitions",
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("system_prompt", sa.Text(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("auto_level", sa.String(), nullable=True),
        sa.Column("enabled_tools_json", sa.Text(), nullable=False),
        sa.Column("disabled_tools_json", sa.Text(), nullable=False),
        sa.Column("sub_agent_ids_json", sa.Text(), nullable=False),
        sa.Column("source_path", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("agent_id"),
    )
    op.create_index("ix_agent_definitions_position", "agent_definitions", ["position"])
    op.create_index("ix_agent_definitions_project_id", "agent_definitions", ["project_id"])

    op.create_table(
        "workflows",
        sa.Column("workflow_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("main_agent_id", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("steps_json", sa.Text(), nullable=False),
        sa.Column("auto_dispatch", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("workflow_id"),
    )
    op.create_index("ix_workflows_position", "workflows", ["position"])
    op.create_index("ix_workflows_project_id", "workflows", ["project_id"])


def downgrade() -> None:
    op.drop_table("workflows")
    op.drop_table("agent_definitions")
    op.drop_table("projects")
    op.drop_table("scheduler_config")
    op.drop_table("agent_run_states")
    op.drop_table("scheduler_tasks")
