"""connectors

Revision ID: 0001_connectors
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_connectors"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "connectors",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("connection_id", sa.String(), nullable=False),
        sa.Column("workspace_api_key", sa.String(), nullable=False),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("data_source_name", sa.String(), nullable=False),
        sa.Column("default_new_resource_permission", sa.String(), nullable=False, server_default="read_write"),
        sa.Column("state", sa.String(), nullable=False, server_default="idle"),
        sa.Column("error_type", sa.String(), nullable=True),
        sa.Column("last_sync_status", sa.String(), nullable=True),
        sa.Column("last_sync_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_sync_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("gc_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_connectors_connection_id", "connectors", ["connection_id"])
    op.create_index("ix_connectors_workspace_id", "connectors", ["workspace_id"])

    op.create_table(
        "slack_configurations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("connector_id", sa.String(), sa.ForeignKey("connectors.id"), nullable=False, unique=True),
        sa.Column("slack_team_id", sa.String(), nullable=False),
        sa.Column("bot_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_slack_configurations_slack_team_id", "slack_configurations", ["slack_team_id"])

    op.create_table(
        "connector_resources",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("connector_id", sa.String(), sa.ForeignKey("connectors.id"), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("parent_external_id", sa.String(), nullable=True),
        sa.Column("resource_type", sa.String(), nullable=False, server_default="channel"),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("permission", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("connector_id", "external_id", name="uq_connector_resources_external"),
    )
    op.create_index("ix_connector_resources_connector_id", "connector_resources", ["connector_id"])
    op.create_index(
        "ix_connector_resources_connector_permission",
        "connector_resources",
        ["connector_id", "permission"],
    )
    op.create_index(
        "ix_connector_resources_connector_parent",
        "connector_resources",
        ["connector_id", "parent_external_id"],
    )

    op.create_table(
        "synced_documents",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("connector_id", sa.String(), sa.ForeignKey("connectors.id"), nullable=False),
        sa.Column("resource_external_id", sa.String(), nullable=False),
        sa.Column("document_id", sa.String(), nullable=False),
        sa.Column("external_ts", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("connector_id", "document_id", name="uq_synced_documents_document"),
    )
    op.create_index(
        "ix_synced_documents_connector_resource",
        "synced_documents",
        ["connector_id", "resource_external_id"],
    )

    op.create_table(
        "sync_cursors",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("connector_id", sa.String(), sa.ForeignKey("connectors.id"), nullable=False),
        sa.Column("resource_external_id", sa.String(), nullable=False),
        sa.Column("cursor", sa.String(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("connector_id", "resource_external_id", name="uq_sync_cursors_resource"),
    )
    op.create_index("ix_sync_cursors_connector_id", "sync_cursors", ["connector_id"])

    op.create_table(
        "workflow_steps",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("workflow_id", sa.String(), nullable=False),
        sa.Column("connector_id", sa.String(), sa.ForeignKey("connectors.id"), nullable=False),
        sa.Column("step_key", sa.String(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("workflow_id", "step_key", name="uq_workflow_steps_step"),
    )
    op.create_index("ix_workflow_steps_workflow_id", "workflow_steps", ["workflow_id"])
    op.create_index("ix_workflow_steps_connector_id", "workflow_steps", ["connector_id"])

    op.create_table(
        "chat_bot_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("connector_id", sa.String(), sa.ForeignKey("connectors.id"), nullable=False),
        sa.Column("channel_id", sa.String(), nullable=False),
        sa.Column("message_ts", sa.String(), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("slack_user_id", sa.String(), nullable=False),
        sa.Column("slack_email", sa.String(), nullable=False, server_default=""),
        sa.Column("slack_user_name", sa.String(), nullable=False, server_default=""),
        sa.Column("chat_session_sid", sa.String(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_chat_bot_messages_connector_id", "chat_bot_messages", ["connector_id"])


def downgrade() -> None:
    op.drop_index("ix_chat_bot_messages_connector_id", table_name="chat_bot_messages")
    op.drop_table("chat_bot_messages")
    op.drop_index("ix_workflow_steps_connector_id", table_name="workflow_steps")
    op.drop_index("ix_workflow_steps_workflow_id", table_name="workflow_steps")
    op.drop_table("workflow_steps")
    op.drop_index("ix_sync_cursors_connector_id", table_name="sync_cursors")
    op.drop_table("sync_cursors")
    op.drop_index("ix_synced_documents_connector_resource", table_name="synced_documents")
    op.drop_table("synced_documents")
    op.drop_index("ix_connector_resources_connector_parent", table_name="connector_resources")
    op.drop_index("ix_connector_resources_connector_permission", table_name="connector_resources")
    op.drop_index("ix_connector_resources_connector_id", table_name="connector_resources")
    op.drop_table("connector_resources")
    op.drop_index("ix_slack_configurations_slack_team_id", table_name="slack_configurations")
    op.drop_table("slack_configurations")
    op.drop_index("ix_connectors_workspace_id", table_name="connectors")
    op.drop_index("ix_connectors_connection_id", table_name="connectors")
    op.drop_table("connectors")
