from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Connector(Base):
    __tablename__ = "connectors"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    type: Mapped[str] = mapped_column(String)
    # Opaque Nango connection handle; tokens themselves are never stored.
    connection_id: Mapped[str] = mapped_column(String, index=True)
    workspace_api_key: Mapped[str] = mapped_column(String)
    workspace_id: Mapped[str] = mapped_column(String, index=True)
    data_source_name: Mapped[str] = mapped_column(String)
    default_new_resource_permission: Mapped[str] = mapped_column(String, default="read_write")
    # One of idle/full_sync/incremental_sync/paused/errored; deletion removes the row.
    state: Mapped[str] = mapped_column(String, default="idle")
    error_type: Mapped[str | None] = mapped_column(String, nullable=True)
    last_sync_status: Mapped[str | None] = mapped_column(String, nullable=True)
    last_sync_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_sync_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set when GC is deferred to the next scheduled tick.
    gc_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SlackConfiguration(Base):
    __tablename__ = "slack_configurations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connector_id: Mapped[str] = mapped_column(String, ForeignKey("connectors.id"), unique=True)
    # Several connectors may share one team (multi-workspace installs).
    slack_team_id: Mapped[str] = mapped_column(String, index=True)
    bot_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ConnectorResource(Base):
    __tablename__ = "connector_resources"
    __table_args__ = (
        UniqueConstraint("connector_id", "external_id", name="uq_connector_resources_external"),
        Index("ix_connector_resources_connector_permission", "connector_id", "permission"),
        Index("ix_connector_resources_connector_parent", "connector_id", "parent_external_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connector_id: Mapped[str] = mapped_column(String, ForeignKey("connectors.id"), index=True)
    external_id: Mapped[str] = mapped_column(String)
    # Null for flat providers such as Slack channels.
    parent_external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_type: Mapped[str] = mapped_column(String, default="channel")
    title: Mapped[str] = mapped_column(String)
    permission: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SyncedDocument(Base):
    __tablename__ = "synced_documents"
    __table_args__ = (
        UniqueConstraint("connector_id", "document_id", name="uq_synced_documents_document"),
        Index("ix_synced_documents_connector_resource", "connector_id", "resource_external_id"),
    )

    # Track every document pushed to the search index so GC can delete it.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connector_id: Mapped[str] = mapped_column(String, ForeignKey("connectors.id"))
    resource_external_id: Mapped[str] = mapped_column(String)
    document_id: Mapped[str] = mapped_column(String)
    external_ts: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SyncCursor(Base):
    __tablename__ = "sync_cursors"
    __table_args__ = (
        UniqueConstraint("connector_id", "resource_external_id", name="uq_sync_cursors_resource"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connector_id: Mapped[str] = mapped_column(String, ForeignKey("connectors.id"), index=True)
    resource_external_id: Mapped[str] = mapped_column(String)
    # Slack message ts of the newest ingested message.
    cursor: Mapped[str] = mapped_column(String)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class WorkflowStep(Base):
    __tablename__ = "workflow_steps"
    __table_args__ = (
        UniqueConstraint("workflow_id", "step_key", name="uq_workflow_steps_step"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_id: Mapped[str] = mapped_column(String, index=True)
    connector_id: Mapped[str] = mapped_column(String, ForeignKey("connectors.id"), index=True)
    step_key: Mapped[str] = mapped_column(String)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ChatBotMessage(Base):
    __tablename__ = "chat_bot_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connector_id: Mapped[str] = mapped_column(String, ForeignKey("connectors.id"), index=True)
    channel_id: Mapped[str] = mapped_column(String)
    message_ts: Mapped[str | None] = mapped_column(String, nullable=True)
    message: Mapped[str] = mapped_column(Text)
    slack_user_id: Mapped[str] = mapped_column(String)
    slack_email: Mapped[str] = mapped_column(String, default="")
    slack_user_name: Mapped[str] = mapped_column(String, default="")
    # Downstream Dust conversation, known once the answer is finalized.
    chat_session_sid: Mapped[str | None] = mapped_column(String, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
