"""SQLModel ORM tables for task storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class PhotoTask(SQLModel, table=True):
    __tablename__ = "photo_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_photo_tasks_status_updated", "status", "updated_at"),)

    task_id: str = Field(primary_key=True)
    status: str = Field(index=True)
    params_json: str = Field(sa_column=Column(Text, nullable=False))
    state_data_json: str = Field(sa_column=Column(Text, nullable=False, server_default="{}"))
    retry_count: int = Field(default=0)
    error: str | None = Field(default=None, sa_column=Column(Text))
    retry_after: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    worker_invocation_id: str | None = Field(default=None, index=True)
    worker_dispatched_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    version: int = Field(default=1)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PhotoTaskEvent(SQLModel, table=True):
    __tablename__ = "photo_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_photo_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("photo_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
