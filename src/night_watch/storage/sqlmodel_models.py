"""SQLModel ORM tables for the coordination state store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, PrimaryKeyConstraint, Text, text
from sqlmodel import Field, SQLModel


class ProjectRow(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    path: str = Field(unique=True)
    channel_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ExecutionHistoryRow(SQLModel, table=True):
    __tablename__ = "execution_history"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "idx_execution_history_lookup",
            "project_path",
            "prd_file",
            text("timestamp DESC"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    project_path: str
    prd_file: str
    timestamp: int
    outcome: str
    exit_code: int
    attempt: int = 1


class PersistedStatusRow(SQLModel, table=True):
    __tablename__ = "persisted_status"  # type: ignore[bad-override]
    __table_args__ = (PrimaryKeyConstraint("project_path", "item_name"),)

    project_path: str
    item_name: str
    status: str
    branch: str = ""
    timestamp: int


class ScannerBookmarkRow(SQLModel, table=True):
    __tablename__ = "scanner_bookmarks"  # type: ignore[bad-override]

    scope_key: str = Field(primary_key=True)
    version: int = 1
    last_scan: str = ""
    items_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))


class SchemaMetaRow(SQLModel, table=True):
    __tablename__ = "schema_meta"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str
