from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Column, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


CONTENT_UNIT_KINDS: tuple[str, ...] = (
    "character",
    "plot_point",
    "world_setting",
    "dialogue_snippet",
    "historical_event",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ContentUnit(SQLModel, table=True):
    __table_args__ = (
        Index("ix_content_unit_project_kind", "project_id", "kind"),
        Index("ix_content_unit_project_id_id", "project_id", "id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: int = Field(index=True)
    kind: str = Field(max_length=32, index=True)
    title: str = Field(default="", max_length=255)
    body: str = Field(default="", sa_column=Column(Text, nullable=False))
    importance: int = Field(default=5, ge=1, le=10)
    usage_count: int = Field(default=0, ge=0, nullable=False)
    last_used_at: Optional[datetime] = Field(default=None)
    plot_type: str = Field(default="", max_length=32)
    status: str = Field(default="", max_length=32)
    category: str = Field(default="", max_length=64)
    related_characters: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    # Non-owning references to other plot points; nulled when the target is deleted.
    foreshadowing_target_id: Optional[int] = Field(default=None, index=True)
    resolution_target_id: Optional[int] = Field(default=None, index=True)
    chapter_id: Optional[int] = Field(default=None, index=True)
    attributes: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now, nullable=False)
    updated_at: datetime = Field(default_factory=utc_now, nullable=False)


class ProjectChapter(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("project_id", "chapter_index", name="uq_project_chapter_index"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: int = Field(index=True)
    chapter_index: int = Field(default=1, ge=1, index=True)
    title: str = Field(default="第1章", max_length=255)
    content: str = Field(default="", sa_column=Column(Text, nullable=False))
    summary: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=utc_now, nullable=False)
    updated_at: datetime = Field(default_factory=utc_now, nullable=False)


class ConsistencyCheckRecord(SQLModel, table=True):
    __table_args__ = (Index("ix_consistency_check_project_id_id", "project_id", "id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: int = Field(index=True)
    chapter_id: Optional[int] = Field(default=None, index=True)
    check_type: str = Field(max_length=32, index=True)
    content: str = Field(default="", sa_column=Column(Text, nullable=False))
    overall_score: float = Field(default=1.0)
    issues: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    suggestions: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now, nullable=False)
