from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

ContentUnitKind = Literal["character", "plot_point", "world_setting", "dialogue_snippet", "historical_event"]
CheckType = Literal["character_consistency", "plot_consistency", "world_consistency", "language_purity", "full"]


class ContentUnitCreate(BaseModel):
    kind: ContentUnitKind
    title: str = Field(default="", max_length=255)
    body: str = Field(default="", max_length=20000)
    importance: int = Field(default=5, ge=1, le=10)
    plot_type: str = Field(default="", max_length=32)
    status: str = Field(default="", max_length=32)
    category: str = Field(default="", max_length=64)
    related_characters: list[str] = Field(default_factory=list, max_length=32)
    foreshadowing_target_id: Optional[int] = Field(default=None, ge=1)
    resolution_target_id: Optional[int] = Field(default=None, ge=1)
    chapter_id: Optional[int] = Field(default=None, ge=1)
    attributes: dict[str, Any] = Field(default_factory=dict)


class ContentUnitRead(BaseModel):
    id: int
    project_id: int
    kind: str
    title: str
    body: str
    importance: int
    usage_count: int
    last_used_at: Optional[datetime]
    plot_type: str
    status: str
    category: str
    related_characters: list[str]
    foreshadowing_target_id: Optional[int]
    resolution_target_id: Optional[int]
    chapter_id: Optional[int]
    attributes: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class ChapterUpsert(BaseModel):
    chapter_index: int = Field(default=1, ge=1)
    title: str = Field(default="", max_length=255)
    content: str = Field(default="", max_length=200000)
    summary: str = Field(default="", max_length=8000)


class ChapterRead(BaseModel):
    id: int
    project_id: int
    chapter_index: int
    title: str
    content: str
    summary: str
    updated_at: datetime


class StrategyPayload(BaseModel):
    max_tokens: Optional[int] = None
    core_ratio: Optional[float] = None
    character_ratio: Optional[float] = None
    plot_ratio: Optional[float] = None
    world_ratio: Optional[float] = None
    historical_ratio: Optional[float] = None
    preserve_dialogue: Optional[bool] = None
    preserve_foreshadowing: Optional[bool] = None
    min_character_mentions: Optional[int] = None


class AssembleRequest(BaseModel):
    project_id: int = Field(ge=1)
    chapter_id: int = Field(ge=1)
    cursor_position: int
    strategy: Optional[StrategyPayload] = None
    focus_characters: list[str] = Field(default_factory=list, max_length=16)
    location: Optional[str] = Field(default=None, max_length=128)
    record_usage: bool = True


class AssembleResponse(BaseModel):
    project_id: int
    chapter_id: int
    cursor_position: int
    core_context: str
    character_context: str
    plot_context: str
    world_context: str
    historical_context: str
    section_tokens: dict[str, int]
    total_tokens: int
    pre_compression_tokens: int
    compression_ratio: float
    context_hash: str
    budget_exceeded: bool
    protected_tokens: int
    included_unit_ids: list[int]
    dropped_unit_ids: list[int]
    created_at: datetime


class CheckRequest(BaseModel):
    project_id: int = Field(ge=1)
    chapter_id: Optional[int] = Field(default=None, ge=1)
    generated_text: str = Field(min_length=1, max_length=50000)
    check_type: CheckType = "full"


class ConsistencyIssueRead(BaseModel):
    issue_type: str
    severity: str
    description: str
    context: str = ""
    suggestion: Optional[str] = None
    unit_id: Optional[int] = None


class CheckResponse(BaseModel):
    record_id: Optional[int]
    check_type: str
    overall_score: float
    issues: list[ConsistencyIssueRead]
    suggestions: list[str]


class CheckRecordRead(BaseModel):
    id: int
    project_id: int
    chapter_id: Optional[int]
    check_type: str
    overall_score: float
    issues: list[dict[str, Any]]
    suggestions: list[str]
    created_at: datetime
