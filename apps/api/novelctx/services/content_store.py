from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from novelctx.models import CONTENT_UNIT_KINDS, ConsistencyCheckRecord, ContentUnit, ProjectChapter
from novelctx.models.content import utc_now
from novelctx.services.relevance_scorer import UnitSnapshot

_LOGGER = logging.getLogger(__name__)

_IMPORTANCE_MIN = 1
_IMPORTANCE_MAX = 10
_PROJECT_LOCKS: dict[int, Lock] = {}
_PROJECT_LOCKS_GUARD = Lock()


class DataUnavailableError(LookupError):
    def __init__(self, resource: str, resource_id: Any) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} unavailable: {resource_id}")


def _project_lock(project_id: int) -> Lock:
    with _PROJECT_LOCKS_GUARD:
        lock = _PROJECT_LOCKS.get(project_id)
        if lock is None:
            lock = Lock()
            _PROJECT_LOCKS[project_id] = lock
        return lock


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _string_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(item for item in (str(v or "").strip() for v in value) if item)


def to_unit_snapshot(row: ContentUnit, order: int = 0) -> UnitSnapshot:
    attributes = row.attributes if isinstance(row.attributes, dict) else {}
    return UnitSnapshot(
        id=row.id,
        project_id=int(row.project_id),
        kind=str(row.kind or ""),
        title=str(row.title or ""),
        body=str(row.body or ""),
        importance=row.importance,
        usage_count=int(row.usage_count or 0),
        last_used_at=row.last_used_at,
        plot_type=str(row.plot_type or ""),
        status=str(row.status or ""),
        category=str(row.category or ""),
        related_characters=_string_tuple(row.related_characters),
        foreshadowing_target_id=row.foreshadowing_target_id,
        resolution_target_id=row.resolution_target_id,
        chapter_id=row.chapter_id,
        aliases=_string_tuple(attributes.get("aliases")),
        order=order,
    )


def list_content_units(db: Session, project_id: int, *, kinds: Iterable[str] | None = None) -> list[ContentUnit]:
    stmt = select(ContentUnit).where(ContentUnit.project_id == project_id)
    kind_filter = [kind for kind in (kinds or ()) if kind]
    if kind_filter:
        stmt = stmt.where(ContentUnit.kind.in_(kind_filter))
    stmt = stmt.order_by(ContentUnit.id.asc())
    try:
        return list(db.exec(stmt).all())
    except SQLAlchemyError as exc:
        _LOGGER.warning("content_units_unavailable project_id=%s error=%s", project_id, exc)
        raise DataUnavailableError("content_units", project_id) from exc


def get_chapter(db: Session, project_id: int, chapter_id: int) -> ProjectChapter:
    try:
        chapter = db.get(ProjectChapter, chapter_id)
    except SQLAlchemyError as exc:
        _LOGGER.warning("chapter_unavailable project_id=%s chapter_id=%s error=%s", project_id, chapter_id, exc)
        raise DataUnavailableError("chapter", chapter_id) from exc
    if chapter is None or int(chapter.project_id) != int(project_id):
        raise DataUnavailableError("chapter", chapter_id)
    return chapter


def get_chapter_text(db: Session, project_id: int, chapter_id: int) -> str:
    return str(get_chapter(db, project_id, chapter_id).content or "")


def list_previous_chapter_summaries(
    db: Session,
    project_id: int,
    chapter_index: int,
    *,
    limit: int = 3,
) -> list[ProjectChapter]:
    if chapter_index <= 1 or limit <= 0:
        return []
    stmt = (
        select(ProjectChapter)
        .where(
            ProjectChapter.project_id == project_id,
            ProjectChapter.chapter_index < chapter_index,
        )
        .order_by(ProjectChapter.chapter_index.desc())
        .limit(limit)
    )
    try:
        rows = db.exec(stmt).all()
    except SQLAlchemyError as exc:
        _LOGGER.warning("chapter_summaries_unavailable project_id=%s error=%s", project_id, exc)
        raise DataUnavailableError("chapter_summaries", project_id) from exc
    return [row for row in reversed(rows) if str(row.summary or "").strip()]


def record_usage(db: Session, project_id: int, unit_ids: Iterable[int], *, now: datetime | None = None) -> int:
    """Bump usage_count and last_used_at for the given units of one project.

    Updates for the same project are serialized so concurrent assemblies do not
    lose increments. last_used_at never moves backwards, even when a caller
    records an earlier timestamp after a later one.
    """
    ids = sorted({int(unit_id) for unit_id in unit_ids if unit_id is not None})
    if not ids:
        return 0
    used_at = _as_utc(now or utc_now())
    with _project_lock(int(project_id)):
        stmt = select(ContentUnit).where(
            ContentUnit.project_id == project_id,
            ContentUnit.id.in_(ids),
        )
        rows = db.exec(stmt).all()
        for row in rows:
            row.usage_count = int(row.usage_count or 0) + 1
            previous = _as_utc(row.last_used_at) if row.last_used_at is not None else None
            row.last_used_at = used_at if previous is None else max(previous, used_at)
            db.add(row)
        db.commit()
    return len(rows)


def _validate_plot_target(db: Session, project_id: int, target_id: int | None, field_name: str) -> None:
    if target_id is None:
        return
    target = db.get(ContentUnit, target_id)
    if target is None or int(target.project_id) != int(project_id) or target.kind != "plot_point":
        raise ValueError(f"{field_name} must reference a plot_point in the same project")


def create_content_unit(db: Session, project_id: int, **fields: Any) -> ContentUnit:
    kind = str(fields.get("kind") or "").strip()
    if kind not in CONTENT_UNIT_KINDS:
        raise ValueError(f"unsupported content unit kind: {kind or '<empty>'}")
    importance = int(fields.get("importance", 5))
    if importance < _IMPORTANCE_MIN or importance > _IMPORTANCE_MAX:
        raise ValueError("importance must be between 1 and 10")
    _validate_plot_target(db, project_id, fields.get("foreshadowing_target_id"), "foreshadowing_target_id")
    _validate_plot_target(db, project_id, fields.get("resolution_target_id"), "resolution_target_id")

    row = ContentUnit(
        project_id=project_id,
        kind=kind,
        title=str(fields.get("title") or ""),
        body=str(fields.get("body") or ""),
        importance=importance,
        plot_type=str(fields.get("plot_type") or ""),
        status=str(fields.get("status") or ""),
        category=str(fields.get("category") or ""),
        related_characters=list(_string_tuple(fields.get("related_characters"))),
        foreshadowing_target_id=fields.get("foreshadowing_target_id"),
        resolution_target_id=fields.get("resolution_target_id"),
        chapter_id=fields.get("chapter_id"),
        attributes=dict(fields.get("attributes") or {}),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def delete_content_unit(db: Session, project_id: int, unit_id: int) -> None:
    row = db.get(ContentUnit, unit_id)
    if row is None or int(row.project_id) != int(project_id):
        raise DataUnavailableError("content_unit", unit_id)

    stmt = select(ContentUnit).where(
        ContentUnit.project_id == project_id,
        (ContentUnit.foreshadowing_target_id == unit_id) | (ContentUnit.resolution_target_id == unit_id),
    )
    for referrer in db.exec(stmt).all():
        if referrer.foreshadowing_target_id == unit_id:
            referrer.foreshadowing_target_id = None
        if referrer.resolution_target_id == unit_id:
            referrer.resolution_target_id = None
        referrer.updated_at = utc_now()
        db.add(referrer)
    db.delete(row)
    db.commit()


def create_chapter(
    db: Session,
    project_id: int,
    *,
    chapter_index: int,
    title: str = "",
    content: str = "",
    summary: str = "",
) -> ProjectChapter:
    if chapter_index < 1:
        raise ValueError("chapter_index must be >= 1")
    stmt = select(ProjectChapter).where(
        ProjectChapter.project_id == project_id,
        ProjectChapter.chapter_index == chapter_index,
    )
    row = db.exec(stmt).first()
    if row is None:
        row = ProjectChapter(project_id=project_id, chapter_index=chapter_index)
    row.title = title.strip() or f"第{chapter_index}章"
    row.content = content
    row.summary = summary
    row.updated_at = utc_now()
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def adjust_unit_importance(db: Session, unit_id: int, delta: int) -> ContentUnit | None:
    row = db.get(ContentUnit, unit_id)
    if row is None or delta == 0:
        return row
    row.importance = max(_IMPORTANCE_MIN, min(_IMPORTANCE_MAX, int(row.importance or 5) + int(delta)))
    row.updated_at = utc_now()
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def save_check_record(
    db: Session,
    *,
    project_id: int,
    chapter_id: int | None,
    check_type: str,
    content: str,
    overall_score: float,
    issues: list[dict[str, Any]],
    suggestions: list[str],
) -> ConsistencyCheckRecord:
    row = ConsistencyCheckRecord(
        project_id=project_id,
        chapter_id=chapter_id,
        check_type=check_type,
        content=content,
        overall_score=overall_score,
        issues=issues,
        suggestions=suggestions,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def list_check_records(db: Session, project_id: int, *, limit: int = 20) -> list[ConsistencyCheckRecord]:
    stmt = (
        select(ConsistencyCheckRecord)
        .where(ConsistencyCheckRecord.project_id == project_id)
        .order_by(ConsistencyCheckRecord.id.desc())
        .limit(max(int(limit), 1))
    )
    return list(db.exec(stmt).all())
