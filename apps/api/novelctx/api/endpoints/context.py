from dataclasses import replace

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session

from novelctx.core.database import get_session
from novelctx.schemas.context import (
    AssembleRequest,
    AssembleResponse,
    ChapterRead,
    ChapterUpsert,
    CheckRecordRead,
    CheckRequest,
    CheckResponse,
    ConsistencyIssueRead,
    ContentUnitCreate,
    ContentUnitRead,
    StrategyPayload,
)
from novelctx.services import content_store
from novelctx.services.compression_engine import CompressionStrategy, ConfigurationError
from novelctx.services.content_store import DataUnavailableError
from novelctx.services.context_assembler import assemble, default_strategy, record_check

router = APIRouter(tags=["context"])


def _resolve_strategy(payload: StrategyPayload | None) -> CompressionStrategy:
    base = default_strategy()
    if payload is None:
        return base
    overrides = payload.model_dump(exclude_none=True)
    return replace(base, **overrides)


@router.post("/projects/{project_id}/units", response_model=ContentUnitRead)
def create_unit(
    project_id: int,
    payload: ContentUnitCreate,
    db: Session = Depends(get_session),
):
    try:
        return content_store.create_content_unit(db, project_id, **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/projects/{project_id}/units", response_model=list[ContentUnitRead])
def list_units(
    project_id: int,
    kind: str | None = Query(default=None, max_length=32),
    db: Session = Depends(get_session),
):
    try:
        return content_store.list_content_units(db, project_id, kinds=[kind] if kind else None)
    except DataUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@router.delete("/projects/{project_id}/units/{unit_id}")
def delete_unit(
    project_id: int,
    unit_id: int,
    db: Session = Depends(get_session),
):
    try:
        content_store.delete_content_unit(db, project_id, unit_id)
    except DataUnavailableError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"deleted_unit_id": unit_id}


@router.post("/projects/{project_id}/chapters", response_model=ChapterRead)
def upsert_chapter(
    project_id: int,
    payload: ChapterUpsert,
    db: Session = Depends(get_session),
):
    try:
        return content_store.create_chapter(
            db,
            project_id,
            chapter_index=payload.chapter_index,
            title=payload.title,
            content=payload.content,
            summary=payload.summary,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/context/assemble", response_model=AssembleResponse)
def assemble_context(
    payload: AssembleRequest,
    db: Session = Depends(get_session),
):
    try:
        strategy = _resolve_strategy(payload.strategy)
        context = assemble(
            db,
            payload.project_id,
            payload.chapter_id,
            payload.cursor_position,
            strategy,
            focus_characters=payload.focus_characters,
            location=payload.location,
            record_usage=payload.record_usage,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except DataUnavailableError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    return AssembleResponse(
        project_id=payload.project_id,
        chapter_id=payload.chapter_id,
        cursor_position=payload.cursor_position,
        core_context=context.core_context,
        character_context=context.character_context,
        plot_context=context.plot_context,
        world_context=context.world_context,
        historical_context=context.historical_context,
        section_tokens=context.section_tokens,
        total_tokens=context.total_tokens,
        pre_compression_tokens=context.pre_compression_tokens,
        compression_ratio=context.compression_ratio,
        context_hash=context.context_hash,
        budget_exceeded=context.budget_exceeded,
        protected_tokens=context.protected_tokens,
        included_unit_ids=list(context.included_unit_ids),
        dropped_unit_ids=list(context.dropped_unit_ids),
        created_at=context.created_at,
    )


@router.post("/context/checks", response_model=CheckResponse)
def check_generated_text(
    payload: CheckRequest,
    db: Session = Depends(get_session),
):
    try:
        check = record_check(
            db,
            payload.project_id,
            payload.generated_text,
            payload.check_type,
            chapter_id=payload.chapter_id,
        )
    except DataUnavailableError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return CheckResponse(
        record_id=check.record_id,
        check_type=check.check_type,
        overall_score=check.overall_score,
        issues=[ConsistencyIssueRead(**issue.to_dict()) for issue in check.issues],
        suggestions=list(check.suggestions),
    )


@router.get("/projects/{project_id}/checks", response_model=list[CheckRecordRead])
def list_checks(
    project_id: int,
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_session),
):
    return content_store.list_check_records(db, project_id, limit=limit)
