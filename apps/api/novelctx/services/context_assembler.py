import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, replace
from datetime import datetime
from typing import Any, Iterable

from sqlmodel import Session

from novelctx.core.config import settings
from novelctx.models.content import utc_now
from novelctx.services import content_store
from novelctx.services.compression_engine import IntelligentContext, compress
from novelctx.services.consistency_checks import ConsistencyCheck, run_check
from novelctx.services.relevance_scorer import (
    SceneContext,
    ScoredUnit,
    ScoringWeights,
    UnitSnapshot,
    build_scene_context,
    rank_units,
)
from novelctx.services.section_builder import SECTION_BY_KIND, build_sections
from novelctx.services.strategy import SECTION_NAMES, CompressionStrategy
from novelctx.services.telemetry import AssemblyTracePayload, emit_assembly_trace
from novelctx.services.text_sanitizer import sanitize
from novelctx.services.token_estimator import TokenEstimator, estimate_tokens

_LOGGER = logging.getLogger(__name__)
_SCORING_EXECUTOR = ThreadPoolExecutor(
    max_workers=max(int(settings.runtime.context_scoring_workers), 1),
    thread_name_prefix="context-scoring",
)
_SUMMARY_CHAPTERS_LIMIT = 3
_SUMMARY_IMPORTANCE = 6
_IMPORTANCE_NUDGES = {
    "character_ooc": -1,
    "world_conflict": -1,
    "plot_hole": -1,
    "foreshadow_pending": 1,
}
_MAX_NUDGE_PER_CHECK = 2


def default_strategy() -> CompressionStrategy:
    policy = settings.policy
    return CompressionStrategy(
        max_tokens=int(policy.context_max_tokens),
        core_ratio=float(policy.context_core_ratio),
        character_ratio=float(policy.context_character_ratio),
        plot_ratio=float(policy.context_plot_ratio),
        world_ratio=float(policy.context_world_ratio),
        historical_ratio=float(policy.context_historical_ratio),
        preserve_dialogue=bool(policy.context_preserve_dialogue),
        preserve_foreshadowing=bool(policy.context_preserve_foreshadowing),
        min_character_mentions=int(policy.context_min_character_mentions),
    )


def default_weights() -> ScoringWeights:
    policy = settings.policy
    return ScoringWeights(
        relevance=float(policy.score_weight_relevance),
        importance=float(policy.score_weight_importance),
        recency=float(policy.score_weight_recency),
        character_involvement=float(policy.score_weight_character),
        recency_half_life_days=float(policy.score_recency_half_life_days),
        recency_neutral=float(policy.score_recency_neutral),
    )


def _summary_units(chapters: Iterable[Any], project_id: int, start_order: int) -> list[UnitSnapshot]:
    units: list[UnitSnapshot] = []
    for offset, chapter in enumerate(chapters):
        units.append(
            UnitSnapshot(
                id=None,
                project_id=project_id,
                kind="historical_event",
                title=str(chapter.title or ""),
                body=str(chapter.summary or ""),
                importance=_SUMMARY_IMPORTANCE,
                chapter_id=chapter.id,
                order=start_order + offset,
            )
        )
    return units


def _score_candidates(
    units: list[UnitSnapshot],
    scene: SceneContext,
    weights: ScoringWeights,
) -> list[ScoredUnit]:
    grouped: dict[str, list[UnitSnapshot]] = {name: [] for name in SECTION_NAMES}
    for unit in units:
        section_name = SECTION_BY_KIND.get(unit.kind)
        if section_name is not None:
            grouped[section_name].append(unit)
    groups = [(name, grouped[name]) for name in SECTION_NAMES if grouped[name]]

    if not settings.runtime.context_parallel_scoring_enabled or len(groups) <= 1:
        return [item for _, group in groups for item in rank_units(group, scene, weights)]

    futures = [(name, _SCORING_EXECUTOR.submit(rank_units, group, scene, weights)) for name, group in groups]
    candidates: list[ScoredUnit] = []
    for _, future in futures:
        candidates.extend(future.result())
    return candidates


def assemble(
    db: Session,
    project_id: int,
    chapter_id: int,
    cursor_position: int,
    strategy: CompressionStrategy | None = None,
    *,
    focus_characters: Iterable[str] = (),
    location: str | None = None,
    record_usage: bool = True,
    now: datetime | None = None,
    estimator: TokenEstimator = estimate_tokens,
) -> IntelligentContext:
    """Assemble a budgeted continuation context for ``chapter_id`` at ``cursor_position``.

    A cursor past the end of the chapter uses the whole chapter text. When
    ``record_usage`` is set, the units that made it into the final context
    have their usage counters bumped after compression.
    """
    started_at = time.perf_counter()
    active_strategy = strategy or default_strategy()
    active_strategy.validate()
    if cursor_position < 0:
        raise ValueError("cursor_position must be >= 0")
    current_time = now or utc_now()

    chapter = content_store.get_chapter(db, project_id, chapter_id)
    chapter_text = str(chapter.content or "")
    scene_text = chapter_text[: min(int(cursor_position), len(chapter_text))]
    rows = content_store.list_content_units(db, project_id)
    summaries = content_store.list_previous_chapter_summaries(
        db,
        project_id,
        int(chapter.chapter_index),
        limit=_SUMMARY_CHAPTERS_LIMIT,
    )

    snapshots = [content_store.to_unit_snapshot(row, order=idx) for idx, row in enumerate(rows)]
    units = snapshots + _summary_units(summaries, project_id, len(snapshots))
    scene = build_scene_context(
        scene_text=sanitize(scene_text),
        character_units=[unit for unit in snapshots if unit.kind == "character"],
        now=current_time,
        focus_characters=focus_characters,
        location=location,
        window_chars=int(settings.policy.scene_window_chars),
    )
    candidates = _score_candidates(units, scene, default_weights())
    plot_lookup = {unit.id: unit for unit in snapshots if unit.kind == "plot_point" and unit.id is not None}
    sections = build_sections(
        candidates,
        scene,
        active_strategy,
        scene_text=scene_text,
        chapter_title=str(chapter.title or ""),
        plot_lookup=plot_lookup,
    )
    context = compress(
        sections,
        active_strategy,
        estimator=estimator,
        project_id=project_id,
        chapter_id=chapter_id,
        cursor_position=cursor_position,
        created_at=current_time,
    )

    if record_usage and context.included_unit_ids:
        content_store.record_usage(db, project_id, context.included_unit_ids, now=current_time)

    elapsed_ms = int((time.perf_counter() - started_at) * 1000)
    _LOGGER.info(
        "context_assembled project_id=%s chapter_id=%s cursor=%s elapsed_ms=%s units=%s included=%s total_tokens=%s budget_exceeded=%s",
        project_id,
        chapter_id,
        cursor_position,
        elapsed_ms,
        len(units),
        len(context.included_unit_ids),
        context.total_tokens,
        context.budget_exceeded,
    )
    emit_assembly_trace(
        AssemblyTracePayload(
            project_id=project_id,
            chapter_id=chapter_id,
            cursor_position=cursor_position,
            context_hash=context.context_hash,
            strategy=asdict(active_strategy),
            section_tokens=dict(context.section_tokens),
            total_tokens=context.total_tokens,
            pre_compression_tokens=context.pre_compression_tokens,
            compression_ratio=context.compression_ratio,
            budget_exceeded=context.budget_exceeded,
            included_count=len(context.included_unit_ids),
            dropped_count=len(context.dropped_unit_ids),
            elapsed_ms=float(elapsed_ms),
        )
    )
    return context


def _importance_deltas(check: ConsistencyCheck) -> dict[int, int]:
    deltas: dict[int, int] = {}
    for issue in check.issues:
        base = _IMPORTANCE_NUDGES.get(issue.issue_type)
        if base is None or issue.unit_id is None:
            continue
        scale = 2 if issue.severity in {"high", "critical"} else 1
        deltas[issue.unit_id] = deltas.get(issue.unit_id, 0) + base * scale
    return {
        unit_id: max(-_MAX_NUDGE_PER_CHECK, min(_MAX_NUDGE_PER_CHECK, delta))
        for unit_id, delta in deltas.items()
        if delta
    }


def record_check(
    db: Session,
    project_id: int,
    generated_text: str,
    check_type: str,
    *,
    chapter_id: int | None = None,
) -> ConsistencyCheck:
    """Run a post-generation check, persist it and feed issues back into unit importance."""
    if chapter_id is not None:
        content_store.get_chapter(db, project_id, chapter_id)
    rows = content_store.list_content_units(db, project_id)
    check = run_check(generated_text, check_type, rows)
    record = content_store.save_check_record(
        db,
        project_id=project_id,
        chapter_id=chapter_id,
        check_type=check.check_type,
        content=generated_text,
        overall_score=check.overall_score,
        issues=[issue.to_dict() for issue in check.issues],
        suggestions=list(check.suggestions),
    )

    adjusted = 0
    project_unit_ids = {row.id for row in rows}
    if settings.runtime.consistency_feedback_enabled:
        for unit_id, delta in _importance_deltas(check).items():
            if unit_id not in project_unit_ids:
                continue
            if content_store.adjust_unit_importance(db, unit_id, delta) is not None:
                adjusted += 1
    _LOGGER.info(
        "consistency_checked project_id=%s check_type=%s score=%.3f issues=%s adjusted_units=%s",
        project_id,
        check.check_type,
        check.overall_score,
        len(check.issues),
        adjusted,
    )
    return replace(check, record_id=record.id)
