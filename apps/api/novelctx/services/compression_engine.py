import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Mapping

from novelctx.services.context_hash import compute_context_hash
from novelctx.services.section_builder import (
    MIN_SCENE_TAIL_CHARS,
    SECTION_HEADERS,
    ContextSection,
    SectionEntry,
    front_truncate,
    render_section,
)
from novelctx.services.strategy import SECTION_NAMES, CompressionStrategy, ConfigurationError
from novelctx.services.token_estimator import TokenEstimator, estimate_tokens

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "CompressionStrategy",
    "ConfigurationError",
    "IntelligentContext",
    "compress",
]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IntelligentContext:
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
    budget_exceeded: bool = False
    protected_tokens: int = 0
    included_unit_ids: tuple[int, ...] = ()
    dropped_unit_ids: tuple[int, ...] = ()
    project_id: int | None = None
    chapter_id: int | None = None
    cursor_position: int | None = None
    created_at: datetime = field(default_factory=_utc_now)

    def sections(self) -> dict[str, str]:
        return {
            "core": self.core_context,
            "character": self.character_context,
            "plot": self.plot_context,
            "world": self.world_context,
            "historical": self.historical_context,
        }

    def full_text(self, separator: str = "\n\n") -> str:
        return separator.join(text for text in self.sections().values() if text)


def _evictable(entry: SectionEntry) -> bool:
    return not entry.protected and not entry.pinned


def _eviction_key(entry: SectionEntry, min_mentions: int) -> tuple[int, float, int]:
    # Characters seen fewer than min_mentions times in the scene go first.
    low_mention = entry.owner is not None and entry.owner_mentions < min_mentions
    return (0 if low_mention else 1, entry.final_weight, -entry.order)


class _Workspace:
    def __init__(self, sections: Mapping[str, ContextSection], estimator: TokenEstimator) -> None:
        self.estimator = estimator
        self.headers: dict[str, str] = {}
        self.entries: dict[str, list[SectionEntry]] = {}
        self.excluded: list[int] = []
        for name in SECTION_NAMES:
            section = sections.get(name)
            self.headers[name] = section.header if section is not None else SECTION_HEADERS[name]
            self.entries[name] = list(section.entries) if section is not None else []
            if section is not None:
                self.excluded.extend(section.excluded_unit_ids)
        self.evicted: list[int] = []

    def render(self, name: str) -> str:
        return render_section(self.headers[name], self.entries[name])

    def cost(self, name: str) -> int:
        return int(self.estimator(self.render(name)))

    def total(self) -> int:
        return sum(self.cost(name) for name in SECTION_NAMES)

    def evict_until(self, names: tuple[str, ...], fits: Callable[[], bool], min_mentions: int) -> None:
        candidates = [
            (name, entry)
            for name in names
            for entry in self.entries[name]
            if _evictable(entry)
        ]
        candidates.sort(
            key=lambda pair: (_eviction_key(pair[1], min_mentions), -SECTION_NAMES.index(pair[0]))
        )
        for name, entry in candidates:
            if fits():
                return
            self.entries[name] = [item for item in self.entries[name] if item is not entry]
            if entry.unit_id is not None:
                self.evicted.append(entry.unit_id)

    def truncate_scene(self, fits: Callable[[], bool], floor_chars: int = 0) -> None:
        entries = self.entries["core"]
        index = next((idx for idx, entry in enumerate(entries) if entry.kind == "scene"), None)
        if index is None or fits():
            return
        original = entries[index]
        text = original.text
        floor = front_truncate(text, floor_chars)

        def _apply(candidate: str) -> None:
            entries[index] = SectionEntry(
                text=candidate,
                final_weight=original.final_weight,
                unit_id=original.unit_id,
                kind=original.kind,
                protected=original.protected,
                pinned=True,
                owner=original.owner,
                owner_mentions=original.owner_mentions,
                order=original.order,
            )

        best: str | None = None
        low, high = len(floor), len(text)
        while low <= high:
            middle = (low + high) // 2
            candidate = front_truncate(text, middle)
            _apply(candidate)
            if fits():
                if best is None or len(candidate) > len(best):
                    best = candidate
                low = middle + 1
            else:
                high = middle - 1
        if best is None or len(best) < len(floor):
            best = floor
        _apply(best)

    def release_pinned(self, fits: Callable[[], bool]) -> None:
        for name in SECTION_NAMES:
            for entry in list(self.entries[name]):
                if fits():
                    return
                if entry.pinned and not entry.protected:
                    self.entries[name] = [item for item in self.entries[name] if item is not entry]

    def protected_tokens(self) -> int:
        texts = [
            entry.text
            for name in SECTION_NAMES
            for entry in self.entries[name]
            if entry.protected
        ]
        return int(self.estimator("\n".join(texts))) if texts else 0


def compress(
    sections: Mapping[str, ContextSection],
    strategy: CompressionStrategy,
    *,
    estimator: TokenEstimator = estimate_tokens,
    project_id: int | None = None,
    chapter_id: int | None = None,
    cursor_position: int | None = None,
    created_at: datetime | None = None,
) -> IntelligentContext:
    """Fit built sections into ``strategy.max_tokens``.

    A context already within budget is returned unchanged. Otherwise each
    section is first trimmed toward its ratio target by dropping its lowest
    weighted unprotected units and shortening the scene excerpt; if the total
    still exceeds the budget, the remaining unprotected units are dropped
    globally and the scene is shortened as far as the budget requires, down
    to nothing, before the chapter title line is let go. Protected units are never dropped or shortened, so an
    over-budget remainder is reported through ``budget_exceeded`` instead.
    """
    strategy.validate()
    workspace = _Workspace(sections, estimator)
    pre_total = workspace.total()
    max_tokens = strategy.max_tokens
    min_mentions = int(strategy.min_character_mentions)

    if pre_total > max_tokens:
        targets = strategy.section_targets()
        for name in SECTION_NAMES:

            def section_fits(name: str = name, target: int = targets[name]) -> bool:
                return workspace.cost(name) <= target

            workspace.evict_until((name,), section_fits, min_mentions)
            if name == "core":
                workspace.truncate_scene(section_fits, MIN_SCENE_TAIL_CHARS)

        def budget_fits() -> bool:
            return workspace.total() <= max_tokens

        if not budget_fits():
            workspace.evict_until(SECTION_NAMES, budget_fits, min_mentions)
            workspace.truncate_scene(budget_fits)
            workspace.release_pinned(budget_fits)

    rendered = {name: workspace.render(name) for name in SECTION_NAMES}
    section_tokens = {name: int(estimator(rendered[name])) for name in SECTION_NAMES}
    total = sum(section_tokens.values())
    budget_exceeded = total > max_tokens
    protected_tokens = workspace.protected_tokens()
    ratio = float(total) / float(pre_total) if pre_total > 0 else 1.0

    included = tuple(
        entry.unit_id
        for name in SECTION_NAMES
        for entry in workspace.entries[name]
        if entry.unit_id is not None
    )
    dropped = tuple(dict.fromkeys([*workspace.excluded, *workspace.evicted]))

    if budget_exceeded:
        _LOGGER.warning(
            "context_budget_exceeded project_id=%s chapter_id=%s total_tokens=%s max_tokens=%s protected_tokens=%s",
            project_id,
            chapter_id,
            total,
            max_tokens,
            protected_tokens,
        )
    _LOGGER.info(
        "context_compressed project_id=%s chapter_id=%s pre_tokens=%s post_tokens=%s ratio=%.3f dropped=%s",
        project_id,
        chapter_id,
        pre_total,
        total,
        ratio,
        len(dropped),
    )
    return IntelligentContext(
        core_context=rendered["core"],
        character_context=rendered["character"],
        plot_context=rendered["plot"],
        world_context=rendered["world"],
        historical_context=rendered["historical"],
        section_tokens=section_tokens,
        total_tokens=total,
        pre_compression_tokens=pre_total,
        compression_ratio=ratio,
        context_hash=compute_context_hash(rendered),
        budget_exceeded=budget_exceeded,
        protected_tokens=protected_tokens,
        included_unit_ids=included,
        dropped_unit_ids=dropped,
        project_id=project_id,
        chapter_id=chapter_id,
        cursor_position=cursor_position,
        created_at=created_at or _utc_now(),
    )
