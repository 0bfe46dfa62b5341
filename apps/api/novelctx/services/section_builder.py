import logging
import re
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from novelctx.services.relevance_scorer import SceneContext, ScoredUnit, UnitSnapshot
from novelctx.services.strategy import SECTION_NAMES, CompressionStrategy
from novelctx.services.text_sanitizer import sanitize

_LOGGER = logging.getLogger(__name__)

SECTION_BY_KIND = {
    "dialogue_snippet": "core",
    "character": "character",
    "plot_point": "plot",
    "world_setting": "world",
    "historical_event": "historical",
}

SECTION_HEADERS = {
    "core": "【當前場景】",
    "character": "【角色狀態】",
    "plot": "【情節要點】",
    "world": "【世界設定】",
    "historical": "【前情回顧】",
}

_IMPORTANT_THRESHOLD = 7
_BOUNDARY_LOOKBEHIND = 8
# Ratio-driven cuts keep at least this much of the scene; only the hard budget goes lower.
MIN_SCENE_TAIL_CHARS = 80
_SENTENCE_BOUNDARY_RE = re.compile(r"[。！？!?…]+[」』\"')）]*|\.(?=\s)|\n+")


@dataclass(frozen=True)
class SectionEntry:
    text: str
    final_weight: float = 0.0
    unit_id: int | None = None
    kind: str = ""
    protected: bool = False
    pinned: bool = False
    owner: str | None = None
    owner_mentions: int = 0
    order: int = 0


@dataclass(frozen=True)
class ContextSection:
    name: str
    header: str
    entries: tuple[SectionEntry, ...] = ()
    excluded_unit_ids: tuple[int, ...] = field(default_factory=tuple)

    def render(self) -> str:
        return render_section(self.header, self.entries)


def render_section(header: str, entries: Sequence[SectionEntry]) -> str:
    lines = [entry.text for entry in entries if entry.text]
    if not lines:
        return ""
    return "\n".join([header, *lines])


def front_truncate(text: str, max_chars: int) -> str:
    """Keep at most ``max_chars`` trailing characters, opening on a sentence start.

    Falls back to a hard cut when the kept tail holds no sentence boundary.
    """
    value = text or ""
    if max_chars <= 0:
        return ""
    if len(value) <= max_chars:
        return value
    start = len(value) - max_chars
    for match in _SENTENCE_BOUNDARY_RE.finditer(value, max(start - _BOUNDARY_LOOKBEHIND, 0)):
        if match.end() < start:
            continue
        tail = value[match.end():].lstrip()
        if tail:
            return tail
        break
    return value[start:].lstrip()


def _unit_text(value: str) -> str:
    return sanitize(str(value or "")).strip()


def _render_character(unit: UnitSnapshot, scene: SceneContext) -> str:
    name = _unit_text(unit.title)
    marker = "（重點角色）" if unit.title in scene.focus_characters else ""
    body = _unit_text(unit.body)
    return f"- {name}{marker}：{body}" if body else f"- {name}{marker}"


def _render_plot(unit: UnitSnapshot, plot_lookup: Mapping[int, UnitSnapshot]) -> str:
    title = _unit_text(unit.title)
    status = _unit_text(unit.status) or "進行中"
    prefix = "[重要]" if _safe_int(unit.importance) >= _IMPORTANT_THRESHOLD else ""
    line = f"- {prefix}{title}（{status}）"
    body = _unit_text(unit.body)
    if body:
        line += f"：{body}"
    if str(unit.plot_type or "").lower() == "foreshadowing" and str(unit.status or "").lower() != "resolved":
        line += " [未回收伏筆]"
    if unit.foreshadowing_target_id is not None:
        target = plot_lookup.get(unit.foreshadowing_target_id)
        if target is None:
            _LOGGER.info(
                "dangling_plot_reference unit_id=%s target_id=%s field=foreshadowing",
                unit.id,
                unit.foreshadowing_target_id,
            )
            line += " [指向的情節已刪除]"
        else:
            line += f" [指向：{_unit_text(target.title)}]"
    if unit.resolution_target_id is not None:
        target = plot_lookup.get(unit.resolution_target_id)
        if target is None:
            _LOGGER.info(
                "dangling_plot_reference unit_id=%s target_id=%s field=resolution",
                unit.id,
                unit.resolution_target_id,
            )
            line += " [回收的伏筆已刪除]"
        else:
            line += f" [回收：{_unit_text(target.title)}]"
    return line


def _render_world(unit: UnitSnapshot) -> str:
    title = _unit_text(unit.title)
    category = _unit_text(unit.category)
    label = f"{title}（{category}）" if category else title
    body = _unit_text(unit.body)
    return f"- {label}：{body}" if body else f"- {label}"


def _render_dialogue(unit: UnitSnapshot) -> str:
    speaker = _unit_text(unit.title)
    body = _unit_text(unit.body)
    return f"{speaker}：{body}" if speaker else body


def _render_historical(unit: UnitSnapshot) -> str:
    title = _unit_text(unit.title)
    body = _unit_text(unit.body)
    if not title:
        return f"- {body}"
    return f"- {title}：{body}" if body else f"- {title}"


def _safe_int(value: object) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except Exception:
        return 0


def render_unit(
    unit: UnitSnapshot,
    scene: SceneContext,
    plot_lookup: Mapping[int, UnitSnapshot] | None = None,
) -> str:
    if unit.kind == "character":
        return _render_character(unit, scene)
    if unit.kind == "plot_point":
        return _render_plot(unit, plot_lookup or {})
    if unit.kind == "world_setting":
        return _render_world(unit)
    if unit.kind == "dialogue_snippet":
        return _render_dialogue(unit)
    return _render_historical(unit)


def build_sections(
    candidates: Sequence[ScoredUnit],
    scene: SceneContext,
    strategy: CompressionStrategy,
    *,
    scene_text: str = "",
    chapter_title: str = "",
    plot_lookup: Mapping[int, UnitSnapshot] | None = None,
) -> dict[str, ContextSection]:
    """Group ranked candidates into the five named sections.

    Each section admits candidates in descending weight until its soft
    character cap is reached. Protected units bypass the cap. The core
    section opens with the chapter title line, and the current scene is a
    pinned core entry rendered after any dialogue. The scene always keeps
    at least its last sentence here, even when the core cap is 0.
    """
    caps = strategy.section_char_caps()
    lookup = dict(plot_lookup or {})
    grouped: dict[str, list[ScoredUnit]] = {name: [] for name in SECTION_NAMES}
    for candidate in candidates:
        section_name = SECTION_BY_KIND.get(candidate.unit.kind)
        if section_name is None:
            continue
        grouped[section_name].append(candidate)

    sections: dict[str, ContextSection] = {}
    for name in SECTION_NAMES:
        ordered = sorted(grouped[name], key=lambda item: -item.weight.final_weight)
        entries: list[SectionEntry] = []
        excluded: list[int] = []
        used_chars = 0
        for position, candidate in enumerate(ordered):
            unit = candidate.unit
            protected = strategy.is_protected(unit.kind, plot_type=unit.plot_type, status=unit.status)
            if not protected and used_chars >= caps[name]:
                if unit.id is not None:
                    excluded.append(unit.id)
                continue
            text = render_unit(unit, scene, lookup)
            if not text.strip():
                continue
            owner = unit.title if unit.kind == "character" else None
            entries.append(
                SectionEntry(
                    text=text,
                    final_weight=candidate.weight.final_weight,
                    unit_id=unit.id,
                    kind=unit.kind,
                    protected=protected,
                    owner=owner,
                    owner_mentions=int(scene.mention_counts.get(owner, 0)) if owner else 0,
                    order=position,
                )
            )
            used_chars += len(text) + 1

        if name == "core":
            title = _unit_text(chapter_title)
            if title:
                entries.insert(
                    0,
                    SectionEntry(
                        text=f"章節：{title}",
                        final_weight=1.0,
                        kind="chapter_title",
                        pinned=True,
                        order=-1,
                    ),
                )
            excerpt = front_truncate(sanitize(scene_text), max(caps["core"], MIN_SCENE_TAIL_CHARS))
            if excerpt.strip():
                entries.append(
                    SectionEntry(
                        text=excerpt,
                        final_weight=1.0,
                        kind="scene",
                        pinned=True,
                        order=len(entries),
                    )
                )

        sections[name] = ContextSection(
            name=name,
            header=SECTION_HEADERS[name],
            entries=tuple(entries),
            excluded_unit_ids=tuple(excluded),
        )
    return sections
