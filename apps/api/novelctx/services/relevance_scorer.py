import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

_LOGGER = logging.getLogger(__name__)

_DEFAULT_IMPORTANCE = 5
_IMPORTANCE_MIN = 1
_IMPORTANCE_MAX = 10
_MENTION_RELEVANCE = 0.5
_TERM_OVERLAP_CAP = 8
_STOP_TERMS = {
    "我们",
    "你们",
    "他们",
    "这个",
    "那个",
    "然后",
    "以及",
    "还有",
    "一个",
    "没有",
    "什么",
    "the",
    "and",
    "that",
    "with",
}


@dataclass(frozen=True)
class UnitSnapshot:
    id: int | None
    project_id: int
    kind: str
    title: str
    body: str
    importance: Any = _DEFAULT_IMPORTANCE
    usage_count: int = 0
    last_used_at: datetime | None = None
    plot_type: str = ""
    status: str = ""
    category: str = ""
    related_characters: tuple[str, ...] = ()
    foreshadowing_target_id: int | None = None
    resolution_target_id: int | None = None
    chapter_id: int | None = None
    aliases: tuple[str, ...] = ()
    order: int = 0

    @property
    def names(self) -> tuple[str, ...]:
        values = [self.title, *self.aliases]
        return tuple(item for item in (str(v or "").strip() for v in values) if item)


@dataclass(frozen=True)
class SceneContext:
    now: datetime
    active_characters: tuple[str, ...] = ()
    focus_characters: tuple[str, ...] = ()
    mention_counts: dict[str, int] = field(default_factory=dict)
    terms: tuple[str, ...] = ()
    location: str | None = None


@dataclass(frozen=True)
class ScoringWeights:
    relevance: float = 0.25
    importance: float = 0.30
    recency: float = 0.20
    character_involvement: float = 0.25
    recency_half_life_days: float = 7.0
    recency_neutral: float = 0.5

    def normalized(self) -> tuple[float, float, float, float]:
        raw = [
            _clamp_non_negative(self.relevance),
            _clamp_non_negative(self.importance),
            _clamp_non_negative(self.recency),
            _clamp_non_negative(self.character_involvement),
        ]
        total = sum(raw)
        if total <= 0:
            defaults = ScoringWeights()
            raw = [defaults.relevance, defaults.importance, defaults.recency, defaults.character_involvement]
            total = sum(raw)
        return (raw[0] / total, raw[1] / total, raw[2] / total, raw[3] / total)


@dataclass(frozen=True)
class ContextWeight:
    content_type: str
    relevance_score: float
    importance_score: float
    recency_score: float
    character_involvement: float
    final_weight: float


@dataclass(frozen=True)
class ScoredUnit:
    unit: UnitSnapshot
    weight: ContextWeight


def _clamp_non_negative(value: Any) -> float:
    try:
        number = float(value)
    except Exception:
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return max(number, 0.0)


def clamp_unit_interval(value: Any) -> float:
    try:
        number = float(value)
    except Exception:
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return max(0.0, min(1.0, number))


def _as_utc(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return None


def elapsed_days(last_used_at: Any, now: datetime) -> int | None:
    last_used = _as_utc(last_used_at)
    current = _as_utc(now)
    if last_used is None or current is None:
        return None
    delta = current - last_used
    return max(int(delta.total_seconds() // 86400), 0)


def extract_terms(text: str, limit: int = 24) -> list[str]:
    raw_tokens = re.findall(r"[\u4e00-\u9fffA-Za-z0-9]{2,}", text or "")
    terms: list[str] = []
    for token in raw_tokens:
        lowered = token.lower()
        if lowered in _STOP_TERMS:
            continue
        if lowered not in terms:
            terms.append(lowered)
        # 连续中文补充双字词，无分词器时提升命中
        if re.fullmatch(r"[\u4e00-\u9fff]{4,}", token):
            for idx in range(0, len(token) - 1):
                gram = token[idx : idx + 2]
                if gram in _STOP_TERMS or gram in terms:
                    continue
                terms.append(gram)
        if len(terms) >= limit:
            break
    return terms[:limit]


def count_mentions(text: str, names: Iterable[str]) -> int:
    if not text:
        return 0
    return sum(text.count(name) for name in names if name)


def build_scene_context(
    *,
    scene_text: str,
    character_units: Iterable[UnitSnapshot],
    now: datetime,
    focus_characters: Iterable[str] = (),
    location: str | None = None,
    window_chars: int = 1600,
) -> SceneContext:
    window = (scene_text or "")[-max(int(window_chars), 1):]
    focus = tuple(dict.fromkeys(str(item).strip() for item in focus_characters if str(item or "").strip()))
    mention_counts: dict[str, int] = {}
    active: list[str] = []
    for unit in character_units:
        name = str(unit.title or "").strip()
        if not name:
            continue
        mentions = count_mentions(window, unit.names)
        mention_counts[name] = mention_counts.get(name, 0) + mentions
        if (mentions > 0 or name in focus) and name not in active:
            active.append(name)
    for name in focus:
        if name not in active:
            active.append(name)

    terms = extract_terms(window)
    location_text = str(location or "").strip() or None
    if location_text and location_text.lower() not in terms:
        terms.append(location_text.lower())
    return SceneContext(
        now=now,
        active_characters=tuple(active),
        focus_characters=focus,
        mention_counts=mention_counts,
        terms=tuple(terms),
        location=location_text,
    )


def referenced_characters(unit: UnitSnapshot, scene: SceneContext) -> list[str]:
    text = f"{unit.title}\n{unit.body}"
    related = {str(item).strip() for item in unit.related_characters}
    found: list[str] = []
    for name in scene.active_characters:
        if name in related or (name and name in text):
            found.append(name)
    return found


def _importance_score(rating: Any) -> float:
    try:
        value = int(rating)
    except Exception:
        return 0.0
    value = max(_IMPORTANCE_MIN, min(_IMPORTANCE_MAX, value))
    return (value - _IMPORTANCE_MIN) / float(_IMPORTANCE_MAX - _IMPORTANCE_MIN)


def _recency_score(unit: UnitSnapshot, scene: SceneContext, weights: ScoringWeights) -> float:
    neutral = clamp_unit_interval(weights.recency_neutral)
    if unit.last_used_at is None or int(unit.usage_count or 0) <= 0:
        return neutral
    days = elapsed_days(unit.last_used_at, scene.now)
    if days is None:
        return neutral
    half_life = max(float(weights.recency_half_life_days), 0.1)
    return clamp_unit_interval(math.exp(-math.log(2.0) * days / half_life))


def _relevance_score(unit: UnitSnapshot, scene: SceneContext, mentioned: list[str]) -> float:
    score = _MENTION_RELEVANCE if mentioned else 0.0
    if scene.terms:
        haystack = f"{unit.title}\n{unit.body}".lower()
        hits = sum(1 for term in scene.terms if term and term in haystack)
        overlap = min(hits / float(min(len(scene.terms), _TERM_OVERLAP_CAP)), 1.0)
        score += (1.0 - _MENTION_RELEVANCE) * overlap
    return clamp_unit_interval(score)


def score_unit(
    unit: UnitSnapshot,
    scene: SceneContext,
    weights: ScoringWeights | None = None,
) -> ContextWeight:
    active_weights = weights or ScoringWeights()
    importance = clamp_unit_interval(_importance_score(unit.importance))
    body = str(unit.body or "")
    if not body.strip():
        relevance = recency = involvement = 0.0
    else:
        try:
            mentioned = referenced_characters(unit, scene)
            relevance = _relevance_score(unit, scene, mentioned)
            recency = _recency_score(unit, scene, active_weights)
            involvement = (
                clamp_unit_interval(len(mentioned) / float(len(scene.active_characters)))
                if scene.active_characters
                else 0.0
            )
        except Exception as exc:
            _LOGGER.warning("unit_scoring_degraded unit_id=%s error=%s", unit.id, exc)
            relevance = recency = involvement = 0.0

    w_rel, w_imp, w_rec, w_inv = active_weights.normalized()
    final_weight = clamp_unit_interval(
        w_rel * relevance + w_imp * importance + w_rec * recency + w_inv * involvement
    )
    return ContextWeight(
        content_type=unit.kind,
        relevance_score=relevance,
        importance_score=importance,
        recency_score=recency,
        character_involvement=involvement,
        final_weight=final_weight,
    )


def rank_units(
    units: Iterable[UnitSnapshot],
    scene: SceneContext,
    weights: ScoringWeights | None = None,
) -> list[ScoredUnit]:
    scored = [ScoredUnit(unit=unit, weight=score_unit(unit, scene, weights)) for unit in units]
    # sorted() is stable: equal weights keep insertion order
    return sorted(scored, key=lambda item: -item.weight.final_weight)
