import json
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Sequence

import httpx

from novelctx.core.config import settings
from novelctx.services.language_purity import analyze_purity

_LOGGER = logging.getLogger(__name__)

CHECK_TYPES: tuple[str, ...] = (
    "character_consistency",
    "plot_consistency",
    "world_consistency",
    "language_purity",
    "full",
)
_RULE_CHECK_TYPES = CHECK_TYPES[:-1]
_SEVERITIES = ("low", "medium", "high", "critical")
_SEVERITY_FACTOR = {"low": 0.95, "medium": 0.85, "high": 0.7, "critical": 0.5}
_DECEASED_STATUSES = {"deceased", "dead", "死亡", "已故", "阵亡"}
_SPEAKER_WINDOW_CHARS = 24
_QUOTE_RE = re.compile(r"「([^」]*)」|“([^”]*)”")
_SENTENCE_SPLIT_RE = re.compile(r"[。！？!?\n]+")
_TIME_OF_DAY_GROUPS = {
    "morning": ("清晨", "早晨", "早上", "上午", "黎明", "拂晓"),
    "noon": ("正午", "中午", "午后"),
    "night": ("深夜", "午夜", "半夜", "夜晚", "晚上", "入夜"),
}
_ISSUE_SUGGESTIONS = {
    "character_ooc": "调整对白用词，使其符合角色既定的说话习惯。",
    "plot_hole": "核对角色与情节状态，必要时补充过渡或修正设定。",
    "timeline_conflict": "统一同一句中的时间描述。",
    "world_conflict": "修改与世界观设定冲突的描写。",
    "foreshadow_pending": "后续章节安排该伏笔的回收。",
    "language_purity": "替换混入的英文或简体字，保持文本语言一致。",
    "continuity_risk": "复查上下文衔接。",
}


@dataclass(frozen=True)
class ConsistencyIssue:
    issue_type: str
    severity: str
    description: str
    context: str = ""
    suggestion: str | None = None
    unit_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ConsistencyCheck:
    check_type: str
    overall_score: float
    issues: tuple[ConsistencyIssue, ...] = ()
    suggestions: tuple[str, ...] = field(default_factory=tuple)
    record_id: int | None = None


def _normalize_severity(value: str) -> str:
    token = str(value or "").strip().lower()
    return token if token in _SEVERITIES else "medium"


def _normalize_issue(item: dict[str, Any]) -> ConsistencyIssue | None:
    issue_type = str(item.get("issue_type") or item.get("type") or "").strip().lower()
    if issue_type not in _ISSUE_SUGGESTIONS:
        issue_type = "continuity_risk"
    description = str(item.get("description") or item.get("detail") or "").strip()
    if not description:
        return None
    unit_id = item.get("unit_id")
    suggestion = str(item.get("suggestion") or "").strip()
    return ConsistencyIssue(
        issue_type=issue_type,
        severity=_normalize_severity(str(item.get("severity") or "")),
        description=description[:500],
        context=str(item.get("context") or "")[:260],
        suggestion=suggestion[:260] or _ISSUE_SUGGESTIONS[issue_type],
        unit_id=unit_id if isinstance(unit_id, int) and unit_id > 0 else None,
    )


def _extract_json_object(raw: str) -> dict[str, Any] | None:
    text = (raw or "").strip()
    if not text:
        return None
    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else None
    except Exception:
        pass

    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        parsed = json.loads(text[start : end + 1])
    except Exception:
        return None
    return parsed if isinstance(parsed, dict) else None


def _attributes(unit: Any) -> dict[str, Any]:
    value = getattr(unit, "attributes", None)
    return value if isinstance(value, dict) else {}


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [item for item in (str(v or "").strip() for v in value) if item]


def _unit_names(unit: Any) -> list[str]:
    names = [str(getattr(unit, "title", "") or "").strip()]
    names.extend(_string_list(_attributes(unit).get("aliases")))
    names.extend(_string_list(getattr(unit, "aliases", None)))
    return list(dict.fromkeys(name for name in names if name))


def _of_kind(units: Iterable[Any], kind: str) -> list[Any]:
    return [unit for unit in units if str(getattr(unit, "kind", "") or "") == kind]


def _find_speaker(text: str, quote_start: int, characters: Sequence[Any]) -> Any | None:
    window = text[max(quote_start - _SPEAKER_WINDOW_CHARS, 0) : quote_start]
    best: Any | None = None
    best_pos = -1
    for unit in characters:
        for name in _unit_names(unit):
            pos = window.rfind(name)
            if pos > best_pos:
                best, best_pos = unit, pos
    return best


def _check_characters(text: str, units: Sequence[Any]) -> list[ConsistencyIssue]:
    characters = _of_kind(units, "character")
    if not characters:
        return []
    issues: list[ConsistencyIssue] = []
    for match in _QUOTE_RE.finditer(text):
        speech = match.group(1) if match.group(1) is not None else match.group(2) or ""
        speaker = _find_speaker(text, match.start(), characters)
        if speaker is None:
            continue
        name = str(getattr(speaker, "title", "") or "")
        attributes = _attributes(speaker)
        for taboo in _string_list(attributes.get("taboo_words")):
            if taboo in speech:
                issues.append(
                    ConsistencyIssue(
                        issue_type="character_ooc",
                        severity="high",
                        description=f"{name}的对白使用了禁用词“{taboo}”",
                        context=match.group(0)[:260],
                        suggestion=_ISSUE_SUGGESTIONS["character_ooc"],
                        unit_id=getattr(speaker, "id", None),
                    )
                )
        life_status = str(attributes.get("life_status") or "").strip().lower()
        if life_status in _DECEASED_STATUSES:
            issues.append(
                ConsistencyIssue(
                    issue_type="plot_hole",
                    severity="high",
                    description=f"已故角色{name}出现了对白",
                    context=match.group(0)[:260],
                    suggestion=_ISSUE_SUGGESTIONS["plot_hole"],
                    unit_id=getattr(speaker, "id", None),
                )
            )
    return issues


def _check_plot(text: str, units: Sequence[Any]) -> list[ConsistencyIssue]:
    issues: list[ConsistencyIssue] = []
    for sentence in _SENTENCE_SPLIT_RE.split(text):
        groups = [
            group
            for group, markers in _TIME_OF_DAY_GROUPS.items()
            if any(marker in sentence for marker in markers)
        ]
        if len(groups) >= 2:
            issues.append(
                ConsistencyIssue(
                    issue_type="timeline_conflict",
                    severity="low",
                    description="同一句中出现相互矛盾的时间描述",
                    context=sentence.strip()[:260],
                    suggestion=_ISSUE_SUGGESTIONS["timeline_conflict"],
                )
            )

    known_ids = {getattr(unit, "id", None) for unit in units}
    for plot in _of_kind(units, "plot_point"):
        if str(getattr(plot, "plot_type", "") or "").lower() != "foreshadowing":
            continue
        if str(getattr(plot, "status", "") or "").lower() == "resolved":
            continue
        title = str(getattr(plot, "title", "") or "").strip()
        target_id = getattr(plot, "foreshadowing_target_id", None)
        if target_id is not None and target_id not in known_ids:
            issues.append(
                ConsistencyIssue(
                    issue_type="plot_hole",
                    severity="low",
                    description=f"伏笔“{title}”指向的情节已不存在",
                    suggestion=_ISSUE_SUGGESTIONS["plot_hole"],
                    unit_id=getattr(plot, "id", None),
                )
            )
        if title and title in text:
            issues.append(
                ConsistencyIssue(
                    issue_type="foreshadow_pending",
                    severity="low",
                    description=f"伏笔“{title}”被再次提及但尚未回收",
                    suggestion=_ISSUE_SUGGESTIONS["foreshadow_pending"],
                    unit_id=getattr(plot, "id", None),
                )
            )
    return issues


def _check_world(text: str, units: Sequence[Any]) -> list[ConsistencyIssue]:
    issues: list[ConsistencyIssue] = []
    for setting_unit in _of_kind(units, "world_setting"):
        title = str(getattr(setting_unit, "title", "") or "").strip()
        for raw_pattern in _string_list(_attributes(setting_unit).get("forbidden_patterns")):
            try:
                pattern = re.compile(raw_pattern)
            except re.error as exc:
                _LOGGER.warning(
                    "world_rule_pattern_invalid unit_id=%s pattern=%s error=%s",
                    getattr(setting_unit, "id", None),
                    raw_pattern,
                    exc,
                )
                continue
            match = pattern.search(text)
            if match is None:
                continue
            issues.append(
                ConsistencyIssue(
                    issue_type="world_conflict",
                    severity="medium",
                    description=f"内容与世界设定“{title}”冲突",
                    context=match.group(0)[:260],
                    suggestion=_ISSUE_SUGGESTIONS["world_conflict"],
                    unit_id=getattr(setting_unit, "id", None),
                )
            )
    return issues


def _check_purity(text: str) -> tuple[float, list[ConsistencyIssue]]:
    analysis = analyze_purity(text, target_script=settings.runtime.purity_target_script)
    issues: list[ConsistencyIssue] = []
    seen: set[tuple[str, str]] = set()
    for item in analysis.issues:
        identity = (item.issue_type, item.content)
        if identity in seen:
            continue
        seen.add(identity)
        issues.append(
            ConsistencyIssue(
                issue_type="language_purity",
                severity=item.severity,
                description=f"{item.issue_type}: {item.content}",
                context=item.content,
                suggestion=_ISSUE_SUGGESTIONS["language_purity"],
            )
        )
    return analysis.purity_score, issues


def _call_consistency_judge_llm(
    *,
    text: str,
    check_type: str,
    units: Sequence[Any],
    max_items: int,
) -> list[ConsistencyIssue]:
    if not settings.runtime.consistency_judge_llm_enabled:
        return []
    model = str(settings.runtime.consistency_judge_llm_model or "").strip()
    base_url = str(settings.runtime.consistency_judge_llm_base_url or "").strip()
    api_key = str(settings.runtime.consistency_judge_llm_api_key or "").strip()
    if not (model and base_url and api_key):
        return []

    facts = [
        {
            "unit_id": getattr(unit, "id", None),
            "kind": getattr(unit, "kind", ""),
            "title": str(getattr(unit, "title", "") or "")[:60],
            "body": str(getattr(unit, "body", "") or "")[:180],
        }
        for unit in units[:12]
    ]
    endpoint = base_url.rstrip("/") + "/chat/completions"
    body = {
        "model": model,
        "messages": [
            {
                "role": "system",
                "content": (
                    "你是小说一致性审稿器。请对照设定找出生成文本中的矛盾。"
                    "仅输出 JSON: "
                    "{\"issues\":[{\"issue_type\":\"character_ooc|plot_hole|timeline_conflict|world_conflict\","
                    "\"severity\":\"high|medium|low\","
                    "\"description\":\"...\",\"context\":\"...\","
                    "\"suggestion\":\"...\",\"unit_id\":0}]}"
                ),
            },
            {
                "role": "user",
                "content": json.dumps(
                    {
                        "check_type": check_type,
                        "generated_text": text[:2000],
                        "facts": facts,
                        "max_items": max_items,
                    },
                    ensure_ascii=False,
                ),
            },
        ],
        "temperature": 0,
        "stream": False,
        "response_format": {"type": "json_object"},
    }
    headers = {"Authorization": f"Bearer {api_key}"}
    try:
        timeout = httpx.Timeout(float(settings.runtime.consistency_judge_llm_timeout_seconds))
        with httpx.Client(timeout=timeout) as client:
            response = client.post(endpoint, json=body, headers=headers)
            response.raise_for_status()
            payload = response.json()
    except Exception as exc:
        _LOGGER.warning("consistency_judge_failed check_type=%s error=%s", check_type, exc)
        return []

    content = str(payload.get("choices", [{}])[0].get("message", {}).get("content", "") or "")
    parsed = _extract_json_object(content)
    if not parsed:
        return []
    raw_issues = parsed.get("issues")
    if not isinstance(raw_issues, list):
        return []

    issues: list[ConsistencyIssue] = []
    for item in raw_issues:
        if not isinstance(item, dict):
            continue
        normalized = _normalize_issue(item)
        if normalized is None:
            continue
        issues.append(normalized)
        if len(issues) >= max_items:
            break
    return issues


def _issues_score(issues: Iterable[ConsistencyIssue]) -> float:
    score = 1.0
    for issue in issues:
        score *= _SEVERITY_FACTOR.get(issue.severity, 0.85)
    return score


def _run_rules(check_type: str, text: str, units: Sequence[Any]) -> tuple[float, list[ConsistencyIssue]]:
    rules = {
        "character_consistency": _check_characters,
        "plot_consistency": _check_plot,
        "world_consistency": _check_world,
    }
    if check_type == "language_purity":
        return _check_purity(text)
    try:
        issues = rules[check_type](text, units)
    except Exception as exc:
        _LOGGER.warning("consistency_rule_failed check_type=%s error=%s", check_type, exc)
        return 1.0, []
    return _issues_score(issues), issues


def _dedupe(issues: Iterable[ConsistencyIssue], limit: int) -> list[ConsistencyIssue]:
    merged: list[ConsistencyIssue] = []
    seen: set[tuple[Any, ...]] = set()
    for issue in issues:
        identity = (issue.issue_type, issue.unit_id, issue.description, issue.context)
        if identity in seen:
            continue
        seen.add(identity)
        merged.append(issue)
        if len(merged) >= limit:
            break
    return merged


def run_check(text: str, check_type: str, units: Sequence[Any] = ()) -> ConsistencyCheck:
    """Annotate generated text with rule-based (and optionally judged) issues.

    ``full`` averages the four individual scores. Results are advisory.
    """
    normalized_type = str(check_type or "").strip().lower()
    if normalized_type not in CHECK_TYPES:
        raise ValueError(f"unsupported check_type: {check_type}")
    value = str(text or "")
    max_items = max(int(settings.runtime.consistency_max_issues), 1)
    selected = _RULE_CHECK_TYPES if normalized_type == "full" else (normalized_type,)

    scores: list[float] = []
    issues: list[ConsistencyIssue] = []
    for item in selected:
        score, found = _run_rules(item, value, units)
        scores.append(score)
        issues.extend(found)

    judged = _call_consistency_judge_llm(text=value, check_type=normalized_type, units=list(units), max_items=max_items)
    overall = sum(scores) / len(scores) if scores else 1.0
    if judged:
        overall *= _issues_score(judged)
        issues.extend(judged)

    merged = _dedupe(issues, max_items)
    suggestions = tuple(dict.fromkeys(issue.suggestion for issue in merged if issue.suggestion))
    return ConsistencyCheck(
        check_type=normalized_type,
        overall_score=max(0.0, min(1.0, overall)),
        issues=tuple(merged),
        suggestions=suggestions,
    )
