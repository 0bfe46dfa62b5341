import re
from dataclasses import dataclass

# 常见简体字（繁体目标文本中出现即视为混入）
_SIMPLIFIED_CHARS = frozenset(
    "国际时会这说对进发现经过与从来学问题样关系间实应该还够开结处办业务号码电话联络网页"
    "权声条协议规则员户级类产价费账单记录历变删创编辑显隐闭门们个为么没见觉长书车东"
)
_ENGLISH_RE = re.compile(r"[A-Za-z]+")
_FORBIDDEN_PATTERNS = (
    re.compile(r"(?i)\b(magic|dragon|sword|hero|castle|kingdom|princess|prince|knight|wizard|spell|potion)\b"),
    re.compile(r"(?i)\b(okay|ok|yes|no|hello|hi|bye|sorry|please|thank|you)\b"),
    re.compile(r"[A-Z]{2,}"),
    re.compile(r"\b[a-z]+[A-Z][a-z]*\b"),
)
_SEVERITY_PENALTY = {"critical": 0.2, "high": 0.1, "medium": 0.05, "low": 0.02}
PURE_THRESHOLD = 0.95


@dataclass(frozen=True)
class PurityIssue:
    issue_type: str
    content: str
    severity: str


@dataclass(frozen=True)
class PurityAnalysis:
    issues: tuple[PurityIssue, ...]
    purity_score: float
    is_pure: bool


def _purity_score(text: str, issues: list[PurityIssue]) -> float:
    if not text:
        return 1.0
    penalty = sum(_SEVERITY_PENALTY.get(issue.severity, 0.05) * len(issue.content) for issue in issues)
    return max(1.0 - penalty / float(len(text)), 0.0)


def analyze_purity(text: str, *, target_script: str = "traditional") -> PurityAnalysis:
    """Score how free ``text`` is of English and, for traditional targets, simplified characters."""
    value = text or ""
    issues: list[PurityIssue] = []
    for match in _ENGLISH_RE.finditer(value):
        issues.append(PurityIssue(issue_type="english_words", content=match.group(0), severity="high"))
    if str(target_script or "").strip().lower() == "traditional":
        for ch in value:
            if ch in _SIMPLIFIED_CHARS:
                issues.append(PurityIssue(issue_type="simplified_chinese", content=ch, severity="medium"))
    for pattern in _FORBIDDEN_PATTERNS:
        for match in pattern.finditer(value):
            issues.append(PurityIssue(issue_type="forbidden_pattern", content=match.group(0), severity="high"))

    score = _purity_score(value, issues)
    return PurityAnalysis(issues=tuple(issues), purity_score=score, is_pure=score >= PURE_THRESHOLD)
