import os

from novelctx.core.settings import CoreSettings, PolicySettings, RuntimeSettings

def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except Exception:
        return default


def _parse_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except Exception:
        return default


def _stringify_env_default(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


PROFILE_ALIASES = {
    "dev": "local-dev",
    "local": "local-dev",
    "default": "local-dev",
    "quality": "quality-first",
    "quality_first": "quality-first",
}


STRATEGY_DEFAULTS = {
    "local-dev": {
        "CONTEXT_MAX_TOKENS": 4000,
        "CONTEXT_CORE_RATIO": 0.4,
        "CONTEXT_CHARACTER_RATIO": 0.25,
        "CONTEXT_PLOT_RATIO": 0.2,
        "CONTEXT_WORLD_RATIO": 0.1,
        "CONTEXT_HISTORICAL_RATIO": 0.05,
        "CONTEXT_PRESERVE_DIALOGUE": True,
        "CONTEXT_PRESERVE_FORESHADOWING": True,
        "CONTEXT_MIN_CHARACTER_MENTIONS": 2,
    },
    "quality-first": {
        "CONTEXT_MAX_TOKENS": 8000,
        "CONTEXT_CORE_RATIO": 0.35,
        "CONTEXT_CHARACTER_RATIO": 0.25,
        "CONTEXT_PLOT_RATIO": 0.2,
        "CONTEXT_WORLD_RATIO": 0.12,
        "CONTEXT_HISTORICAL_RATIO": 0.08,
        "CONTEXT_PRESERVE_DIALOGUE": True,
        "CONTEXT_PRESERVE_FORESHADOWING": True,
        "CONTEXT_MIN_CHARACTER_MENTIONS": 1,
    },
}


IMPLEMENTATION_DEFAULTS = {
    "local-dev": {
        "SCORE_RECENCY_HALF_LIFE_DAYS": 7,
        "CONTEXT_SCORING_WORKERS": 5,
        "CONSISTENCY_JUDGE_LLM_TIMEOUT_SECONDS": 2.8,
        "CONSISTENCY_MAX_ISSUES": 12,
    },
    "quality-first": {
        "SCORE_RECENCY_HALF_LIFE_DAYS": 14,
        "CONTEXT_SCORING_WORKERS": 5,
        "CONSISTENCY_JUDGE_LLM_TIMEOUT_SECONDS": 6,
        "CONSISTENCY_MAX_ISSUES": 24,
    },
}


def _resolve_profile(raw_profile: str) -> str:
    candidate = PROFILE_ALIASES.get(raw_profile, raw_profile)
    if candidate in STRATEGY_DEFAULTS:
        return candidate
    return "local-dev"


def _apply_profile_defaults() -> str:
    profile = os.getenv("CONFIG_PROFILE", "local-dev").strip().lower()
    resolved_profile = _resolve_profile(profile)
    os.environ.setdefault("CONFIG_PROFILE", resolved_profile)

    merged_defaults = {
        **STRATEGY_DEFAULTS[resolved_profile],
        **IMPLEMENTATION_DEFAULTS[resolved_profile],
    }
    for key, value in merged_defaults.items():
        os.environ.setdefault(key, _stringify_env_default(value))

    return resolved_profile


_ACTIVE_CONFIG_PROFILE = _apply_profile_defaults()


class Settings:
    def __init__(self) -> None:
        self.config_profile = _ACTIVE_CONFIG_PROFILE
        self.core = CoreSettings(self)
        self.policy = PolicySettings(self)
        self.runtime = RuntimeSettings(self)

    api_prefix = "/api"
    database_url = os.getenv("DATABASE_URL", "sqlite:///./novelctx.db")
    langfuse_enabled = _parse_bool(os.getenv("LANGFUSE_ENABLED"), False)
    langfuse_host = os.getenv("LANGFUSE_HOST", "https://cloud.langfuse.com")
    langfuse_public_key = os.getenv("LANGFUSE_PUBLIC_KEY", "")
    langfuse_secret_key = os.getenv("LANGFUSE_SECRET_KEY", "")

    # Seed values for a fresh CompressionStrategy on every request.
    context_max_tokens = max(_parse_int(os.getenv("CONTEXT_MAX_TOKENS"), 4000), 1)
    context_core_ratio = max(_parse_float(os.getenv("CONTEXT_CORE_RATIO"), 0.4), 0.0)
    context_character_ratio = max(_parse_float(os.getenv("CONTEXT_CHARACTER_RATIO"), 0.25), 0.0)
    context_plot_ratio = max(_parse_float(os.getenv("CONTEXT_PLOT_RATIO"), 0.2), 0.0)
    context_world_ratio = max(_parse_float(os.getenv("CONTEXT_WORLD_RATIO"), 0.1), 0.0)
    context_historical_ratio = max(_parse_float(os.getenv("CONTEXT_HISTORICAL_RATIO"), 0.05), 0.0)
    context_preserve_dialogue = _parse_bool(os.getenv("CONTEXT_PRESERVE_DIALOGUE"), True)
    context_preserve_foreshadowing = _parse_bool(os.getenv("CONTEXT_PRESERVE_FORESHADOWING"), True)
    context_min_character_mentions = max(_parse_int(os.getenv("CONTEXT_MIN_CHARACTER_MENTIONS"), 2), 0)
    score_weight_relevance = max(_parse_float(os.getenv("SCORE_WEIGHT_RELEVANCE"), 0.25), 0.0)
    score_weight_importance = max(_parse_float(os.getenv("SCORE_WEIGHT_IMPORTANCE"), 0.30), 0.0)
    score_weight_recency = max(_parse_float(os.getenv("SCORE_WEIGHT_RECENCY"), 0.20), 0.0)
    score_weight_character = max(_parse_float(os.getenv("SCORE_WEIGHT_CHARACTER"), 0.25), 0.0)
    score_recency_half_life_days = max(_parse_float(os.getenv("SCORE_RECENCY_HALF_LIFE_DAYS"), 7.0), 0.1)
    score_recency_neutral = max(min(_parse_float(os.getenv("SCORE_RECENCY_NEUTRAL"), 0.5), 1.0), 0.0)
    scene_window_chars = max(_parse_int(os.getenv("SCENE_WINDOW_CHARS"), 1600), 200)

    context_parallel_scoring_enabled = _parse_bool(os.getenv("CONTEXT_PARALLEL_SCORING_ENABLED"), True)
    context_scoring_workers = max(_parse_int(os.getenv("CONTEXT_SCORING_WORKERS"), 5), 1)
    consistency_max_issues = max(_parse_int(os.getenv("CONSISTENCY_MAX_ISSUES"), 12), 1)
    consistency_feedback_enabled = _parse_bool(os.getenv("CONSISTENCY_FEEDBACK_ENABLED"), True)
    consistency_judge_llm_enabled = _parse_bool(os.getenv("CONSISTENCY_JUDGE_LLM_ENABLED"), False)
    consistency_judge_llm_model = os.getenv("CONSISTENCY_JUDGE_LLM_MODEL", "gpt-4o-mini")
    consistency_judge_llm_base_url = os.getenv("CONSISTENCY_JUDGE_LLM_BASE_URL", "https://api.openai.com/v1")
    consistency_judge_llm_api_key = os.getenv("CONSISTENCY_JUDGE_LLM_API_KEY", "")
    consistency_judge_llm_timeout_seconds = _parse_float(
        os.getenv("CONSISTENCY_JUDGE_LLM_TIMEOUT_SECONDS"),
        2.8,
    )
    purity_target_script = os.getenv("PURITY_TARGET_SCRIPT", "traditional").strip().lower()


settings = Settings()
