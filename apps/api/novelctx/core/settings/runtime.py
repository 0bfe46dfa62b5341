from __future__ import annotations

from typing import Any


class RuntimeSettings:
    """Proxy view for runtime scoring and post-check settings on root Settings."""

    FIELD_NAMES: tuple[str, ...] = (
        "context_parallel_scoring_enabled",
        "context_scoring_workers",
        "consistency_max_issues",
        "consistency_feedback_enabled",
        "consistency_judge_llm_enabled",
        "consistency_judge_llm_model",
        "consistency_judge_llm_base_url",
        "consistency_judge_llm_api_key",
        "consistency_judge_llm_timeout_seconds",
        "purity_target_script",
    )

    def __init__(self, root: Any) -> None:
        object.__setattr__(self, "_root", root)

    def __getattr__(self, name: str) -> Any:
        if name in self.FIELD_NAMES:
            return getattr(self._root, name)
        raise AttributeError(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self.FIELD_NAMES:
            setattr(self._root, name, value)
            return
        object.__setattr__(self, name, value)
