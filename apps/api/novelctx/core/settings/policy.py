from __future__ import annotations

from typing import Any


class PolicySettings:
    """Proxy view for strategy seeds and scoring policy on root Settings."""

    FIELD_NAMES: tuple[str, ...] = (
        "context_max_tokens",
        "context_core_ratio",
        "context_character_ratio",
        "context_plot_ratio",
        "context_world_ratio",
        "context_historical_ratio",
        "context_preserve_dialogue",
        "context_preserve_foreshadowing",
        "context_min_character_mentions",
        "score_weight_relevance",
        "score_weight_importance",
        "score_weight_recency",
        "score_weight_character",
        "score_recency_half_life_days",
        "score_recency_neutral",
        "scene_window_chars",
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
