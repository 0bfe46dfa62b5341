from __future__ import annotations

import math
from dataclasses import dataclass

SECTION_NAMES: tuple[str, ...] = ("core", "character", "plot", "world", "historical")


class ConfigurationError(ValueError):
    """Raised for an unusable CompressionStrategy before any assembly work starts."""


@dataclass(frozen=True)
class CompressionStrategy:
    max_tokens: int = 4000
    core_ratio: float = 0.4
    character_ratio: float = 0.25
    plot_ratio: float = 0.2
    world_ratio: float = 0.1
    historical_ratio: float = 0.05
    preserve_dialogue: bool = True
    preserve_foreshadowing: bool = True
    min_character_mentions: int = 2

    def ratios(self) -> dict[str, float]:
        return {
            "core": self.core_ratio,
            "character": self.character_ratio,
            "plot": self.plot_ratio,
            "world": self.world_ratio,
            "historical": self.historical_ratio,
        }

    def validate(self) -> None:
        if isinstance(self.max_tokens, bool) or not isinstance(self.max_tokens, int):
            raise ConfigurationError("max_tokens must be an integer")
        if self.max_tokens <= 0:
            raise ConfigurationError("max_tokens must be greater than 0")
        for name, value in self.ratios().items():
            try:
                ratio = float(value)
            except (TypeError, ValueError):
                raise ConfigurationError(f"{name} ratio must be a number") from None
            if not math.isfinite(ratio):
                raise ConfigurationError(f"{name} ratio must be finite")
            if ratio < 0:
                raise ConfigurationError(f"{name} ratio must not be negative")
        if isinstance(self.min_character_mentions, bool) or not isinstance(self.min_character_mentions, int):
            raise ConfigurationError("min_character_mentions must be an integer")
        if self.min_character_mentions < 0:
            raise ConfigurationError("min_character_mentions must not be negative")

    def normalized_ratios(self) -> dict[str, float]:
        """Ratios rescaled to sum to 1; an all-zero configuration splits evenly."""
        raw = {name: float(value) for name, value in self.ratios().items()}
        total = sum(raw.values())
        if total <= 0:
            share = 1.0 / len(SECTION_NAMES)
            return {name: share for name in SECTION_NAMES}
        return {name: value / total for name, value in raw.items()}

    def section_targets(self) -> dict[str, int]:
        ratios = self.normalized_ratios()
        return {name: int(ratios[name] * self.max_tokens) for name in SECTION_NAMES}

    def section_char_caps(self) -> dict[str, int]:
        ratios = self.normalized_ratios()
        return {name: int(ratios[name] * self.max_tokens * 2) for name in SECTION_NAMES}

    def is_protected(self, kind: str, *, plot_type: str = "", status: str = "") -> bool:
        if kind == "dialogue_snippet":
            return bool(self.preserve_dialogue)
        if kind == "plot_point" and str(plot_type or "").strip().lower() == "foreshadowing":
            return bool(self.preserve_foreshadowing) and str(status or "").strip().lower() != "resolved"
        return False
