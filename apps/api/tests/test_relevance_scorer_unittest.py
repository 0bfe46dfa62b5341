import math
import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from novelctx.services.relevance_scorer import (
    ScoringWeights,
    UnitSnapshot,
    build_scene_context,
    elapsed_days,
    extract_terms,
    rank_units,
    score_unit,
)

_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _unit(unit_id: int, kind: str = "plot_point", **overrides) -> UnitSnapshot:
    values = {
        "id": unit_id,
        "project_id": 1,
        "kind": kind,
        "title": f"单元{unit_id}",
        "body": "雨夜里，林舟在码头等船。",
        "importance": 5,
    }
    values.update(overrides)
    return UnitSnapshot(**values)


class RelevanceScorerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.characters = [
            _unit(1, "character", title="林舟", body="沉默寡言的船夫", aliases=("阿舟",)),
            _unit(2, "character", title="沈意", body="码头的账房先生"),
            _unit(3, "character", title="老周", body="从不露面的东家"),
        ]
        self.scene = build_scene_context(
            scene_text="林舟望着河面。阿舟，沈意喊他。雨下个不停，码头上只剩他们两人。",
            character_units=self.characters,
            now=_NOW,
        )

    def test_scene_context_counts_aliases_and_marks_active(self) -> None:
        self.assertEqual(self.scene.mention_counts["林舟"], 2)
        self.assertEqual(self.scene.mention_counts["沈意"], 1)
        self.assertEqual(self.scene.mention_counts["老周"], 0)
        self.assertEqual(self.scene.active_characters, ("林舟", "沈意"))
        self.assertIn("码头", self.scene.terms)

    def test_focus_characters_are_active_even_when_unmentioned(self) -> None:
        scene = build_scene_context(
            scene_text="河面很静。",
            character_units=self.characters,
            now=_NOW,
            focus_characters=["老周"],
            location="渡口",
        )
        self.assertIn("老周", scene.active_characters)
        self.assertEqual(scene.focus_characters, ("老周",))
        self.assertIn("渡口", scene.terms)

    def test_sub_scores_stay_in_unit_interval(self) -> None:
        for unit in [
            _unit(10, importance=10),
            _unit(11, importance=1, body="无关的描述"),
            _unit(12, importance=99),
            _unit(13, importance="not-a-number"),
            _unit(14, usage_count=3, last_used_at=_NOW - timedelta(days=40)),
        ]:
            weight = score_unit(unit, self.scene)
            for value in (
                weight.relevance_score,
                weight.importance_score,
                weight.recency_score,
                weight.character_involvement,
                weight.final_weight,
            ):
                self.assertFalse(math.isnan(value))
                self.assertGreaterEqual(value, 0.0)
                self.assertLessEqual(value, 1.0)

    def test_empty_body_scores_only_importance(self) -> None:
        weight = score_unit(_unit(20, body="   ", importance=10), self.scene)
        self.assertEqual(weight.relevance_score, 0.0)
        self.assertEqual(weight.recency_score, 0.0)
        self.assertEqual(weight.character_involvement, 0.0)
        self.assertEqual(weight.importance_score, 1.0)
        self.assertGreater(weight.final_weight, 0.0)

    def test_importance_is_monotone(self) -> None:
        previous = -1.0
        for rating in range(1, 11):
            weight = score_unit(_unit(30, importance=rating), self.scene)
            self.assertGreaterEqual(weight.final_weight, previous)
            previous = weight.final_weight

    def test_mentioning_an_active_character_raises_relevance(self) -> None:
        mentioned = score_unit(_unit(40, body="林舟收起了缆绳"), self.scene)
        unrelated = score_unit(_unit(41, body="远方的山寺敲了钟"), self.scene)
        self.assertGreaterEqual(mentioned.relevance_score, 0.5)
        self.assertGreater(mentioned.final_weight, unrelated.final_weight)
        self.assertAlmostEqual(mentioned.character_involvement, 0.5)

    def test_related_characters_count_as_involvement(self) -> None:
        unit = _unit(42, body="一场旧账", related_characters=("林舟", "沈意"))
        self.assertAlmostEqual(score_unit(unit, self.scene).character_involvement, 1.0)

    def test_recency_uses_whole_days(self) -> None:
        used = _unit(50, usage_count=1, last_used_at=_NOW - timedelta(hours=5))
        fresh = score_unit(used, self.scene).recency_score
        later_scene = replace(self.scene, now=_NOW + timedelta(seconds=1))
        self.assertEqual(score_unit(used, later_scene).recency_score, fresh)
        self.assertAlmostEqual(fresh, 1.0)

        week_old = _unit(51, usage_count=1, last_used_at=_NOW - timedelta(days=7))
        self.assertAlmostEqual(score_unit(week_old, self.scene).recency_score, 0.5)

        never_used = score_unit(_unit(52), self.scene)
        self.assertAlmostEqual(never_used.recency_score, 0.5)

    def test_elapsed_days_accepts_naive_timestamps(self) -> None:
        naive = datetime(2026, 2, 27, 12, 0)
        self.assertEqual(elapsed_days(naive, _NOW), 2)
        self.assertIsNone(elapsed_days(None, _NOW))

    def test_weights_are_normalized_and_zero_weights_fall_back(self) -> None:
        unit = _unit(60, importance=10)
        importance_only = ScoringWeights(relevance=0, importance=5, recency=0, character_involvement=0)
        self.assertAlmostEqual(score_unit(unit, self.scene, importance_only).final_weight, 1.0)

        all_zero = ScoringWeights(relevance=0, importance=0, recency=0, character_involvement=0)
        self.assertEqual(all_zero.normalized(), ScoringWeights().normalized())

        broken = ScoringWeights(relevance=float("nan"), importance=-1, recency=1, character_involvement=1)
        weight = score_unit(unit, self.scene, broken)
        self.assertFalse(math.isnan(weight.final_weight))

    def test_rank_units_is_stable_for_ties(self) -> None:
        units = [_unit(70, body="同样的描述"), _unit(71, body="同样的描述"), _unit(72, body="同样的描述", importance=9)]
        ranked = [item.unit.id for item in rank_units(units, self.scene)]
        self.assertEqual(ranked, [72, 70, 71])

    def test_extract_terms_adds_bigrams_and_skips_stop_terms(self) -> None:
        terms = extract_terms("我们在码头等待渡船 and the harbor")
        self.assertNotIn("我们", terms)
        self.assertNotIn("the", terms)
        self.assertIn("harbor", terms)
        self.assertIn("码头", terms)


if __name__ == "__main__":
    unittest.main()
