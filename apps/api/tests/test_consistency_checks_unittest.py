import json
import unittest
from unittest.mock import patch

import httpx

from novelctx.core.config import settings
from novelctx.models import ContentUnit
from novelctx.services.consistency_checks import run_check
from novelctx.services.language_purity import analyze_purity


def _character(unit_id: int, title: str, **attributes) -> ContentUnit:
    return ContentUnit(id=unit_id, project_id=1, kind="character", title=title, body="", attributes=attributes)


class ConsistencyRuleTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._snapshot = {
            "consistency_judge_llm_enabled": settings.consistency_judge_llm_enabled,
            "consistency_judge_llm_api_key": settings.consistency_judge_llm_api_key,
            "purity_target_script": settings.purity_target_script,
        }
        settings.consistency_judge_llm_enabled = False
        settings.purity_target_script = "simplified"

    def tearDown(self) -> None:
        for key, value in self._snapshot.items():
            setattr(settings, key, value)

    def test_taboo_words_in_dialogue_are_out_of_character(self) -> None:
        units = [_character(1, "林舟", taboo_words=["老子"]), _character(2, "沈意")]
        check = run_check("林舟骂道：「老子不干了！」沈意说：「老子也不干。」", "character_consistency", units)

        self.assertEqual(len(check.issues), 1)
        issue = check.issues[0]
        self.assertEqual(issue.issue_type, "character_ooc")
        self.assertEqual(issue.severity, "high")
        self.assertEqual(issue.unit_id, 1)
        self.assertAlmostEqual(check.overall_score, 0.7)
        self.assertTrue(check.suggestions)

    def test_deceased_character_speaking_is_a_plot_hole(self) -> None:
        units = [_character(3, "老周", life_status="已故")]
        check = run_check("门开了，老周说：“我回来了。”", "character_consistency", units)

        self.assertEqual([issue.issue_type for issue in check.issues], ["plot_hole"])
        self.assertEqual(check.issues[0].unit_id, 3)

    def test_aliases_identify_the_speaker(self) -> None:
        units = [_character(4, "林舟", taboo_words=["滚"], aliases=["阿舟"])]
        check = run_check("阿舟喊：「滚开！」", "character_consistency", units)
        self.assertEqual(check.issues[0].unit_id, 4)

    def test_conflicting_time_of_day_in_one_sentence(self) -> None:
        check = run_check("清晨的街上，深夜的灯还亮着。中午他出门了。", "plot_consistency")
        self.assertEqual([issue.issue_type for issue in check.issues], ["timeline_conflict"])
        self.assertEqual(check.issues[0].severity, "low")

    def test_unresolved_foreshadowing_is_tracked(self) -> None:
        hint = ContentUnit(
            id=5,
            project_id=1,
            kind="plot_point",
            title="玉佩",
            body="半块玉佩",
            plot_type="foreshadowing",
            status="open",
            foreshadowing_target_id=99,
        )
        resolved = ContentUnit(
            id=6,
            project_id=1,
            kind="plot_point",
            title="旧信",
            plot_type="foreshadowing",
            status="resolved",
        )
        check = run_check("她摸了摸腰间的玉佩，又想起那封旧信。", "plot_consistency", [hint, resolved])

        self.assertEqual(
            sorted(issue.issue_type for issue in check.issues),
            ["foreshadow_pending", "plot_hole"],
        )
        self.assertTrue(all(issue.unit_id == 5 for issue in check.issues))

    def test_forbidden_world_patterns(self) -> None:
        rule = ContentUnit(
            id=7,
            project_id=1,
            kind="world_setting",
            title="古代背景",
            attributes={"forbidden_patterns": ["手机|电话"]},
        )
        check = run_check("他掏出手机看了一眼。", "world_consistency", [rule])

        self.assertEqual(len(check.issues), 1)
        self.assertEqual(check.issues[0].issue_type, "world_conflict")
        self.assertEqual(check.issues[0].severity, "medium")
        self.assertEqual(check.issues[0].context, "手机")
        self.assertAlmostEqual(check.overall_score, 0.85)

    def test_malformed_world_pattern_is_skipped_with_warning(self) -> None:
        rule = ContentUnit(
            id=8,
            project_id=1,
            kind="world_setting",
            title="坏规则",
            attributes={"forbidden_patterns": ["(["]},
        )
        with self.assertLogs("novelctx.services.consistency_checks", level="WARNING") as captured:
            check = run_check("任何文本。", "world_consistency", [rule])

        self.assertEqual(check.issues, ())
        self.assertEqual(check.overall_score, 1.0)
        self.assertTrue(any("world_rule_pattern_invalid" in line for line in captured.output))

    def test_language_purity_check(self) -> None:
        clean = run_check("风吹过河岸。", "language_purity")
        self.assertEqual(clean.overall_score, 1.0)
        self.assertEqual(clean.issues, ())

        mixed = run_check("Hello 世界", "language_purity")
        self.assertLess(mixed.overall_score, 0.95)
        self.assertTrue(all(issue.issue_type == "language_purity" for issue in mixed.issues))
        self.assertEqual(len(mixed.issues), 2)

    def test_full_check_averages_rule_scores(self) -> None:
        units = [_character(1, "林舟", taboo_words=["老子"])]
        check = run_check("林舟骂道：「老子不干了！」", "full", units)

        self.assertEqual(check.check_type, "full")
        self.assertAlmostEqual(check.overall_score, (0.7 + 1.0 + 1.0 + 1.0) / 4)

    def test_unknown_check_type_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            run_check("文本", "style_check")


class LanguagePurityTestCase(unittest.TestCase):
    def test_english_words_and_patterns_are_high_severity(self) -> None:
        analysis = analyze_purity("Hello 世界", target_script="simplified")
        kinds = sorted(issue.issue_type for issue in analysis.issues)

        self.assertEqual(kinds, ["english_words", "forbidden_pattern"])
        self.assertTrue(all(issue.severity == "high" for issue in analysis.issues))
        self.assertAlmostEqual(analysis.purity_score, 0.875)
        self.assertFalse(analysis.is_pure)

    def test_simplified_characters_only_count_for_traditional_targets(self) -> None:
        traditional = analyze_purity("这是国语", target_script="traditional")
        self.assertEqual([issue.content for issue in traditional.issues], ["这", "国"])
        self.assertTrue(all(issue.severity == "medium" for issue in traditional.issues))

        simplified = analyze_purity("这是国语", target_script="simplified")
        self.assertEqual(simplified.issues, ())
        self.assertEqual(simplified.purity_score, 1.0)
        self.assertTrue(simplified.is_pure)

    def test_empty_text_is_pure(self) -> None:
        self.assertEqual(analyze_purity("").purity_score, 1.0)


class ConsistencyJudgeTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._snapshot = {
            "consistency_judge_llm_enabled": settings.consistency_judge_llm_enabled,
            "consistency_judge_llm_api_key": settings.consistency_judge_llm_api_key,
            "consistency_judge_llm_base_url": settings.consistency_judge_llm_base_url,
        }
        settings.consistency_judge_llm_enabled = True
        settings.consistency_judge_llm_api_key = "test-key"
        settings.consistency_judge_llm_base_url = "http://judge.local/v1"

    def tearDown(self) -> None:
        for key, value in self._snapshot.items():
            setattr(settings, key, value)

    def test_judge_failure_degrades_to_rule_results(self) -> None:
        with patch("novelctx.services.consistency_checks.httpx.Client") as client_cls:
            client_cls.return_value.__enter__.return_value.post.side_effect = httpx.ConnectError("down")
            with self.assertLogs("novelctx.services.consistency_checks", level="WARNING"):
                check = run_check("风吹过河岸。", "world_consistency")

        self.assertEqual(check.issues, ())
        self.assertEqual(check.overall_score, 1.0)

    def test_judge_issues_are_merged_and_scored(self) -> None:
        content = json.dumps(
            {
                "issues": [
                    {"issue_type": "world_conflict", "severity": "high", "description": "出现了不该有的火枪"},
                    {"issue_type": "unknown", "severity": "weird", "description": "衔接略显生硬"},
                    {"issue_type": "plot_hole", "severity": "low", "description": ""},
                ]
            },
            ensure_ascii=False,
        )
        with patch("novelctx.services.consistency_checks.httpx.Client") as client_cls:
            client = client_cls.return_value.__enter__.return_value
            client.post.return_value.json.return_value = {"choices": [{"message": {"content": content}}]}
            check = run_check("他举起火枪。", "world_consistency")

        self.assertEqual([issue.issue_type for issue in check.issues], ["world_conflict", "continuity_risk"])
        self.assertEqual(check.issues[1].severity, "medium")
        self.assertAlmostEqual(check.overall_score, 0.7 * 0.85)
        endpoint = client.post.call_args.args[0]
        self.assertEqual(endpoint, "http://judge.local/v1/chat/completions")


if __name__ == "__main__":
    unittest.main()
