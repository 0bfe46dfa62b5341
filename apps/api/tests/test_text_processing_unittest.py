import unittest

from novelctx.services.context_hash import compute_context_hash
from novelctx.services.text_sanitizer import is_allowed_char, sanitize
from novelctx.services.token_estimator import chars_for_tokens, estimate_tokens


class TextSanitizerTestCase(unittest.TestCase):
    def test_keeps_cjk_prose_and_quotes(self) -> None:
        text = "林舟推开门，低声说：「你来了。」\n她点头（没有回答）。"
        self.assertEqual(sanitize(text), text)

    def test_strips_emoji_and_control_characters(self) -> None:
        self.assertEqual(sanitize("夜色😀很深\x00。"), "夜色很深。")
        self.assertEqual(sanitize("a~b^c|d"), "abcd")
        self.assertEqual(sanitize("价格 $12 #3 @home -_/\\=+*&%"), "价格 $12 #3 @home -_/\\=+*&%")

    def test_empty_and_none_inputs(self) -> None:
        self.assertEqual(sanitize(""), "")
        self.assertEqual(sanitize(None), "")

    def test_sanitize_is_idempotent(self) -> None:
        samples = [
            "「好」——他说……✨",
            "Mixed 文本 with → arrows ← and • bullets",
            "\t tabs\r\nand『书名』〈篇〉",
        ]
        for sample in samples:
            once = sanitize(sample)
            self.assertEqual(sanitize(once), once)
            self.assertTrue(all(is_allowed_char(ch) for ch in once))


class TokenEstimatorTestCase(unittest.TestCase):
    def test_two_characters_per_token(self) -> None:
        self.assertEqual(estimate_tokens(""), 0)
        self.assertEqual(estimate_tokens(None), 0)
        self.assertEqual(estimate_tokens("a"), 0)
        self.assertEqual(estimate_tokens("林舟"), 1)
        self.assertEqual(estimate_tokens("x" * 1001), 500)

    def test_chars_for_tokens_inverts_estimate(self) -> None:
        self.assertEqual(chars_for_tokens(250), 500)
        self.assertEqual(chars_for_tokens(-3), 0)
        self.assertEqual(estimate_tokens("字" * chars_for_tokens(37)), 37)


class ContextHashTestCase(unittest.TestCase):
    def test_hash_depends_on_section_placement(self) -> None:
        base = {"core": "甲", "character": "乙", "plot": "", "world": "", "historical": ""}
        moved = {"core": "甲乙", "character": "", "plot": "", "world": "", "historical": ""}
        self.assertEqual(compute_context_hash(base), compute_context_hash(dict(base)))
        self.assertNotEqual(compute_context_hash(base), compute_context_hash(moved))
        self.assertEqual(len(compute_context_hash(base)), 64)

    def test_missing_sections_hash_like_empty_ones(self) -> None:
        self.assertEqual(
            compute_context_hash({"core": "甲"}),
            compute_context_hash({"core": "甲", "character": "", "plot": "", "world": "", "historical": ""}),
        )


if __name__ == "__main__":
    unittest.main()
