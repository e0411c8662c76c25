import json
import unittest
from unittest.mock import MagicMock, patch

from app import (
    _format_env_value,
    build_system_prompt,
    compute_context_stats,
    parse_answer,
    truncate_strings,
)
from webflow_fetcher import (
    CaseStudy,
    FetchResult,
    PageContent,
    SystemPromptSettings,
    normalize_html,
    sanitize_content,
    slugify,
    standardize_content,
)


class TestNormalizeHtml(unittest.TestCase):
    def test_strips_tags_and_collapses_whitespace(self):
        self.assertEqual(normalize_html("<p>Hello   <strong>world</strong></p>\n<p>Again</p>"), "Hello world Again")

    def test_drops_script_style_and_figure_blocks(self):
        html = (
            "<p>Keep</p><script type='text/javascript'>alert(1)</script>"
            "<STYLE>.a{color:red}</STYLE><figure><img src='x.png'><figcaption>Caption</figcaption></figure>"
            "<p>this</p>"
        )
        self.assertEqual(normalize_html(html), "Keep this")

    def test_nbsp_becomes_space(self):
        self.assertEqual(normalize_html("a&nbsp;&nbsp;b"), "a b")

    def test_inline_tags_do_not_split_words(self):
        self.assertEqual(normalize_html("<p>Sel<em>f</em>hood</p>"), "Selfhood")

    def test_malformed_html_degrades_to_text(self):
        self.assertEqual(normalize_html("<div><p>unclosed <b>bold"), "unclosed bold")
        self.assertEqual(normalize_html("a < b"), "a < b")

    def test_empty_input(self):
        self.assertEqual(normalize_html(""), "")
        self.assertEqual(normalize_html(None), "")

    def test_idempotent(self):
        samples = [
            "<p>Hello&nbsp;world</p>",
            "<<x>p>text</p>",
            "&nb<i>sp;x",
            "<scr<x>ipt>alert</script>",
            "  plain   text  ",
            "a < b > c",
            "<figure>fig</figure><p>after</p>",
        ]
        for s in samples:
            once = normalize_html(s)
            self.assertEqual(normalize_html(once), once, s)


class TestSlugify(unittest.TestCase):
    def test_index_special_case(self):
        self.assertEqual(slugify("Index"), "/in")
        self.assertEqual(slugify("INDEX"), "/in")

    def test_punctuation_and_spaces(self):
        self.assertEqual(slugify("Case Studies!"), "/case-studies")
        self.assertEqual(slugify("  Multi   Space "), "/multi-space")
        self.assertEqual(slugify("About -- Us & Co."), "/about-us-co")

    def test_non_ascii_is_a_separator(self):
        self.assertEqual(slugify("Café Menu"), "/caf-menu")


class TestContentCleaners(unittest.TestCase):
    def test_sanitize_removes_webflow_reserved_links(self):
        text = "Before [__wf_reserved_inherit](https://cdn.prod.website-files.com/abc/img.png) after"
        self.assertEqual(sanitize_content(text), "Before  after")

    def test_standardize(self):
        text = "  **Bold** [link](https://example.com/page)\n\n\n_under_  "
        self.assertEqual(standardize_content(text), "Bold link under")


class TestPromptHelpers(unittest.TestCase):
    def setUp(self):
        self.context = FetchResult(
            pages={"Home": PageContent(title="Home", slug="/home", content="x" * 1500)},
            case_studies={"launch": CaseStudy(title="Launch", slug="/casestudies/launch", content="Shipped")},
            system_prompt=SystemPromptSettings(style_guidelines="Be brief.", question_patterns=""),
        )

    def test_format_env_value(self):
        self.assertEqual(_format_env_value("ANY_KEY", None), "<unset>")
        self.assertEqual(_format_env_value("ANY_KEY", ""), "<empty>")
        self.assertEqual(_format_env_value("WEBFLOW_API_TOKEN", "wf-1234567890"), "****7890")
        self.assertEqual(_format_env_value("OTHER_KEY", "visible"), "visible")
        self.assertEqual(_format_env_value("CHAT_MAX_TURNS", 12), "12")

    def test_truncate_strings(self):
        data = {"a": "abcdef", "b": ["ghijkl", 3], "c": {"d": "mnopqr"}}
        self.assertEqual(truncate_strings(data, 3), {"a": "abc", "b": ["ghi", 3], "c": {"d": "mno"}})

    def test_build_system_prompt(self):
        prompt = build_system_prompt(self.context)
        self.assertIn("RESPONSE FORMAT", prompt)
        self.assertIn("STYLE GUIDELINES:\nBe brief.", prompt)
        self.assertNotIn("QUESTION PATTERNS", prompt)
        context_json = json.loads(prompt.split("Context:\n", 1)[1])
        self.assertEqual(len(context_json["pages"]["Home"]["content"]), 1000)
        self.assertIn("caseStudies", context_json)
        self.assertEqual(context_json["systemPrompt"]["styleGuidelines"], "Be brief.")

    def test_parse_answer(self):
        raw = json.dumps({
            "answer": "We build products.",
            "sources": [{"slug": "/home", "title": "Home"}, {"slug": "/x", "title": "X"}],
            "followUpQuestions": ["What else?"],
        })
        answer = parse_answer(raw)
        self.assertEqual(answer.answer, "We build products.")
        self.assertEqual(len(answer.sources), 1)
        self.assertEqual(answer.follow_up_questions, ["What else?"])

    def test_parse_answer_fenced(self):
        answer = parse_answer('```json\n{"answer": "Hi"}\n```')
        self.assertEqual(answer.answer, "Hi")
        self.assertEqual(answer.sources, [])

    def test_parse_answer_rejects_non_json(self):
        with self.assertRaises(ValueError):
            parse_answer("not json")

    def test_compute_context_stats(self):
        enc = MagicMock()
        enc.encode.side_effect = lambda text: text.split()
        with patch("app.get_tokenizer", return_value=enc):
            stats = compute_context_stats(self.context)
        self.assertEqual(stats["pages"], 1)
        self.assertEqual(stats["case_studies"], 1)
        self.assertGreater(stats["tokens"], 0)
        self.assertEqual(stats["total_chars"], len(self.context.to_json(indent=None)))
        self.assertEqual(compute_context_stats(None)["tokens"], 0)


if __name__ == "__main__":
    unittest.main()
