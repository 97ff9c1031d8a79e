"""
Tests for the ai package - retry helper, provider client, relevance oracle
and insights generator. No network calls are made.
"""

import sys
import unittest
from datetime import date
from pathlib import Path
from unittest.mock import MagicMock, patch

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ai.client import LLMClient, retry_with_backoff
from ai.relevance import RelevanceOracle
from ai.summariser import InsightsGenerator
from core.errors import OracleUnavailable
from tracking.analytics import DailyAggregate


class TestRetryWithBackoff(unittest.TestCase):

    def setUp(self):
        self.delays = []

    def test_success_first_try(self):
        self.assertEqual(retry_with_backoff(lambda: 42, sleep=self.delays.append), 42)
        self.assertEqual(self.delays, [])

    def test_retries_transient_errors_with_backoff(self):
        func = MagicMock(side_effect=[ConnectionError("a"), TimeoutError("b"), "ok"])
        result = retry_with_backoff(func, initial_delay=1.0, sleep=self.delays.append)
        self.assertEqual(result, "ok")
        self.assertEqual(self.delays, [1.0, 2.0])

    def test_delay_capped(self):
        func = MagicMock(side_effect=[ConnectionError()] * 3 + ["ok"])
        retry_with_backoff(func, initial_delay=4.0, max_delay=5.0, sleep=self.delays.append)
        self.assertEqual(self.delays, [4.0, 5.0, 5.0])

    def test_gives_up_after_max_retries(self):
        func = MagicMock(side_effect=ConnectionError("down"))
        with self.assertRaises(ConnectionError):
            retry_with_backoff(func, max_retries=2, sleep=self.delays.append)
        self.assertEqual(func.call_count, 3)

    def test_non_retryable_raised_immediately(self):
        func = MagicMock(side_effect=ValueError("bad"))
        with self.assertRaises(ValueError):
            retry_with_backoff(func, sleep=self.delays.append)
        self.assertEqual(func.call_count, 1)


class TestLLMClient(unittest.TestCase):

    def test_unknown_provider_not_configured(self):
        client = LLMClient(provider="claude", api_key="x")
        self.assertFalse(client.is_configured)
        with self.assertRaises(OracleUnavailable):
            client.ask("hello")

    def test_missing_key_not_configured(self):
        with patch("config.OPENAI_API_KEY", ""):
            client = LLMClient(provider="openai")
        self.assertFalse(client.is_configured)

    def test_openai_retry_then_success(self):
        client = LLMClient(provider="openai", api_key="sk-test", sleep=lambda s: None)
        with patch.object(client, "_call_openai", side_effect=[ConnectionError("x"), "  Hello  "]) as call:
            self.assertEqual(client.ask("hi", system="sys"), "Hello")
        self.assertEqual(call.call_count, 2)
        call.assert_called_with("hi", "sys", 0.7, 500)

    def test_failure_becomes_oracle_unavailable(self):
        client = LLMClient(provider="openai", api_key="sk-test", max_retries=1, sleep=lambda s: None)
        with patch.object(client, "_call_openai", side_effect=ConnectionError("down")):
            with self.assertRaises(OracleUnavailable):
                client.ask("hi")

    def test_empty_response_is_unavailable(self):
        client = LLMClient(provider="openai", api_key="sk-test")
        with patch.object(client, "_call_openai", return_value="   "):
            with self.assertRaises(OracleUnavailable):
                client.ask("hi")

    def test_openai_request_shape(self):
        client = LLMClient(provider="openai", api_key="sk-test", model="gpt-test")
        fake = MagicMock()
        fake.chat.completions.create.return_value.choices = [MagicMock()]
        fake.chat.completions.create.return_value.choices[0].message.content = "YES"
        client._openai_client = fake

        self.assertEqual(client.ask("q", system="s", temperature=0.0, max_tokens=5), "YES")
        kwargs = fake.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs["model"], "gpt-test")
        self.assertEqual(kwargs["messages"][0], {"role": "system", "content": "s"})
        self.assertEqual(kwargs["max_tokens"], 5)

    @patch("ai.client.genai")
    def test_gemini_request(self, mock_genai):
        mock_genai.GenerativeModel.return_value.generate_content.return_value.text = "NO"
        client = LLMClient(provider="gemini", api_key="g-test", model="gemini-test", timeout=12)

        self.assertEqual(client.ask("q", system="s"), "NO")
        mock_genai.configure.assert_called_once_with(api_key="g-test")
        args, kwargs = mock_genai.GenerativeModel.return_value.generate_content.call_args
        self.assertEqual(args[0], "s\n\nq")
        self.assertEqual(kwargs["request_options"], {"timeout": 12})


class TestRelevanceOracle(unittest.TestCase):

    def setUp(self):
        self.client = MagicMock()
        self.client.is_configured = True
        self.oracle = RelevanceOracle(self.client)

    def test_yes_and_no(self):
        self.client.ask.return_value = "YES"
        self.assertTrue(self.oracle.check_relevance("Write report", "Python docs"))
        self.client.ask.return_value = "no."
        self.assertFalse(self.oracle.check_relevance("Write report", "Reddit"))

    def test_prompt_contains_goal_and_title(self):
        self.client.ask.return_value = "YES"
        self.oracle.check_relevance("Learn Rust", "The Rust Book")
        prompt = self.client.ask.call_args.args[0]
        self.assertIn("Learn Rust", prompt)
        self.assertIn("The Rust Book", prompt)
        self.assertEqual(self.client.ask.call_args.kwargs["max_tokens"], 5)

    def test_unclear_answer_is_relevant(self):
        self.client.ask.return_value = "Perhaps"
        self.assertTrue(self.oracle.check_relevance("g", "t"))

    def test_answers_merely_containing_no_are_relevant(self):
        for answer in ("Unknown", "Not sure", "I cannot tell", "NONE", ""):
            with self.subTest(answer=answer):
                self.client.ask.return_value = answer
                self.assertTrue(self.oracle.check_relevance("g", "t"))

    def test_verdict_word_with_punctuation(self):
        self.client.ask.return_value = "\"No\" - it is unrelated"
        self.assertFalse(self.oracle.check_relevance("g", "t"))
        self.client.ask.return_value = " Yes."
        self.assertTrue(self.oracle.check_relevance("g", "t"))

    def test_unavailable_is_relevant(self):
        self.client.ask.side_effect = OracleUnavailable("timeout")
        self.assertTrue(self.oracle.check_relevance("g", "t"))

    def test_unconfigured_is_relevant_without_calls(self):
        self.client.is_configured = False
        self.assertTrue(self.oracle.check_relevance("g", "t"))
        self.client.ask.assert_not_called()

    def test_async_delivers_verdict(self):
        self.client.ask.return_value = "NO"
        results = []
        thread = self.oracle.check_relevance_async("g", "Reddit", lambda title, v: results.append((title, v)))
        thread.join(5)
        self.assertEqual(results, [("Reddit", False)])

    def test_async_crash_is_relevant(self):
        self.client.ask.side_effect = RuntimeError("bug")
        results = []
        thread = self.oracle.check_relevance_async("g", "t", lambda title, v: results.append(v))
        thread.join(5)
        self.assertEqual(results, [True])


class TestInsightsGenerator(unittest.TestCase):

    def setUp(self):
        self.store = MagicMock()
        self.store.get_stats_range.return_value = [
            DailyAggregate("2024-05-03", 7200, 5400, 600, "code.exe", "Development", 40),
            DailyAggregate("2024-05-02", 3600, 1200, 1800, "chrome.exe", "Distraction", 30),
            DailyAggregate("2024-04-01", 3600, 3600, 0, "code.exe", "Development", 10),
        ]
        self.store.get_app_breakdown.return_value = [{"app_name": "code.exe", "total_seconds": 3600.0}]
        self.store.get_category_breakdown.return_value = [{"category": "Development", "total_seconds": 3600.0}]
        self.store.query_searches.return_value = [{"query": "pytest mock"}]
        self.store.get_focus_stats.return_value = {"total_sessions": 2}
        self.client = MagicMock()
        self.client.is_configured = False
        self.generator = InsightsGenerator(self.store, client=self.client)
        self.today = date(2024, 5, 3)

    def test_context_limited_to_window(self):
        context = self.generator.build_context(days=7, today=self.today)
        self.assertEqual(context["days_tracked"], 2)
        self.assertEqual(context["total_tracked_hours"], 3.0)
        self.assertEqual(context["productive_hours"], 1.8)
        self.assertEqual(context["top_apps"], ["code.exe (2.0h)"])
        self.assertEqual(context["recent_searches"], ["pytest mock"])

    def test_fallback_without_ai(self):
        result = self.generator.generate_insights(today=self.today)
        self.assertFalse(result["success"])
        self.assertTrue(result["has_data"])
        for label in ("Top Achievement:", "Biggest Distraction:", "Action Item:", "Trend Analysis:"):
            self.assertIn(label, result["insights"])
        self.assertIn("2024-05-03", result["insights"])
        self.assertIn("Productivity is up", result["insights"])

    def test_ai_digest(self):
        self.client.is_configured = True
        self.client.ask.return_value = "Top Achievement: great"
        result = self.generator.generate_insights(today=self.today)
        self.assertTrue(result["success"])
        self.assertEqual(result["insights"], "Top Achievement: great")

    def test_ai_failure_falls_back(self):
        self.client.is_configured = True
        self.client.ask.side_effect = OracleUnavailable("quota")
        result = self.generator.generate_insights(today=self.today)
        self.assertFalse(result["success"])
        self.assertIn("Action Item:", result["insights"])

    def test_no_data(self):
        self.store.get_stats_range.return_value = []
        result = self.generator.generate_insights(today=self.today)
        self.assertFalse(result["has_data"])
        self.assertEqual(result["insights"], "Not enough data for insights yet.")


if __name__ == "__main__":
    unittest.main()
