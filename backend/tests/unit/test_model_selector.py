"""Unit tests for model routing rules."""

import pytest

from opsagent.domain.agent.model_selector import LONG_HISTORY_THRESHOLD, select_model
from opsagent.infrastructure.ai.types import ProviderTag


class TestVisionRule:
    def test_vision_agent_with_attachments_uses_gemini_pro(self):
        selection = select_model("estimation", "What is on this drawing?", has_attachments=True)

        assert selection.provider == ProviderTag.GEMINI
        assert selection.model == "gemini-2.5-pro"
        assert selection.max_tokens == 8000
        assert selection.temperature == 0.2
        assert selection.reason == "vision_with_attachments"

    def test_vision_agent_without_attachments_falls_through(self):
        selection = select_model("shopfloor", "Which machine is idle?")

        assert selection.reason == "default"
        assert selection.model == "gpt-4o-mini"

    def test_attachments_for_non_vision_agent_do_not_trigger_vision(self):
        selection = select_model("sales", "Check this photo", has_attachments=True)

        assert selection.reason == "default"

    def test_agent_name_is_case_insensitive(self):
        selection = select_model("Empire", "Look at this", has_attachments=True)

        assert selection.reason == "vision_with_attachments"


class TestReportRule:
    @pytest.mark.parametrize(
        "message",
        ["Give me a daily digest", "Weekly recap please", "Summarize open orders", "SUMMARY of leads"],
    )
    def test_report_keywords_route_to_gemini_pro(self, message):
        selection = select_model("sales", message)

        assert selection.provider == ProviderTag.GEMINI
        assert selection.model == "gemini-2.5-pro"
        assert selection.max_tokens == 6000
        assert selection.reason == "report_request"

    def test_keyword_must_be_a_whole_word(self):
        selection = select_model("sales", "Please call the reporter back")

        assert selection.reason == "default"

    def test_report_rule_wins_over_complex_agent(self):
        selection = select_model("accounting", "Monthly report of receivables")

        assert selection.reason == "report_request"


class TestComplexRule:
    def test_complex_agent_uses_gpt_4o(self):
        selection = select_model("legal", "Is this clause enforceable?")

        assert selection.provider == ProviderTag.GPT
        assert selection.model == "gpt-4o"
        assert selection.max_tokens == 4000
        assert selection.temperature == 0.5
        assert selection.reason == "complex_reasoning"

    def test_analysis_keyword_for_any_agent(self):
        selection = select_model("support", "Can you analyze why tickets spiked?")

        assert selection.reason == "complex_reasoning"


class TestDefaultRule:
    def test_default_selection(self):
        selection = select_model("support", "Hello there")

        assert selection.provider == ProviderTag.GPT
        assert selection.model == "gpt-4o-mini"
        assert selection.max_tokens == 2000
        assert selection.temperature == 0.7
        assert selection.reason == "default"

    def test_long_history_raises_token_budget(self):
        selection = select_model("support", "Hello again", history_length=LONG_HISTORY_THRESHOLD)

        assert selection.model == "gpt-4o-mini"
        assert selection.max_tokens == 3000
        assert selection.reason == "default_long_conversation"

    def test_history_just_below_threshold_keeps_default_budget(self):
        selection = select_model("support", "Hello again", history_length=LONG_HISTORY_THRESHOLD - 1)

        assert selection.max_tokens == 2000

    def test_selection_is_deterministic(self):
        first = select_model("data", "plan the quarter", True, 5)
        second = select_model("data", "plan the quarter", True, 5)

        assert first == second
