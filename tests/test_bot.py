"""
Tests for the ChatBot orchestrator.
"""

import json
import random
import threading
from unittest.mock import MagicMock, patch

import pytest

from dialogue_bot.bot import ChatBot, TurnInProgressError, main
from dialogue_bot.classifier import EmptyMessageError
from dialogue_bot.context import ConversationContext
from dialogue_bot.feature_flags import flags
from dialogue_bot.llm import GeminiClient, GenerationResult, GenerationStatus
from dialogue_bot.logger import logger
from dialogue_bot.persona import load_persona
from dialogue_bot.settings import settings


class TestTurnBasics:

    def setup_method(self):
        self.persona = load_persona("customer_service")

    def test_hello(self, make_bot):
        bot = make_bot(self.persona)
        result = bot.process("Hello")

        assert result.intent == "greeting"
        assert result.confidence == 1.0
        assert result.source == "template"
        assert result.sentiment == "neutral"
        assert result.text in self.persona.templates["greeting"]
        assert len(bot.history) == 1
        assert bot.history[0].user_text == "Hello"
        assert bot.metrics.turns == 1

    def test_message_is_stripped(self, make_bot):
        bot = make_bot(self.persona)
        bot.process("   Hello  ")
        assert bot.history[0].user_text == "Hello"

    @pytest.mark.parametrize("message", ["", "   ", "\n", None])
    def test_empty_message_records_nothing(self, make_bot, message):
        bot = make_bot(self.persona)
        with patch.object(bot.classifier, "classify") as classify:
            with pytest.raises(EmptyMessageError):
                bot.process(message)
        classify.assert_not_called()
        assert len(bot.history) == 0
        assert bot.metrics.turns == 0
        assert bot.context == ConversationContext()

    def test_turn_in_progress_rejected(self, make_bot):
        bot = make_bot(self.persona)
        bot._turn_lock.acquire()
        try:
            assert bot.busy
            with pytest.raises(TurnInProgressError):
                bot.process("Hello")
        finally:
            bot._turn_lock.release()

        assert len(bot.history) == 0
        assert not bot.busy
        bot.process("Hello")
        assert len(bot.history) == 1

    def test_seeded_bots_agree(self, mock_llm):
        first = ChatBot(self.persona, llm=mock_llm, rng=random.Random(3))
        second = ChatBot(self.persona, llm=mock_llm, rng=random.Random(3))
        for message in ("Hello", "Where is my order #12345?", "I want a refund"):
            assert first.process(message).text == second.process(message).text

    def test_default_persona_from_settings(self, mock_llm):
        bot = ChatBot(llm=mock_llm)
        assert bot.persona.name == settings.bot.persona


class TestFailures:

    def setup_method(self):
        self.persona = load_persona("customer_service")

    def test_composer_error_gives_apology(self, make_bot):
        bot = make_bot(self.persona)
        with patch.object(bot.composer, "compose", side_effect=RuntimeError("boom")):
            result = bot.process("Hello")

        assert result.source == "apology"
        assert result.text == bot.apology
        assert result.intent == "greeting"
        assert bot.history[0].bot_text == bot.apology
        assert bot.metrics.fallback_count == 1

    def test_apology_defaults_to_settings(self, make_bot, escalation_persona):
        bot = make_bot(escalation_persona)
        assert bot.apology == settings.bot.apology

    def test_failed_update_leaves_context_untouched(self, make_bot):
        bot = make_bot(self.persona)
        bot.process("Where is order #111?")
        before = bot.context.copy()

        def half_update(context, message, classification):
            context.order_number = "999"
            context.escalation_level = 7
            raise RuntimeError("tracker failed")

        with patch.object(bot.tracker, "update", side_effect=half_update):
            result = bot.process("order #999 is terrible")

        assert result.source == "apology"
        assert bot.context == before
        assert bot.context.order_number == "111"
        assert len(bot.history) == 2

    def test_classifier_error_records_default_intent(self, make_bot):
        bot = make_bot(self.persona)
        with patch.object(bot.classifier, "classify", side_effect=RuntimeError("broken")):
            result = bot.process("Hello")
        assert result.intent == "default"
        assert result.confidence == 0.0
        assert result.source == "apology"


class TestGenerativePath:

    def setup_method(self):
        self.persona = load_persona("customer_service")

    def test_generated_reply_used(self, make_bot, generating_llm):
        bot = make_bot(self.persona, llm=generating_llm)
        result = bot.process("Hello")

        assert result.text == "Generated reply"
        assert result.source == "generated"
        prompt = generating_llm.generate.call_args.args[0]
        assert 'USER MESSAGE: "Hello"' in prompt
        assert "DETECTED INTENT: greeting" in prompt

    def test_prompt_carries_recent_history(self, make_bot, generating_llm):
        bot = make_bot(self.persona, llm=generating_llm)
        bot.process("Hello")
        bot.process("Where is order #42?")
        prompt = generating_llm.generate.call_args.args[0]
        assert "User: Hello\nBot: Generated reply" in prompt
        assert "- Order Number: 42" in prompt

    def test_flag_off_skips_generation(self, make_bot, generating_llm):
        flags.set_override("generative_responses", False)
        bot = make_bot(self.persona, llm=generating_llm)
        result = bot.process("Hello")

        generating_llm.generate.assert_not_called()
        assert result.source == "template"

    def test_disabled_client_is_not_a_failure(self, make_bot, mock_llm):
        bot = make_bot(self.persona, llm=mock_llm)
        bot.process("Hello")
        mock_llm.generate.assert_called_once()
        assert bot.metrics.get_summary()["generation_failures"] == {}

    @pytest.mark.parametrize("status", [
        GenerationStatus.RATE_LIMITED,
        GenerationStatus.MALFORMED,
        GenerationStatus.ERROR,
    ])
    def test_generation_failure_falls_back_to_template(self, make_bot, mock_llm, status):
        mock_llm.generate.return_value = GenerationResult.unavailable(status, attempts=4)
        bot = make_bot(self.persona, llm=mock_llm)
        result = bot.process("Hello")

        assert result.source == "template"
        assert result.text in self.persona.templates["greeting"]
        assert bot.metrics.get_summary()["generation_failures"] == {status.value: 1}


class TestUiHelpers:

    def test_flags_hide_quick_actions_and_context(self, make_bot):
        flags.set_override("quick_actions", False)
        flags.set_override("context_display", False)
        bot = make_bot(load_persona("influencer_negotiation"))
        result = bot.process("I'm on Instagram")
        assert result.quick_actions == []
        assert result.context_note is None

    def test_context_note_for_topic(self, make_bot):
        bot = make_bot(load_persona("customer_service"))
        result = bot.process("I want a refund")
        assert result.context_note == "Context: Continuing returns discussion"

    def test_no_context_note_for_default(self, make_bot):
        bot = make_bot(load_persona("customer_service"))
        assert bot.process("xyz qqq").context_note is None

    def test_service_context_note(self, make_bot):
        bot = make_bot(load_persona("service_procurement"))
        result = bot.process("We build websites, quote is ₹50,000")
        assert result.context_note == "Detected: web development, quote ₹50,000"

    def test_status(self, make_bot):
        bot = make_bot(load_persona("customer_service"))
        bot.process("Hello")
        status = bot.get_status()
        assert status["persona"] == "customer_service"
        assert status["turns"] == 1
        assert status["context"]["last_topic"] == "greeting"


class TestResetAndExport:

    def setup_method(self):
        self.persona = load_persona("customer_service")

    def test_reset(self, make_bot):
        bot = make_bot(self.persona)
        bot.process("Where is order #555?")
        old_id = bot.conversation_id

        bot.reset()

        assert len(bot.history) == 0
        assert bot.context == ConversationContext()
        assert bot.metrics.turns == 0
        assert bot.conversation_id != old_id

    def test_reset_while_busy_rejected(self, make_bot):
        bot = make_bot(self.persona)
        bot.process("Where is order #555?")
        bot._turn_lock.acquire()
        try:
            with pytest.raises(TurnInProgressError):
                bot.reset()
        finally:
            bot._turn_lock.release()

        assert len(bot.history) == 1
        assert bot.context.order_number == "555"

    def test_reset_during_generation(self, make_bot):
        started = threading.Event()
        release = threading.Event()

        def slow_generate(prompt):
            started.set()
            release.wait(5)
            return GenerationResult(text="Generated reply", status=GenerationStatus.OK, attempts=1)

        llm = MagicMock(spec=GeminiClient)
        llm.generate.side_effect = slow_generate
        bot = make_bot(load_persona("influencer_negotiation"), llm=llm)

        worker = threading.Thread(target=bot.process, args=("I have 30k followers on instagram",))
        worker.start()
        try:
            assert started.wait(5)
            with pytest.raises(TurnInProgressError):
                bot.reset()
        finally:
            release.set()
            worker.join(5)

        # The in-flight turn finished into the old conversation
        assert len(bot.history) == 1
        assert bot.context.followers == 30000

        bot.reset()
        assert len(bot.history) == 0
        assert bot.context == ConversationContext()
        assert bot.metrics.turns == 0


    def test_export_json(self, make_bot):
        bot = make_bot(self.persona)
        bot.process("Hello")
        bot.process("Where is order #555?")

        records = json.loads(bot.export_history("json"))
        assert [r["user"] for r in records] == ["Hello", "Where is order #555?"]
        assert records[1]["intent"] == "order_tracking"
        assert records[1]["metrics"] == {"order_number": "555"}

    def test_export_text(self, make_bot):
        bot = make_bot(self.persona)
        bot.process("Hello")
        transcript = bot.export_history("text")
        assert transcript.startswith("#1 [")
        assert "intent=greeting confidence=1.00" in transcript
        assert "User: Hello" in transcript

    def test_export_unknown_format(self, make_bot):
        with pytest.raises(ValueError):
            make_bot(self.persona).export_history("xml")

    def test_metrics_summary_includes_llm_stats(self, make_bot, mock_llm):
        bot = make_bot(self.persona)
        bot.process("Hello")
        summary = bot.get_metrics_summary()
        assert summary["total_turns"] == 1
        assert summary["llm"] == {}

    def test_response_time_metric_logged(self, make_bot):
        bot = make_bot(self.persona)
        with patch.object(logger, "metric") as metric:
            bot.process("Hello")

        metric.assert_called_once()
        name, value = metric.call_args.args
        assert name == "response_time_ms"
        assert value >= 0
        assert metric.call_args.kwargs == {
            "intent": "greeting",
            "source": "template",
            "persona": "customer_service",
        }



class TestInfluencerScenario:

    def test_metrics_message(self, make_bot):
        bot = make_bot(load_persona("influencer_negotiation"))
        result = bot.process("I have 30k followers on Instagram with 6% engagement")

        assert bot.context.followers == 30000
        assert bot.context.platform == "instagram"
        assert bot.context.engagement == "6%"
        # The first number in the message is taken as a price
        assert bot.context.proposed_price == 30.0
        assert bot.context.conversation_stage == "platform_selected"
        assert result.context_note == "Detected: instagram, 30,000 followers, 6% engagement"
        assert result.quick_actions[0] == {"text": "Instagram Reels", "message": "I create Instagram reels"}
        assert result.extracted["followers"] == 30000

    def test_stage_walk(self, make_bot):
        bot = make_bot(load_persona("influencer_negotiation"))
        bot.process("I'm on Instagram")
        assert bot.context.conversation_stage == "platform_selected"
        bot.process("I have 30k followers")
        assert bot.context.conversation_stage == "followers_asked"
        bot.process("My engagement rate is 8%")
        assert bot.context.conversation_stage == "engagement_asked"
        result = bot.process("My niche is tech")
        assert bot.context.conversation_stage == "pricing"
        assert result.quick_actions[0]["text"] == "Accept Offer"

    def test_agreement_finalizes(self, make_bot):
        bot = make_bot(load_persona("influencer_negotiation"))
        bot.process("I agree, deal")
        assert bot.context.negotiation_stage == "finalizing"
        assert bot.get_metrics_summary()["outcome"] == "agreed"


class TestEscalationScenario:

    def test_escalation_notice_after_threshold(self, make_bot):
        persona = load_persona("customer_service")
        bot = make_bot(persona)

        replies = [bot.process("Terrible service, I am angry") for _ in range(3)]

        assert [r.intent for r in replies] == ["complaint"] * 3
        assert bot.context.escalation_level == 3
        assert not replies[0].text.startswith(persona.escalation_notice)
        assert not replies[1].text.startswith(persona.escalation_notice)
        assert replies[2].text.startswith(persona.escalation_notice)
        assert bot.get_metrics_summary()["outcome"] == "escalated"

    def test_calm_message_lowers_level(self, make_bot):
        bot = make_bot(load_persona("customer_service"))
        bot.process("Terrible service, I am angry")
        bot.process("Terrible service, I am angry")
        bot.process("ok, good")
        assert bot.context.escalation_level == 1


class TestCli:

    def test_main_runs_interactive(self, mock_llm):
        with patch("dialogue_bot.bot.GeminiClient.from_settings", return_value=mock_llm), \
                patch("builtins.input", side_effect=["Hello", "/history", "/quit"]), \
                patch("builtins.print") as printed:
            main(["--persona", "customer_service", "--no-llm", "--seed", "1"])

        output = "\n".join(str(c.args[0]) for c in printed.call_args_list if c.args)
        assert "Bot: " in output
        assert "User: Hello" in output
        assert not flags.generative_responses
