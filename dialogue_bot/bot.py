"""
Dialogue orchestrator: one ChatBot per conversation.

Per turn:
    classify -> update a staged context copy -> commit ->
    generative reply (optional) or template reply -> record turn

A ChatBot processes one turn at a time. A second call while a turn is in
flight raises TurnInProgressError instead of waiting.

Usage:
    bot = ChatBot("influencer_negotiation")
    result = bot.process("Hi, I have 30k followers on Instagram")
    result.text, result.intent, result.confidence

    python -m dialogue_bot.bot --persona influencer_negotiation
"""

import argparse
import random
import threading
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Union

from dialogue_bot.classifier import ClassificationResult, EmptyMessageError, IntentClassifier
from dialogue_bot.context import ContextTracker, ConversationContext
from dialogue_bot.feature_flags import flags
from dialogue_bot.generator import ResponseComposer
from dialogue_bot.history import (
    SOURCE_APOLOGY,
    SOURCE_GENERATED,
    SOURCE_TEMPLATE,
    ConversationHistory,
    ConversationTurn,
)
from dialogue_bot.llm import GeminiClient, GenerationStatus
from dialogue_bot.logger import logger
from dialogue_bot.metrics import ConversationMetrics
from dialogue_bot.persona import DEFAULT_INTENT, Persona, available_personas, load_persona
from dialogue_bot.pricing import PriceFairnessCalculator, format_money
from dialogue_bot.prompts import build_prompt
from dialogue_bot.settings import settings


class TurnInProgressError(RuntimeError):
    """Raised when a turn arrives while the previous one is still being processed"""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation '{conversation_id}' is already processing a turn")


@dataclass
class TurnResult:
    """What the UI gets back for one message"""
    text: str
    intent: str
    confidence: float
    sentiment: str
    source: str
    extracted: Dict[str, Any] = field(default_factory=dict)
    quick_actions: List[Dict[str, str]] = field(default_factory=list)
    context_note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ChatBot:
    """
    Persona-driven chat bot.

    Owns its context, history and metrics; nothing is shared between
    instances.
    """

    def __init__(
        self,
        persona: Union[str, Persona, None] = None,
        llm: Optional[GeminiClient] = None,
        rng: Optional[random.Random] = None,
        conversation_id: Optional[str] = None,
    ):
        """
        Args:
            persona: Persona object, bundled persona name or YAML path
                (settings.bot.persona when omitted)
            llm: Generative client (built from settings when omitted)
            rng: Randomness for template choice
            conversation_id: Id used in logs (generated when omitted)
        """
        if not isinstance(persona, Persona):
            persona = load_persona(persona or settings.bot.persona)
        self.persona = persona
        self.llm = llm if llm is not None else GeminiClient.from_settings()

        self.conversation_id = conversation_id or str(uuid.uuid4())[:8]
        logger.set_conversation(self.conversation_id)

        self.calculator = PriceFairnessCalculator(persona.pricing, persona.budgets)
        self.classifier = IntentClassifier(persona.catalog)
        self.tracker = ContextTracker(persona)
        self.composer = ResponseComposer(persona, self.calculator, rng=rng)
        self.apology = persona.apology or settings.bot.apology
        self.history_window = settings.llm.history_window

        self.context = ConversationContext()
        self.history = ConversationHistory()
        self.metrics = ConversationMetrics(self.conversation_id)

        self._turn_lock = threading.Lock()

        logger.info("ChatBot created", persona=persona.name)

    def reset(self) -> None:
        """
        Start a new conversation: initial context, empty history, new id.

        Raises:
            TurnInProgressError: a turn is still being processed
        """
        if not self._turn_lock.acquire(blocking=False):
            logger.warning("Reset rejected, turn in progress")
            raise TurnInProgressError(self.conversation_id)
        try:
            if self.metrics.turns > 0:
                logger.info("Conversation finished", **self.metrics.to_log_dict())

            self.conversation_id = str(uuid.uuid4())[:8]
            logger.set_conversation(self.conversation_id)

            self.context = ConversationContext()
            self.history.clear()
            self.metrics = ConversationMetrics(self.conversation_id)

            logger.info("ChatBot reset", persona=self.persona.name)
        finally:
            self._turn_lock.release()

    @property
    def busy(self) -> bool:
        return self._turn_lock.locked()

    # =========================================================================
    # TURN PROCESSING
    # =========================================================================

    def process(self, user_message: str) -> TurnResult:
        """
        Process one user message.

        Raises:
            EmptyMessageError: empty or whitespace-only message (nothing recorded)
            TurnInProgressError: another turn of this conversation is running
        """
        if user_message is None or not user_message.strip():
            raise EmptyMessageError()

        if not self._turn_lock.acquire(blocking=False):
            logger.warning("Turn rejected, previous turn in progress")
            raise TurnInProgressError(self.conversation_id)
        try:
            logger.set_conversation(self.conversation_id)
            return self._process_turn(user_message.strip())
        finally:
            self._turn_lock.release()

    def _process_turn(self, text: str) -> TurnResult:
        self.metrics.start_turn_timer()
        classification = ClassificationResult(intent=DEFAULT_INTENT, confidence=0.0)
        extracted: Dict[str, Any] = {}

        try:
            classification = self.classifier.classify(text, self.context)

            staged = self.context.copy()
            extracted = self.tracker.update(staged, text, classification)
            self.context = staged

            reply, source = self._reply(text, classification)
        except Exception:
            logger.exception("Turn failed, replying with apology", intent=classification.intent)
            reply, source = self.apology, SOURCE_APOLOGY

        self.history.append(ConversationTurn.create(
            user_text=text,
            bot_text=reply,
            intent=classification.intent,
            confidence=classification.confidence,
            source=source,
            metrics=self.context.entities(),
        ))
        self.metrics.record_turn(
            classification.intent,
            classification.confidence,
            sentiment=self.context.sentiment,
            stage=self._stage_label(),
            source=source,
            escalation_level=self.context.escalation_level,
        )
        response_time_ms = self.metrics.turn_records[-1].response_time_ms
        if response_time_ms is not None:
            logger.metric(
                "response_time_ms",
                round(response_time_ms, 1),
                intent=classification.intent,
                source=source,
                persona=self.persona.name,
            )

        logger.info(
            "Turn processed",
            intent=classification.intent,
            confidence=round(classification.confidence, 2),
            source=source,
            extracted=list(extracted),
        )

        return TurnResult(
            text=reply,
            intent=classification.intent,
            confidence=classification.confidence,
            sentiment=self.context.sentiment,
            source=source,
            extracted=extracted,
            quick_actions=self.quick_actions() if flags.quick_actions else [],
            context_note=self.describe_context() if flags.context_display else None,
        )

    def _reply(self, text: str, classification: ClassificationResult):
        """(reply, source): generated text when available, template otherwise"""
        if flags.generative_responses and self.llm is not None:
            prompt = build_prompt(
                self.persona,
                self.context,
                self.history.tail(self.history_window),
                text,
                classification,
            )
            if settings.get_nested("logging.log_prompts", False):
                logger.debug("Generation prompt", prompt=prompt)

            result = self.llm.generate(prompt)
            if result.available:
                return result.text, SOURCE_GENERATED
            if result.status != GenerationStatus.DISABLED:
                self.metrics.record_generation_failure(result.status.value)
                logger.info("Generation unavailable, using templates", status=result.status.value)

        return self.composer.compose(classification, self.context), SOURCE_TEMPLATE

    def _stage_label(self) -> str:
        if self.persona.uses_escalation:
            return f"escalation_{self.context.escalation_level}"
        return self.context.negotiation_stage

    # =========================================================================
    # UI HELPERS
    # =========================================================================

    def quick_actions(self) -> List[Dict[str, str]]:
        actions = self.persona.quick_actions_for(self.context.conversation_stage, self.context.platform)
        return [{"text": a.text, "message": a.message} for a in actions]

    def describe_context(self) -> Optional[str]:
        """'Detected: instagram, 30,000 followers, ...' or the topic being continued"""
        ctx = self.context
        parts = []
        if ctx.platform:
            parts.append(ctx.platform)
        if ctx.followers:
            parts.append(f"{ctx.followers:,} followers")
        if ctx.engagement:
            parts.append(f"{ctx.engagement} engagement")
        if ctx.niche:
            parts.append(f"{ctx.niche} niche")
        budget = self.calculator.budget_for(ctx.service_type)
        if budget is not None:
            parts.append(budget.display_name)
        if ctx.proposed_price and self.persona.budgets:
            parts.append(f"quote {format_money(ctx.proposed_price, self.persona.currency)}")
        if ctx.order_number:
            parts.append(f"order #{ctx.order_number}")

        if parts:
            return "Detected: " + ", ".join(parts)
        if ctx.last_topic and ctx.last_topic != DEFAULT_INTENT:
            return f"Context: Continuing {ctx.last_topic} discussion"
        return None

    def export_history(self, fmt: str = "json") -> str:
        """Conversation as JSON records or a plain-text transcript"""
        if fmt == "text":
            return self.history.render_transcript()
        if fmt == "json":
            return self.history.to_json()
        raise ValueError(f"Unknown export format '{fmt}'")

    def get_status(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "persona": self.persona.name,
            "turns": len(self.history),
            "context": self.context.to_dict(),
        }

    def get_metrics_summary(self) -> Dict[str, Any]:
        summary = self.metrics.get_summary()
        if self.llm is not None:
            summary["llm"] = self.llm.get_stats_dict()
        return summary


def run_interactive(bot: ChatBot) -> None:
    """Interactive mode for manual testing"""
    print("\n" + "=" * 60)
    print(f"{bot.persona.display_name} ({bot.persona.name})")
    print("Commands: /reset /status /metrics /history /export /flags /quit")
    print("=" * 60 + "\n")

    while True:
        try:
            user_input = input("You: ").strip()

            if not user_input:
                continue

            if user_input == "/quit":
                break

            if user_input == "/reset":
                bot.reset()
                print("[Conversation reset]\n")
                continue

            if user_input == "/status":
                print(f"\nStatus: {bot.get_status()}\n")
                continue

            if user_input == "/metrics":
                print(f"\nMetrics: {bot.get_metrics_summary()}\n")
                continue

            if user_input == "/history":
                print("\n" + bot.export_history("text") + "\n")
                continue

            if user_input == "/export":
                print("\n" + bot.export_history("json") + "\n")
                continue

            if user_input == "/flags":
                print(f"\nEnabled flags: {sorted(flags.get_enabled_flags())}\n")
                continue

            result = bot.process(user_input)

            print(f"Bot: {result.text}")

            status_parts = [f"[{result.source}]"]
            if flags.intent_display:
                status_parts.append(f"Intent: {result.intent} ({result.confidence * 100:.0f}%)")
            if result.context_note:
                status_parts.append(result.context_note)
            print(f"  {' | '.join(status_parts)}")

            if result.quick_actions:
                print(f"  Quick actions: {[a['message'] for a in result.quick_actions]}")
            print()

        except KeyboardInterrupt:
            print("\n\nBye!")
            break


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Persona-driven dialogue bot, interactive mode")
    parser.add_argument(
        "--persona",
        type=str,
        default=None,
        help=f"Persona name ({', '.join(available_personas())}) or path to a persona YAML file",
    )
    parser.add_argument(
        "--no-llm",
        action="store_true",
        help="Template replies only",
    )
    parser.add_argument("--seed", type=int, default=None, help="Seed for template choice")
    args = parser.parse_args(argv)

    if args.no_llm:
        flags.set_override("generative_responses", False)

    rng = random.Random(args.seed) if args.seed is not None else None
    bot = ChatBot(args.persona, rng=rng)
    run_interactive(bot)


if __name__ == "__main__":
    main()
