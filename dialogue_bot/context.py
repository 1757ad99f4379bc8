"""
Conversation context: per-session state, entity extraction and the
escalation / negotiation stage machines.

The orchestrator owns one ConversationContext per session. ContextTracker is
the only writer; the orchestrator runs it on a copy and commits the copy
once the update finished, so a failed turn never leaves half-written state.

Usage:
    tracker = ContextTracker(persona)
    staged = context.copy()
    extracted = tracker.update(staged, message, classification)
    context = staged
"""

import re
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Optional, Sequence

from dialogue_bot.classifier import ClassificationResult
from dialogue_bot.logger import logger
from dialogue_bot.persona import Persona
from dialogue_bot.sentiment import Sentiment, SentimentAnalyzer


INITIAL_NEGOTIATION_STAGE = "initial"
INITIAL_CONVERSATION_STAGE = "greeting"


@dataclass
class ConversationContext:
    """Mutable state of one conversation"""
    last_topic: Optional[str] = None
    sentiment: str = Sentiment.NEUTRAL.value

    # Stage machines
    escalation_level: int = 0
    negotiation_stage: str = INITIAL_NEGOTIATION_STAGE
    counter_offer_count: int = 0
    conversation_stage: str = INITIAL_CONVERSATION_STAGE

    # Entities
    order_number: Optional[str] = None
    proposed_price: Optional[float] = None
    platform: Optional[str] = None
    followers: Optional[int] = None
    engagement: Optional[str] = None
    niche: Optional[str] = None
    content_type: Optional[str] = None
    demographics: Optional[str] = None
    service_type: Optional[str] = None

    def copy(self) -> "ConversationContext":
        return replace(self)

    def reset(self) -> None:
        """Back to initial values"""
        for f in fields(self):
            setattr(self, f.name, f.default)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def entities(self) -> Dict[str, Any]:
        """Entity fields that are set"""
        return {
            name: getattr(self, name)
            for name in ENTITY_FIELDS
            if getattr(self, name) is not None
        }


# entity kind (persona `entities`) -> context field
ENTITY_KIND_TO_FIELD = {
    "order_number": "order_number",
    "price": "proposed_price",
    "platform": "platform",
    "followers": "followers",
    "engagement": "engagement",
    "niche": "niche",
    "content_type": "content_type",
    "demographics": "demographics",
    "service_type": "service_type",
}
ENTITY_FIELDS = tuple(ENTITY_KIND_TO_FIELD.values())


# =============================================================================
# ENTITY EXTRACTION
# =============================================================================

ORDER_NUMBER_PATTERN = re.compile(r"order\s*#?\s*(\d+)", re.IGNORECASE)
PRICE_PATTERN = re.compile(
    r"(?:₹|rs\.?|rupees?|\$|usd|inr)?\s*(\d[\d,]*(?:\.\d{2})?)",
    re.IGNORECASE,
)
FOLLOWERS_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*([km])?\s*followers?", re.IGNORECASE)
ENGAGEMENT_PATTERNS = (
    re.compile(r"(\d+(?:\.\d+)?)%\s*engagement", re.IGNORECASE),
    re.compile(r"engagement(?:\s*rate)?\s*(?:is|of|:)?\s*(\d+(?:\.\d+)?)\s*%", re.IGNORECASE),
)

FOLLOWER_UNITS = {"k": 1_000, "m": 1_000_000}

PLATFORMS = ("instagram", "youtube", "tiktok", "twitter", "facebook")

# keyword -> content type, checked in order ("reel" before "post")
CONTENT_TYPES = (
    ("reel", "reels"),
    ("short", "shorts"),
    ("video", "videos"),
    ("post", "posts"),
)

NICHES = (
    "fashion",
    "beauty",
    "tech",
    "business",
    "fitness",
    "lifestyle",
    "food",
    "travel",
    "gaming",
    "education",
)

YOUTH_MARKERS = ("18-24", "gen z")


class EntityExtractor:
    """
    Pulls entities out of a single message.

    Only the entity kinds listed for the persona are extracted. Misses are
    simply absent from the result, extraction never raises.
    """

    def __init__(self, entities: Sequence[str], budgets: Optional[Dict[str, Any]] = None):
        self.entities = tuple(entities)
        self.budgets = dict(budgets or {})

    def extract(self, message: str) -> Dict[str, Any]:
        """
        Args:
            message: Raw user text

        Returns:
            {context field: value} for every entity found in the message
        """
        text = message.lower()
        extracted: Dict[str, Any] = {}

        for kind in self.entities:
            method = getattr(self, f"_extract_{kind}", None)
            if method is None:
                continue
            value = method(message, text)
            if value is not None:
                extracted[ENTITY_KIND_TO_FIELD[kind]] = value

        return extracted

    def _extract_order_number(self, message: str, text: str) -> Optional[str]:
        match = ORDER_NUMBER_PATTERN.search(message)
        return match.group(1) if match else None

    def _extract_price(self, message: str, text: str) -> Optional[float]:
        # Matches any number, a follower count included
        match = PRICE_PATTERN.search(message)
        if not match:
            return None
        digits = match.group(1).replace(",", "")
        try:
            return float(digits)
        except ValueError:
            return None

    def _extract_followers(self, message: str, text: str) -> Optional[int]:
        match = FOLLOWERS_PATTERN.search(message)
        if not match:
            return None
        count = float(match.group(1))
        unit = (match.group(2) or "").lower()
        count *= FOLLOWER_UNITS.get(unit, 1)
        return int(round(count))

    def _extract_engagement(self, message: str, text: str) -> Optional[str]:
        for pattern in ENGAGEMENT_PATTERNS:
            match = pattern.search(message)
            if match:
                return f"{match.group(1)}%"
        return None

    def _extract_platform(self, message: str, text: str) -> Optional[str]:
        for platform in PLATFORMS:
            if platform in text:
                return platform
        return None

    def _extract_content_type(self, message: str, text: str) -> Optional[str]:
        for keyword, content_type in CONTENT_TYPES:
            if keyword in text:
                return content_type
        return None

    def _extract_niche(self, message: str, text: str) -> Optional[str]:
        for niche in NICHES:
            if niche in text:
                return niche
        return None

    def _extract_demographics(self, message: str, text: str) -> Optional[str]:
        parts = []
        if any(marker in text for marker in YOUTH_MARKERS):
            parts.append("18-24")
        if "female" in text:
            parts.append("female_majority")
        elif "male" in text:
            parts.append("male_majority")
        return ", ".join(parts) if parts else None

    def _extract_service_type(self, message: str, text: str) -> Optional[str]:
        for service_type, budget in self.budgets.items():
            if any(keyword in text for keyword in budget.keywords):
                return service_type
        return None


# =============================================================================
# TRACKER
# =============================================================================

class ContextTracker:
    """
    Applies one turn to a context, in fixed order:
    last topic, sentiment, entities, stage machine, conversation stage.
    """

    def __init__(self, persona: Persona, analyzer: Optional[SentimentAnalyzer] = None):
        self.persona = persona
        self.analyzer = analyzer or SentimentAnalyzer(persona.lexicon)
        self.extractor = EntityExtractor(persona.entities, persona.budgets)

    def update(
        self,
        context: ConversationContext,
        message: str,
        classification: ClassificationResult,
    ) -> Dict[str, Any]:
        """
        Mutate `context` for this turn.

        Returns:
            Entities extracted from this message ({field: value})
        """
        context.last_topic = classification.intent
        context.sentiment = self.analyzer.analyze(message).value

        extracted = self.extractor.extract(message)
        for name, value in extracted.items():
            setattr(context, name, value)

        if self.persona.uses_escalation:
            self._update_escalation(context)
        else:
            self._update_negotiation(context, classification.intent)

        self._advance_conversation_stage(context)
        return extracted

    def _update_escalation(self, context: ConversationContext) -> None:
        previous = context.escalation_level
        if context.sentiment == Sentiment.NEGATIVE.value:
            context.escalation_level += 1
        else:
            context.escalation_level = max(0, context.escalation_level - 1)

        if context.escalation_level != previous:
            logger.event(
                "escalation_changed",
                from_level=previous,
                to_level=context.escalation_level,
            )

    def _update_negotiation(self, context: ConversationContext, intent: str) -> None:
        if intent in self.persona.counter_offer_intents:
            context.counter_offer_count += 1

        # Plain overwrite: finalizing -> negotiating is allowed
        target = self.persona.stage_transitions.get(intent)
        if target and target != context.negotiation_stage:
            logger.event(
                "stage_transition",
                from_stage=context.negotiation_stage,
                to_stage=target,
                intent=intent,
            )
            context.negotiation_stage = target

    def _advance_conversation_stage(self, context: ConversationContext) -> None:
        """At most one step per turn; a `jump_on` field short-cuts to its stage"""
        stages = self.persona.conversation_stages
        if not stages:
            return

        for previous, stage in zip(stages, stages[1:]):
            if (
                context.conversation_stage == previous.name
                and stage.requires
                and getattr(context, stage.requires, None)
            ):
                context.conversation_stage = stage.name
                return

        for stage in stages:
            if (
                stage.jump_on
                and getattr(context, stage.jump_on, None)
                and context.conversation_stage != stage.name
            ):
                context.conversation_stage = stage.name
                return
