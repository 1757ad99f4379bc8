"""
Keyword/pattern intent classifier.

For every intent in catalog order:
    score = keyword hits * 1 + pattern matches * 2 + 0.5 if it was the last topic

The strictly highest score wins, ties keep the earlier intent. Nothing
scoring above zero gives the reserved `default` intent with confidence 0.
Weights and the confidence normaliser come from settings.classifier.

Usage:
    classifier = IntentClassifier(persona.catalog)
    result = classifier.classify("Hello", context)
    result.intent, result.confidence   # ("greeting", 1.0)
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional, Sequence

from dialogue_bot.persona import DEFAULT_INTENT, IntentDefinition
from dialogue_bot.settings import settings

if TYPE_CHECKING:
    from dialogue_bot.context import ConversationContext


class EmptyMessageError(ValueError):
    """Raised for empty or whitespace-only input; such input is never classified"""

    def __init__(self, message: str = "Message is empty"):
        super().__init__(message)


@dataclass(frozen=True)
class ClassificationResult:
    intent: str
    confidence: float
    scores: Dict[str, float] = field(default_factory=dict)

    @property
    def is_default(self) -> bool:
        return self.intent == DEFAULT_INTENT


class IntentClassifier:
    """Scores a message against an ordered intent catalog"""

    def __init__(
        self,
        catalog: Sequence[IntentDefinition],
        keyword_weight: Optional[float] = None,
        pattern_weight: Optional[float] = None,
        context_bonus: Optional[float] = None,
        normalizer: Optional[float] = None,
    ):
        weights = settings.classifier.weights
        self.catalog = tuple(catalog)
        self.keyword_weight = weights.keyword if keyword_weight is None else keyword_weight
        self.pattern_weight = weights.pattern if pattern_weight is None else pattern_weight
        self.context_bonus = weights.context_bonus if context_bonus is None else context_bonus
        self.normalizer = settings.classifier.normalizer if normalizer is None else normalizer

    def score(self, intent: IntentDefinition, message: str, last_topic: Optional[str] = None) -> float:
        """Score of a single intent; keywords use the lowercased message, patterns the raw one"""
        text = message.lower()
        score = 0.0
        for keyword in intent.keywords:
            if keyword in text:
                score += self.keyword_weight
        for pattern in intent.patterns:
            if pattern.search(message):
                score += self.pattern_weight
        if last_topic is not None and intent.id == last_topic:
            score += self.context_bonus
        return score

    def classify(
        self,
        message: str,
        context: Optional["ConversationContext"] = None,
    ) -> ClassificationResult:
        """
        Classify a message.

        Args:
            message: Raw user text
            context: Current conversation context (only last_topic is read)

        Returns:
            ClassificationResult with the winning intent and confidence in [0, 1]

        Raises:
            EmptyMessageError: message is empty or whitespace
        """
        if not message or not message.strip():
            raise EmptyMessageError()

        last_topic = context.last_topic if context is not None else None

        scores: Dict[str, float] = {}
        best_intent = DEFAULT_INTENT
        best_score = 0.0
        for intent in self.catalog:
            value = self.score(intent, message, last_topic)
            scores[intent.id] = value
            if value > best_score:
                best_score = value
                best_intent = intent.id

        if best_score <= 0:
            return ClassificationResult(intent=DEFAULT_INTENT, confidence=0.0, scores=scores)

        confidence = min(best_score / self.normalizer, 1.0)
        return ClassificationResult(intent=best_intent, confidence=confidence, scores=scores)
