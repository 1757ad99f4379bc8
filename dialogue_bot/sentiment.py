"""
Lexicon-based sentiment scorer.

Counts how many positive and negative lexicon entries occur in the message
(case-insensitive substring). The strictly larger count wins, a tie
(including 0-0) is neutral.
"""

from enum import Enum
from typing import Tuple

from dialogue_bot.persona import Lexicon


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class SentimentAnalyzer:
    """Polarity from a persona lexicon"""

    def __init__(self, lexicon: Lexicon):
        self.positive = tuple(w.lower() for w in lexicon.positive)
        self.negative = tuple(w.lower() for w in lexicon.negative)

    def counts(self, message: str) -> Tuple[int, int]:
        """(positive hits, negative hits)"""
        text = message.lower()
        positive = sum(1 for word in self.positive if word in text)
        negative = sum(1 for word in self.negative if word in text)
        return positive, negative

    def analyze(self, message: str) -> Sentiment:
        positive, negative = self.counts(message)
        if positive > negative:
            return Sentiment.POSITIVE
        if negative > positive:
            return Sentiment.NEGATIVE
        return Sentiment.NEUTRAL
