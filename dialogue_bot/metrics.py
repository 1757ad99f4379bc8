"""
Per-conversation metrics.

Usage:
    from dialogue_bot.metrics import ConversationMetrics

    metrics = ConversationMetrics("conv_1")
    metrics.start_turn_timer()
    metrics.record_turn("greeting", 1.0, sentiment="neutral", stage="initial", source="template")
    summary = metrics.get_summary()
"""

import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dialogue_bot.settings import settings


@dataclass
class TurnRecord:
    """One processed turn"""
    turn_number: int
    intent: str
    confidence: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sentiment: Optional[str] = None
    stage: Optional[str] = None
    source: str = "template"
    response_time_ms: Optional[float] = None


class ConversationMetrics:
    """
    Metrics for one conversation.

    Collects:
    - turn count and intent sequence
    - sentiment history and stage distribution
    - reply sources (template / generated / apology)
    - generation failures by status
    - response times
    """

    def __init__(self, conversation_id: Optional[str] = None, escalation_threshold: Optional[int] = None):
        self.conversation_id = conversation_id
        if escalation_threshold is None:
            escalation_threshold = settings.bot.escalation_threshold
        self.escalation_threshold = escalation_threshold
        self.created_at = datetime.now(timezone.utc)
        self.reset()

    def reset(self) -> None:
        self.turns = 0
        self.intents_sequence: List[str] = []
        self.stage_turns: Dict[str, int] = defaultdict(int)
        self.sentiment_history: List[str] = []
        self.source_counts: Dict[str, int] = defaultdict(int)
        self.generation_failures: Dict[str, int] = defaultdict(int)
        self.max_escalation_level = 0
        self.turn_records: List[TurnRecord] = []
        self._turn_started: Optional[float] = None

    def start_turn_timer(self) -> None:
        self._turn_started = time.time()

    def record_turn(
        self,
        intent: str,
        confidence: float,
        sentiment: Optional[str] = None,
        stage: Optional[str] = None,
        source: str = "template",
        escalation_level: int = 0,
    ) -> None:
        """
        Record a finished turn.

        Args:
            intent: Classified intent
            confidence: Classifier confidence
            sentiment: Message sentiment
            stage: Negotiation stage (or escalation level as text)
            source: Where the reply came from
            escalation_level: Current escalation level
        """
        self.turns += 1
        self.intents_sequence.append(intent)
        if stage:
            self.stage_turns[stage] += 1
        if sentiment:
            self.sentiment_history.append(sentiment)
        self.source_counts[source] += 1
        self.max_escalation_level = max(self.max_escalation_level, escalation_level)

        response_time_ms = None
        if self._turn_started is not None:
            response_time_ms = (time.time() - self._turn_started) * 1000
            self._turn_started = None

        self.turn_records.append(TurnRecord(
            turn_number=self.turns,
            intent=intent,
            confidence=confidence,
            sentiment=sentiment,
            stage=stage,
            source=source,
            response_time_ms=response_time_ms,
        ))

    def record_generation_failure(self, status: str) -> None:
        self.generation_failures[status] += 1

    @property
    def fallback_count(self) -> int:
        """Turns answered from templates or with the apology"""
        return self.source_counts.get("template", 0) + self.source_counts.get("apology", 0)

    def get_average_response_time_ms(self) -> Optional[float]:
        times = [r.response_time_ms for r in self.turn_records if r.response_time_ms is not None]
        if times:
            return sum(times) / len(times)
        return None

    def get_dominant_sentiment(self) -> Optional[str]:
        if not self.sentiment_history:
            return None
        return Counter(self.sentiment_history).most_common(1)[0][0]

    def _determine_outcome(self) -> str:
        if "agreement" in self.intents_sequence:
            return "agreed"
        if "rejection" in self.intents_sequence:
            return "rejected"
        if self.max_escalation_level > self.escalation_threshold:
            return "escalated"
        return "in_progress"

    def get_summary(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "created_at": self.created_at.isoformat(),
            "total_turns": self.turns,
            "intents_sequence": list(self.intents_sequence),
            "unique_intents": len(set(self.intents_sequence)),
            "stage_distribution": dict(self.stage_turns),
            "dominant_sentiment": self.get_dominant_sentiment(),
            "max_escalation_level": self.max_escalation_level,
            "source_counts": dict(self.source_counts),
            "fallback_count": self.fallback_count,
            "fallback_rate": (self.fallback_count / self.turns * 100) if self.turns > 0 else 0,
            "generation_failures": dict(self.generation_failures),
            "average_response_time_ms": self.get_average_response_time_ms(),
            "outcome": self._determine_outcome(),
        }

    def to_log_dict(self) -> Dict[str, Any]:
        """Short version for logging"""
        return {
            "conversation_id": self.conversation_id,
            "total_turns": self.turns,
            "fallback_count": self.fallback_count,
            "outcome": self._determine_outcome(),
            "avg_response_ms": self.get_average_response_time_ms(),
        }
