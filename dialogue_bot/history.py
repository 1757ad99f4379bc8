"""
Conversation history: immutable turns in insertion order.

Export formats:
- JSON records {timestamp, user, bot, intent, confidence, source, metrics}
- plain-text transcript for humans

Usage:
    history = ConversationHistory()
    history.append(ConversationTurn.create("Hello", "Hi!", "greeting", 1.0))
    restored = ConversationHistory.from_json(history.to_json())
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

SOURCE_TEMPLATE = "template"
SOURCE_GENERATED = "generated"
SOURCE_APOLOGY = "apology"


@dataclass(frozen=True)
class ConversationTurn:
    user_text: str
    bot_text: str
    intent: str
    confidence: float
    timestamp: datetime
    source: str = SOURCE_TEMPLATE
    metrics: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        user_text: str,
        bot_text: str,
        intent: str,
        confidence: float,
        source: str = SOURCE_TEMPLATE,
        metrics: Optional[Dict[str, Any]] = None,
    ) -> "ConversationTurn":
        """New turn stamped with the current UTC time"""
        return cls(
            user_text=user_text,
            bot_text=bot_text,
            intent=intent,
            confidence=confidence,
            timestamp=datetime.now(timezone.utc),
            source=source,
            metrics=dict(metrics or {}),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "user": self.user_text,
            "bot": self.bot_text,
            "intent": self.intent,
            "confidence": self.confidence,
            "source": self.source,
            "metrics": dict(self.metrics),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ConversationTurn":
        return cls(
            user_text=record["user"],
            bot_text=record["bot"],
            intent=record["intent"],
            confidence=float(record["confidence"]),
            timestamp=datetime.fromisoformat(record["timestamp"]),
            source=record.get("source", SOURCE_TEMPLATE),
            metrics=dict(record.get("metrics") or {}),
        )


class ConversationHistory:
    """Append-only ordered list of turns; cleared only by a session reset"""

    def __init__(self, turns: Optional[List[ConversationTurn]] = None):
        self._turns: List[ConversationTurn] = list(turns or [])

    def append(self, turn: ConversationTurn) -> None:
        self._turns.append(turn)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(list(self._turns))

    def __len__(self) -> int:
        return len(self._turns)

    def __getitem__(self, index: int) -> ConversationTurn:
        return self._turns[index]

    def tail(self, n: int) -> List[ConversationTurn]:
        """Last n turns, oldest first"""
        if n <= 0:
            return []
        return self._turns[-n:]

    def clear(self) -> None:
        self._turns.clear()

    # =========================================================================
    # EXPORT / IMPORT
    # =========================================================================

    def to_records(self) -> List[Dict[str, Any]]:
        return [turn.to_record() for turn in self._turns]

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_records(), indent=indent, ensure_ascii=False, default=str)

    @classmethod
    def from_records(cls, records: List[Dict[str, Any]]) -> "ConversationHistory":
        return cls([ConversationTurn.from_record(r) for r in records])

    @classmethod
    def from_json(cls, data: str) -> "ConversationHistory":
        return cls.from_records(json.loads(data))

    def render_transcript(self) -> str:
        """Human-readable transcript, one block per turn"""
        if not self._turns:
            return "(empty conversation)"

        blocks = []
        for i, turn in enumerate(self._turns, 1):
            stamp = turn.timestamp.strftime("%Y-%m-%d %H:%M:%S")
            blocks.append(
                f"#{i} [{stamp}] intent={turn.intent} confidence={turn.confidence:.2f}\n"
                f"User: {turn.user_text}\n"
                f"Bot: {turn.bot_text}"
            )
        return "\n\n".join(blocks)
