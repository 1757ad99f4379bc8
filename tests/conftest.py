"""
Shared pytest fixtures for dialogue bot tests.

Provides:
- small synthetic personas (negotiation and escalation variants)
- a mock generative client
- bot factory with seeded randomness
- feature flag cleanup
"""

import random
from unittest.mock import MagicMock

import pytest

from dialogue_bot.feature_flags import flags
from dialogue_bot.llm import GeminiClient, GenerationResult, GenerationStatus
from dialogue_bot.persona import persona_from_dict


TIERS = [
    {"name": "nano", "min": 3000, "max": 6000, "followers": [1000, 10000]},
    {"name": "micro", "min": 15000, "max": 35000, "followers": [10000, 50000]},
    {"name": "macro", "min": 40000, "max": 150000, "followers": [50000, 200000]},
]


def negotiation_persona_data():
    return {
        "name": "test_negotiation",
        "state_machine": "negotiation",
        "currency": "₹",
        "entities": ["followers", "engagement", "platform", "content_type", "niche", "price", "demographics"],
        "lexicon": {"positive": ["great", "happy"], "negative": ["too low", "unfair"]},
        "pricing_intents": ["price_quote", "negotiation"],
        "negotiation": {
            "stage_transitions": {
                "agreement": "finalizing",
                "negotiation": "negotiating",
                "price_quote": "negotiating",
                "introduction": "discussing",
            },
            "counter_offer_intents": ["negotiation", "price_quote"],
        },
        "intents": [
            {"id": "greeting", "keywords": ["hello"], "patterns": ["^hello"]},
            {"id": "introduction", "keywords": ["creator", "influencer"]},
            {"id": "price_quote", "keywords": ["rate", "price"]},
            {"id": "negotiation", "keywords": ["negotiate", "flexible"]},
            {"id": "agreement", "keywords": ["agree", "deal"]},
        ],
        "templates": {
            "greeting": ["Hi on [PLATFORM] with [FOLLOWERS] followers ([TIER])."],
            "price_quote": ["Fair price is [CALCULATED_PRICE]."],
            "negotiation": ["We offer [CALCULATED_PRICE]."],
            "agreement": ["Deal."],
            "default": ["Tell me more. [UNKNOWN]"],
        },
        "follow_ups": [
            {"intent": "greeting", "missing": ["engagement"], "text": "What's your engagement?"},
        ],
        "pricing": {"tiers": {"instagram": {"posts": TIERS}}},
    }


def escalation_persona_data():
    return {
        "name": "test_support",
        "state_machine": "escalation",
        "currency": "$",
        "entities": ["order_number"],
        "lexicon": {"positive": ["good", "great"], "negative": ["bad", "terrible"]},
        "intents": [
            {"id": "order_tracking", "keywords": ["order", "track"], "patterns": ['order\\s*#?\\s*\\d+']},
            {"id": "greeting", "keywords": ["hello"], "patterns": ["^hello"]},
            {"id": "complaint", "keywords": ["terrible", "bad"]},
        ],
        "templates": {
            "order_tracking": ["Let me check your order."],
            "greeting": ["Hello!"],
            "complaint": ["Sorry about that."],
            "default": ["Could you tell me more?"],
        },
        "follow_ups": [
            {"intent": "order_tracking", "requires": ["order_number"], "text": "Looking up #[ORDER_NUMBER]."},
        ],
        "escalation": {"notice": "Connecting you with a specialist."},
    }


@pytest.fixture
def negotiation_persona():
    return persona_from_dict(negotiation_persona_data())


@pytest.fixture
def escalation_persona():
    return persona_from_dict(escalation_persona_data())


# =============================================================================
# Mock generative client
# =============================================================================

@pytest.fixture
def mock_llm():
    """Generative client that is never available"""
    llm = MagicMock(spec=GeminiClient)
    llm.generate.return_value = GenerationResult.unavailable(GenerationStatus.DISABLED)
    llm.get_stats_dict.return_value = {}
    return llm


@pytest.fixture
def generating_llm():
    """Generative client that always answers"""
    llm = MagicMock(spec=GeminiClient)
    llm.generate.return_value = GenerationResult(
        text="Generated reply", status=GenerationStatus.OK, attempts=1
    )
    llm.get_stats_dict.return_value = {}
    return llm


@pytest.fixture
def make_bot(mock_llm):
    """Factory: make_bot(persona, llm=None, seed=0)"""
    from dialogue_bot.bot import ChatBot

    def _create(persona, llm=None, seed=0):
        return ChatBot(persona, llm=llm or mock_llm, rng=random.Random(seed), conversation_id="test")
    return _create


@pytest.fixture(autouse=True)
def reset_flag_overrides():
    flags.clear_all_overrides()
    yield
    flags.clear_all_overrides()
