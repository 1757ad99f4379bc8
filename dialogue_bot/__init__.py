"""
Persona-driven dialogue bot.

Keyword/pattern intent classification, lexicon sentiment, context tracking
with escalation and negotiation stages, fair-price calculation and template
replies, with optional Gemini-generated responses.
"""

__version__ = "1.0.0"
