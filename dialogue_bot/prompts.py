"""
Prompt assembly for the generative collaborator.

Sections, in order: persona instructions, current context, pricing or
budget table, the last N turns, the user message with detected intent and
confidence, response requirements.
"""

from typing import List, Sequence

from dialogue_bot.classifier import ClassificationResult
from dialogue_bot.context import ConversationContext
from dialogue_bot.history import ConversationTurn
from dialogue_bot.persona import Persona
from dialogue_bot.pricing import format_money


NOT_SPECIFIED = "Not specified"

PROMPT_TEMPLATE = """{instructions}

CURRENT CONTEXT:
{context}

{pricing_title}:
{pricing}

CONVERSATION HISTORY:
{history}

USER MESSAGE: "{message}"
DETECTED INTENT: {intent}
CONFIDENCE: {confidence}%

RESPONSE REQUIREMENTS:
{requirements}

Respond as {display_name}:"""


def format_context(persona: Persona, context: ConversationContext) -> str:
    """One line per relevant context field; stage machine fields by persona"""
    lines = [
        f"- Last Topic: {context.last_topic or NOT_SPECIFIED}",
        f"- Sentiment: {context.sentiment}",
    ]
    if persona.uses_escalation:
        lines.append(f"- Escalation Level: {context.escalation_level}")
    else:
        lines.append(f"- Negotiation Stage: {context.negotiation_stage}")
        lines.append(f"- Counter Offers Made: {context.counter_offer_count}")
    if persona.conversation_stages:
        lines.append(f"- Conversation Stage: {context.conversation_stage}")

    for name, value in context.entities().items():
        label = name.replace("_", " ").title()
        if name == "followers":
            value = f"{value:,}"
        elif name == "proposed_price":
            value = format_money(value, persona.currency)
        lines.append(f"- {label}: {value}")
    return "\n".join(lines)


def format_pricing(persona: Persona) -> str:
    """Tier table or service budgets; a placeholder line when the persona has neither"""
    lines: List[str] = []
    if persona.pricing is not None:
        for platform, content_types in persona.pricing.tiers.items():
            for content_type, tiers in content_types.items():
                ranges = ", ".join(
                    f"{format_money(t.min_rate, persona.currency)}-{format_money(t.max_rate, persona.currency)} "
                    f"({t.follower_lower:,}-{t.follower_upper:,} followers, {t.name})"
                    for t in tiers
                )
                lines.append(f"- {platform.title()} {content_type}: {ranges}")
    for budget in persona.budgets.values():
        lines.append(
            f"- {budget.display_name}: preferred {format_money(budget.preferred, persona.currency)}, "
            f"max {format_money(budget.max, persona.currency)}"
        )
    return "\n".join(lines) if lines else "(no pricing data)"


def format_history(turns: Sequence[ConversationTurn]) -> str:
    if not turns:
        return "(start of conversation)"
    lines = []
    for turn in turns:
        lines.append(f"User: {turn.user_text}")
        lines.append(f"Bot: {turn.bot_text}")
    return "\n".join(lines)


def build_prompt(
    persona: Persona,
    context: ConversationContext,
    history: Sequence[ConversationTurn],
    message: str,
    classification: ClassificationResult,
) -> str:
    """
    Args:
        persona: Active persona
        context: Context already updated for this message
        history: Bounded slice of previous turns, oldest first
        message: Current user message
        classification: Result for the current message

    Returns:
        Single prompt string
    """
    has_tiers = persona.pricing is not None
    return PROMPT_TEMPLATE.format(
        instructions=persona.instructions or f"You are {persona.display_name}.",
        context=format_context(persona, context),
        pricing_title="PRICING STRUCTURE" if has_tiers or not persona.budgets else "BUDGETS",
        pricing=format_pricing(persona),
        history=format_history(history),
        message=message,
        intent=classification.intent,
        confidence=f"{classification.confidence * 100:.0f}",
        requirements="\n".join(f"- {r}" for r in persona.response_requirements) or "- Be helpful and concise",
        display_name=persona.display_name or persona.name,
    )
