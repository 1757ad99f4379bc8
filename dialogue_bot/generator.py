"""
Template response composer (the local, always-available reply path).

compose():
1. random template for the intent (persona `default` list as fallback)
2. first matching follow-up rule appended
3. [PLACEHOLDER] substitution from the context; unknown values stay literal
4. price framing on pricing intents (fair-price comparison or counter-offer)
5. escalation notice prefix once the level is above the threshold

Randomness is an injected random.Random so tests can seed it.
"""

import random
import re
from typing import Callable, Dict, Optional

from dialogue_bot.classifier import ClassificationResult
from dialogue_bot.context import ConversationContext
from dialogue_bot.logger import logger
from dialogue_bot.persona import FollowUpRule, Persona
from dialogue_bot.pricing import PriceFairnessCalculator, format_money
from dialogue_bot.settings import settings


PLACEHOLDER_PATTERN = re.compile(r"\[([A-Z_]+)\]")

# Fair-price comparison buckets (proposed / fair)
SIGNIFICANTLY_HIGHER = 1.5
ABOVE = 1.2
BELOW = 0.8


class ResponseComposer:
    """Builds the template reply for one turn"""

    def __init__(
        self,
        persona: Persona,
        calculator: Optional[PriceFairnessCalculator] = None,
        rng: Optional[random.Random] = None,
        escalation_threshold: Optional[int] = None,
    ):
        self.persona = persona
        self.calculator = calculator or PriceFairnessCalculator(persona.pricing, persona.budgets)
        self.rng = rng or random.Random()
        if escalation_threshold is None:
            escalation_threshold = settings.bot.escalation_threshold
        self.escalation_threshold = escalation_threshold

        self._placeholders: Dict[str, Callable[[ConversationContext], Optional[str]]] = {
            "PLATFORM": self._platform,
            "FOLLOWERS": self._followers,
            "TIER": self._tier,
            "NICHE": lambda ctx: ctx.niche,
            "ENGAGEMENT": lambda ctx: ctx.engagement,
            "DEMOGRAPHICS": self._demographics,
            "CALCULATED_PRICE": self._calculated_price,
            "BUDGET_RANGE": self._budget_range,
            "ORDER_NUMBER": lambda ctx: ctx.order_number,
            "SERVICE": self._service,
            "PROPOSED_PRICE": self._proposed_price,
            "COUNTER_OFFER": self._counter_offer,
        }

    # =========================================================================
    # COMPOSE
    # =========================================================================

    def compose(self, classification: ClassificationResult, context: ConversationContext) -> str:
        """
        Args:
            classification: Result for the current message
            context: Context already updated for the current message

        Returns:
            Reply text
        """
        intent = classification.intent
        response = self.choose_template(intent)

        follow_up = self.follow_up_for(intent, context)
        if follow_up:
            response = f"{response} {follow_up.text}"

        response = self.substitute(response, context)

        if intent in self.persona.pricing_intents:
            framing = self.price_framing(context)
            if framing:
                response = f"{response} {framing}"

        if self.needs_escalation(context):
            response = f"{self.persona.escalation_notice} {response}"

        return response

    def choose_template(self, intent: str) -> str:
        templates = self.persona.templates_for(intent)
        if not templates:
            logger.warning("No templates for intent", intent=intent, persona=self.persona.name)
            return ""
        return self.rng.choice(templates)

    def follow_up_for(self, intent: str, context: ConversationContext) -> Optional[FollowUpRule]:
        """First rule whose conditions hold, None otherwise"""
        for rule in self.persona.follow_ups:
            if rule.intent and rule.intent != intent:
                continue
            if intent in rule.skip_intents:
                continue
            if not all(getattr(context, name, None) for name in rule.requires):
                continue
            if any(getattr(context, name, None) for name in rule.missing):
                continue
            return rule
        return None

    def substitute(self, text: str, context: ConversationContext) -> str:
        """Replace known [PLACEHOLDERS]; the rest is left as-is"""

        def replace(match: "re.Match") -> str:
            resolver = self._placeholders.get(match.group(1))
            if resolver is None:
                return match.group(0)
            value = resolver(context)
            return match.group(0) if value is None else str(value)

        return PLACEHOLDER_PATTERN.sub(replace, text)

    def needs_escalation(self, context: ConversationContext) -> bool:
        return (
            self.persona.uses_escalation
            and bool(self.persona.escalation_notice)
            and context.escalation_level > self.escalation_threshold
        )

    # =========================================================================
    # PRICE FRAMING
    # =========================================================================

    def fair_price(self, context: ConversationContext) -> Optional[int]:
        return self.calculator.calculate(
            context.followers,
            context.platform,
            context.content_type,
            context.engagement,
            context.demographics,
            context.niche,
        )

    def price_framing(self, context: ConversationContext) -> Optional[str]:
        """Comparison with the fair price (tier personas) or a counter-offer (budget personas)"""
        if self.persona.pricing is not None:
            return self.price_comparison(context.proposed_price, self.fair_price(context))
        if self.persona.budgets:
            return self.counter_offer_text(context)
        return None

    def price_comparison(self, proposed: Optional[float], fair: Optional[int]) -> Optional[str]:
        if not proposed or not fair:
            return None

        quoted = self._money(proposed)
        fair_text = self._money(fair)
        if proposed > fair * SIGNIFICANTLY_HIGHER:
            return (
                f"Your quote of {quoted} is significantly higher than our calculated fair rate "
                f"of {fair_text} based on industry standards for your metrics."
            )
        if proposed > fair * ABOVE:
            return (
                f"Your quote of {quoted} is above our calculated rate of {fair_text}. "
                f"Can we meet somewhere in the middle?"
            )
        if proposed < fair * BELOW:
            return (
                f"Your rate of {quoted} is actually below our calculated fair rate of {fair_text}. "
                f"We're happy to pay the fair market rate!"
            )
        return f"Your quote of {quoted} aligns well with our calculated fair rate of {fair_text}."

    def counter_offer_text(self, context: ConversationContext) -> Optional[str]:
        if context.proposed_price is None:
            return None

        budget = self.calculator.budget_for(context.service_type)
        if budget is None:
            return "Which service is this quote for?"

        quoted = self._money(context.proposed_price)
        counter = self.calculator.generate_counter_offer(context.proposed_price, context.service_type)
        if counter is None:
            return (
                f"Your quote of {quoted} fits within our budget for {budget.display_name}, "
                f"so we're happy to proceed at your price."
            )
        if counter == budget.max and context.proposed_price > budget.max:
            return (
                f"Your quote of {quoted} is above our maximum budget for {budget.display_name}. "
                f"The best we can offer is {self._money(counter)}."
            )
        return (
            f"Your quote of {quoted} is a little above our preferred budget. "
            f"Could you meet us at {self._money(counter)}?"
        )

    # =========================================================================
    # PLACEHOLDER VALUES
    # =========================================================================

    def _money(self, amount: float) -> str:
        return format_money(amount, self.persona.currency)

    def _platform(self, context: ConversationContext) -> Optional[str]:
        return context.platform.capitalize() if context.platform else None

    def _followers(self, context: ConversationContext) -> Optional[str]:
        return f"{context.followers:,}" if context.followers else None

    def _current_tier(self, context: ConversationContext):
        if not context.followers or self.persona.pricing is None:
            return None
        platform = context.platform
        if not platform or platform not in self.persona.pricing.tiers:
            # Brackets are shared across platforms; use the first priced one
            platform = next(iter(self.persona.pricing.tiers), None)
        if platform is None:
            return None
        return self.calculator.find_tier(context.followers, platform, context.content_type)

    def _tier(self, context: ConversationContext) -> Optional[str]:
        tier = self._current_tier(context)
        return tier.name if tier else None

    def _demographics(self, context: ConversationContext) -> Optional[str]:
        return context.demographics.replace("_", " ") if context.demographics else None

    def _calculated_price(self, context: ConversationContext) -> Optional[str]:
        price = self.fair_price(context)
        return self._money(price) if price else None

    def _budget_range(self, context: ConversationContext) -> Optional[str]:
        budget = self.calculator.budget_for(context.service_type)
        if budget is not None:
            return f"{self._money(budget.preferred)} - {self._money(budget.max)}"
        tier = self._current_tier(context)
        if tier is not None:
            return f"{self._money(tier.min_rate)} - {self._money(tier.max_rate)}"
        return None

    def _service(self, context: ConversationContext) -> Optional[str]:
        budget = self.calculator.budget_for(context.service_type)
        return budget.display_name if budget else None

    def _proposed_price(self, context: ConversationContext) -> Optional[str]:
        return self._money(context.proposed_price) if context.proposed_price else None

    def _counter_offer(self, context: ConversationContext) -> Optional[str]:
        counter = self.calculator.generate_counter_offer(context.proposed_price, context.service_type)
        return self._money(counter) if counter else None
