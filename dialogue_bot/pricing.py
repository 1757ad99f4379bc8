"""
Fair-price calculator for creator partnerships and counter-offers for services.

Influencer personas price a deliverable from a tier table:
    base = mean(tier.min, tier.max)
    price = base * engagement * demographics * niche   (rounded half up)

Service personas answer a quoted price with a counter-offer computed
against a {preferred, max} budget per service type.

Usage:
    calculator = PriceFairnessCalculator(persona.pricing, persona.budgets)
    calculator.calculate(30000, "instagram", "posts", "6%", None, "tech")  # 31625
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from dialogue_bot.logger import logger


Number = Union[int, float]

DEFAULT_CONTENT_TYPES: Dict[str, str] = {
    "instagram": "posts",
    "youtube": "videos",
    "facebook": "posts",
}

DEFAULT_TIER = "nano"

DEFAULT_NICHE_MULTIPLIERS: Dict[str, float] = {
    "fashion": 1.1,
    "beauty": 1.1,
    "tech": 1.15,
    "business": 1.15,
    "fitness": 1.05,
    "lifestyle": 1.0,
    "food": 1.0,
    "travel": 1.05,
}


def round_half_up(value: float) -> int:
    """Round to the nearest integer, .5 goes up"""
    return int(math.floor(value + 0.5))


def format_money(amount: Number, currency: str = "₹") -> str:
    """₹31,625 / ₹1,250.50"""
    if float(amount).is_integer():
        return f"{currency}{int(amount):,}"
    return f"{currency}{amount:,.2f}"


def parse_percentage(value: Any) -> Optional[float]:
    """'6%' -> 6.0, 6 -> 6.0, 'n/a' -> None"""
    if value is None:
        return None
    try:
        return float(str(value).replace("%", "").strip())
    except ValueError:
        return None


@dataclass(frozen=True)
class PricingTier:
    """Follower bracket [follower_lower, follower_upper) with a rate range"""
    name: str
    min_rate: int
    max_rate: int
    follower_lower: int
    follower_upper: int

    def contains(self, followers: Number) -> bool:
        return self.follower_lower <= followers < self.follower_upper

    @property
    def midpoint(self) -> float:
        return (self.min_rate + self.max_rate) / 2


@dataclass(frozen=True)
class EngagementBand:
    """Multiplier for engagement rates below `upper` (None = no upper bound)"""
    upper: Optional[float]
    multiplier: float


DEFAULT_ENGAGEMENT_BANDS: Tuple[EngagementBand, ...] = (
    EngagementBand(upper=2.0, multiplier=0.9),
    EngagementBand(upper=5.0, multiplier=1.0),
    EngagementBand(upper=10.0, multiplier=1.1),
    EngagementBand(upper=None, multiplier=1.2),
)

# (markers, multiplier): each group applies at most once, groups compound
DEFAULT_DEMOGRAPHIC_MULTIPLIERS: Tuple[Tuple[Tuple[str, ...], float], ...] = (
    (("18-24", "gen z"), 1.05),
    (("female",), 1.05),
)


@dataclass(frozen=True)
class PricingTable:
    """platform -> content type -> ordered tiers"""
    tiers: Mapping[str, Mapping[str, Tuple[PricingTier, ...]]]
    default_content_types: Mapping[str, str] = field(
        default_factory=lambda: dict(DEFAULT_CONTENT_TYPES)
    )
    engagement_bands: Tuple[EngagementBand, ...] = DEFAULT_ENGAGEMENT_BANDS
    demographic_multipliers: Tuple[Tuple[Tuple[str, ...], float], ...] = DEFAULT_DEMOGRAPHIC_MULTIPLIERS
    niche_multipliers: Mapping[str, float] = field(
        default_factory=lambda: dict(DEFAULT_NICHE_MULTIPLIERS)
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricingTable":
        """
        Build from the `pricing` section of a persona file.

        Raises:
            KeyError / TypeError / ValueError on malformed data
        """
        tiers: Dict[str, Dict[str, Tuple[PricingTier, ...]]] = {}
        for platform, content_types in data["tiers"].items():
            tiers[platform.lower()] = {}
            for content_type, rows in content_types.items():
                tiers[platform.lower()][content_type.lower()] = tuple(
                    PricingTier(
                        name=row["name"],
                        min_rate=int(row["min"]),
                        max_rate=int(row["max"]),
                        follower_lower=int(row["followers"][0]),
                        follower_upper=int(row["followers"][1]),
                    )
                    for row in rows
                )

        kwargs: Dict[str, Any] = {"tiers": tiers}
        if "default_content_types" in data:
            kwargs["default_content_types"] = dict(data["default_content_types"])
        if "engagement_bands" in data:
            kwargs["engagement_bands"] = tuple(
                EngagementBand(
                    upper=None if row.get("below") is None else float(row["below"]),
                    multiplier=float(row["multiplier"]),
                )
                for row in data["engagement_bands"]
            )
        if "demographic_multipliers" in data:
            kwargs["demographic_multipliers"] = tuple(
                (tuple(m.lower() for m in row["markers"]), float(row["multiplier"]))
                for row in data["demographic_multipliers"]
            )
        if "niche_multipliers" in data:
            kwargs["niche_multipliers"] = {
                k.lower(): float(v) for k, v in data["niche_multipliers"].items()
            }
        return cls(**kwargs)


@dataclass(frozen=True)
class ServiceBudget:
    """What we are willing to pay for one kind of service"""
    service_type: str
    preferred: int
    max: int
    label: str = ""
    keywords: Tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        return self.label or self.service_type.replace("_", " ")


@dataclass(frozen=True)
class PriceQuote:
    """A calculated price with the inputs that produced it"""
    price: int
    platform: str
    content_type: str
    tier: PricingTier
    base_price: float
    multipliers: Dict[str, float] = field(default_factory=dict)


class PriceFairnessCalculator:
    """
    Tier lookup plus multiplicative adjustments.

    A calculator without a tier table (service personas) only answers
    counter-offer questions; calculate() then returns None.
    """

    def __init__(
        self,
        table: Optional[PricingTable] = None,
        budgets: Optional[Mapping[str, ServiceBudget]] = None,
    ):
        self.table = table
        self.budgets = dict(budgets or {})

    # =========================================================================
    # TIER LOOKUP
    # =========================================================================

    def resolve_content_type(self, platform: str, content_type: Optional[str] = None) -> Optional[str]:
        """
        Pick the content type actually priced.

        Unspecified -> platform default; unknown for this platform -> the
        first content type defined for it.
        """
        if self.table is None:
            return None
        platform_pricing = self.table.tiers.get(platform.lower())
        if not platform_pricing:
            return None

        resolved = (content_type or "").lower() or self.table.default_content_types.get(platform.lower())
        if resolved not in platform_pricing:
            resolved = next(iter(platform_pricing))
        return resolved

    def find_tier(
        self,
        followers: Number,
        platform: str,
        content_type: Optional[str] = None,
    ) -> Optional[PricingTier]:
        """First tier whose [lower, upper) holds followers, else the nano tier"""
        resolved = self.resolve_content_type(platform, content_type)
        if resolved is None:
            return None
        tiers = self.table.tiers[platform.lower()][resolved]
        if not tiers:
            return None

        for tier in tiers:
            if tier.contains(followers):
                return tier

        for tier in tiers:
            if tier.name == DEFAULT_TIER:
                return tier
        return tiers[0]

    # =========================================================================
    # MULTIPLIERS
    # =========================================================================

    def engagement_multiplier(self, engagement: Any) -> float:
        rate = parse_percentage(engagement)
        if rate is None:
            return 1.0
        for band in self.table.engagement_bands:
            if band.upper is None or rate < band.upper:
                return band.multiplier
        return 1.0

    def demographic_multiplier(self, demographics: Optional[str]) -> float:
        if not demographics:
            return 1.0
        text = demographics.lower()
        multiplier = 1.0
        for markers, value in self.table.demographic_multipliers:
            if any(marker in text for marker in markers):
                multiplier *= value
        return multiplier

    def niche_multiplier(self, niche: Optional[str]) -> float:
        if not niche:
            return 1.0
        return self.table.niche_multipliers.get(niche.lower(), 1.0)

    # =========================================================================
    # PRICE
    # =========================================================================

    def quote(
        self,
        followers: Optional[Number],
        platform: Optional[str],
        content_type: Optional[str] = None,
        engagement: Any = None,
        demographics: Optional[str] = None,
        niche: Optional[str] = None,
    ) -> Optional[PriceQuote]:
        """Same as calculate() but keeps the breakdown"""
        if not followers or not platform or self.table is None:
            return None

        tier = self.find_tier(followers, platform, content_type)
        if tier is None:
            return None

        base_price = tier.midpoint
        multipliers = {
            "engagement": self.engagement_multiplier(engagement),
            "demographics": self.demographic_multiplier(demographics),
            "niche": self.niche_multiplier(niche),
        }

        price = base_price
        for value in multipliers.values():
            price *= value

        result = PriceQuote(
            price=round_half_up(price),
            platform=platform.lower(),
            content_type=self.resolve_content_type(platform, content_type),
            tier=tier,
            base_price=base_price,
            multipliers=multipliers,
        )

        logger.debug(
            "Fair price calculated",
            price=result.price,
            tier=tier.name,
            platform=result.platform,
            content_type=result.content_type,
        )
        return result

    def calculate(
        self,
        followers: Optional[Number],
        platform: Optional[str],
        content_type: Optional[str] = None,
        engagement: Any = None,
        demographics: Optional[str] = None,
        niche: Optional[str] = None,
    ) -> Optional[int]:
        """
        Recommended price, or None when followers/platform are missing or
        the platform is not priced.
        """
        result = self.quote(followers, platform, content_type, engagement, demographics, niche)
        return result.price if result else None

    # =========================================================================
    # SERVICE BUDGETS
    # =========================================================================

    def budget_for(self, service_type: Optional[str]) -> Optional[ServiceBudget]:
        if not service_type:
            return None
        return self.budgets.get(service_type)

    def generate_counter_offer(self, proposed_price: Optional[Number], service_type: Optional[str]) -> Optional[int]:
        """
        Counter-offer for a quoted price.

        Returns:
            budget max when the quote exceeds it, the midpoint of preferred
            and the quote when it sits between them, None when the quote is
            at or below preferred (their price stands) or nothing is known
        """
        budget = self.budget_for(service_type)
        if budget is None or proposed_price is None:
            return None

        if proposed_price > budget.max:
            return budget.max
        if proposed_price > budget.preferred:
            return round_half_up((budget.preferred + proposed_price) / 2)
        return None
