"""
Credit pricing per metered service.

Every ServiceKind maps to exactly one pricing function. The per-unit rate
comes from service_credit_costs; fractional results are rounded up.
"""
from decimal import Decimal, ROUND_CEILING
from typing import Callable, Dict

from charachat.models.usage import ServiceKind, UsageMetrics

PricingFn = Callable[[UsageMetrics, Decimal], int]

_THOUSAND = Decimal(1000)


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def per_thousand_tokens(metrics: UsageMetrics, rate: Decimal) -> int:
    tokens = (metrics.input_tokens or 0) + (metrics.output_tokens or 0)
    return _ceil(Decimal(tokens) / _THOUSAND * rate)


def flat(metrics: UsageMetrics, rate: Decimal) -> int:
    return _ceil(rate)


def per_image(metrics: UsageMetrics, rate: Decimal) -> int:
    images = metrics.images_processed or 1
    return _ceil(Decimal(images) * rate)


def per_thousand_characters(metrics: UsageMetrics, rate: Decimal) -> int:
    characters = metrics.characters_processed or 0
    return _ceil(Decimal(characters) / _THOUSAND * rate)


def per_minute(metrics: UsageMetrics, rate: Decimal) -> int:
    minutes = metrics.additional_metadata.get("duration_minutes") or 1
    return _ceil(Decimal(str(minutes)) * rate)


PRICING: Dict[ServiceKind, PricingFn] = {
    ServiceKind.LLM_CHAT_SAFE: per_thousand_tokens,
    ServiceKind.LLM_CHAT_NSFW: per_thousand_tokens,
    ServiceKind.LLM_STORY_GENERATION_SFW: flat,
    ServiceKind.LLM_STORY_GENERATION_NSFW: flat,
    ServiceKind.IMAGE_GENERATION: per_image,
    ServiceKind.TTS_DEFAULT: per_thousand_characters,
    ServiceKind.STT_DEFAULT: per_minute,
}

# Seeded rates: (credits per unit, unit description)
DEFAULT_SERVICE_COSTS = {
    ServiceKind.LLM_CHAT_SAFE: (Decimal("1"), "Credits per 1k chat tokens"),
    ServiceKind.LLM_CHAT_NSFW: (Decimal("2"), "Credits per 1k chat tokens"),
    ServiceKind.LLM_STORY_GENERATION_SFW: (Decimal("5"), "Credits per generated story"),
    ServiceKind.LLM_STORY_GENERATION_NSFW: (Decimal("5"), "Credits per generated story"),
    ServiceKind.IMAGE_GENERATION: (Decimal("10"), "Credits per generated image"),
    ServiceKind.TTS_DEFAULT: (Decimal("1"), "Credits per 1k characters spoken"),
    ServiceKind.STT_DEFAULT: (Decimal("1"), "Credits per minute transcribed"),
}


def calculate_credits(service_type: ServiceKind, metrics: UsageMetrics, credits_per_unit: Decimal) -> int:
    """Credits to charge for one usage record (never negative)."""
    return max(PRICING[ServiceKind(service_type)](metrics, Decimal(str(credits_per_unit))), 0)
