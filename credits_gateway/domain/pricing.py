"""Unit cost model - deterministic credit pricing for feature requests

1 credit = 100 words of model usage (input + output). Chat is charged by
word count; every other feature has a flat price. All prices are whole
credits or tenths of a credit, which is also the ledger's storage unit.
"""

import math
from decimal import ROUND_CEILING, Decimal
from typing import Dict, Union

from credits_gateway.domain.models import ActionKind, ChatCost, ChatCostEstimate, Feature

WORDS_PER_CREDIT = 100
OUTPUT_ESTIMATE_RATIO = 1.5  # Expected output length relative to input
TENTHS_PER_CREDIT = 10

FLAT_FEATURE_COSTS: Dict[Feature, int] = {
    Feature.IMAGE_GENERATION: 150,
    Feature.QUIZ_GENERATION: 30,
    Feature.NOTE_GENERATION: 25,
    Feature.SLIDESHOW_GENERATION: 50,
    Feature.NOTE_ENHANCEMENT: 15,
    Feature.TAB_GENERATION: 15,
}

# Risk action kind each feature is scored as
FEATURE_ACTIONS: Dict[Feature, ActionKind] = {
    Feature.CHAT: ActionKind.MESSAGE,
    Feature.IMAGE_GENERATION: ActionKind.IMAGE,
    Feature.QUIZ_GENERATION: ActionKind.QUIZ,
    Feature.NOTE_GENERATION: ActionKind.NOTE,
    Feature.SLIDESHOW_GENERATION: ActionKind.SLIDESHOW,
    Feature.NOTE_ENHANCEMENT: ActionKind.NOTE,
    Feature.TAB_GENERATION: ActionKind.MESSAGE,
}

# Purchasable credit packages: credits and price in dollars
CREDIT_PACKAGES: Dict[str, Dict[str, Union[int, float]]] = {
    "starter": {"credits": 1000, "price": 2.99},
    "popular": {"credits": 5000, "price": 12.99},
    "pro": {"credits": 20000, "price": 44.99},
    "enterprise": {"credits": 100000, "price": 199.99},
}


def count_words(text: str) -> int:
    """Count whitespace-delimited non-empty tokens"""
    if not isinstance(text, str):
        raise TypeError(f"Expected text, got {type(text).__name__}")
    return len(text.split())


def ceil_tenth(value: Union[Decimal, int]) -> Decimal:
    """Round up to one decimal place: 0.08 -> 0.1, 2.01 -> 2.1"""
    tenths = (Decimal(value) * TENTHS_PER_CREDIT).to_integral_value(rounding=ROUND_CEILING)
    return tenths / TENTHS_PER_CREDIT


def text_credits(input_words: int, output_words: int) -> Decimal:
    """Credits for a text exchange of the given size"""
    if input_words < 0 or output_words < 0:
        raise ValueError("Word counts cannot be negative")
    return ceil_tenth(Decimal(input_words + output_words) / WORDS_PER_CREDIT)


def estimate_chat_cost(input_text: str) -> ChatCostEstimate:
    """
    Estimate the cost of a chat message before the model responds.

    Output length is estimated at 1.5x the input, rounded up.

    Example:
        "a b c" -> 3 input words, 5 estimated output words, 0.1 credits
    """
    input_words = count_words(input_text)
    estimated_output_words = math.ceil(input_words * OUTPUT_ESTIMATE_RATIO)

    return ChatCostEstimate(
        input_words=input_words,
        estimated_output_words=estimated_output_words,
        estimated_credits=text_credits(input_words, estimated_output_words),
    )


def actual_chat_cost(input_text: str, output_text: str) -> ChatCost:
    """Cost of a chat exchange once the real response is known"""
    input_words = count_words(input_text)
    output_words = count_words(output_text)

    return ChatCost(
        input_words=input_words,
        output_words=output_words,
        credits_used=text_credits(input_words, output_words),
    )


def flat_cost(feature: Union[Feature, str]) -> Decimal:
    """
    Fixed price of a non-chat feature.

    Raises:
        ValueError: feature is unknown or not flat-priced (programming error)
    """
    try:
        return Decimal(FLAT_FEATURE_COSTS[Feature(feature)])
    except (KeyError, ValueError):
        raise ValueError(f"No flat price configured for feature {feature!r}") from None


def package_credits(package: str) -> Decimal:
    """Credits granted by a purchasable package"""
    if package not in CREDIT_PACKAGES:
        raise ValueError(f"Unknown credit package {package!r}")
    return Decimal(CREDIT_PACKAGES[package]["credits"])


def credits_to_tenths(credits: Union[Decimal, int, str]) -> int:
    """Convert credits to the integer storage unit; rejects sub-tenth precision"""
    tenths = Decimal(credits) * TENTHS_PER_CREDIT
    if tenths < 0:
        raise ValueError(f"Credit amount cannot be negative: {credits}")
    if tenths != tenths.to_integral_value():
        raise ValueError(f"Credit amount finer than 0.1: {credits}")
    return int(tenths)


def tenths_to_credits(tenths: int) -> Decimal:
    return Decimal(tenths) / TENTHS_PER_CREDIT
