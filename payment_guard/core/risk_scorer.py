"""
Rule-based fraud risk scoring.
Deterministic, configurable, and explainable: every point added is
reported as a factor.
"""

import logging
from decimal import Decimal
from typing import List, Tuple

from pydantic import BaseModel, Field, model_validator

from payment_guard.core.models import PaymentMethod, RiskAssessment, RiskLevel

logger = logging.getLogger(__name__)

FACTOR_HIGH_AMOUNT = "high amount"
FACTOR_UNUSUAL_HOUR = "unusual hour"
FACTOR_HIGH_FREQUENCY = "high frequency"
FACTOR_CARD_PAYMENT = "card payment"


class RiskRules(BaseModel):
    """Business constants for the risk rules."""
    high_amount_threshold: Decimal = Decimal("1000")
    normal_hour_start: int = Field(default=6, ge=0, le=23)
    normal_hour_end: int = Field(default=23, ge=0, le=23)
    velocity_threshold: int = Field(default=5, ge=0)

    high_amount_points: int = Field(default=20, ge=0)
    unusual_hour_points: int = Field(default=15, ge=0)
    high_frequency_points: int = Field(default=25, ge=0)
    card_payment_points: int = Field(default=10, ge=0)

    high_level_score: int = 40
    medium_level_score: int = 20

    @model_validator(mode="after")
    def validate_levels(self) -> "RiskRules":
        if self.medium_level_score > self.high_level_score:
            raise ValueError("Medium level score must not exceed high level score")
        return self

    @classmethod
    def from_settings(cls, settings) -> "RiskRules":
        return cls(
            high_amount_threshold=settings.risk_high_amount_threshold,
            normal_hour_start=settings.risk_normal_hour_start,
            normal_hour_end=settings.risk_normal_hour_end,
            velocity_threshold=settings.risk_velocity_threshold,
            high_amount_points=settings.risk_high_amount_points,
            unusual_hour_points=settings.risk_unusual_hour_points,
            high_frequency_points=settings.risk_high_frequency_points,
            card_payment_points=settings.risk_card_payment_points,
            high_level_score=settings.risk_high_level_score,
            medium_level_score=settings.risk_medium_level_score,
        )


class RiskScorer:
    """
    Additive rule-based risk scorer.

    Scoring only annotates the payment record. Whether a HIGH score blocks
    a payment is the caller's policy.
    """

    def __init__(self, rules: RiskRules | None = None):
        self.rules = rules or RiskRules()

    def score(
        self,
        amount: Decimal,
        method: PaymentMethod,
        hour_of_day: int,
        recent_transaction_count: int,
    ) -> RiskAssessment:
        """
        Score a transaction.

        Args:
            amount: Transaction amount
            method: Payment method
            hour_of_day: Local hour (0-23)
            recent_transaction_count: Transactions by the same identity in
                the velocity window

        Returns:
            RiskAssessment with score, level and triggered factors
        """
        if not 0 <= hour_of_day <= 23:
            raise ValueError(f"hour_of_day out of range: {hour_of_day}")

        total = 0
        factors: List[str] = []

        for points, factor in (
            self._score_amount(Decimal(amount)),
            self._score_hour(hour_of_day),
            self._score_velocity(recent_transaction_count),
            self._score_method(PaymentMethod(method)),
        ):
            if points:
                total += points
                factors.append(factor)

        level = self._level_for(total)

        logger.info(
            f"Risk score calculated: {total}, level: {level.value}, "
            f"factors: {len(factors)}"
        )

        return RiskAssessment(score=total, level=level, factors=factors)

    def _score_amount(self, amount: Decimal) -> Tuple[int, str]:
        if amount > self.rules.high_amount_threshold:
            return self.rules.high_amount_points, FACTOR_HIGH_AMOUNT
        return 0, FACTOR_HIGH_AMOUNT

    def is_unusual_hour(self, hour_of_day: int) -> bool:
        return hour_of_day < self.rules.normal_hour_start or hour_of_day > self.rules.normal_hour_end

    def _score_hour(self, hour_of_day: int) -> Tuple[int, str]:
        if self.is_unusual_hour(hour_of_day):
            return self.rules.unusual_hour_points, FACTOR_UNUSUAL_HOUR
        return 0, FACTOR_UNUSUAL_HOUR

    def _score_velocity(self, recent_transaction_count: int) -> Tuple[int, str]:
        if recent_transaction_count > self.rules.velocity_threshold:
            return self.rules.high_frequency_points, FACTOR_HIGH_FREQUENCY
        return 0, FACTOR_HIGH_FREQUENCY

    def _score_method(self, method: PaymentMethod) -> Tuple[int, str]:
        if method == PaymentMethod.CARD:
            return self.rules.card_payment_points, FACTOR_CARD_PAYMENT
        return 0, FACTOR_CARD_PAYMENT

    def _level_for(self, score: int) -> RiskLevel:
        if score >= self.rules.high_level_score:
            return RiskLevel.HIGH
        if score >= self.rules.medium_level_score:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW
