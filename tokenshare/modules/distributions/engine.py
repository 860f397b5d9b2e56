"""
ProfitSplitEngine — deterministic Decimal arithmetic for a profit distribution.
No I/O here; the service feeds it holder positions and persists the plan.

Rounding policy:
  * admin_share is new_profit * ratio rounded half-up to the currency unit, and
    user_share is the exact remainder, so admin_share + user_share == new_profit.
  * Each holder is credited floor(user_share * tokens / total_tokens) to the
    currency unit. The leftover (under one unit per holder) goes to the largest
    holder, first by user id on ties, so the credits sum to user_share exactly.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, localcontext

from tokenshare.core.errors import InvalidAmount, NotReady
from tokenshare.models.base import MONEY_LIMIT
from tokenshare.modules.distributions.schemas import DistributionPlan, HolderCredit, HolderPosition

# Digits kept for profit_per_token (matches the Numeric(38, 18) column)
PROFIT_PER_TOKEN_PLACES = Decimal("1e-18")


class ProfitSplitEngine:
    """Splits realized profit between the admin and token holders."""

    def __init__(self, admin_ratio: Decimal = Decimal("0.30"), currency_decimals: int = 2) -> None:
        if not Decimal("0") <= admin_ratio <= Decimal("1"):
            raise ValueError(f"admin_ratio must be within [0, 1], got {admin_ratio}")
        self.admin_ratio = admin_ratio
        self.quantum = Decimal(1).scaleb(-currency_decimals)

    def validate_profit(self, new_profit: Decimal) -> Decimal:
        if not new_profit.is_finite() or new_profit <= 0:
            raise InvalidAmount("New profit must be greater than 0", new_profit=str(new_profit))
        if new_profit >= MONEY_LIMIT:
            raise InvalidAmount(
                f"New profit must be less than {MONEY_LIMIT:,}",
                new_profit=str(new_profit),
            )
        with localcontext() as ctx:
            ctx.prec = 50
            exact = new_profit == new_profit.quantize(self.quantum)
        if not exact:
            raise InvalidAmount(
                f"New profit cannot be more precise than {self.quantum}",
                new_profit=str(new_profit),
            )
        return new_profit

    def compute_split(self, new_profit: Decimal, holders: Sequence[HolderPosition]) -> DistributionPlan:
        new_profit = self.validate_profit(new_profit)
        positions = sorted((h for h in holders if h.tokens > 0), key=lambda h: str(h.user_id))
        if not positions:
            raise NotReady("No active token holders found for this project")

        with localcontext() as ctx:
            ctx.prec = 50
            admin_share = (new_profit * self.admin_ratio).quantize(self.quantum, rounding=ROUND_HALF_UP)
            user_share = new_profit - admin_share
            total_tokens = sum(h.tokens for h in positions)
            profit_per_token = (user_share / total_tokens).quantize(PROFIT_PER_TOKEN_PLACES)

            amounts = [
                (user_share * h.tokens / total_tokens).quantize(self.quantum, rounding=ROUND_DOWN)
                for h in positions
            ]

        remainder = user_share - sum(amounts, Decimal("0"))
        if remainder:
            largest = max(range(len(positions)), key=lambda i: (positions[i].tokens, -i))
            amounts[largest] += remainder

        return DistributionPlan(
            total_profit=new_profit,
            admin_share=admin_share,
            user_share=user_share,
            profit_per_token=profit_per_token,
            total_user_tokens=total_tokens,
            credits=[
                HolderCredit(user_id=h.user_id, token_amount=h.tokens, profit_amount=amount)
                for h, amount in zip(positions, amounts)
            ],
        )
