from __future__ import annotations

import logging
import math

from .price_cache import PriceCache
from .types import Bot, Signal, TradeDecision, TradeIntent

# Relative tolerance applied at the threshold so that a change which is
# mathematically equal to the threshold still triggers under float rounding.
THRESHOLD_REL_TOLERANCE = 1e-9


def _reaches(value: float, threshold: float) -> bool:
    return value >= threshold or math.isclose(value, threshold, rel_tol=THRESHOLD_REL_TOLERANCE)


class SignalEngine:
    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(__name__)

    @staticmethod
    def evaluate(bot: Bot, previous: float | None, current: float) -> TradeDecision:
        threshold = abs(bot.threshold)
        if previous is None:
            return TradeDecision(signal="hold", change=None, threshold=threshold, reason="no previous price")
        if previous <= 0:
            return TradeDecision(signal="hold", change=None, threshold=threshold, reason="invalid previous price")

        change = (current - previous) / previous
        rose = _reaches(change, threshold)
        fell = _reaches(-change, threshold)

        signal: Signal = "hold"
        if rose:
            signal = "sell" if bot.mode == "inverse" else "buy"
        elif fell:
            signal = "buy" if bot.mode == "inverse" else "sell"

        if signal == "hold":
            reason = "price change within threshold"
        elif rose:
            reason = f"price rose by {change:.6f} ({bot.mode})"
        else:
            reason = f"price fell by {change:.6f} ({bot.mode})"

        return TradeDecision(signal=signal, change=change, threshold=threshold, reason=reason)

    def decide(self, bot: Bot, price_cache: PriceCache) -> tuple[TradeDecision, TradeIntent | None]:
        latest = price_cache.latest(bot.pool.symbol)
        pair = price_cache.delta(bot.pool.symbol)
        if latest is None:
            return TradeDecision(signal="hold", change=None, threshold=bot.threshold, reason="no price"), None

        previous = pair[0] if pair else None
        decision = self.evaluate(bot, previous, latest.price)
        if decision.signal == "hold" or not bot.is_active:
            return decision, None

        direction = decision.signal
        amount_in = bot.amount_for(direction)
        if amount_in <= 0:
            return (
                TradeDecision(
                    signal="hold",
                    change=decision.change,
                    threshold=decision.threshold,
                    reason=f"{direction} amount is not configured",
                ),
                None,
            )

        intent = TradeIntent(
            bot_id=bot.bot_id,
            wallet_id=bot.wallet_id,
            direction=direction,
            pool=bot.pool,
            amount_in=amount_in,
            slippage_bps=bot.slippage_bps,
            price=latest.price,
            change=decision.change or 0.0,
        )
        return decision, intent
