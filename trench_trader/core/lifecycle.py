"""
Position Lifecycle Manager
Decides hold, partial exit or full exit for one open position
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
import logging

from .models import Position
from ..utils.config_loader import Settings

logger = logging.getLogger(__name__)

EARLY_BAIL_PCT = -1.5
TIME_LIMIT_MAX_PNL_PCT = 1.5
HARD_TIME_LIMIT_MULTIPLE = 2


@dataclass
class LifecycleDecision:
    """Result of one evaluation; updated_peak must always be persisted"""
    exit: bool
    reason: Optional[str]
    pnl_pct: float
    updated_peak: float
    arm_breakeven: bool = False
    partial_fraction: float = 0.0

    @property
    def partial(self) -> bool:
        return self.partial_fraction > 0


def adaptive_trail(peak_pnl_pct: float, base_trail_pct: float) -> float:
    """
    Trailing width from peak profit

    Tight near breakeven, base width in the middle, at least 8% once the
    position has been 20% up.
    """
    if peak_pnl_pct >= 20:
        return max(base_trail_pct, 8.0)
    if peak_pnl_pct >= 10:
        return base_trail_pct
    return min(base_trail_pct, 5.0)


def breakeven_lock(settings: Settings) -> float:
    """Profit band below which an armed breakeven stop exits"""
    return min(settings.breakeven_lock_pct, settings.breakeven_at_pct / 2)


def evaluate(
    position: Position,
    current_price: float,
    settings: Settings,
    now: Optional[datetime] = None
) -> LifecycleDecision:
    """
    Evaluate an open position against the current price

    Checks run in order and the first exit wins: stop loss, take profit,
    breakeven stop, early bail, time limits, adaptive trailing stop.
    Breakeven arming and partial take-profit are non-terminal.

    Args:
        position: Open position
        current_price: Latest price
        settings: Account settings
        now: Evaluation time (defaults to UTC now)

    Returns:
        LifecycleDecision
    """
    now = now or datetime.now(timezone.utc)
    peak = max(position.peak_price or position.entry_price, position.entry_price)

    if not current_price or current_price <= 0 or position.entry_price <= 0:
        return LifecycleDecision(False, None, 0.0, peak)

    peak = max(peak, current_price)
    pnl_pct = position.pnl_percent(current_price)
    hold = position.hold_minutes(now)
    max_hold = settings.max_hold_minutes

    def exit_with(reason: str) -> LifecycleDecision:
        return LifecycleDecision(True, reason, pnl_pct, peak)

    if pnl_pct <= -settings.stop_loss_pct:
        return exit_with("stop_loss")
    if pnl_pct >= settings.take_profit_pct:
        return exit_with("take_profit")

    # Armed breakeven exits inside a small profit band, not only at flat or below
    if settings.use_breakeven_stop and position.breakeven_armed and pnl_pct <= breakeven_lock(settings):
        return exit_with("breakeven_stop")

    # Red at the halfway mark rarely recovers
    if max_hold / 2 <= hold < max_hold and pnl_pct <= EARLY_BAIL_PCT:
        return exit_with("early_bail")

    if hold >= max_hold and pnl_pct <= TIME_LIMIT_MAX_PNL_PCT:
        return exit_with("time_limit")
    if hold >= max_hold * HARD_TIME_LIMIT_MULTIPLE:
        return exit_with("time_limit_hard")

    if settings.use_trailing_stop and pnl_pct > 0:
        peak_pnl = position.pnl_percent(peak)
        trail = adaptive_trail(peak_pnl, settings.trailing_stop_pct)
        drop_from_peak = (peak - current_price) / peak * 100
        if drop_from_peak >= trail:
            return exit_with(f"trailing_stop({trail:g}%)")

    decision = LifecycleDecision(False, None, pnl_pct, peak)

    if settings.use_breakeven_stop and not position.breakeven_armed and pnl_pct >= settings.breakeven_at_pct:
        decision.arm_breakeven = True

    if (
        settings.use_partial_tp
        and position.partial_sold <= 0
        and pnl_pct >= settings.partial_tp_at_pct
    ):
        decision.partial_fraction = settings.partial_tp_fraction

    return decision
