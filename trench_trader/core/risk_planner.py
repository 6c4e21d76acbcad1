"""
Risk Planner
Turns a trade decision into a fully resolved order plan or a rejection
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from .models import Account, StrategyStats
from ..utils.config_loader import Settings

logger = logging.getLogger(__name__)

SLIPPAGE_BPS = 5
DEFAULT_STOP_DISTANCE = 0.02
WRONG_SIDE_OFFSET = 0.02
MIN_STOP_ATR_MULTIPLE = 1.0
BASE_SIZE_LEVERAGE_CAP = 0.95
BALANCE_RESERVE = 0.50
KELLY_MIN_TRADES = 15
KELLY_FRACTION = 0.25
KELLY_MAX_FRACTION = 0.25
TRAILING_TP_ATR_MULTIPLE = 1.5
TRAILING_TP_FIXED_PCT = 2.0


@dataclass
class TradeDecision:
    """What to trade, from the entry pipeline"""
    asset_id: str
    side: str  # "LONG" or "SHORT"
    entry: float
    stop_loss: Optional[float]
    take_profits: List[float] = field(default_factory=list)
    score: Optional[float] = None
    atr: Optional[float] = None
    strategy: str = ""
    symbol: str = "?"


@dataclass
class OrderPlan:
    """Resolved order: prices, size in quote currency, margin and fees"""
    asset_id: str
    symbol: str
    side: str
    strategy: str
    entry: float
    stop_loss: float
    take_profits: List[float]
    trailing_tp_distance: Optional[float]
    tp_mode: str
    size: float
    leverage: int
    margin: float
    fees: float
    score: Optional[float] = None
    adjustments: Dict[str, float] = field(default_factory=dict)

    @property
    def stop_distance_pct(self) -> float:
        return abs(self.entry - self.stop_loss) / self.entry * 100


def _is_long(side: str) -> bool:
    return side.upper() in ("LONG", "BUY")


def confidence_multiplier(score: Optional[float]) -> float:
    """Size multiplier from the decision score, 0.5 to 1.2"""
    s = 50.0 if score is None else min(100.0, max(0.0, score))
    return min(1.2, 0.5 + s / 100)


def streak_multiplier(streak: int) -> float:
    """Shrink after loss streaks, grow slightly on win streaks"""
    if streak <= -3:
        return 0.6
    if streak <= -2:
        return 0.75
    if streak >= 3:
        return min(1.15, 1 + streak * 0.03)
    return 1.0


def kelly_cap(stats: Optional[StrategyStats], balance: float, leverage: int):
    """
    Kelly-based size ceiling

    Returns:
        (cap, multiplier): cap is None when no ceiling applies
    """
    if stats is None or stats.trades < KELLY_MIN_TRADES:
        return None, 1.0
    win_rate = stats.win_rate / 100
    reward_risk = stats.avg_reward_risk
    if win_rate <= 0 or reward_risk <= 0:
        return None, 1.0

    kelly_full = win_rate - (1 - win_rate) / reward_risk
    if kelly_full > 0:
        fraction = min(KELLY_MAX_FRACTION, kelly_full * KELLY_FRACTION)
        return balance * fraction * leverage, 1.0
    if kelly_full < -0.1:
        return None, 0.5
    return None, 1.0


def suggest_leverage(score: float, regime: str = "trending", volatility: str = "normal") -> int:
    """Leverage ceiling from signal quality, reduced in chop and high volatility"""
    if score >= 85:
        lev = 10
    elif score >= 75:
        lev = 7
    elif score >= 65:
        lev = 5
    elif score >= 55:
        lev = 3
    elif score >= 45:
        lev = 2
    else:
        lev = 1
    if regime in ("ranging", "mixed"):
        lev = max(1, int(lev * 0.6))
    if volatility in ("high", "extreme"):
        lev = max(1, int(lev * 0.5))
    return lev


def plan(decision: TradeDecision, account: Account, settings: Settings) -> Optional[OrderPlan]:
    """
    Build an order plan

    Deterministic: the result depends only on the arguments.

    Args:
        decision: Trade decision (side, entry, stop, targets, score)
        account: Account (balance, streak, per-strategy stats)
        settings: Clamped account settings

    Returns:
        OrderPlan, or None when no sane plan exists
    """
    if decision is None or not decision.side or not decision.entry or decision.entry <= 0:
        return None

    balance = account.balance
    if not math.isfinite(balance) or balance <= 0:
        return None

    long = _is_long(decision.side)
    leverage = max(1, int(settings.leverage))
    max_stop = settings.max_stop_pct / 100
    adjustments: Dict[str, float] = {}

    # 1. Slippage: long pays more, short receives less
    slip = 1 + SLIPPAGE_BPS / 10_000
    entry = decision.entry * slip if long else decision.entry / slip

    stop = decision.stop_loss
    if stop is None or not math.isfinite(stop) or stop <= 0:
        stop = entry * (1 - DEFAULT_STOP_DISTANCE) if long else entry * (1 + DEFAULT_STOP_DISTANCE)

    # 2. Cap stop distance
    if abs(entry - stop) / entry > max_stop:
        stop = entry * (1 - max_stop) if long else entry * (1 + max_stop)
        adjustments["stop_capped"] = stop

    # 3. Stop on the wrong side of entry
    if (long and stop >= entry) or (not long and stop <= entry):
        stop = entry * (1 - WRONG_SIDE_OFFSET) if long else entry * (1 + WRONG_SIDE_OFFSET)
        adjustments["stop_wrong_side"] = stop

    # 4. Volatility floor, never beyond the cap
    if decision.atr and decision.atr > 0:
        floor = min(decision.atr * MIN_STOP_ATR_MULTIPLE, entry * max_stop)
        if abs(entry - stop) < floor:
            stop = entry - floor if long else entry + floor
            adjustments["stop_floored"] = stop

    # Wrong-side offset can exceed a tight cap
    if abs(entry - stop) / entry > max_stop:
        stop = entry * (1 - max_stop) if long else entry * (1 + max_stop)
        adjustments["stop_capped"] = stop

    # 5. Base size from risk amount and stop distance
    if settings.risk_mode == "dollar":
        risk_amount = settings.risk_dollars_per_trade
    else:
        risk_amount = balance * settings.risk_percent / 100
    stop_distance = abs(entry - stop) / entry
    if stop_distance <= 0 or not math.isfinite(stop_distance):
        stop_distance = DEFAULT_STOP_DISTANCE
    size = min(risk_amount / stop_distance * leverage, balance * leverage * BASE_SIZE_LEVERAGE_CAP)

    # 6. Confidence
    size *= confidence_multiplier(decision.score)

    # 7. Streak
    size *= streak_multiplier(account.stats.streak)

    # 8. Kelly ceiling
    cap, mult = kelly_cap(account.stats.by_strategy.get(decision.strategy), balance, leverage)
    if cap is not None:
        size = min(size, cap)
    size *= mult

    # 9. Max share of balance per trade (applied to margin)
    size = min(size, balance * settings.max_balance_pct_per_trade / 100 * leverage)

    # 10. Margin + fees must fit in the balance
    fee_rate = settings.maker_fee_pct / 100
    max_spend = max(0.0, balance - BALANCE_RESERVE)
    size = min(size, max_spend / (1 / leverage + fee_rate))

    # 11. Reject degenerate plans
    if not math.isfinite(size) or size <= 0:
        return None
    margin = size / leverage
    fees = size * fee_rate
    if margin + fees > balance:
        return None

    take_profits: List[float] = []
    trailing_distance = None
    if settings.tp_mode == "trailing":
        if decision.atr and decision.atr > 0:
            trailing_distance = decision.atr * TRAILING_TP_ATR_MULTIPLE
        else:
            trailing_distance = entry * TRAILING_TP_FIXED_PCT / 100
    else:
        take_profits = [
            tp for tp in decision.take_profits
            if tp and ((long and tp > entry) or (not long and tp < entry))
        ]

    return OrderPlan(
        asset_id=decision.asset_id,
        symbol=decision.symbol,
        side="LONG" if long else "SHORT",
        strategy=decision.strategy,
        entry=entry,
        stop_loss=stop,
        take_profits=take_profits,
        trailing_tp_distance=trailing_distance,
        tp_mode=settings.tp_mode,
        size=size,
        leverage=leverage,
        margin=margin,
        fees=fees,
        score=decision.score,
        adjustments=adjustments
    )
