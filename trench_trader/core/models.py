"""
Core data model
Candidates, positions and account state shared by the engine components
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from ..utils.config_loader import Settings


class PositionStatus(Enum):
    """Position lifecycle status"""
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class AccountMode(Enum):
    """Execution mode of an account"""
    PAPER = "paper"
    LIVE = "live"


@dataclass
class Candidate:
    """Scored, ephemeral asset snapshot from one aggregator refresh"""
    asset_id: str
    symbol: str = "?"
    name: str = ""
    price: float = 0.0

    # Price change percentages; None when the provider did not report it
    change_24h: float = 0.0
    change_1h: Optional[float] = None
    change_5m: Optional[float] = None

    volume_24h: float = 0.0
    liquidity: float = 0.0
    buy_volume_1h: float = 0.0
    sell_volume_1h: float = 0.0
    buy_volume_5m: float = 0.0
    sell_volume_5m: float = 0.0
    buy_pressure: Optional[float] = None
    num_buyers_1h: int = 0
    num_buyers_5m: int = 0
    holder_count: int = 0
    organic_score: float = 0.0
    is_verified: bool = False

    source: str = ""
    source_count: int = 1
    quality_score: float = 0.0

    @property
    def volume_1h(self) -> float:
        return self.buy_volume_1h + self.sell_volume_1h

    @property
    def volume_5m(self) -> float:
        return self.buy_volume_5m + self.sell_volume_5m


@dataclass
class Position:
    """
    A single bot position

    Only the lifecycle fields (peak, breakeven flag, partial quantity) change
    while OPEN; the transition to CLOSED happens once.
    """
    account_id: str
    asset_id: str
    entry_price: float
    quantity: float
    cost_basis: float
    symbol: str = "?"
    name: str = ""
    side: str = "BUY"
    is_paper: bool = True
    strategy: str = ""
    position_id: Optional[int] = None

    peak_price: float = 0.0
    breakeven_armed: bool = False
    partial_sold: float = 0.0
    realized_pnl: float = 0.0

    status: PositionStatus = PositionStatus.OPEN
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    exit_price: Optional[float] = None
    exit_time: Optional[datetime] = None
    exit_reason: Optional[str] = None
    amount_out: Optional[float] = None
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None
    tx_hash: Optional[str] = None

    def __post_init__(self):
        if not self.peak_price:
            self.peak_price = self.entry_price

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def pnl_percent(self, price: float) -> float:
        """Unrealized P&L percent at a given price"""
        if self.entry_price <= 0:
            return 0.0
        return (price - self.entry_price) / self.entry_price * 100

    def hold_minutes(self, now: datetime) -> float:
        return (now - self.opened_at).total_seconds() / 60


@dataclass
class RiskState:
    """Daily loss baseline and loss streak of an account"""
    daily_pnl_start: Optional[float] = None
    daily_pnl_start_at: Optional[datetime] = None
    realized_pnl_today: float = 0.0
    consecutive_losses: int = 0
    paused_reason: Optional[str] = None
    paused_at: Optional[datetime] = None


@dataclass
class StrategyStats:
    """Closed-trade history of one strategy, feeds the Kelly cap"""
    trades: int = 0
    wins: int = 0
    total_win_pct: float = 0.0
    total_loss_pct: float = 0.0

    @property
    def win_rate(self) -> float:
        """Win rate in percent"""
        return self.wins / self.trades * 100 if self.trades else 0.0

    @property
    def avg_reward_risk(self) -> float:
        """Average win size over average loss size"""
        losses = self.trades - self.wins
        if self.wins == 0 or losses == 0 or self.total_loss_pct == 0:
            return 0.0
        avg_win = self.total_win_pct / self.wins
        avg_loss = abs(self.total_loss_pct) / losses
        return avg_win / avg_loss


@dataclass
class AccountStats:
    """Lifetime trading statistics"""
    total_pnl: float = 0.0
    wins: int = 0
    losses: int = 0
    best_trade: float = 0.0
    worst_trade: float = 0.0
    # Positive for a win streak, negative for a loss streak
    streak: int = 0
    by_strategy: Dict[str, StrategyStats] = field(default_factory=dict)


@dataclass
class Account:
    """Account state owned by a single bot"""
    account_id: str
    mode: AccountMode = AccountMode.PAPER
    balance: float = 1000.0
    settings: Settings = field(default_factory=Settings)
    risk: RiskState = field(default_factory=RiskState)
    stats: AccountStats = field(default_factory=AccountStats)
    wallet_address: str = ""
    sealed_key: str = ""
    blacklist: List[str] = field(default_factory=list)
    enabled: bool = True

    @property
    def is_paper(self) -> bool:
        return self.mode == AccountMode.PAPER
