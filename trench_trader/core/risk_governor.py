"""
Risk Governor
Daily loss limit and loss-streak circuit breaker per account
"""

from datetime import datetime, timezone
from typing import Optional, Tuple
import logging

from .models import Account, StrategyStats
from ..utils.config_loader import Settings

logger = logging.getLogger(__name__)


class RiskGovernor:
    """
    Tracks realized P&L and loss streaks, decides when to pause a bot

    - Daily baseline resets on the first activity of a new UTC day
    - Pauses on daily loss % of the day-start balance, measured on equity
      (cash balance plus the cost basis still held in open positions)
    - Pauses on N consecutive losing closes
    """

    def reset_daily_if_new_day(self, account: Account, now: Optional[datetime] = None) -> bool:
        """
        Start a new daily baseline when the calendar day changed

        Returns:
            True if the baseline was reset
        """
        now = now or datetime.now(timezone.utc)
        risk = account.risk
        start_at = risk.daily_pnl_start_at

        if start_at is not None and start_at.date() == now.date() and risk.daily_pnl_start is not None:
            return False

        if start_at is not None:
            logger.info(
                f"{account.account_id}: new trading day, previous day P&L ${risk.realized_pnl_today:.2f}"
            )
        risk.daily_pnl_start = account.balance
        risk.daily_pnl_start_at = now
        risk.realized_pnl_today = 0.0
        return True

    def record_close(
        self,
        account: Account,
        pnl: float,
        pnl_pct: float = 0.0,
        strategy: str = "",
        now: Optional[datetime] = None
    ) -> None:
        """
        Record a closed position

        Args:
            account: Account that owned the position
            pnl: Realized P&L in quote currency
            pnl_pct: Realized P&L percent (feeds per-strategy stats)
            strategy: Strategy that opened the position
            now: Close time
        """
        self.reset_daily_if_new_day(account, now)

        risk = account.risk
        stats = account.stats
        risk.realized_pnl_today += pnl
        stats.total_pnl += pnl

        if pnl > 0:
            stats.wins += 1
            risk.consecutive_losses = 0
            stats.best_trade = max(stats.best_trade, pnl)
            stats.streak = stats.streak + 1 if stats.streak > 0 else 1
        else:
            stats.losses += 1
            risk.consecutive_losses += 1
            stats.worst_trade = min(stats.worst_trade, pnl)
            stats.streak = stats.streak - 1 if stats.streak < 0 else -1

        if strategy:
            strat = stats.by_strategy.setdefault(strategy, StrategyStats())
            strat.trades += 1
            if pnl > 0:
                strat.wins += 1
                strat.total_win_pct += pnl_pct
            else:
                strat.total_loss_pct += pnl_pct

        logger.info(
            f"{account.account_id}: close recorded P&L=${pnl:.2f}, "
            f"daily=${risk.realized_pnl_today:.2f}, losing streak={risk.consecutive_losses}"
        )

    def daily_loss_pct(self, account: Account, open_cost: float = 0.0) -> float:
        """
        Loss since the day-start balance, positive when down

        Args:
            account: Account to measure
            open_cost: Cost basis of the account's open positions, added back
                to the cash balance so that buying is not counted as losing
        """
        start = account.risk.daily_pnl_start
        if not start:
            return 0.0
        equity = account.balance + open_cost
        return (start - equity) / start * 100

    def check(
        self,
        account: Account,
        settings: Settings,
        now: Optional[datetime] = None,
        open_cost: float = 0.0
    ) -> Tuple[bool, str]:
        """
        Decide whether the account must pause

        Args:
            account: Account to check
            settings: Account settings
            now: Check time
            open_cost: Cost basis of the account's open positions

        Returns:
            Tuple of (paused, reason)
        """
        now = now or datetime.now(timezone.utc)
        risk = account.risk

        start_at = risk.daily_pnl_start_at
        if settings.max_daily_loss_pct > 0 and start_at is not None and start_at.date() == now.date():
            loss_pct = self.daily_loss_pct(account, open_cost)
            if loss_pct >= settings.max_daily_loss_pct:
                return True, f"Daily loss limit ({loss_pct:.1f}%)"
            if loss_pct >= settings.max_daily_loss_pct * 0.8:
                logger.warning(f"{account.account_id}: approaching daily loss limit ({loss_pct:.1f}%)")

        limit = settings.consecutive_losses_to_pause
        if limit > 0 and risk.consecutive_losses >= limit:
            return True, f"{limit} consecutive losses"

        return False, "OK"

    def pause(self, account: Account, reason: str, now: Optional[datetime] = None) -> None:
        account.risk.paused_reason = reason
        account.risk.paused_at = now or datetime.now(timezone.utc)
        logger.warning(f"{account.account_id}: PAUSED - {reason}")
