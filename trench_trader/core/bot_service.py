"""
Trench Bot Service
Registry of running bots and the entry / exit ticks they execute
"""

import asyncio
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from .api_client import MarketDataProvider
from .candidate_aggregator import CandidateAggregator, MarketCheck, passes_entry_filters
from .dexscreener_client import DexScreenerClient
from .errors import ConfigurationInvalid, DataUnavailable, ErrorKind, PersistenceConflict, TradingError
from .execution_adapter import (
    ExecutionAdapter, ExecutionResult, LiveExecutionAdapter, SimulatedExecutionAdapter
)
from .key_vault import KeyVault
from .lifecycle import evaluate
from .mobula_client import MobulaClient
from .models import Account, AccountMode, Candidate, Position
from .momentum_tracker import MomentumTracker
from .position_store import PositionStore
from .risk_governor import RiskGovernor
from .risk_planner import TradeDecision, plan
from .scheduler import AccountScheduler, LoopType, SchedulerConfig

from ..utils.config_loader import (
    AccountConfig, ConfigManager, ProviderConfig, ServiceConfig, Settings,
    PAUSE_EXITS_ONLY, STRATEGY_PROFILES, MEMECOIN, get_config
)
from ..utils.logger import BotLog, TradeLogger, setup_logging
from ..utils.notifier import NotificationDispatcher

logger = logging.getLogger(__name__)

MAX_MOMENTUM_PRICE_LOOKUPS = 30


class BotState(Enum):
    """Lifecycle state of a registered bot"""
    RUNNING = "running"
    PAUSED = "paused"   # exits only, entry loop stopped by the risk governor


@dataclass
class BotSession:
    """In-memory state of one running bot"""
    account: Account
    strategy: str
    scheduler: AccountScheduler
    momentum: MomentumTracker
    log: BotLog
    state: BotState = BotState.RUNNING
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    scan_count: int = 0
    trades_opened: int = 0
    trades_closed: int = 0

    @property
    def account_id(self) -> str:
        return self.account.account_id

    def uptime_seconds(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        return round((now - self.started_at).total_seconds())


def _compact_usd(value: float) -> str:
    value = value or 0.0
    return f"${value / 1000:.0f}k" if value >= 1000 else f"${value:.0f}"


class TrenchBotService:
    """
    Control surface and tick logic for all trading bots

    Features:
    - start / stop / status per account, all idempotent
    - Shared candidate aggregator per strategy, momentum tracker per account
    - Entry tick: risk check, scan, momentum confirmation, filters, sizing, buy
    - Exit tick: price open positions, lifecycle evaluation, sells
    - Risk governor pause with stop_all or exits_only policy
    """

    def __init__(
        self,
        store: PositionStore,
        providers: List[MarketDataProvider],
        price_provider: MarketDataProvider,
        paper_executor: ExecutionAdapter,
        live_executor: Optional[ExecutionAdapter] = None,
        market_checker: Optional[Any] = None,
        service_config: ServiceConfig = None,
        provider_config: ProviderConfig = None,
        notifier: Optional[NotificationDispatcher] = None,
        trade_logger: Optional[TradeLogger] = None,
        governor: Optional[RiskGovernor] = None,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.providers = providers
        self.price_provider = price_provider
        self.paper_executor = paper_executor
        self.live_executor = live_executor
        self.market_checker = market_checker
        self.service_config = service_config or ServiceConfig()
        self.provider_config = provider_config or ProviderConfig()
        self.notifier = notifier or NotificationDispatcher()
        self.trade_logger = trade_logger
        self.governor = governor or RiskGovernor()
        self._clock = clock

        # Registries
        self._sessions: Dict[str, BotSession] = {}
        self._aggregators: Dict[str, CandidateAggregator] = {}
        self._control_lock = asyncio.Lock()

    @property
    def chain(self) -> str:
        return self.provider_config.chain

    def aggregator_for(self, strategy: str) -> CandidateAggregator:
        """Shared aggregator of a strategy, created on first use"""
        aggregator = self._aggregators.get(strategy)
        if aggregator is None:
            aggregator = CandidateAggregator(
                self.providers,
                STRATEGY_PROFILES[strategy],
                timeout_seconds=self.provider_config.candidate_timeout_seconds
            )
            self._aggregators[strategy] = aggregator
        return aggregator

    def session(self, account_id: str) -> Optional[BotSession]:
        return self._sessions.get(account_id)

    @property
    def running_accounts(self) -> List[str]:
        return list(self._sessions)

    def _is_current(self, session: BotSession) -> bool:
        """Session is still the registered bot of its account"""
        return self._sessions.get(session.account_id) is session

    def _can_enter(self, session: BotSession) -> bool:
        return self._is_current(session) and session.state == BotState.RUNNING

    def _executor(self, account: Account) -> ExecutionAdapter:
        if account.is_paper:
            return self.paper_executor
        if self.live_executor is None:
            raise ConfigurationInvalid(f"Live execution is not enabled for {account.account_id}")
        return self.live_executor

    # ==================== Accounts ====================

    async def seed_accounts(self, configs: List[AccountConfig]) -> List[str]:
        """
        Create or refresh accounts from config definitions

        Settings, blacklist and wallet come from the config; balance, risk
        state and statistics already in the store are kept.
        """
        seeded = []
        for cfg in configs:
            account = await self.store.load_account(cfg.account_id)
            mode = AccountMode.LIVE if cfg.mode == AccountMode.LIVE.value else AccountMode.PAPER
            if account is None:
                account = Account(account_id=cfg.account_id, balance=cfg.balance)
                logger.info(f"Created account {cfg.account_id} ({mode.value}, ${cfg.balance:.2f})")

            account.mode = mode
            account.enabled = cfg.enabled
            account.settings = Settings.from_dict(cfg.settings)
            account.blacklist = list(cfg.blacklist)
            account.wallet_address = cfg.wallet_address
            account.sealed_key = cfg.sealed_key
            await self.store.save_account(account)
            seeded.append(cfg.account_id)
        return seeded

    # ==================== Control surface ====================

    async def start(self, account_id: str) -> Dict:
        """
        Start the bot of an account

        Returns:
            {"already": True} if running, {"resumed": True} for a paused
            exits-only bot, otherwise {"started": True}
        """
        async with self._control_lock:
            session = self._sessions.get(account_id)
            if session is not None:
                if session.state == BotState.PAUSED:
                    return await self._resume(session)
                return {"already": True}

            account = await self.store.load_account(account_id)
            if account is None:
                raise ConfigurationInvalid(f"Unknown account: {account_id}")
            self._executor(account)

            if account.risk.paused_reason:
                logger.info(f"{account_id}: clearing previous pause ({account.risk.paused_reason})")
                account.risk.paused_reason = None
                account.risk.consecutive_losses = 0
                await self.store.save_account(account)

            settings = account.settings
            profile = settings.profile
            scheduler = AccountScheduler(
                account_id,
                SchedulerConfig.from_profile(
                    profile,
                    max_consecutive_errors=self.service_config.max_consecutive_errors,
                    error_cooldown_seconds=self.service_config.error_cooldown_seconds
                )
            )
            session = BotSession(
                account=account,
                strategy=settings.strategy,
                scheduler=scheduler,
                momentum=MomentumTracker(
                    window_seconds=profile.momentum_window_seconds,
                    min_change_pct=profile.momentum_min_pct,
                    max_age_seconds=self.service_config.momentum_max_age_seconds
                ),
                log=BotLog(account_id, max_entries=self.service_config.log_entries),
            )
            scheduler.set_entry_callback(lambda: self._entry_tick(session))
            scheduler.set_exit_callback(lambda: self._exit_tick(session))
            scheduler.set_error_callback(
                lambda loop_type, error: self._log_loop_error(session, loop_type, error)
            )
            self._sessions[account_id] = session

            label = "Meme Bot" if settings.strategy == MEMECOIN else "Scalp Bot"
            session.log.add(
                f"{label} ({account.mode.value}) - TP:{settings.take_profit_pct:g}% "
                f"SL:{settings.stop_loss_pct:g}% hold:{settings.max_hold_minutes:g}m | "
                f"{profile.momentum_window_seconds:g}s mom +{profile.momentum_min_pct:g}%"
            )

            # First entry tick runs immediately and seeds the momentum tracker
            await scheduler.start()
            return {"started": True}

    async def _resume(self, session: BotSession) -> Dict:
        account = session.account
        account.risk.paused_reason = None
        account.risk.consecutive_losses = 0
        await self.store.save_account(account)
        session.state = BotState.RUNNING
        session.scheduler.start_loop(LoopType.ENTRY)
        session.log.add("Bot RESUMED")
        return {"resumed": True}

    async def stop(self, account_id: str) -> Dict:
        """
        Stop the bot of an account

        Timers are cancelled; an in-flight tick finishes but performs no
        further side effects.

        Returns:
            {"already": True} if not running, otherwise the session counters
        """
        async with self._control_lock:
            session = self._sessions.pop(account_id, None)
            if session is None:
                return {"already": True}

            await session.scheduler.stop()
            session.log.add("Bot STOPPED")
            return {
                "stopped": True,
                "scan_count": session.scan_count,
                "trades_opened": session.trades_opened,
                "trades_closed": session.trades_closed
            }

    async def stop_all(self) -> Dict[str, Dict]:
        results = {}
        for account_id in list(self._sessions):
            results[account_id] = await self.stop(account_id)
        return results

    def status(self, account_id: str) -> Dict:
        """Status of a bot, {"running": False} if not registered"""
        session = self._sessions.get(account_id)
        if session is None:
            return {"running": False}
        return {
            "running": True,
            "state": session.state.value,
            "strategy": session.strategy,
            "mode": session.account.mode.value,
            "started_at": session.started_at.isoformat(),
            "scan_count": session.scan_count,
            "trades_opened": session.trades_opened,
            "trades_closed": session.trades_closed,
            "uptime": session.uptime_seconds(),
            "balance": session.account.balance,
            "paused_reason": session.account.risk.paused_reason,
            "last_action": session.log.last_action,
            "log": session.log.recent(self.service_config.status_log_entries),
            "scheduler": session.scheduler.get_stats()
        }

    async def entry_tick(self, account_id: str) -> Optional[Dict]:
        """Run one entry tick now; None if not running or already in progress"""
        session = self._sessions.get(account_id)
        if session is None:
            return None
        return await session.scheduler.run_once(LoopType.ENTRY)

    async def exit_tick(self, account_id: str) -> Optional[Dict]:
        """Run one exit tick now; None if not running or already in progress"""
        session = self._sessions.get(account_id)
        if session is None:
            return None
        return await session.scheduler.run_once(LoopType.EXIT)

    async def wait_idle(self) -> None:
        """Wait for in-flight ticks of every bot"""
        for session in list(self._sessions.values()):
            await session.scheduler.wait_idle()

    async def _log_loop_error(self, session: BotSession, loop_type: LoopType, error: Exception) -> None:
        session.log.add(f"{loop_type.value.capitalize()} error: {error}", logging.ERROR)

    # ==================== Risk ====================

    async def _pause(self, session: BotSession, reason: str) -> None:
        account = session.account
        self.governor.pause(account, reason)
        await self.store.save_account(account)
        session.log.add(f"PAUSED: {reason}", logging.WARNING)
        self.notifier.send(account.account_id, "Trench bot paused", reason)

        if self.service_config.pause_policy == PAUSE_EXITS_ONLY:
            session.state = BotState.PAUSED
            session.scheduler.stop_loop(LoopType.ENTRY)
        else:
            await self.stop(account.account_id)

    async def _risk_check(self, account: Account, now: Optional[datetime] = None) -> Tuple[bool, str]:
        open_positions = await self.store.open_positions(account.account_id, is_paper=account.is_paper)
        open_cost = sum(p.cost_basis for p in open_positions)
        return self.governor.check(account, account.settings, now, open_cost=open_cost)

    async def _in_cooldown(self, account: Account, asset_id: str, now: datetime) -> bool:
        """Recently closed in this asset; losers cool down longer"""
        hours = account.settings.cooldown_hours
        if hours <= 0:
            return False
        closed = await self.store.last_closed(account.account_id, asset_id)
        if closed is None or closed.exit_time is None:
            return False
        if (closed.pnl_pct or 0) <= 0:
            hours *= self.service_config.cooldown_loss_multiplier
        return (now - closed.exit_time).total_seconds() / 3600 < hours

    async def _market_check(self, candidate: Candidate) -> Optional[MarketCheck]:
        if self.market_checker is None:
            return None
        try:
            return await asyncio.wait_for(
                self.market_checker.get_token_markets(self.chain, candidate.asset_id),
                timeout=self.provider_config.request_timeout_seconds
            )
        except (DataUnavailable, asyncio.TimeoutError) as e:
            # Holder checks are skipped when the data source is down
            logger.debug(f"Market check for {candidate.symbol} unavailable: {e}")
            return None

    async def _fresh_price(self, asset_id: str) -> Optional[float]:
        try:
            price = await asyncio.wait_for(
                self.price_provider.fetch_fresh_price(self.chain, asset_id),
                timeout=self.provider_config.request_timeout_seconds
            )
        except (DataUnavailable, asyncio.TimeoutError) as e:
            logger.debug(f"Fresh price for {asset_id} unavailable: {e}")
            return None
        return price if price and price > 0 else None

    async def _bulk_prices(self, asset_ids: List[str]) -> Dict[str, float]:
        if not asset_ids:
            return {}
        return await asyncio.wait_for(
            self.price_provider.fetch_prices(self.chain, asset_ids),
            timeout=self.provider_config.request_timeout_seconds
        )

    # ==================== Entry tick ====================

    def _decision(self, candidate: Candidate, entry_price: float, settings: Settings) -> TradeDecision:
        return TradeDecision(
            asset_id=candidate.asset_id,
            side="LONG",
            entry=entry_price,
            stop_loss=entry_price * (1 - settings.stop_loss_pct / 100),
            take_profits=[entry_price * (1 + settings.take_profit_pct / 100)],
            score=candidate.quality_score,
            strategy=settings.strategy,
            symbol=candidate.symbol
        )

    async def _entry_tick(self, session: BotSession) -> Optional[Dict]:
        """
        Scan for new entries

        Order per candidate: cooldown, momentum confirmation, entry filters,
        fresh-price re-check, planner, execution. At most max_buys_per_scan
        buys per tick.
        """
        if not self._can_enter(session):
            return None
        session.scan_count += 1

        account = session.account
        settings = account.settings
        now = datetime.now(timezone.utc)
        bot_log = session.log

        # Risk check
        self.governor.reset_daily_if_new_day(account, now)
        paused, reason = await self._risk_check(account, now)
        if paused:
            await self._pause(session, reason)
            return {"paused": reason}

        candidates = await self.aggregator_for(session.strategy).refresh(self.chain)
        if not candidates:
            bot_log.add("No trending tokens found, waiting...")
            return {"candidates": 0}

        open_positions = await self.store.open_positions(account.account_id)
        open_count = len(open_positions)
        slots = settings.max_open_positions - open_count
        if slots <= 0:
            if session.scan_count % 3 == 0:
                bot_log.add(f"Monitoring {open_count} positions ({len(candidates)} tokens tracked)")
            return {"candidates": 0, "slots": 0}

        held = {p.asset_id for p in open_positions}
        pool = [
            c for c in candidates
            if c.asset_id not in held and c.asset_id not in account.blacklist and c.price > 0
        ][:self.service_config.max_candidates_per_scan]
        if not pool:
            bot_log.add(f"Scanning... {len(candidates)} tokens, 0 candidates after filters")
            return {"candidates": 0, "slots": slots}

        # Live prices for assets inside their momentum window
        clock_now = self._clock()
        session.momentum.sweep(clock_now)
        watching = session.momentum.watching(clock_now)[:MAX_MOMENTUM_PRICE_LOOKUPS]
        try:
            momentum_prices = await self._bulk_prices(watching)
        except (DataUnavailable, asyncio.TimeoutError) as e:
            logger.debug(f"Momentum price refresh failed: {e}")
            momentum_prices = {}

        if not account.is_paper and not account.sealed_key:
            bot_log.add("No bot wallet connected", logging.WARNING)
            return {"candidates": len(pool), "slots": slots}

        executor = self._executor(account)
        max_buys = min(self.service_config.max_buys_per_scan, slots)
        bought = momentum_waiting = filtered = cooldown_blocked = 0

        for candidate in pool:
            if bought >= max_buys:
                break
            if account.is_paper and account.balance < settings.amount_per_trade_usd:
                bot_log.add("Insufficient paper balance")
                break

            try:
                outcome = await self._try_entry(session, executor, candidate, momentum_prices, now)
            except Exception as e:
                logger.error(f"{account.account_id}: entry for {candidate.symbol} failed: {e}", exc_info=True)
                bot_log.add(f"Entry error {candidate.symbol}: {e}", logging.ERROR)
                continue

            if outcome == "stop":
                break
            if outcome == "bought":
                bought += 1
            elif outcome == "cooldown":
                cooldown_blocked += 1
            elif outcome == "momentum":
                momentum_waiting += 1
            elif outcome == "filtered":
                filtered += 1

        # Always log the scan summary
        parts = [f"{len(pool)} candidates", f"{slots} slots"]
        if bought:
            parts.append(f"{bought} bought")
        if filtered:
            parts.append(f"{filtered} filtered")
        if cooldown_blocked:
            parts.append(f"{cooldown_blocked} cooldown")
        if momentum_waiting:
            parts.append(f"{momentum_waiting} momentum")
        bot_log.add(f"Scan: {' | '.join(parts)}")

        return {
            "candidates": len(pool),
            "slots": slots,
            "bought": bought,
            "filtered": filtered,
            "cooldown": cooldown_blocked,
            "momentum": momentum_waiting
        }

    async def _try_entry(
        self,
        session: BotSession,
        executor: ExecutionAdapter,
        candidate: Candidate,
        momentum_prices: Dict[str, float],
        now: datetime
    ) -> str:
        """
        Run one candidate through the entry pipeline

        Returns:
            Outcome: bought, cooldown, momentum, filtered, skip, or stop
            when the scan must end
        """
        account = session.account
        settings = account.settings
        bot_log = session.log

        # Cheap checks first, provider calls last
        if await self._in_cooldown(account, candidate.asset_id, now):
            return "cooldown"

        ref_price = momentum_prices.get(candidate.asset_id, candidate.price)
        momentum = session.momentum.observe(candidate.asset_id, ref_price, self._clock())
        if not momentum.ready:
            return "momentum"

        market = await self._market_check(candidate) if settings.use_entry_filters else None
        if not passes_entry_filters(candidate, settings, account.blacklist, market):
            return "filtered"

        # Skip if the pump reversed since confirmation
        fresh_price = await self._fresh_price(candidate.asset_id)
        if fresh_price and ref_price > 0:
            drop_pct = (ref_price - fresh_price) / ref_price * 100
            if drop_pct > settings.profile.fresh_drop_skip_pct:
                bot_log.add(f"SKIP {candidate.symbol} price dropped {drop_pct:.1f}% since confirm")
                return "skip"
        entry_price = fresh_price or candidate.price

        order = plan(self._decision(candidate, entry_price, settings), account, settings)
        if order is None:
            bot_log.add(f"SKIP {candidate.symbol} no valid order plan")
            return "skip"

        if not self._can_enter(session):
            logger.info(f"{account.account_id}: bot stopped during scan, abandoning entries")
            return "stop"

        try:
            result = await executor.open_position(account, candidate, order, entry_price)
        except TradingError as e:
            logger.error(f"{account.account_id}: buy {candidate.symbol} failed: {e}")
            bot_log.add(f"Buy failed {candidate.symbol}: {e}", logging.ERROR)
            return "skip"

        if not result.success:
            bot_log.add(f"Buy failed {candidate.symbol}: {result.error}", logging.WARNING)
            if result.error_kind == ErrorKind.INSUFFICIENT_BALANCE:
                return "stop"
            return "skip"

        session.trades_opened += 1
        self._report_buy(session, candidate, result, momentum.change_pct)
        return "bought"

    def _report_buy(
        self,
        session: BotSession,
        candidate: Candidate,
        result: ExecutionResult,
        momentum_pct: float
    ) -> None:
        position = result.position
        account_id = session.account_id

        if position.is_paper:
            h1 = f" 1h:+{candidate.change_1h:.1f}%" if candidate.change_1h else ""
            bp = f" bp:{candidate.buy_pressure * 100:.0f}%" if candidate.buy_pressure else ""
            velocity = candidate.volume_1h / candidate.liquidity if candidate.liquidity > 0 else 0.0
            holders = f" hldr:{candidate.holder_count}" if candidate.holder_count else ""
            session.log.add(
                f"BUY {position.symbol} ${position.cost_basis:.2f} @ ${position.entry_price:.8f} "
                f"({h1}{bp} vel:{velocity:.1f}x score:{candidate.quality_score:.0f} "
                f"vol:{_compact_usd(candidate.volume_24h)} liq:{_compact_usd(candidate.liquidity)}"
                f"{holders} mom:+{momentum_pct:.1f}%)"
            )
            self.notifier.send(
                account_id, f"Trench BUY {position.symbol}",
                f"${position.cost_basis:.2f} @ ${position.entry_price:.8f}"
            )
        else:
            amount_sol = result.metadata.get("amount_sol", 0.0)
            session.log.add(f"LIVE BUY {position.symbol} {amount_sol:g} SOL @ ${position.entry_price:.8f}")
            self.notifier.send(account_id, f"Trench LIVE BUY {position.symbol}", f"{amount_sol:g} SOL")

        if self.trade_logger:
            self.trade_logger.log_trade({
                "event": "open",
                "account_id": account_id,
                "position_id": position.position_id,
                "asset_id": position.asset_id,
                "symbol": position.symbol,
                "strategy": position.strategy,
                "paper": position.is_paper,
                "entry_price": position.entry_price,
                "quantity": position.quantity,
                "cost_basis": position.cost_basis,
                "score": candidate.quality_score,
                "tx_hash": position.tx_hash
            })

    # ==================== Exit tick ====================

    async def _exit_prices(self, session: BotSession, positions: List[Position]) -> Dict[str, float]:
        held = [p.asset_id for p in positions]
        try:
            return await self._bulk_prices(held)
        except (DataUnavailable, asyncio.TimeoutError) as e:
            # Fall back to the last aggregator snapshot
            logger.warning(f"{session.account_id}: bulk price fetch failed ({e}), using cached candidates")
            cached = self.aggregator_for(session.strategy).cached(self.chain)
            return {c.asset_id: c.price for c in cached if c.asset_id in held and c.price > 0}

    async def _exit_tick(self, session: BotSession) -> Optional[Dict]:
        """
        Manage open positions

        Prices every open position, persists the peak and breakeven flag,
        executes partial and full exits and feeds closes to the governor.
        """
        if not self._is_current(session):
            return None

        account = session.account
        positions = await self.store.open_positions(account.account_id, is_paper=account.is_paper)
        if not positions:
            return {"open": 0, "closed": 0}

        prices = await self._exit_prices(session, positions)
        closed = 0

        for position in positions:
            price = prices.get(position.asset_id)
            if not price or price <= 0:
                price = await self._fresh_price(position.asset_id)
            if not price:
                continue

            try:
                if await self._manage_position(session, position, price):
                    closed += 1
            except TradingError as e:
                logger.error(f"{account.account_id}: exit handling for {position.symbol} failed: {e}")
                session.log.add(f"Exit error {position.symbol}: {e}", logging.ERROR)
            except Exception as e:
                logger.error(
                    f"{account.account_id}: unexpected exit error for {position.symbol}: {e}", exc_info=True
                )
                session.log.add(f"Exit error {position.symbol}: {e}", logging.ERROR)

        if closed and self._is_current(session) and session.state == BotState.RUNNING:
            paused, reason = await self._risk_check(account)
            if paused:
                await self._pause(session, reason)

        return {"open": len(positions), "closed": closed}

    async def _manage_position(self, session: BotSession, position: Position, price: float) -> bool:
        """Apply one lifecycle decision, returns True if the position was closed"""
        account = session.account
        settings = account.settings
        decision = evaluate(position, price, settings)

        if not self._is_current(session):
            return False

        if decision.updated_peak > position.peak_price:
            position.peak_price = decision.updated_peak
            await self.store.update_position(position.position_id, peak_price=decision.updated_peak)

        if decision.arm_breakeven:
            position.breakeven_armed = True
            await self.store.update_position(position.position_id, breakeven_armed=True)
            session.log.add(f"Breakeven set on {position.symbol} (up {decision.pnl_pct:.1f}%)")
            return False

        executor = self._executor(account)

        if decision.partial:
            result = await executor.reduce_position(
                account, position, price, decision.partial_fraction, "partial_tp"
            )
            if result.success:
                session.log.add(
                    f"PARTIAL {position.symbol} {decision.partial_fraction * 100:.0f}% "
                    f"PnL: ${result.pnl:.2f} ({result.pnl_pct:.1f}%)"
                )
                self._log_trade("partial", account, position, result, "partial_tp")
            else:
                session.log.add(f"Partial sell failed {position.symbol}: {result.error}", logging.WARNING)
            return False

        if not decision.exit:
            return False

        result = await self._close_with_retry(account, position, price, decision.reason)
        if not result.success:
            session.log.add(f"Sell failed {position.symbol}: {result.error}", logging.WARNING)
            return False

        session.trades_closed += 1
        self.governor.record_close(account, result.pnl, result.pnl_pct, position.strategy)
        await self.store.save_account(account)

        prefix = "SELL" if position.is_paper else "LIVE SELL"
        slip = ""
        if position.is_paper and isinstance(self.paper_executor, SimulatedExecutionAdapter):
            slip = f" [slip: -{self.paper_executor.slippage * 100:.1f}%]"
        session.log.add(
            f"{prefix} {position.symbol} [{decision.reason}] "
            f"PnL: ${result.pnl:.2f} ({result.pnl_pct:.1f}%){slip}"
        )
        self.notifier.send(
            account.account_id, f"Trench {prefix} {position.symbol}",
            f"PnL: ${result.pnl:.2f} ({result.pnl_pct:.1f}%)"
        )
        self._log_trade("close", account, position, result, decision.reason)
        return True

    async def _close_with_retry(
        self,
        account: Account,
        position: Position,
        price: float,
        reason: str
    ) -> ExecutionResult:
        """
        Close a position, retrying once on a lost status race

        Raises:
            PersistenceConflict: the position changed under us twice or was
                closed elsewhere
        """
        executor = self._executor(account)
        result = await executor.close_position(account, position, price, reason)
        if result.success or result.error_kind != ErrorKind.PERSISTENCE_CONFLICT:
            return result

        current = await self.store.get_position(position.position_id)
        if current is None or not current.is_open:
            raise PersistenceConflict(f"Position {position.position_id} was already closed")

        result = await executor.close_position(account, current, price, reason)
        if result.error_kind == ErrorKind.PERSISTENCE_CONFLICT:
            raise PersistenceConflict(result.error)
        return result

    def _log_trade(
        self,
        event: str,
        account: Account,
        position: Position,
        result: ExecutionResult,
        reason: str
    ) -> None:
        if not self.trade_logger:
            return
        self.trade_logger.log_trade({
            "event": event,
            "account_id": account.account_id,
            "position_id": position.position_id,
            "asset_id": position.asset_id,
            "symbol": position.symbol,
            "strategy": position.strategy,
            "paper": position.is_paper,
            "reason": reason,
            "pnl": result.pnl,
            "pnl_pct": result.pnl_pct,
            "balance": account.balance,
            "tx_hash": position.tx_hash
        })

    async def close(self) -> None:
        """Stop every bot and release provider sessions"""
        await self.stop_all()
        await self.notifier.drain()
        clients = {id(p): p for p in [*self.providers, self.price_provider, self.market_checker] if p}
        for client in clients.values():
            closer = getattr(client, "close", None)
            if closer:
                await closer()
        self.store.close()


def build_service(config: ConfigManager, live: bool = False) -> TrenchBotService:
    """
    Wire the service from configuration

    Args:
        config: Loaded configuration
        live: Allow live accounts to trade on-chain

    Returns:
        TrenchBotService
    """
    providers_cfg = config.providers
    service_cfg = config.service
    logging_cfg = config.logging_config

    dexscreener = DexScreenerClient(
        base_url=providers_cfg.dexscreener_url,
        timeout_seconds=providers_cfg.request_timeout_seconds,
        candidate_limit=providers_cfg.candidate_limit
    )
    mobula = MobulaClient(
        api_key=providers_cfg.mobula_api_key,
        base_url=providers_cfg.mobula_url,
        timeout_seconds=providers_cfg.request_timeout_seconds,
        swap_timeout_seconds=providers_cfg.swap_timeout_seconds
    )

    store = PositionStore(config.database_path)
    paper = SimulatedExecutionAdapter(store, slippage=service_cfg.paper_slippage)

    live_executor = None
    if live:
        live_executor = LiveExecutionAdapter(
            store,
            swap=mobula,
            vault=KeyVault(config.vault_secret),
            prices=dexscreener,
            chain=providers_cfg.chain
        )

    return TrenchBotService(
        store=store,
        providers=[dexscreener, mobula],
        price_provider=dexscreener,
        paper_executor=paper,
        live_executor=live_executor,
        market_checker=mobula,
        service_config=service_cfg,
        provider_config=providers_cfg,
        trade_logger=TradeLogger(logging_cfg.trade_log_dir)
    )


async def run_bot_service(
    config_path: str = None,
    account_ids: Optional[List[str]] = None,
    live: bool = False,
    log_level: Optional[str] = None
) -> None:
    """
    Run bots until SIGINT / SIGTERM

    Args:
        config_path: Path to the YAML config
        account_ids: Accounts to start (default: every enabled account)
        live: Allow live accounts to trade on-chain
        log_level: Overrides the configured logging level
    """
    config = get_config(config_path)
    logging_cfg = config.logging_config
    setup_logging(
        level=log_level or logging_cfg.level,
        log_file=logging_cfg.file,
        max_size_mb=logging_cfg.max_size_mb,
        backup_count=logging_cfg.backup_count
    )

    service = build_service(config, live=live)
    await service.seed_accounts(config.accounts)

    targets = account_ids or [a.account_id for a in config.accounts if a.enabled]
    for account_id in targets:
        account_cfg = config.get_account(account_id)
        if account_cfg and account_cfg.mode == AccountMode.LIVE.value and not live:
            logger.warning(f"Skipping live account {account_id} (run with --live)")
            continue
        try:
            result = await service.start(account_id)
            logger.info(f"{account_id}: {result}")
        except ConfigurationInvalid as e:
            logger.error(f"Cannot start {account_id}: {e}")

    if not service.running_accounts:
        logger.error("No bots running, exiting")
        await service.close()
        return

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_signal():
        logger.info("Shutdown signal received, stopping bots...")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    logger.info("=" * 60)
    logger.info(f"TRENCH BOTS RUNNING: {', '.join(service.running_accounts)}")
    logger.info("=" * 60)

    # Bots may stop themselves on a risk pause
    while not stop_event.is_set() and service.running_accounts:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=5)
        except asyncio.TimeoutError:
            pass

    sessions = [service.session(a) for a in service.running_accounts]
    results = await service.stop_all()
    for session in sessions:
        await session.scheduler.wait_idle()
    await service.close()

    logger.info("=" * 60)
    logger.info("TRENCH BOTS STOPPED")
    for account_id, result in results.items():
        logger.info(f"{account_id}: {result}")
    logger.info("=" * 60)
