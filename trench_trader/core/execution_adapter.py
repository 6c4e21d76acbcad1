"""
Execution Adapter
Paper and on-chain execution behind one interface
"""

import asyncio
import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from .api_client import MarketDataProvider, SwapProvider
from .errors import (
    ErrorKind, ExecutionFailure, InsufficientBalance, KeyVaultError,
    PersistenceConflict, TradingError
)
from .key_vault import KeyVault
from .models import Account, Candidate, Position, PositionStatus
from .position_store import PositionStore
from .risk_planner import OrderPlan

logger = logging.getLogger(__name__)

PAPER_SLIPPAGE = 0.008
SOL_MINT = "So11111111111111111111111111111111111111111"
WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"
BUY_SLIPPAGE_BPS = 800
SELL_SLIPPAGE_BPS = 1500


@dataclass
class ExecutionResult:
    """Outcome of an execution call; no mutation happened unless success"""
    success: bool
    position: Optional[Position] = None
    pnl: float = 0.0
    pnl_pct: float = 0.0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failed(cls, error: Exception, **metadata) -> "ExecutionResult":
        kind = error.kind if isinstance(error, TradingError) else ErrorKind.EXECUTION_FAILURE
        return cls(success=False, error=str(error), error_kind=kind, metadata=metadata)


def _round_cents(value: float) -> float:
    return round(value * 100) / 100


class ExecutionAdapter:
    """
    Base execution adapter

    Opens, closes and partially reduces positions. Closing and reducing go
    through conditional store updates, so a position is settled at most once
    and the balance is only credited by the call that won the transition.
    """

    def __init__(self, store: PositionStore):
        self.store = store

    async def open_position(
        self,
        account: Account,
        candidate: Candidate,
        plan: OrderPlan,
        price: float
    ) -> ExecutionResult:
        raise NotImplementedError

    async def close_position(
        self,
        account: Account,
        position: Position,
        price: float,
        reason: str
    ) -> ExecutionResult:
        raise NotImplementedError

    async def reduce_position(
        self,
        account: Account,
        position: Position,
        price: float,
        fraction: float,
        reason: str
    ) -> ExecutionResult:
        raise NotImplementedError

    async def _settle_close(
        self,
        account: Account,
        position: Position,
        exit_price: float,
        value_out: float,
        reason: str,
        tx_hash: Optional[str] = None
    ) -> ExecutionResult:
        """Mark the position CLOSED and credit the proceeds, once"""
        pnl = value_out - position.cost_basis + position.realized_pnl
        pnl_pct = (exit_price - position.entry_price) / position.entry_price * 100 if position.entry_price > 0 else 0.0
        exit_time = datetime.now(timezone.utc)

        fields = dict(
            exit_price=exit_price,
            exit_time=exit_time,
            exit_reason=reason,
            amount_out=value_out,
            pnl=pnl,
            pnl_pct=pnl_pct,
        )
        if tx_hash:
            fields["tx_hash"] = tx_hash

        closed = await self.store.transition_status(
            position.position_id, PositionStatus.OPEN, PositionStatus.CLOSED, **fields
        )
        if not closed:
            return ExecutionResult.failed(
                PersistenceConflict(f"Position {position.position_id} is no longer open")
            )

        account.balance = _round_cents(account.balance + value_out)
        await self.store.save_account(account)

        position.status = PositionStatus.CLOSED
        for name, value in fields.items():
            setattr(position, name, value)
        return ExecutionResult(success=True, position=position, pnl=pnl, pnl_pct=pnl_pct,
                               metadata={"value_out": value_out})

    async def _settle_reduce(
        self,
        account: Account,
        position: Position,
        sold_quantity: float,
        value_out: float,
        exit_price: float
    ) -> ExecutionResult:
        """Shrink an OPEN position and credit the partial proceeds"""
        share = sold_quantity / position.quantity
        cost_part = position.cost_basis * share
        pnl = value_out - cost_part
        pnl_pct = (exit_price - position.entry_price) / position.entry_price * 100 if position.entry_price > 0 else 0.0

        fields = dict(
            quantity=position.quantity - sold_quantity,
            cost_basis=position.cost_basis - cost_part,
            partial_sold=position.partial_sold + sold_quantity,
            realized_pnl=position.realized_pnl + pnl,
        )
        updated = await self.store.update_position(position.position_id, **fields)
        if not updated:
            return ExecutionResult.failed(
                PersistenceConflict(f"Position {position.position_id} is no longer open")
            )

        account.balance = _round_cents(account.balance + value_out)
        await self.store.save_account(account)

        for name, value in fields.items():
            setattr(position, name, value)
        return ExecutionResult(success=True, position=position, pnl=pnl, pnl_pct=pnl_pct,
                               metadata={"value_out": value_out, "sold_quantity": sold_quantity})


class SimulatedExecutionAdapter(ExecutionAdapter):
    """Paper trading: fills at the quoted price with a fixed slippage each way"""

    def __init__(self, store: PositionStore, slippage: float = PAPER_SLIPPAGE):
        super().__init__(store)
        self.slippage = slippage

    async def open_position(
        self,
        account: Account,
        candidate: Candidate,
        plan: OrderPlan,
        price: float
    ) -> ExecutionResult:
        amount = min(plan.margin, account.settings.amount_per_trade_usd, account.balance)
        if amount <= 0 or price <= 0:
            return ExecutionResult.failed(
                InsufficientBalance(f"Cannot buy {candidate.symbol}: balance ${account.balance:.2f}")
            )

        slipped_entry = price * (1 + self.slippage)
        position = Position(
            account_id=account.account_id,
            asset_id=candidate.asset_id,
            symbol=candidate.symbol,
            name=candidate.name,
            entry_price=slipped_entry,
            quantity=amount / slipped_entry,
            cost_basis=amount,
            is_paper=True,
            strategy=plan.strategy,
        )

        try:
            position = await self.store.create_position(position)
        except PersistenceConflict as e:
            return ExecutionResult.failed(e)

        account.balance = _round_cents(account.balance - amount)
        await self.store.save_account(account)
        return ExecutionResult(success=True, position=position, metadata={"amount": amount})

    async def close_position(
        self,
        account: Account,
        position: Position,
        price: float,
        reason: str
    ) -> ExecutionResult:
        slipped = price * (1 - self.slippage)
        return await self._settle_close(account, position, slipped, position.quantity * slipped, reason)

    async def reduce_position(
        self,
        account: Account,
        position: Position,
        price: float,
        fraction: float,
        reason: str
    ) -> ExecutionResult:
        if not 0 < fraction < 1 or position.quantity <= 0:
            return ExecutionResult.failed(ExecutionFailure(f"Invalid partial fraction {fraction}"))
        slipped = price * (1 - self.slippage)
        sold = position.quantity * fraction
        return await self._settle_reduce(account, position, sold, sold * slipped, slipped)


class LiveExecutionAdapter(ExecutionAdapter):
    """
    On-chain execution through a swap provider

    The bot wallet key is unsealed per call, used to sign and dropped.
    A successful submit is treated as a fill; the transaction is not
    confirmed on-chain afterwards.
    """

    def __init__(
        self,
        store: PositionStore,
        swap: SwapProvider,
        vault: KeyVault,
        prices: MarketDataProvider,
        chain: str = "solana",
        buy_slippage_bps: int = BUY_SLIPPAGE_BPS,
        sell_slippage_bps: int = SELL_SLIPPAGE_BPS
    ):
        super().__init__(store)
        self.swap = swap
        self.vault = vault
        self.prices = prices
        self.chain = chain
        self.buy_slippage_bps = buy_slippage_bps
        self.sell_slippage_bps = sell_slippage_bps

    async def _keypair(self, account: Account) -> Keypair:
        if not account.sealed_key:
            raise KeyVaultError(f"No bot wallet key for {account.account_id}")
        # Key derivation runs in a worker thread
        secret = await asyncio.to_thread(self.vault.unseal, account.sealed_key)
        try:
            return Keypair.from_base58_string(secret.strip())
        except ValueError as e:
            raise KeyVaultError("Invalid bot wallet key") from e

    @staticmethod
    def sign(serialized: str, keypair: Keypair) -> str:
        """Sign a base64 serialized versioned transaction"""
        try:
            tx = VersionedTransaction.from_bytes(base64.b64decode(serialized))
            signed = VersionedTransaction(tx.message, [keypair])
        except Exception as e:
            raise ExecutionFailure(f"Could not sign swap transaction: {e}") from e
        return base64.b64encode(bytes(signed)).decode("ascii")

    async def _swap(
        self,
        keypair: Keypair,
        wallet: str,
        from_asset: str,
        to_asset: str,
        amount: float,
        slippage_bps: int
    ) -> str:
        serialized = await self.swap.quote(self.chain, from_asset, to_asset, amount, wallet, slippage_bps)
        result = await self.swap.submit(self.chain, self.sign(serialized, keypair))
        tx_hash = result.get("tx_hash")
        if not result.get("success") or not tx_hash:
            raise ExecutionFailure(f"Swap not accepted: {result.get('error') or result}")
        logger.warning(f"Swap {tx_hash} broadcast, not confirmed on-chain")
        return tx_hash

    async def _sol_price(self) -> Optional[float]:
        return await self.prices.fetch_fresh_price(self.chain, WRAPPED_SOL_MINT)

    async def open_position(
        self,
        account: Account,
        candidate: Candidate,
        plan: OrderPlan,
        price: float
    ) -> ExecutionResult:
        try:
            sol_price = await self._sol_price()
            if not sol_price or price <= 0:
                raise ExecutionFailure("SOL price unavailable")

            amount_sol = min(account.settings.amount_per_trade_sol, plan.size / sol_price)
            keypair = await self._keypair(account)
            wallet = account.wallet_address or str(keypair.pubkey())
            tx_hash = await self._swap(
                keypair, wallet, SOL_MINT, candidate.asset_id, amount_sol, self.buy_slippage_bps
            )
        except TradingError as e:
            logger.error(f"Live buy {candidate.symbol} failed: {e}")
            return ExecutionResult.failed(e)

        cost = amount_sol * sol_price
        position = Position(
            account_id=account.account_id,
            asset_id=candidate.asset_id,
            symbol=candidate.symbol,
            name=candidate.name,
            entry_price=price,
            quantity=cost / price,
            cost_basis=cost,
            is_paper=False,
            strategy=plan.strategy,
            tx_hash=tx_hash,
        )
        try:
            position = await self.store.create_position(position)
        except PersistenceConflict as e:
            logger.error(f"Live buy {candidate.symbol} filled ({tx_hash}) but was not recorded: {e}")
            return ExecutionResult.failed(e, tx_hash=tx_hash)

        account.balance = _round_cents(account.balance - cost)
        await self.store.save_account(account)
        return ExecutionResult(success=True, position=position,
                               metadata={"amount_sol": amount_sol, "tx_hash": tx_hash})

    async def close_position(
        self,
        account: Account,
        position: Position,
        price: float,
        reason: str
    ) -> ExecutionResult:
        if position.quantity <= 0:
            return ExecutionResult.failed(ExecutionFailure("Nothing left to sell"))
        try:
            keypair = await self._keypair(account)
            wallet = account.wallet_address or str(keypair.pubkey())
            tx_hash = await self._swap(
                keypair, wallet, position.asset_id, SOL_MINT, position.quantity, self.sell_slippage_bps
            )
        except TradingError as e:
            logger.error(f"Live sell {position.symbol} failed: {e}")
            return ExecutionResult.failed(e)

        return await self._settle_close(account, position, price, position.quantity * price, reason, tx_hash)

    async def reduce_position(
        self,
        account: Account,
        position: Position,
        price: float,
        fraction: float,
        reason: str
    ) -> ExecutionResult:
        if not 0 < fraction < 1 or position.quantity <= 0:
            return ExecutionResult.failed(ExecutionFailure(f"Invalid partial fraction {fraction}"))
        sold = position.quantity * fraction
        try:
            keypair = await self._keypair(account)
            wallet = account.wallet_address or str(keypair.pubkey())
            await self._swap(keypair, wallet, position.asset_id, SOL_MINT, sold, self.sell_slippage_bps)
        except TradingError as e:
            logger.error(f"Live partial sell {position.symbol} failed: {e}")
            return ExecutionResult.failed(e)

        return await self._settle_reduce(account, position, sold, sold * price, price)
