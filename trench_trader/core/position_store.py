"""
Position Store
SQLite persistence for positions and account state
"""

import asyncio
import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from .errors import PersistenceConflict
from .models import (
    Account, AccountMode, AccountStats, Position, PositionStatus, RiskState, StrategyStats
)
from ..utils.config_loader import Settings

logger = logging.getLogger(__name__)

# Columns a caller may change through update_position / transition_status
_MUTABLE_FIELDS = {
    "quantity", "cost_basis", "peak_price", "breakeven_armed", "partial_sold",
    "realized_pnl", "exit_price", "exit_time", "exit_reason", "amount_out",
    "pnl", "pnl_pct", "tx_hash",
}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS positions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL,
    asset_id TEXT NOT NULL,
    symbol TEXT,
    name TEXT,
    side TEXT NOT NULL DEFAULT 'BUY',
    is_paper INTEGER NOT NULL DEFAULT 1,
    strategy TEXT,
    entry_price REAL NOT NULL,
    quantity REAL NOT NULL,
    cost_basis REAL NOT NULL,
    peak_price REAL,
    breakeven_armed INTEGER NOT NULL DEFAULT 0,
    partial_sold REAL NOT NULL DEFAULT 0,
    realized_pnl REAL NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    opened_at TEXT NOT NULL,
    exit_price REAL,
    exit_time TEXT,
    exit_reason TEXT,
    amount_out REAL,
    pnl REAL,
    pnl_pct REAL,
    tx_hash TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_positions_one_open
    ON positions(account_id, asset_id) WHERE status = 'OPEN';

CREATE INDEX IF NOT EXISTS idx_positions_closed
    ON positions(account_id, asset_id, exit_time) WHERE status = 'CLOSED';

CREATE TABLE IF NOT EXISTS accounts (
    account_id TEXT PRIMARY KEY,
    mode TEXT NOT NULL,
    balance REAL NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    wallet_address TEXT,
    sealed_key TEXT,
    blacklist TEXT,
    settings TEXT,
    risk TEXT,
    stats TEXT,
    updated_at TEXT
);
"""


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, PositionStatus):
        return value.value
    return value


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_position(row: sqlite3.Row) -> Position:
    return Position(
        position_id=row["id"],
        account_id=row["account_id"],
        asset_id=row["asset_id"],
        symbol=row["symbol"] or "?",
        name=row["name"] or "",
        side=row["side"],
        is_paper=bool(row["is_paper"]),
        strategy=row["strategy"] or "",
        entry_price=row["entry_price"],
        quantity=row["quantity"],
        cost_basis=row["cost_basis"],
        peak_price=row["peak_price"] or row["entry_price"],
        breakeven_armed=bool(row["breakeven_armed"]),
        partial_sold=row["partial_sold"],
        realized_pnl=row["realized_pnl"],
        status=PositionStatus(row["status"]),
        opened_at=_parse_time(row["opened_at"]),
        exit_price=row["exit_price"],
        exit_time=_parse_time(row["exit_time"]),
        exit_reason=row["exit_reason"],
        amount_out=row["amount_out"],
        pnl=row["pnl"],
        pnl_pct=row["pnl_pct"],
        tx_hash=row["tx_hash"],
    )


def _risk_to_json(risk: RiskState) -> str:
    return json.dumps({k: _to_db(v) for k, v in asdict(risk).items()})


def _risk_from_json(raw: Optional[str]) -> RiskState:
    data = json.loads(raw) if raw else {}
    for key in ("daily_pnl_start_at", "paused_at"):
        data[key] = _parse_time(data.get(key))
    return RiskState(**data)


def _stats_from_json(raw: Optional[str]) -> AccountStats:
    data = json.loads(raw) if raw else {}
    by_strategy = {
        name: StrategyStats(**values)
        for name, values in (data.pop("by_strategy", None) or {}).items()
    }
    return AccountStats(by_strategy=by_strategy, **data)


class PositionStore:
    """
    SQLite-backed position and account repository

    One connection guarded by a lock; the async API runs every statement
    with asyncio.to_thread so the event loop never blocks on disk I/O.
    At most one OPEN position per (account, asset) is enforced by a partial
    unique index, and closes are conditional on the expected status.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()

        with self._transaction() as conn:
            conn.executescript(_SCHEMA)
        logger.debug(f"Position store ready at {db_path}")

    @contextmanager
    def _transaction(self):
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ==================== Positions ====================

    def _create_position(self, position: Position) -> Position:
        columns = [
            "account_id", "asset_id", "symbol", "name", "side", "is_paper", "strategy",
            "entry_price", "quantity", "cost_basis", "peak_price", "breakeven_armed",
            "partial_sold", "realized_pnl", "status", "opened_at", "tx_hash",
        ]
        values = [_to_db(getattr(position, c)) for c in columns]
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"INSERT INTO positions ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    values
                )
        except sqlite3.IntegrityError as e:
            raise PersistenceConflict(
                f"{position.account_id} already holds an open position in {position.asset_id}"
            ) from e

        position.position_id = cursor.lastrowid
        return position

    def _get_position(self, position_id: int) -> Optional[Position]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
        return _row_to_position(row) if row else None

    def _open_positions(self, account_id: str, is_paper: Optional[bool]) -> List[Position]:
        query = "SELECT * FROM positions WHERE account_id = ? AND status = 'OPEN'"
        params: List[Any] = [account_id]
        if is_paper is not None:
            query += " AND is_paper = ?"
            params.append(int(is_paper))
        with self._transaction() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [_row_to_position(r) for r in rows]

    def _count_open(self, account_id: str) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM positions WHERE account_id = ? AND status = 'OPEN'",
                (account_id,)
            ).fetchone()
        return row[0]

    def _last_closed(self, account_id: str, asset_id: str) -> Optional[Position]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM positions WHERE account_id = ? AND asset_id = ? AND status = 'CLOSED' "
                "ORDER BY exit_time DESC LIMIT 1",
                (account_id, asset_id)
            ).fetchone()
        return _row_to_position(row) if row else None

    def _closed_positions(self, account_id: str, limit: int) -> List[Position]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM positions WHERE account_id = ? AND status = 'CLOSED' "
                "ORDER BY exit_time DESC LIMIT ?",
                (account_id, limit)
            ).fetchall()
        return [_row_to_position(r) for r in rows]

    @staticmethod
    def _assignments(fields: Dict[str, Any]):
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update position fields: {sorted(unknown)}")
        names = sorted(fields)
        return ", ".join(f"{n} = ?" for n in names), [_to_db(fields[n]) for n in names]

    def _transition_status(
        self,
        position_id: int,
        expected: PositionStatus,
        new: PositionStatus,
        fields: Dict[str, Any]
    ) -> bool:
        assignments, values = self._assignments(fields)
        sql = "UPDATE positions SET status = ?" + (f", {assignments}" if assignments else "")
        with self._transaction() as conn:
            cursor = conn.execute(
                sql + " WHERE id = ? AND status = ?",
                [new.value, *values, position_id, expected.value]
            )
        return cursor.rowcount == 1

    def _update_position(self, position_id: int, fields: Dict[str, Any]) -> bool:
        if not fields:
            return True
        assignments, values = self._assignments(fields)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE positions SET {assignments} WHERE id = ? AND status = 'OPEN'",
                [*values, position_id]
            )
        return cursor.rowcount == 1

    async def create_position(self, position: Position) -> Position:
        """
        Insert a new OPEN position

        Raises:
            PersistenceConflict: the account already holds the asset
        """
        return await asyncio.to_thread(self._create_position, position)

    async def get_position(self, position_id: int) -> Optional[Position]:
        return await asyncio.to_thread(self._get_position, position_id)

    async def open_positions(self, account_id: str, is_paper: Optional[bool] = None) -> List[Position]:
        return await asyncio.to_thread(self._open_positions, account_id, is_paper)

    async def count_open(self, account_id: str) -> int:
        return await asyncio.to_thread(self._count_open, account_id)

    async def last_closed(self, account_id: str, asset_id: str) -> Optional[Position]:
        """Most recently closed position of an account in one asset"""
        return await asyncio.to_thread(self._last_closed, account_id, asset_id)

    async def closed_positions(self, account_id: str, limit: int = 50) -> List[Position]:
        return await asyncio.to_thread(self._closed_positions, account_id, limit)

    async def update_position(self, position_id: int, **fields) -> bool:
        """Update lifecycle fields of an OPEN position; False if it is no longer open"""
        return await asyncio.to_thread(self._update_position, position_id, fields)

    async def transition_status(
        self,
        position_id: int,
        expected: PositionStatus,
        new: PositionStatus,
        **fields
    ) -> bool:
        """
        Conditionally move a position between statuses

        Args:
            position_id: Position id
            expected: Status the row must currently have
            new: Target status
            **fields: Columns written in the same statement (exit price, P&L...)

        Returns:
            True if this call performed the transition
        """
        return await asyncio.to_thread(self._transition_status, position_id, expected, new, fields)

    # ==================== Accounts ====================

    def _save_account(self, account: Account) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO accounts (
                    account_id, mode, balance, enabled, wallet_address, sealed_key,
                    blacklist, settings, risk, stats, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
                ON CONFLICT(account_id) DO UPDATE SET
                    mode = excluded.mode,
                    balance = excluded.balance,
                    enabled = excluded.enabled,
                    wallet_address = excluded.wallet_address,
                    sealed_key = excluded.sealed_key,
                    blacklist = excluded.blacklist,
                    settings = excluded.settings,
                    risk = excluded.risk,
                    stats = excluded.stats,
                    updated_at = excluded.updated_at
                """,
                (
                    account.account_id,
                    account.mode.value,
                    account.balance,
                    int(account.enabled),
                    account.wallet_address,
                    account.sealed_key,
                    json.dumps(account.blacklist),
                    json.dumps(account.settings.to_dict()),
                    _risk_to_json(account.risk),
                    json.dumps(asdict(account.stats)),
                )
            )

    def _load_account(self, account_id: str) -> Optional[Account]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE account_id = ?", (account_id,)).fetchone()
        if row is None:
            return None
        return Account(
            account_id=row["account_id"],
            mode=AccountMode(row["mode"]),
            balance=row["balance"],
            enabled=bool(row["enabled"]),
            wallet_address=row["wallet_address"] or "",
            sealed_key=row["sealed_key"] or "",
            blacklist=json.loads(row["blacklist"] or "[]"),
            settings=Settings.from_dict(json.loads(row["settings"] or "{}")),
            risk=_risk_from_json(row["risk"]),
            stats=_stats_from_json(row["stats"]),
        )

    def _list_accounts(self) -> List[str]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT account_id FROM accounts ORDER BY account_id").fetchall()
        return [r[0] for r in rows]

    async def save_account(self, account: Account) -> None:
        await asyncio.to_thread(self._save_account, account)

    async def load_account(self, account_id: str) -> Optional[Account]:
        return await asyncio.to_thread(self._load_account, account_id)

    async def list_accounts(self) -> List[str]:
        return await asyncio.to_thread(self._list_accounts)
