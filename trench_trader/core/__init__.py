"""
Trench Trader Core Module
"""

from .errors import (
    ErrorKind,
    TradingError,
    DataUnavailable,
    InvalidDecision,
    InsufficientBalance,
    ExecutionFailure,
    PersistenceConflict,
    ConfigurationInvalid,
    KeyVaultError
)
from .models import (
    Account,
    AccountMode,
    AccountStats,
    Candidate,
    Position,
    PositionStatus,
    RiskState,
    StrategyStats
)
from .candidate_aggregator import (
    CandidateAggregator,
    MarketCheck,
    passes_entry_filters,
    score_scalping,
    score_pump_start
)
from .momentum_tracker import (
    MomentumTracker,
    MomentumObservation,
    MomentumResult,
    MomentumState
)
from .risk_planner import TradeDecision, OrderPlan, plan
from .lifecycle import LifecycleDecision, evaluate, adaptive_trail
from .risk_governor import RiskGovernor
from .key_vault import KeyVault
from .position_store import PositionStore
from .api_client import BaseApiClient, MarketDataProvider, SwapProvider
from .dexscreener_client import DexScreenerClient
from .mobula_client import MobulaClient
from .execution_adapter import (
    ExecutionAdapter,
    ExecutionResult,
    SimulatedExecutionAdapter,
    LiveExecutionAdapter
)
from .scheduler import (
    AccountScheduler,
    SchedulerConfig,
    LoopType,
    LoopStats
)
from .bot_service import (
    TrenchBotService,
    BotSession,
    BotState,
    build_service,
    run_bot_service
)

__all__ = [
    # Errors
    "ErrorKind",
    "TradingError",
    "DataUnavailable",
    "InvalidDecision",
    "InsufficientBalance",
    "ExecutionFailure",
    "PersistenceConflict",
    "ConfigurationInvalid",
    "KeyVaultError",
    # Model
    "Account",
    "AccountMode",
    "AccountStats",
    "Candidate",
    "Position",
    "PositionStatus",
    "RiskState",
    "StrategyStats",
    # Candidates
    "CandidateAggregator",
    "MarketCheck",
    "passes_entry_filters",
    "score_scalping",
    "score_pump_start",
    # Momentum
    "MomentumTracker",
    "MomentumObservation",
    "MomentumResult",
    "MomentumState",
    # Risk
    "TradeDecision",
    "OrderPlan",
    "plan",
    "LifecycleDecision",
    "evaluate",
    "adaptive_trail",
    "RiskGovernor",
    # Execution
    "KeyVault",
    "PositionStore",
    "BaseApiClient",
    "MarketDataProvider",
    "SwapProvider",
    "DexScreenerClient",
    "MobulaClient",
    "ExecutionAdapter",
    "ExecutionResult",
    "SimulatedExecutionAdapter",
    "LiveExecutionAdapter",
    # Scheduler
    "AccountScheduler",
    "SchedulerConfig",
    "LoopType",
    "LoopStats",
    # Service
    "TrenchBotService",
    "BotSession",
    "BotState",
    "build_service",
    "run_bot_service"
]
