"""
Error taxonomy
Exceptions raised at component boundaries and the matching result kinds
"""

from enum import Enum


class ErrorKind(Enum):
    """Error classification carried by typed results"""
    DATA_UNAVAILABLE = "data_unavailable"
    INVALID_DECISION = "invalid_decision"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    EXECUTION_FAILURE = "execution_failure"
    PERSISTENCE_CONFLICT = "persistence_conflict"
    CONFIGURATION_INVALID = "configuration_invalid"
    KEY_VAULT = "key_vault"


class TradingError(Exception):
    """Base class for all trading engine errors"""
    kind = ErrorKind.EXECUTION_FAILURE


class DataUnavailable(TradingError):
    """A market data or swap provider failed or timed out"""
    kind = ErrorKind.DATA_UNAVAILABLE


class InvalidDecision(TradingError):
    """The risk planner rejected the trade decision"""
    kind = ErrorKind.INVALID_DECISION


class InsufficientBalance(TradingError):
    """Account balance cannot cover the order"""
    kind = ErrorKind.INSUFFICIENT_BALANCE


class ExecutionFailure(TradingError):
    """Quote, signing or broadcast failed"""
    kind = ErrorKind.EXECUTION_FAILURE


class PersistenceConflict(TradingError):
    """A conditional update lost a race against another writer"""
    kind = ErrorKind.PERSISTENCE_CONFLICT


class ConfigurationInvalid(TradingError):
    """Configuration could not be used even after clamping"""
    kind = ErrorKind.CONFIGURATION_INVALID


class KeyVaultError(TradingError):
    """Sealed key material could not be authenticated or decoded"""
    kind = ErrorKind.KEY_VAULT
