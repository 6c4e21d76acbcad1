"""
Trench Trader
Per-account autonomous memecoin scalping bot with paper and on-chain execution
"""

__version__ = "0.3.0"
