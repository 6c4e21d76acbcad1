"""
Momentum Confirmation Tracker
Requires a sustained or rising price over an observation window before entry
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


class MomentumState(Enum):
    """Observation states"""
    NEW = "new"
    CONFIRMING = "confirming"
    READY = "ready"
    REJECTED = "rejected"


@dataclass
class MomentumObservation:
    """Baseline and snapshots collected for one asset"""
    baseline_price: float
    baseline_at: float
    snapshots: List[Tuple[float, float]] = field(default_factory=list)

    @classmethod
    def start(cls, price: float, now: float) -> "MomentumObservation":
        return cls(baseline_price=price, baseline_at=now, snapshots=[(price, now)])


@dataclass
class MomentumResult:
    """Outcome of one observation"""
    ready: bool
    reason: str
    state: MomentumState
    change_pct: float = 0.0


class MomentumTracker:
    """
    Per-asset momentum confirmation

    - First sighting stores a baseline (never ready)
    - Inside the window snapshots accumulate
    - After the window: weak move or fading pump resets the baseline,
      otherwise the asset is ready once and its record is removed
    - sweep() drops records idle longer than max_age_seconds
    """

    def __init__(
        self,
        window_seconds: float = 45.0,
        min_change_pct: float = 0.5,
        max_age_seconds: float = 600.0,
        min_fade_snapshots: int = 4
    ):
        self.window_seconds = window_seconds
        self.min_change_pct = min_change_pct
        self.max_age_seconds = max_age_seconds
        self.min_fade_snapshots = min_fade_snapshots
        self._observations: Dict[str, MomentumObservation] = {}

    def observe(self, asset_id: str, price: float, now: Optional[float] = None) -> MomentumResult:
        """
        Record a price for an asset and report whether momentum is confirmed

        Args:
            asset_id: Asset identity
            price: Current price
            now: Timestamp in seconds (defaults to time.time())

        Returns:
            MomentumResult, ready=True at most once per observation cycle
        """
        now = time.time() if now is None else now
        prev = self._observations.get(asset_id)

        if prev is None:
            self._observations[asset_id] = MomentumObservation.start(price, now)
            return MomentumResult(False, "first_sight", MomentumState.NEW)

        elapsed = now - prev.baseline_at
        if elapsed < self.window_seconds:
            prev.snapshots.append((price, now))
            return MomentumResult(
                False,
                f"confirming ({elapsed:.0f}s / {self.window_seconds:.0f}s)",
                MomentumState.CONFIRMING
            )

        change = (price - prev.baseline_price) / prev.baseline_price * 100 if prev.baseline_price > 0 else 0.0

        if change < self.min_change_pct:
            self._observations[asset_id] = MomentumObservation.start(price, now)
            return MomentumResult(
                False,
                f"momentum_weak ({change:.1f}%, need +{self.min_change_pct}%)",
                MomentumState.REJECTED,
                change
            )

        fading = self._fading_pump(prev, price)
        if fading:
            first_half, second_half = fading
            self._observations[asset_id] = MomentumObservation.start(price, now)
            return MomentumResult(
                False,
                f"pump_fading (1st:+{first_half:.1f}% 2nd:{second_half:.1f}%)",
                MomentumState.REJECTED,
                change
            )

        del self._observations[asset_id]
        return MomentumResult(True, "ready", MomentumState.READY, change)

    def _fading_pump(self, obs: MomentumObservation, price: float) -> Optional[Tuple[float, float]]:
        """First half of the window gained, second half is falling"""
        snaps = obs.snapshots
        if len(snaps) < self.min_fade_snapshots:
            return None

        mid = len(snaps) // 2
        first_price = snaps[0][0]
        mid_price = snaps[mid][0]
        if first_price <= 0 or mid_price <= 0:
            return None

        first_half = (mid_price - first_price) / first_price * 100
        second_half = (price - mid_price) / mid_price * 100
        if second_half < 0 and first_half > self.min_change_pct:
            return first_half, second_half
        return None

    def sweep(self, now: Optional[float] = None) -> int:
        """Remove observations whose baseline is older than the max idle age"""
        now = time.time() if now is None else now
        cutoff = now - self.max_age_seconds
        stale = [asset for asset, obs in self._observations.items() if obs.baseline_at < cutoff]
        for asset in stale:
            del self._observations[asset]
        if stale:
            logger.debug(f"Swept {len(stale)} stale momentum observations")
        return len(stale)

    def watching(self, now: Optional[float] = None) -> List[str]:
        """Assets still inside their observation window"""
        now = time.time() if now is None else now
        return [
            asset for asset, obs in self._observations.items()
            if now - obs.baseline_at < self.window_seconds
        ]

    def get(self, asset_id: str) -> Optional[MomentumObservation]:
        return self._observations.get(asset_id)

    def __contains__(self, asset_id: str) -> bool:
        return asset_id in self._observations

    def __len__(self) -> int:
        return len(self._observations)
