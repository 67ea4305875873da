"""
Oracle price feeds.

External price source for each market, in MARK_PRICE_PRECISION:
  - Price pushes are recorded as timestamped observations
  - Arithmetic time-weighted average over any window
  - Delay (seconds since the last push) feeds the staleness guard rail

Security features:
  - Timestamps must be monotonically increasing
  - Same-timestamp pushes overwrite the previous observation
  - A feed with no observations reports insufficient data points
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..exceptions import InvalidOracle
from . import amm as amm_math
from .types import Market, OracleGuardRails, OraclePriceData, OracleStatus

logger = logging.getLogger(__name__)

MAX_OBSERVATIONS = 8640
MIN_OBSERVATIONS = 1
DEFAULT_CONFIDENCE = 100


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class Observation:
    """A single price push."""
    timestamp: int
    price: int
    confidence: int = DEFAULT_CONFIDENCE
    price_cumulative: int = 0  # sum(price * dt) up to this observation


# ---------------------------------------------------------------------------
# Price feed
# ---------------------------------------------------------------------------

class PriceFeed:
    """
    Time-weighted price feed for one asset.

    Records observations and computes the arithmetic TWAP over a window
    using an accumulator.
    """

    def __init__(self, asset: str = "", max_observations: int = MAX_OBSERVATIONS):
        self.asset = asset
        self.max_observations = max_observations
        self._observations: List[Observation] = []

    @property
    def observation_count(self) -> int:
        return len(self._observations)

    @property
    def latest(self) -> Optional[Observation]:
        return self._observations[-1] if self._observations else None

    # -- Recording ----------------------------------------------------------

    def set_price(self, price: int, timestamp: int, confidence: int = DEFAULT_CONFIDENCE) -> Observation:
        """
        Record a new price observation.

        Raises:
            ValueError: on negative confidence or a timestamp going backwards
        """
        if confidence < 0:
            raise ValueError("Confidence must be non-negative")

        if self._observations:
            prev = self._observations[-1]
            dt = timestamp - prev.timestamp
            if dt < 0:
                raise ValueError("Timestamp must be monotonically increasing")
            if dt == 0:
                prev.price = price
                prev.confidence = confidence
                return prev
            cumulative = prev.price_cumulative + prev.price * dt
        else:
            cumulative = 0

        obs = Observation(
            timestamp=timestamp,
            price=price,
            confidence=confidence,
            price_cumulative=cumulative,
        )
        self._observations.append(obs)

        if len(self._observations) > self.max_observations:
            self._observations = self._observations[-self.max_observations:]

        logger.debug("Oracle %s price=%d ts=%d", self.asset, price, timestamp)
        return obs

    # -- Reads ----------------------------------------------------------------

    def get_price_data(self, now: int) -> OraclePriceData:
        latest = self.latest
        if latest is None:
            return OraclePriceData(
                price=0, confidence=0, delay=0,
                has_sufficient_number_of_data_points=False,
            )
        return OraclePriceData(
            price=latest.price,
            confidence=latest.confidence,
            delay=max(0, now - latest.timestamp),
            has_sufficient_number_of_data_points=self.observation_count >= MIN_OBSERVATIONS,
        )

    def twap(self, window_seconds: int, now: int) -> Optional[int]:
        """Arithmetic TWAP over the last `window_seconds`, or None without data."""
        if not self._observations:
            return None
        latest = self._observations[-1]
        end_cumulative = latest.price_cumulative + latest.price * max(0, now - latest.timestamp)
        start_time = now - window_seconds
        start_cumulative, start_ts = self._cumulative_at(start_time)
        dt = now - start_ts
        if dt <= 0:
            return latest.price
        return (end_cumulative - start_cumulative) // dt

    def _cumulative_at(self, target_time: int) -> Tuple[int, int]:
        """Accumulator value at `target_time`, clamped to the first observation."""
        first = self._observations[0]
        if target_time <= first.timestamp:
            return first.price_cumulative, first.timestamp

        lo, hi = 0, len(self._observations) - 1
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if self._observations[mid].timestamp <= target_time:
                lo = mid
            else:
                hi = mid - 1
        obs = self._observations[lo]
        return obs.price_cumulative + obs.price * (target_time - obs.timestamp), target_time


class PriceFeedRegistry:
    """Price feeds keyed by the AMM's `oracle` reference."""

    def __init__(self) -> None:
        self._feeds: Dict[str, PriceFeed] = {}

    def feed(self, name: str) -> PriceFeed:
        """Get or create the feed named `name`."""
        if name not in self._feeds:
            self._feeds[name] = PriceFeed(asset=name)
        return self._feeds[name]

    def get(self, name: str) -> Optional[PriceFeed]:
        return self._feeds.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._feeds


# ---------------------------------------------------------------------------
# Market-level oracle reads
# ---------------------------------------------------------------------------

def fetch_oracle_price(market: Market, feeds: PriceFeedRegistry, now: int) -> OraclePriceData:
    """
    Query the market's oracle and record the price on the AMM.

    Raises:
        InvalidOracle: if the market's oracle feed is not registered
    """
    feed = feeds.get(market.amm.oracle)
    if feed is None:
        raise InvalidOracle(f"Oracle feed {market.amm.oracle!r} not found")
    data = feed.get_price_data(now)
    market.amm.last_oracle_price = data.price
    return data


def get_oracle_status(
    market: Market,
    feeds: PriceFeedRegistry,
    guard_rails: OracleGuardRails,
    now: int,
    precomputed_mark_price: Optional[int] = None,
) -> OracleStatus:
    price_data = fetch_oracle_price(market, feeds, now)
    is_valid = amm_math.is_oracle_valid(market.amm, price_data, guard_rails)
    if price_data.price <= 0:
        # no usable price: nothing to measure divergence against
        return OracleStatus(
            price_data=price_data,
            oracle_mark_spread_pct=0,
            is_valid=False,
            mark_too_divergent=False,
        )
    spread_pct = amm_math.calculate_oracle_mark_spread_pct(
        market.amm, price_data, precomputed_mark_price
    )
    too_divergent = amm_math.is_oracle_mark_too_divergent(spread_pct, guard_rails)
    return OracleStatus(
        price_data=price_data,
        oracle_mark_spread_pct=spread_pct,
        is_valid=is_valid,
        mark_too_divergent=too_divergent,
    )


def block_operation(
    market: Market,
    feeds: PriceFeedRegistry,
    guard_rails: OracleGuardRails,
    now: int,
    precomputed_mark_price: Optional[int] = None,
) -> Tuple[bool, OraclePriceData]:
    """True when the oracle is invalid or mark has diverged too far from it."""
    status = get_oracle_status(market, feeds, guard_rails, now, precomputed_mark_price)
    return (not status.is_valid or status.mark_too_divergent), status.price_data
