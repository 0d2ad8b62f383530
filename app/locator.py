"""
Historical block lookup by timestamp.

Etherscan offers no timestamp index we rely on, so the block closest to a target
time is found with a binary search over block heights, one remote timestamp query
per step. Every query costs rate-limited budget, so the search is bounded: it stops
at the first sample within tolerance, after a fixed number of probes, or when the
window crosses, and returns the best block seen so far.
"""
import logging
import os
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, TypeVar

from app.errors import (
    InvalidInput,
    LookupCancelled,
    RateLimited,
    UpstreamUnavailable,
)

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

DEFAULT_TOLERANCE_SECONDS = 7200  # 2 hours is close enough for a daily balance
DEFAULT_MAX_PROBES = 8
DEFAULT_PROBE_DELAY = 0.1

T = TypeVar("T")

FUTURE_NOTE = "Target date is in the future, showing current balance"


class ChainTimeOracle(Protocol):
    def get_latest_block(self) -> int:
        ...

    def get_block_timestamp(self, block_no: int) -> int:
        ...

    def get_balance_at_block(self, address: str, block_no: int) -> Decimal:
        ...


@dataclass(frozen=True)
class TargetQuery:
    address: str
    target_timestamp: int

    def __post_init__(self):
        if not isinstance(self.address, str) or not ADDRESS_RE.match(self.address):
            raise InvalidInput("Invalid Ethereum address. Must be 0x followed by 40 hex characters.")
        # Addresses are case-insensitive; normalise so identical inputs give identical calls
        object.__setattr__(self, "address", self.address.lower())


@dataclass
class SearchBounds:
    low: int
    high: int

    @property
    def crossed(self) -> bool:
        return self.low > self.high


@dataclass(frozen=True)
class BestMatch:
    height: int
    timestamp: int
    target_timestamp: int

    @property
    def distance(self) -> int:
        return abs(self.timestamp - self.target_timestamp)


@dataclass(frozen=True)
class LocatorSettings:
    """
    tolerance_seconds: largest |block time - target| that ends the search early.
    max_probes: maximum number of midpoint timestamp queries per lookup.
    probe_delay: seconds to sleep between probes to stay under the requests-per-second cap.
    """
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS
    max_probes: int = DEFAULT_MAX_PROBES
    probe_delay: float = DEFAULT_PROBE_DELAY

    def __post_init__(self):
        if self.tolerance_seconds < 0:
            raise ValueError("tolerance_seconds must be >= 0")
        if self.max_probes < 1:
            raise ValueError("max_probes must be >= 1")
        if self.probe_delay < 0:
            raise ValueError("probe_delay must be >= 0")

    @classmethod
    def from_env(cls) -> "LocatorSettings":
        return cls(
            tolerance_seconds=int(os.getenv("SEARCH_TOLERANCE_SECONDS", str(DEFAULT_TOLERANCE_SECONDS))),
            max_probes=int(os.getenv("SEARCH_MAX_PROBES", str(DEFAULT_MAX_PROBES))),
            probe_delay=float(os.getenv("SEARCH_PROBE_DELAY", str(DEFAULT_PROBE_DELAY))),
        )


@dataclass(frozen=True)
class LocateResult:
    address: str
    height: int
    timestamp: int
    balance: Decimal
    requested_timestamp: int
    probes: int
    future: bool = False

    @property
    def distance_seconds(self) -> int:
        return abs(self.timestamp - self.requested_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        """JSON body for the balance routes (without the success flag)."""
        actual = datetime.fromtimestamp(self.timestamp, tz=timezone.utc)
        requested = datetime.fromtimestamp(self.requested_timestamp, tz=timezone.utc)
        body = {
            "address": self.address,
            "balance": f"{self.balance:.8f}",
            "block": self.height,
            "timestamp": actual.isoformat().replace("+00:00", "Z"),
            "date": requested.strftime("%Y-%m-%d"),
            "requestedTimestamp": self.requested_timestamp,
            "actualTimestamp": self.timestamp,
            "timeDifferenceSeconds": self.distance_seconds,
        }
        if self.future:
            body["note"] = FUTURE_NOTE
        return body


class BlockTimestampLocator:
    def __init__(
        self,
        oracle: ChainTimeOracle,
        settings: Optional[LocatorSettings] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.oracle = oracle
        self.settings = settings or LocatorSettings()
        self._sleep = sleep

    def locate(
        self,
        address: str,
        target_timestamp: int,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> LocateResult:
        """
        Find the block closest to target_timestamp and the balance of address there.

        Raises RateLimited as soon as any call is rate limited, UpstreamUnavailable
        when a required call (head, head timestamp, final balance) fails, and
        LookupCancelled when should_stop() turns true during the search.
        """
        query = TargetQuery(address, int(target_timestamp))

        head = self._required(self.oracle.get_latest_block, "current block number")
        head_ts = self._required(lambda: self.oracle.get_block_timestamp(head), "current block timestamp")

        if query.target_timestamp >= head_ts:
            logger.info("[LOCATE] target %d is at or after head %d, using current balance", query.target_timestamp, head)
            balance = self._required(lambda: self.oracle.get_balance_at_block(query.address, head), "current balance")
            return LocateResult(query.address, head, head_ts, balance, query.target_timestamp, probes=0, future=True)

        best, probes = self._search(query, head, head_ts, should_stop)
        self._check_stop(should_stop, probes)

        balance = self._required(
            lambda: self.oracle.get_balance_at_block(query.address, best.height),
            "balance for the target date"
        )
        return LocateResult(query.address, best.height, best.timestamp, balance, query.target_timestamp, probes=probes)

    def _search(
        self,
        query: TargetQuery,
        head: int,
        head_ts: int,
        should_stop: Optional[Callable[[], bool]]
    ) -> Tuple[BestMatch, int]:
        target = query.target_timestamp
        bounds = SearchBounds(low=1, high=head)
        best = BestMatch(head, head_ts, target)
        probes = 0

        while probes < self.settings.max_probes and not bounds.crossed:
            self._check_stop(should_stop, probes)

            if probes > 0 and self.settings.probe_delay:
                self._sleep(self.settings.probe_delay)

            mid = (bounds.low + bounds.high) // 2
            probes += 1

            try:
                block_ts = self.oracle.get_block_timestamp(mid)
            except RateLimited:
                logger.warning("[LOCATE] rate limited during search at block %d", mid)
                raise
            except UpstreamUnavailable as e:
                # A missed sample is not fatal: step past it in the direction of the best match
                logger.warning("[LOCATE] failed to get block %d, continuing search: %s", mid, e)
                if mid < best.height:
                    bounds.low = mid + 1
                else:
                    bounds.high = mid - 1
                continue

            sample = BestMatch(mid, block_ts, target)
            if sample.distance < best.distance:
                best = sample

            if block_ts < target:
                bounds.low = mid + 1
            else:
                bounds.high = mid - 1

            if sample.distance <= self.settings.tolerance_seconds:
                break

        logger.info(
            "[LOCATE] search completed in %d probes, closest block %d (%ds from target)",
            probes, best.height, best.distance
        )
        return best, probes

    def _check_stop(self, should_stop: Optional[Callable[[], bool]], probes: int) -> None:
        if should_stop is not None and should_stop():
            logger.warning("[LOCATE] cancelled after %d probes", probes)
            raise LookupCancelled("Lookup timed out before the block search finished")

    def _required(self, call: Callable[[], T], what: str) -> T:
        try:
            return call()
        except RateLimited:
            raise
        except UpstreamUnavailable as e:
            raise UpstreamUnavailable(f"Failed to get {what} from Etherscan: {e}")
