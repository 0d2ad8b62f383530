from decimal import Decimal

import pytest

from app.errors import RateLimited

ADDRESS = "0xAa7a9CA87d3694B5755f213B5D04094b8d0F0A6F"


def linear_chain(genesis_ts=1_600_000_000, block_time=12):
    """Timestamps for a chain with a constant block time."""
    return lambda n: genesis_ts + block_time * n


def anchored_chain(anchors):
    """
    Piecewise-linear timestamps through (height, timestamp) anchors.
    Monotonic but not evenly spaced, like a real chain.
    """
    anchors = sorted(anchors)

    def timestamp(n):
        for (h0, t0), (h1, t1) in zip(anchors, anchors[1:]):
            if n <= h1:
                return t0 + (t1 - t0) * (n - h0) // (h1 - h0)
        return anchors[-1][1]

    return timestamp


class ScriptedOracle:
    """
    In-memory chain time oracle.

    failures maps the 1-based index of a get_block_timestamp call (call 1 is the
    head timestamp) to the exception raised for it. Every call is recorded.
    """

    def __init__(self, head, timestamp_fn, balance=Decimal("1.5"), failures=None,
                 head_error=None, balance_error=None):
        self.head = head
        self.timestamp_fn = timestamp_fn
        self.balance = balance
        self.failures = failures or {}
        self.head_error = head_error
        self.balance_error = balance_error
        self.calls = []
        self.timestamp_calls = 0

    def get_latest_block(self):
        self.calls.append(("head",))
        if self.head_error:
            raise self.head_error
        return self.head

    def get_block_timestamp(self, block_no):
        self.calls.append(("timestamp", block_no))
        self.timestamp_calls += 1
        error = self.failures.get(self.timestamp_calls)
        if error:
            raise error
        return self.timestamp_fn(block_no)

    def get_balance_at_block(self, address, block_no):
        self.calls.append(("balance", address, block_no))
        if self.balance_error:
            raise self.balance_error
        return self.balance

    @property
    def probe_blocks(self):
        """Heights queried during the search (head timestamp excluded)."""
        return [c[1] for c in self.calls if c[0] == "timestamp"][1:]


@pytest.fixture
def make_oracle():
    return ScriptedOracle


@pytest.fixture
def rate_limited():
    return RateLimited("Etherscan API rate limit exceeded. Please try again later.")


@pytest.fixture
def address():
    return ADDRESS


@pytest.fixture
def chain():
    """Small chain: head 1000, 12s blocks from 1_600_000_000."""
    return linear_chain()


@pytest.fixture
def mainnet_like_chain():
    """Heights and times close to Ethereum mainnet between genesis and 2024-01-01."""
    return anchored_chain([
        (0, 1_438_269_973),          # 2015-07-30
        (9_193_266, 1_577_836_800),  # 2020-01-01 00:00:00 UTC
        (19_000_000, 1_704_067_200), # 2024-01-01 00:00:00 UTC
    ])
