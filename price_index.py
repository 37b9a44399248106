#!/usr/bin/env python3
"""
Price Index — Pool Price History with Point-in-Time Lookups
===========================================================

Stores the pool price observed at every Swap event and answers
"what was the price at time t?" with last-observed-value semantics:
the AMM price only moves on swaps, so between two swaps it is constant.

  load:      O(n), samples must arrive in non-decreasing timestamp order
  price_at:  O(log n) via bisect over a sorted timestamp array

A mainnet pool history is ~10^5–10^6 swaps; two parallel lists of
datetimes and ints fit comfortably in memory.

Swap event (UniswapV3Pool):
  Swap(address indexed sender, address indexed recipient,
       int256 amount0, int256 amount1, uint160 sqrtPriceX96,
       uint128 liquidity, int24 tick)
  → data slot 4 is the post-swap tick.
"""

from bisect import bisect_right
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from lp_ledger.central_config import TOPICS
from lp_ledger.errors import NoPriceData
from lp_ledger.rpc_helpers import decode_int, parse_block_timestamp, parse_quantity
from tick_math import tick_to_native_price

SWAP_TICK_SLOT = 4

PriceSample = Tuple[datetime, int]


class PriceIndex:
    """
    Read-only timestamp → native price step function.

    Usage:
        index = PriceIndex.load(samples)
        price = index.price_at(position.closed_at)
    """

    def __init__(self, samples: Iterable[PriceSample] = ()):
        self._timestamps: List[datetime] = []
        self._prices: List[int] = []
        for ts, price in samples:
            ts = parse_block_timestamp(ts)
            if self._timestamps and ts < self._timestamps[-1]:
                raise ValueError(
                    f"Price samples out of order: {ts.isoformat()} after "
                    f"{self._timestamps[-1].isoformat()}"
                )
            if not isinstance(price, int) or isinstance(price, bool):
                raise ValueError(f"Price must be an integer, got {price!r}")
            self._timestamps.append(ts)
            self._prices.append(price)

    @classmethod
    def load(cls, samples: Iterable[PriceSample]) -> "PriceIndex":
        return cls(samples)

    def __len__(self) -> int:
        return len(self._prices)

    @property
    def first_timestamp(self) -> Optional[datetime]:
        return self._timestamps[0] if self._timestamps else None

    @property
    def last_timestamp(self) -> Optional[datetime]:
        return self._timestamps[-1] if self._timestamps else None

    def price_at(self, timestamp) -> int:
        """
        Price of the latest sample with sample_ts ≤ timestamp.

        Among samples sharing a timestamp (several swaps in one block) the
        last one loaded wins.

        Raises:
            NoPriceData: timestamp precedes the first sample.
        """
        ts = parse_block_timestamp(timestamp)
        i = bisect_right(self._timestamps, ts)
        if i == 0:
            first = self.first_timestamp
            since = f" (history starts {first.isoformat()})" if first else ""
            raise NoPriceData(f"No price at or before {ts.isoformat()}{since}")
        return self._prices[i - 1]


# ── Rows → samples ───────────────────────────────────────────────────────


def samples_from_rows(
    rows: Iterable[dict], base_is_token0: bool = False
) -> List[PriceSample]:
    """
    Build (timestamp, native price) samples from query rows.

    Two row shapes are accepted:
      • price rows:  {"blockTimestamp": ..., "price": <uint256 | "0x..">}
      • Swap logs:   BigQuery or JSON-RPC log rows; the tick in data slot 4
                     is converted with tick_to_native_price. Logs whose
                     topic[0] is not Swap are skipped.

    Output keeps input order, which the ledger query already sorts by block
    timestamp then log index.
    """
    samples = []
    swap_topic = TOPICS["Swap"]
    for row in rows:
        raw_ts = row.get("block_timestamp", row.get("blockTimestamp"))
        if "price" in row:
            samples.append((parse_block_timestamp(raw_ts), parse_quantity(row["price"])))
            continue
        topics = row.get("topics") or []
        if not topics or topics[0].lower() != swap_topic:
            continue
        tick = decode_int(row["data"], SWAP_TICK_SLOT)
        samples.append(
            (parse_block_timestamp(raw_ts), tick_to_native_price(tick, base_is_token0))
        )
    return samples
