#!/usr/bin/env python3
"""
Ledger Fetcher — Position History from a JSON-RPC Node
======================================================

Builds the three inputs of the reconstruction straight from chain data:

  adds     all logs of every transaction that minted liquidity in the pool
  removes  all logs of every transaction that burned liquidity in the pool
  prices   every pool Swap log (tick → native price downstream)

plus the gas paid by each of those transactions.

Flow:
  0. eth_blockNumber                         chain head when no end block is given
  1. eth_getLogs(pool, Mint / Burn / Swap)   in block chunks, concurrently
  2. eth_getTransactionReceipt(tx)           full logs + gasUsed·effectiveGasPrice
  3. eth_getBlockByNumber(n)                 block timestamps
  4. rows sorted by (blockNumber, logIndex), each with blockTimestamp set

Node limits: most public RPCs cap eth_getLogs ranges (2k–10k blocks) and
request rates. Requests run through a semaphore and a sliding-window rate
limiter. Long histories need an archive node (LP_LEDGER_RPC_URL).

Rows can be cached as JSON with save_cached_rows / load_cached_rows;
newline-delimited JSON (BigQuery exports) loads too.
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from lp_ledger.central_config import TOPICS, PoolConfig
from lp_ledger.rpc_helpers import (
    eth_block_number,
    eth_get_block_timestamp,
    eth_get_logs,
    eth_get_transaction_receipt,
    parse_quantity,
)

DEFAULT_CHUNK_SIZE = 2_000  # blocks per eth_getLogs call
DEFAULT_CONCURRENCY = 8
TIMEOUT = 30  # seconds


# ── Rate Limiter ─────────────────────────────────────────────────────────


class _RateLimiter:
    """Sliding-window limiter: at most max_requests per period_seconds."""

    def __init__(self, max_requests: int, period_seconds: float):
        self._max = max_requests
        self._period = period_seconds
        self._timestamps: list[float] = []

    async def acquire(self) -> None:
        now = time.monotonic()
        self._timestamps = [t for t in self._timestamps if now - t < self._period]
        if len(self._timestamps) >= self._max:
            sleep_time = self._period - (now - self._timestamps[0]) + 0.1
            if sleep_time > 0:
                await asyncio.sleep(sleep_time)
        self._timestamps.append(time.monotonic())


def block_chunks(
    from_block: int, to_block: int, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> List[Tuple[int, int]]:
    """Split an inclusive block range into inclusive chunks."""
    if from_block > to_block:
        raise ValueError(f"from_block {from_block} > to_block {to_block}")
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return [
        (start, min(start + chunk_size - 1, to_block))
        for start in range(from_block, to_block + 1, chunk_size)
    ]


def _sort_key(row: Dict[str, Any]) -> Tuple[int, int]:
    return parse_quantity(row.get("blockNumber")), parse_quantity(row.get("logIndex"))


# ── Ledger Fetcher ──────────────────────────────────────────────────────


class LedgerFetcher:
    """
    Async JSON-RPC client for position history.

    Usage:
        async with LedgerFetcher(get_rpc_url()) as fetcher:
            adds, removes, prices, gas = await fetcher.fetch_history(
                load_pool_config(), 12_370_000, 12_400_000
            )
    """

    def __init__(
        self,
        rpc_url: str,
        client: Optional[httpx.AsyncClient] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_requests_per_minute: int = 150,
        quiet: bool = False,
    ):
        self.rpc_url = rpc_url
        self._client = client
        self._owns_client = client is None
        self._semaphore = asyncio.Semaphore(concurrency)
        self._limiter = _RateLimiter(max_requests_per_minute, 60)
        self.quiet = quiet

    async def __aenter__(self) -> "LedgerFetcher":
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=TIMEOUT, verify=True)
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _say(self, msg: str) -> None:
        if not self.quiet:
            print(msg)

    async def _call(self, fn, *args):
        async with self._semaphore:
            await self._limiter.acquire()
            return await fn(self.rpc_url, *args, client=self._client)

    # ── Raw queries ──

    async def latest_block(self) -> int:
        """Chain head of the node."""
        return await self._call(eth_block_number)

    async def get_logs(
        self,
        address: str,
        topic0: str,
        from_block: int,
        to_block: int,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> List[Dict[str, Any]]:
        """Logs of one event from one contract, ordered by block then index."""
        chunks = block_chunks(from_block, to_block, chunk_size)
        results = await asyncio.gather(
            *[self._call(eth_get_logs, address, topic0, a, b) for a, b in chunks]
        )
        logs = [log for chunk in results for log in chunk]
        logs.sort(key=_sort_key)
        return logs

    async def get_transaction_logs(
        self, tx_hashes: Iterable[str]
    ) -> Tuple[Dict[str, List[Dict[str, Any]]], Dict[str, int]]:
        """
        Receipts for a set of transactions.

        Returns:
            (tx hash → receipt logs, tx hash → gas paid in wei)
        """
        hashes = list(dict.fromkeys(h.lower() for h in tx_hashes))
        receipts = await asyncio.gather(
            *[self._call(eth_get_transaction_receipt, h) for h in hashes]
        )
        logs_by_tx: Dict[str, List[Dict[str, Any]]] = {}
        gas_by_tx: Dict[str, int] = {}
        for tx_hash, receipt in zip(hashes, receipts):
            logs_by_tx[tx_hash] = receipt.get("logs") or []
            gas_used = parse_quantity(receipt.get("gasUsed"))
            gas_price = parse_quantity(receipt.get("effectiveGasPrice"))
            gas_by_tx[tx_hash] = gas_used * gas_price
        return logs_by_tx, gas_by_tx

    async def get_block_timestamps(self, block_numbers: Iterable[int]) -> Dict[int, int]:
        """block number → Unix timestamp."""
        numbers = sorted(set(block_numbers))
        stamps = await asyncio.gather(
            *[self._call(eth_get_block_timestamp, n) for n in numbers]
        )
        return dict(zip(numbers, stamps))

    async def _with_timestamps(
        self, rows: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        missing = {
            parse_quantity(r["blockNumber"]) for r in rows if "blockTimestamp" not in r
        }
        stamps = await self.get_block_timestamps(missing) if missing else {}
        out = []
        for row in rows:
            row = dict(row)
            if "blockTimestamp" not in row:
                row["blockTimestamp"] = stamps[parse_quantity(row["blockNumber"])]
            out.append(row)
        out.sort(key=_sort_key)
        return out

    # ── History ──

    async def fetch_history(
        self,
        config: PoolConfig,
        from_block: int,
        to_block: Optional[int] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> Tuple[List[dict], List[dict], List[dict], Dict[str, int]]:
        """
        Everything the reconstruction needs for a block range.

        to_block defaults to the node's latest block.

        Returns:
            (adds, removes, prices, gas_by_tx)
        """
        if to_block is None:
            to_block = await self.latest_block()
        pool = config.pool_address
        self._say(f"  ⏳ Scanning blocks {from_block:,} → {to_block:,}...")
        mints, burns, swaps = await asyncio.gather(
            self.get_logs(pool, TOPICS["Mint"], from_block, to_block, chunk_size),
            self.get_logs(pool, TOPICS["Burn"], from_block, to_block, chunk_size),
            self.get_logs(pool, TOPICS["Swap"], from_block, to_block, chunk_size),
        )
        self._say(
            f"  📥 {len(mints)} Mint, {len(burns)} Burn, {len(swaps)} Swap events"
        )

        opening_txs = [m["transactionHash"] for m in mints]
        closing_txs = [b["transactionHash"] for b in burns]
        logs_by_tx, gas_by_tx = await self.get_transaction_logs(
            opening_txs + closing_txs
        )
        self._say(f"  🧾 {len(logs_by_tx)} transaction receipts")

        def rows_for(txs: List[str]) -> List[dict]:
            seen = dict.fromkeys(t.lower() for t in txs)
            return [log for tx in seen for log in logs_by_tx.get(tx, [])]

        adds = await self._with_timestamps(rows_for(opening_txs))
        removes = await self._with_timestamps(rows_for(closing_txs))
        prices = await self._with_timestamps(swaps)
        return adds, removes, prices, gas_by_tx


# ── Cache ───────────────────────────────────────────────────────────────


def load_cached_rows(path) -> List[Dict[str, Any]]:
    """Rows from a JSON array file or a newline-delimited JSON file."""
    text = Path(path).read_text(encoding="utf-8")
    stripped = text.lstrip()
    if not stripped:
        return []
    if stripped.startswith("["):
        rows = json.loads(stripped)
        if not isinstance(rows, list):
            raise ValueError(f"{path}: expected a JSON array")
        return rows
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def save_cached_rows(path, rows: Iterable[Dict[str, Any]]) -> Path:
    """Write rows as a JSON array, creating parent directories."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(list(rows), indent=2, default=str), encoding="utf-8")
    return target
