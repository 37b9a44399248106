#!/usr/bin/env python3
"""
Log Indexer — Event Logs → Transactions → Positions
====================================================

Groups raw, unordered event logs by transaction, then finds for every
position NFT the transaction that opened it and the one that closed it.

Flow:
  1. logs_by_transaction(logs)   → {tx_hash: [EventLog, ...]} ordered by log index
  2. index_positions(tx_map)     → {token_id: PositionLogs(opening, closing)}

A transaction is attributed to a position through the events the
NonfungiblePositionManager emits:

  DecreaseLiquidity(uint256 indexed tokenId, uint128 liquidity,
                    uint256 amount0, uint256 amount1)      → closing tx
  IncreaseLiquidity(uint256 indexed tokenId, uint128 liquidity,
                    uint256 amount0, uint256 amount1)      → opening tx
  Transfer(address(0), to, uint256 indexed tokenId)        → opening tx
                                                             (NFT mint, fallback)

Transactions from which no tokenId can be decoded are dropped silently:
not every transaction that touches the pool is a position operation.

Assumption (not enforced): each tokenId has exactly one full opening and one
full closing transaction. When several transactions claim the same role for
the same tokenId the chronologically latest one (block timestamp, then log
index) is kept, whatever the input order, and each extra one is counted.

Contract References:
  NonfungiblePositionManager: https://github.com/Uniswap/v3-periphery/blob/main/contracts/NonfungiblePositionManager.sol
  ERC-721:                    https://eips.ethereum.org/EIPS/eip-721
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from lp_ledger.central_config import TOPICS, ZERO_ADDRESS, PoolConfig
from lp_ledger.rpc_helpers import (
    parse_block_timestamp,
    parse_quantity,
    strip_0x,
    topic_address,
    topic_uint,
)


# ── Event Log ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class EventLog:
    """
    One immutable event log record.

    Fields are normalised on construction: addresses and topics lower-case,
    data without 0x, timestamp tz-aware UTC.
    """

    address: str
    topics: Tuple[str, ...]
    data: str
    block_timestamp: datetime
    transaction_hash: str
    log_index: int = 0
    block_number: Optional[int] = None

    @property
    def topic0(self) -> str:
        return self.topics[0] if self.topics else ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "EventLog":
        """
        Build from any supported row shape:

          • ledger schema:  blockTimestamp, transactionId, emittingAddress,
                            topics, data, logIndex
          • BigQuery logs:  block_timestamp {value}, transaction_hash,
                            address, topics, data, log_index
          • JSON-RPC logs:  address, topics, data, transactionHash,
                            logIndex (hex), blockNumber (hex), blockTimestamp
        """
        address = row.get("emittingAddress", row.get("address"))
        tx_hash = row.get(
            "transactionId", row.get("transaction_hash", row.get("transactionHash"))
        )
        raw_ts = row.get("blockTimestamp", row.get("block_timestamp"))
        if address is None or raw_ts is None:
            raise ValueError(f"Log row missing address or timestamp: {row!r}")
        topics = tuple(t.lower() for t in (row.get("topics") or []))
        if len(topics) > 4:
            raise ValueError(f"Log row has {len(topics)} topics (max 4)")
        data = row.get("data") or ""
        if isinstance(data, (bytes, bytearray)):
            data = data.hex()
        block_number = row.get("blockNumber", row.get("block_number"))
        return cls(
            address=address.lower(),
            topics=topics,
            data=strip_0x(data).lower(),
            block_timestamp=parse_block_timestamp(raw_ts),
            transaction_hash=(tx_hash or "").lower(),
            log_index=parse_quantity(row.get("logIndex", row.get("log_index")), 0),
            block_number=None if block_number is None else parse_quantity(block_number),
        )


def logs_from_rows(rows: Iterable[Dict[str, Any]]) -> List[EventLog]:
    """Convert query rows to EventLogs, keeping their order."""
    return [EventLog.from_row(row) for row in rows]


# ── Indexing ────────────────────────────────────────────────────────────


@dataclass
class PositionLogs:
    """The full log lists of a position's opening and closing transactions."""

    opening: Optional[List[EventLog]] = None
    closing: Optional[List[EventLog]] = None


def logs_by_transaction(logs: Iterable[EventLog]) -> Dict[str, List[EventLog]]:
    """
    Partition logs by transaction hash, each list ordered by log index.

    Later passes rely on first-occurrence semantics, so order within a
    transaction matters. The sort is stable: equal log indexes keep input
    order. Logs without a transaction hash are skipped.
    """
    txs: Dict[str, List[EventLog]] = {}
    for log in logs:
        if not log.transaction_hash:
            continue
        txs.setdefault(log.transaction_hash, []).append(log)
    for tx_logs in txs.values():
        tx_logs.sort(key=lambda lg: lg.log_index)
    return txs


def _chronology(tx_logs: List[EventLog]) -> Tuple[datetime, int, str]:
    first = tx_logs[0]
    return first.block_timestamp, first.log_index, first.transaction_hash


def _token_ids(
    tx_logs: List[EventLog], config: PoolConfig
) -> Tuple[List[int], List[int]]:
    """Token ids opened and closed by one transaction, first occurrence order."""
    opened: List[int] = []
    closed: List[int] = []
    minted: List[int] = []
    for log in tx_logs:
        if log.address != config.position_manager or len(log.topics) < 2:
            continue
        if log.topic0 == TOPICS["DecreaseLiquidity"]:
            token_id = topic_uint(log.topics[1])
            if token_id not in closed:
                closed.append(token_id)
        elif log.topic0 == TOPICS["IncreaseLiquidity"]:
            token_id = topic_uint(log.topics[1])
            if token_id not in opened:
                opened.append(token_id)
        elif (
            log.topic0 == TOPICS["Transfer"]
            and len(log.topics) == 4
            and topic_address(log.topics[1]) == ZERO_ADDRESS
        ):
            token_id = topic_uint(log.topics[3])
            if token_id not in minted:
                minted.append(token_id)
    # The NFT mint only identifies an opening when no IncreaseLiquidity did.
    if not opened:
        opened = minted
    return opened, closed


@dataclass
class LogIndexer:
    """
    Indexes a batch of event logs for one pool.

    Usage:
        indexer = LogIndexer(PoolConfig())
        indexer.index(logs)
        indexer.positions[204635].closing   # → [EventLog, ...]

    Attributes:
        transactions: tx hash → ordered logs
        positions:    token id → PositionLogs
        duplicate_openings / duplicate_closings: token ids seen in more
            than one opening / closing transaction (latest one kept)
    """

    config: PoolConfig = field(default_factory=PoolConfig)
    transactions: Dict[str, List[EventLog]] = field(default_factory=dict)
    positions: Dict[int, PositionLogs] = field(default_factory=dict)
    duplicate_openings: Dict[int, int] = field(default_factory=dict)
    duplicate_closings: Dict[int, int] = field(default_factory=dict)
    dropped_transactions: int = 0

    def index(self, logs: Iterable[EventLog]) -> Dict[int, PositionLogs]:
        """Group logs by transaction, then attribute transactions to positions."""
        tx_map = logs_by_transaction(logs)
        self.transactions.update(tx_map)
        self.index_positions(tx_map)
        return self.positions

    def index_positions(
        self, tx_map: Dict[str, List[EventLog]]
    ) -> Dict[int, PositionLogs]:
        """Record each transaction's logs against the token ids it opens/closes."""
        for tx_logs in tx_map.values():
            opened, closed = _token_ids(tx_logs, self.config)
            if not opened and not closed:
                self.dropped_transactions += 1
                continue
            for token_id in opened:
                entry = self.positions.setdefault(token_id, PositionLogs())
                entry.opening = self._keep_latest(
                    entry.opening, tx_logs, token_id, self.duplicate_openings
                )
            for token_id in closed:
                entry = self.positions.setdefault(token_id, PositionLogs())
                entry.closing = self._keep_latest(
                    entry.closing, tx_logs, token_id, self.duplicate_closings
                )
        return self.positions

    @staticmethod
    def _keep_latest(
        current: Optional[List[EventLog]],
        candidate: List[EventLog],
        token_id: int,
        duplicates: Dict[int, int],
    ) -> List[EventLog]:
        if current is None or current is candidate:
            return candidate
        duplicates[token_id] = duplicates.get(token_id, 0) + 1
        return max(current, candidate, key=_chronology)

    @property
    def closed_token_ids(self) -> List[int]:
        return [tid for tid, p in self.positions.items() if p.closing is not None]


def index_positions(
    tx_map: Dict[str, List[EventLog]], config: Optional[PoolConfig] = None
) -> Dict[int, PositionLogs]:
    """Functional form of LogIndexer.index_positions."""
    return LogIndexer(config or PoolConfig()).index_positions(tx_map)
