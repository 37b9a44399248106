#!/usr/bin/env python3
"""
RPC Helpers — ABI Decoding, Timestamps and JSON-RPC Client
==========================================================

Consolidates low-level EVM primitives used by the log indexer, the
position builder, the price index and the ledger fetcher:

  • ABI decoding of log data words and indexed topics
    (uint256, int256 / int24, address)
  • Block timestamp normalisation (ISO-8601, Unix seconds, hex)
  • JSON-RPC client (eth_getLogs, eth_getTransactionReceipt,
    eth_getBlockByNumber, eth_blockNumber)

All constants reference the Ethereum ABI specification:
  https://docs.soliditylang.org/en/latest/abi-spec.html

Terminology:
  • Word:  32 bytes = 256 bits = 64 hex characters
  • Slot:  Position of a 32-byte word in log data
  • Topic: One indexed 32-byte event argument (topic[0] = event signature)
  • Q192:  2^192 — denominator of sqrtPriceX96² (tick → price)
  • Q256:  2^256 — two's complement boundary for int256
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import httpx

# ── ABI Word Constants ──────────────────────────────────────────────────

ABI_WORD_HEX = 64            # 32 bytes × 2 hex chars = 64 hex characters
ADDRESS_PAD_HEX = 24         # Left padding in a 32-byte slot = 64 - 40
SIGN_BIT = 1 << 255          # Two's complement sign bit for int256

Q192 = 2 ** 192              # sqrtPriceX96² denominator
Q256 = 2 ** 256              # int256 overflow boundary (two's complement wrap)


def strip_0x(hex_data: str) -> str:
    """Drop a leading 0x / 0X prefix if present."""
    if hex_data[:2] in ("0x", "0X"):
        return hex_data[2:]
    return hex_data


# ── ABI Decoding ────────────────────────────────────────────────────────

def decode_uint(hex_data: str, slot: int = 0) -> int:
    """Decode uint256 from log data at 32-byte slot offset.

    Args:
        hex_data: Hex string (with or without 0x prefix).
        slot: Which 32-byte word to read (0-indexed).

    Raises:
        ValueError: If the slot lies beyond the end of the data.
    """
    hex_data = strip_0x(hex_data)
    start = slot * ABI_WORD_HEX
    word = hex_data[start:start + ABI_WORD_HEX]
    if len(word) != ABI_WORD_HEX:
        raise ValueError(f"No ABI word at slot {slot} ({len(hex_data)} hex chars)")
    return int(word, 16)


def to_signed(value: int) -> int:
    """Reinterpret a uint256 as int256 (two's complement)."""
    if value >= SIGN_BIT:
        return value - Q256
    return value


def decode_int(hex_data: str, slot: int = 0) -> int:
    """Decode int256 (two's complement) from log data.

    int24 ticks are sign-extended to a full word, so this decodes them too.
    """
    return to_signed(decode_uint(hex_data, slot))


def decode_address(hex_data: str, slot: int = 0) -> str:
    """Decode address (last 20 bytes of 32-byte slot)."""
    hex_data = strip_0x(hex_data)
    start = slot * ABI_WORD_HEX
    return "0x" + hex_data[start + ADDRESS_PAD_HEX:start + ABI_WORD_HEX].lower()


def topic_uint(topic: str) -> int:
    """Decode an indexed uint256 topic (e.g. a position tokenId)."""
    return decode_uint(topic, 0)


def topic_int(topic: str) -> int:
    """Decode an indexed int24/int256 topic (e.g. tickLower)."""
    return decode_int(topic, 0)


def topic_address(topic: str) -> str:
    """Decode an indexed address topic (e.g. Transfer.from)."""
    return decode_address(topic, 0)


# ── Timestamps ──────────────────────────────────────────────────────────

def parse_block_timestamp(value: Union[str, int, datetime, Dict[str, Any]]) -> datetime:
    """
    Normalise a block timestamp to a timezone-aware UTC datetime.

    Accepts:
      • ISO-8601 strings, including the trailing 'Z' BigQuery emits
        ('2021-05-04T23:10:00.000Z')
      • BigQuery timestamp objects serialised as {"value": "<iso>"}
      • Unix seconds as int, decimal string or 0x-hex string (JSON-RPC)
      • datetime (naive values are taken as UTC)
    """
    if isinstance(value, dict):
        value = value["value"]
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"Invalid block timestamp: {value!r}")
    if isinstance(value, int):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text[:2] in ("0x", "0X"):
            return datetime.fromtimestamp(int(text, 16), tz=timezone.utc)
        if text.isdigit():
            return datetime.fromtimestamp(int(text), tz=timezone.utc)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Invalid block timestamp: {value!r}") from None
        return parse_block_timestamp(parsed)
    raise ValueError(f"Invalid block timestamp: {value!r}")


def parse_quantity(value: Union[str, int, None], default: int = 0) -> int:
    """Parse a JSON-RPC quantity ('0x1a') or a plain integer."""
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text[:2] in ("0x", "0X"):
        return int(text, 16)
    return int(text)


# ── JSON-RPC Client ─────────────────────────────────────────────────────

async def rpc_request(
    rpc_url: str,
    method: str,
    params: list,
    timeout: int = 30,
    client: Optional[httpx.AsyncClient] = None,
) -> Any:
    """
    Execute one JSON-RPC request and return its "result".

    Args:
        rpc_url: JSON-RPC endpoint URL (e.g. https://1rpc.io/eth)
        method: RPC method name
        params: Positional params
        timeout: HTTP timeout in seconds (ignored when client is given)
        client: Optional shared AsyncClient (connection reuse)

    Raises:
        RuntimeError: If the node returns a JSON-RPC error.
    """
    payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
    if client is None:
        async with httpx.AsyncClient(timeout=timeout) as own_client:
            resp = await own_client.post(rpc_url, json=payload)
    else:
        resp = await client.post(rpc_url, json=payload)
    result = resp.json()
    if "error" in result:
        error = result["error"]
        message = error.get("message", error) if isinstance(error, dict) else error
        raise RuntimeError(f"RPC error: {message}")
    return result.get("result")


async def eth_get_logs(
    rpc_url: str,
    address: str,
    topic0: str,
    from_block: int,
    to_block: int,
    client: Optional[httpx.AsyncClient] = None,
) -> List[Dict[str, Any]]:
    """
    eth_getLogs for one contract and one event signature over a block range.

    Returns raw JSON-RPC log objects (hex fields untouched).
    """
    if from_block > to_block:
        raise ValueError(f"from_block {from_block} > to_block {to_block}")
    flt = {
        "address": address,
        "topics": [topic0],
        "fromBlock": hex(from_block),
        "toBlock": hex(to_block),
    }
    result = await rpc_request(rpc_url, "eth_getLogs", [flt], client=client)
    return result or []


async def eth_get_transaction_receipt(
    rpc_url: str, tx_hash: str, client: Optional[httpx.AsyncClient] = None
) -> Dict[str, Any]:
    """Transaction receipt: logs, gasUsed, effectiveGasPrice, blockNumber."""
    result = await rpc_request(
        rpc_url, "eth_getTransactionReceipt", [tx_hash], client=client
    )
    if not result:
        raise RuntimeError(f"No receipt for transaction {tx_hash}")
    return result


async def eth_get_block_timestamp(
    rpc_url: str, block_number: int, client: Optional[httpx.AsyncClient] = None
) -> int:
    """Unix timestamp of a block (header only, no transactions)."""
    result = await rpc_request(
        rpc_url, "eth_getBlockByNumber", [hex(block_number), False], client=client
    )
    if not result:
        raise RuntimeError(f"Block {block_number} not found")
    return int(result["timestamp"], 16)


async def eth_block_number(
    rpc_url: str, client: Optional[httpx.AsyncClient] = None
) -> int:
    """Latest block number from an EVM node."""
    result = await rpc_request(rpc_url, "eth_blockNumber", [], client=client)
    return int(result, 16)
