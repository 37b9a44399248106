"""
Project Configuration — pool, tokens, event topics, version
===========================================================

Contains the on-chain identifiers the position reconstruction works with
and project metadata.

Default pool: Uniswap V3 USDC/WETH 0.30% on Ethereum L1.
  Pool:                       0x8ad599c3a0ff1de082011efddc58f1908eb6e6d8
  NonfungiblePositionManager: 0xC36442b4a4522E871399CD717aBDD847Ab11FE88
Sources:
  https://docs.uniswap.org/contracts/v3/reference/deployments/
  https://github.com/Uniswap/v3-periphery/blob/main/contracts/interfaces/INonfungiblePositionManager.sol
"""

import os
import re
from dataclasses import dataclass
from importlib.metadata import version, PackageNotFoundError
from pathlib import Path
from types import MappingProxyType

# Version — single source of truth is pyproject.toml
try:
    PROJECT_VERSION = version("lp-ledger")
except PackageNotFoundError:
    # Dev / CI: package not installed — read pyproject.toml directly
    _toml = Path(__file__).resolve().parent.parent / "pyproject.toml"
    _m = (
        re.search(r'version\s*=\s*"([^"]+)"', _toml.read_text())
        if _toml.exists()
        else None
    )
    PROJECT_VERSION = _m.group(1) if _m else "0.0.0-dev"
PROJECT_NAME = "LP Ledger"

# Fixed-point scale of a native price: quote-token atoms per 10^18 base atoms
# (one whole WETH). A price of USDC 3,000 is stored as 3_000_000_000.
PRICE_SCALE = 10**18

BPS = 10_000  # 1 basis point = 0.01%

# ── Event Topics ────────────────────────────────────────────────────────
# topic[0] = keccak256(event signature). Logs carry them lower-cased.

TOPICS = MappingProxyType(
    {
        # UniswapV3Pool
        "Mint": "0x7a53080ba414158be7ec69b987b5fb7d07dee101fe85488f0853ae16239d0bde",
        "Burn": "0x0c396cd989a39f4459b5fa1aed6a9a8dcdbc45908acfd67e028cd568da98982c",
        "Swap": "0xc42079f94a6350d7e6235f29174924f928cc2ac818eb64fed8004e115fbcca67",
        # NonfungiblePositionManager
        "IncreaseLiquidity": "0x3067048beee31b25b2f1681f88dac838c8bba36af25bfb2b7cf7473a5847e35f",
        "DecreaseLiquidity": "0x26f6a048ee9138f2c0ce266f322cb99228e8d619ae2bff30c67f8dcf9d2377b4",
        # ERC-20 / ERC-721 Transfer(from, to, value|tokenId)
        "Transfer": "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef",
    }
)

ZERO_ADDRESS = "0x" + "0" * 40


@dataclass(frozen=True)
class TokenInfo:
    """ERC-20 token metadata."""

    symbol: str
    address: str
    decimals: int


WETH = TokenInfo("WETH", "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2", 18)
USDC = TokenInfo("USDC", "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48", 6)


@dataclass(frozen=True)
class PoolConfig:
    """
    One V3 pool plus the position manager that wraps it.

    The base asset is the one priced (WETH), the quote asset the one prices
    are denominated in (USDC). In this pool USDC sorts first, so token0 is the
    quote asset and token1 the base asset: DecreaseLiquidity.amount0 is USDC
    and amount1 is WETH.

    All addresses are stored lower-case; logs are compared lower-case.
    """

    pool_address: str = "0x8ad599c3a0ff1de082011efddc58f1908eb6e6d8"
    position_manager: str = "0xc36442b4a4522e871399cd717abdd847ab11fe88"
    base_token: TokenInfo = WETH
    quote_token: TokenInfo = USDC
    fee: int = 3000
    tick_spacing: int = 60

    def __post_init__(self):
        for name in ("pool_address", "position_manager"):
            value = getattr(self, name)
            if not re.fullmatch(r"0x[0-9a-fA-F]{40}", value):
                raise ValueError(f"Invalid {name}: {value}")
            object.__setattr__(self, name, value.lower())

    @property
    def base_is_token0(self) -> bool:
        """Pools order tokens by address; token0 is the lower one."""
        return self.base_token.address < self.quote_token.address

    @property
    def tracked_tokens(self) -> tuple:
        return (self.base_token.address, self.quote_token.address)


def load_pool_config() -> PoolConfig:
    """Default pool config, with LP_LEDGER_POOL overriding the pool address."""
    pool = os.environ.get("LP_LEDGER_POOL")
    if pool:
        return PoolConfig(pool_address=pool)
    return PoolConfig()


# ── JSON-RPC Endpoints ──────────────────────────────────────────────────
# 1RPC (https://docs.1rpc.io) — no API key. Historical eth_getLogs over long
# ranges usually needs an archive provider: set LP_LEDGER_RPC_URL.

RPC_URLS = MappingProxyType(
    {
        "ethereum": "https://1rpc.io/eth",
        "arbitrum": "https://1rpc.io/arb",
        "polygon": "https://1rpc.io/matic",
        "base": "https://1rpc.io/base",
        "optimism": "https://1rpc.io/op",
    }
)


def get_rpc_url(network: str = "ethereum") -> str:
    """RPC endpoint for a network; LP_LEDGER_RPC_URL wins when set."""
    override = os.environ.get("LP_LEDGER_RPC_URL")
    if override:
        return override
    if network not in RPC_URLS:
        raise ValueError(
            f"Unsupported network: {network}. Available: {list(RPC_URLS.keys())}"
        )
    return RPC_URLS[network]
