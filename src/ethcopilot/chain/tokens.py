import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import Dict, List

from eth_utils import is_hex_address, to_checksum_address

from ..settings import get_settings

logger = logging.getLogger(__name__)

NATIVE_SYMBOL = "ETH"
NATIVE_DECIMALS = 18

UNISWAP_V2_ROUTER = "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D"
WETH_ADDRESS = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    address: str | None  # None for the native asset
    decimals: int
    name: str

    @property
    def is_native(self) -> bool:
        return self.address is None


ETH = TokenInfo(symbol=NATIVE_SYMBOL, address=None, decimals=NATIVE_DECIMALS, name="Ether")

_DEFAULT_TOKENS: List[TokenInfo] = [
    ETH,
    TokenInfo("WETH", WETH_ADDRESS, 18, "Wrapped Ether"),
    TokenInfo("USDC", "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", 6, "USD Coin"),
    TokenInfo("USDT", "0xdAC17F958D2ee523a2206206994597C13D831ec7", 6, "Tether USD"),
    TokenInfo("DAI", "0x6B175474E89094C44Da98b954EedeAC495271d0F", 18, "Dai Stablecoin"),
    TokenInfo("UNI", "0x1f9840a85d5aF5bf1D1762F925BDADdC4201F984", 18, "Uniswap"),
    TokenInfo("LINK", "0x514910771AF9Ca656af840dff83E8264EcF986CA", 18, "ChainLink Token"),
    TokenInfo("WBTC", "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599", 8, "Wrapped BTC"),
]


class TokenRegistry:
    """Known tokens, looked up by symbol (case-insensitive) or contract address."""

    def __init__(self, tokens: List[TokenInfo]) -> None:
        self._by_symbol: Dict[str, TokenInfo] = {}
        self._by_address: Dict[str, TokenInfo] = {}
        for token in tokens:
            self._by_symbol[token.symbol.lower()] = token
            if token.address:
                self._by_address[token.address.lower()] = token

    def resolve(self, identifier: str) -> TokenInfo | None:
        key = identifier.strip().lower()
        if key in self._by_symbol:
            return self._by_symbol[key]
        return self._by_address.get(key)

    def all(self) -> List[TokenInfo]:
        return list(self._by_symbol.values())


def load_token_file(path: Path) -> List[TokenInfo]:
    """Read extra tokens from a JSON list of {symbol, address, decimals, name}."""
    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    tokens: List[TokenInfo] = []
    for entry in raw:
        address = entry.get("address")
        if address and not is_hex_address(address):
            logger.warning("Skipping token %s with invalid address %s", entry.get("symbol"), address)
            continue
        tokens.append(
            TokenInfo(
                symbol=str(entry["symbol"]).upper(),
                address=to_checksum_address(address) if address else None,
                decimals=int(entry.get("decimals", 18)),
                name=str(entry.get("name", entry["symbol"])),
            )
        )
    return tokens


@lru_cache(maxsize=1)
def get_token_registry() -> TokenRegistry:
    """Return the token registry: built-in mainnet tokens plus ``tokens_file`` entries (cached)."""
    tokens = list(_DEFAULT_TOKENS)
    tokens_file = get_settings().tokens_file
    if tokens_file is not None:
        try:
            tokens.extend(load_token_file(tokens_file))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Could not load token file %s: %s", tokens_file, e)
    return TokenRegistry(tokens)


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert a whole-unit amount to integer base units.

    Raises ValueError when the amount has more fractional digits than the token
    supports, since rounding would silently change the value.
    """
    try:
        scaled = amount.scaleb(decimals)
    except InvalidOperation as e:
        raise ValueError(f"Amount {amount} is not a finite number") from e
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {amount} has more than {decimals} decimal places")
    return int(scaled)


def format_amount(base_units: int, decimals: int) -> str:
    """Render base units as a decimal string with at least one fractional digit.

    >>> format_amount(1000000000, 6)
    '1000.0'
    """
    value = Decimal(base_units).scaleb(-decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0")
        if text.endswith("."):
            text += "0"
    else:
        text += ".0"
    return text
