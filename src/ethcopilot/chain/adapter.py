"""Blockchain adapter contract consumed by the orchestrator.

Amounts are integers in base units everywhere. Results convert to JSON-safe dicts
(integers as decimal strings) for tool-result turns and MCP payloads.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from .tokens import TokenInfo, format_amount


@dataclass(frozen=True)
class Balance:
    address: str
    symbol: str
    decimals: int
    amount: int

    @property
    def display(self) -> str:
        return f"{format_amount(self.amount, self.decimals)} {self.symbol}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "amount": str(self.amount),
            "display": self.display,
        }


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    status: str
    block_number: int | None
    gas_used: int | None
    balances: List[Balance] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "status": self.status,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "balances": [b.to_dict() for b in self.balances],
        }


@dataclass(frozen=True)
class SwapReceipt:
    tx_hash: str
    status: str
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int
    min_amount_out: int
    decimals_in: int
    decimals_out: int
    block_number: int | None = None
    gas_used: int | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "status": self.status,
            "token_in": self.token_in,
            "token_out": self.token_out,
            "amount_in": str(self.amount_in),
            "amount_out": str(self.amount_out),
            "min_amount_out": str(self.min_amount_out),
            "display": (
                f"{format_amount(self.amount_in, self.decimals_in)} {self.token_in} -> "
                f"{format_amount(self.amount_out, self.decimals_out)} {self.token_out}"
            ),
            "block_number": self.block_number,
            "gas_used": self.gas_used,
        }


@dataclass(frozen=True)
class ContractCallResult:
    address: str
    method: str
    values: List[Any]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["values"] = [_json_safe(v) for v in self.values]
        return data


def _json_safe(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, bytes):
        return "0x" + value.hex()
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


class BlockchainAdapter(ABC):
    """Executes tool calls against the chain and raises typed AdapterErrors.

    The adapter owns nonce management. Callers submit each operation at most once
    per invocation, apart from the single retry after a NetworkError.
    """

    name = "base"

    @abstractmethod
    async def get_balance(self, address: str, token: TokenInfo) -> Balance:
        """Balance of ``address`` in ``token``; AddressNotFound only for never-seen addresses."""

    @abstractmethod
    async def transfer(
        self, sender: str, recipient: str, amount: int, token: TokenInfo
    ) -> TransactionReceipt:
        """Send ``amount`` base units of ``token`` from ``sender`` to ``recipient``.

        Args:
            sender: Unlocked sender address (checksummed).
            recipient: Recipient address (checksummed).
            amount: Amount in base units.
            token: Token to send; ETH for ether.

        Returns:
            TransactionReceipt: Mined receipt with post-transfer balances.

        Raises:
            InsufficientFunds, InvalidRecipient: Checked before submission.
            NetworkError: Only before the transaction was submitted.
            AdapterError: Any failure once the transaction may have been submitted.
        """

    @abstractmethod
    async def swap(
        self,
        account: str,
        amount_in: int,
        token_in: TokenInfo,
        token_out: TokenInfo,
        max_slippage_bps: int,
    ) -> SwapReceipt:
        """Swap ``amount_in`` of ``token_in`` for ``token_out`` on Uniswap V2.

        Args:
            account: Unlocked account that sells and receives.
            amount_in: Amount of token_in in base units.
            token_in: Token sold.
            token_out: Token bought.
            max_slippage_bps: Minimum output is the quote reduced by this many basis points.

        Returns:
            SwapReceipt: Mined receipt with the realised output amount.

        Raises:
            SlippageExceeded, InsufficientLiquidity, InsufficientFunds: The swap was not executed.
            NetworkError: Only before the transaction was submitted.
            AdapterError: Any failure once the transaction may have been submitted.
        """

    @abstractmethod
    async def query_contract(
        self,
        address: str,
        method: str,
        args: List[Any],
        returns: List[str],
    ) -> ContractCallResult:
        """Read-only call; ContractNotFound or DecodeError."""

    @abstractmethod
    async def is_contract(self, address: str) -> bool:
        """True when code is deployed at ``address``."""

    async def close(self) -> None:
        return None
