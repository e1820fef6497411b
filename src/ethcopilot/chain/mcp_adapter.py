import asyncio
import json
import logging
import os
from typing import Any, Dict, List

import anyio
from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

from ..errors import AdapterError, NetworkError, adapter_error_from_dict
from ..settings import get_settings
from .adapter import (
    Balance,
    BlockchainAdapter,
    ContractCallResult,
    SwapReceipt,
    TransactionReceipt,
)
from .rpc import get_rpc_adapter
from .tokens import TokenInfo

logger = logging.getLogger(__name__)

# Server process or stdio stream failures, as raised by mcp and anyio.
_TRANSPORT_ERRORS = (
    OSError,
    TimeoutError,
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    ExceptionGroup,
)


def _json_default(value: Any) -> Any:
    if isinstance(value, bytes):
        return "0x" + value.hex()
    raise TypeError(f"Cannot serialise {type(value).__name__}")


def _token_ref(token: TokenInfo) -> str:
    return token.address or token.symbol


def _innermost(error: BaseException) -> BaseException:
    # anyio task groups wrap a single failure in an ExceptionGroup.
    while isinstance(error, BaseExceptionGroup) and len(error.exceptions) == 1:
        error = error.exceptions[0]
    return error


def _call_failure(name: str, error: BaseException, outcome_unknown: bool) -> AdapterError:
    if isinstance(error, McpError):
        return AdapterError(f"MCP tool {name} failed: {error}")
    if outcome_unknown:
        return AdapterError(f"MCP server failed during {name}; it may have been submitted: {error}")
    return NetworkError(f"MCP server unavailable for {name}: {error}")


def _balance_from_dict(data: Dict[str, Any]) -> Balance:
    return Balance(
        address=data["address"],
        symbol=data["symbol"],
        decimals=int(data["decimals"]),
        amount=int(data["amount"]),
    )


class McpChainAdapter(BlockchainAdapter):
    """Blockchain adapter backed by the ``ethereum`` MCP server over stdio.

    Each call opens a short-lived stdio session, the same way tool calls reach
    the other MCP servers. Failures come back as ``{"error": {"kind", "message"}}``
    and are raised as the matching AdapterError.
    """

    name = "mcp"

    def __init__(self, command: str, max_concurrency: int = 4) -> None:
        cmd_parts = command.split()
        if len(cmd_parts) < 2:
            raise ValueError(f"Invalid MCP command format: {command}")
        self._server_params = StdioServerParameters(
            command=cmd_parts[0],
            args=cmd_parts[1:],
            env={**os.environ},
        )
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def _call_tool(
        self, name: str, arguments: Dict[str, Any], *, idempotent: bool = True
    ) -> Dict[str, Any]:
        """Run one tool on a fresh stdio session and unwrap its JSON payload.

        Args:
            name: MCP tool name.
            arguments: Tool arguments, already JSON-safe.
            idempotent: False for tools that submit transactions. A transport
                failure after the request went out is then a plain AdapterError,
                since the operation may already have been submitted.

        Returns:
            Dict[str, Any]: The ``ok`` payload.

        Raises:
            NetworkError: The server could not be started or reached.
            AdapterError: The tool failed, or the outcome of a submission is unknown.
        """
        logger.info("Calling MCP tool %s", name)
        requested = False
        async with self._semaphore:
            try:
                async with stdio_client(self._server_params) as (read, write):
                    async with ClientSession(read, write) as session:
                        await session.initialize()
                        requested = True
                        result = await session.call_tool(name, arguments)
            except (McpError, *_TRANSPORT_ERRORS) as e:
                raise _call_failure(name, _innermost(e), requested and not idempotent) from e

        if result.isError:
            text = getattr(result.content[0], "text", "") if result.content else ""
            raise AdapterError(f"MCP tool {name} failed: {text or 'no details'}")
        if not result.content:
            raise AdapterError(f"MCP tool {name} returned no content")
        text = getattr(result.content[0], "text", "") or ""
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise AdapterError(f"MCP tool {name} returned invalid JSON: {e}") from e
        if "error" in payload:
            raise adapter_error_from_dict(payload["error"])
        return payload["ok"]

    async def get_balance(self, address: str, token: TokenInfo) -> Balance:
        data = await self._call_tool("get_balance", {"address": address, "token": _token_ref(token)})
        return _balance_from_dict(data)

    async def transfer(
        self, sender: str, recipient: str, amount: int, token: TokenInfo
    ) -> TransactionReceipt:
        data = await self._call_tool(
            "transfer",
            {
                "sender": sender,
                "recipient": recipient,
                "amount": str(amount),
                "token": _token_ref(token),
            },
            idempotent=False,
        )
        return TransactionReceipt(
            tx_hash=data["tx_hash"],
            status=data["status"],
            block_number=data.get("block_number"),
            gas_used=data.get("gas_used"),
            balances=[_balance_from_dict(b) for b in data.get("balances", [])],
        )

    async def swap(
        self,
        account: str,
        amount_in: int,
        token_in: TokenInfo,
        token_out: TokenInfo,
        max_slippage_bps: int,
    ) -> SwapReceipt:
        data = await self._call_tool(
            "swap",
            {
                "account": account,
                "amount_in": str(amount_in),
                "token_in": _token_ref(token_in),
                "token_out": _token_ref(token_out),
                "max_slippage_bps": max_slippage_bps,
            },
            idempotent=False,
        )
        return SwapReceipt(
            tx_hash=data["tx_hash"],
            status=data["status"],
            token_in=data["token_in"],
            token_out=data["token_out"],
            amount_in=int(data["amount_in"]),
            amount_out=int(data["amount_out"]),
            min_amount_out=int(data["min_amount_out"]),
            decimals_in=token_in.decimals,
            decimals_out=token_out.decimals,
            block_number=data.get("block_number"),
            gas_used=data.get("gas_used"),
        )

    async def query_contract(
        self,
        address: str,
        method: str,
        args: List[Any],
        returns: List[str],
    ) -> ContractCallResult:
        data = await self._call_tool(
            "query_contract",
            {
                "address": address,
                "method": method,
                "args_json": json.dumps(args, default=_json_default),
                "returns_json": json.dumps(returns),
            },
        )
        return ContractCallResult(address=data["address"], method=data["method"], values=data["values"])

    async def is_contract(self, address: str) -> bool:
        data = await self._call_tool("check_contract", {"address": address})
        return bool(data["deployed"])


def get_chain_adapter() -> BlockchainAdapter:
    """Use the MCP server when ``mcp_ethereum_cmd`` is configured, else talk JSON-RPC directly."""
    settings = get_settings()
    if settings.mcp_ethereum_cmd:
        logger.info("Using MCP chain adapter: %s", settings.mcp_ethereum_cmd)
        return McpChainAdapter(settings.mcp_ethereum_cmd, settings.rpc_max_concurrency)
    return get_rpc_adapter()
