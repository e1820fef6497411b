"""Ethereum MCP server: balances, transfers, swaps and contract reads on an Anvil fork."""

import json
from typing import Any, Awaitable

from mcp.server.fastmcp import FastMCP

from ethcopilot.chain.abi import coerce_arg, parse_signature
from ethcopilot.chain.rpc import get_rpc_adapter
from ethcopilot.chain.tokens import get_token_registry
from ethcopilot.errors import AdapterError, UnknownToken
from ethcopilot.settings import get_settings

mcp = FastMCP("Ethereum", json_response=True)

_adapter = get_rpc_adapter()


def _token(identifier: str):
    token = get_token_registry().resolve(identifier or "ETH")
    if token is None:
        raise UnknownToken(identifier)
    return token


async def _respond(call: Awaitable[Any]) -> str:
    try:
        result = await call
    except (AdapterError, UnknownToken) as e:
        return json.dumps({"error": e.to_dict()})
    if isinstance(result, bool):
        return json.dumps({"ok": {"deployed": result}})
    return json.dumps({"ok": result.to_dict()})


@mcp.tool()
async def get_balance(address: str, token: str = "ETH") -> str:
    """Get the balance of an address in ETH or an ERC-20 token (symbol or contract address)."""
    try:
        tok = _token(token)
    except UnknownToken as e:
        return json.dumps({"error": e.to_dict()})
    return await _respond(_adapter.get_balance(address, tok))


@mcp.tool()
async def transfer(sender: str, recipient: str, amount: str, token: str = "ETH") -> str:
    """Send `amount` base units (integer string) of ETH or a token from an unlocked account."""
    try:
        tok = _token(token)
    except UnknownToken as e:
        return json.dumps({"error": e.to_dict()})
    return await _respond(_adapter.transfer(sender, recipient, int(amount), tok))


@mcp.tool()
async def swap(
    account: str,
    amount_in: str,
    token_in: str,
    token_out: str,
    max_slippage_bps: int | None = None,
) -> str:
    """Swap `amount_in` base units of token_in for token_out through Uniswap V2.

    The slippage bound defaults to the configured `default_slippage_bps`.
    """
    try:
        tok_in = _token(token_in)
        tok_out = _token(token_out)
    except UnknownToken as e:
        return json.dumps({"error": e.to_dict()})
    bps = get_settings().default_slippage_bps if max_slippage_bps is None else max_slippage_bps
    return await _respond(
        _adapter.swap(account, int(amount_in), tok_in, tok_out, bps)
    )


@mcp.tool()
async def query_contract(address: str, method: str, args_json: str = "[]", returns_json: str = '["uint256"]') -> str:
    """Call a view function, e.g. method='totalSupply()' with returns_json='["uint256"]'.

    Arguments and return types are passed as JSON strings so that function-calling
    adapters see plain string parameters.
    """
    try:
        _, types = parse_signature(method)
        raw_args = json.loads(args_json)
        args = [coerce_arg(t, v) for t, v in zip(types, raw_args)]
        returns = json.loads(returns_json)
    except ValueError as e:
        return json.dumps({"error": {"kind": "AdapterError", "message": str(e)}})
    return await _respond(_adapter.query_contract(address, method, args, returns))


@mcp.tool()
async def check_contract(address: str) -> str:
    """Check whether a contract is deployed at an address."""
    return await _respond(_adapter.is_contract(address))


if __name__ == "__main__":
    mcp.run(transport="stdio")
