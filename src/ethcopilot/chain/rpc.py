import asyncio
import itertools
import logging
from typing import Any, Dict, List

import httpx
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import to_checksum_address

from ..errors import (
    AdapterError,
    AddressNotFound,
    ContractNotFound,
    DecodeError,
    InsufficientFunds,
    InsufficientLiquidity,
    InvalidRecipient,
    NetworkError,
    SlippageExceeded,
    TransactionReverted,
)
from ..settings import get_settings
from .abi import decode_result, encode_call
from .adapter import (
    Balance,
    BlockchainAdapter,
    ContractCallResult,
    SwapReceipt,
    TransactionReceipt,
)
from .tokens import UNISWAP_V2_ROUTER, WETH_ADDRESS, TokenInfo, format_amount

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _map_rpc_error(error: Dict[str, Any]) -> AdapterError:
    """Translate a JSON-RPC error object (including revert reasons) to a typed failure."""
    message = str(error.get("message", ""))
    data = error.get("data")
    text = f"{message} {data}" if data else message
    lowered = text.lower()
    if "INSUFFICIENT_OUTPUT_AMOUNT" in text:
        return SlippageExceeded(f"Realised price is outside the slippage bound: {message}")
    if "INSUFFICIENT_LIQUIDITY" in text:
        return InsufficientLiquidity(f"Pool has insufficient liquidity: {message}")
    if (
        "insufficient funds" in lowered
        or "exceeds balance" in lowered
        or "insufficient-balance" in lowered
    ):
        return InsufficientFunds(message)
    if "revert" in lowered:
        return TransactionReverted(message)
    return AdapterError(f"RPC error: {message}")


class JsonRpcAdapter(BlockchainAdapter):
    """Blockchain adapter talking JSON-RPC to an Anvil (forked mainnet) node.

    Development accounts are unlocked on the node, so state-changing calls go
    through ``eth_sendTransaction`` with an explicit ``from``. A single httpx
    client and semaphore bound the number of in-flight requests for all sessions.
    """

    name = "jsonrpc"

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout_seconds: float = 30.0,
        max_concurrency: int = 8,
        poll_interval_seconds: float = 0.5,
        receipt_timeout_seconds: float = 60.0,
        swap_deadline_seconds: int = 3600,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = rpc_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout_seconds,
            limits=httpx.Limits(
                max_connections=max_concurrency,
                max_keepalive_connections=max_concurrency,
            ),
        )
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._ids = itertools.count(1)
        self._poll_interval = poll_interval_seconds
        self._receipt_timeout = receipt_timeout_seconds
        self._swap_deadline = swap_deadline_seconds

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # JSON-RPC plumbing

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        async with self._semaphore:
            try:
                response = await self._client.post(
                    self._url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                raise NetworkError(f"{method} failed: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise NetworkError(f"{method} failed: HTTP {response.status_code}")
        try:
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise AdapterError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise NetworkError(f"{method} returned invalid JSON: {e}") from e

        if data.get("error"):
            logger.debug("RPC %s error: %s", method, data["error"])
            raise _map_rpc_error(data["error"])
        return data.get("result")

    async def _eth_call(self, tx: Dict[str, Any]) -> str:
        return await self._rpc("eth_call", [tx, "latest"])

    async def _call(self, to: str, signature: str, args: List[Any], returns: List[str]) -> List[Any]:
        result = await self._eth_call({"to": to, "data": encode_call(signature, args)})
        try:
            return decode_result(returns, result or "0x")
        except DecodingError as e:
            raise DecodeError(f"{signature} on {to} returned unexpected data: {e}") from e

    async def _get_code(self, address: str) -> str:
        return await self._rpc("eth_getCode", [address, "latest"]) or "0x"

    async def _native_balance(self, address: str) -> int:
        return int(await self._rpc("eth_getBalance", [address, "latest"]), 16)

    async def _nonce(self, address: str) -> int:
        return int(await self._rpc("eth_getTransactionCount", [address, "pending"]), 16)

    async def _balance_of(self, address: str, token: TokenInfo) -> int:
        if token.is_native:
            return await self._native_balance(address)
        (amount,) = await self._call(token.address, "balanceOf(address)", [address], ["uint256"])
        return amount

    async def _observed(self, address: str) -> bool:
        if await self._nonce(address) > 0:
            return True
        if await self._native_balance(address) > 0:
            return True
        return await self._get_code(address) != "0x"

    async def _latest_timestamp(self) -> int:
        block = await self._rpc("eth_getBlockByNumber", ["latest", False])
        return int(block["timestamp"], 16)

    async def _send(self, tx: Dict[str, Any]) -> Dict[str, Any]:
        """Simulate, submit and wait for ``tx``.

        Failures before submission keep their type, so a ``NetworkError`` there
        may be retried. Once the node may have accepted the transaction, every
        failure is a plain ``AdapterError``.

        Returns:
            Dict[str, Any]: The mined receipt.
        """
        await self._eth_call(tx)
        tx = {**tx, "nonce": hex(await self._nonce(tx["from"]))}
        try:
            tx_hash = await self._rpc("eth_sendTransaction", [tx])
        except NetworkError as e:
            if isinstance(e.__cause__, httpx.ConnectError):
                raise
            raise AdapterError(f"Submission from {tx['from']} has an unknown outcome: {e}") from e
        logger.info("Submitted transaction %s from %s", tx_hash, tx["from"])
        receipt = await self._wait_for_receipt(tx_hash)
        if int(receipt.get("status", "0x0"), 16) != 1:
            raise TransactionReverted(f"Transaction {tx_hash} reverted")
        return receipt

    async def _wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._receipt_timeout
        while True:
            try:
                receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
            except NetworkError as e:
                logger.warning("Receipt poll for %s failed, polling again: %s", tx_hash, e)
                receipt = None
            if receipt:
                return receipt
            if loop.time() >= deadline:
                # Not a NetworkError: the transaction may still be mined, so it must not be resent.
                raise AdapterError(f"Timed out waiting for receipt of {tx_hash}")
            await asyncio.sleep(self._poll_interval)

    async def _settled_balance(self, tx_hash: str, address: str, token: TokenInfo) -> int:
        """Read a balance after ``tx_hash`` was mined; the read must not trigger a resend."""
        try:
            return await self._balance_of(address, token)
        except NetworkError as e:
            raise AdapterError(
                f"Transaction {tx_hash} was mined but reading the {token.symbol} balance of {address} failed: {e}"
            ) from e

    # Adapter operations

    async def get_balance(self, address: str, token: TokenInfo) -> Balance:
        amount = await self._balance_of(address, token)
        if amount == 0 and not await self._observed(address):
            raise AddressNotFound(f"Address {address} has never been observed on chain")
        return Balance(address=address, symbol=token.symbol, decimals=token.decimals, amount=amount)

    async def transfer(
        self, sender: str, recipient: str, amount: int, token: TokenInfo
    ) -> TransactionReceipt:
        if recipient.lower() == ZERO_ADDRESS:
            raise InvalidRecipient("Refusing to send to the zero address")
        if token.address and recipient.lower() == token.address.lower():
            raise InvalidRecipient(f"Recipient is the {token.symbol} contract itself")

        held = await self._balance_of(sender, token)
        if held < amount:
            raise InsufficientFunds(
                f"{sender} holds {format_amount(held, token.decimals)} {token.symbol}, "
                f"needs {format_amount(amount, token.decimals)} {token.symbol}"
            )

        if token.is_native:
            tx = {"from": sender, "to": recipient, "value": hex(amount)}
        else:
            tx = {
                "from": sender,
                "to": token.address,
                "data": encode_call("transfer(address,uint256)", [recipient, amount]),
            }
        logger.info(
            "Transferring %s %s from %s to %s",
            format_amount(amount, token.decimals),
            token.symbol,
            sender,
            recipient,
        )
        receipt = await self._send(tx)
        tx_hash = receipt["transactionHash"]

        balances = [
            Balance(sender, token.symbol, token.decimals, await self._settled_balance(tx_hash, sender, token)),
            Balance(
                recipient, token.symbol, token.decimals, await self._settled_balance(tx_hash, recipient, token)
            ),
        ]
        return TransactionReceipt(
            tx_hash=receipt["transactionHash"],
            status="success",
            block_number=_hex_int(receipt.get("blockNumber")),
            gas_used=_hex_int(receipt.get("gasUsed")),
            balances=balances,
        )

    async def swap(
        self,
        account: str,
        amount_in: int,
        token_in: TokenInfo,
        token_out: TokenInfo,
        max_slippage_bps: int,
    ) -> SwapReceipt:
        path_in = WETH_ADDRESS if token_in.is_native else token_in.address
        path_out = WETH_ADDRESS if token_out.is_native else token_out.address
        if path_in.lower() == path_out.lower():
            raise AdapterError(f"No swap route from {token_in.symbol} to {token_out.symbol}")
        if WETH_ADDRESS.lower() in (path_in.lower(), path_out.lower()):
            path = [path_in, path_out]
        else:
            path = [path_in, WETH_ADDRESS, path_out]

        held = await self._balance_of(account, token_in)
        if held < amount_in:
            raise InsufficientFunds(
                f"{account} holds {format_amount(held, token_in.decimals)} {token_in.symbol}, "
                f"needs {format_amount(amount_in, token_in.decimals)} {token_in.symbol}"
            )

        (amounts,) = await self._call(
            UNISWAP_V2_ROUTER,
            "getAmountsOut(uint256,address[])",
            [amount_in, path],
            ["uint256[]"],
        )
        quoted = amounts[-1]
        if quoted == 0:
            raise InsufficientLiquidity(f"No output quoted for {token_in.symbol} -> {token_out.symbol}")
        min_out = quoted * (10_000 - max_slippage_bps) // 10_000
        deadline = await self._latest_timestamp() + self._swap_deadline

        if not token_in.is_native:
            await self._send(
                {
                    "from": account,
                    "to": token_in.address,
                    "data": encode_call("approve(address,uint256)", [UNISWAP_V2_ROUTER, amount_in]),
                }
            )

        if token_in.is_native:
            tx = {
                "from": account,
                "to": UNISWAP_V2_ROUTER,
                "value": hex(amount_in),
                "data": encode_call(
                    "swapExactETHForTokens(uint256,address[],address,uint256)",
                    [min_out, path, account, deadline],
                ),
            }
        elif token_out.is_native:
            tx = {
                "from": account,
                "to": UNISWAP_V2_ROUTER,
                "data": encode_call(
                    "swapExactTokensForETH(uint256,uint256,address[],address,uint256)",
                    [amount_in, min_out, path, account, deadline],
                ),
            }
        else:
            tx = {
                "from": account,
                "to": UNISWAP_V2_ROUTER,
                "data": encode_call(
                    "swapExactTokensForTokens(uint256,uint256,address[],address,uint256)",
                    [amount_in, min_out, path, account, deadline],
                ),
            }

        before = await self._balance_of(account, token_out)
        logger.info(
            "Swapping %s %s for %s (quote=%s, min_out=%s, slippage=%sbps) on %s",
            format_amount(amount_in, token_in.decimals),
            token_in.symbol,
            token_out.symbol,
            quoted,
            min_out,
            max_slippage_bps,
            account,
        )
        receipt = await self._send(tx)
        after = await self._settled_balance(receipt["transactionHash"], account, token_out)
        received = after - before
        if token_out.is_native:
            gas_cost = (_hex_int(receipt.get("gasUsed")) or 0) * (
                _hex_int(receipt.get("effectiveGasPrice")) or 0
            )
            received += gas_cost

        return SwapReceipt(
            tx_hash=receipt["transactionHash"],
            status="success",
            token_in=token_in.symbol,
            token_out=token_out.symbol,
            amount_in=amount_in,
            amount_out=received,
            min_amount_out=min_out,
            decimals_in=token_in.decimals,
            decimals_out=token_out.decimals,
            block_number=_hex_int(receipt.get("blockNumber")),
            gas_used=_hex_int(receipt.get("gasUsed")),
        )

    async def query_contract(
        self,
        address: str,
        method: str,
        args: List[Any],
        returns: List[str],
    ) -> ContractCallResult:
        if await self._get_code(address) == "0x":
            raise ContractNotFound(f"No contract deployed at {address}")
        try:
            data = encode_call(method, args)
        except (EncodingError, TypeError, ValueError) as e:
            raise AdapterError(f"Could not encode arguments for {method}: {e}") from e
        result = await self._eth_call({"to": address, "data": data})
        try:
            values = decode_result(returns, result or "0x")
        except DecodingError as e:
            raise DecodeError(f"{method} returned data that does not match {returns}: {e}") from e
        return ContractCallResult(address=to_checksum_address(address), method=method, values=values)

    async def is_contract(self, address: str) -> bool:
        return await self._get_code(address) != "0x"


def _hex_int(value: str | None) -> int | None:
    return int(value, 16) if value else None


def get_rpc_adapter() -> JsonRpcAdapter:
    """Build a JsonRpcAdapter from settings."""
    settings = get_settings()
    return JsonRpcAdapter(
        settings.rpc_url,
        timeout_seconds=settings.rpc_timeout_seconds,
        max_concurrency=settings.rpc_max_concurrency,
        poll_interval_seconds=settings.receipt_poll_interval_seconds,
        receipt_timeout_seconds=settings.receipt_timeout_seconds,
        swap_deadline_seconds=settings.swap_deadline_seconds,
    )
