from typing import List

import httpx
import pytest

from ethcopilot.agent.tools import TOOL_SCHEMAS, available_schemas
from ethcopilot.chain.tokens import ETH, WETH_ADDRESS, TokenInfo
from ethcopilot.errors import AdapterError, NetworkError
from ethcopilot.services.external import ExternalDataClient

USDC = TokenInfo("USDC", "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", 6, "USD Coin")


def make_client(handler, brave_api_key: str | None = "test-key") -> ExternalDataClient:
    return ExternalDataClient(
        "https://coins.test",
        web_search_url="https://search.test/res/v1/web/search",
        brave_api_key=brave_api_key,
        web_search_count=3,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_token_price_reads_defillama_coin_entry() -> None:
    """The price comes from the coins entry keyed by chain and address."""
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        key = f"ethereum:{USDC.address}"
        return httpx.Response(
            200,
            json={"coins": {key: {"price": 0.9998, "symbol": "USDC", "timestamp": 1700000000, "confidence": 0.99}}},
        )

    price = await make_client(handler).token_price(USDC)

    assert price == {
        "token": "USDC",
        "address": USDC.address,
        "price_usd": 0.9998,
        "timestamp": 1700000000,
        "confidence": 0.99,
        "source": "defillama",
    }
    assert seen[0].url.path == f"/prices/current/ethereum:{USDC.address}"


@pytest.mark.asyncio
async def test_ether_is_priced_as_weth() -> None:
    """Native ether has no contract address, so its price is looked up under WETH."""

    def handler(request: httpx.Request) -> httpx.Response:
        assert WETH_ADDRESS in request.url.path
        return httpx.Response(200, json={"coins": {f"ethereum:{WETH_ADDRESS.lower()}": {"price": 3000.5}}})

    price = await make_client(handler).token_price(ETH)
    assert price["token"] == "ETH"
    assert price["price_usd"] == 3000.5


@pytest.mark.asyncio
async def test_missing_price_is_adapter_error() -> None:
    """An empty coins map means the token has no price."""
    client = make_client(lambda request: httpx.Response(200, json={"coins": {}}))
    with pytest.raises(AdapterError, match="No USD price"):
        await client.token_price(USDC)


@pytest.mark.asyncio
async def test_transport_and_server_errors_are_network_errors() -> None:
    """Connection failures and 5xx responses are retryable."""

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NetworkError):
        await make_client(refused).token_price(USDC)
    with pytest.raises(NetworkError):
        await make_client(lambda request: httpx.Response(502)).token_price(USDC)


@pytest.mark.asyncio
async def test_client_error_is_not_retryable() -> None:
    """A 4xx other than 429 is a plain AdapterError."""
    with pytest.raises(AdapterError) as excinfo:
        await make_client(lambda request: httpx.Response(404)).token_price(USDC)
    assert not isinstance(excinfo.value, NetworkError)


@pytest.mark.asyncio
async def test_search_web_sends_key_and_flattens_results() -> None:
    """Brave results are reduced to title, url and description."""
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "web": {
                    "results": [
                        {"title": "Uniswap", "url": "https://uniswap.org", "description": "DEX", "age": "1d"},
                    ]
                }
            },
        )

    result = await make_client(handler).search_web("uniswap v4 launch")

    assert result == {
        "query": "uniswap v4 launch",
        "results": [{"title": "Uniswap", "url": "https://uniswap.org", "description": "DEX"}],
    }
    request = seen[0]
    assert request.headers["X-Subscription-Token"] == "test-key"
    assert request.url.params["q"] == "uniswap v4 launch"
    assert request.url.params["count"] == "3"


@pytest.mark.asyncio
async def test_search_web_requires_api_key() -> None:
    """Without an API key the search fails before any request is made."""
    client = make_client(lambda request: pytest.fail("no request expected"), brave_api_key=None)
    assert client.web_search_enabled is False
    with pytest.raises(AdapterError, match="not configured"):
        await client.search_web("anything")


def test_search_web_is_offered_only_with_a_key() -> None:
    """The search_web schema is dropped when web search is disabled."""
    assert "search_web" in [s.name for s in available_schemas(True)]
    assert available_schemas(True) == TOOL_SCHEMAS
    assert "search_web" not in [s.name for s in available_schemas(False)]
    assert "get_token_price" in [s.name for s in available_schemas(False)]
