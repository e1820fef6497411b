"""Off-chain lookups: token prices from DefiLlama and web search through Brave."""

import logging
from typing import Any, Dict

import httpx

from ..chain.tokens import WETH_ADDRESS, TokenInfo
from ..errors import AdapterError, NetworkError
from ..settings import get_settings

logger = logging.getLogger(__name__)


class ExternalDataClient:
    """Read-only HTTP lookups that do not touch the chain.

    Transport failures, 5xx and 429 responses raise ``NetworkError`` so the
    orchestrator retries them once; anything else raises ``AdapterError``.
    """

    def __init__(
        self,
        price_api_url: str,
        *,
        web_search_url: str,
        brave_api_key: str | None = None,
        web_search_count: int = 5,
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._price_api_url = price_api_url.rstrip("/")
        self._web_search_url = web_search_url
        self._brave_api_key = brave_api_key
        self._web_search_count = web_search_count
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @property
    def web_search_enabled(self) -> bool:
        return bool(self._brave_api_key)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(
        self, url: str, params: Dict[str, Any] | None = None, headers: Dict[str, str] | None = None
    ) -> Dict[str, Any]:
        try:
            response = await self._client.get(url, params=params, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise NetworkError(f"GET {url} failed: {e}") from e
        if response.status_code >= 500 or response.status_code == 429:
            raise NetworkError(f"GET {url} failed: HTTP {response.status_code}")
        try:
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise AdapterError(f"GET {url} failed: HTTP {response.status_code}") from e
        except ValueError as e:
            raise AdapterError(f"GET {url} returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise AdapterError(f"GET {url} returned {type(data).__name__}, expected an object")
        return data

    async def token_price(self, token: TokenInfo) -> Dict[str, Any]:
        """Current USD price of ``token``.

        Args:
            token: The token to price. Ether is priced as WETH.

        Returns:
            Dict[str, Any]: ``{token, address, price_usd, timestamp, confidence, source}``.

        Raises:
            NetworkError: The price API could not be reached.
            AdapterError: The API has no price for the token.
        """
        address = token.address or WETH_ADDRESS
        key = f"ethereum:{address}"
        data = await self._get_json(f"{self._price_api_url}/prices/current/{key}")
        coins = data.get("coins") or {}
        entry = next((v for k, v in coins.items() if k.lower() == key.lower()), None)
        if not isinstance(entry, dict) or entry.get("price") is None:
            raise AdapterError(f"No USD price available for {token.symbol}")
        logger.debug("Price for %s: %s", token.symbol, entry["price"])
        return {
            "token": token.symbol,
            "address": address,
            "price_usd": float(entry["price"]),
            "timestamp": entry.get("timestamp"),
            "confidence": entry.get("confidence"),
            "source": "defillama",
        }

    async def search_web(self, query: str) -> Dict[str, Any]:
        """Top web results for ``query``; needs ``brave_api_key``."""
        if not self._brave_api_key:
            raise AdapterError("Web search is not configured")
        data = await self._get_json(
            self._web_search_url,
            params={"q": query, "count": self._web_search_count},
            headers={"Accept": "application/json", "X-Subscription-Token": self._brave_api_key},
        )
        results = (data.get("web") or {}).get("results") or []
        return {
            "query": query,
            "results": [
                {
                    "title": r.get("title", ""),
                    "url": r.get("url", ""),
                    "description": r.get("description", ""),
                }
                for r in results
                if isinstance(r, dict)
            ],
        }


def get_external_client() -> ExternalDataClient:
    """Build an ExternalDataClient from settings."""
    settings = get_settings()
    return ExternalDataClient(
        settings.price_api_url,
        web_search_url=settings.web_search_url,
        brave_api_key=settings.brave_api_key,
        web_search_count=settings.web_search_count,
        timeout_seconds=settings.external_timeout_seconds,
    )
