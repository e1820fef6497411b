from pathlib import Path
from typing import Dict, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


# Anvil's first five unlocked development accounts.
ANVIL_ACCOUNTS: Dict[str, str] = {
    "alice": "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
    "bob": "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
    "charlie": "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC",
    "david": "0x90F79bf6EB2c4f870365E785982E1f101E93b906",
    "eve": "0x15d34AAf54267DB7D7c367839AAf71A00a2C6A65",
}


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    reasoning_timeout_seconds: float = 60.0

    embedding_model: str = "text-embedding-3-small"
    embedding_api_key: str | None = None
    embedding_base_url: str | None = None

    rpc_url: str = "http://127.0.0.1:8545"
    rpc_timeout_seconds: float = 30.0
    rpc_max_concurrency: int = 8
    receipt_poll_interval_seconds: float = 0.5
    receipt_timeout_seconds: float = 60.0
    swap_deadline_seconds: int = 3600

    default_slippage_bps: int = 50
    max_slippage_bps: int = 5000
    max_tool_rounds: int = 5
    retrieval_top_k: int = 4
    retry_backoff_seconds: float = 1.0

    knowledge_index_path: Path = Path("data/knowledge/index.jsonl")
    tokens_file: Path | None = None
    default_aliases: Dict[str, str] = dict(ANVIL_ACCOUNTS)

    mcp_ethereum_cmd: str | None = None

    price_api_url: str = "https://coins.llama.fi"
    brave_api_key: str | None = None
    web_search_url: str = "https://api.search.brave.com/res/v1/web/search"
    web_search_count: int = 5
    external_timeout_seconds: float = 15.0

    cors_origins: str = "*"

    redis_url: str | None = None
    context_ttl_seconds: int = 86400  # 24 hours

    agent_system_prompt: str = (
        "You are an assistant for Ethereum operations on a forked mainnet node.\n\n"
        " Your Role\n"
        "You answer questions about DeFi protocols and smart contracts using the "
        "knowledge base passages you are given.\n"
        "You perform blockchain operations (balances, transfers, swaps, contract "
        "reads) by calling exactly one tool at a time.\n"
        "You refer to accounts by the names the user gives; never invent an address.\n"
        "If a name is not bound to an address, ask the user for it.\n"
        "Amounts are decimal strings in whole token units (e.g. '1.5').\n"
        "When a tool fails, explain the failure plainly. Do not retry a swap with "
        "a larger slippage bound unless the user asks for it.\n\n"
        "Keep your answers short and precise."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
