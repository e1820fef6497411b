"""Tool registry: the operations the reasoning loop may call, and argument validation.

Validation is pure. It turns the model's raw JSON arguments into typed values
(checksummed addresses, TokenInfo, integer base units) or raises a
ValidationError, and never touches the chain.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Tuple

from eth_abi import is_encodable_type
from eth_utils import is_checksum_address, to_checksum_address

from ..chain.abi import coerce_arg, parse_signature
from ..chain.tokens import ETH, TokenInfo, TokenRegistry, format_amount, get_token_registry, to_base_units
from ..errors import InvalidArgument, UnknownAlias, UnknownTool, UnknownToken
from ..settings import get_settings

logger = logging.getLogger(__name__)

_HEX_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_ALIAS_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_.\- ]{0,31}$")

MAX_DOC_LIMIT = 20

WELL_KNOWN_CONTRACTS: Dict[str, str] = {
    "uniswap_v2_router": "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D",
    "uniswap_v2_factory": "0x5C69bEe701ef814a2B6a3EDD4B1652CB9cc5aA6f",
}


class ParamKind(str, Enum):
    ACCOUNT = "account"  # alias or hex address
    ADDRESS = "address"  # hex address or well-known contract name
    AMOUNT = "amount"
    TOKEN = "token"
    SLIPPAGE_BPS = "slippage_bps"
    TEXT = "text"
    ALIAS_NAME = "alias_name"
    FUNCTION_SIGNATURE = "function_signature"
    ABI_TYPES = "abi_types"
    JSON_ARGS = "json_args"
    COUNT = "count"


@dataclass(frozen=True)
class ParamSpec:
    name: str
    kind: ParamKind
    description: str
    required: bool = True
    # For AMOUNT: the TOKEN parameter whose decimals apply (ETH when absent).
    token_param: str | None = None


@dataclass(frozen=True)
class ToolSchema:
    name: str
    description: str
    params: Tuple[ParamSpec, ...]
    result: str
    adapter_bound: bool = True

    def param(self, name: str) -> ParamSpec | None:
        for p in self.params:
            if p.name == name:
                return p
        return None

    def to_openai(self) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        for p in self.params:
            if p.kind in (ParamKind.SLIPPAGE_BPS, ParamKind.COUNT):
                prop: Dict[str, Any] = {"type": "integer"}
            elif p.kind in (ParamKind.ABI_TYPES, ParamKind.JSON_ARGS):
                prop = {"type": "array", "items": {"type": "string"}}
            else:
                prop = {"type": "string"}
            prop["description"] = p.description
            properties[p.name] = prop
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": [p.name for p in self.params if p.required],
                },
            },
        }


@dataclass(frozen=True)
class ValidatedCall:
    """A tool call whose arguments passed validation, with typed values."""

    tool: ToolSchema
    args: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.tool.name

    def describe(self) -> Dict[str, Any]:
        """JSON-safe view of the arguments for invocation records and logs."""
        out: Dict[str, Any] = {}
        for p in self.tool.params:
            if p.name not in self.args:
                continue
            value = self.args[p.name]
            if isinstance(value, TokenInfo):
                out[p.name] = value.symbol
            elif p.kind is ParamKind.AMOUNT:
                token = self.args.get(p.token_param or "", ETH)
                out[p.name] = format_amount(value, token.decimals)
            else:
                out[p.name] = _json_value(value)
        return out


def _json_value(value: Any) -> Any:
    if isinstance(value, bytes):
        return "0x" + value.hex()
    if isinstance(value, list):
        return [_json_value(v) for v in value]
    if isinstance(value, int) and not isinstance(value, bool) and abs(value) >= 2**53:
        return str(value)
    return value


def _account(description: str) -> ParamSpec:
    return ParamSpec("account", ParamKind.ACCOUNT, description)


TOOL_SCHEMAS: Tuple[ToolSchema, ...] = (
    ToolSchema(
        name="get_balance",
        description="Get the ETH or ERC-20 token balance of a named account or address",
        params=(
            _account("Account name (e.g. alice) or 0x address"),
            ParamSpec("token", ParamKind.TOKEN, "Token symbol or contract address; ETH when omitted", required=False),
        ),
        result="{address, symbol, decimals, amount (base units), display}",
    ),
    ToolSchema(
        name="transfer",
        description="Send ETH or an ERC-20 token from one account to another",
        params=(
            ParamSpec("from_account", ParamKind.ACCOUNT, "Sender account name or 0x address"),
            ParamSpec("to_account", ParamKind.ACCOUNT, "Recipient account name or 0x address"),
            ParamSpec("amount", ParamKind.AMOUNT, "Amount in whole units, e.g. '1.5'", token_param="token"),
            ParamSpec("token", ParamKind.TOKEN, "Token symbol or contract address; ETH when omitted", required=False),
        ),
        result="{tx_hash, status, block_number, gas_used, balances[]}",
    ),
    ToolSchema(
        name="swap_tokens",
        description="Swap tokens on Uniswap V2 from an account, bounded by a maximum slippage",
        params=(
            _account("Account name or 0x address that sells and receives"),
            ParamSpec("amount_in", ParamKind.AMOUNT, "Amount of token_in in whole units, e.g. '10'", token_param="token_in"),
            ParamSpec("token_in", ParamKind.TOKEN, "Token to sell (symbol or address, ETH for ether)"),
            ParamSpec("token_out", ParamKind.TOKEN, "Token to buy (symbol or address, ETH for ether)"),
            ParamSpec(
                "max_slippage_bps",
                ParamKind.SLIPPAGE_BPS,
                "Maximum slippage in basis points; only set when the user asks for one",
                required=False,
            ),
        ),
        result="{tx_hash, status, token_in, token_out, amount_in, amount_out, min_amount_out, display}",
    ),
    ToolSchema(
        name="query_contract",
        description="Call a read-only contract function, e.g. method='totalSupply()' returns=['uint256']",
        params=(
            ParamSpec("address", ParamKind.ADDRESS, "Contract 0x address or a well-known contract name"),
            ParamSpec("method", ParamKind.FUNCTION_SIGNATURE, "Function signature such as 'balanceOf(address)'"),
            ParamSpec("args", ParamKind.JSON_ARGS, "Function arguments in order, as strings", required=False),
            ParamSpec("returns", ParamKind.ABI_TYPES, "ABI return types; ['uint256'] when omitted", required=False),
        ),
        result="{address, method, values[]}",
    ),
    ToolSchema(
        name="check_contract",
        description="Check whether a contract is deployed at an address",
        params=(
            ParamSpec("address", ParamKind.ADDRESS, "Contract 0x address or a well-known contract name"),
        ),
        result="{address, deployed}",
    ),
    ToolSchema(
        name="search_docs",
        description="Search the documentation about blockchain protocols and smart contracts",
        params=(
            ParamSpec("query", ParamKind.TEXT, "The search query"),
            ParamSpec("limit", ParamKind.COUNT, "Maximum number of passages", required=False),
            ParamSpec("source", ParamKind.TEXT, "Optional source filter, e.g. 'uniswap-v2'", required=False),
        ),
        result="{passages[]}",
        adapter_bound=False,
    ),
    ToolSchema(
        name="get_document",
        description="Fetch the full text of one documentation passage by the id search_docs returned",
        params=(ParamSpec("id", ParamKind.TEXT, "Passage id, e.g. 'uniswap-v2-0'"),),
        result="{id, title, text, source, offset}",
        adapter_bound=False,
    ),
    ToolSchema(
        name="get_token_price",
        description="Get the current USD price of a token from DefiLlama",
        params=(ParamSpec("token", ParamKind.TOKEN, "Token symbol or contract address; ETH uses the WETH price"),),
        result="{token, address, price_usd, timestamp, confidence, source}",
        adapter_bound=False,
    ),
    ToolSchema(
        name="search_web",
        description="Search the web for recent information the documentation does not cover",
        params=(ParamSpec("query", ParamKind.TEXT, "The search query"),),
        result="{query, results[{title, url, description}]}",
        adapter_bound=False,
    ),
    ToolSchema(
        name="list_supported_tokens",
        description="List the tokens that can be used by symbol",
        params=(),
        result="{tokens[]}",
        adapter_bound=False,
    ),
    ToolSchema(
        name="remember_alias",
        description="Remember a name for an address in this conversation (e.g. 'carol' -> 0x...)",
        params=(
            ParamSpec("name", ParamKind.ALIAS_NAME, "The name to bind"),
            ParamSpec("address", ParamKind.ADDRESS, "The 0x address the name refers to"),
        ),
        result="{name, address}",
        adapter_bound=False,
    ),
)


class ToolRegistry:
    """Declared tools and their argument validation. Read-only after construction."""

    def __init__(
        self,
        schemas: Tuple[ToolSchema, ...],
        tokens: TokenRegistry,
        default_slippage_bps: int,
        max_slippage_bps: int,
        default_doc_limit: int,
    ) -> None:
        self._schemas: Dict[str, ToolSchema] = {s.name: s for s in schemas}
        self._tokens = tokens
        self._default_slippage_bps = default_slippage_bps
        self._max_slippage_bps = max_slippage_bps
        self._default_doc_limit = default_doc_limit

    @property
    def tokens(self) -> TokenRegistry:
        return self._tokens

    def names(self) -> List[str]:
        return list(self._schemas)

    def get(self, name: str) -> ToolSchema | None:
        return self._schemas.get(name)

    def openai_tool_schemas(self) -> List[Dict[str, Any]]:
        return [s.to_openai() for s in self._schemas.values()]

    def validate(
        self,
        tool_name: str,
        raw_args: Any,
        aliases: Mapping[str, str],
    ) -> ValidatedCall:
        """Check and type the arguments of one tool call.

        Raises:
            UnknownTool, UnknownAlias, UnknownToken, InvalidArgument
        """
        schema = self._schemas.get(tool_name)
        if schema is None:
            raise UnknownTool(f"There is no tool named '{tool_name}'")
        if isinstance(raw_args, str):
            try:
                raw_args = json.loads(raw_args) if raw_args.strip() else {}
            except json.JSONDecodeError as e:
                raise InvalidArgument(f"Arguments for {tool_name} are not valid JSON: {e}") from e
        if raw_args is None:
            raw_args = {}
        if not isinstance(raw_args, dict):
            raise InvalidArgument(f"Arguments for {tool_name} must be an object")

        unknown = set(raw_args) - {p.name for p in schema.params}
        if unknown:
            logger.debug("Ignoring unexpected arguments for %s: %s", tool_name, sorted(unknown))

        args: Dict[str, Any] = {}
        # Amounts depend on token decimals and contract args on the method signature.
        deferred = (ParamKind.AMOUNT, ParamKind.JSON_ARGS)
        for p in schema.params:
            if p.kind in deferred:
                continue
            value = raw_args.get(p.name)
            if _is_missing(value):
                if p.required:
                    raise InvalidArgument(f"Missing required argument '{p.name}' for {tool_name}")
                default = self._default_for(p)
                if default is not None:
                    args[p.name] = default
                continue
            args[p.name] = self._check(p, value, aliases)

        for p in schema.params:
            if p.kind not in deferred:
                continue
            value = raw_args.get(p.name)
            if _is_missing(value):
                if p.kind is ParamKind.JSON_ARGS:
                    args[p.name] = self._check_contract_args([], args)
                elif p.required:
                    raise InvalidArgument(f"Missing required argument '{p.name}' for {tool_name}")
                continue
            if p.kind is ParamKind.AMOUNT:
                token = args.get(p.token_param or "", ETH)
                args[p.name] = self._check_amount(value, token)
            else:
                args[p.name] = self._check_contract_args(value, args)

        self._check_cross_field(schema, args)
        return ValidatedCall(tool=schema, args=args)

    def _default_for(self, p: ParamSpec) -> Any:
        if p.kind is ParamKind.TOKEN:
            return ETH
        if p.kind is ParamKind.SLIPPAGE_BPS:
            return self._default_slippage_bps
        if p.kind is ParamKind.COUNT:
            return self._default_doc_limit
        if p.kind is ParamKind.ABI_TYPES:
            return ["uint256"]
        return None

    def _check(self, p: ParamSpec, value: Any, aliases: Mapping[str, str]) -> Any:
        kind = p.kind
        if kind is ParamKind.ACCOUNT:
            return self._check_account(p.name, value, aliases)
        if kind is ParamKind.ADDRESS:
            return self._check_address(p.name, value)
        if kind is ParamKind.TOKEN:
            return self._check_token(value)
        if kind is ParamKind.SLIPPAGE_BPS:
            bps = _as_int(p.name, value)
            if not 1 <= bps <= self._max_slippage_bps:
                raise InvalidArgument(
                    f"{p.name} must be between 1 and {self._max_slippage_bps} basis points"
                )
            return bps
        if kind is ParamKind.COUNT:
            count = _as_int(p.name, value)
            if not 1 <= count <= MAX_DOC_LIMIT:
                raise InvalidArgument(f"{p.name} must be between 1 and {MAX_DOC_LIMIT}")
            return count
        if kind is ParamKind.TEXT:
            text = str(value).strip()
            if not text:
                raise InvalidArgument(f"{p.name} must not be empty")
            return text
        if kind is ParamKind.ALIAS_NAME:
            name = str(value).strip()
            if not _ALIAS_RE.match(name) or _HEX_ADDRESS_RE.match(name):
                raise InvalidArgument(f"'{name}' is not a usable account name")
            return name.lower()
        if kind is ParamKind.FUNCTION_SIGNATURE:
            try:
                canonical, _ = parse_signature(str(value))
            except ValueError as e:
                raise InvalidArgument(str(e)) from e
            return canonical
        if kind is ParamKind.ABI_TYPES:
            types = _as_list(p.name, value)
            for abi_type in types:
                if not isinstance(abi_type, str) or not is_encodable_type(abi_type):
                    raise InvalidArgument(f"Unsupported return type {abi_type!r}")
            return types
        raise InvalidArgument(f"Unsupported parameter kind {kind}")

    def _check_account(self, name: str, value: Any, aliases: Mapping[str, str]) -> str:
        text = str(value).strip()
        if text.lower().startswith("0x"):
            return _checked_hex(name, text)
        address = aliases.get(text.lower())
        if address is None:
            raise UnknownAlias(text)
        return address

    def _check_address(self, name: str, value: Any) -> str:
        text = str(value).strip()
        known = WELL_KNOWN_CONTRACTS.get(text.lower())
        if known is not None:
            return known
        token = self._tokens.resolve(text)
        if token is not None and token.address and not text.lower().startswith("0x"):
            return token.address
        return _checked_hex(name, text)

    def _check_token(self, value: Any) -> TokenInfo:
        text = str(value).strip()
        token = self._tokens.resolve(text)
        if token is None:
            raise UnknownToken(text)
        return token

    def _check_amount(self, value: Any, token: TokenInfo) -> int:
        if isinstance(value, bool):
            raise InvalidArgument("Amount must be a number")
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise InvalidArgument(f"'{value}' is not a valid amount") from e
        if not amount.is_finite() or amount <= 0:
            raise InvalidArgument(f"Amount must be a positive number, got '{value}'")
        try:
            return to_base_units(amount, token.decimals)
        except ValueError as e:
            raise InvalidArgument(f"{e} ({token.symbol} has {token.decimals} decimals)") from e

    def _check_contract_args(self, value: Any, args: Dict[str, Any]) -> List[Any]:
        raw = _as_list("args", value)
        method = args.get("method")
        if method is None:
            return raw
        _, types = parse_signature(method)
        if len(raw) != len(types):
            raise InvalidArgument(
                f"{method} takes {len(types)} argument(s), {len(raw)} given"
            )
        try:
            return [coerce_arg(t, v) for t, v in zip(types, raw)]
        except ValueError as e:
            raise InvalidArgument(f"Bad argument for {method}: {e}") from e

    def _check_cross_field(self, schema: ToolSchema, args: Dict[str, Any]) -> None:
        if schema.name == "transfer" and args["from_account"] == args["to_account"]:
            raise InvalidArgument("Sender and recipient are the same account")
        if schema.name == "swap_tokens" and args["token_in"] == args["token_out"]:
            raise InvalidArgument("token_in and token_out must differ")


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _checked_hex(name: str, text: str) -> str:
    if not _HEX_ADDRESS_RE.match(text):
        raise InvalidArgument(f"{name} '{text}' is not a 20-byte hex address")
    body = text[2:]
    if body != body.lower() and body != body.upper() and not is_checksum_address(text):
        raise InvalidArgument(f"{name} '{text}' fails its EIP-55 checksum")
    return to_checksum_address(text)


def _as_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidArgument(f"{name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise InvalidArgument(f"{name} must be an integer, got {value!r}")


def _as_list(name: str, value: Any) -> List[Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise InvalidArgument(f"{name} must be a JSON list: {e}") from e
    if not isinstance(value, list):
        raise InvalidArgument(f"{name} must be a list")
    return value


def available_schemas(web_search_enabled: bool) -> Tuple[ToolSchema, ...]:
    """Tools to offer the model; ``search_web`` only when a search API key is configured."""
    if web_search_enabled:
        return TOOL_SCHEMAS
    return tuple(s for s in TOOL_SCHEMAS if s.name != "search_web")


@lru_cache(maxsize=1)
def get_tool_registry() -> ToolRegistry:
    """Return the tool registry built from settings (cached)."""
    settings = get_settings()
    return ToolRegistry(
        available_schemas(bool(settings.brave_api_key)),
        tokens=get_token_registry(),
        default_slippage_bps=settings.default_slippage_bps,
        max_slippage_bps=settings.max_slippage_bps,
        default_doc_limit=settings.retrieval_top_k,
    )
