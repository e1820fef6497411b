import re
from typing import Any, List, Tuple

from eth_abi import decode, encode, is_encodable_type
from eth_utils import (
    decode_hex,
    function_signature_to_4byte_selector,
    is_hex_address,
    to_checksum_address,
)

_SIGNATURE_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\((.*)\)$")


def split_types(text: str) -> List[str]:
    """Split a comma-separated ABI type list, keeping tuple types intact."""
    types: List[str] = []
    depth = 0
    current = ""
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            types.append(current)
            current = ""
        else:
            current += ch
    if current:
        types.append(current)
    return types


def parse_signature(signature: str) -> Tuple[str, List[str]]:
    """Parse ``name(type,...)`` into its canonical form and argument types.

    Raises ValueError for malformed signatures or unknown ABI types.
    """
    compact = re.sub(r"\s+", "", signature)
    match = _SIGNATURE_RE.match(compact)
    if match is None:
        raise ValueError(f"Not a function signature: {signature!r}")
    types = split_types(match.group(2))
    for abi_type in types:
        if not is_encodable_type(abi_type):
            raise ValueError(f"Unsupported ABI type {abi_type!r} in {signature!r}")
    return compact, types


def coerce_arg(abi_type: str, value: Any) -> Any:
    """Convert a JSON value to the Python type eth_abi expects for ``abi_type``."""
    if abi_type.endswith("[]"):
        if not isinstance(value, list):
            raise ValueError(f"Expected a list for {abi_type}")
        return [coerce_arg(abi_type[:-2], v) for v in value]
    if abi_type == "address":
        if not isinstance(value, str) or not is_hex_address(value):
            raise ValueError(f"Expected an address, got {value!r}")
        return to_checksum_address(value)
    if abi_type.startswith(("uint", "int")):
        if isinstance(value, bool):
            raise ValueError(f"Expected an integer for {abi_type}")
        if isinstance(value, str):
            return int(value, 0)
        if isinstance(value, int):
            return value
        raise ValueError(f"Expected an integer for {abi_type}, got {value!r}")
    if abi_type == "bool":
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        if not isinstance(value, bool):
            raise ValueError(f"Expected a boolean, got {value!r}")
        return value
    if abi_type.startswith("bytes"):
        if not isinstance(value, str):
            raise ValueError(f"Expected hex bytes for {abi_type}")
        return decode_hex(value)
    if abi_type == "string":
        return str(value)
    return value


def encode_call(signature: str, args: List[Any]) -> str:
    """Hex calldata for ``signature`` with ``args`` already coerced."""
    canonical, types = parse_signature(signature)
    selector = function_signature_to_4byte_selector(canonical)
    return "0x" + (selector + encode(types, args)).hex()


def decode_result(returns: List[str], data: str) -> List[Any]:
    """Decode hex return data; raises eth_abi DecodingError on shape mismatch."""
    return list(decode(returns, decode_hex(data)))
