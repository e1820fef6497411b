"""Error taxonomy shared by the orchestrator, the tool registry and the chain adapters.

Every error carries a short ``kind`` string. Tool results, MCP payloads and logs
refer to failures by that name, so adapters running in another process can hand
them back without losing their type.
"""

from typing import Any, Dict, Type


class EthCopilotError(Exception):
    """Base class for all ethcopilot errors."""

    kind = "Error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


# Validation: always recoverable, surfaced to the user as a clarification.


class ValidationError(EthCopilotError):
    kind = "ValidationError"


class UnknownTool(ValidationError):
    kind = "UnknownTool"


class UnknownAlias(ValidationError):
    kind = "UnknownAlias"

    def __init__(self, alias: str) -> None:
        super().__init__(f"No address is bound to the name '{alias}'")
        self.alias = alias


class UnknownToken(ValidationError):
    kind = "UnknownToken"

    def __init__(self, token: str) -> None:
        super().__init__(f"Unknown token: {token}")
        self.token = token


class InvalidArgument(ValidationError):
    kind = "InvalidArgument"


# Adapter: chain-side failures.


class AdapterError(EthCopilotError):
    kind = "AdapterError"


class AddressNotFound(AdapterError):
    kind = "AddressNotFound"


class InsufficientFunds(AdapterError):
    kind = "InsufficientFunds"


class InvalidRecipient(AdapterError):
    kind = "InvalidRecipient"


class NetworkError(AdapterError):
    """Transient transport failure; the orchestrator retries these once."""

    kind = "NetworkError"


class SlippageExceeded(AdapterError):
    kind = "SlippageExceeded"


class InsufficientLiquidity(AdapterError):
    kind = "InsufficientLiquidity"


class ContractNotFound(AdapterError):
    kind = "ContractNotFound"


class DecodeError(AdapterError):
    kind = "DecodeError"


class TransactionReverted(AdapterError):
    kind = "TransactionReverted"


class Cancelled(AdapterError):
    kind = "Cancelled"


# Retrieval: degrades to ungrounded reasoning.


class RetrievalError(EthCopilotError):
    kind = "RetrievalError"


class EmbeddingUnavailable(RetrievalError):
    kind = "EmbeddingUnavailable"


class ReasoningError(EthCopilotError):
    """The reasoning capability failed; ``transient`` marks timeouts and rate limits."""

    kind = "ReasoningError"

    def __init__(self, message: str = "", transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class BudgetExceeded(EthCopilotError):
    kind = "BudgetExceeded"


class SessionCorrupted(EthCopilotError):
    """Session invariant violation. This is a programming error and is never caught."""

    kind = "SessionCorrupted"


_ADAPTER_ERRORS: Dict[str, Type[AdapterError]] = {
    cls.kind: cls
    for cls in (
        AdapterError,
        AddressNotFound,
        InsufficientFunds,
        InvalidRecipient,
        NetworkError,
        SlippageExceeded,
        InsufficientLiquidity,
        ContractNotFound,
        DecodeError,
        TransactionReverted,
        Cancelled,
    )
}


def adapter_error_from_dict(data: Dict[str, Any]) -> AdapterError:
    """Rebuild a typed AdapterError from its ``to_dict()`` form."""
    cls = _ADAPTER_ERRORS.get(str(data.get("kind", "")), AdapterError)
    return cls(str(data.get("message", "")))
