import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Set

from .errors import SessionCorrupted


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"


class InvocationStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OrchestratorState(str, Enum):
    AWAITING_INPUT = "awaiting_input"
    GROUNDING = "grounding"
    REASONING = "reasoning"
    TOOL_DISPATCH = "tool_dispatch"
    AWAITING_TOOL_RESULT = "awaiting_tool_result"
    RESPONDING = "responding"


@dataclass(frozen=True)
class Turn:
    """One immutable entry in a session's history.

    ``content`` is plain text for user and final assistant turns, and a dict for
    assistant tool requests and tool results.
    """

    role: Role
    content: str | Dict[str, Any]
    timestamp: datetime = field(default_factory=_now)
    invocation_seq: int | None = None


@dataclass
class ToolInvocation:
    """A validated tool call and its outcome, kept for the lifetime of the session."""

    seq: int
    tool_name: str
    args: Dict[str, Any]
    call_id: str | None = None
    status: InvocationStatus = InvocationStatus.PENDING
    result: Dict[str, Any] | None = None
    error: Dict[str, Any] | None = None
    created_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None
    # Outcome of an operation that kept running after the user abandoned the turn.
    settled_result: Dict[str, Any] | None = None
    settled_error: Dict[str, Any] | None = None

    @property
    def terminal(self) -> bool:
        return self.status is not InvocationStatus.PENDING

    def succeed(self, result: Dict[str, Any]) -> None:
        if self.terminal:
            raise SessionCorrupted(
                f"Invocation #{self.seq} ({self.tool_name}) is already {self.status.value}"
            )
        self.status = InvocationStatus.SUCCEEDED
        self.result = result
        self.completed_at = _now()

    def fail(self, error: Dict[str, Any]) -> None:
        if self.terminal:
            raise SessionCorrupted(
                f"Invocation #{self.seq} ({self.tool_name}) is already {self.status.value}"
            )
        self.status = InvocationStatus.FAILED
        self.error = error
        self.completed_at = _now()


@dataclass
class SessionState:
    """Per-session conversation state: turns, alias bindings and tool invocations."""

    session_id: str
    turns: List[Turn] = field(default_factory=list)
    aliases: Dict[str, str] = field(default_factory=dict)
    invocations: List[ToolInvocation] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)
    active_task: "asyncio.Task[Any] | None" = field(default=None, repr=False, compare=False)
    background: "Set[asyncio.Task[Any]]" = field(default_factory=set, repr=False, compare=False)

    @property
    def tool_calls_count(self) -> int:
        return len(self.invocations)

    def append_turn(self, turn: Turn) -> Turn:
        """Append a turn to the history.

        Args:
            turn: The turn to append.

        Returns:
            Turn: The same turn.

        Raises:
            SessionCorrupted: A tool result arrived before its invocation completed.
        """
        if turn.role is Role.TOOL_RESULT:
            invocation = self.get_invocation(turn.invocation_seq)
            if invocation is None or not invocation.terminal:
                raise SessionCorrupted(
                    f"Tool result for invocation #{turn.invocation_seq} appended before it completed"
                )
        self.turns.append(turn)
        return turn

    def new_invocation(
        self,
        tool_name: str,
        args: Dict[str, Any],
        call_id: str | None = None,
    ) -> ToolInvocation:
        """Record a validated tool call as the next pending invocation.

        Args:
            tool_name: Tool being invoked.
            args: JSON-safe view of the validated arguments.
            call_id: The model's id for the call, echoed in the tool result.

        Returns:
            ToolInvocation: The new invocation, numbered one past the last.
        """
        expected = len(self.invocations) + 1
        if self.invocations and self.invocations[-1].seq != expected - 1:
            raise SessionCorrupted(
                f"Invocation sequence broken in session {self.session_id}: "
                f"last={self.invocations[-1].seq}, count={len(self.invocations)}"
            )
        invocation = ToolInvocation(
            seq=expected, tool_name=tool_name, args=args, call_id=call_id
        )
        self.invocations.append(invocation)
        return invocation

    def get_invocation(self, seq: int | None) -> ToolInvocation | None:
        if seq is None or seq < 1 or seq > len(self.invocations):
            return None
        return self.invocations[seq - 1]

    def pending_invocations(self) -> List[ToolInvocation]:
        return [inv for inv in self.invocations if not inv.terminal]

    def bind_alias(self, alias: str, address: str) -> None:
        """Bind ``alias`` to ``address``, replacing any previous binding of that alias."""
        key = alias.strip().lower()
        if not key:
            raise ValueError("Alias must not be empty")
        self.aliases[key] = address

    def resolve_alias(self, alias: str) -> str | None:
        return self.aliases.get(alias.strip().lower())

    def reset(self) -> None:
        """Forget history, invocations and aliases. The lock and background work are kept."""
        self.turns.clear()
        self.invocations.clear()
        self.aliases.clear()
