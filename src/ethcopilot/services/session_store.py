import logging
from datetime import datetime
from typing import Any, Dict

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..models import InvocationStatus, Role, SessionState, ToolInvocation, Turn
from ..settings import get_settings
from .redis import RedisJsonStore, get_redis_store

logger = logging.getLogger(__name__)

SESSION_KIND = "session"


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _turn_to_dict(turn: Turn) -> Dict[str, Any]:
    return {
        "role": turn.role.value,
        "content": turn.content,
        "timestamp": turn.timestamp.isoformat(),
        "invocation_seq": turn.invocation_seq,
    }


def _invocation_to_dict(inv: ToolInvocation) -> Dict[str, Any]:
    return {
        "seq": inv.seq,
        "tool_name": inv.tool_name,
        "args": inv.args,
        "call_id": inv.call_id,
        "status": inv.status.value,
        "result": inv.result,
        "error": inv.error,
        "created_at": inv.created_at.isoformat(),
        "completed_at": inv.completed_at.isoformat() if inv.completed_at else None,
        "settled_result": inv.settled_result,
        "settled_error": inv.settled_error,
    }


def _session_to_dict(state: SessionState) -> Dict[str, Any]:
    """Serialize SessionState to a JSON-serializable dict."""
    return {
        "session_id": state.session_id,
        "created_at": state.created_at.isoformat(),
        "aliases": dict(state.aliases),
        "turns": [_turn_to_dict(t) for t in state.turns],
        "invocations": [_invocation_to_dict(i) for i in state.invocations],
    }


def _dict_to_session(data: Dict[str, Any]) -> SessionState:
    """Build SessionState from a stored snapshot. Raises KeyError/ValueError on bad data."""
    invocations = [
        ToolInvocation(
            seq=int(raw["seq"]),
            tool_name=raw["tool_name"],
            args=raw.get("args") or {},
            call_id=raw.get("call_id"),
            status=InvocationStatus(raw["status"]),
            result=raw.get("result"),
            error=raw.get("error"),
            created_at=_dt(raw["created_at"]),
            completed_at=_dt(raw.get("completed_at")),
            settled_result=raw.get("settled_result"),
            settled_error=raw.get("settled_error"),
        )
        for raw in data.get("invocations", [])
    ]
    for expected, inv in enumerate(invocations, 1):
        if inv.seq != expected:
            raise ValueError(f"invocation sequence gap at #{expected}")
    turns = [
        Turn(
            role=Role(raw["role"]),
            content=raw["content"],
            timestamp=_dt(raw["timestamp"]),
            invocation_seq=raw.get("invocation_seq"),
        )
        for raw in data.get("turns", [])
    ]
    return SessionState(
        session_id=data["session_id"],
        turns=turns,
        aliases=dict(data.get("aliases", {})),
        invocations=invocations,
        created_at=_dt(data["created_at"]),
    )


class SessionStore:
    """Snapshots of conversation sessions in Redis with a TTL."""

    def __init__(self, redis_store: RedisJsonStore, ttl_seconds: int) -> None:
        self._redis = redis_store
        self._ttl = ttl_seconds

    def _key(self, session_id: str) -> str:
        return self._redis.key(SESSION_KIND, session_id)

    async def load(self, session_id: str) -> SessionState | None:
        """Load the snapshot for a session.

        Args:
            session_id: Unique session identifier (str).

        Returns:
            SessionState | None: The restored session, or None if missing or unreadable.
        """
        data = await self._redis.get_json(self._key(session_id))
        if data is None:
            return None
        try:
            return _dict_to_session(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding unreadable snapshot for %s: %s", session_id, e)
            return None

    async def save(self, state: SessionState) -> bool:
        """Write a snapshot of ``state`` with the configured TTL.

        Returns:
            bool: True on success, False if Redis is unavailable.
        """
        return await self._redis.set_json(
            self._key(state.session_id), _session_to_dict(state), ttl_seconds=self._ttl
        )

    async def delete(self, session_id: str) -> bool:
        """Remove the snapshot for a session. Returns False if Redis is unavailable."""
        return await self._redis.delete(self._key(session_id))

    async def close(self) -> None:
        await self._redis.close()


_session_store_instance: SessionStore | None = None


async def get_session_store_async() -> SessionStore | None:
    """Return the connected session store, or None if Redis is unset or unreachable. Cached."""
    global _session_store_instance
    if _session_store_instance is not None:
        return _session_store_instance
    redis_store = get_redis_store()
    if redis_store is None:
        return None
    try:
        await redis_store.connect()
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        logger.warning("Session persistence unavailable (Redis): %s", e)
        return None
    _session_store_instance = SessionStore(redis_store, get_settings().context_ttl_seconds)
    return _session_store_instance


async def close_session_store() -> None:
    """Close the Redis connection used by the session store. Idempotent."""
    global _session_store_instance
    if _session_store_instance is not None:
        await _session_store_instance.close()
        _session_store_instance = None
        logger.debug("Session store (Redis) closed")
