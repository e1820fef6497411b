import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from ..chain.adapter import BlockchainAdapter
from ..chain.mcp_adapter import get_chain_adapter
from ..errors import (
    AdapterError,
    BudgetExceeded,
    Cancelled,
    EthCopilotError,
    InvalidArgument,
    NetworkError,
    ReasoningError,
    RetrievalError,
    SlippageExceeded,
    UnknownAlias,
    UnknownTool,
    UnknownToken,
    ValidationError,
)
from ..knowledge.index import Passage, load_index
from ..knowledge.retriever import Retriever, get_embedder
from ..models import (
    InvocationStatus,
    OrchestratorState,
    Role,
    SessionState,
    ToolInvocation,
    Turn,
)
from ..services.external import ExternalDataClient, get_external_client
from ..services.session_store import SessionStore, get_session_store_async
from ..settings import get_settings
from .reasoning import Reasoner, TextResult, ToolCallRequest, get_reasoner
from .tools import ToolRegistry, ValidatedCall, get_tool_registry

logger = logging.getLogger(__name__)

# Operations that change chain state; once submitted they are never abandoned silently.
SIDE_EFFECTING_TOOLS = frozenset({"transfer", "swap_tokens"})

CANCELLED_MESSAGE = "The request was cancelled."
REASONING_FAILED_MESSAGE = (
    "Sorry, I could not reach the language model to handle this request. "
    "Please try again in a moment."
)
UNGROUNDED_NOTE = (
    "\n Note\nThe knowledge base is unavailable for this request. Answer from general "
    "knowledge and say that the answer is not backed by the documentation."
)


@dataclass
class Reply:
    """Outcome of one utterance: the response text and the path the loop took."""

    session_id: str
    text: str = ""
    states: List[OrchestratorState] = field(
        default_factory=lambda: [OrchestratorState.AWAITING_INPUT]
    )
    invocations: List[ToolInvocation] = field(default_factory=list)
    grounded: bool = False

    def enter(self, state: OrchestratorState) -> None:
        self.states.append(state)

    @property
    def dispatched_tools(self) -> bool:
        return OrchestratorState.TOOL_DISPATCH in self.states


class Orchestrator:
    """Drives grounding, reasoning and tool dispatch for each session.

    One loop runs per session at a time (the session lock serialises
    utterances); different sessions proceed concurrently.
    """

    def __init__(
        self,
        reasoner: Reasoner,
        adapter: BlockchainAdapter,
        registry: ToolRegistry,
        retriever: Retriever | None = None,
        *,
        max_tool_rounds: int = 5,
        retrieval_top_k: int = 4,
        retry_backoff_seconds: float = 1.0,
        system_prompt: str = "",
        default_aliases: Mapping[str, str] | None = None,
        store: SessionStore | None = None,
        external: ExternalDataClient | None = None,
    ) -> None:
        self._reasoner = reasoner
        self._adapter = adapter
        self._registry = registry
        self._retriever = retriever
        self._external = external
        self._max_tool_rounds = max_tool_rounds
        self._retrieval_top_k = retrieval_top_k
        self._backoff = retry_backoff_seconds
        self._system_prompt = system_prompt
        self._default_aliases = dict(default_aliases or {})
        self._store = store
        self._sessions: Dict[str, SessionState] = {}

    # Sessions

    def get_session(self, session_id: str) -> SessionState:
        """Return or create the in-memory SessionState for ``session_id``.

        Args:
            session_id: Unique identifier for the session (str).

        Returns:
            SessionState: The live session, seeded with the default aliases when new.
        """
        if session_id not in self._sessions:
            session = SessionState(session_id=session_id)
            self._seed_aliases(session)
            self._sessions[session_id] = session
        return self._sessions[session_id]

    def _seed_aliases(self, session: SessionState) -> None:
        for alias, address in self._default_aliases.items():
            session.bind_alias(alias, address)

    async def _load_session(self, session_id: str) -> SessionState:
        if session_id in self._sessions or self._store is None:
            return self.get_session(session_id)
        # No lock around the load: a slow store read must not hold up other sessions.
        restored = await self._store.load(session_id)
        if restored is not None and session_id not in self._sessions:
            logger.info("Restored session %s from store", session_id)
            self._sessions[session_id] = restored
        return self.get_session(session_id)

    async def reset(self, session_id: str) -> bool:
        """Clear a session's history and bindings. Cancels any in-flight utterance.

        Args:
            session_id: Session to reset.

        Returns:
            bool: False when the session does not exist.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        self.cancel(session_id)
        async with session.lock:
            session.reset()
            self._seed_aliases(session)
        if self._store is not None:
            await self._store.delete(session_id)
        logger.info("Session %s reset", session_id)
        return True

    def cancel(self, session_id: str) -> bool:
        """Stop the session's in-flight utterance at its next suspension point.

        Returns:
            bool: True when there was an in-flight utterance to cancel.
        """
        session = self._sessions.get(session_id)
        if session is None or session.active_task is None or session.active_task.done():
            return False
        logger.info("Cancelling in-flight request for session %s", session_id)
        session.active_task.cancel()
        return True

    # Inbound

    async def submit(self, session_id: str, utterance: str) -> str:
        """Run one utterance and return only the response text."""
        reply = await self.handle(session_id, utterance)
        return reply.text

    async def handle(self, session_id: str, utterance: str) -> Reply:
        """Run one utterance through the loop for ``session_id``.

        Utterances for the same session run one after another. A cancel() of the
        session ends the turn with CANCELLED_MESSAGE; cancelling the caller's own
        task propagates.

        Args:
            session_id: Unique session identifier (str).
            utterance: User message text (str).

        Returns:
            Reply: Response text plus the states visited and invocations made.
        """
        session = await self._load_session(session_id)
        reply = Reply(session_id=session_id)
        async with session.lock:
            task = asyncio.create_task(self._run(session, utterance, reply))
            session.active_task = task
            try:
                await task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    # The caller went away; the inner loop was cancelled with us.
                    raise
            finally:
                session.active_task = None
        if self._store is not None:
            await self._store.save(session)
        return reply

    # Control loop

    async def _run(self, session: SessionState, utterance: str, reply: Reply) -> None:
        logger.info("Session %s: new utterance", session.session_id)
        logger.debug("Utterance: %s", utterance[:200])
        try:
            session.append_turn(Turn(role=Role.USER, content=utterance))

            reply.enter(OrchestratorState.GROUNDING)
            passages, reply.grounded = await self._ground(utterance)
            system_prompt = self._build_system_prompt(session, reply.grounded)

            rounds = 0
            failed_swap_bps: int | None = None
            while True:
                reply.enter(OrchestratorState.REASONING)
                try:
                    result = await self._reason(system_prompt, session, passages)
                except ReasoningError as e:
                    logger.error("Session %s: reasoning failed twice: %s", session.session_id, e)
                    self._respond(session, reply, REASONING_FAILED_MESSAGE)
                    return

                match result:
                    case TextResult(text=text):
                        self._respond(session, reply, text)
                        return
                    case ToolCallRequest():
                        if rounds >= self._max_tool_rounds:
                            err = BudgetExceeded(
                                f"Tool budget of {self._max_tool_rounds} calls exhausted"
                            )
                            logger.warning("Session %s: %s", session.session_id, err)
                            self._respond(
                                session,
                                reply,
                                "I could not complete this request within "
                                f"{self._max_tool_rounds} tool calls. Please break it into "
                                "smaller steps.",
                            )
                            return
                        rounds += 1
                        reply.enter(OrchestratorState.TOOL_DISPATCH)
                        invocation = await self._dispatch(session, result, reply, failed_swap_bps)
                        if invocation is None:
                            return
                        if (
                            invocation.tool_name == "swap_tokens"
                            and invocation.error is not None
                            and invocation.error.get("kind") == SlippageExceeded.kind
                        ):
                            failed_swap_bps = invocation.args.get("max_slippage_bps")
                    case _:
                        raise TypeError(f"Unexpected reasoning result: {result!r}")
        except asyncio.CancelledError:
            self._abandon(session, reply)
            raise

    async def _ground(self, utterance: str) -> tuple[List[Passage], bool]:
        if self._retriever is None:
            return [], False
        try:
            passages = await self._retriever.retrieve(utterance, self._retrieval_top_k)
        except RetrievalError as e:
            logger.warning("Retrieval unavailable, continuing ungrounded: %s", e)
            return [], False
        return passages, True

    def _build_system_prompt(self, session: SessionState, grounded: bool) -> str:
        parts = [self._system_prompt]
        if session.aliases:
            parts.append("\n Known Accounts")
            for alias, address in sorted(session.aliases.items()):
                parts.append(f"{alias}: {address}")
        if not grounded:
            parts.append(UNGROUNDED_NOTE)
        return "\n".join(parts)

    async def _reason(self, system_prompt: str, session: SessionState, passages: List[Passage]):
        schema = self._registry.openai_tool_schemas()
        try:
            return await self._reasoner.complete(system_prompt, list(session.turns), passages, schema)
        except ReasoningError as e:
            logger.warning(
                "Session %s: reasoning failed (transient=%s), retrying once: %s",
                session.session_id,
                e.transient,
                e,
            )
        await asyncio.sleep(self._backoff)
        return await self._reasoner.complete(system_prompt, list(session.turns), passages, schema)

    async def _dispatch(
        self,
        session: SessionState,
        request: ToolCallRequest,
        reply: Reply,
        failed_swap_bps: int | None,
    ) -> ToolInvocation | None:
        """Validate and run one tool call. Returns None when the turn ended in a clarification."""
        call_id = request.call_id or f"call_{len(session.turns)}"
        session.append_turn(
            Turn(
                role=Role.ASSISTANT,
                content={
                    "tool_call": {
                        "name": request.name,
                        "arguments": request.raw_args,
                        "call_id": call_id,
                    }
                },
            )
        )
        try:
            call = self._registry.validate(request.name, request.raw_args, session.aliases)
            _guard_slippage(call, failed_swap_bps)
        except ValidationError as e:
            logger.info("Session %s: %s rejected: %s", session.session_id, request.name, e)
            self._respond(session, reply, _clarification(e, self._registry))
            return None

        invocation = session.new_invocation(call.name, call.describe(), call_id=call_id)
        reply.invocations.append(invocation)
        logger.info(
            "Session %s: invocation #%d %s %s",
            session.session_id,
            invocation.seq,
            call.name,
            invocation.args,
        )

        reply.enter(OrchestratorState.AWAITING_TOOL_RESULT)
        await self._execute(session, invocation, call)
        self._append_tool_result(session, invocation)
        return invocation

    async def _execute(self, session: SessionState, invocation: ToolInvocation, call: ValidatedCall) -> None:
        retried = False
        while True:
            try:
                result = await self._invoke(session, invocation, call)
            except NetworkError as e:
                if not retried:
                    retried = True
                    logger.warning(
                        "Invocation #%d %s: network error, retrying once: %s",
                        invocation.seq,
                        call.name,
                        e,
                    )
                    await asyncio.sleep(self._backoff)
                    continue
                invocation.fail(e.to_dict())
            except (AdapterError, RetrievalError) as e:
                logger.info("Invocation #%d %s failed: %s", invocation.seq, call.name, e)
                invocation.fail(e.to_dict())
            except Exception as e:
                # Whatever the adapter raised, the invocation must not stay pending.
                logger.exception("Invocation #%d %s: unexpected adapter failure", invocation.seq, call.name)
                invocation.fail(AdapterError(f"{type(e).__name__}: {e}").to_dict())
            else:
                invocation.succeed(result)
            return

    async def _invoke(
        self, session: SessionState, invocation: ToolInvocation, call: ValidatedCall
    ) -> Dict[str, Any]:
        if call.name not in SIDE_EFFECTING_TOOLS:
            return await self._run_tool(session, call)

        # Submitted transactions cannot be recalled: keep tracking them if the turn is abandoned.
        operation = asyncio.ensure_future(self._run_tool(session, call))
        try:
            return await asyncio.shield(operation)
        except asyncio.CancelledError:
            if not operation.done():
                self._track_abandoned(session, invocation, operation)
            raise

    async def _run_tool(self, session: SessionState, call: ValidatedCall) -> Dict[str, Any]:
        args = call.args
        adapter = self._adapter
        match call.name:
            case "get_balance":
                balance = await adapter.get_balance(args["account"], args["token"])
                return balance.to_dict()
            case "transfer":
                receipt = await adapter.transfer(
                    args["from_account"], args["to_account"], args["amount"], args["token"]
                )
                return receipt.to_dict()
            case "swap_tokens":
                swap = await adapter.swap(
                    args["account"],
                    args["amount_in"],
                    args["token_in"],
                    args["token_out"],
                    args["max_slippage_bps"],
                )
                return swap.to_dict()
            case "query_contract":
                result = await adapter.query_contract(
                    args["address"], args["method"], args["args"], args["returns"]
                )
                return result.to_dict()
            case "check_contract":
                deployed = await adapter.is_contract(args["address"])
                return {"address": args["address"], "deployed": deployed}
            case "search_docs":
                if self._retriever is None:
                    return {"passages": []}
                passages = await self._retriever.retrieve(
                    args["query"], args["limit"], source=args.get("source")
                )
                return {"passages": [p.to_dict() for p in passages]}
            case "get_document":
                if self._retriever is None:
                    raise RetrievalError("The knowledge base is not loaded")
                passage = self._retriever.index.get(args["id"])
                if passage is None:
                    raise RetrievalError(f"No document with id '{args['id']}'")
                return passage.to_dict()
            case "get_token_price":
                return await self._require_external().token_price(args["token"])
            case "search_web":
                return await self._require_external().search_web(args["query"])
            case "list_supported_tokens":
                return {
                    "tokens": [
                        {
                            "symbol": t.symbol,
                            "name": t.name,
                            "address": t.address,
                            "decimals": t.decimals,
                        }
                        for t in self._registry.tokens.all()
                    ]
                }
            case "remember_alias":
                session.bind_alias(args["name"], args["address"])
                return {"name": args["name"], "address": args["address"]}
        raise UnknownTool(f"No handler for tool '{call.name}'")

    def _require_external(self) -> ExternalDataClient:
        if self._external is None:
            raise AdapterError("External data lookups are not configured")
        return self._external

    def _track_abandoned(
        self, session: SessionState, invocation: ToolInvocation, operation: "asyncio.Future[Dict[str, Any]]"
    ) -> None:
        session.background.add(operation)

        def _settle(fut: "asyncio.Future[Dict[str, Any]]") -> None:
            session.background.discard(fut)
            if fut.cancelled():
                invocation.settled_error = Cancelled("Operation cancelled before completion").to_dict()
            elif fut.exception() is not None:
                exc = fut.exception()
                invocation.settled_error = (
                    exc.to_dict()
                    if isinstance(exc, EthCopilotError)
                    else {"kind": type(exc).__name__, "message": str(exc)}
                )
            else:
                invocation.settled_result = fut.result()
            logger.info(
                "Session %s: abandoned invocation #%d %s settled: %s",
                session.session_id,
                invocation.seq,
                invocation.tool_name,
                invocation.settled_error or "success",
            )

        operation.add_done_callback(_settle)

    def _abandon(self, session: SessionState, reply: Reply) -> None:
        """Record a cancelled utterance: fail pending invocations and close the turn."""
        for invocation in session.pending_invocations():
            invocation.fail(Cancelled("Cancelled before the operation completed").to_dict())
            self._append_tool_result(session, invocation)
        self._respond(session, reply, CANCELLED_MESSAGE)

    def _append_tool_result(self, session: SessionState, invocation: ToolInvocation) -> None:
        content: Dict[str, Any] = {
            "call_id": invocation.call_id,
            "tool": invocation.tool_name,
            "status": invocation.status.value,
        }
        if invocation.status is InvocationStatus.SUCCEEDED:
            content["result"] = invocation.result
        else:
            content["error"] = invocation.error
        session.append_turn(
            Turn(role=Role.TOOL_RESULT, content=content, invocation_seq=invocation.seq)
        )

    def _respond(self, session: SessionState, reply: Reply, text: str) -> None:
        reply.enter(OrchestratorState.RESPONDING)
        session.append_turn(Turn(role=Role.ASSISTANT, content=text))
        reply.text = text
        reply.enter(OrchestratorState.AWAITING_INPUT)

    async def close(self) -> None:
        pending = [t for s in self._sessions.values() for t in s.background]
        if pending:
            logger.info("Waiting for %d abandoned operations to settle", len(pending))
            await asyncio.wait(pending, timeout=30)
        await self._adapter.close()
        if self._external is not None:
            await self._external.close()


def _guard_slippage(call: ValidatedCall, failed_swap_bps: int | None) -> None:
    if call.name != "swap_tokens" or failed_swap_bps is None:
        return
    if call.args["max_slippage_bps"] > failed_swap_bps:
        raise InvalidArgument(
            f"The swap already failed its {failed_swap_bps} bps slippage bound. "
            "I will not retry with a looser bound unless you ask for it explicitly"
        )


def _clarification(error: ValidationError, registry: ToolRegistry) -> str:
    if isinstance(error, UnknownAlias):
        return (
            f"I don't know which address '{error.alias}' refers to. "
            f"Please tell me the address for {error.alias}."
        )
    if isinstance(error, UnknownToken):
        symbols = ", ".join(t.symbol for t in registry.tokens.all())
        return f"I don't recognise the token '{error.token}'. Supported tokens: {symbols}."
    if isinstance(error, UnknownTool):
        return f"I can't perform that operation: {error.message}."
    return f"I couldn't run that request: {error.message}. Could you clarify?"


async def build_orchestrator_async() -> Orchestrator:
    """Build the orchestrator from settings: index, retriever, chain adapter, model and store."""
    settings = get_settings()
    index = load_index(settings.knowledge_index_path)
    retriever = Retriever(index, get_embedder())
    store = await get_session_store_async()
    return Orchestrator(
        reasoner=get_reasoner(),
        adapter=get_chain_adapter(),
        registry=get_tool_registry(),
        retriever=retriever,
        max_tool_rounds=settings.max_tool_rounds,
        retrieval_top_k=settings.retrieval_top_k,
        retry_backoff_seconds=settings.retry_backoff_seconds,
        system_prompt=settings.agent_system_prompt,
        default_aliases=settings.default_aliases,
        store=store,
        external=get_external_client(),
    )


_SERVICE: Orchestrator | None = None


async def get_orchestrator_async() -> Orchestrator:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = await build_orchestrator_async()
    return _SERVICE


def set_orchestrator(orchestrator: Orchestrator | None) -> None:
    global _SERVICE
    _SERVICE = orchestrator


async def close_orchestrator() -> None:
    global _SERVICE
    if _SERVICE is not None:
        await _SERVICE.close()
        _SERVICE = None


async def submit(session_id: str, utterance: str) -> str:
    return await (await get_orchestrator_async()).submit(session_id, utterance)


__all__ = [
    "Orchestrator",
    "Reply",
    "build_orchestrator_async",
    "close_orchestrator",
    "get_orchestrator_async",
    "set_orchestrator",
    "submit",
]
