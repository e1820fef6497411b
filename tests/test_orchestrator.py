import asyncio
from typing import Any, Callable, Dict, List
from unittest.mock import AsyncMock, MagicMock

import anyio
import pytest

from conftest import ALICE, BOB
from ethcopilot.agent.agent import CANCELLED_MESSAGE, REASONING_FAILED_MESSAGE, Orchestrator
from ethcopilot.agent.reasoning import TextResult, ToolCallRequest
from ethcopilot.agent.tools import get_tool_registry
from ethcopilot.chain.adapter import (
    Balance,
    BlockchainAdapter,
    ContractCallResult,
    SwapReceipt,
    TransactionReceipt,
)
from ethcopilot.errors import (
    EmbeddingUnavailable,
    InsufficientFunds,
    NetworkError,
    ReasoningError,
    SlippageExceeded,
)
from ethcopilot.knowledge.index import KnowledgeIndex, Passage
from ethcopilot.models import InvocationStatus, OrchestratorState, Role
from ethcopilot.services.external import ExternalDataClient
from ethcopilot.services.session_store import SessionStore

CHARLIE = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"


class ScriptedReasoner:
    """Returns scripted results in order; ``default`` once the script runs out."""

    def __init__(self, steps: List[Any], default: Any = None) -> None:
        self.steps = list(steps)
        self.default = default if default is not None else TextResult("done")
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, system_prompt, turns, passages, tool_schema):
        await asyncio.sleep(0)
        self.calls.append(
            {"system_prompt": system_prompt, "turns": list(turns), "passages": list(passages)}
        )
        step = self.steps.pop(0) if self.steps else self.default
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(turns)
        return step


class FakeRetriever:
    def __init__(self, passages: List[Passage] | None = None, error: Exception | None = None) -> None:
        self.passages = passages or []
        self.error = error
        self.queries: List[str] = []
        self.index = KnowledgeIndex(self.passages)

    async def retrieve(self, query: str, k: int, source: str | None = None) -> List[Passage]:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.passages[:k]


class FakeAdapter(BlockchainAdapter):
    """Records calls; ``errors[method]`` are raised first, ``gates[method]`` block until set."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.balances: Dict[tuple, int] = {}
        self.errors: Dict[str, List[Exception]] = {}
        self.gates: Dict[str, asyncio.Event] = {}

    async def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        gate = self.gates.get(method)
        if gate is not None:
            await gate.wait()
        queue = self.errors.get(method)
        if queue:
            raise queue.pop(0)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def get_balance(self, address, token):
        await self._enter("get_balance", address, token)
        return Balance(address, token.symbol, token.decimals, self.balances.get((address, token.symbol), 0))

    async def transfer(self, sender, recipient, amount, token):
        await self._enter("transfer", sender, recipient, amount, token)
        return TransactionReceipt(tx_hash="0xabc", status="success", block_number=1, gas_used=21000)

    async def swap(self, account, amount_in, token_in, token_out, max_slippage_bps):
        await self._enter("swap", account, amount_in, token_in, token_out, max_slippage_bps)
        return SwapReceipt(
            tx_hash="0xdef",
            status="success",
            token_in=token_in.symbol,
            token_out=token_out.symbol,
            amount_in=amount_in,
            amount_out=2_000_000,
            min_amount_out=1_990_000,
            decimals_in=token_in.decimals,
            decimals_out=token_out.decimals,
        )

    async def query_contract(self, address, method, args, returns):
        await self._enter("query_contract", address, method, args, returns)
        return ContractCallResult(address=address, method=method, values=[1])

    async def is_contract(self, address):
        await self._enter("is_contract", address)
        return True


def make_orchestrator(reasoner, adapter=None, retriever=None, **kwargs) -> Orchestrator:
    return Orchestrator(
        reasoner=reasoner,
        adapter=adapter or FakeAdapter(),
        registry=get_tool_registry(),
        retriever=retriever if retriever is not None else FakeRetriever(),
        retry_backoff_seconds=0,
        system_prompt="You are a test assistant.",
        default_aliases={"alice": ALICE, "bob": BOB},
        **kwargs,
    )


def _last_tool_result(turns) -> Dict[str, Any]:
    return [t for t in turns if t.role is Role.TOOL_RESULT][-1].content


def balance_request(account: str = "alice", token: str = "USDC", call_id: str = "c1") -> ToolCallRequest:
    return ToolCallRequest("get_balance", {"account": account, "token": token}, call_id)


def summarise() -> Callable:
    def _step(turns):
        content = _last_tool_result(turns)
        if "result" in content:
            return TextResult(f"Result: {content['result'].get('display', content['result'])}")
        return TextResult(f"Failed: {content['error']['kind']}")

    return _step


@pytest.mark.asyncio
async def test_informational_question_never_dispatches() -> None:
    """A grounded text answer makes no adapter calls."""
    passage = Passage("p1", "Uniswap V2", "Pairs hold reserves.", (1.0, 0.0), "uniswap-v2")
    reasoner = ScriptedReasoner([TextResult("Uniswap V2 uses constant product pools.")])
    adapter = FakeAdapter()
    orch = make_orchestrator(reasoner, adapter, FakeRetriever([passage]))

    reply = await orch.handle("s1", "How does Uniswap V2 work?")

    assert reply.text == "Uniswap V2 uses constant product pools."
    assert reply.grounded is True
    assert reply.states == [
        OrchestratorState.AWAITING_INPUT,
        OrchestratorState.GROUNDING,
        OrchestratorState.REASONING,
        OrchestratorState.RESPONDING,
        OrchestratorState.AWAITING_INPUT,
    ]
    assert adapter.calls == []
    assert reasoner.calls[0]["passages"] == [passage]


@pytest.mark.asyncio
async def test_usdc_balance_is_reported_in_whole_units() -> None:
    """Token balances are rendered using the token's decimals."""
    adapter = FakeAdapter()
    adapter.balances[(ALICE, "USDC")] = 1_000_000_000
    reasoner = ScriptedReasoner([balance_request(), summarise()])
    orch = make_orchestrator(reasoner, adapter)

    reply = await orch.handle("s1", "What is alice's USDC balance?")

    assert "1000.0 USDC" in reply.text
    assert reply.dispatched_tools
    session = orch.get_session("s1")
    assert session.tool_calls_count == 1
    invocation = session.invocations[0]
    assert invocation.seq == 1
    assert invocation.status is InvocationStatus.SUCCEEDED
    assert invocation.args == {"account": ALICE, "token": "USDC"}
    assert [t.role for t in session.turns] == [
        Role.USER,
        Role.ASSISTANT,
        Role.TOOL_RESULT,
        Role.ASSISTANT,
    ]
    assert session.turns[2].invocation_seq == 1


@pytest.mark.asyncio
async def test_insufficient_funds_is_reported_without_retry() -> None:
    """InsufficientFunds fails the invocation after a single attempt."""
    adapter = FakeAdapter()
    adapter.errors["transfer"] = [InsufficientFunds("balance 0.1 ETH, need 1000 ETH")]
    request = ToolCallRequest(
        "transfer", {"from_account": "alice", "to_account": "bob", "amount": "1000"}, "c1"
    )
    reasoner = ScriptedReasoner([request, summarise()])
    orch = make_orchestrator(reasoner, adapter)

    reply = await orch.handle("s1", "Send 1000 ETH from alice to bob")

    assert reply.text == "Failed: InsufficientFunds"
    assert adapter.count("transfer") == 1
    invocation = orch.get_session("s1").invocations[0]
    assert invocation.status is InvocationStatus.FAILED
    assert invocation.error["kind"] == "InsufficientFunds"


@pytest.mark.asyncio
async def test_slippage_failure_is_not_resubmitted_with_looser_bound() -> None:
    """A slippage revert is reported and never retried."""
    adapter = FakeAdapter()
    adapter.errors["swap"] = [SlippageExceeded("output below minimum")]
    swap = {"account": "alice", "amount_in": "1", "token_in": "ETH", "token_out": "USDC"}
    reasoner = ScriptedReasoner(
        [
            ToolCallRequest("swap_tokens", swap, "c1"),
            ToolCallRequest("swap_tokens", {**swap, "max_slippage_bps": 500}, "c2"),
        ]
    )
    orch = make_orchestrator(reasoner, adapter)

    reply = await orch.handle("s1", "Swap 1 ETH for USDC")

    assert adapter.count("swap") == 1
    assert "50 bps" in reply.text
    session = orch.get_session("s1")
    assert session.tool_calls_count == 1
    assert session.invocations[0].error["kind"] == "SlippageExceeded"


@pytest.mark.asyncio
async def test_embedding_outage_degrades_to_ungrounded_answer() -> None:
    """Retrieval failure still produces an ungrounded answer."""
    reasoner = ScriptedReasoner([TextResult("From general knowledge: ...")])
    retriever = FakeRetriever(error=EmbeddingUnavailable("embeddings down"))
    orch = make_orchestrator(reasoner, retriever=retriever)

    reply = await orch.handle("s1", "How does Uniswap V2 work?")

    assert reply.text == "From general knowledge: ..."
    assert reply.grounded is False
    assert reasoner.calls[0]["passages"] == []
    assert "knowledge base is unavailable" in reasoner.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_unknown_alias_asks_for_clarification_without_adapter_calls() -> None:
    """An unknown alias is reported back to the model, not dispatched."""
    adapter = FakeAdapter()
    reasoner = ScriptedReasoner([balance_request(account="carol")])
    orch = make_orchestrator(reasoner, adapter)

    reply = await orch.handle("s1", "What is carol's balance?")

    assert "carol" in reply.text
    assert adapter.calls == []
    session = orch.get_session("s1")
    assert session.invocations == []
    assert [t.role for t in session.turns] == [Role.USER, Role.ASSISTANT, Role.ASSISTANT]
    assert OrchestratorState.AWAITING_TOOL_RESULT not in reply.states


@pytest.mark.asyncio
async def test_invalid_amount_makes_no_adapter_call() -> None:
    """An invalid amount fails validation before the adapter."""
    adapter = FakeAdapter()
    request = ToolCallRequest(
        "transfer", {"from_account": "alice", "to_account": "bob", "amount": "lots"}, "c1"
    )
    orch = make_orchestrator(ScriptedReasoner([request]), adapter)

    reply = await orch.handle("s1", "Send lots of ETH to bob")

    assert "not a valid amount" in reply.text
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_tool_budget_bounds_round_trips() -> None:
    """The per-utterance tool budget stops the loop."""
    adapter = FakeAdapter()
    reasoner = ScriptedReasoner([], default=balance_request())
    orch = make_orchestrator(reasoner, adapter, max_tool_rounds=3)

    reply = await orch.handle("s1", "Keep checking")

    assert adapter.count("get_balance") == 3
    assert "3 tool calls" in reply.text
    assert orch.get_session("s1").tool_calls_count == 3


@pytest.mark.asyncio
async def test_invocation_sequence_is_gap_free_across_utterances() -> None:
    """Invocation sequence numbers increase by one across utterances."""
    reasoner = ScriptedReasoner(
        [
            balance_request(call_id="a"),
            balance_request(account="bob", call_id="b"),
            TextResult("both done"),
            balance_request(account="nobody", call_id="c"),
            balance_request(token="DAI", call_id="d"),
            TextResult("again"),
        ]
    )
    orch = make_orchestrator(reasoner)

    await orch.handle("s1", "balances")
    await orch.handle("s1", "retry")

    session = orch.get_session("s1")
    assert [inv.seq for inv in session.invocations] == [1, 2]
    # Third utterance after the clarification.
    await orch.handle("s1", "dai please")
    assert [inv.seq for inv in session.invocations] == [1, 2, 3]


@pytest.mark.asyncio
async def test_network_error_is_retried_once() -> None:
    """A single NetworkError is retried and the call succeeds."""
    adapter = FakeAdapter()
    adapter.errors["get_balance"] = [NetworkError("connection reset")]
    orch = make_orchestrator(ScriptedReasoner([balance_request(), summarise()]), adapter)

    reply = await orch.handle("s1", "balance?")

    assert adapter.count("get_balance") == 2
    assert reply.text == "Result: 0.0 USDC"
    assert orch.get_session("s1").invocations[0].status is InvocationStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_repeated_network_error_fails_the_invocation() -> None:
    """A second NetworkError fails the invocation."""
    adapter = FakeAdapter()
    adapter.errors["get_balance"] = [NetworkError("down"), NetworkError("still down")]
    orch = make_orchestrator(ScriptedReasoner([balance_request(), summarise()]), adapter)

    reply = await orch.handle("s1", "balance?")

    assert adapter.count("get_balance") == 2
    assert reply.text == "Failed: NetworkError"


@pytest.mark.asyncio
async def test_reasoning_error_is_retried_once() -> None:
    """A transient ReasoningError is retried once."""
    reasoner = ScriptedReasoner([ReasoningError("timeout", transient=True), TextResult("ok")])
    orch = make_orchestrator(reasoner)

    reply = await orch.handle("s1", "hello")

    assert reply.text == "ok"
    assert len(reasoner.calls) == 2


@pytest.mark.asyncio
async def test_reasoning_failure_ends_turn_with_apology() -> None:
    """Repeated reasoning failures end the turn with an apology."""
    reasoner = ScriptedReasoner([ReasoningError("down"), ReasoningError("down")])
    orch = make_orchestrator(reasoner)

    reply = await orch.handle("s1", "hello")

    assert reply.text == REASONING_FAILED_MESSAGE
    assert len(reasoner.calls) == 2
    assert orch.get_session("s1").turns[-1].content == REASONING_FAILED_MESSAGE


@pytest.mark.asyncio
async def test_same_reasoning_output_classifies_the_same_in_fresh_sessions() -> None:
    """Identical model output yields identical invocations in fresh sessions."""
    orch = make_orchestrator(ScriptedReasoner([balance_request(), TextResult("a"), balance_request(), TextResult("b")]))

    first = await orch.handle("s1", "balance?")
    second = await orch.handle("s2", "balance?")

    assert first.states == second.states
    assert orch.get_session("s1").invocations[0].seq == orch.get_session("s2").invocations[0].seq == 1


@pytest.mark.asyncio
async def test_remember_alias_binds_name_for_later_calls() -> None:
    """remember_alias makes the name usable in later calls."""
    adapter = FakeAdapter()
    reasoner = ScriptedReasoner(
        [
            ToolCallRequest("remember_alias", {"name": "Carol", "address": CHARLIE}, "c1"),
            ToolCallRequest(
                "transfer", {"from_account": "alice", "to_account": "carol", "amount": "0.5"}, "c2"
            ),
            TextResult("sent"),
        ]
    )
    orch = make_orchestrator(reasoner, adapter)

    reply = await orch.handle("s1", "carol is 0x3C44...; send her 0.5 ETH from alice")

    assert reply.text == "sent"
    assert orch.get_session("s1").aliases["carol"] == CHARLIE
    method, args = adapter.calls[0]
    assert method == "transfer"
    assert args[0] == ALICE
    assert args[1] == CHARLIE
    assert args[2] == 500_000_000_000_000_000


@pytest.mark.asyncio
async def test_utterances_in_one_session_are_serialised() -> None:
    """Concurrent utterances in one session run one after another."""
    orch = make_orchestrator(ScriptedReasoner([TextResult("one"), TextResult("two")]))

    await asyncio.gather(orch.handle("s1", "first"), orch.handle("s1", "second"))

    roles = [t.role for t in orch.get_session("s1").turns]
    assert roles == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]


async def _wait_for_call(adapter: FakeAdapter, method: str) -> None:
    for _ in range(100):
        if adapter.count(method):
            return
        await asyncio.sleep(0)
    raise AssertionError(f"{method} was never called")


@pytest.mark.asyncio
async def test_cancel_abandons_swap_but_records_its_outcome() -> None:
    """Cancelling during a swap still records the swap outcome."""
    adapter = FakeAdapter()
    adapter.gates["swap"] = asyncio.Event()
    swap = {"account": "alice", "amount_in": "1", "token_in": "ETH", "token_out": "USDC"}
    orch = make_orchestrator(ScriptedReasoner([ToolCallRequest("swap_tokens", swap, "c1")]), adapter)

    task = asyncio.create_task(orch.handle("s1", "Swap 1 ETH for USDC"))
    await _wait_for_call(adapter, "swap")
    assert orch.cancel("s1") is True
    reply = await task

    assert reply.text == CANCELLED_MESSAGE
    session = orch.get_session("s1")
    invocation = session.invocations[0]
    assert invocation.status is InvocationStatus.FAILED
    assert invocation.error["kind"] == "Cancelled"
    assert session.turns[-2].role is Role.TOOL_RESULT
    assert len(session.background) == 1

    pending = list(session.background)
    adapter.gates["swap"].set()
    await asyncio.wait(pending)
    await asyncio.sleep(0)

    assert invocation.settled_result is not None
    assert invocation.settled_result["tx_hash"] == "0xdef"
    assert session.background == set()


@pytest.mark.asyncio
async def test_cancel_read_only_call_leaves_no_background_work() -> None:
    """Cancelling a read marks it Cancelled and leaves no task behind."""
    adapter = FakeAdapter()
    adapter.gates["get_balance"] = asyncio.Event()
    orch = make_orchestrator(ScriptedReasoner([balance_request()]), adapter)

    task = asyncio.create_task(orch.handle("s1", "balance?"))
    await _wait_for_call(adapter, "get_balance")
    orch.cancel("s1")
    reply = await task

    assert reply.text == CANCELLED_MESSAGE
    session = orch.get_session("s1")
    assert session.background == set()
    assert session.invocations[0].error["kind"] == "Cancelled"


@pytest.mark.asyncio
async def test_cancel_without_active_request_returns_false() -> None:
    """Cancel with nothing running returns False."""
    orch = make_orchestrator(ScriptedReasoner([]))
    assert orch.cancel("missing") is False
    await orch.handle("s1", "hi")
    assert orch.cancel("s1") is False


@pytest.mark.asyncio
async def test_reset_clears_history_and_reseeds_aliases() -> None:
    """Reset empties history and restores the default aliases."""
    orch = make_orchestrator(
        ScriptedReasoner(
            [ToolCallRequest("remember_alias", {"name": "carol", "address": CHARLIE}, "c1"), TextResult("ok")]
        )
    )
    await orch.handle("s1", "carol is charlie")

    assert await orch.reset("s1") is True

    session = orch.get_session("s1")
    assert session.turns == []
    assert session.tool_calls_count == 0
    assert "carol" not in session.aliases
    assert session.aliases["alice"] == ALICE


@pytest.mark.asyncio
async def test_session_snapshot_saved_after_each_utterance() -> None:
    """The session store is saved once per utterance."""
    store = MagicMock(spec=SessionStore)
    store.load = AsyncMock(return_value=None)
    store.save = AsyncMock(return_value=True)
    orch = make_orchestrator(ScriptedReasoner([]), store=store)

    await orch.handle("s1", "hi")
    await orch.handle("s1", "again")

    store.load.assert_awaited_once_with("s1")
    assert store.save.await_count == 2
    saved = store.save.await_args[0][0]
    assert saved.session_id == "s1"
    assert len(saved.turns) == 4


@pytest.mark.asyncio
async def test_unexpected_adapter_exception_fails_the_invocation() -> None:
    """An exception outside the error taxonomy still completes the turn and fails the invocation."""
    adapter = FakeAdapter()
    adapter.errors["get_balance"] = [anyio.ClosedResourceError()]
    orch = make_orchestrator(ScriptedReasoner([balance_request(), summarise()]), adapter)

    reply = await orch.handle("s1", "balance?")

    assert reply.text == "Failed: AdapterError"
    session = orch.get_session("s1")
    invocation = session.invocations[0]
    assert invocation.status is InvocationStatus.FAILED
    assert "ClosedResourceError" in invocation.error["message"]
    assert session.pending_invocations() == []
    assert session.active_task is None


@pytest.mark.asyncio
async def test_slow_store_load_does_not_block_other_sessions() -> None:
    """Restoring one session from the store does not hold up a different session."""
    release = asyncio.Event()

    async def load(session_id):
        if session_id == "slow":
            await release.wait()
        return None

    store = MagicMock(spec=SessionStore)
    store.load = AsyncMock(side_effect=load)
    store.save = AsyncMock(return_value=True)
    orch = make_orchestrator(ScriptedReasoner([], default=TextResult("hi")), store=store)

    slow = asyncio.create_task(orch.handle("slow", "hello"))
    await asyncio.sleep(0)
    reply = await asyncio.wait_for(orch.handle("fast", "hello"), timeout=1)

    assert reply.text == "hi"
    assert not slow.done()
    release.set()
    assert (await slow).text == "hi"


@pytest.mark.asyncio
async def test_concurrent_first_loads_share_one_session() -> None:
    """Two utterances racing to restore the same session end up on the same state."""
    store = MagicMock(spec=SessionStore)
    store.load = AsyncMock(return_value=None)
    store.save = AsyncMock(return_value=True)
    orch = make_orchestrator(ScriptedReasoner([TextResult("one"), TextResult("two")]), store=store)

    await asyncio.gather(orch.handle("s1", "first"), orch.handle("s1", "second"))

    assert len(orch.get_session("s1").turns) == 4


@pytest.mark.asyncio
async def test_get_document_returns_the_full_passage() -> None:
    """get_document looks a passage up by id in the loaded index."""
    passage = Passage("uniswap-v2-0", "Uniswap V2", "Pairs hold reserves.", (1.0, 0.0), "uniswap-v2")
    reasoner = ScriptedReasoner(
        [ToolCallRequest("get_document", {"id": "uniswap-v2-0"}, "c1"), ToolCallRequest("get_document", {"id": "nope"}, "c2")]
    )
    orch = make_orchestrator(reasoner, retriever=FakeRetriever([passage]))

    await orch.handle("s1", "Show me the Uniswap V2 doc")

    found, missing = orch.get_session("s1").invocations
    assert found.result == passage.to_dict()
    assert missing.status is InvocationStatus.FAILED
    assert missing.error["kind"] == "RetrievalError"


@pytest.mark.asyncio
async def test_token_price_uses_external_client() -> None:
    """get_token_price resolves the token and asks the external client for its price."""
    external = MagicMock(spec=ExternalDataClient)
    external.token_price = AsyncMock(
        return_value={"token": "USDC", "price_usd": 1.0, "source": "defillama"}
    )
    reasoner = ScriptedReasoner([ToolCallRequest("get_token_price", {"token": "usdc"}, "c1"), TextResult("1 USD")])
    adapter = FakeAdapter()
    orch = make_orchestrator(reasoner, adapter, external=external)

    reply = await orch.handle("s1", "What is USDC worth?")

    assert reply.text == "1 USD"
    (token,), _ = external.token_price.await_args
    assert token.symbol == "USDC"
    assert adapter.calls == []
    assert orch.get_session("s1").invocations[0].result["price_usd"] == 1.0


@pytest.mark.asyncio
async def test_token_price_without_external_client_fails_cleanly() -> None:
    """Without an external client the price tool fails its invocation instead of crashing."""
    reasoner = ScriptedReasoner([ToolCallRequest("get_token_price", {"token": "ETH"}, "c1"), summarise()])
    orch = make_orchestrator(reasoner)

    reply = await orch.handle("s1", "ETH price?")

    assert reply.text == "Failed: AdapterError"
