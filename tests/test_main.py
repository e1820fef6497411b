import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from ethcopilot.agent import set_orchestrator
from ethcopilot.agent.reasoning import TextResult, ToolCallRequest
from ethcopilot.main import _cors_origins_list, app
from ethcopilot.models import InvocationStatus
from test_orchestrator import FakeAdapter, ScriptedReasoner, make_orchestrator


@pytest.fixture
def adapter() -> FakeAdapter:
    a = FakeAdapter()
    a.balances[("0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266", "ETH")] = 5 * 10**18
    return a


@pytest.fixture
def client(adapter: FakeAdapter):
    reasoner = ScriptedReasoner(
        [
            ToolCallRequest("get_balance", {"account": "alice"}, "c1"),
            TextResult("Alice holds 5.0 ETH."),
        ],
        default=TextResult("Hello!"),
    )
    set_orchestrator(make_orchestrator(reasoner, adapter))
    with TestClient(app) as c:
        yield c
    set_orchestrator(None)


def test_health(client: TestClient) -> None:
    """Health check returns ok."""
    assert client.get("/health").json() == {"status": "ok"}


def test_chat_runs_the_loop(client: TestClient, adapter: FakeAdapter) -> None:
    """POST /chat runs one utterance and reports the tool call count."""
    response = client.post("/chat", json={"session_id": "s1", "message": "How much ETH does alice have?"})

    assert response.status_code == 200
    body = response.json()
    assert body["response"] == "Alice holds 5.0 ETH."
    assert body["tool_calls_count"] == 1
    assert body["session_id"] == "s1"
    assert adapter.count("get_balance") == 1


def test_chat_rejects_empty_message(client: TestClient) -> None:
    """A blank message is rejected with 400."""
    assert client.post("/chat", json={"session_id": "s1", "message": "   "}).status_code == 400


def test_reset_and_cancel(client: TestClient) -> None:
    """Reset reports whether the session existed and cancel is False when idle."""
    assert client.post("/sessions/unknown/reset").json() == {"session_id": "unknown", "reset": False}
    client.post("/chat", json={"session_id": "s1", "message": "balance"})
    assert client.post("/sessions/s1/reset").json()["reset"] is True
    assert client.post("/sessions/s1/cancel").json()["cancelled"] is False

    body = client.post("/chat", json={"session_id": "s1", "message": "hi"}).json()
    assert body["tool_calls_count"] == 0


def test_ws_chat_frames(client: TestClient) -> None:
    """The websocket sends a token frame then a done frame."""
    with client.websocket_connect("/ws/chat") as ws:
        ws.send_text('{"session_id": "w1", "message": "balance of alice"}')
        token = ws.receive_json()
        done = ws.receive_json()

    assert token == {"type": "token", "data": "Alice holds 5.0 ETH."}
    assert done == {"type": "done", "session_id": "w1", "tool_calls_count": 1}


def test_ws_rejects_invalid_json(client: TestClient) -> None:
    """A non-JSON websocket payload gets an error frame."""
    with client.websocket_connect("/ws/chat") as ws:
        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "data": "Invalid JSON payload"}


def test_cors_origins_list() -> None:
    """CORS origins parse from a comma-separated string."""
    assert _cors_origins_list("*") == ["*"]
    assert _cors_origins_list("http://a, http://b") == ["http://a", "http://b"]


def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


def test_ws_disconnect_cancels_the_request(client: TestClient, adapter: FakeAdapter) -> None:
    """Closing the socket mid-request cancels the loop and fails the pending invocation."""
    adapter.gates["get_balance"] = asyncio.Event()
    orchestrator = client.app.state.orchestrator

    with client.websocket_connect("/ws/chat") as ws:
        ws.send_text('{"session_id": "w2", "message": "balance of alice"}')
        _wait_until(lambda: adapter.count("get_balance") == 1)

    def cancelled() -> bool:
        session = orchestrator._sessions.get("w2")
        return bool(session and session.invocations and session.invocations[0].status is InvocationStatus.FAILED)

    _wait_until(cancelled)
    session = orchestrator.get_session("w2")
    assert session.invocations[0].error["kind"] == "Cancelled"
    assert session.active_task is None
