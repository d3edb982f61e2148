import threading
from collections.abc import Iterator

from agent_runtime.turn.model_client import ContentChunk, DoneChunk, ModelChunk, ToolCallChunk


def test_health(make_client) -> None:
    response = make_client().get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "agent-runtime"}


def test_tools_lists_search_tools(make_client) -> None:
    response = make_client().get("/tools")

    assert response.status_code == 200
    assert response.json() == {"tools": ["paper_search", "web_search"]}


def test_turn_without_model_client_is_unavailable(make_client) -> None:
    response = make_client().post("/sessions/s1/turns", json={"message": "hi"})

    assert response.status_code == 503


def test_turn_rejects_empty_message(make_client, scripted_model) -> None:
    model = scripted_model([[ContentChunk("unused"), DoneChunk()]])

    response = make_client(model).post("/sessions/s1/turns", json={"message": ""})

    assert response.status_code == 422


def test_turn_with_search_round_trip(make_client, scripted_model) -> None:
    model = scripted_model(
        [
            [
                ToolCallChunk(id="call_1", name="web_search", arguments_json='{"query": "agent guardrails"}'),
                DoneChunk("tool_calls"),
            ],
            [ContentChunk("Guardrails keep agent loops bounded."), DoneChunk("stop")],
        ]
    )
    client = make_client(model)

    response = client.post("/sessions/s1/turns", json={"message": "search for agent guardrails", "user_id": "u1"})

    assert response.status_code == 200
    body = response.json()
    assert body["content"] == "Guardrails keep agent loops bounded."
    assert body["finish_reason"] == "stop"
    assert body["steps_taken"] == 2
    assert body["turn"]["status"] == "completed"
    assert body["task"]["phase"] == "completed"
    assert body["task"]["completed_steps"] == 2
    event_types = [event["type"] for event in body["turn"]["events"]]
    assert event_types[0] == "turn.start"
    assert "tool.complete" in event_types
    assert event_types[-1] == "turn.complete"
    assert "TASK CONTEXT:" in model.calls[0][0].content

    latest = client.get("/sessions/s1/turns/latest")
    assert latest.status_code == 200
    assert latest.json()["turn_id"] == body["turn"]["turn_id"]

    task = client.get("/sessions/s1/task")
    assert task.status_code == 200
    assert task.json()["state"]["tool_call_history"][0]["tool_name"] == "web_search"


def test_conversation_history_is_replayed(make_client, scripted_model) -> None:
    model = scripted_model(
        [
            [ContentChunk("Hi there."), DoneChunk("stop")],
            [ContentChunk("Still here."), DoneChunk("stop")],
        ]
    )
    client = make_client(model)

    assert client.post("/sessions/s1/turns", json={"message": "hello"}).status_code == 200
    assert client.post("/sessions/s1/turns", json={"message": "again"}).status_code == 200

    second = model.calls[1]
    assert [message.role for message in second] == ["system", "user", "assistant", "user"]
    assert second[2].content == "Hi there."
    assert second[3].content == "again"


def test_failed_turn_is_recorded(make_client, storage, scripted_model) -> None:
    model = scripted_model([[ContentChunk("partial")]])
    client = make_client(model)

    response = client.post("/sessions/s1/turns", json={"message": "find papers on agents"})

    assert response.status_code == 500
    assert response.json()["detail"] == "Turn failed"
    latest = client.get("/sessions/s1/turns/latest").json()
    assert latest["status"] == "failed"
    assert latest["error"]["code"] == "model_stream_error"
    assert latest["events"][-1]["type"] == "turn.error"
    assert storage.list_messages("s1") == []
    task = client.get("/sessions/s1/task").json()
    assert task["summary"]["phase"] == "failed"


def test_unknown_session_returns_404(make_client) -> None:
    client = make_client()

    assert client.get("/sessions/missing/turns/latest").status_code == 404
    assert client.get("/sessions/missing/task").status_code == 404


class BlockingModelClient:
    """Holds the first generation open until released, then answers."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def stream_chat(self, messages, tools, options=None) -> Iterator[ModelChunk]:
        self.entered.set()
        self.release.wait(timeout=5)
        yield ContentChunk("done")
        yield DoneChunk("stop")


def test_overlapping_turn_for_same_session_is_rejected(make_client) -> None:
    model = BlockingModelClient()
    client = make_client(model)
    responses = {}

    def first_turn() -> None:
        responses["first"] = client.post("/sessions/s1/turns", json={"message": "hello"})

    worker = threading.Thread(target=first_turn)
    worker.start()
    assert model.entered.wait(timeout=5)

    overlapping = client.post("/sessions/s1/turns", json={"message": "hello again"})
    model.release.set()
    worker.join(timeout=5)

    assert overlapping.status_code == 409
    assert overlapping.json()["detail"] == "A turn is already running for this session"
    assert responses["first"].status_code == 200
    assert responses["first"].json()["content"] == "done"


def test_session_accepts_a_new_turn_after_the_previous_one_ends(make_client, scripted_model) -> None:
    client = make_client(scripted_model([[ContentChunk("partial")], [ContentChunk("ok"), DoneChunk("stop")]]))

    assert client.post("/sessions/s1/turns", json={"message": "hello"}).status_code == 500
    assert client.post("/sessions/s1/turns", json={"message": "hello"}).status_code == 200
