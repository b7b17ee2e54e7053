from fastapi.testclient import TestClient

from chatrelay.api.main import app
from chatrelay.domain.chat_models import CompletionBlob, CompletionText
from chatrelay.domain.errors import UpstreamGenerationError
from chatrelay.services import chat_ai
from chatrelay.services.streaming import STREAM_ERROR_MARKER

from .utils import FakeCompletionClient, FakeStream, data_url


client = TestClient(app)


def _use_llm(monkeypatch, fake):
    monkeypatch.setattr(chat_ai, "_client", fake)
    return fake


def _save(user_text, reply, prefix="/api"):
    r = client.post(
        f"{prefix}/chat/save-response",
        json={
            "userMessage": {"role": "user", "parts": [{"text": user_text}]},
            "modelResponse": {"role": "model", "parts": [{"text": reply}]},
        },
    )
    assert r.status_code == 200, r.text
    return r


def test_submit_streams_plain_text(monkeypatch):
    _use_llm(monkeypatch, FakeCompletionClient(["Hello", ", ", "world"]))

    r = client.post("/api/chat", json={"message": "hi"})

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert r.text == "Hello, world"


def test_submit_streams_incrementally(monkeypatch):
    _use_llm(monkeypatch, FakeCompletionClient(["one ", "two ", "three"]))

    with client.stream("POST", "/chat", json={"message": "count"}) as r:
        chunks = [c for c in r.iter_text() if c]

    assert "".join(chunks) == "one two three"


def test_submit_requires_message_or_file(monkeypatch):
    fake = _use_llm(monkeypatch, FakeCompletionClient())

    for body in ({}, {"message": ""}, {"message": "", "attachedFiles": []}):
        r = client.post("/api/chat", json=body)
        assert r.status_code == 400
        assert r.json() == {"error": "Message or file is required"}
    assert fake.calls == []


def test_submit_replays_history_and_attachments(monkeypatch):
    fake = _use_llm(monkeypatch, FakeCompletionClient(["ok"]))
    _save("first question", "first answer")

    r = client.post(
        "/api/chat",
        json={
            "message": "what is in these?",
            "attachedFiles": [
                {"fileData": data_url(b"png", "image/png"), "fileType": "image/png", "fileName": "a.png"},
                {"fileData": data_url(b"%PDF", "application/pdf"), "fileType": "application/pdf", "fileName": "b.pdf"},
            ],
        },
    )

    assert r.status_code == 200
    contents = fake.calls[0]["contents"]
    assert [t.role for t in contents] == ["user", "model", "user"]
    assert contents[0].parts == [CompletionText("first question")]
    assert contents[-1].parts == [
        CompletionText("what is in these?"),
        CompletionBlob(b"png", "image/png"),
        CompletionBlob(b"%PDF", "application/pdf"),
    ]


def test_submit_skips_malformed_attachment(monkeypatch):
    fake = _use_llm(monkeypatch, FakeCompletionClient(["ok"]))

    r = client.post(
        "/chat",
        json={"message": "hello", "attachedFiles": [{"fileData": "garbage", "fileType": "image/png", "fileName": "x"}]},
    )

    assert r.status_code == 200
    assert fake.calls[0]["contents"][-1].parts == [CompletionText("hello")]


def test_submit_with_only_malformed_attachments_is_rejected(monkeypatch):
    fake = _use_llm(monkeypatch, FakeCompletionClient())

    r = client.post("/chat", json={"attachedFiles": [{"fileData": "garbage", "fileType": "image/png", "fileName": "x"}]})

    assert r.status_code == 400
    assert fake.calls == []


def test_upstream_rejection_is_opaque_500(monkeypatch):
    _use_llm(monkeypatch, FakeCompletionClient(error=UpstreamGenerationError("quota exceeded", status=429)))

    r = client.post("/api/chat", json={"message": "hi"})

    assert r.status_code == 500
    assert r.json() == {"error": "Internal Server Error"}


def test_mid_stream_failure_ends_with_marker(monkeypatch):
    class _Breaking(FakeCompletionClient):
        def stream(self, contents, system_instruction):
            super().stream(contents, system_instruction)
            return FakeStream(["partial"], fail_after=1, error=UpstreamGenerationError("reset", mid_stream=True))

    _use_llm(monkeypatch, _Breaking())

    r = client.post("/api/chat", json={"message": "hi"})

    assert r.status_code == 200
    assert r.text == "partial" + STREAM_ERROR_MARKER


def test_history_save_edit_clear_flow():
    _save("q1", "a1", prefix="")
    _save("q2", "a2")

    history = client.get("/api/chat/history").json()["history"]
    assert [(t["role"], t["parts"][0]["text"]) for t in history] == [
        ("user", "q1"),
        ("model", "a1"),
        ("user", "q2"),
        ("model", "a2"),
    ]
    assert all(t["_id"] and t["createdAt"] for t in history)

    r = client.post("/api/chat/edit", json={"id": history[2]["_id"], "newText": "q2 edited"})
    assert r.status_code == 200
    assert r.json() == {"message": "Message updated"}
    edited = client.get("/chat/history").json()["history"]
    assert edited[2]["parts"][0]["text"] == "q2 edited"
    assert edited[2]["createdAt"] == history[2]["createdAt"]

    r = client.post("/api/chat/clear")
    assert r.json() == {"message": "Chat history cleared"}
    assert client.get("/api/chat/history").json() == {"history": []}


def test_history_keeps_attachment_parts():
    image = data_url(b"png")
    r = client.post(
        "/api/chat/save-response",
        json={
            "userMessage": {"role": "user", "parts": [{"text": "see"}, {"image": image, "fileName": "p.png"}]},
            "modelResponse": {"role": "model", "parts": [{"text": "seen"}]},
        },
    )
    assert r.status_code == 200

    history = client.get("/api/chat/history").json()["history"]
    assert history[0]["parts"] == [{"text": "see"}, {"image": image, "fileName": "p.png"}]


def test_edit_unknown_id_is_404():
    r = client.post("/api/chat/edit", json={"id": "missing", "newText": "x"})
    assert r.status_code == 404
    assert "error" in r.json()


def test_edit_non_text_turn_is_409():
    r = client.post(
        "/api/chat/save-response",
        json={
            "userMessage": {"role": "user", "parts": [{"audio": data_url(b"ogg", "audio/ogg")}]},
            "modelResponse": {"role": "model", "parts": [{"text": "heard"}]},
        },
    )
    assert r.status_code == 200
    target = client.get("/api/chat/history").json()["history"][0]

    r = client.post("/api/chat/edit", json={"id": target["_id"], "newText": "x"})
    assert r.status_code == 409


def test_save_response_validates_shape():
    r = client.post(
        "/api/chat/save-response",
        json={
            "userMessage": {"role": "model", "parts": [{"text": "x"}]},
            "modelResponse": {"role": "model", "parts": [{"text": "y"}]},
        },
    )
    assert r.status_code == 400

    r = client.post(
        "/api/chat/save-response",
        json={
            "userMessage": {"role": "user", "parts": []},
            "modelResponse": {"role": "model", "parts": [{"text": "y"}]},
        },
    )
    assert r.status_code == 400
    assert client.get("/api/chat/history").json() == {"history": []}

    r = client.post(
        "/api/chat/save-response",
        json={
            "userMessage": {"role": "user", "parts": [{"text": "x", "image": data_url(b"a")}]},
            "modelResponse": {"role": "model", "parts": [{"text": "y"}]},
        },
    )
    assert r.status_code == 400


def test_edit_request_validation_error_is_400():
    r = client.post("/api/chat/edit", json={"newText": "x"})
    assert r.status_code == 400
    assert "error" in r.json()


def test_health_reports_store_kind():
    r = client.get("/api/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["components"]["store"] == "in-memory"


def test_turn_edited_to_empty_text_is_not_replayed(monkeypatch):
    fake = _use_llm(monkeypatch, FakeCompletionClient(["ok"]))
    _save("question", "answer")
    first = client.get("/api/chat/history").json()["history"][0]
    r = client.post("/api/chat/edit", json={"id": first["_id"], "newText": ""})
    assert r.status_code == 200

    r = client.post("/api/chat", json={"message": "again"})

    assert r.status_code == 200
    contents = fake.calls[0]["contents"]
    assert all(CompletionText("") not in t.parts for t in contents)
    assert chat_ai.turns_to_wire(contents) == [
        {"role": "model", "parts": [{"text": "answer"}]},
        {"role": "user", "parts": [{"text": "again"}]},
    ]


def test_malformed_only_attachments_rejected_before_history_read(monkeypatch):
    from chatrelay.api.routers import chat as chat_router

    def _no_reads(store):
        raise AssertionError("history should not be read")

    monkeypatch.setattr(chat_router, "load_transcript", _no_reads)
    _use_llm(monkeypatch, FakeCompletionClient())

    r = client.post("/api/chat", json={"attachedFiles": [{"fileData": "garbage", "fileName": "x"}]})

    assert r.status_code == 400
    assert r.json() == {"error": "Message or file is required"}
