import threading
import time
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from app import main
from app.run_manager import RunManager
from deep_research_agent import ResearchOutcome
from embedding_cache import EmbeddingCache
from session_manifest import ManifestStore


def _event(run_id, event_type, payload):
    return {
        "run_id": run_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "payload": payload,
    }


class ScriptedAgent:
    """Finishes immediately, or waits for cancellation when `block` is set."""

    block = False

    def __init__(self, session_id, event_callback, should_abort, optimization_mode="", **_kwargs):
        self.session_id = session_id
        self.emit = event_callback
        self.should_abort = should_abort
        self.optimization_mode = optimization_mode

    def run(self, query, history=None, file_ids=None):
        sid = self.session_id
        self.emit(_event(sid, "progress", {"phase": "Plan", "message": "Starting Plan phase", "percent_complete": 0}))
        if self.block:
            deadline = time.monotonic() + 5
            while not self.should_abort() and time.monotonic() < deadline:
                time.sleep(0.01)
            self.emit(_event(sid, "response", {"text": "cancelled"}))
            self.emit(_event(sid, "end", {"status": "cancelled"}))
            return ResearchOutcome(session_id=sid, status="cancelled", answer="")
        if query == "explode":
            self.emit(_event(sid, "error", {"message": "search backend down"}))
            raise RuntimeError("search backend down")
        self.emit(_event(sid, "response", {"text": f"Answer to {query}"}))
        self.emit(_event(sid, "sources", {"sources": [{"title": "A", "url": "https://a.com", "snippet": ""}]}))
        self.emit(_event(sid, "end", {"status": "completed"}))
        return ResearchOutcome(
            session_id=sid,
            status="completed",
            answer=f"Answer to {query}",
            sources=[{"title": "A", "url": "https://a.com", "snippet": ""}],
            llm_turns_used=3,
        )


class BlockingAgent(ScriptedAgent):
    block = True


class FakeClock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


@pytest.fixture
def make_manager(tmp_path):
    managers = []

    def _make(factory=ScriptedAgent, **kwargs):
        manager = RunManager(
            agent_factory=factory,
            cache=EmbeddingCache(cache_dir=tmp_path / "cache"),
            manifest_store=ManifestStore(tmp_path / "sessions"),
            policy={"session_ttl_sec": 60},
            **kwargs,
        )
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        manager.shutdown()


@pytest.fixture
def client_for():
    def _client(manager):
        main.app.dependency_overrides[main.get_run_manager] = lambda: manager
        return TestClient(main.app)

    yield _client
    main.app.dependency_overrides.clear()


def test_create_run_and_read_snapshot(make_manager, client_for):
    manager = make_manager()
    client = client_for(manager)

    rsp = client.post("/api/runs", json={"query": "What is X?", "optimization_mode": "speed"})
    assert rsp.status_code == 200
    run_id = rsp.json()["run_id"]
    assert rsp.json()["status"] == "queued"
    assert manager.wait(run_id, timeout=5)

    snap = client.get(f"/api/runs/{run_id}").json()
    assert snap["status"] == "completed"
    assert snap["answer"] == "Answer to What is X?"
    assert snap["optimization_mode"] == "speed"
    assert snap["sources"][0]["url"] == "https://a.com"
    assert snap["llm_turns_used"] == 3
    assert snap["event_count"] == 4


def test_event_stream_replays_and_ends_after_end(make_manager, client_for):
    manager = make_manager()
    client = client_for(manager)
    run_id = client.post("/api/runs", json={"query": "What is X?"}).json()["run_id"]
    manager.wait(run_id, timeout=5)

    rsp = client.get(f"/api/runs/{run_id}/events")

    assert rsp.status_code == 200
    assert rsp.headers["content-type"].startswith("text/event-stream")
    body = rsp.text
    assert "event: progress" in body
    assert "event: response" in body
    assert body.rstrip().splitlines()[-1].startswith("data: ")
    assert "event: end" in body


def test_agent_failure_marks_run_as_error(make_manager, client_for):
    manager = make_manager()
    client = client_for(manager)
    run_id = client.post("/api/runs", json={"query": "explode"}).json()["run_id"]
    manager.wait(run_id, timeout=5)

    snap = client.get(f"/api/runs/{run_id}").json()
    assert snap["status"] == "error"
    assert snap["error"] == "search backend down"
    body = client.get(f"/api/runs/{run_id}/events").text
    assert body.count("event: error") == 1


def test_factory_failure_still_emits_terminal_error(make_manager, client_for):
    def broken_factory(**_kwargs):
        raise RuntimeError("missing API key")

    manager = make_manager(factory=broken_factory)
    client = client_for(manager)
    run_id = client.post("/api/runs", json={"query": "q"}).json()["run_id"]
    manager.wait(run_id, timeout=5)

    body = client.get(f"/api/runs/{run_id}/events").text
    assert "event: error" in body
    assert "missing API key" in body


def test_abort_running_run_then_conflict_when_finished(make_manager, client_for):
    manager = make_manager(factory=BlockingAgent)
    client = client_for(manager)
    run_id = client.post("/api/runs", json={"query": "slow"}).json()["run_id"]

    rsp = client.post(f"/api/runs/{run_id}/abort")
    assert rsp.status_code == 200
    assert rsp.json() == {"run_id": run_id, "status": "aborting"}
    assert manager.wait(run_id, timeout=5)
    assert client.get(f"/api/runs/{run_id}").json()["status"] == "cancelled"

    again = client.post(f"/api/runs/{run_id}/abort")
    assert again.status_code == 409


def test_unknown_run_is_404(make_manager, client_for):
    client = client_for(make_manager())
    assert client.get("/api/runs/nope").status_code == 404
    assert client.get("/api/runs/nope/events").status_code == 404
    assert client.post("/api/runs/nope/abort").status_code == 404
    assert client.get("/api/runs/nope/manifest").status_code == 404
    assert client.get("/api/runs/..%2Fescape/manifest").status_code == 404


def test_manifest_endpoint_reads_session_manifest(make_manager, client_for):
    manager = make_manager()
    client = client_for(manager)
    store = manager.manifest_store
    store.write("abc", store.new_manifest("abc", {"llm_turns_hard": 100}))

    rsp = client.get("/api/runs/abc/manifest")

    assert rsp.status_code == 200
    assert rsp.json()["session_id"] == "abc"
    assert rsp.json()["budgets"] == {"llm_turns_hard": 100}


def test_embedding_cache_purge_endpoint(make_manager, client_for):
    manager = make_manager()
    manager.cache.put("openai", "m", "text", [1.0])
    client = client_for(manager)

    rsp = client.post("/api/embedding-cache/purge")

    assert rsp.status_code == 200
    assert rsp.json() == {"expired": 0, "lru": 0}


def test_request_validation(make_manager, client_for):
    client = client_for(make_manager())
    assert client.post("/api/runs", json={"query": ""}).status_code == 422
    assert client.post("/api/runs", json={"query": "x", "optimization_mode": "turbo"}).status_code == 422


def test_finished_sessions_expire_after_ttl(make_manager):
    clock = FakeClock()
    manager = make_manager(clock=clock)
    run_id = manager.create_run("What is X?")
    manager.wait(run_id, timeout=5)

    clock.t = 30
    assert manager.expire_sessions() == []
    assert manager.get_snapshot(run_id) is not None

    clock.t = 100
    assert manager.expire_sessions() == [run_id]
    assert manager.get_snapshot(run_id) is None


class LingeringAgent(ScriptedAgent):
    """Emits `end`, then keeps running until released."""

    release = threading.Event()

    def run(self, query, history=None, file_ids=None):
        sid = self.session_id
        self.emit(_event(sid, "response", {"text": "done"}))
        self.emit(_event(sid, "end", {"status": "completed"}))
        self.release.wait(5)
        return ResearchOutcome(session_id=sid, status="completed", answer="done")


def test_status_is_terminal_as_soon_as_end_is_published(make_manager, client_for):
    manager = make_manager(factory=LingeringAgent)
    client = client_for(manager)
    try:
        run_id = client.post("/api/runs", json={"query": "q"}).json()["run_id"]
        q = manager.subscribe(run_id)
        while q.get(timeout=5)["event_type"] != "end":
            pass

        assert client.post(f"/api/runs/{run_id}/abort").status_code == 409
        assert client.get(f"/api/runs/{run_id}").json()["status"] == "completed"
    finally:
        LingeringAgent.release.set()
    assert manager.wait(run_id, timeout=5)
