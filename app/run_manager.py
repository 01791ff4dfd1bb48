import threading
import time
import uuid
from datetime import datetime, timezone
from queue import Queue
from typing import Any, Callable, Dict, List, Optional

from app.models import TERMINAL_STATUSES, RunState
from deep_research_agent import build_default_agent, load_research_policy
from embedding_cache import EmbeddingCache
from session_manifest import ManifestStore

TERMINAL_EVENT_TYPES = ("end", "error")

AgentFactory = Callable[..., Any]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RunManager:
    """
    In-process session store for research runs.

    Each run executes on its own daemon thread. Events fan out to subscriber
    queues and are kept on the run state so late subscribers get a replay.
    Terminal sessions are dropped once idle for longer than `session_ttl_sec`;
    their manifests stay on disk.
    """

    _MAX_EVENTS_PER_RUN = 2000

    def __init__(
        self,
        agent_factory: Optional[AgentFactory] = None,
        cache: Optional[EmbeddingCache] = None,
        manifest_store: Optional[ManifestStore] = None,
        policy: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.policy = load_research_policy()
        self.policy.update(policy or {})
        self.cache = cache or EmbeddingCache(
            ttl_sec=self.policy["embedding_cache_ttl_sec"],
            max_entries=self.policy["embedding_cache_max_entries"],
        )
        self.manifest_store = manifest_store or ManifestStore()
        self._agent_factory = agent_factory or self._default_agent_factory
        self._session_ttl_sec = float(self.policy["session_ttl_sec"])
        self._clock = clock
        self._runs: Dict[str, RunState] = {}
        self._last_access: Dict[str, float] = {}
        self._subscribers: Dict[str, List[Queue]] = {}
        self._cancel_flags: Dict[str, bool] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

        self.purge_embedding_cache()
        self._purge_stop = threading.Event()
        self._purge_thread: Optional[threading.Thread] = None
        interval = float(self.policy["cache_purge_interval_sec"])
        if interval > 0:
            self._purge_thread = threading.Thread(
                target=self._purge_loop, args=(interval,), daemon=True
            )
            self._purge_thread.start()

    def _default_agent_factory(self, **kwargs: Any) -> Any:
        return build_default_agent(
            policy=self.policy,
            cache=self.cache,
            manifest_store=self.manifest_store,
            **kwargs,
        )

    # -- lifecycle -----------------------------------------------------------

    def create_run(
        self,
        query: str,
        history: Optional[List[Dict[str, Any]]] = None,
        file_ids: Optional[List[str]] = None,
        optimization_mode: Optional[str] = None,
    ) -> str:
        self.expire_sessions()
        run_id = str(uuid.uuid4())
        now = _now()
        state = RunState(
            run_id=run_id,
            session_id=run_id,
            status="queued",
            created_at=now,
            updated_at=now,
            last_access_at=now,
            query=query,
            history=list(history or []),
            file_ids=list(file_ids or []),
            optimization_mode=optimization_mode,
        )
        t = threading.Thread(target=self._execute_run, args=(run_id,), daemon=True)
        with self._lock:
            self._runs[run_id] = state
            self._last_access[run_id] = self._clock()
            self._subscribers[run_id] = []
            self._cancel_flags[run_id] = False
            self._threads[run_id] = t
        t.start()
        return run_id

    def get_snapshot(self, run_id: str) -> Optional[RunState]:
        with self._lock:
            state = self._runs.get(run_id)
            if not state:
                return None
            self._touch_locked(run_id)
            return state.model_copy(deep=True)

    def get_manifest(self, run_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.manifest_store.read(run_id)
        except ValueError:
            return None

    def abort_run(self, run_id: str) -> Optional[str]:
        with self._lock:
            state = self._runs.get(run_id)
            if not state:
                return None
            self._touch_locked(run_id)
            if state.status in TERMINAL_STATUSES:
                return "conflict_finished"
            self._cancel_flags[run_id] = True
        print(f"[state] abort requested for run {run_id}")
        return "aborting"

    def expire_sessions(self) -> List[str]:
        if self._session_ttl_sec <= 0:
            return []
        now = self._clock()
        expired: List[str] = []
        with self._lock:
            for run_id, state in list(self._runs.items()):
                if state.status not in TERMINAL_STATUSES:
                    continue
                if now - self._last_access.get(run_id, now) <= self._session_ttl_sec:
                    continue
                expired.append(run_id)
                self._runs.pop(run_id, None)
                self._last_access.pop(run_id, None)
                self._subscribers.pop(run_id, None)
                self._cancel_flags.pop(run_id, None)
                self._threads.pop(run_id, None)
        for run_id in expired:
            print(f"[state] expired session {run_id}")
        return expired

    def wait(self, run_id: str, timeout: Optional[float] = None) -> bool:
        with self._lock:
            t = self._threads.get(run_id)
        if t is None:
            return False
        t.join(timeout)
        return not t.is_alive()

    def shutdown(self) -> None:
        self._purge_stop.set()
        if self._purge_thread is not None:
            self._purge_thread.join(timeout=1.0)

    # -- embedding cache -----------------------------------------------------

    def purge_embedding_cache(self) -> Dict[str, int]:
        result = self.cache.purge()
        print(f"[embedding_cache] purge expired={result['expired']} lru={result['lru']}")
        return result

    def _purge_loop(self, interval: float) -> None:
        while not self._purge_stop.wait(interval):
            try:
                self.purge_embedding_cache()
            except OSError as exc:
                print(f"[embedding_cache] periodic purge failed: {exc}")

    # -- events --------------------------------------------------------------

    def subscribe(self, run_id: str) -> Optional[Queue]:
        with self._lock:
            state = self._runs.get(run_id)
            if not state:
                return None
            self._touch_locked(run_id)
            q: Queue = Queue()
            for event in state.events:
                q.put(event)
            self._subscribers[run_id].append(q)
            return q

    def unsubscribe(self, run_id: str, queue: Queue) -> None:
        with self._lock:
            subs = self._subscribers.get(run_id, [])
            if queue in subs:
                subs.remove(queue)

    def _publish_event(self, run_id: str, event: Dict[str, Any]) -> None:
        with self._lock:
            state = self._runs.get(run_id)
            if not state:
                return
            state.events.append(event)
            if len(state.events) > self._MAX_EVENTS_PER_RUN:
                del state.events[: -self._MAX_EVENTS_PER_RUN]
            state.updated_at = _now()
            self._project_event(state, event)
            subscribers = list(self._subscribers.get(run_id, []))
        for q in subscribers:
            try:
                q.put(event)
            except Exception:
                # Best-effort fan-out: don't block run progress on subscriber failures.
                pass

    def _project_event(self, state: RunState, event: Dict[str, Any]) -> None:
        event_type = str(event.get("event_type", ""))
        payload = event.get("payload", {}) if isinstance(event.get("payload"), dict) else {}
        if event_type == "progress":
            state.latest_progress = dict(payload)
        elif event_type == "response":
            state.answer += str(payload.get("text", ""))
        elif event_type == "sources":
            state.sources = list(payload.get("sources", []))
        elif event_type == "stats":
            state.token_usage = dict(payload)
        # Terminal events settle the status before subscribers can react to them.
        elif event_type == "end" and payload.get("status") in TERMINAL_STATUSES:
            state.status = payload["status"]
        elif event_type == "error":
            state.status = "error"
            state.error = str(payload.get("message", ""))

    # -- execution -----------------------------------------------------------

    def _execute_run(self, run_id: str) -> None:
        with self._lock:
            state = self._runs.get(run_id)
            if not state:
                return
            state.status = "running"
            state.updated_at = _now()
            query = state.query
            history = list(state.history)
            file_ids = list(state.file_ids)
            mode = state.optimization_mode or ""

        def callback(event: Dict[str, Any]) -> None:
            self._publish_event(run_id, event)

        def should_abort() -> bool:
            with self._lock:
                return bool(self._cancel_flags.get(run_id, False))

        try:
            agent = self._agent_factory(
                session_id=run_id,
                event_callback=callback,
                should_abort=should_abort,
                optimization_mode=mode,
            )
            outcome = agent.run(query, history=history, file_ids=file_ids)
            with self._lock:
                state = self._runs.get(run_id)
                if not state:
                    return
                state.status = outcome.status
                state.answer = outcome.answer
                state.sources = list(outcome.sources)
                state.sub_questions = list(outcome.sub_questions)
                state.early_synthesis_triggered = outcome.early_synthesis_triggered
                state.early_synthesis_reason = outcome.early_synthesis_reason
                state.llm_turns_used = outcome.llm_turns_used
                state.token_usage = dict(outcome.usage)
                state.updated_at = _now()
        except Exception as exc:
            error_text = str(exc)
            print(f"[state] run {run_id} failed: {error_text}")
            with self._lock:
                state = self._runs.get(run_id)
                if not state:
                    return
                state.status = "error"
                state.error = error_text
                state.updated_at = _now()
                last_event_type = state.events[-1].get("event_type", "") if state.events else ""
            # The agent emits its own terminal event unless it failed before starting.
            if last_event_type not in TERMINAL_EVENT_TYPES:
                self._publish_event(
                    run_id,
                    {
                        "run_id": run_id,
                        "timestamp": _now().isoformat(),
                        "event_type": "error",
                        "payload": {"message": error_text},
                    },
                )

    def _touch_locked(self, run_id: str) -> None:
        self._last_access[run_id] = self._clock()
        state = self._runs.get(run_id)
        if state:
            state.last_access_at = _now()
