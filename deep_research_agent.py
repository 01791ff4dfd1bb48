import argparse
import json
import math
import os
import sys
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from queue import Queue
from typing import Any, Callable, Dict, Iterator, List, Optional
from urllib.parse import urlparse

from document_ranker import (
    OPTIMIZATION_MODES,
    Chunk,
    DocumentRanker,
    cosine_similarity,
    load_files_data,
    split_text,
)
from embedding_cache import CachedEmbeddings, EmbeddingCache
from evidence import (
    NEEDS_DEPTH,
    PENDING,
    SUFFICIENT,
    ExtractedDoc,
    assess_sufficiency,
    build_evidence_items,
)
from research_clients import (
    LLM,
    OpenAIEmbedder,
    PageReader,
    RunAborted,
    WebSearch,
    as_clean_str_list,
    is_valid_absolute_http_url,
)
from session_manifest import ManifestStore
from usage_accounting import UsageAccountant

PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
SOURCE_POLICY_PATH = Path(__file__).resolve().parent / "source_policy.json"
RESEARCH_POLICY_PATH = Path(__file__).resolve().parent / "research_policy.json"

PHASES = ["Plan", "Search", "ReadExtract", "Synthesize", "Review", "Finalize"]

MAX_FACTS_PER_DOC = 8
MAX_QUOTES_PER_DOC = 3
WHOLE_PAGE_MAX_CHUNKS = 4
TOP_CHUNKS = 5
TOP_CHUNKS_DEPTH = 8
MAX_EXTRACT_INPUT_CHARS = 12000
SYNTHESIS_WEIGHT = 2

CANCEL_NOTICE = "\n[Deep Research] cancelled. Emitting best-effort summary.\n"
EARLY_RESPONSE_NOTICE = (
    "> Note: the research budget ran out before every sub-question was fully "
    "covered. This is an early response based on the evidence gathered so far.\n\n"
)

DEFAULT_RESEARCH_POLICY: Dict[str, Any] = {
    "wall_clock_limit_sec": 15 * 60,
    "llm_turns_hard_limit": 100,
    "soft_limit_ratio": 0.85,
    "max_rounds": 4,
    "results_per_query": 5,
    "broaden_k_multipliers": [1, 2, 3],
    "max_extract_per_pass": 5,
    "max_concurrency": 2,
    "max_sub_questions": 6,
    "optimization_mode": "balanced",
    "rerank": True,
    "rerank_threshold": 0.3,
    "embedding_cache_ttl_sec": 5 * 24 * 60 * 60,
    "embedding_cache_max_entries": 2000,
    "session_ttl_sec": 60 * 60,
    "cache_purge_interval_sec": 0,
}

# Lower bound for each integer policy value.
_INT_POLICY_FLOORS: Dict[str, int] = {
    "wall_clock_limit_sec": 1,
    "llm_turns_hard_limit": 1,
    "max_rounds": 1,
    "results_per_query": 1,
    "max_extract_per_pass": 1,
    "max_concurrency": 1,
    "max_sub_questions": 1,
    "embedding_cache_ttl_sec": 0,
    "embedding_cache_max_entries": 0,
    "session_ttl_sec": 0,
    "cache_purge_interval_sec": 0,
}

DEFAULT_SOURCE_POLICY: Dict[str, List[str]] = {
    "primary_tlds": [".gov", ".edu", ".int"],
    "primary_domain_suffixes": [],
    "secondary_tlds": [".org"],
}


def load_prompt(filename: str) -> str:
    path = PROMPTS_DIR / filename
    if not path.exists():
        raise FileNotFoundError(f"Missing prompt file: {path}")
    return path.read_text(encoding="utf-8").strip()


def load_source_policy(path: Optional[Path] = None) -> Dict[str, List[str]]:
    path = path or SOURCE_POLICY_PATH
    if not path.exists():
        return {k: list(v) for k, v in DEFAULT_SOURCE_POLICY.items()}
    raw = json.loads(path.read_text(encoding="utf-8"))
    primary_tlds = [str(v).lower() for v in raw.get("primary_tlds", [])]
    primary_domain_suffixes = [
        str(v).lower() for v in raw.get("primary_domain_suffixes", [])
    ]
    secondary_tlds = [str(v).lower() for v in raw.get("secondary_tlds", [])]
    return {
        "primary_tlds": primary_tlds,
        "primary_domain_suffixes": primary_domain_suffixes,
        "secondary_tlds": secondary_tlds,
    }


def load_research_policy(path: Optional[Path] = None) -> Dict[str, Any]:
    policy = dict(DEFAULT_RESEARCH_POLICY)
    policy["broaden_k_multipliers"] = list(DEFAULT_RESEARCH_POLICY["broaden_k_multipliers"])
    path = path or RESEARCH_POLICY_PATH
    if not path.exists():
        return policy
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return policy
    if not isinstance(raw, dict):
        return policy

    for key, floor in _INT_POLICY_FLOORS.items():
        val = raw.get(key)
        if isinstance(val, int) and not isinstance(val, bool):
            policy[key] = max(floor, val)
    if isinstance(raw.get("soft_limit_ratio"), (int, float)):
        policy["soft_limit_ratio"] = min(1.0, max(0.1, float(raw["soft_limit_ratio"])))
    if isinstance(raw.get("rerank_threshold"), (int, float)):
        policy["rerank_threshold"] = min(1.0, max(-1.0, float(raw["rerank_threshold"])))
    if isinstance(raw.get("rerank"), bool):
        policy["rerank"] = raw["rerank"]
    if raw.get("optimization_mode") in OPTIMIZATION_MODES:
        policy["optimization_mode"] = raw["optimization_mode"]
    if isinstance(raw.get("broaden_k_multipliers"), list):
        vals = [int(v) for v in raw["broaden_k_multipliers"] if isinstance(v, int) and v > 0]
        if vals:
            policy["broaden_k_multipliers"] = vals
    return policy


def matches_domain_rule(domain: str, rule: str) -> bool:
    """
    Domain matching with label-boundary safety.
    Supported rule formats:
    - "example.com" => exact domain only
    - "*.example.com" => example.com and all subdomains
    """
    d = (domain or "").strip(".").lower()
    r = (rule or "").strip(".").lower()
    if not d or not r:
        return False
    if r.startswith("*."):
        base = r[2:]
        return d == base or d.endswith("." + base)
    return d == r


def source_weight_for(url: str, source_policy: Dict[str, List[str]]) -> float:
    domain = (urlparse(url or "").hostname or "").lower()
    primary_tlds = tuple(source_policy.get("primary_tlds", []))
    primary_domain_suffixes = tuple(source_policy.get("primary_domain_suffixes", []))
    secondary_tlds = tuple(source_policy.get("secondary_tlds", []))

    if primary_tlds and domain.endswith(primary_tlds):
        weight = 1.0
    elif primary_domain_suffixes and any(
        matches_domain_rule(domain, tok) for tok in primary_domain_suffixes
    ):
        weight = 1.0
    elif secondary_tlds and domain.endswith(secondary_tlds):
        weight = 0.7 if domain.endswith(".org") else 0.45
    else:
        weight = 0.3

    if "wikipedia" in domain:
        weight -= 0.1
    if "blog" in domain:
        weight -= 0.1
    return round(max(0.1, weight), 2)


SYSTEM_PLAN = load_prompt("plan.system.txt")
SYSTEM_EXTRACT = load_prompt("extract.system.txt")
SYSTEM_SYNTHESIZE = load_prompt("synthesize.system.txt")


@dataclass(frozen=True)
class ResearchPlan:
    sub_questions: tuple[str, ...]
    criteria: tuple[str, ...] = ()
    notes: tuple[str, ...] = ()


@dataclass
class Candidate:
    url: str
    title: str
    content: str = ""
    read: bool = False


@dataclass
class SubqueryResult:
    sub_question: str
    candidates: List[Candidate] = field(default_factory=list)
    extracted: List[ExtractedDoc] = field(default_factory=list)
    sufficiency: str = PENDING
    reason: str = ""
    last_verdict: str = ""
    search_passes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sub_question": self.sub_question,
            "sufficiency": self.sufficiency,
            "reason": self.reason,
            "search_passes": self.search_passes,
            "candidates": len(self.candidates),
            "extracted_docs": len(self.extracted),
        }


@dataclass
class ResearchOutcome:
    session_id: str
    status: str
    answer: str
    early_synthesis_triggered: bool = False
    early_synthesis_reason: str = ""
    llm_turns_used: int = 0
    sub_questions: List[Dict[str, Any]] = field(default_factory=list)
    sources: List[Dict[str, str]] = field(default_factory=list)
    usage: Dict[str, Any] = field(default_factory=dict)


class BudgetTracker:
    """
    Wall-clock, model-turn and round budgets for one session.

    Calls reserve their weight before running and commit it once finished, so
    concurrent workers can never push the committed count past the hard limit.
    Reaching any limit sets a one-way early-synthesis flag.
    """

    def __init__(
        self,
        wall_clock_limit_sec: float = DEFAULT_RESEARCH_POLICY["wall_clock_limit_sec"],
        hard_limit: int = DEFAULT_RESEARCH_POLICY["llm_turns_hard_limit"],
        soft_limit_ratio: float = DEFAULT_RESEARCH_POLICY["soft_limit_ratio"],
        max_rounds: int = DEFAULT_RESEARCH_POLICY["max_rounds"],
        clock: Callable[[], float] = time.monotonic,
        on_trigger: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.wall_clock_limit_sec = float(wall_clock_limit_sec)
        self.hard_limit = max(1, int(hard_limit))
        self.soft_limit = int(math.floor(self.hard_limit * soft_limit_ratio))
        self.max_rounds = max(1, int(max_rounds))
        self.clock = clock
        self.on_trigger = on_trigger
        self.rounds = 0
        self.early_synthesis_triggered = False
        self.early_synthesis_reason = ""
        self._started_at = clock()
        self._used = 0
        self._reserved = 0
        self._lock = threading.Lock()

    @property
    def turns_used(self) -> int:
        with self._lock:
            return self._used

    def start(self) -> None:
        with self._lock:
            self._started_at = self.clock()

    def elapsed(self) -> float:
        return self.clock() - self._started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wall_clock_sec": self.wall_clock_limit_sec,
            "llm_turns_hard": self.hard_limit,
            "llm_turns_soft": self.soft_limit,
            "max_rounds": self.max_rounds,
        }

    def trigger(self, reason: str) -> bool:
        with self._lock:
            fired = self._trigger_locked(reason)
        if fired and self.on_trigger:
            self.on_trigger(reason)
        return fired

    def _trigger_locked(self, reason: str) -> bool:
        if self.early_synthesis_triggered:
            return False
        self.early_synthesis_triggered = True
        self.early_synthesis_reason = reason
        return True

    def try_reserve(self, weight: int = 1) -> bool:
        fired = False
        with self._lock:
            if self.early_synthesis_triggered:
                return False
            if self._used + self._reserved + weight > self.hard_limit:
                fired = self._trigger_locked("hard_limit")
                granted = False
            else:
                self._reserved += weight
                granted = True
        if fired and self.on_trigger:
            self.on_trigger("hard_limit")
        return granted

    def commit(self, weight: int = 1, completed: bool = True) -> None:
        reason = ""
        with self._lock:
            self._reserved = max(0, self._reserved - weight)
            if completed:
                self._used += weight
                if self._used >= self.hard_limit:
                    reason = "hard_limit"
                elif self._used >= self.soft_limit:
                    reason = "soft_limit"
        if reason:
            self.trigger(reason)

    def count_forced(self, weight: int) -> None:
        # Calls that must run regardless of remaining budget (final synthesis).
        with self._lock:
            self._used += weight

    def check(self) -> bool:
        if not self.early_synthesis_triggered and self.elapsed() > self.wall_clock_limit_sec:
            self.trigger("wall_clock")
        return self.early_synthesis_triggered

    def complete_round(self) -> None:
        with self._lock:
            self.rounds += 1
            done = self.rounds >= self.max_rounds
        if done:
            self.trigger("max_rounds")


def _hit_field(hit: Any, name: str) -> str:
    if isinstance(hit, dict):
        return str(hit.get(name) or "")
    return str(getattr(hit, name, "") or "")


def _format_history(history: List[Any], limit: int = 6) -> str:
    lines: List[str] = []
    for msg in history[-limit:]:
        if isinstance(msg, dict):
            role, content = msg.get("role", "user"), msg.get("content", "")
        elif isinstance(msg, (list, tuple)) and len(msg) == 2:
            role, content = msg
        else:
            continue
        content = str(content or "").strip()
        if content:
            lines.append(f"{role}: {content[:800]}")
    return "\n".join(lines)


class DeepResearchAgent:
    def __init__(
        self,
        llm: Any,
        system_llm: Any,
        search: Any,
        reader: Any,
        embeddings: Any,
        policy: Optional[Dict[str, Any]] = None,
        manifest_store: Optional[ManifestStore] = None,
        usage: Optional[UsageAccountant] = None,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        should_abort: Optional[Callable[[], bool]] = None,
        session_id: str = "",
        uploads_dir: str = "",
        optimization_mode: str = "",
        source_policy: Optional[Dict[str, List[str]]] = None,
        verbose: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = load_research_policy()
        self.policy.update(policy or {})
        self.llm = llm
        self.system_llm = system_llm
        self.search = search
        self.reader = reader
        self.embeddings = embeddings
        self.manifest_store = manifest_store or ManifestStore()
        self.usage = usage or UsageAccountant(
            model_name_chat=getattr(llm, "model", ""),
            model_name_system=getattr(system_llm, "model", ""),
        )
        self.event_callback = event_callback
        self.should_abort = should_abort
        self.session_id = session_id or uuid.uuid4().hex
        # Events carry the session id as their run id.
        self.run_id = self.session_id
        self.uploads_dir = uploads_dir or os.getenv("UPLOADS_DIR", "uploads")
        self.optimization_mode = optimization_mode or self.policy["optimization_mode"]
        if self.optimization_mode not in OPTIMIZATION_MODES:
            raise ValueError(f"Unknown optimization mode: {self.optimization_mode}")
        self.source_policy = source_policy or load_source_policy()
        self.verbose = verbose
        self.ranker = DocumentRanker(
            embeddings,
            rerank=bool(self.policy["rerank"]),
            rerank_threshold=float(self.policy["rerank_threshold"]),
        )
        self.budget = BudgetTracker(
            wall_clock_limit_sec=self.policy["wall_clock_limit_sec"],
            hard_limit=self.policy["llm_turns_hard_limit"],
            soft_limit_ratio=self.policy["soft_limit_ratio"],
            max_rounds=self.policy["max_rounds"],
            clock=clock,
            on_trigger=self._on_budget_trigger,
        )
        self.max_concurrency = max(1, int(self.policy["max_concurrency"]))
        self.query = ""
        self.history: List[Any] = []
        self.file_ids: List[str] = []
        self.plan: Optional[ResearchPlan] = None
        self.results: List[SubqueryResult] = []
        self.answer_parts: List[str] = []
        self.final_sources: List[Dict[str, str]] = []
        self._phase_index = 0

    def run(
        self,
        query: str,
        history: Optional[List[Any]] = None,
        file_ids: Optional[List[str]] = None,
    ) -> ResearchOutcome:
        self.query = (query or "").strip()
        self.history = list(history or [])
        self.file_ids = [str(f) for f in (file_ids or []) if str(f).strip()]
        self.budget.start()
        self._log("Starting deep research run.")

        try:
            self.manifest_store.write(
                self.session_id,
                self.manifest_store.new_manifest(self.session_id, self.budget.to_dict()),
            )
            self._run_phase("Plan", self._plan_phase)
            while True:
                if not self._should_jump_to_synthesis():
                    self._run_phase("Search", self._search_phase)
                if not self._should_jump_to_synthesis():
                    self._run_phase("ReadExtract", self._read_extract_phase)
                self.budget.complete_round()
                if not self._needs_more_info():
                    break
            self._run_phase("Synthesize", self._synthesize_phase)
            self._run_phase("Review", self._review_phase)
            self._run_phase("Finalize", self._finalize_phase)
            self._emit("end", {"status": "completed", "session_id": self.session_id})
            self._log("Deep research run completed.")
            return self._outcome("completed")
        except RunAborted as exc:
            self._log(f"Run cancelled ({exc.context or 'unknown'}).")
            self._emit("response", {"text": CANCEL_NOTICE})
            self._safe_update_manifest({"status": "cancelled"})
            self._emit("end", {"status": "cancelled", "session_id": self.session_id})
            return self._outcome("cancelled")
        except Exception as exc:
            self._log(f"Run failed: {exc}")
            self._safe_update_manifest({"status": "error", "error": str(exc)})
            self._emit("error", {"message": str(exc)})
            raise

    # -- phases --------------------------------------------------------------

    def _run_phase(self, phase: str, fn: Callable[[], None]) -> None:
        self._abort_if_requested(f"{phase}_start")
        self._phase_index = PHASES.index(phase)
        self._emit_progress(f"Starting {phase} phase", self._phase_percent())
        self._update_manifest(phase=phase, phase_event="start")

        fn()

        phase_tokens = self.usage.phase_usage(phase)["total_tokens"]
        total_tokens = self.usage.total()["total_tokens"]
        self._emit_progress(
            f"{phase} complete",
            self._phase_percent(after=True),
            sub_message=f"Tokens this phase: {phase_tokens} | Total: {total_tokens}",
        )
        self._emit("stats", self.usage.snapshot())
        self._update_manifest(
            {"tokens_by_phase": {phase: phase_tokens}},
            phase=phase,
            phase_event="complete",
        )

    def _plan_phase(self) -> None:
        sub_questions: List[str] = []
        criteria: List[str] = []
        notes: List[str] = []
        if not self._should_jump_to_synthesis():
            self._emit_progress("Generating research sub-questions", self._phase_percent())
            history_text = _format_history(self.history)
            user = (
                f"Today's date: {datetime.now(timezone.utc).date().isoformat()}\n"
                f"Conversation so far:\n{history_text or '(none)'}\n\n"
                f"Research question:\n{self.query}"
            )
            result = self._call_model(
                lambda: self.system_llm.json(SYSTEM_PLAN, user, self.should_abort)
            )
            if result is not None:
                data, usage = result
                self.usage.record("Plan", usage, role="system")
                sub_questions = as_clean_str_list(data.get("sub_questions"))
                criteria = as_clean_str_list(data.get("criteria"))
                notes = as_clean_str_list(data.get("notes"))

        sub_questions = sub_questions[: int(self.policy["max_sub_questions"])]
        if not sub_questions:
            self._log("Planner returned no sub-questions; researching the query directly.")
            sub_questions = [self.query or "Research task"]
        self.plan = ResearchPlan(tuple(sub_questions), tuple(criteria), tuple(notes))
        self.results = [SubqueryResult(sub_question=sq) for sq in sub_questions]
        self._emit("plan_created", {"sub_questions": sub_questions, "criteria": criteria})
        self._emit_progress(
            "Generated research sub-questions",
            self._phase_percent(),
            sub_message=f"{len(sub_questions)} sub-questions",
        )
        self._update_manifest({"counts": {"sub_questions": len(sub_questions)}})

    def _search_phase(self) -> None:
        targets = [r for r in self.results if r.sufficiency != SUFFICIENT]
        self._fan_out(targets, self._search_sub_question)
        total = sum(len(r.candidates) for r in self.results)
        self._emit_progress(
            "Collected candidate sources",
            self._phase_percent(),
            sub_message=f"{total} candidates across {len(self.results)} sub-questions",
        )
        self._update_manifest({"counts": {"candidates": total}})

    def _search_sub_question(self, index: int, count: int, result: SubqueryResult) -> None:
        self._abort_if_requested("search")
        if self._should_jump_to_synthesis():
            return
        verdict = result.sufficiency
        result.last_verdict = verdict
        result.sufficiency = PENDING
        if verdict == NEEDS_DEPTH and any(not c.read for c in result.candidates):
            self._log(f"Deepening with unread candidates: {result.sub_question}")
            return

        multipliers = self.policy["broaden_k_multipliers"]
        k = int(self.policy["results_per_query"]) * multipliers[
            min(result.search_passes, len(multipliers) - 1)
        ]
        self._emit_progress(
            f"Searching ({index + 1}/{count})",
            self._phase_percent(),
            sub_message=result.sub_question,
        )
        hits = self._run_search(result.sub_question, k)
        if hits is None:
            # Budget refused the search call.
            return
        result.search_passes += 1

        seen = {c.url for c in result.candidates}
        added: List[Candidate] = []
        for hit in hits:
            url = _hit_field(hit, "url").strip()
            title = _hit_field(hit, "title").strip()
            content = _hit_field(hit, "content").strip()
            if not title or not content or not is_valid_absolute_http_url(url):
                continue
            if url.lower().endswith(".pdf") or url in seen:
                continue
            seen.add(url)
            candidate = Candidate(url=url, title=title, content=content)
            result.candidates.append(candidate)
            added.append(candidate)
        self._log(f"Search pass {result.search_passes} k={k}: +{len(added)} for {result.sub_question}")
        if added:
            self._emit(
                "sources_added",
                {
                    "sub_question": result.sub_question,
                    "sources": [{"title": c.title, "url": c.url} for c in added],
                },
            )

    def _run_search(self, query: str, k: int) -> Optional[List[Any]]:
        def call() -> List[Any]:
            return self.search.search(query, k=k, should_abort=self.should_abort) or []

        if getattr(self.search, "counts_as_turn", False):
            return self._call_model(call)
        return call()

    def _read_extract_phase(self) -> None:
        targets = [r for r in self.results if r.sufficiency == PENDING]
        self._fan_out(targets, self._read_sub_question)
        total = sum(len(r.extracted) for r in self.results)
        self._emit_progress(
            "Extracted facts and quotes",
            self._phase_percent(),
            sub_message=f"{total} documents with evidence",
        )
        self._update_manifest({"counts": {"extracted_docs": total}})

    def _read_sub_question(self, index: int, count: int, result: SubqueryResult) -> None:
        depth = result.last_verdict == NEEDS_DEPTH
        top_chunks = TOP_CHUNKS_DEPTH if depth else TOP_CHUNKS
        unread = [c for c in result.candidates if not c.read]
        unread = unread[: int(self.policy["max_extract_per_pass"])]
        for candidate in unread:
            self._abort_if_requested("read_extract")
            if self._should_jump_to_synthesis():
                return
            candidate.read = True
            title, text = self._read_candidate(result.sub_question, candidate)
            passages = self._rank_passages(result.sub_question, text, top_chunks)
            if not passages:
                continue
            self._abort_if_requested("extract")
            doc = self._extract(result.sub_question, candidate, title, passages)
            if doc is None:
                # Budget refused the call.
                return
            if doc.facts or doc.quotes:
                result.extracted.append(doc)

    def _read_candidate(self, sub_question: str, candidate: Candidate) -> tuple[str, str]:
        if self.reader is None:
            return candidate.title, candidate.content
        try:
            page = self.reader.fetch_and_maybe_summarize(
                candidate.url, sub_question, self.should_abort
            )
        except RunAborted:
            raise
        except Exception as exc:
            self._log(f"Page read failed, using snippet: {candidate.url} ({exc})")
            return candidate.title, candidate.content
        text = (getattr(page, "content", "") or "").strip()
        if not text:
            return candidate.title, candidate.content
        return getattr(page, "title", "") or candidate.title, text

    def _rank_passages(self, sub_question: str, text: str, top_n: int) -> List[str]:
        chunks = split_text(text)
        if len(chunks) <= WHOLE_PAGE_MAX_CHUNKS:
            return [text] if text.strip() else []
        vectors = self.embeddings.embed_documents(chunks, should_abort=self.should_abort)
        query_vec = self.embeddings.embed_query(sub_question, should_abort=self.should_abort)
        scored = sorted(
            zip(chunks, vectors),
            key=lambda cv: cosine_similarity(query_vec, cv[1]),
            reverse=True,
        )
        return [c for c, _ in scored[:top_n]]

    def _extract(
        self,
        sub_question: str,
        candidate: Candidate,
        title: str,
        passages: List[str],
    ) -> Optional[ExtractedDoc]:
        body = "\n\n".join(passages)[:MAX_EXTRACT_INPUT_CHARS]
        user = (
            f"Sub-question: {sub_question}\n"
            f"Source title: {title}\n"
            f"Source URL: {candidate.url}\n\n"
            f"Content:\n{body}"
        )
        try:
            result = self._call_model(
                lambda: self.system_llm.json(SYSTEM_EXTRACT, user, self.should_abort)
            )
        except ValueError as exc:
            self._log(f"Unparseable extraction for {candidate.url}: {exc}")
            return ExtractedDoc(url=candidate.url, title=title)
        if result is None:
            return None
        data, usage = result
        self.usage.record("ReadExtract", usage, role="system", metadata={"url": candidate.url})
        return ExtractedDoc(
            url=candidate.url,
            title=title or candidate.title,
            facts=as_clean_str_list(data.get("facts"))[:MAX_FACTS_PER_DOC],
            quotes=as_clean_str_list(data.get("quotes"))[:MAX_QUOTES_PER_DOC],
        )

    def _needs_more_info(self) -> bool:
        self._abort_if_requested("evaluate")
        early = self._should_jump_to_synthesis()
        for result in self.results:
            if result.sufficiency != PENDING:
                continue
            if early and not result.candidates:
                result.sufficiency = SUFFICIENT
                result.reason = "No candidates found before the research budget ran out."
                continue
            items = build_evidence_items(result.extracted, self._source_weight)
            assessment = assess_sufficiency(result.sub_question, items)
            result.sufficiency = assessment.status
            result.reason = assessment.reason
            self._log(f"{result.sub_question}: {assessment.status} ({assessment.reason})")

        done = sum(1 for r in self.results if r.sufficiency == SUFFICIENT)
        self._emit_progress(
            "Evaluated evidence sufficiency",
            self._phase_percent(after=True),
            sub_message=f"{done}/{len(self.results)} sub-questions sufficient",
        )
        self._update_manifest({"counts": {"sufficient": done}})
        if early:
            return False
        return done < len(self.results)

    def _synthesize_phase(self) -> None:
        self._abort_if_requested("synthesize")
        file_chunks = load_files_data(self.file_ids, self.uploads_dir) if self.file_ids else []
        self._emit_progress("Ranking documents", self._phase_percent())
        docs = self.ranker.rerank_docs(
            self.query,
            self._evidence_chunks(),
            file_chunks,
            self.optimization_mode,
            should_abort=self.should_abort,
        )
        self._log(f"Synthesizing from {len(docs)} documents ({self.optimization_mode}).")

        if self.budget.early_synthesis_triggered:
            self._stream_text(EARLY_RESPONSE_NOTICE)

        usage = None
        self._emit_progress("Writing answer", self._phase_percent())
        for piece in self.llm.stream(
            SYSTEM_SYNTHESIZE, self._format_synthesis_prompt(docs), self.should_abort
        ):
            if piece.text:
                self._stream_text(piece.text)
            if piece.usage is not None:
                usage = piece.usage
        self.budget.count_forced(SYNTHESIS_WEIGHT)
        self.usage.record("Synthesize", usage, role="chat")

        self.final_sources = [
            {"title": d.title, "url": d.url, "snippet": d.content[:200]} for d in docs
        ]
        self._emit("sources", {"sources": self.final_sources})

    def _review_phase(self) -> None:
        self._abort_if_requested("review")
        answer = "".join(self.answer_parts)
        self._emit_progress(
            "Reviewed answer",
            self._phase_percent(),
            sub_message=f"{len(answer)} characters, {len(self.final_sources)} sources",
        )

    def _finalize_phase(self) -> None:
        self._update_manifest({"status": "completed"})

    # -- helpers -------------------------------------------------------------

    def _fan_out(
        self,
        items: List[SubqueryResult],
        worker: Callable[[int, int, SubqueryResult], None],
    ) -> None:
        if not items:
            return
        workers = min(self.max_concurrency, len(items))
        if workers == 1:
            for i, item in enumerate(items):
                worker(i, len(items), item)
            return
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(worker, i, len(items), item) for i, item in enumerate(items)]
            for future in futures:
                future.result()

    def _call_model(self, fn: Callable[[], Any], weight: int = 1) -> Any:
        if not self.budget.try_reserve(weight):
            return None
        # A call interrupted by cancellation is released; anything else that
        # reached the model (including unparseable output) counts as a turn.
        completed = True
        try:
            return fn()
        except RunAborted:
            completed = False
            raise
        finally:
            self.budget.commit(weight, completed=completed)

    def _evidence_chunks(self) -> List[Chunk]:
        chunks: List[Chunk] = []
        for result in self.results:
            extracted_urls = {d.url for d in result.extracted}
            for doc in result.extracted:
                lines = [f"- {f}" for f in doc.facts] + [f'"{q}"' for q in doc.quotes]
                chunks.append(
                    Chunk(
                        content="\n".join(lines),
                        title=doc.title,
                        url=doc.url,
                        metadata={"sub_question": result.sub_question},
                    )
                )
            # Unextracted candidates still contribute their search snippet.
            for c in result.candidates:
                if c.url not in extracted_urls and not c.read and c.content:
                    chunks.append(
                        Chunk(
                            content=c.content,
                            title=c.title,
                            url=c.url,
                            metadata={"sub_question": result.sub_question},
                        )
                    )
        return chunks

    def _format_synthesis_prompt(self, docs: List[Chunk]) -> str:
        blocks = [
            f"<{i}>\n<title>{d.title}</title>\n<url>{d.url}</url>\n<content>{d.content}</content>\n</{i}>"
            for i, d in enumerate(docs, start=1)
        ]
        coverage = "\n".join(f"- {r.sub_question} [{r.sufficiency}]" for r in self.results)
        history_text = _format_history(self.history)
        parts = [f"Question:\n{self.query}"]
        if history_text:
            parts.append(f"Conversation so far:\n{history_text}")
        if self.plan and self.plan.criteria:
            parts.append("Answer should cover:\n" + "\n".join(f"- {c}" for c in self.plan.criteria))
        parts.append(f"Sub-questions researched:\n{coverage or '- (none)'}")
        parts.append("Context documents:\n" + ("\n".join(blocks) if blocks else "(no documents)"))
        return "\n\n".join(parts)

    def _stream_text(self, text: str) -> None:
        self.answer_parts.append(text)
        self._emit("response", {"text": text})

    def _source_weight(self, url: str) -> float:
        return source_weight_for(url, self.source_policy)

    def _should_jump_to_synthesis(self) -> bool:
        return self.budget.check()

    def _on_budget_trigger(self, reason: str) -> None:
        self._log(f"Budget limit reached ({reason}); moving to synthesis.")
        self._emit_progress(
            "Budget limit reached, synthesizing early",
            self._phase_percent(),
            sub_message=reason,
        )

    def _phase_percent(self, after: bool = False) -> int:
        idx = self._phase_index + (1 if after else 0)
        return round(100 * idx / len(PHASES))

    def _budget_fields(self) -> Dict[str, Any]:
        return {
            "llm_turns_used": self.budget.turns_used,
            "early_synthesis_triggered": self.budget.early_synthesis_triggered,
            "early_synthesis_reason": self.budget.early_synthesis_reason,
        }

    def _update_manifest(
        self,
        update: Optional[Dict[str, Any]] = None,
        phase: str = "",
        phase_event: str = "",
    ) -> None:
        changes = self._budget_fields()
        changes.update(update or {})
        self.manifest_store.update(self.session_id, changes, phase=phase, phase_event=phase_event)

    def _safe_update_manifest(self, update: Dict[str, Any]) -> None:
        try:
            changes = dict(update)
            changes["tokens_by_phase"] = self.usage.tokens_by_phase()
            self._update_manifest(changes)
        except Exception as exc:
            print(f"[state] manifest update failed for session {self.session_id}: {exc}")

    def _outcome(self, status: str) -> ResearchOutcome:
        return ResearchOutcome(
            session_id=self.session_id,
            status=status,
            answer="".join(self.answer_parts),
            early_synthesis_triggered=self.budget.early_synthesis_triggered,
            early_synthesis_reason=self.budget.early_synthesis_reason,
            llm_turns_used=self.budget.turns_used,
            sub_questions=[r.to_dict() for r in self.results],
            sources=list(self.final_sources),
            usage=self.usage.to_dict(),
        )

    def _now_iso(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[progress] {message}")

    def _abort_if_requested(self, context: str) -> None:
        if self.should_abort and self.should_abort():
            self._log(f"Abort requested ({context}).")
            raise RunAborted(context)

    def _emit_progress(self, message: str, percent: int, sub_message: str = "") -> None:
        payload: Dict[str, Any] = {
            "phase": PHASES[self._phase_index],
            "message": message,
            "percent_complete": percent,
        }
        if sub_message:
            payload["sub_message"] = sub_message
        self._emit("progress", payload)

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.event_callback:
            return
        event = {
            "run_id": self.run_id,
            "timestamp": self._now_iso(),
            "event_type": event_type,
            "payload": payload,
        }
        try:
            self.event_callback(event)
        except Exception:
            # Observability must not break core execution flow.
            pass


def iter_research_events(
    agent: DeepResearchAgent,
    query: str,
    history: Optional[List[Any]] = None,
    file_ids: Optional[List[str]] = None,
) -> Iterator[Dict[str, Any]]:
    """
    Run `agent` on a worker thread and yield its events as they are emitted.

    The stream ends after the terminal `end` or `error` event. A failure that
    happened before any terminal event was emitted is re-raised to the caller.
    Closing the iterator early cancels the run before waiting for it.
    """
    events: Queue = Queue()
    done = object()
    failure: List[BaseException] = []
    previous = agent.event_callback
    previous_abort = agent.should_abort
    abandoned = threading.Event()

    def should_abort() -> bool:
        return abandoned.is_set() or bool(previous_abort and previous_abort())

    def on_event(event: Dict[str, Any]) -> None:
        events.put(event)
        if previous:
            previous(event)

    def worker() -> None:
        try:
            agent.run(query, history=history, file_ids=file_ids)
        except Exception as exc:
            failure.append(exc)
        finally:
            events.put(done)

    agent.event_callback = on_event
    agent.should_abort = should_abort
    thread = threading.Thread(target=worker, daemon=True)
    thread.start()
    terminal_seen = False
    try:
        while True:
            item = events.get()
            if item is done:
                break
            if item.get("event_type") in {"end", "error"}:
                terminal_seen = True
            yield item
    finally:
        if thread.is_alive():
            abandoned.set()
        thread.join()
        agent.event_callback = previous
        agent.should_abort = previous_abort
    if failure and not terminal_seen:
        raise failure[0]


def build_default_agent(
    model: str = "",
    system_model: str = "",
    embedding_model: str = "",
    policy: Optional[Dict[str, Any]] = None,
    session_id: str = "",
    event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    should_abort: Optional[Callable[[], bool]] = None,
    optimization_mode: str = "",
    cache: Optional[EmbeddingCache] = None,
    manifest_store: Optional[ManifestStore] = None,
    uploads_dir: str = "",
    verbose: bool = True,
) -> DeepResearchAgent:
    model = model or os.getenv("OPENAI_MODEL", "gpt-4.1")
    system_model = system_model or os.getenv("OPENAI_SYSTEM_MODEL", "gpt-4.1-mini")
    embedding_model = embedding_model or os.getenv(
        "OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"
    )
    merged = load_research_policy()
    merged.update(policy or {})
    usage = UsageAccountant(model_name_chat=model, model_name_system=system_model)
    cache = cache or EmbeddingCache(
        ttl_sec=merged["embedding_cache_ttl_sec"],
        max_entries=merged["embedding_cache_max_entries"],
        verbose=verbose,
    )
    embedder = OpenAIEmbedder(embedding_model)
    return DeepResearchAgent(
        llm=LLM(model),
        system_llm=LLM(system_model),
        search=WebSearch(
            model=system_model,
            on_usage=lambda u: usage.record("Search", u, role="system"),
        ),
        reader=PageReader(),
        embeddings=CachedEmbeddings(embedder, embedder.provider, embedding_model, cache),
        policy=merged,
        manifest_store=manifest_store,
        usage=usage,
        event_callback=event_callback,
        should_abort=should_abort,
        session_id=session_id,
        uploads_dir=uploads_dir,
        optimization_mode=optimization_mode,
        verbose=verbose,
    )


def print_token_summary(usage: Dict[str, Any]) -> None:
    total = usage.get("usage", {})
    by_phase = usage.get("by_phase", {})
    print("[usage] token breakdown")
    print(
        "[usage] total "
        f"in={total.get('input_tokens', 0)} "
        f"out={total.get('output_tokens', 0)} "
        f"all={total.get('total_tokens', 0)} "
        f"calls={usage.get('calls', 0)}"
    )
    top = sorted(
        [(phase, stats.get("total_tokens", 0)) for phase, stats in by_phase.items()],
        key=lambda x: x[1],
        reverse=True,
    )
    for phase, tok in top:
        print(f"[usage] phase={phase} tokens={tok}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Deep Research Agent")
    parser.add_argument("query", help="Research question")
    parser.add_argument(
        "--model", default=os.getenv("OPENAI_MODEL", "gpt-4.1"), help="Answer model"
    )
    parser.add_argument(
        "--system-model",
        default=os.getenv("OPENAI_SYSTEM_MODEL", "gpt-4.1-mini"),
        help="Model for planning, search and extraction",
    )
    parser.add_argument(
        "--embedding-model",
        default=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
        help="Embedding model used for chunk ranking and reranking",
    )
    parser.add_argument(
        "--mode",
        choices=OPTIMIZATION_MODES,
        default="",
        help="Reranking mode (default from research policy)",
    )
    parser.add_argument(
        "--file-id",
        action="append",
        default=[],
        help="Attached upload id to include in reranking (repeatable)",
    )
    parser.add_argument("--max-rounds", type=int, default=0, help="Max research rounds")
    parser.add_argument(
        "--max-turns", type=int, default=0, help="Hard limit on model invocations"
    )
    parser.add_argument(
        "--wall-clock", type=int, default=0, help="Wall-clock limit in seconds"
    )
    parser.add_argument("--session-id", default="", help="Session id for the manifest")
    parser.add_argument(
        "--no-token-breakdown",
        action="store_true",
        help="Disable the token usage summary",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Disable progress updates",
    )
    args = parser.parse_args()

    policy: Dict[str, Any] = {}
    if args.max_rounds > 0:
        policy["max_rounds"] = args.max_rounds
    if args.max_turns > 0:
        policy["llm_turns_hard_limit"] = args.max_turns
    if args.wall_clock > 0:
        policy["wall_clock_limit_sec"] = args.wall_clock

    agent = build_default_agent(
        model=args.model,
        system_model=args.system_model,
        embedding_model=args.embedding_model,
        policy=policy,
        session_id=args.session_id,
        optimization_mode=args.mode,
        verbose=not args.quiet,
    )
    purged = agent.embeddings.cache.purge()
    if not args.quiet:
        print(f"[embedding_cache] startup purge expired={purged['expired']} lru={purged['lru']}")

    # Closing the stream (e.g. on Ctrl-C) cancels the run before exiting.
    with closing(iter_research_events(agent, args.query, file_ids=args.file_id)) as stream:
        for event in stream:
            event_type = event["event_type"]
            payload = event["payload"]
            if event_type == "response":
                sys.stdout.write(payload.get("text", ""))
                sys.stdout.flush()
            elif event_type == "sources":
                print("\n\nSources:")
                for i, src in enumerate(payload.get("sources", []), start=1):
                    print(f"[{i}] {src.get('title', '')} - {src.get('url', '')}")
            elif event_type == "error":
                print(f"\n[error] {payload.get('message', '')}", file=sys.stderr)

    print(f"\n[state] manifest: {agent.manifest_store.manifest_path(agent.session_id)}")
    if not args.no_token_breakdown:
        print_token_summary(agent.usage.to_dict())


if __name__ == "__main__":
    main()
