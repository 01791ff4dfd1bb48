import html
import json
import os
import re
import textwrap
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional
from urllib.parse import urlparse

import httpx
from openai import OpenAI, RateLimitError

ABORT_MESSAGE = "Run aborted by user"

AbortCheck = Optional[Callable[[], bool]]


class RunAborted(RuntimeError):
    def __init__(self, context: str = "") -> None:
        super().__init__(ABORT_MESSAGE)
        self.context = context


def check_abort(should_abort: AbortCheck, context: str = "") -> None:
    if should_abort and should_abort():
        raise RunAborted(context)


def sleep_with_abort(seconds: float, should_abort: AbortCheck, step: float = 0.2) -> None:
    deadline = time.monotonic() + max(0.0, seconds)
    while True:
        check_abort(should_abort, "sleep")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return
        time.sleep(min(step, remaining))


def is_valid_absolute_http_url(url: str) -> bool:
    candidate = (url or "").strip()
    if not candidate:
        return False
    parsed = urlparse(candidate)
    if parsed.scheme not in {"http", "https"}:
        return False
    if not parsed.netloc:
        return False
    return True


def as_clean_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    out: List[str] = []
    seen = set()
    for item in value:
        if not isinstance(item, str):
            continue
        s = item.strip()
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
    return out


def parse_json_object(text: str) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("Model response is not a JSON object.")
        data = json.loads(text[start : end + 1])
    if not isinstance(data, dict):
        raise ValueError("Model response is not a JSON object.")
    return data


@dataclass
class Generation:
    text: str
    usage: Any = None


@dataclass
class SearchResult:
    title: str
    url: str
    content: str


@dataclass
class PageContent:
    url: str
    title: str
    content: str


class LLM:
    def __init__(self, model: str, client: Any = None, max_retries: int = 3) -> None:
        self.client = client or OpenAI()
        self.model = model
        self.max_retries = max_retries

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        should_abort: AbortCheck = None,
        json_mode: bool = False,
    ) -> Generation:
        # Streamed under the hood so cancellation can interrupt an in-flight call.
        parts: List[str] = []
        usage = None
        for piece in self.stream(system_prompt, user_prompt, should_abort, json_mode=json_mode):
            parts.append(piece.text)
            if piece.usage is not None:
                usage = piece.usage
        return Generation(text="".join(parts), usage=usage)

    def json(
        self,
        system_prompt: str,
        user_prompt: str,
        should_abort: AbortCheck = None,
    ) -> tuple[Dict[str, Any], Any]:
        gen = self.generate(system_prompt, user_prompt, should_abort, json_mode=True)
        return parse_json_object(gen.text or "{}"), gen.usage

    def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        should_abort: AbortCheck = None,
        json_mode: bool = False,
    ) -> Iterator[Generation]:
        kwargs: Dict[str, Any] = {"stream": True, "stream_options": {"include_usage": True}}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        rsp = self._chat_completion(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            should_abort=should_abort,
            **kwargs,
        )
        try:
            for chunk in rsp:
                check_abort(should_abort, "llm_stream")
                usage = getattr(chunk, "usage", None)
                text = ""
                choices = getattr(chunk, "choices", None) or []
                if choices:
                    text = getattr(choices[0].delta, "content", None) or ""
                if text or usage is not None:
                    yield Generation(text=text, usage=usage)
        finally:
            close = getattr(rsp, "close", None)
            if callable(close):
                close()

    def _chat_completion(
        self,
        messages: List[Dict[str, str]],
        should_abort: AbortCheck,
        **kwargs: Any,
    ) -> Any:
        last_exc: Exception | None = None
        for attempt in range(self.max_retries):
            check_abort(should_abort, "llm_call")
            try:
                return self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    **kwargs,
                )
            except RateLimitError as exc:
                last_exc = exc
                # Exponential backoff for transient rate-limit pressure.
                if attempt < self.max_retries - 1:
                    sleep_with_abort(1.2 * (2**attempt), should_abort)
                    continue
                raise
        if last_exc:
            raise last_exc
        raise RuntimeError("Unexpected failure in chat completion.")


class WebSearch:
    # Each search is a model call with a web-search tool.
    counts_as_turn = True

    def __init__(
        self,
        model: str,
        client: Any = None,
        on_usage: Optional[Callable[[Any], Any]] = None,
        timeout: float = 60.0,
    ) -> None:
        self.client = client or OpenAI(timeout=timeout)
        self.model = model
        self.on_usage = on_usage
        # Current Responses API web search tool first, with a compatibility fallback.
        tool_types = os.getenv(
            "OPENAI_WEB_SEARCH_TOOL_TYPES", "web_search_preview,web_search"
        )
        self.tool_types = [t.strip() for t in tool_types.split(",") if t.strip()]
        self.last_error = ""

    def search(
        self, query: str, k: int = 5, should_abort: AbortCheck = None
    ) -> List[SearchResult]:
        prompt = textwrap.dedent(
            f"""
            Search the web for the query below and return STRICT JSON:
            {{
              "results": [
                {{"title": "...", "url": "https://...", "content": "..."}}
              ]
            }}
            Rules:
            - Return at most {k} results.
            - Include only results with valid absolute URLs.
            - Keep each content snippet to 1-3 sentences.

            Query: {query}
            """
        ).strip()
        self.last_error = ""
        errors: List[str] = []
        for tool_type in self.tool_types:
            check_abort(should_abort, "web_search")
            try:
                rsp = self.client.responses.create(
                    model=self.model,
                    tools=[{"type": tool_type}],
                    tool_choice={"type": tool_type},
                    input=prompt,
                )
                if self.on_usage:
                    self.on_usage(getattr(rsp, "usage", None))
                data = parse_json_object(rsp.output_text)
                items = data.get("results", [])
                items = items[:k] if isinstance(items, list) else []
                return [
                    SearchResult(
                        title=str(i.get("title", "")),
                        url=str(i.get("url", "")).strip(),
                        content=str(i.get("content", "") or i.get("snippet", "")),
                    )
                    for i in items
                    if isinstance(i, dict)
                    and is_valid_absolute_http_url(str(i.get("url", "")))
                ]
            except RunAborted:
                raise
            except Exception as exc:
                errors.append(f"{tool_type}: {exc}")
        self.last_error = " | ".join(errors) if errors else "unknown search error"
        # Fail-soft per query; the orchestrator treats it as zero results.
        return []


_SCRIPT_RE = re.compile(r"<(script|style|noscript)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def html_to_text(raw: str) -> tuple[str, str]:
    title_match = _TITLE_RE.search(raw or "")
    title = html.unescape(_WS_RE.sub(" ", title_match.group(1))).strip() if title_match else ""
    body = _SCRIPT_RE.sub(" ", raw or "")
    body = _TAG_RE.sub(" ", body)
    return title, _WS_RE.sub(" ", html.unescape(body)).strip()


class PageReader:
    def __init__(
        self,
        max_chars: int = 100_000,
        timeout: float = 20.0,
        client: Optional[httpx.Client] = None,
        summarizer: Optional[Callable[[str, str], str]] = None,
    ) -> None:
        self.max_chars = max_chars
        self.client = client or httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": "deep-research-core/0.1"},
        )
        self.summarizer = summarizer

    def fetch_and_maybe_summarize(
        self, url: str, query: str = "", should_abort: AbortCheck = None
    ) -> PageContent:
        check_abort(should_abort, "page_fetch")
        # Raw markup is much longer than its text; read a bounded multiple.
        raw_limit = self.max_chars * 4
        parts: List[str] = []
        size = 0
        with self.client.stream("GET", url) as rsp:
            rsp.raise_for_status()
            content_type = rsp.headers.get("content-type", "")
            for piece in rsp.iter_text():
                check_abort(should_abort, "page_read")
                parts.append(piece)
                size += len(piece)
                if size >= raw_limit:
                    break
        raw = "".join(parts)
        if "html" in content_type or raw.lstrip().startswith("<"):
            title, text = html_to_text(raw)
        else:
            title, text = "", _WS_RE.sub(" ", raw).strip()
        if len(text) > self.max_chars:
            if self.summarizer:
                text = self.summarizer(text, query)
            else:
                text = text[: self.max_chars]
        return PageContent(url=url, title=title, content=text)


class OpenAIEmbedder:
    provider = "openai"

    def __init__(
        self, model: str, client: Any = None, batch_size: int = 256, timeout: float = 60.0
    ) -> None:
        self.client = client or OpenAI(timeout=timeout)
        self.model = model
        self.batch_size = max(1, batch_size)

    def embed(self, texts: List[str], should_abort: AbortCheck = None) -> List[List[float]]:
        out: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            check_abort(should_abort, "embed")
            batch = texts[start : start + self.batch_size]
            rsp = self.client.embeddings.create(model=self.model, input=batch)
            out.extend(list(d.embedding) for d in sorted(rsp.data, key=lambda d: d.index))
        return out
