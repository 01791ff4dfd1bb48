import hashlib
import json
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from research_clients import AbortCheck, check_abort

DEFAULT_CACHE_DIR = Path(tempfile.gettempdir()) / "deep-research-embedding-cache"
DEFAULT_TTL_SEC = 5 * 24 * 60 * 60
DEFAULT_MAX_ENTRIES = 2000


def hash_content(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def make_cache_key(provider: str, model: str, content_hash: str) -> str:
    return f"{provider}:{model}:{content_hash}"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class CacheMeta:
    path: Path
    provider: str
    model: str
    content_hash: str
    created_at: float
    last_access: float


class EmbeddingCache:
    def __init__(
        self,
        cache_dir: str | Path = "",
        ttl_sec: float = DEFAULT_TTL_SEC,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
        verbose: bool = False,
    ) -> None:
        self.cache_dir = Path(cache_dir or os.getenv("EMBEDDING_CACHE_DIR", "") or DEFAULT_CACHE_DIR)
        self.ttl_sec = max(0.0, float(ttl_sec))
        self.max_entries = max(0, int(max_entries))
        self.clock = clock
        self.verbose = verbose
        self._index: Dict[str, CacheMeta] = {}
        self._lock = threading.Lock()
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    # -- keys and files ----------------------------------------------------

    def _file_path(self, cache_key: str) -> Path:
        safe_key = hashlib.sha256(cache_key.encode("utf-8")).hexdigest()
        return self.cache_dir / f"{safe_key}.json"

    def _read_record(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        if not data.get("provider") or not data.get("model") or not data.get("content_hash"):
            return None
        embedding = data.get("embedding")
        if not isinstance(embedding, list) or not all(_is_number(v) for v in embedding):
            return None
        for key in ("created_at", "last_access"):
            if key in data and not _is_number(data[key]):
                return None
        return data

    def _write_record(self, path: Path, record: Dict[str, Any]) -> None:
        # Unique temp name per writer so concurrent puts of one key never share a temp file.
        fd, tmp_name = tempfile.mkstemp(dir=str(self.cache_dir), prefix=path.stem, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(record, fh)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def _discard(self, path: Path, cache_key: str) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        with self._lock:
            self._index.pop(cache_key, None)

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[embedding_cache] {message}")

    # -- public API --------------------------------------------------------

    def contains(self, provider: str, model: str, content: str) -> bool:
        cache_key = make_cache_key(provider, model, hash_content(content))
        with self._lock:
            if cache_key in self._index:
                return True
        return self._file_path(cache_key).exists()

    def get(self, provider: str, model: str, content: str) -> Optional[List[float]]:
        content_hash = hash_content(content)
        cache_key = make_cache_key(provider, model, content_hash)
        path = self._file_path(cache_key)
        if not path.exists():
            return None

        rec = self._read_record(path)
        if rec is None:
            self._log(f"Dropping unreadable record for provider: {provider}, model: {model}")
            self._discard(path, cache_key)
            return None

        now = self.clock()
        last_access = float(rec.get("last_access") or rec.get("created_at") or now)
        if now - last_access > self.ttl_sec:
            self._discard(path, cache_key)
            self._log(f"Cache miss (expired) for provider: {provider}, model: {model}")
            return None

        rec["last_access"] = now
        self._write_record(path, rec)
        with self._lock:
            self._index[cache_key] = CacheMeta(
                path=path,
                provider=provider,
                model=model,
                content_hash=content_hash,
                created_at=float(rec.get("created_at") or now),
                last_access=now,
            )
        self._log(f"Cache hit for provider: {provider}, model: {model}")
        return rec["embedding"]

    def put(self, provider: str, model: str, content: str, embedding: List[float]) -> None:
        now = self.clock()
        content_hash = hash_content(content)
        cache_key = make_cache_key(provider, model, content_hash)
        path = self._file_path(cache_key)
        record = {
            "provider": provider,
            "model": model,
            "content_hash": content_hash,
            "content": content,
            "embedding": [float(v) for v in embedding],
            "created_at": now,
            "last_access": now,
        }
        self._write_record(path, record)
        with self._lock:
            self._index[cache_key] = CacheMeta(
                path=path,
                provider=provider,
                model=model,
                content_hash=content_hash,
                created_at=now,
                last_access=now,
            )
        self._log(f"Cached new embedding for provider: {provider}, model: {model}")

    def _scan(self) -> List[CacheMeta]:
        metas: List[CacheMeta] = []
        for path in self.cache_dir.glob("*.json"):
            rec = self._read_record(path)
            if rec is None:
                self._discard_unreadable(path)
                continue
            created_at = float(rec.get("created_at") or 0.0)
            metas.append(
                CacheMeta(
                    path=path,
                    provider=str(rec["provider"]),
                    model=str(rec["model"]),
                    content_hash=str(rec["content_hash"]),
                    created_at=created_at,
                    last_access=float(rec.get("last_access") or created_at),
                )
            )
        return metas

    def _discard_unreadable(self, path: Path) -> None:
        # Writes land through os.replace, so a record that still fails on a
        # second read is corrupt rather than half-written.
        if self._read_record(path) is not None:
            return
        try:
            path.unlink()
        except FileNotFoundError:
            return
        with self._lock:
            for cache_key, meta in list(self._index.items()):
                if meta.path == path:
                    self._index.pop(cache_key, None)
        self._log(f"Dropped unreadable cache file: {path.name}")

    def _delete_if_unchanged(self, meta: CacheMeta) -> bool:
        # A record touched or rewritten after the listing step is kept.
        rec = self._read_record(meta.path)
        if rec is None:
            return False
        current = float(rec.get("last_access") or rec.get("created_at") or 0.0)
        if current != meta.last_access:
            return False
        self._discard(meta.path, make_cache_key(meta.provider, meta.model, meta.content_hash))
        return True

    def purge(self) -> Dict[str, int]:
        now = self.clock()
        metas = self._scan()

        expired = [m for m in metas if now - m.last_access > self.ttl_sec]
        expired_removed = 0
        for m in expired:
            if self._delete_if_unchanged(m):
                expired_removed += 1
                self._log(f"Purged expired cache entry for provider: {m.provider}, model: {m.model}")

        remaining = [m for m in self._scan() if now - m.last_access <= self.ttl_sec]
        lru_removed = 0
        if len(remaining) > self.max_entries:
            remaining.sort(key=lambda m: m.last_access)
            for m in remaining[: len(remaining) - self.max_entries]:
                if self._delete_if_unchanged(m):
                    lru_removed += 1
            self._log(f"Purged {lru_removed} LRU entries to maintain max cache size.")
        return {"expired": expired_removed, "lru": lru_removed}

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            indexed = len(self._index)
        return {
            "cache_dir": str(self.cache_dir),
            "entries_on_disk": len(list(self.cache_dir.glob("*.json"))),
            "entries_indexed": indexed,
            "ttl_sec": self.ttl_sec,
            "max_entries": self.max_entries,
        }


class CachedEmbeddings:
    def __init__(self, embedder: Any, provider: str, model: str, cache: EmbeddingCache) -> None:
        self.embedder = embedder
        self.provider = provider
        self.model = model
        self.cache = cache

    @property
    def identifier(self) -> str:
        return f"{self.provider}:{self.model}"

    def embed_query(self, content: str, should_abort: AbortCheck = None) -> List[float]:
        cached = self.cache.get(self.provider, self.model, content)
        if cached is not None:
            return cached
        check_abort(should_abort, "embed_query")
        [embedding] = self.embedder.embed([content], should_abort=should_abort)
        self._write_back(content, embedding)
        return list(embedding)

    def embed_documents(
        self, contents: List[str], should_abort: AbortCheck = None
    ) -> List[List[float]]:
        results: List[Optional[List[float]]] = [None] * len(contents)
        miss_indices: List[int] = []
        for i, content in enumerate(contents):
            cached = self.cache.get(self.provider, self.model, content)
            if cached is not None:
                results[i] = cached
            else:
                miss_indices.append(i)

        if miss_indices:
            check_abort(should_abort, "embed_documents")
            fresh = self.embedder.embed(
                [contents[i] for i in miss_indices], should_abort=should_abort
            )
            if len(fresh) != len(miss_indices):
                raise ValueError(
                    f"Embedder returned {len(fresh)} vectors for {len(miss_indices)} inputs"
                )
            for i, embedding in zip(miss_indices, fresh):
                results[i] = list(embedding)
                self._write_back(contents[i], embedding)
        return [r for r in results if r is not None]

    def _write_back(self, content: str, embedding: List[float]) -> None:
        try:
            self.cache.put(self.provider, self.model, content, embedding)
        except Exception as exc:
            print(f"[embedding_cache] Failed to cache embedding for {self.identifier}: {exc}")
