import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

OPTIMIZATION_MODES = ("speed", "balanced", "quality")
MAX_RERANKED_DOCS = 15
MAX_FILE_DOCS_WITH_WEB = 8
DEFAULT_RERANK_THRESHOLD = 0.3


@dataclass
class Chunk:
    content: str
    title: str = ""
    url: str = ""
    source: str = "web"
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScoredChunk:
    chunk: Chunk
    similarity: float


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def split_text(text: str, chunk_words: int = 300, overlap_words: int = 50) -> List[str]:
    words = (text or "").split()
    if not words:
        return []
    step = max(1, chunk_words - max(0, overlap_words))
    chunks: List[str] = []
    for start in range(0, len(words), step):
        chunks.append(" ".join(words[start : start + chunk_words]))
        if start + chunk_words >= len(words):
            break
    return chunks


def load_files_data(file_ids: List[str], uploads_dir: str | Path) -> List[Chunk]:
    """
    Load pre-extracted attachment chunks.

    Each upload `<id>` is expected as `<id>-extracted.json` ({"title", "contents"})
    next to `<id>-embeddings.json` ({"embeddings"}); uploads missing either
    file are skipped.
    """
    base = Path(uploads_dir)
    chunks: List[Chunk] = []
    for file_id in file_ids:
        content_path = base / f"{file_id}-extracted.json"
        embeddings_path = base / f"{file_id}-embeddings.json"
        if not content_path.exists() or not embeddings_path.exists():
            continue
        content = json.loads(content_path.read_text(encoding="utf-8"))
        embeddings_data = json.loads(embeddings_path.read_text(encoding="utf-8"))
        contents = content.get("contents", []) if isinstance(content, dict) else []
        vectors = embeddings_data.get("embeddings", []) if isinstance(embeddings_data, dict) else []
        title = str(content.get("title", "")) if isinstance(content, dict) else ""
        for i, text in enumerate(contents):
            if not isinstance(text, str):
                continue
            vec = vectors[i] if i < len(vectors) and isinstance(vectors[i], list) else None
            chunks.append(
                Chunk(
                    content=text,
                    title=title or file_id,
                    url="File",
                    source="file",
                    embedding=vec,
                    metadata={"file_id": file_id, "chunk_index": i},
                )
            )
    return chunks


class DocumentRanker:
    def __init__(
        self,
        embeddings: Any,
        rerank: bool = True,
        rerank_threshold: float = DEFAULT_RERANK_THRESHOLD,
    ) -> None:
        self.embeddings = embeddings
        self.rerank = rerank
        self.rerank_threshold = rerank_threshold

    def rerank_docs(
        self,
        query: str,
        chunks: List[Chunk],
        file_chunks: List[Chunk],
        mode: str = "balanced",
        should_abort: Optional[Callable[[], bool]] = None,
    ) -> List[Chunk]:
        if mode not in OPTIMIZATION_MODES:
            raise ValueError(f"Unknown optimization mode: {mode}")
        if not chunks and not file_chunks:
            return []

        web_chunks = [c for c in chunks if c.content]

        if mode == "speed" or not self.rerank:
            if not file_chunks:
                return web_chunks[:MAX_RERANKED_DOCS]
            query_vec = self.embeddings.embed_query(query, should_abort=should_abort)
            file_vecs = self._vectors_for(file_chunks, should_abort)
            kept = self._select(query_vec, file_chunks, file_vecs)
            if web_chunks:
                kept = kept[:MAX_FILE_DOCS_WITH_WEB]
            return kept + web_chunks[: MAX_RERANKED_DOCS - len(kept)]

        if mode == "balanced":
            candidates = web_chunks + list(file_chunks)
            if not candidates:
                return []
            vectors = self._vectors_for(candidates, should_abort)
            query_vec = self.embeddings.embed_query(query, should_abort=should_abort)
            return self._select(query_vec, candidates, vectors)

        # "quality" performs no selection yet.
        return []

    def score(self, query_vec: Sequence[float], chunks: List[Chunk], vectors: List[List[float]]) -> List[ScoredChunk]:
        return [
            ScoredChunk(chunk=c, similarity=cosine_similarity(query_vec, v))
            for c, v in zip(chunks, vectors)
        ]

    def _select(
        self, query_vec: Sequence[float], chunks: List[Chunk], vectors: List[List[float]]
    ) -> List[Chunk]:
        scored = [s for s in self.score(query_vec, chunks, vectors) if s.similarity > self.rerank_threshold]
        # sorted() is stable, so equal scores keep their input order.
        scored = sorted(scored, key=lambda s: s.similarity, reverse=True)
        return [s.chunk for s in scored[:MAX_RERANKED_DOCS]]

    def _vectors_for(
        self, chunks: List[Chunk], should_abort: Optional[Callable[[], bool]] = None
    ) -> List[List[float]]:
        # Chunks without a stored vector are embedded together in one batch call.
        missing = [i for i, c in enumerate(chunks) if c.embedding is None]
        fresh: List[List[float]] = []
        if missing:
            fresh = self.embeddings.embed_documents(
                [chunks[i].content for i in missing], should_abort=should_abort
            )
        by_index = dict(zip(missing, fresh))
        return [c.embedding if c.embedding is not None else by_index[i] for i, c in enumerate(chunks)]
