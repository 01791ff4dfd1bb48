import json

import pytest

from document_ranker import (
    Chunk,
    DocumentRanker,
    cosine_similarity,
    load_files_data,
    split_text,
)


class TableEmbeddings:
    def __init__(self, table):
        self.table = table
        self.document_calls = []
        self.query_calls = []

    def embed_query(self, content, should_abort=None):
        self.query_calls.append(content)
        return self.table[content]

    def embed_documents(self, contents, should_abort=None):
        self.document_calls.append(list(contents))
        return [self.table[c] for c in contents]


def web(content):
    return Chunk(content=content, title=content, url=f"https://{content}.com")


def test_cosine_similarity_edge_cases():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 1]) == 0.0
    assert cosine_similarity([], []) == 0.0
    assert cosine_similarity([1, 2], [1, 2, 3]) == 0.0


def test_balanced_keeps_above_threshold_sorted_by_similarity():
    emb = TableEmbeddings(
        {"q": [1.0, 0.0], "mid": [1.0, 1.0], "high": [1.0, 0.0], "low": [0.2, 1.0]}
    )
    ranker = DocumentRanker(emb)

    out = ranker.rerank_docs("q", [web("mid"), web("low"), web("high")], [], mode="balanced")

    assert [c.content for c in out] == ["high", "mid"]
    assert emb.document_calls == [["mid", "low", "high"]]


def test_balanced_uses_stored_file_vectors_and_caps_at_fifteen():
    table = {"q": [1.0, 0.0]}
    chunks = []
    for i in range(20):
        table[f"w{i}"] = [1.0, 0.01 * i]
        chunks.append(web(f"w{i}"))
    files = [Chunk(content="file", source="file", url="File", embedding=[1.0, 0.0])]
    emb = TableEmbeddings(table)

    out = DocumentRanker(emb).rerank_docs("q", chunks, files, mode="balanced")

    assert len(out) == 15
    assert out[0].content in {"file", "w0"}
    assert emb.document_calls == [[f"w{i}" for i in range(20)]]


def test_ties_keep_input_order():
    emb = TableEmbeddings({"q": [1.0, 0.0], "a": [2.0, 0.0], "b": [3.0, 0.0]})
    out = DocumentRanker(emb).rerank_docs("q", [web("a"), web("b")], [], mode="balanced")
    assert [c.content for c in out] == ["a", "b"]


def test_speed_without_files_returns_first_fifteen_without_embedding():
    emb = TableEmbeddings({})
    chunks = [web(f"w{i}") for i in range(20)] + [Chunk(content="")]

    out = DocumentRanker(emb).rerank_docs("q", chunks, [], mode="speed")

    assert [c.content for c in out] == [f"w{i}" for i in range(15)]
    assert emb.document_calls == [] and emb.query_calls == []


def test_speed_with_files_caps_file_keeps_and_fills_with_web():
    table = {"q": [1.0, 0.0]}
    files = []
    for i in range(10):
        files.append(Chunk(content=f"f{i}", source="file", url="File", embedding=[1.0, 0.0]))
    files.append(Chunk(content="unrelated", source="file", url="File", embedding=[0.0, 1.0]))
    chunks = [web(f"w{i}") for i in range(10)]
    emb = TableEmbeddings(table)

    out = DocumentRanker(emb).rerank_docs("q", chunks, files, mode="speed")

    assert [c.content for c in out] == [f"f{i}" for i in range(8)] + [f"w{i}" for i in range(7)]
    assert emb.query_calls == ["q"]
    assert emb.document_calls == []


def test_speed_with_only_files_caps_at_fifteen():
    files = [
        Chunk(content=f"f{i}", source="file", url="File", embedding=[1.0, 0.0]) for i in range(20)
    ]
    out = DocumentRanker(TableEmbeddings({"q": [1.0, 0.0]})).rerank_docs("q", [], files, mode="speed")
    assert len(out) == 15


def test_quality_mode_selects_nothing():
    emb = TableEmbeddings({"q": [1.0, 0.0], "a": [1.0, 0.0]})
    assert DocumentRanker(emb).rerank_docs("q", [web("a")], [], mode="quality") == []


def test_unknown_mode_is_rejected():
    with pytest.raises(ValueError):
        DocumentRanker(TableEmbeddings({})).rerank_docs("q", [web("a")], [], mode="turbo")


def test_split_text_overlaps_windows():
    words = [f"w{i}" for i in range(700)]
    chunks = split_text(" ".join(words), chunk_words=300, overlap_words=50)
    assert len(chunks) == 3
    assert chunks[1].split()[0] == "w250"
    assert chunks[-1].split()[-1] == "w699"
    assert split_text("   ") == []


def test_load_files_data_reads_extracted_uploads(tmp_path):
    (tmp_path / "doc1-extracted.json").write_text(
        json.dumps({"title": "Report", "contents": ["first", "second"]}), encoding="utf-8"
    )
    (tmp_path / "doc1-embeddings.json").write_text(
        json.dumps({"embeddings": [[1.0, 0.0], [0.0, 1.0]]}), encoding="utf-8"
    )
    (tmp_path / "doc2-extracted.json").write_text(json.dumps({"contents": ["x"]}), encoding="utf-8")

    chunks = load_files_data(["doc1", "doc2", "missing"], tmp_path)

    assert [c.content for c in chunks] == ["first", "second"]
    assert chunks[0].title == "Report"
    assert chunks[0].source == "file"
    assert chunks[1].embedding == [0.0, 1.0]
