import json

import pytest

from embedding_cache import (
    CachedEmbeddings,
    EmbeddingCache,
    hash_content,
    make_cache_key,
)
from research_clients import RunAborted


class FakeClock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


class RecordingEmbedder:
    def __init__(self):
        self.calls = []

    def embed(self, texts, should_abort=None):
        self.calls.append(list(texts))
        return [[float(len(t)), 1.0] for t in texts]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(tmp_path, clock):
    return EmbeddingCache(cache_dir=tmp_path / "cache", ttl_sec=100, max_entries=3, clock=clock)


def test_put_then_get_returns_vector(cache):
    cache.put("openai", "m", "hello", [0.1, 0.2])
    assert cache.get("openai", "m", "hello") == [0.1, 0.2]
    assert cache.contains("openai", "m", "hello")
    assert cache.get("openai", "other-model", "hello") is None


def test_entries_survive_restart(tmp_path, cache, clock):
    cache.put("openai", "m", "hello", [1.0, 2.0])
    reopened = EmbeddingCache(cache_dir=tmp_path / "cache", ttl_sec=100, clock=clock)
    assert reopened.get("openai", "m", "hello") == [1.0, 2.0]


def test_expired_entry_is_a_miss_and_deleted(cache, clock):
    cache.put("openai", "m", "hello", [1.0])
    path = cache._file_path(make_cache_key("openai", "m", hash_content("hello")))
    clock.t += 101
    assert cache.get("openai", "m", "hello") is None
    assert not path.exists()


def test_hit_refreshes_last_access(cache, clock):
    cache.put("openai", "m", "hello", [1.0])
    clock.t += 90
    assert cache.get("openai", "m", "hello") == [1.0]
    clock.t += 90
    assert cache.get("openai", "m", "hello") == [1.0]


def test_corrupt_record_is_deleted_and_missed(cache):
    path = cache._file_path(make_cache_key("openai", "m", hash_content("hello")))
    path.write_text("{not json", encoding="utf-8")
    assert cache.get("openai", "m", "hello") is None
    assert not path.exists()


def test_purge_removes_expired_then_least_recently_used(cache, clock):
    cache.put("openai", "m", "stale", [0.0])
    clock.t += 150
    for i, text in enumerate(["a", "b", "c", "d"]):
        clock.t += 1
        cache.put("openai", "m", text, [float(i)])

    result = cache.purge()

    assert result == {"expired": 1, "lru": 1}
    assert not cache.contains("openai", "m", "stale")
    assert cache.get("openai", "m", "a") is None
    assert cache.get("openai", "m", "d") == [3.0]
    assert cache.stats()["entries_on_disk"] == 3


def test_cached_embeddings_only_embeds_misses(cache):
    embedder = RecordingEmbedder()
    embeddings = CachedEmbeddings(embedder, "fake", "m", cache)

    first = embeddings.embed_documents(["aa", "bbb"])
    second = embeddings.embed_documents(["aa", "c", "bbb"])

    assert first == [[2.0, 1.0], [3.0, 1.0]]
    assert second == [[2.0, 1.0], [1.0, 1.0], [3.0, 1.0]]
    assert embedder.calls == [["aa", "bbb"], ["c"]]
    assert embeddings.identifier == "fake:m"


def test_cached_query_embedding(cache):
    embedder = RecordingEmbedder()
    embeddings = CachedEmbeddings(embedder, "fake", "m", cache)
    assert embeddings.embed_query("hello") == [5.0, 1.0]
    assert embeddings.embed_query("hello") == [5.0, 1.0]
    assert embedder.calls == [["hello"]]


def test_embedder_length_mismatch_is_an_error(cache):
    class ShortEmbedder:
        def embed(self, texts, should_abort=None):
            return [[1.0]]

    embeddings = CachedEmbeddings(ShortEmbedder(), "fake", "m", cache)
    with pytest.raises(ValueError):
        embeddings.embed_documents(["a", "b"])


def test_write_back_failure_does_not_fail_embedding(cache, monkeypatch):
    def broken_put(*_args, **_kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(cache, "put", broken_put)
    embeddings = CachedEmbeddings(RecordingEmbedder(), "fake", "m", cache)
    assert embeddings.embed_documents(["abc"]) == [[3.0, 1.0]]


def _rewrite(cache, content, **changes):
    path = cache._file_path(make_cache_key("openai", "m", hash_content(content)))
    rec = json.loads(path.read_text(encoding="utf-8"))
    rec.update(changes)
    path.write_text(json.dumps(rec), encoding="utf-8")
    return path


def test_record_with_non_numeric_timestamp_is_a_miss(cache):
    cache.put("openai", "m", "hello", [1.0])
    path = _rewrite(cache, "hello", last_access="bogus")

    assert cache.get("openai", "m", "hello") is None
    assert not path.exists()


def test_record_with_non_numeric_vector_is_a_miss(cache):
    cache.put("openai", "m", "hello", [1.0])
    path = _rewrite(cache, "hello", embedding=["x"])

    assert cache.get("openai", "m", "hello") is None
    assert not path.exists()


def test_purge_deletes_unreadable_files(cache):
    cache.put("openai", "m", "good", [1.0])
    bad = _rewrite(cache, "good", created_at="yesterday")
    junk = cache.cache_dir / "junk.json"
    junk.write_text("{not json", encoding="utf-8")
    cache.put("openai", "m", "other", [2.0])

    assert cache.purge() == {"expired": 0, "lru": 0}
    assert not bad.exists()
    assert not junk.exists()
    assert cache.get("openai", "m", "other") == [2.0]


def test_recent_get_protects_entry_from_eviction(tmp_path, clock):
    cache = EmbeddingCache(cache_dir=tmp_path / "lru", ttl_sec=100, max_entries=2, clock=clock)
    cache.put("openai", "m", "a", [1.0])
    clock.t += 1
    cache.put("openai", "m", "b", [2.0])
    clock.t += 1
    assert cache.get("openai", "m", "a") == [1.0]
    clock.t += 1
    cache.put("openai", "m", "c", [3.0])

    assert cache.purge() == {"expired": 0, "lru": 1}
    assert not cache.contains("openai", "m", "b")
    assert cache.get("openai", "m", "a") == [1.0]
    assert cache.get("openai", "m", "c") == [3.0]


def test_abort_is_checked_before_embedding_misses(cache):
    embedder = RecordingEmbedder()
    embeddings = CachedEmbeddings(embedder, "fake", "m", cache)
    embeddings.embed_documents(["aa"])

    assert embeddings.embed_documents(["aa"], should_abort=lambda: True) == [[2.0, 1.0]]
    with pytest.raises(RunAborted):
        embeddings.embed_documents(["aa", "new"], should_abort=lambda: True)
    with pytest.raises(RunAborted):
        embeddings.embed_query("fresh", should_abort=lambda: True)
    assert embedder.calls == [["aa"]]
