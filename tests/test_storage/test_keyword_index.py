from pathlib import Path

import pytest

from viking_rag.keyword_index import KeywordIndex, build_fts_query, split_identifier_terms
from viking_rag.workspace import WorkspaceDocument, content_hash


def _doc(path: str, content: str) -> WorkspaceDocument:
    return WorkspaceDocument(path, content, content_hash(content))


def test_identifier_terms_split_camel_and_snake_case():
    assert split_identifier_terms("class KvStore(load_cache_file): HTTPClient") == [
        "class", "kv", "store", "load", "cache", "file", "httpclient",
    ]


def test_fts_query_drops_stopwords_and_quotes_terms():
    assert build_fts_query("where is the KvStore") == '"where" OR "kvstore" OR "store"'
    assert build_fts_query('say "hi"') == '"say"'
    assert build_fts_query("go") == '"go"'
    assert build_fts_query("a ?") is None


@pytest.mark.asyncio
async def test_search_ranks_by_bm25_within_allowed_paths(tmp_path: Path):
    index = KeywordIndex(tmp_path)
    docs = [
        _doc("docs/a.md", "cache eviction policy: evict the coldest cache entry"),
        _doc("docs/b.md", "the cache is mentioned once among many unrelated words here"),
    ] + [_doc(f"docs/filler{i}.md", f"unrelated filler text number {i}") for i in range(6)]
    assert await index.update(docs) == 8

    hits = await index.search("cache eviction", top_k=5)

    assert [h.path for h in hits] == ["docs/a.md", "docs/b.md"]
    assert 0 < hits[1].score < hits[0].score < 1
    assert [h.path for h in await index.search("cache eviction", top_k=1)] == ["docs/a.md"]
    assert [h.path for h in await index.search("cache", paths=["docs/b.md"])] == ["docs/b.md"]
    assert await index.search("cache", top_k=0) == []
    await index.close()


@pytest.mark.asyncio
async def test_update_reindexes_only_changed_documents_and_persists(tmp_path: Path):
    index = KeywordIndex(tmp_path)
    await index.update([_doc("a.py", "def render(): pass"), _doc("b.py", "def parse(): pass")])
    await index.close()

    reopened = KeywordIndex(tmp_path)
    assert await reopened.update([_doc("a.py", "def render(): pass")]) == 0
    assert reopened.size == 2
    assert await reopened.update([_doc("a.py", "def draw(): pass")]) == 1

    assert await reopened.search("render") == []
    assert [h.path for h in await reopened.search("draw")] == ["a.py"]
    assert [h.path for h in await reopened.search("parse")] == ["b.py"]

    await reopened.clear()
    assert reopened.size == 0
    assert await reopened.search("parse") == []
    await reopened.close()


@pytest.mark.asyncio
async def test_unopenable_index_degrades_to_empty_results(tmp_path: Path):
    blocker = tmp_path / "cache"
    blocker.write_text("not a directory", encoding="utf-8")
    index = KeywordIndex(blocker)

    assert await index.update([_doc("a.py", "def render(): pass")]) == 0
    assert await index.search("render") == []
    assert index.is_available is False
    await index.close()
