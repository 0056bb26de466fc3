"""
Vector search tests

Postgres is replaced by an injected `connect` coroutine; the embedder by a stub.
"""

import psycopg
import pytest

from knowledge.types import KnowledgeSearchOptions, KnowledgeSource
from knowledge.vector_client import KEYWORD_SQL, VECTOR_SQL, VectorSearchClient, row_to_item

ROWS = [
    {
        "title": "Feline hyperthyroidism review",
        "content": "Methimazole remains first-line medical therapy. " * 20,
        "metadata": {"source": "JFMS", "year": "2021", "url": "https://example.org/fht"},
        "similarity": 0.83456,
    },
]


class FakeCursor:
    def __init__(self, rows):
        self._rows = rows

    async def fetchall(self):
        return self._rows


class FakeConn:
    def __init__(self, rows, error=None):
        self.rows = rows
        self.error = error
        self.executed = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, sql, params):
        self.executed.append((sql, params))
        if self.error:
            raise self.error
        return FakeCursor(self.rows)


class StubEmbedder:
    def __init__(self, vector):
        self.vector = vector

    async def embed(self, text):
        return self.vector


def _client(conn, embedding):
    async def connect(dsn):
        return conn

    return VectorSearchClient(dsn="postgresql://test", embedder=StubEmbedder(embedding), connect=connect)


class TestRowMapping:
    def test_row_to_item(self):
        item = row_to_item(ROWS[0])
        assert item.source is KnowledgeSource.VECTOR
        assert item.year == 2021
        assert item.similarity == 0.8346
        assert len(item.content) == 400
        assert item.citation.source == "JFMS"
        assert item.citation.url == "https://example.org/fht"
        assert not item.degraded

    def test_bad_year_ignored(self):
        item = row_to_item({"title": "x", "content": "y", "metadata": {"year": "n/a"}, "similarity": 0.6})
        assert item.year is None
        assert item.citation.source == "Knowledge Base"


class TestVectorSearchClient:
    @pytest.mark.asyncio
    async def test_semantic_search(self):
        conn = FakeConn(ROWS)
        items = await _client(conn, [0.1, 0.2]).search("hyperthyroid cat", KnowledgeSearchOptions(species="cat"), limit=3)
        assert len(items) == 1
        sql, params = conn.executed[0]
        assert sql == VECTOR_SQL.format(table="rag_documents")
        assert params["embedding"] == "[0.10000000,0.20000000]"
        assert params["limit"] == 3
        assert params["species"] == "cat"

    @pytest.mark.asyncio
    async def test_keyword_fallback_marks_degraded(self):
        conn = FakeConn(ROWS)
        items = await _client(conn, None).search("hyperthyroid")
        sql, params = conn.executed[0]
        assert sql == KEYWORD_SQL.format(table="rag_documents")
        assert params["query"] == "hyperthyroid"
        assert items[0].degraded
        assert items[0].to_dict()["degraded"] is True

    @pytest.mark.asyncio
    async def test_database_error_returns_empty(self):
        conn = FakeConn(ROWS, error=psycopg.OperationalError("connection refused"))
        assert await _client(conn, [0.1]).search("x") == []

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        assert await VectorSearchClient(dsn="", embedder=StubEmbedder(None)).search("x") == []
