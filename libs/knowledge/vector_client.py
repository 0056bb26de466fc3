# libs/knowledge/vector_client.py
"""
Vector search over the literature corpus (Postgres + pgvector).

The query is embedded with OpenAI embeddings and matched by cosine
similarity. When no embedding can be produced (no key, API error) the
client falls back to Postgres full-text search over the same table; those
items are flagged `degraded=True` so callers can tell keyword hits from
semantic ones.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional

import psycopg
from openai import AsyncOpenAI, OpenAIError
from psycopg.rows import dict_row

from common.env import float_from_env
from .types import KnowledgeCitation, KnowledgeItem, KnowledgeSearchOptions, KnowledgeSource

log = logging.getLogger("vet-knowledge.rag")

# ── Config ───────────────────────────────────────────────────────────────────
RAG_PG_DSN = os.getenv("RAG_PG_DSN", "")
RAG_TABLE = os.getenv("RAG_TABLE", "rag_documents")
EMBEDDING_MODEL = os.getenv("RAG_EMBEDDING_MODEL", "text-embedding-3-small")
MATCH_THRESHOLD = float_from_env("RAG_MATCH_THRESHOLD", 0.5)
EMBED_TIMEOUT_S = float_from_env("RAG_EMBED_TIMEOUT_S", 4.0)
DEFAULT_LIMIT = 5
CONTENT_MAX_CHARS = 400

VECTOR_SQL = """
SELECT title, content, metadata,
       1 - (embedding <=> %(embedding)s::vector) AS similarity
FROM {table}
WHERE 1 - (embedding <=> %(embedding)s::vector) > %(threshold)s
  AND (%(category)s::text IS NULL OR metadata->>'category' = %(category)s)
  AND (%(species)s::text IS NULL OR metadata->>'species' IS NULL
       OR metadata->>'species' ILIKE '%%' || %(species)s || '%%')
ORDER BY embedding <=> %(embedding)s::vector
LIMIT %(limit)s
"""

KEYWORD_SQL = """
SELECT title, content, metadata,
       ts_rank(to_tsvector('simple', coalesce(title, '') || ' ' || coalesce(content, '')),
               plainto_tsquery('simple', %(query)s)) AS similarity
FROM {table}
WHERE to_tsvector('simple', coalesce(title, '') || ' ' || coalesce(content, ''))
      @@ plainto_tsquery('simple', %(query)s)
  AND (%(category)s::text IS NULL OR metadata->>'category' = %(category)s)
ORDER BY similarity DESC
LIMIT %(limit)s
"""


class OpenAIEmbedder:
    def __init__(self, model: str = EMBEDDING_MODEL, client: Optional[AsyncOpenAI] = None):
        self.model = model
        self._client = client

    def is_configured(self) -> bool:
        return self._client is not None or bool(os.getenv("OPENAI_API_KEY"))

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=os.environ.get("OPENAI_API_KEY"),
                base_url=os.environ.get("OPENAI_BASE_URL") or None,
                timeout=EMBED_TIMEOUT_S,
                max_retries=0,
            )
        return self._client

    async def embed(self, text: str) -> Optional[List[float]]:
        if not self.is_configured():
            log.warning("embedding_skipped_no_api_key")
            return None
        try:
            resp = await self._get_client().embeddings.create(model=self.model, input=text)
        except OpenAIError as e:
            log.warning("embedding_failed", extra={"model": self.model, "err": str(e)})
            return None
        return list(resp.data[0].embedding)


def _vector_literal(embedding: List[float]) -> str:
    return "[" + ",".join(f"{x:.8f}" for x in embedding) + "]"


async def _connect(dsn: str):
    return await psycopg.AsyncConnection.connect(dsn, row_factory=dict_row)


class VectorSearchClient:
    def __init__(
        self,
        dsn: Optional[str] = None,
        embedder: Optional[OpenAIEmbedder] = None,
        *,
        match_threshold: float = MATCH_THRESHOLD,
        table: str = RAG_TABLE,
        connect: Callable[[str], Awaitable[Any]] = _connect,
    ):
        self.dsn = dsn if dsn is not None else RAG_PG_DSN
        self.embedder = embedder or OpenAIEmbedder()
        self.match_threshold = match_threshold
        self.table = table
        self._connect = connect

    def is_configured(self) -> bool:
        return bool(self.dsn)

    async def _fetch(self, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with await self._connect(self.dsn) as conn:
            cur = await conn.execute(sql.format(table=self.table), params)
            return list(await cur.fetchall())

    async def search(
        self,
        query: str,
        options: Optional[KnowledgeSearchOptions] = None,
        *,
        limit: int = DEFAULT_LIMIT,
    ) -> List[KnowledgeItem]:
        if not self.is_configured():
            return []
        options = options or KnowledgeSearchOptions()
        params: Dict[str, Any] = {
            "limit": limit,
            "category": options.category,
            "species": options.species,
        }
        try:
            embedding = await self.embedder.embed(query)
            if embedding is not None:
                params.update(embedding=_vector_literal(embedding), threshold=self.match_threshold)
                rows = await self._fetch(VECTOR_SQL, params)
                degraded = False
            else:
                params["query"] = query
                rows = await self._fetch(KEYWORD_SQL, params)
                degraded = True
                log.info("rag_keyword_fallback", extra={"query": query, "hits": len(rows)})
        except psycopg.Error as e:
            log.warning("rag_search_failed", extra={"query": query, "err": str(e)})
            return []
        return [row_to_item(row, degraded=degraded) for row in rows]


def row_to_item(row: Dict[str, Any], *, degraded: bool = False) -> KnowledgeItem:
    metadata = row.get("metadata") or {}
    title = row.get("title") or "Untitled"
    year = metadata.get("year")
    try:
        year = int(year) if year is not None else None
    except (TypeError, ValueError):
        year = None
    similarity = float(row.get("similarity") or 0.0)
    return KnowledgeItem(
        source=KnowledgeSource.VECTOR,
        title=title,
        content=(row.get("content") or "")[:CONTENT_MAX_CHARS],
        year=year,
        similarity=round(similarity, 4),
        relevance_score=similarity,
        degraded=degraded,
        citation=KnowledgeCitation(
            title=title,
            source=metadata.get("source") or "Knowledge Base",
            source_type=KnowledgeSource.VECTOR,
            year=year,
            url=metadata.get("url"),
        ),
    )
