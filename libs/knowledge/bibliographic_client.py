# libs/knowledge/bibliographic_client.py
"""PubMed E-utilities client: ESearch for PMIDs, then EFetch for article XML."""
from __future__ import annotations

import logging
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from common.env import float_from_env
from .types import KnowledgeCitation, KnowledgeItem, KnowledgeSearchOptions, KnowledgeSource

log = logging.getLogger("vet-knowledge.pubmed")

PUBMED_API_KEY = os.getenv("PUBMED_API_KEY", "")
ESEARCH_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/esearch.fcgi"
EFETCH_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/efetch.fcgi"
REQUEST_TIMEOUT_S = float_from_env("PUBMED_TIMEOUT_S", 6.0)
DEFAULT_LIMIT = 5
ABSTRACT_MAX_CHARS = 500
MAX_AUTHORS = 3


@dataclass
class PubMedArticle:
    pmid: str
    title: str
    abstract: str = ""
    authors: List[str] = field(default_factory=list)
    journal: str = ""
    year: Optional[int] = None
    doi: Optional[str] = None


def _text(el: Optional[ET.Element]) -> str:
    # itertext() flattens inline markup such as <i> inside titles
    return "".join(el.itertext()).strip() if el is not None else ""


def parse_articles(xml_text: str) -> List[PubMedArticle]:
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        log.warning("pubmed_xml_unparseable", extra={"err": str(e)})
        return []

    articles: List[PubMedArticle] = []
    for node in root.iter("PubmedArticle"):
        pmid = _text(node.find(".//MedlineCitation/PMID"))
        title = _text(node.find(".//ArticleTitle"))
        if not pmid or not title:
            continue

        abstract = " ".join(_text(a) for a in node.findall(".//Abstract/AbstractText"))[:ABSTRACT_MAX_CHARS]

        authors: List[str] = []
        for author in node.findall(".//AuthorList/Author"):
            last, initials = _text(author.find("LastName")), _text(author.find("Initials"))
            if last:
                authors.append(f"{last} {initials}".strip())
            if len(authors) >= MAX_AUTHORS:
                break

        journal = _text(node.find(".//Journal/Title")) or _text(node.find(".//Journal/ISOAbbreviation"))

        year_str = _text(node.find(".//JournalIssue/PubDate/Year")) or _text(
            node.find(".//PubmedData/History/PubMedPubDate/Year")
        )
        year = int(year_str) if year_str.isdigit() else None

        doi = None
        for aid in node.findall(".//PubmedData/ArticleIdList/ArticleId"):
            if aid.get("IdType") == "doi":
                doi = _text(aid) or None
                break

        articles.append(PubMedArticle(
            pmid=pmid, title=title, abstract=abstract, authors=authors,
            journal=journal, year=year, doi=doi,
        ))
    return articles


class PubMedClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        timeout_s: float = REQUEST_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else PUBMED_API_KEY
        self.timeout_s = timeout_s
        self._transport = transport

    def is_configured(self) -> bool:
        # E-utilities work without a key (3 req/s); the key only raises the quota
        return True

    def _params(self, **kw) -> dict:
        params = {"db": "pubmed", **kw}
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    async def _esearch(self, client: httpx.AsyncClient, query: str, limit: int) -> List[str]:
        r = await client.get(ESEARCH_URL, params=self._params(
            retmode="json", retmax=str(limit), sort="relevance", term=f"{query} AND veterinary[sb]",
        ))
        r.raise_for_status()
        return list((r.json().get("esearchresult") or {}).get("idlist") or [])

    async def _efetch(self, client: httpx.AsyncClient, pmids: List[str]) -> List[PubMedArticle]:
        r = await client.get(EFETCH_URL, params=self._params(
            retmode="xml", rettype="abstract", id=",".join(pmids),
        ))
        r.raise_for_status()
        return parse_articles(r.text)

    async def search(
        self,
        query: str,
        options: Optional[KnowledgeSearchOptions] = None,
        *,
        limit: int = DEFAULT_LIMIT,
    ) -> List[KnowledgeItem]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                pmids = await self._esearch(client, query, limit)
                if not pmids:
                    return []
                articles = await self._efetch(client, pmids)
        except (httpx.HTTPError, ValueError) as e:
            log.warning("pubmed_search_failed", extra={"query": query, "err": str(e) or type(e).__name__})
            return []
        return [article_to_item(a) for a in articles]


def article_to_item(article: PubMedArticle) -> KnowledgeItem:
    return KnowledgeItem(
        source=KnowledgeSource.BIBLIOGRAPHIC,
        title=article.title,
        content=article.abstract or "(No abstract available)",
        year=article.year,
        citation=KnowledgeCitation(
            title=article.title,
            source=article.journal or "PubMed",
            source_type=KnowledgeSource.BIBLIOGRAPHIC,
            year=article.year,
            pmid=article.pmid,
            journal=article.journal or None,
            url=f"https://pubmed.ncbi.nlm.nih.gov/{article.pmid}/",
        ),
    )
