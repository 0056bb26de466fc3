"""
PubMed client tests

ESearch/EFetch answered by httpx.MockTransport.
"""

import httpx
import pytest

from knowledge.bibliographic_client import EFETCH_URL, ESEARCH_URL, PubMedClient, article_to_item, parse_articles
from knowledge.types import KnowledgeSource

EFETCH_XML = """<?xml version="1.0"?>
<PubmedArticleSet>
  <PubmedArticle>
    <MedlineCitation>
      <PMID Version="1">12345</PMID>
      <Article>
        <Journal>
          <JournalIssue><PubDate><Year>2019</Year></PubDate></JournalIssue>
          <Title>Journal of Veterinary Internal Medicine</Title>
        </Journal>
        <ArticleTitle>Outcome of <i>canine</i> pancreatitis</ArticleTitle>
        <Abstract>
          <AbstractText Label="BACKGROUND">Pancreatitis is common.</AbstractText>
          <AbstractText Label="RESULTS">Mortality was 20%.</AbstractText>
        </Abstract>
        <AuthorList>
          <Author><LastName>Smith</LastName><Initials>J</Initials></Author>
          <Author><LastName>Lee</LastName><Initials>K</Initials></Author>
          <Author><LastName>Chen</LastName><Initials>W</Initials></Author>
          <Author><LastName>Garcia</LastName><Initials>M</Initials></Author>
        </AuthorList>
      </Article>
    </MedlineCitation>
    <PubmedData>
      <ArticleIdList>
        <ArticleId IdType="pubmed">12345</ArticleId>
        <ArticleId IdType="doi">10.1111/jvim.1</ArticleId>
      </ArticleIdList>
    </PubmedData>
  </PubmedArticle>
  <PubmedArticle>
    <MedlineCitation><PMID>999</PMID></MedlineCitation>
  </PubmedArticle>
</PubmedArticleSet>
"""


class TestParseArticles:
    def test_fields(self):
        [a] = parse_articles(EFETCH_XML)
        assert a.pmid == "12345"
        assert a.title == "Outcome of canine pancreatitis"
        assert a.abstract == "Pancreatitis is common. Mortality was 20%."
        assert a.authors == ["Smith J", "Lee K", "Chen W"]
        assert a.journal == "Journal of Veterinary Internal Medicine"
        assert a.year == 2019
        assert a.doi == "10.1111/jvim.1"

    def test_invalid_xml(self):
        assert parse_articles("<not-closed") == []

    def test_article_to_item(self):
        item = article_to_item(parse_articles(EFETCH_XML)[0])
        assert item.source is KnowledgeSource.BIBLIOGRAPHIC
        assert item.citation.pmid == "12345"
        assert item.citation.url == "https://pubmed.ncbi.nlm.nih.gov/12345/"


class TestPubMedClient:
    @pytest.mark.asyncio
    async def test_search_round_trip(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            url = str(request.url.copy_with(query=None))
            if url == ESEARCH_URL:
                return httpx.Response(200, json={"esearchresult": {"idlist": ["12345"]}})
            if url == EFETCH_URL:
                return httpx.Response(200, text=EFETCH_XML)
            return httpx.Response(404)

        client = PubMedClient(api_key="abc", transport=httpx.MockTransport(handler))
        items = await client.search("pancreatitis", limit=2)
        assert [i.title for i in items] == ["Outcome of canine pancreatitis"]
        esearch = seen[0].url.params
        assert esearch["term"] == "pancreatitis AND veterinary[sb]"
        assert esearch["retmax"] == "2"
        assert esearch["api_key"] == "abc"
        assert seen[1].url.params["id"] == "12345"

    @pytest.mark.asyncio
    async def test_no_hits_skips_efetch(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"esearchresult": {"idlist": []}})

        client = PubMedClient(api_key="", transport=httpx.MockTransport(handler))
        assert await client.search("nothing") == []
        assert len(calls) == 1
        assert "api_key" not in calls[0].url.params

    @pytest.mark.asyncio
    async def test_http_error_returns_empty(self):
        client = PubMedClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        assert await client.search("x") == []
