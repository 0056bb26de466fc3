"""
Pytest configuration and shared fixtures

In-memory stand-ins for the knowledge gateways and the model API so the
loop, the tools and the HTTP layer can be exercised without network access.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from common.errors import ExternalServiceError
from knowledge.fusion import KnowledgeFusionEngine
from knowledge.types import KnowledgeCitation, KnowledgeItem, KnowledgeSource
from vet_agent.model_client import STOP_END_TURN, STOP_TOOL_USE, ModelResponse
from vet_agent.types import TokenUsage, ToolUse


def make_item(
    title: str,
    source: KnowledgeSource = KnowledgeSource.VECTOR,
    *,
    content: str = "",
    slug: Optional[str] = None,
    year: Optional[int] = None,
    citation_source: str = "Knowledge Base",
) -> KnowledgeItem:
    return KnowledgeItem(
        source=source,
        title=title,
        content=content or f"{title} content",
        slug=slug,
        year=year,
        citation=KnowledgeCitation(title=title, source=citation_source, source_type=source, year=year),
    )


class FakeGateway:
    """Records every search and answers with a fixed list (or raises / stalls)."""

    def __init__(self, items=None, *, configured: bool = True, error: Optional[Exception] = None, delay: float = 0):
        self.items = list(items or [])
        self.configured = configured
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    def is_configured(self) -> bool:
        return self.configured

    async def search(self, query, options=None, *, limit=None):
        self.calls.append({"query": query, "options": options, "limit": limit})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.items)


class FakeEncyclopedia(FakeGateway):
    """Encyclopedia gateway plus the raw endpoints the tools call."""

    def __init__(self, items=None, **kw):
        super().__init__(items, **kw)
        self.drugs: Dict[str, List[Dict[str, Any]]] = {}
        self.drug_details: Dict[str, Dict[str, Any]] = {}
        self.disease_details: Dict[str, Dict[str, Any]] = {}
        self.interactions: List[Dict[str, Any]] = []
        self.symptoms: Dict[str, List[Dict[str, Any]]] = {}
        self.labs: Dict[str, List[Dict[str, Any]]] = {}
        self.ddx_results: List[Dict[str, Any]] = []
        self.endpoint_error: Optional[ExternalServiceError] = None
        self.raw_calls: List[tuple] = []

    def _raw(self, name, *args):
        self.raw_calls.append((name,) + args)
        if self.endpoint_error:
            raise self.endpoint_error

    async def search_drugs(self, query, species=None):
        self._raw("search_drugs", query, species)
        return {"drugs": self.drugs.get(query.lower(), [])}

    async def get_drug_detail(self, slug):
        self._raw("get_drug_detail", slug)
        return self.drug_details[slug]

    async def get_disease_detail(self, slug):
        self._raw("get_disease_detail", slug)
        return self.disease_details[slug]

    async def check_interactions(self, drug_ids):
        self._raw("check_interactions", list(drug_ids))
        return {"interactions": self.interactions}

    async def search_symptoms(self, query):
        self._raw("search_symptoms", query)
        return self.symptoms.get(query, [])

    async def search_lab_findings(self, query):
        self._raw("search_lab_findings", query)
        return self.labs.get(query, [])

    async def get_ddx(self, symptom_ids, lab_ids, *, species=None, exclude=None):
        self._raw("get_ddx", symptom_ids, lab_ids, species, exclude)
        return {"results": self.ddx_results, "resultCount": len(self.ddx_results)}


class ScriptedModelClient:
    """
    Replays a list of ModelResponse objects, one per round, and records every
    request. `stream()` splits the text of each response into word deltas.
    """

    def __init__(self, responses: List[ModelResponse]):
        self.responses = list(responses)
        self.requests = []

    def _next(self, request) -> ModelResponse:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError("model called more times than scripted")
        return self.responses.pop(0)

    async def create(self, request):
        return self._next(request)

    async def stream(self, request):
        response = self._next(request)
        for word in response.text.split(" "):
            if word:
                yield word + " "
        yield response


class RecordingDispatcher:
    def __init__(self, results: Optional[Dict[str, Any]] = None, schemas: Optional[List[Any]] = None):
        self.results = results or {}
        self._schemas = schemas if schemas is not None else [object()]
        self.calls: List[tuple] = []

    def schemas(self):
        return self._schemas

    async def dispatch(self, name, input):
        self.calls.append((name, input))
        result = self.results.get(name, {"ok": True})
        if isinstance(result, Exception):
            raise result
        return result


def text_response(text: str, usage=(10, 5)) -> ModelResponse:
    return ModelResponse(stop_reason=STOP_END_TURN, text=text, usage=TokenUsage(*usage))


def tool_response(*calls, text: str = "", usage=(20, 10)) -> ModelResponse:
    return ModelResponse(
        stop_reason=STOP_TOOL_USE,
        text=text,
        tool_uses=[ToolUse(id=f"call_{i}", name=name, input=inp) for i, (name, inp) in enumerate(calls)],
        usage=TokenUsage(*usage),
    )


LITERATURE_RESULT = {
    "query": "canine ckd",
    "results": [
        {
            "title": "IRIS guidelines for canine CKD",
            "content": "A systematic review of renal diets in dogs with chronic kidney disease.",
            "year": 2020,
            "similarity": 0.91,
            "citation": {"source": "JVIM", "url": "https://example.org/iris"},
        },
        {
            "title": "Renal diet outcomes",
            "content": "Retrospective cohort of 120 dogs on renal diets; chronic kidney disease survival improved.",
            "year": 2018,
            "citation": {"source": "Vet Record"},
        },
    ],
}


@pytest.fixture
def encyclopedia():
    return FakeEncyclopedia()


@pytest.fixture
def vector():
    return FakeGateway()


@pytest.fixture
def engine(encyclopedia, vector):
    return KnowledgeFusionEngine(encyclopedia=encyclopedia, vector=vector, bibliographic=FakeGateway())
