# libs/knowledge/encyclopedia_client.py
"""
HTTP client for the VetPro structured veterinary encyclopedia.

Every raw endpoint raises ExternalServiceError (or CircuitOpenError) on
failure; `search()` is the gateway entry point used by fusion and never
raises.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

import httpx

from common.env import float_from_env, int_from_env
from common.errors import CircuitOpenError, ExternalServiceError

from .circuit_breaker import CircuitBreaker
from .types import KnowledgeCitation, KnowledgeItem, KnowledgeSearchOptions, KnowledgeSource

log = logging.getLogger("vet-knowledge.vetpro")

# ── Config ───────────────────────────────────────────────────────────────────
VETPRO_BASE_URL = os.getenv("VETPRO_BASE_URL", "").rstrip("/")
VETPRO_API_KEY = os.getenv("VETPRO_API_KEY", "")
REQUEST_TIMEOUT_S = float_from_env("VETPRO_TIMEOUT_S", 5.0)
MAX_RETRIES = int_from_env("VETPRO_MAX_RETRIES", 1)
RETRY_DELAY_S = 0.5
# worst case for one call: every attempt times out
RETRY_BUDGET_S = REQUEST_TIMEOUT_S * (MAX_RETRIES + 1) + RETRY_DELAY_S * MAX_RETRIES

SEARCH_DISEASE_LIMIT = 5
SEARCH_DRUG_LIMIT = 3

# one breaker per process, shared by every client instance
vetpro_breaker = CircuitBreaker(
    "vetpro",
    failure_threshold=int_from_env("VETPRO_BREAKER_THRESHOLD", 3),
    cooldown_s=float_from_env("VETPRO_BREAKER_COOLDOWN_S", 30.0),
)


class _ClientError(Exception):
    """4xx from VetPro: the service is up, the request is wrong."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"VetPro {status_code}: {body[:200]}")
        self.status_code = status_code


class EncyclopediaClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        timeout_s: float = REQUEST_TIMEOUT_S,
        max_retries: int = MAX_RETRIES,
        retry_delay_s: float = RETRY_DELAY_S,
        breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url if base_url is not None else VETPRO_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else VETPRO_API_KEY
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s
        self.breaker = breaker or vetpro_breaker
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    # ── HTTP core ────────────────────────────────────────────────────────────
    async def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        if not self.is_configured():
            raise ExternalServiceError("vetpro", "VETPRO_BASE_URL / VETPRO_API_KEY not configured")

        self.breaker.before_call()
        try:
            data = await self._request(path, params)
        except _ClientError as e:
            # reachable service, so not a breaker failure; retrying will not help
            self.breaker.record_success()
            raise ExternalServiceError("vetpro", str(e), status_code=e.status_code) from e
        except BaseException:
            # exhausted retries, or cancelled by the caller's deadline
            self.breaker.record_failure()
            raise
        self.breaker.record_success()
        return data

    async def _request(self, path: str, params: Optional[Dict[str, str]]) -> Any:
        url = f"{self.base_url}/api/v1{path}"
        headers = {"x-api-key": self.api_key, "Accept": "application/json"}
        last_error: Optional[Exception] = None

        async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
            for attempt in range(self.max_retries + 1):
                try:
                    r = await client.get(url, params=params, headers=headers)
                    if 400 <= r.status_code < 500:
                        raise _ClientError(r.status_code, r.text)
                    r.raise_for_status()
                    return r.json()
                except (httpx.HTTPError, ValueError) as e:
                    last_error = e
                    log.warning(
                        "vetpro_request_failed",
                        extra={"path": path, "attempt": attempt + 1, "err": str(e) or type(e).__name__},
                    )
                    if attempt < self.max_retries:
                        await asyncio.sleep(self.retry_delay_s)

        status = getattr(getattr(last_error, "response", None), "status_code", None)
        raise ExternalServiceError(
            "vetpro", f"request failed: {last_error or 'unknown error'}", status_code=status
        ) from last_error

    # ── Raw endpoints ────────────────────────────────────────────────────────
    async def search_raw(self, query: str) -> Dict[str, Any]:
        """Cross search of diseases and drugs (full-text)."""
        return await self._get("/search", {"q": query.strip()})

    async def get_disease_detail(self, slug: str) -> Dict[str, Any]:
        return await self._get(f"/diseases/{quote(slug, safe='')}")

    async def search_drugs(self, query: str, species: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, str] = {}
        if query.strip():
            params["q"] = query.strip()
        if species:
            params["species"] = species
        return await self._get("/drugs", params)

    async def get_drug_detail(self, slug: str) -> Dict[str, Any]:
        return await self._get(f"/drugs/{quote(slug, safe='')}")

    async def check_interactions(self, drug_ids: Iterable[str]) -> Dict[str, Any]:
        return await self._get("/drugs/interactions", {"drugs": ",".join(drug_ids)})

    async def search_symptoms(self, query: str) -> List[Dict[str, Any]]:
        return await self._get("/symptoms", {"q": query.strip()})

    async def search_lab_findings(self, query: str) -> List[Dict[str, Any]]:
        return await self._get("/lab-findings", {"q": query.strip()})

    async def get_ddx(
        self,
        symptom_ids: List[str],
        lab_ids: List[str],
        *,
        species: Optional[str] = None,
        exclude: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, str] = {}
        if symptom_ids:
            params["symptoms"] = ",".join(symptom_ids)
        if lab_ids:
            params["labs"] = ",".join(lab_ids)
        if species:
            params["species"] = species
        if exclude:
            params["exclude"] = ",".join(exclude)
        return await self._get("/ddx", params)

    # ── Gateway ──────────────────────────────────────────────────────────────
    async def search(self, query: str, options: Optional[KnowledgeSearchOptions] = None) -> List[KnowledgeItem]:
        if not self.is_configured():
            return []
        try:
            raw = await self.search_raw(query)
        except CircuitOpenError as e:
            log.info("vetpro_search_skipped", extra={"query": query, "err": str(e)})
            return []
        except ExternalServiceError as e:
            log.warning("vetpro_search_failed", extra={"query": query, "err": str(e)})
            return []
        return search_result_to_items(raw)


def search_result_to_items(raw: Dict[str, Any]) -> List[KnowledgeItem]:
    items: List[KnowledgeItem] = []
    for d in (raw.get("diseases") or [])[:SEARCH_DISEASE_LIMIT]:
        title = d.get("nameEn") or d.get("slug") or "Untitled"
        items.append(KnowledgeItem(
            source=KnowledgeSource.ENCYCLOPEDIA,
            title=title,
            title_localized=d.get("nameZh") or None,
            content=d.get("description") or "",
            slug=d.get("slug"),
            citation=KnowledgeCitation(
                title=title, source="VetPro Encyclopedia", source_type=KnowledgeSource.ENCYCLOPEDIA,
            ),
        ))
    for d in (raw.get("drugs") or [])[:SEARCH_DRUG_LIMIT]:
        title = d.get("nameEn") or d.get("slug") or "Untitled"
        items.append(KnowledgeItem(
            source=KnowledgeSource.ENCYCLOPEDIA,
            title=title,
            title_localized=d.get("nameZh") or None,
            content=drug_summary(d),
            slug=d.get("slug"),
            citation=KnowledgeCitation(
                title=title, source="VetPro Drug Database", source_type=KnowledgeSource.ENCYCLOPEDIA,
            ),
        ))
    return items


def drug_summary(d: Dict[str, Any]) -> str:
    parts = [d.get("classification") or "", d.get("formulation") or ""]
    species = d.get("supportedSpecies")
    if species:
        parts.append("Species: " + ", ".join(species))
    return ". ".join(p for p in parts if p)
