"""
HTTP evidence search provider.

Talks to a JSON search endpoint and normalizes results into EvidenceItems.
Never raises: transport errors, bad statuses and malformed bodies are logged
and produce an empty result.
"""

from __future__ import annotations

from typing import Any

import httpx
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from dealbot.logging import get_logger
from dealbot.providers.base import SearchOptions, SearchResult, evidence_id_for
from dealbot.state import EvidenceItem
from dealbot.types import utc_now_iso

logger = get_logger(__name__)


class HttpSearchProvider:
    """Evidence provider backed by ``POST {base_url}/search``.

    The endpoint accepts ``{query, max_results, category, include_profile}``
    and returns ``{results: [{id?, title, url, snippet}], answer?, profile?}``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        name: str = "search",
        timeout_s: float = 12.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            base_url: Service root URL.
            api_key: Optional bearer token.
            name: Source name recorded on evidence items.
            timeout_s: Per-request timeout.
            transport: Optional httpx transport (used in tests).
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.name = name
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout_s,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        reraise=True,
    )
    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post("/search", json=body)
        response.raise_for_status()
        return response.json()

    def _to_item(self, raw: dict[str, Any]) -> EvidenceItem | None:
        """Normalize one result. Raises on malformed fields."""
        snippet = (raw.get("snippet") or raw.get("content") or "").strip()
        title = raw.get("title")
        url = raw.get("url")
        if not snippet and not title:
            return None
        return EvidenceItem(
            evidence_id=raw.get("id") or evidence_id_for(self.name, url, snippet),
            title=title,
            snippet=snippet,
            source=self.name,
            url=url,
            retrieved_at=utc_now_iso(),
        )

    async def search(self, query: str, options: SearchOptions | None = None) -> SearchResult:
        """Run one lookup.

        Args:
            query: Free-text query.
            options: Result count, category and profile flags.

        Returns:
            SearchResult, empty on any failure.
        """
        options = options or SearchOptions()
        body = {
            "query": query,
            "max_results": options.max_results,
            "category": options.category,
            "include_profile": options.include_profile,
        }
        try:
            data = await self._post(body)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Evidence search failed", provider=self.name, query=query, error=str(e))
            return SearchResult.empty(self.name)
        if not isinstance(data, dict):
            logger.error("Evidence search returned non-object body", provider=self.name, query=query)
            return SearchResult.empty(self.name)

        items = self._to_items(data.get("results"), query)[: options.max_results]
        profile = data.get("profile") if isinstance(data.get("profile"), dict) else None
        answer = data.get("answer") if isinstance(data.get("answer"), str) else None
        logger.debug("Evidence search complete", provider=self.name, query=query, results=len(items))
        return SearchResult(items=items, answer=answer, profile=profile, provider=self.name)

    def _to_items(self, results: Any, query: str) -> list[EvidenceItem]:
        if not isinstance(results, list):
            return []
        items: list[EvidenceItem] = []
        for position, raw in enumerate(results):
            if not isinstance(raw, dict):
                continue
            try:
                item = self._to_item(raw)
            except (AttributeError, TypeError, ValidationError) as e:
                logger.warning(
                    "Skipping malformed search result",
                    provider=self.name,
                    query=query,
                    position=position,
                    error=str(e),
                )
                continue
            if item is not None:
                items.append(item)
        return items
