"""
HTTP reasoning runner.

Invokes hosted personas via ``POST {base_url}/agents/{agent_id}`` and decodes
their output. Models often wrap JSON in prose or code fences, so the body is
searched for the outermost JSON object.
"""

from __future__ import annotations

import re
from typing import Any

import httpx
import orjson
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from dealbot.exceptions import ProviderError, ReasoningError
from dealbot.logging import get_logger

logger = get_logger(__name__)

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def extract_json(text: str) -> Any | None:
    """Decode JSON from model text, tolerating fences and surrounding prose."""
    if not text:
        return None
    candidates = [text]
    fenced = _FENCE.search(text)
    if fenced:
        candidates.insert(0, fenced.group(1))
    for candidate in candidates:
        try:
            return orjson.loads(candidate.strip())
        except orjson.JSONDecodeError:
            start = candidate.find("{")
            end = candidate.rfind("}")
            if start == -1 or end <= start:
                continue
            try:
                return orjson.loads(candidate[start : end + 1])
            except orjson.JSONDecodeError:
                continue
    return None


class HttpReasoningRunner:
    """ReasoningRunner backed by a JSON HTTP service."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_s: float = 40.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
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
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _post(self, agent_id: str, body: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        response = await client.post(f"/agents/{agent_id}", json=body)
        response.raise_for_status()
        return response

    async def invoke(
        self,
        agent_id: str,
        stage_input: dict[str, Any],
        repair_context: str | None = None,
    ) -> Any:
        """Run one persona and return its decoded output.

        Raises:
            ProviderError: On transport failure or an error status.
            ReasoningError: When the response carries no decodable JSON.
        """
        body = {"input": stage_input, "repair_context": repair_context}
        try:
            response = await self._post(agent_id, body)
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                "Reasoning call failed",
                {"provider": "reasoning", "agent_id": agent_id,
                 "status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(
                "Reasoning call failed",
                {"provider": "reasoning", "agent_id": agent_id, "error": str(e)},
            ) from e

        try:
            data = response.json()
        except ValueError:
            data = response.text

        # Services either return the object directly or wrap text in {"output": ...}.
        if isinstance(data, dict) and "output" in data:
            data = data["output"]
        if isinstance(data, str):
            parsed = extract_json(data)
            if parsed is None:
                raise ReasoningError(
                    "Reasoning output is not JSON",
                    {"agent_id": agent_id, "reason": data[:200]},
                )
            data = parsed

        logger.debug("Reasoning call complete", agent_id=agent_id, repair=repair_context is not None)
        return data
