"""
Webhook notification sink for run summaries.
"""

from __future__ import annotations

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from dealbot.logging import get_logger

logger = get_logger(__name__)


class WebhookNotifier:
    """Posts ``{subject, body}`` to a webhook URL.

    Delivery is best-effort: failures after retries are logged, never raised.
    """

    def __init__(
        self,
        url: str,
        timeout_s: float = 12.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout_s = timeout_s
        self._transport = transport

    @retry(
        retry=retry_if_exception_type((httpx.TransportError, httpx.HTTPStatusError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        reraise=True,
    )
    async def _post(self, body: dict[str, str]) -> None:
        async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
            response = await client.post(self.url, json=body)
            response.raise_for_status()

    async def notify(self, subject: str, body: str) -> None:
        try:
            await self._post({"subject": subject, "body": body})
            logger.info("Notification sent", subject=subject)
        except httpx.HTTPError as e:
            logger.warning("Notification failed", subject=subject, error=str(e))
