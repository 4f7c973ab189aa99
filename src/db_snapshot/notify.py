"""Best-effort webhook notifications (Slack-compatible ``{"text": ...}``).

A notification failure never fails a pipeline run: errors are logged and
``send()`` returns ``False``.
"""

import logging

import httpx

from db_snapshot.config import NotifyConfig

logger = logging.getLogger(__name__)


class Notifier:
    """Post run outcomes to a chat webhook.

    Args:
        webhook_url: Incoming-webhook URL.  ``None`` disables sending.
        timeout: Request timeout in seconds.
        transport: Optional ``httpx`` transport (tests use ``MockTransport``).
    """

    def __init__(
        self,
        webhook_url: str | None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.webhook_url = webhook_url or None
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config: NotifyConfig) -> "Notifier":
        return cls(config.webhook_url, timeout=config.timeout_seconds)

    @property
    def enabled(self) -> bool:
        return self.webhook_url is not None

    async def send(self, text: str) -> bool:
        """Deliver ``text``.  Returns ``True`` on a 2xx response."""
        if not self.enabled:
            logger.debug("No webhook configured; notification skipped")
            return False
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json={"text": text})
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Notification failed: {e}")
            return False
        return True
