"""Outbound email via the Resend HTTP API."""

from __future__ import annotations

import httpx
from loguru import logger

from taskbot.core.config.schema import MailConfig
from taskbot.core.errors import ActionExecutionFailure


class ResendMailer:
    """Async client for Resend ``POST /emails``.

    Parameters
    ----------
    config : MailConfig
        API key, sender address, base URL and timeout.
    transport : httpx.AsyncBaseTransport, optional
        Custom transport (tests use ``httpx.MockTransport``).
    """

    def __init__(self, config: MailConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport

    @property
    def from_address(self) -> str:
        return self.config.from_address

    async def send(
        self,
        to: str,
        subject: str,
        text: str,
        in_reply_to: str | None = None,
    ) -> str:
        """Send a plain-text email. Returns the provider message id.

        Raises ``ActionExecutionFailure`` on a non-2xx response.
        """
        payload: dict = {
            "from": self.config.from_address,
            "to": [to],
            "subject": subject,
            "text": text,
        }
        if in_reply_to:
            payload["headers"] = {"In-Reply-To": in_reply_to, "References": in_reply_to}

        async with httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            timeout=httpx.Timeout(self.config.timeout_s),
            headers={"Authorization": f"Bearer {self.config.api_key}"},
            transport=self._transport,
        ) as client:
            resp = await client.post("/emails", json=payload)
        if not resp.is_success:
            logger.warning(f"Resend send failed ({resp.status_code}): {resp.text[:200]}")
            raise ActionExecutionFailure(f"Mail provider returned {resp.status_code}")
        message_id = resp.json().get("id", "")
        logger.info(f"Email sent to {to}: {subject[:60]} (id={message_id})")
        return message_id
