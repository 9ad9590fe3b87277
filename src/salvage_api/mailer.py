from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from salvage.bill_of_sale import BillOfSale

logger = logging.getLogger(__name__)


@dataclass
class EmailResult:
    recipient: str
    success: bool = False
    message_id: str | None = None
    error: str | None = None


class BrevoMailer:
    """Async client for the Brevo transactional email API.

    Endpoint: POST /v3/smtp/email with an ``api-key`` header. Without an API key
    and a sender address every send returns a failed result instead of raising.
    """

    def __init__(
        self,
        api_key: str,
        sender_email: str,
        sender_name: str = "Salvage Yard Records",
        base_url: str = "https://api.brevo.com",
    ) -> None:
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.base_url = base_url.rstrip("/")
        self._enabled = bool(api_key and sender_email)

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def send(
        self,
        *,
        to_email: str,
        subject: str,
        html: str,
        to_name: str = "",
        attachments: list[dict[str, str]] | None = None,
    ) -> EmailResult:
        if not self._enabled:
            return EmailResult(recipient=to_email, error="brevo_not_configured")
        if not to_email:
            return EmailResult(recipient=to_email, error="no_recipient")

        payload: dict[str, Any] = {
            "sender": {"name": self.sender_name, "email": self.sender_email},
            "to": [{"email": to_email, "name": to_name or to_email}],
            "subject": subject,
            "htmlContent": html,
        }
        if attachments:
            payload["attachment"] = attachments

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                resp = await client.post(
                    f"{self.base_url}/v3/smtp/email",
                    json=payload,
                    headers={"api-key": self.api_key, "Accept": "application/json"},
                )
                resp.raise_for_status()
            data = resp.json()
            logger.info("Brevo accepted email to %s", to_email)
            return EmailResult(recipient=to_email, success=True, message_id=data.get("messageId"))
        except Exception as exc:
            logger.warning("Brevo send to %s failed: %s", to_email, exc)
            return EmailResult(recipient=to_email, error=str(exc))

    async def send_bill_of_sale(self, document: BillOfSale, to_email: str, to_name: str = "") -> EmailResult:
        html = document.render_html()
        attachment = {
            "name": document.html_filename,
            "content": base64.b64encode(html.encode("utf-8")).decode("ascii"),
        }
        return await self.send(
            to_email=to_email,
            to_name=to_name,
            subject=f"MV2459 Junked Vehicle Bill of Sale - VIN {document.vin}",
            html=html,
            attachments=[attachment],
        )
