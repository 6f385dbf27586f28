"""
CraftCtrl - Password Reset Mail

Delivers reset links through the MailerSend HTTP API.

The link has the form <frontend>/change/<token>?server=<api> so the
dashboard knows which API instance issued the token.

Delivery never raises: the reset-request flow answers the same way
whether or not mail went out. Missing configuration is logged as an
error, transport and API failures likewise. Without a sender address
and API key the mailer runs in dev mode and logs the link instead.
"""

from html import escape
from typing import Optional
from urllib.parse import quote, urlencode

import httpx

from craftctrl.logging import get_logger


logger = get_logger(__name__)

MAILERSEND_URL = "https://api.mailersend.com/v1/email"
RESET_SUBJECT = "Reset your CraftCtrl password"


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class ResetMailer:
    """
    Sends password reset links.

    Args:
        api_url: Public base URL of this API
        frontend_url: Base URL of the dashboard
        sender_email: From address
        api_key: MailerSend API key
        http_client: Optional client to reuse (tests pass a mock transport)
    """

    def __init__(
        self,
        api_url: str,
        frontend_url: str,
        sender_email: str = "",
        api_key: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
        sender_name: str = "CraftCtrl",
    ):
        self.api_url = api_url.rstrip("/")
        self.frontend_url = frontend_url.rstrip("/")
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.api_key = api_key
        self._client = http_client

    @property
    def is_configured(self) -> bool:
        return bool(self.sender_email and self.api_key)

    def build_reset_link(self, token: str) -> str:
        query = urlencode({"server": self.api_url})
        return f"{self.frontend_url}/change/{quote(token, safe='')}?{query}"

    def render(
        self,
        username: str,
        link: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> tuple[str, str]:
        """Return (html, text) bodies of the reset mail."""
        ip = ip_address or "unknown"
        agent = user_agent or "unknown"

        text = (
            f"Hi {username},\n\n"
            "Someone requested a password reset for your CraftCtrl account.\n"
            f"Open this link within 60 minutes to choose a new password:\n{link}\n\n"
            f"Requested from {ip} ({agent}).\n"
            "If this wasn't you, you can ignore this message.\n"
        )

        html = (
            "<!DOCTYPE html><html><body>"
            f"<p>Hi {escape(username)},</p>"
            "<p>Someone requested a password reset for your CraftCtrl account.</p>"
            f'<p><a href="{escape(link, quote=True)}">Reset password</a></p>'
            "<p>The link expires in 60 minutes.</p>"
            f"<p>Requested from {escape(ip)} ({escape(agent)}).</p>"
            "<p>If this wasn't you, you can ignore this message.</p>"
            "</body></html>"
        )

        return html, text

    async def send_password_reset(
        self,
        email: str,
        username: str,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """
        Send the reset link to a user.

        Returns:
            True if the provider accepted the message (or dev mode logged it)
        """
        link = self.build_reset_link(token)
        html, text = self.render(username, link, ip_address, user_agent)

        if not self.is_configured:
            logger.error(
                "reset_mail_not_configured",
                to=_redact_email(email),
                missing_sender=not self.sender_email,
                missing_key=not self.api_key,
            )
            logger.info("reset_mail_dev_mode", to=_redact_email(email), link=link)
            return True

        payload = {
            "from": {"email": self.sender_email, "name": self.sender_name},
            "to": [{"email": email, "name": username}],
            "subject": RESET_SUBJECT,
            "html": html,
            "text": text,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            if self._client is not None:
                response = await self._client.post(MAILERSEND_URL, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(MAILERSEND_URL, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "reset_mail_rejected",
                to=_redact_email(email),
                status=e.response.status_code,
                body=e.response.text[:200],
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "reset_mail_transport_failed",
                to=_redact_email(email),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("reset_mail_sent", to=_redact_email(email))
        return True
