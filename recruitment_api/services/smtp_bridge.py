"""
Notification sender posting e-mails to the SMTP bridge service.
"""

import logging
from typing import List, Optional

import requests

from recruitment_api.config import Settings, settings as default_settings
from recruitment_sync.errors import ExternalLookupError
from recruitment_sync.interfaces import NotificationSender

logger = logging.getLogger(__name__)


class SmtpBridgeSender(NotificationSender):
    """Sends plain notifications through the bridge's ``/send-email`` endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Api-Key": api_key})

    @classmethod
    def from_settings(cls, settings: Settings = default_settings) -> Optional["SmtpBridgeSender"]:
        """Sender for the configured bridge, None when no bridge is configured."""
        if not settings.smtp_bridge_url:
            return None
        return cls(
            base_url=settings.smtp_bridge_url,
            api_key=settings.smtp_bridge_api_key,
            timeout=settings.smtp_bridge_timeout,
        )

    def send(self, recipients: List[str], subject: str, body: str) -> None:
        """
        Send one e-mail to all recipients.

        Raises:
            ExternalLookupError: If the bridge is unreachable or reports an error.
        """
        payload = {
            "to": list(recipients),
            "subject": subject,
            "content": body,
            "highPrio": False,
        }
        try:
            response = self.session.post(f"{self.base_url}/send-email", json=payload, timeout=self.timeout)
            response.raise_for_status()
            result = response.json() if response.content else {}
        except (requests.RequestException, ValueError) as e:
            raise ExternalLookupError(f"failed to send email: {e}") from e

        if isinstance(result, dict) and result.get("error"):
            raise ExternalLookupError(f"smtp bridge error: {result['error']}")

        logger.info(f"Sent email '{subject}' to {len(recipients)} recipient(s)")
