"""Text-message delivery through an HTTP GET gateway.

The gateway URL is a template containing ``{phone}`` and ``{message}``
placeholders, for example ``https://sms.example/send?to={phone}&text={message}``.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from linkwatch.core.config import SmsConfig

logger = logging.getLogger(__name__)


class SmsSender:
    """Send a message to every configured phone number."""

    def __init__(self, config: SmsConfig, timeout: float = 10.0, transport: httpx.BaseTransport | None = None) -> None:
        self._config = config
        self._timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return self._config.enabled and bool(self._config.api_url)

    def build_url(self, phone: str, message: str) -> str:
        clean_phone = phone.strip().lstrip("+")
        return self._config.api_url.replace("{phone}", quote(clean_phone, safe="")).replace(
            "{message}", quote(message, safe="")
        )

    def send(self, phone: str, message: str) -> bool:
        if not self.enabled:
            logger.debug("sms disabled, message dropped")
            return False

        url = self.build_url(phone, message)
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.get(url)
        except httpx.HTTPError as exc:
            logger.error("sms delivery failed phone=%s error=%s", phone, exc)
            return False

        if response.status_code == 200:
            logger.info("sms sent phone=%s", phone)
            return True
        logger.warning("sms gateway returned status=%s phone=%s", response.status_code, phone)
        return False

    def send_to_all(self, message: str) -> bool:
        """Deliver ``message`` to all recipients; true when at least one succeeded."""

        if not self.enabled:
            logger.debug("sms disabled, message dropped")
            return False
        if not self._config.phone_numbers:
            logger.info("no phone numbers configured for sms notifications")
            return False

        delivered = sum(1 for phone in self._config.phone_numbers if self.send(phone, message))
        logger.info("sms delivered %d/%d", delivered, len(self._config.phone_numbers))
        return delivered > 0
