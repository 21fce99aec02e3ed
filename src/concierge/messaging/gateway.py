"""Outbound message gateways.

The gateway is chosen once and injected into ``MessagingService``. A send
returns the provider's message sid; any failure surfaces as
``ProviderError``.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
import uuid
from abc import ABC, abstractmethod

from concierge.errors import ProviderError, ProviderTimeoutError

logger = logging.getLogger(__name__)

_TWILIO_API = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


def _whatsapp_address(e164: str) -> str:
    return e164 if e164.startswith("whatsapp:") else f"whatsapp:{e164}"


class MessageGateway(ABC):
    """Delivers one outbound message."""

    @abstractmethod
    def send(self, from_e164: str, to_e164: str, body: str) -> str:
        """Send *body* and return the provider message sid.

        Raises:
            ProviderError: The provider rejected the message or was unreachable.
        """


class TwilioGateway(MessageGateway):
    """WhatsApp delivery through the Twilio Messages REST API.

    Credentials come from ``TWILIO_ACCOUNT_SID`` / ``TWILIO_AUTH_TOKEN``;
    a configured *account_sid* takes precedence over the environment.
    """

    def __init__(self, account_sid: str = "", timeout: float = 15, status_callback_url: str = "") -> None:
        self.account_sid = account_sid or os.getenv("TWILIO_ACCOUNT_SID", "")
        self.timeout = timeout
        self.status_callback_url = status_callback_url

    def _auth_header(self) -> str:
        token = os.getenv("TWILIO_AUTH_TOKEN")
        if not self.account_sid or not token:
            raise ProviderError(
                "Twilio credentials not found. "
                "Set the TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN environment variables."
            )
        raw = f"{self.account_sid}:{token}".encode()
        return "Basic " + base64.b64encode(raw).decode("ascii")

    def send(self, from_e164: str, to_e164: str, body: str) -> str:
        form = {
            "From": _whatsapp_address(from_e164),
            "To": _whatsapp_address(to_e164),
            "Body": body,
        }
        if self.status_callback_url:
            form["StatusCallback"] = self.status_callback_url
        request = urllib.request.Request(
            _TWILIO_API.format(sid=self.account_sid),
            data=urllib.parse.urlencode(form).encode(),
            headers={
                "Authorization": self._auth_header(),
                "Content-Type": "application/x-www-form-urlencoded",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:300]
            raise ProviderError(f"Twilio rejected the message ({exc.code}): {detail}") from exc
        except TimeoutError as exc:
            raise ProviderTimeoutError(f"Twilio request timed out after {self.timeout}s") from exc
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise ProviderError(f"Twilio request failed: {exc}") from exc

        sid = payload.get("sid")
        if not sid:
            raise ProviderError("Twilio response did not include a message sid.")
        return sid


class ConsoleGateway(MessageGateway):
    """Dry-run gateway: logs the message and returns a synthetic sid."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, from_e164: str, to_e164: str, body: str) -> str:
        self.sent.append((from_e164, to_e164, body))
        logger.info("Dry-run send to %s: %s", to_e164, body[:80])
        return f"DRY{uuid.uuid4().hex}"
