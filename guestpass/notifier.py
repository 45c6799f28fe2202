"""Delivery of manage-link emails."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx

from .config import Settings
from .utils import mask_email

logger = logging.getLogger("uvicorn.error")

RESEND_API_URL = "https://api.resend.com/emails"


@dataclass(frozen=True)
class ManageLinkEmail:
    to: str
    manage_url: str = field(repr=False)
    guest_name: str
    registration_id: str
    event_name: str = ""
    event_date: str = ""


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class OutgoingEmail:
    to: str
    subject: str
    text: str = field(repr=False)


class EmailBackend(ABC):
    """Transport for rendered messages. Implementations never raise."""

    @abstractmethod
    def send(self, message: OutgoingEmail) -> DeliveryResult:
        pass


class LogEmailBackend(EmailBackend):
    """Records that a message would have gone out. The body is never logged."""

    def send(self, message: OutgoingEmail) -> DeliveryResult:
        logger.info(
            "Email not sent (log backend): to=%s subject=%r",
            mask_email(message.to),
            message.subject,
        )
        return DeliveryResult(success=True)


class OutboxEmailBackend(EmailBackend):
    """Keeps messages in memory, for tests and local development."""

    def __init__(self) -> None:
        self.messages: list[OutgoingEmail] = []
        self._lock = threading.Lock()

    def send(self, message: OutgoingEmail) -> DeliveryResult:
        with self._lock:
            self.messages.append(message)
        return DeliveryResult(success=True)

    def clear(self) -> None:
        with self._lock:
            self.messages.clear()


class ResendEmailBackend(EmailBackend):
    """Sends through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        from_address: str,
        *,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.api_key = api_key
        self.from_address = from_address
        self._client = client
        self.timeout = timeout

    def _post(self, client: httpx.Client, message: OutgoingEmail) -> httpx.Response:
        return client.post(
            RESEND_API_URL,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json={
                "from": self.from_address,
                "to": [message.to],
                "subject": message.subject,
                "text": message.text,
            },
            timeout=self.timeout,
        )

    def send(self, message: OutgoingEmail) -> DeliveryResult:
        if not self.api_key:
            return DeliveryResult(success=False, error="Resend API key is not configured")
        try:
            if self._client is not None:
                response = self._post(self._client, message)
            else:
                with httpx.Client() as client:
                    response = self._post(client, message)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Resend API error %s for %s",
                exc.response.status_code,
                mask_email(message.to),
            )
            return DeliveryResult(
                success=False, error=f"Resend API returned {exc.response.status_code}"
            )
        except httpx.HTTPError as exc:
            logger.error(
                "Failed to reach Resend for %s: %s",
                mask_email(message.to),
                type(exc).__name__,
            )
            return DeliveryResult(success=False, error=type(exc).__name__)
        logger.info("Email sent via Resend to %s", mask_email(message.to))
        return DeliveryResult(success=True)


def get_email_backend(settings: Settings) -> EmailBackend:
    if settings.email_backend == "log":
        return LogEmailBackend()
    if settings.email_backend == "outbox":
        return OutboxEmailBackend()
    if settings.email_backend == "resend":
        return ResendEmailBackend(
            api_key=settings.resend_api_key, from_address=settings.email_from
        )
    raise ValueError(f"Unknown email backend: {settings.email_backend}")


def render_manage_link(message: ManageLinkEmail) -> OutgoingEmail:
    event = message.event_name or "the event"
    lines = [
        f"Hi {message.guest_name},",
        "",
        f"Thanks for registering for {event}.",
    ]
    if message.event_date:
        lines.append(f"Date: {message.event_date}")
    lines.extend(
        [
            "",
            "Use this private link to view, change or cancel your registration:",
            message.manage_url,
            "",
            "Anyone with this link can manage your registration, so do not share it.",
            "Each time you save a change you will receive a new link and older",
            "links stop working.",
        ]
    )
    return OutgoingEmail(
        to=message.to,
        subject=f"Your registration for {event}",
        text="\n".join(lines),
    )


class Notifier:
    def __init__(self, backend: EmailBackend) -> None:
        self.backend = backend

    def send_manage_link_email(self, message: ManageLinkEmail) -> DeliveryResult:
        try:
            return self.backend.send(render_manage_link(message))
        except Exception as exc:
            logger.exception(
                "Email backend %s raised for registration %s",
                type(self.backend).__name__,
                message.registration_id,
            )
            return DeliveryResult(success=False, error=type(exc).__name__)
