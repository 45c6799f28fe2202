"""Registration lifecycle use cases.

A registration is ``CONFIRMED`` until it is cancelled; ``CANCELLED`` is
terminal. Every path that hands a guest a new manage link issues a fresh
capability token, and every successful self-service edit rotates the token
that authorised it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Protocol

from .errors import DeliveryError, NotFoundError
from .models import Registration
from .notifier import ManageLinkEmail, Notifier
from .repositories import RegistrationStore, TokenStore
from .resolver import CapabilityResolver
from .tokens import build_manage_url, generate_token
from .utils import Clock, mask_email, utcnow
from .validation import parse_registration

logger = logging.getLogger("uvicorn.error")

DEFAULT_TOKEN_TTL = timedelta(days=90)
DEFAULT_RESEND_MIN_DURATION = timedelta(milliseconds=150)


class Transaction(Protocol):
    def commit(self) -> None: ...

    def rollback(self) -> None: ...


@dataclass(frozen=True)
class RegisterResult:
    registration_id: str


@dataclass(frozen=True)
class UpdateResult:
    new_manage_url: str


@dataclass(frozen=True)
class ResendResult:
    success: bool = True


class RegistrationService:
    def __init__(
        self,
        registrations: RegistrationStore,
        tokens: TokenStore,
        notifier: Notifier,
        transaction: Transaction,
        *,
        base_url: str,
        token_ttl: timedelta = DEFAULT_TOKEN_TTL,
        resend_min_duration: timedelta = DEFAULT_RESEND_MIN_DURATION,
        event_name: str = "",
        event_date: str = "",
        clock: Clock = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registrations = registrations
        self.tokens = tokens
        self.notifier = notifier
        self.transaction = transaction
        self.base_url = base_url
        self.token_ttl = token_ttl
        self.resend_min_duration = resend_min_duration
        self.event_name = event_name
        self.event_date = event_date
        self.resolver = CapabilityResolver(tokens, clock=clock)
        self._clock = clock
        self._sleep = sleep
        self._monotonic = monotonic

    # -- helpers -----------------------------------------------------------

    def _issue_token(self, registration_id: str) -> str:
        pair = generate_token()
        self.tokens.insert(registration_id, pair.hash, self._clock() + self.token_ttl)
        return build_manage_url(self.base_url, pair.raw)

    def _commit(self) -> None:
        try:
            self.transaction.commit()
        except Exception:
            self.transaction.rollback()
            raise

    def _send_link(self, registration: Registration, manage_url: str):
        return self.notifier.send_manage_link_email(
            ManageLinkEmail(
                to=registration.email,
                manage_url=manage_url,
                guest_name=registration.name,
                registration_id=registration.id,
                event_name=self.event_name,
                event_date=self.event_date,
            )
        )

    def _load_confirmed(self, registration_id: str) -> Registration:
        registration = self.registrations.find_by_id(registration_id)
        if registration is None or registration.is_cancelled:
            raise NotFoundError()
        return registration

    # -- use cases ---------------------------------------------------------

    def register_guest(self, data: Any) -> RegisterResult:
        """Create a confirmed registration and email its first manage link.

        The raw token only ever leaves through the email; the caller gets the
        registration id.
        """
        fields = parse_registration(data)
        try:
            registration = self.registrations.create(fields)
            manage_url = self._issue_token(registration.id)
        except Exception:
            self.transaction.rollback()
            raise
        self._commit()

        delivery = self._send_link(registration, manage_url)
        if not delivery.success:
            logger.error(
                "Manage link email failed for new registration %s (%s): %s",
                registration.id,
                mask_email(registration.email),
                delivery.error,
            )
            raise DeliveryError()

        logger.info(
            "Registration created: id=%s email=%s",
            registration.id,
            mask_email(registration.email),
        )
        return RegisterResult(registration_id=registration.id)

    def get_registration_by_token(self, raw_token: str) -> Registration:
        found = self.resolver.require(raw_token)
        registration = self._load_confirmed(found.registration_id)
        logger.info("Registration viewed: id=%s", registration.id)
        return registration

    def update_registration_by_token(self, raw_token: str, data: Any) -> UpdateResult:
        """Apply a guest edit and rotate the manage link.

        The replacement token is inserted before the old one is revoked and
        both land in the same commit as the field changes.
        """
        found = self.resolver.require(raw_token)
        fields = parse_registration(data)
        registration = self._load_confirmed(found.registration_id)

        try:
            self.registrations.update(registration, fields)
            new_manage_url = self._issue_token(registration.id)
            self.tokens.revoke(found.token_id)
        except Exception:
            self.transaction.rollback()
            logger.exception(
                "Update with token rotation failed for registration %s; rolled back",
                registration.id,
            )
            raise
        self._commit()

        delivery = self._send_link(registration, new_manage_url)
        if not delivery.success:
            logger.error(
                "Registration %s updated but the new manage link was not delivered "
                "to %s: %s",
                registration.id,
                mask_email(registration.email),
                delivery.error,
            )
            raise DeliveryError()

        logger.info(
            "Registration updated: id=%s email=%s",
            registration.id,
            mask_email(registration.email),
        )
        return UpdateResult(new_manage_url=new_manage_url)

    def cancel_registration_by_token(self, raw_token: str) -> None:
        found = self.resolver.require(raw_token)
        registration = self._load_confirmed(found.registration_id)
        try:
            self.registrations.cancel(registration)
            revoked = self.tokens.revoke_all(registration.id)
        except Exception:
            self.transaction.rollback()
            raise
        self._commit()
        logger.info(
            "Registration cancelled: id=%s tokens_revoked=%d", registration.id, revoked
        )

    def resend_manage_link(self, email: str) -> ResendResult:
        """Email a fresh manage link if ``email`` has a confirmed registration.

        The result, and the minimum time taken, are the same whether or not
        the address is known, the registration is cancelled, or something
        fails along the way.
        """
        started = self._monotonic()
        try:
            self._resend(email)
        except Exception:
            self.transaction.rollback()
            logger.exception("Resend manage link failed; returning uniform response")
        finally:
            remaining = self.resend_min_duration.total_seconds() - (
                self._monotonic() - started
            )
            if remaining > 0:
                self._sleep(remaining)
        return ResendResult(success=True)

    def _resend(self, email: str) -> None:
        registration = self.registrations.find_by_email(email)
        if registration is None or registration.is_cancelled:
            logger.debug("Resend requested with no confirmed registration to notify")
            return

        revoked = self.tokens.revoke_all(registration.id)
        manage_url = self._issue_token(registration.id)
        self._commit()

        delivery = self._send_link(registration, manage_url)
        if not delivery.success:
            logger.error(
                "Resent manage link was not delivered for registration %s (%s): %s",
                registration.id,
                mask_email(registration.email),
                delivery.error,
            )
            return
        logger.info(
            "Manage link resent: id=%s email=%s tokens_revoked=%d",
            registration.id,
            mask_email(registration.email),
            revoked,
        )
