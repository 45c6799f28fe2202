"""Operator actions on registrations, driven from the CLI.

These bypass capability tokens entirely; whoever can run them already has
the database. Cancelling still revokes every outstanding manage link so a
guest cannot keep editing a registration the operator closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .errors import NotFoundError
from .models import Registration, RegistrationToken
from .repositories import (
    DEFAULT_PAGE_SIZE,
    RegistrationPage,
    RegistrationStore,
    TokenStore,
)
from .utils import mask_email
from .validation import parse_registration

logger = logging.getLogger("uvicorn.error")

REGISTRATION_NOT_FOUND_MESSAGE = "Registration not found"


@dataclass(frozen=True)
class RegistrationDetail:
    registration: Registration
    active_token: RegistrationToken | None


def _require_registration(
    registrations: RegistrationStore, registration_id: str, *, confirmed: bool
) -> Registration:
    registration = registrations.find_by_id(registration_id)
    if registration is None or (confirmed and registration.is_cancelled):
        raise NotFoundError(REGISTRATION_NOT_FOUND_MESSAGE)
    return registration


def list_registrations(
    registrations: RegistrationStore,
    *,
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> RegistrationPage:
    return registrations.list_page(
        status=status, search=search, page=page, page_size=page_size
    )


def registration_detail(
    registrations: RegistrationStore,
    tokens: TokenStore,
    registration_id: str,
    *,
    now: datetime,
) -> RegistrationDetail:
    """Load a registration and the manage link currently able to act on it."""
    registration = _require_registration(
        registrations, registration_id, confirmed=False
    )
    return RegistrationDetail(
        registration=registration,
        active_token=tokens.find_active_for_registration(registration.id, now=now),
    )


def admin_edit_registration(
    registrations: RegistrationStore, registration_id: str, data: Any
) -> Registration:
    """Overwrite the guest-editable fields of a confirmed registration.

    Input goes through the same validation as guest edits. The manage link
    is left alone.
    """
    registration = _require_registration(
        registrations, registration_id, confirmed=True
    )
    fields = parse_registration(data)
    registrations.update(registration, fields)
    logger.info(
        "Admin edited registration: id=%s email=%s",
        registration.id,
        mask_email(registration.email),
    )
    return registration


def admin_cancel_registration(
    registrations: RegistrationStore, tokens: TokenStore, registration_id: str
) -> int:
    """Cancel a confirmed registration and revoke its manage links.

    Returns how many tokens were revoked.
    """
    registration = _require_registration(
        registrations, registration_id, confirmed=True
    )
    registrations.cancel(registration)
    revoked = tokens.revoke_all(registration.id)
    logger.info(
        "Admin cancelled registration: id=%s tokens_revoked=%d",
        registration.id,
        revoked,
    )
    return revoked
