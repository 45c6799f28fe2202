"""Persistence contracts and their SQLAlchemy implementations.

The lifecycle and retention code only depend on the ``TokenStore`` and
``RegistrationStore`` protocols. The ``Sql*`` classes flush but never commit;
the caller owns the transaction.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Sequence

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.orm import Session

from .models import (
    STATUS_CANCELLED,
    STATUS_CONFIRMED,
    Registration,
    RegistrationToken,
)
from .utils import utcnow

DEFAULT_PAGE_SIZE = 20


@dataclass(frozen=True)
class RegistrationFields:
    name: str
    email: str
    stay: str
    adults_count: int
    children_count: int
    notes: str | None = None


@dataclass(frozen=True)
class RegistrationPage:
    items: list[Registration]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return max(math.ceil(self.total / self.page_size), 1)


class TokenStore(Protocol):
    def insert(
        self, registration_id: str, token_hash: str, expires_at: datetime
    ) -> RegistrationToken: ...

    def find_valid_by_hash(
        self, token_hash: str, *, now: datetime
    ) -> RegistrationToken | None: ...

    def find_active_for_registration(
        self, registration_id: str, *, now: datetime
    ) -> RegistrationToken | None: ...

    def revoke(self, token_id: str) -> None: ...

    def revoke_all(self, registration_id: str) -> int: ...

    def delete_expired_and_revoked(self, *, now: datetime) -> int: ...


class RegistrationStore(Protocol):
    def create(self, fields: RegistrationFields) -> Registration: ...

    def find_by_id(self, registration_id: str) -> Registration | None: ...

    def find_by_email(self, email: str) -> Registration | None: ...

    def update(
        self, registration: Registration, fields: RegistrationFields
    ) -> Registration: ...

    def cancel(self, registration: Registration) -> Registration: ...

    def delete_cancelled_before(self, cutoff: datetime) -> int: ...

    def list_all(self) -> Sequence[Registration]: ...

    def count_by_status(self) -> dict[str, int]: ...

    def list_page(
        self,
        *,
        status: str | None = None,
        search: str | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> RegistrationPage: ...


class SqlTokenStore:
    def __init__(self, session: Session, *, clock=utcnow) -> None:
        self.session = session
        self._clock = clock

    def insert(
        self, registration_id: str, token_hash: str, expires_at: datetime
    ) -> RegistrationToken:
        token = RegistrationToken(
            registration_id=registration_id,
            token_hash=token_hash,
            expires_at=expires_at,
            is_revoked=False,
            created_at=self._clock(),
        )
        self.session.add(token)
        self.session.flush()
        return token

    def find_valid_by_hash(
        self, token_hash: str, *, now: datetime
    ) -> RegistrationToken | None:
        stmt = select(RegistrationToken).where(
            RegistrationToken.token_hash == token_hash,
            RegistrationToken.is_revoked.is_(False),
            RegistrationToken.expires_at > now,
        )
        return self.session.scalars(stmt).first()

    def find_active_for_registration(
        self, registration_id: str, *, now: datetime
    ) -> RegistrationToken | None:
        stmt = (
            select(RegistrationToken)
            .where(
                RegistrationToken.registration_id == registration_id,
                RegistrationToken.is_revoked.is_(False),
                RegistrationToken.expires_at > now,
            )
            .order_by(RegistrationToken.created_at.desc())
        )
        return self.session.scalars(stmt).first()

    def revoke(self, token_id: str) -> None:
        self.session.execute(
            update(RegistrationToken)
            .where(RegistrationToken.id == token_id)
            .values(is_revoked=True)
            .execution_options(synchronize_session="fetch")
        )
        self.session.flush()

    def revoke_all(self, registration_id: str) -> int:
        result = self.session.execute(
            update(RegistrationToken)
            .where(
                RegistrationToken.registration_id == registration_id,
                RegistrationToken.is_revoked.is_(False),
            )
            .values(is_revoked=True)
            .execution_options(synchronize_session="fetch")
        )
        self.session.flush()
        return result.rowcount or 0

    def delete_expired_and_revoked(self, *, now: datetime) -> int:
        result = self.session.execute(
            delete(RegistrationToken)
            .where(
                RegistrationToken.expires_at < now,
                RegistrationToken.is_revoked.is_(True),
            )
            .execution_options(synchronize_session=False)
        )
        self.session.flush()
        return result.rowcount or 0


class SqlRegistrationStore:
    def __init__(self, session: Session, *, clock=utcnow) -> None:
        self.session = session
        self._clock = clock

    def create(self, fields: RegistrationFields) -> Registration:
        now = self._clock()
        registration = Registration(
            name=fields.name,
            email=fields.email,
            stay=fields.stay,
            adults_count=fields.adults_count,
            children_count=fields.children_count,
            notes=fields.notes,
            status=STATUS_CONFIRMED,
            created_at=now,
            updated_at=now,
        )
        self.session.add(registration)
        self.session.flush()
        return registration

    def find_by_id(self, registration_id: str) -> Registration | None:
        return self.session.get(Registration, registration_id)

    def find_by_email(self, email: str) -> Registration | None:
        """Return the newest registration for ``email``, confirmed ones first."""
        normalized = (email or "").strip().lower()
        if not normalized:
            return None
        stmt = (
            select(Registration)
            .where(func.lower(Registration.email) == normalized)
            .order_by(
                case((Registration.status == STATUS_CONFIRMED, 0), else_=1),
                Registration.created_at.desc(),
            )
        )
        return self.session.scalars(stmt).first()

    def update(
        self, registration: Registration, fields: RegistrationFields
    ) -> Registration:
        registration.name = fields.name
        registration.email = fields.email
        registration.stay = fields.stay
        registration.adults_count = fields.adults_count
        registration.children_count = fields.children_count
        registration.notes = fields.notes
        registration.updated_at = self._clock()
        self.session.add(registration)
        self.session.flush()
        return registration

    def cancel(self, registration: Registration) -> Registration:
        registration.status = STATUS_CANCELLED
        registration.updated_at = self._clock()
        self.session.add(registration)
        self.session.flush()
        return registration

    def delete_cancelled_before(self, cutoff: datetime) -> int:
        # Tokens go with their registration through ON DELETE CASCADE.
        result = self.session.execute(
            delete(Registration)
            .where(
                Registration.status == STATUS_CANCELLED,
                Registration.updated_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.flush()
        return result.rowcount or 0

    def list_all(self) -> Sequence[Registration]:
        stmt = select(Registration).order_by(Registration.created_at.desc())
        return self.session.scalars(stmt).all()

    def count_by_status(self) -> dict[str, int]:
        counts = {STATUS_CONFIRMED: 0, STATUS_CANCELLED: 0}
        rows = self.session.execute(
            select(Registration.status, func.count()).group_by(Registration.status)
        ).all()
        for status, count in rows:
            counts[status] = count
        return counts

    def list_page(
        self,
        *,
        status: str | None = None,
        search: str | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> RegistrationPage:
        """Return one page of registrations, newest first.

        ``search`` matches a case-insensitive substring of name or email.
        """
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be >= 1")
        conditions = []
        if status:
            conditions.append(Registration.status == status)
        term = (search or "").strip().lower()
        if term:
            pattern = f"%{term}%"
            conditions.append(
                or_(
                    func.lower(Registration.name).like(pattern),
                    func.lower(Registration.email).like(pattern),
                )
            )
        total = self.session.scalar(
            select(func.count()).select_from(Registration).where(*conditions)
        )
        stmt = (
            select(Registration)
            .where(*conditions)
            .order_by(Registration.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return RegistrationPage(
            items=list(self.session.scalars(stmt)),
            total=total or 0,
            page=page,
            page_size=page_size,
        )
