"""Development helpers for populating fake registrations."""

from __future__ import annotations

import random

from faker import Faker

from .config import settings
from .database import get_session
from .repositories import RegistrationFields, SqlRegistrationStore, SqlTokenStore
from .storage import init_db
from .tokens import generate_token
from .utils import utcnow
from .validation import StayOption

_notes = [
    "Vegetarian meals please",
    "Arriving late on the first night",
    "Bringing a dog",
    "Need a ground floor room",
    "",
    "",
]


def seed_fake_data(
    *,
    count: int = 20,
    cancelled_percentage: int = 15,
) -> dict[str, int]:
    """Populate the SQLite database with synthetic registrations.

    Each registration gets a token row, but raw tokens are discarded so seeded
    data can never be used to reach the manage endpoints.
    """
    if count < 0:
        raise ValueError("count must be >= 0")
    if not 0 <= cancelled_percentage <= 100:
        raise ValueError("cancelled_percentage must be between 0 and 100")

    init_db()
    fake = Faker()
    stats = {"registrations": 0, "cancelled": 0}

    with get_session() as session:
        registrations = SqlRegistrationStore(session)
        tokens = SqlTokenStore(session)
        for _ in range(count):
            fields = RegistrationFields(
                name=fake.name()[:200],
                email=fake.unique.email().lower(),
                stay=random.choice(list(StayOption)).value,
                adults_count=random.randint(1, 4),
                children_count=random.randint(0, 3),
                notes=random.choice(_notes) or None,
            )
            registration = registrations.create(fields)
            tokens.insert(
                registration.id,
                generate_token().hash,
                utcnow() + settings.token_ttl,
            )
            stats["registrations"] += 1
            if random.randint(1, 100) <= cancelled_percentage:
                registrations.cancel(registration)
                tokens.revoke_all(registration.id)
                stats["cancelled"] += 1

    return stats
