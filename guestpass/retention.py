"""Data retention purges."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from .config import settings
from .database import get_session
from .repositories import (
    RegistrationStore,
    SqlRegistrationStore,
    SqlTokenStore,
    TokenStore,
)
from .utils import Clock, utcnow

# Use uvicorn's error logger so purge messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")

DEFAULT_CANCELLED_RETENTION = timedelta(days=180)


@dataclass(frozen=True)
class PurgeResult:
    purged_count: int


def purge_expired_tokens(tokens: TokenStore, *, now: datetime) -> PurgeResult:
    """Delete tokens that are both expired and revoked.

    Tokens that were never revoked are left alone even after expiry; they
    already fail resolution and stay as an audit trail.
    """
    purged = tokens.delete_expired_and_revoked(now=now)
    logger.info("Purged expired revoked tokens: purged=%d", purged)
    return PurgeResult(purged_count=purged)


def purge_cancelled_registrations(
    registrations: RegistrationStore,
    *,
    now: datetime,
    older_than: datetime | None = None,
    retention: timedelta = DEFAULT_CANCELLED_RETENTION,
) -> PurgeResult:
    """Delete cancelled registrations last updated before the cutoff.

    ``older_than`` overrides the default cutoff of ``now - retention``.
    """
    cutoff = older_than or now - retention
    purged = registrations.delete_cancelled_before(cutoff)
    logger.info(
        "Purged cancelled registrations: purged=%d older_than=%s",
        purged,
        cutoff.isoformat(),
    )
    return PurgeResult(purged_count=purged)


def run_retention_cycle(
    *,
    clock: Clock = utcnow,
    older_than: datetime | None = None,
    retention: timedelta | None = None,
) -> dict:
    """Run both purges in one transaction and return their counts."""
    now = clock()
    stats = {"tokens_purged": 0, "registrations_purged": 0}
    logger.info("Retention cycle started")
    with get_session() as session:
        # Registrations first: their tokens go with them.
        stats["registrations_purged"] = purge_cancelled_registrations(
            SqlRegistrationStore(session, clock=clock),
            now=now,
            older_than=older_than,
            retention=retention or settings.cancelled_retention,
        ).purged_count
        stats["tokens_purged"] = purge_expired_tokens(
            SqlTokenStore(session, clock=clock), now=now
        ).purged_count
    logger.info(
        "Retention cycle finished: registrations purged=%d, tokens purged=%d",
        stats["registrations_purged"],
        stats["tokens_purged"],
    )
    return stats
