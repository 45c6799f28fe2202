"""Turn a raw capability token into the registration it grants access to."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import NotFoundError
from .repositories import TokenStore
from .tokens import hash_token
from .utils import Clock, utcnow


@dataclass(frozen=True)
class Found:
    token_id: str
    registration_id: str


class NotFound:
    """Single outcome for unknown, revoked and expired tokens alike."""

    _instance: NotFound | None = None

    def __new__(cls) -> NotFound:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND = NotFound()

Resolution = Found | NotFound


class CapabilityResolver:
    def __init__(self, tokens: TokenStore, *, clock: Clock = utcnow) -> None:
        self.tokens = tokens
        self._clock = clock

    def resolve(self, raw_token: str) -> Resolution:
        # One lookup with every validity condition in the predicate; there is
        # no second query that could tell the failure causes apart.
        record = self.tokens.find_valid_by_hash(
            hash_token(raw_token or ""), now=self._clock()
        )
        if record is None:
            return NOT_FOUND
        return Found(token_id=record.id, registration_id=record.registration_id)

    def require(self, raw_token: str) -> Found:
        resolution = self.resolve(raw_token)
        if not isinstance(resolution, Found):
            raise NotFoundError()
        return resolution
