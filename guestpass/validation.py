"""Guest-editable field constraints."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .repositories import RegistrationFields


class StayOption(str, Enum):
    FRI_SAT = "FRI_SAT"
    SAT_SUN = "SAT_SUN"
    FRI_SUN = "FRI_SUN"


class RegistrationInput(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=200)
    email: EmailStr
    stay: StayOption
    adults_count: int = Field(ge=1, le=10, strict=True)
    children_count: int = Field(ge=0, le=10, strict=True)
    notes: str | None = Field(default=None, max_length=500)

    @field_validator("email")
    @classmethod
    def _lowercase_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("notes")
    @classmethod
    def _blank_notes_to_none(cls, value: str | None) -> str | None:
        return value or None

    def to_fields(self) -> RegistrationFields:
        return RegistrationFields(
            name=self.name,
            email=self.email,
            stay=self.stay.value,
            adults_count=self.adults_count,
            children_count=self.children_count,
            notes=self.notes,
        )


class ResendLinkInput(BaseModel):
    email: EmailStr


def field_errors(exc: PydanticValidationError) -> dict[str, str]:
    """Flatten pydantic errors into ``{"field.path": "message"}``."""
    fields: dict[str, str] = {}
    for error in exc.errors():
        key = ".".join(str(part) for part in error.get("loc", ())) or "body"
        fields.setdefault(key, error.get("msg", "Invalid value"))
    return fields


def parse_registration(data: Any) -> RegistrationFields:
    if isinstance(data, RegistrationInput):
        return data.to_fields()
    try:
        parsed = RegistrationInput.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError("Validation failed", field_errors(exc)) from exc
    return parsed.to_fields()
