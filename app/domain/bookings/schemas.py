from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def to_camel(string: str) -> str:
    parts = string.split("_")
    return parts[0] + "".join(word.capitalize() for word in parts[1:])


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")


class MeetingData(CamelModel):
    """Booking details carried through the payment intent metadata."""

    start_time: datetime
    guest_email: str = Field(min_length=3, max_length=255)
    guest_name: str = Field(min_length=1, max_length=255)
    timezone: str = Field("UTC", min_length=1, max_length=64)
    guest_notes: str | None = Field(None, max_length=300)

    @field_validator("start_time")
    @classmethod
    def normalize_start_time(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("guest_email")
    @classmethod
    def validate_guest_email(cls, value: str) -> str:
        value = value.strip()
        local, _, domain = value.partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email address")
        return value

    @field_validator("guest_name")
    @classmethod
    def strip_guest_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Guest name is required")
        return value


class PaymentIntentRequest(CamelModel):
    event_id: str = Field(min_length=1, max_length=64)
    price: int
    meeting_data: MeetingData


class PaymentIntentResponse(CamelModel):
    client_secret: str


class MeetingRef(CamelModel):
    id: str


class MeetingStatusResponse(CamelModel):
    status: Literal["created", "pending"]
    meeting: MeetingRef | None = None
