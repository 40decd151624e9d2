"""
Pydantic models for command validation and query responses.

Command schemas are evaluated before a transaction begins; a failure is
reported as an ``invalid`` error and nothing is written.
"""

import enum
import re
import datetime as dt
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from carnival_hub.utils.constants import (
    AustralianState,
    NotificationCategory,
    NOTIFICATION_TYPES,
    MAX_ALTERNATE_NAME_LENGTH,
    MAX_CONTACT_PHONE_LENGTH,
    MAX_PLAYER_COUNT,
    MAX_REGISTRATION_NOTES_LENGTH,
    MAX_SPECIAL_REQUIREMENTS_LENGTH,
    MAX_TEAM_NAME_LENGTH,
    MIN_ALTERNATE_NAME_LENGTH,
)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _strip_or_none(value):
    """Trim strings; blank strings become None."""
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def normalise_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().lower()
    if not value:
        return None
    if not _EMAIL_RE.match(value):
        raise ValueError("Invalid email address")
    return value


# --- Enums ---


class LeaveAction(str, enum.Enum):
    """What a primary delegate does with their club when leaving it."""

    TRANSFER = "transfer"
    DEACTIVATE = "deactivate"
    AVAILABLE = "available"


# --- Carnival commands ---


class DrawFile(BaseModel):
    """Uploaded draw document (the web layer owns the file)."""

    path: str = Field(min_length=1, max_length=500)
    original_name: str = Field(min_length=1, max_length=255)
    uploaded_at: Optional[dt.datetime] = None


class CarnivalFields(BaseModel):
    """Editable carnival fields. Unset fields are left untouched on update."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    state: Optional[AustralianState] = None
    location_address: Optional[str] = Field(default=None, max_length=500)
    organiser_contact_name: Optional[str] = Field(default=None, max_length=200)
    organiser_contact_email: Optional[str] = Field(default=None, max_length=255)
    organiser_contact_phone: Optional[str] = Field(default=None, max_length=30)
    schedule_details: Optional[str] = None
    registration_link: Optional[str] = Field(default=None, max_length=500)
    fees_description: Optional[str] = None
    facebook_url: Optional[str] = Field(default=None, max_length=500)
    instagram_url: Optional[str] = Field(default=None, max_length=500)
    twitter_url: Optional[str] = Field(default=None, max_length=500)
    website_url: Optional[str] = Field(default=None, max_length=500)
    logo_path: Optional[str] = Field(default=None, max_length=500)
    promotional_images: Optional[List[str]] = None
    draw_files: Optional[List[DrawFile]] = None

    @field_validator(
        "title",
        "location_address",
        "organiser_contact_name",
        "organiser_contact_phone",
        "schedule_details",
        "registration_link",
        "fees_description",
        "facebook_url",
        "instagram_url",
        "twitter_url",
        "website_url",
        "logo_path",
        mode="before",
    )
    @classmethod
    def strip_text(cls, value):
        return _strip_or_none(value)

    @field_validator("organiser_contact_email", mode="before")
    @classmethod
    def check_email(cls, value):
        return normalise_email(_strip_or_none(value))

    @model_validator(mode="after")
    def check_dates(self):
        if self.date and self.end_date and self.end_date < self.date:
            raise ValueError("End date cannot be before the start date")
        return self


class CarnivalCreate(CarnivalFields):
    """New manually entered carnival. Title and date are required."""

    title: str = Field(min_length=1, max_length=200)
    date: dt.date

    @field_validator("title", mode="before")
    @classmethod
    def require_title(cls, value):
        value = _strip_or_none(value)
        if value is None:
            raise ValueError("Title is required")
        return value


class CarnivalUpdate(CarnivalFields):
    """Partial carnival update."""


# --- Attendance commands ---


class RegistrationFields(BaseModel):
    """Attendance registration fields, trimmed before length checks."""

    player_count: Optional[int] = Field(default=None, ge=0, le=MAX_PLAYER_COUNT)
    team_name: Optional[str] = Field(default=None, max_length=MAX_TEAM_NAME_LENGTH)
    contact_person: Optional[str] = Field(default=None, max_length=200)
    contact_email: Optional[str] = Field(default=None, max_length=255)
    contact_phone: Optional[str] = Field(default=None, max_length=MAX_CONTACT_PHONE_LENGTH)
    special_requirements: Optional[str] = Field(
        default=None, max_length=MAX_SPECIAL_REQUIREMENTS_LENGTH
    )
    registration_notes: Optional[str] = Field(
        default=None, max_length=MAX_REGISTRATION_NOTES_LENGTH
    )
    payment_amount: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    is_paid: Optional[bool] = None

    @field_validator(
        "team_name",
        "contact_person",
        "contact_phone",
        "special_requirements",
        "registration_notes",
        mode="before",
    )
    @classmethod
    def strip_text(cls, value):
        return _strip_or_none(value)

    @field_validator("contact_email", mode="before")
    @classmethod
    def check_email(cls, value):
        return normalise_email(_strip_or_none(value))


class RegistrationUpdate(RegistrationFields):
    """Partial registration update."""


# --- Club commands ---


class ClubFields(BaseModel):
    club_name: Optional[str] = Field(default=None, min_length=2, max_length=200)
    state: Optional[AustralianState] = None
    location: Optional[str] = Field(default=None, max_length=200)
    contact_email: Optional[str] = Field(default=None, max_length=255)
    contact_phone: Optional[str] = Field(default=None, max_length=30)
    contact_person: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = None
    logo_path: Optional[str] = Field(default=None, max_length=500)
    facebook_url: Optional[str] = Field(default=None, max_length=500)
    instagram_url: Optional[str] = Field(default=None, max_length=500)
    twitter_url: Optional[str] = Field(default=None, max_length=500)
    website_url: Optional[str] = Field(default=None, max_length=500)

    @field_validator(
        "club_name",
        "location",
        "contact_phone",
        "contact_person",
        "description",
        "logo_path",
        "facebook_url",
        "instagram_url",
        "twitter_url",
        "website_url",
        mode="before",
    )
    @classmethod
    def strip_text(cls, value):
        return _strip_or_none(value)

    @field_validator("contact_email", mode="before")
    @classmethod
    def check_email(cls, value):
        return normalise_email(_strip_or_none(value))


class ClubCreate(ClubFields):
    """A new club; name and state are required."""

    club_name: str = Field(min_length=2, max_length=200)
    state: AustralianState


class ClubCreateOnBehalf(ClubCreate):
    """Club created by a delegate for another club's representative."""

    invite_email: str = Field(max_length=255)
    custom_message: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("invite_email", mode="before")
    @classmethod
    def check_invite_email(cls, value):
        value = normalise_email(_strip_or_none(value))
        if value is None:
            raise ValueError("Invite email is required")
        return value

    @field_validator("custom_message", mode="before")
    @classmethod
    def strip_message(cls, value):
        return _strip_or_none(value)


class AlternateNameInput(BaseModel):
    alternate_name: str = Field(
        min_length=MIN_ALTERNATE_NAME_LENGTH, max_length=MAX_ALTERNATE_NAME_LENGTH
    )

    @field_validator("alternate_name", mode="before")
    @classmethod
    def strip_name(cls, value):
        if isinstance(value, str):
            return value.strip()
        return value


class DelegateInvite(BaseModel):
    email: str

    @field_validator("email", mode="before")
    @classmethod
    def check_email(cls, value):
        value = normalise_email(_strip_or_none(value))
        if value is None:
            raise ValueError("Email is required")
        return value


class InvitationAcceptance(BaseModel):
    """Details supplied by the person accepting a delegate invitation."""

    email: str
    display_name: str = Field(min_length=1, max_length=200)
    password: Optional[str] = Field(default=None, min_length=8, max_length=128)
    phone: Optional[str] = Field(default=None, max_length=30)

    @field_validator("email", mode="before")
    @classmethod
    def check_email(cls, value):
        value = normalise_email(_strip_or_none(value))
        if value is None:
            raise ValueError("Email is required")
        return value

    @field_validator("display_name", "phone", mode="before")
    @classmethod
    def strip_text(cls, value):
        return _strip_or_none(value)


class LeaveClubRequest(BaseModel):
    """How a delegate leaves their club."""

    action: Optional[LeaveAction] = None
    target_user_id: Optional[int] = None
    confirmed: bool = False

    @model_validator(mode="after")
    def check_target(self):
        if self.action == LeaveAction.TRANSFER and self.target_user_id is None:
            raise ValueError("A target delegate is required to transfer the primary role")
        return self


# --- Subscriptions ---


class SubscriptionRequest(BaseModel):
    email: str
    states: List[AustralianState] = Field(min_length=1)
    notification_types: List[NotificationCategory] = Field(
        default_factory=lambda: [NotificationCategory(value) for value in NOTIFICATION_TYPES]
    )
    source: Optional[str] = Field(default="homepage", max_length=50)

    @field_validator("email", mode="before")
    @classmethod
    def check_email(cls, value):
        value = normalise_email(_strip_or_none(value))
        if value is None:
            raise ValueError("Email is required")
        return value

    @field_validator("states", "notification_types", mode="after")
    @classmethod
    def dedupe(cls, values):
        seen = []
        for value in values:
            if value not in seen:
                seen.append(value)
        return seen


# --- Ingest ---


class ExternalEvent(BaseModel):
    """One event as delivered by an external provider."""

    model_config = ConfigDict(extra="ignore")
    external_event_id: str = Field(min_length=1, max_length=100)
    title: str = Field(min_length=1, max_length=200)
    date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    state: Optional[AustralianState] = None
    location_address: Optional[str] = Field(default=None, max_length=500)
    schedule_details: Optional[str] = None
    organiser_contact_name: Optional[str] = Field(default=None, max_length=200)
    organiser_contact_email: Optional[str] = Field(default=None, max_length=255)
    organiser_contact_phone: Optional[str] = Field(default=None, max_length=30)
    registration_link: Optional[str] = Field(default=None, max_length=500)

    @field_validator("external_event_id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        if isinstance(value, int):
            value = str(value)
        return _strip_or_none(value)

    @field_validator(
        "title",
        "location_address",
        "schedule_details",
        "organiser_contact_name",
        "organiser_contact_phone",
        "registration_link",
        mode="before",
    )
    @classmethod
    def strip_text(cls, value):
        return _strip_or_none(value)

    @field_validator("organiser_contact_email", mode="before")
    @classmethod
    def lower_email(cls, value):
        value = _strip_or_none(value)
        return value.lower() if isinstance(value, str) else value

    @field_validator("state", mode="before")
    @classmethod
    def upper_state(cls, value):
        value = _strip_or_none(value)
        return value.upper() if isinstance(value, str) else value

    @field_validator("date", "end_date", mode="before")
    @classmethod
    def parse_local_date(cls, value):
        """Feeds use ISO dates or Australian day-first dates (19/07/2025)."""
        value = _strip_or_none(value)
        if isinstance(value, str) and "/" in value:
            try:
                return dt.datetime.strptime(value, "%d/%m/%Y").date()
            except ValueError:
                raise ValueError(f"Unrecognised date {value!r}")
        return value


# --- Query filters ---


class CarnivalFilters(BaseModel):
    state: Optional[AustralianState] = None
    upcoming: bool = False
    external_only: bool = False
    text: Optional[str] = None

    @field_validator("text", mode="before")
    @classmethod
    def strip_text(cls, value):
        return _strip_or_none(value)


class ClubFilters(BaseModel):
    state: Optional[AustralianState] = None
    text: Optional[str] = None

    @field_validator("text", mode="before")
    @classmethod
    def strip_text(cls, value):
        return _strip_or_none(value)


# --- Responses ---


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    email: str
    display_name: str
    phone: Optional[str] = None
    club_id: Optional[int] = None
    is_primary_delegate: bool
    is_admin: bool
    is_active: bool


class CarnivalResponse(BaseModel):
    """Carnival as shown to the public."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    title: str
    date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    state: Optional[str] = None
    location_address: Optional[str] = None
    organiser_contact_name: Optional[str] = None
    organiser_contact_email: Optional[str] = None
    organiser_contact_phone: Optional[str] = None
    schedule_details: Optional[str] = None
    registration_link: Optional[str] = None
    fees_description: Optional[str] = None
    facebook_url: Optional[str] = None
    instagram_url: Optional[str] = None
    twitter_url: Optional[str] = None
    website_url: Optional[str] = None
    logo_path: Optional[str] = None
    promotional_images: List[str] = []
    draw_files: List[dict] = []
    created_by_user_id: Optional[int] = None
    external_event_id: Optional[str] = None
    is_manually_entered: bool
    is_active: bool

    @property
    def is_ownerless(self) -> bool:
        return self.created_by_user_id is None


class RegistrationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    carnival_id: int
    club_id: int
    club_name: Optional[str] = None
    player_count: Optional[int] = None
    team_name: Optional[str] = None
    contact_person: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    special_requirements: Optional[str] = None
    registration_notes: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    is_paid: bool
    payment_date: Optional[dt.datetime] = None
    display_order: int
    registration_date: dt.datetime
    is_active: bool


class AlternateNameResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    club_id: int
    alternate_name: str


class DelegateSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    display_name: str
    email: str
    is_primary_delegate: bool


class ClubResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    club_name: str
    state: str
    location: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_person: Optional[str] = None
    description: Optional[str] = None
    logo_path: Optional[str] = None
    facebook_url: Optional[str] = None
    instagram_url: Optional[str] = None
    twitter_url: Optional[str] = None
    website_url: Optional[str] = None
    is_active: bool
    is_publicly_listed: bool
    created_by_proxy: bool
    invite_email: Optional[str] = None


class ClubDetailResponse(ClubResponse):
    delegates: List[DelegateSummary] = []
    alternate_names: List[AlternateNameResponse] = []
    is_unclaimed: bool = False


class InvitationResponse(BaseModel):
    """Result of issuing an invitation; the token is also mailed."""

    club_id: int
    invite_email: str
    token: str
    expires_at: dt.datetime


class ClubOnBehalfResponse(BaseModel):
    club: ClubResponse
    invitation: InvitationResponse


class ReleaseOwnershipResponse(BaseModel):
    carnival: CarnivalResponse
    active_registrations: int


class AdminClaimResponse(BaseModel):
    carnival: CarnivalResponse
    owner_user_id: int
    warnings: List[str] = []


class LeaveClubResponse(BaseModel):
    club_id: int
    action: Optional[LeaveAction] = None
    new_primary_user_id: Optional[int] = None
    club_deactivated: bool = False


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    email: str
    states: List[str]
    notification_types: List[str]
    unsubscribe_token: str
    is_active: bool
    unsubscribed_at: Optional[dt.datetime] = None


class IngestResult(BaseModel):
    """Counts for one ingest run."""

    sync_log_id: Optional[int] = None
    skipped_run: bool = False
    events_processed: int = 0
    carnivals_created: int = 0
    carnivals_updated: int = 0
    events_unchanged: int = 0
    events_skipped: int = 0
    errors: List[str] = []
