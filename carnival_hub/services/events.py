"""
Domain events raised by commands and published after commit.

Events carry plain values copied out of the rows at emit time, so listeners
never touch ORM objects from a closed session.
"""

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class DomainEvent(BaseModel):
    """Base event."""

    model_config = ConfigDict(frozen=True)
    occurred_at: datetime
    actor_user_id: Optional[int] = None

    @property
    def name(self) -> str:
        return type(self).__name__


class CarnivalEvent(DomainEvent):
    carnival_id: int
    title: str
    state: Optional[str] = None
    carnival_date: Optional[date] = None
    location_address: Optional[str] = None


class CarnivalCreated(CarnivalEvent):
    """A delegate entered a new carnival."""


class CarnivalUpdated(CarnivalEvent):
    """Carnival details changed (by its owner or by the ingest)."""

    changed_fields: List[str] = []


class CarnivalImported(CarnivalEvent):
    """The ingest inserted a new ownerless carnival."""

    external_event_id: str


class CarnivalArchived(CarnivalEvent):
    """Carnival was soft-deleted."""


class CarnivalOwnershipClaimed(CarnivalEvent):
    """An imported carnival gained an owner."""

    owner_user_id: int
    owner_name: str
    owner_email: str
    club_name: Optional[str] = None
    original_organiser_email: Optional[str] = None
    claimed_on_behalf: bool = False


class CarnivalOwnershipReleased(CarnivalEvent):
    """The owner of an imported carnival gave it up."""

    previous_owner_user_id: int


class AttendanceEvent(DomainEvent):
    registration_id: int
    carnival_id: int
    club_id: int


class AttendanceAdded(AttendanceEvent):
    self_service: bool = False


class AttendanceUpdated(AttendanceEvent):
    changed_fields: List[str] = []


class AttendanceRemoved(AttendanceEvent):
    self_service: bool = False


class AttendanceReordered(DomainEvent):
    carnival_id: int
    registration_ids: List[int]


class InvitationEvent(DomainEvent):
    club_id: int
    club_name: str
    invite_email: str
    token: str
    expires_at: datetime
    inviter_name: Optional[str] = None


class DelegateInvitationIssued(InvitationEvent):
    """A primary delegate invited a co-delegate."""


class ProxyInvitationIssued(InvitationEvent):
    """A club was created on someone's behalf and they were invited to claim it."""

    custom_message: Optional[str] = None


class ProxyClubClaimed(DomainEvent):
    club_id: int
    user_id: int


class DelegateJoined(DomainEvent):
    club_id: int
    user_id: int
    via_invitation: bool = False


class DelegateLeft(DomainEvent):
    club_id: int
    user_id: int
    action: str
    new_primary_user_id: Optional[int] = None


class PrimaryDelegateTransferred(DomainEvent):
    club_id: int
    club_name: str
    previous_user_id: int
    new_user_id: int
    new_user_email: str
    new_user_name: str


class ClubCreated(DomainEvent):
    club_id: int
    club_name: str
    on_behalf: bool = False


class ClubDeactivated(DomainEvent):
    club_id: int
