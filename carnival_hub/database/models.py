"""
SQLAlchemy ORM models for the Masters Rugby League carnival directory.
"""

import enum
from sqlalchemy import (
    JSON,
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Date,
    DateTime,
    Numeric,
    ForeignKey,
    CheckConstraint,
    Index,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from carnival_hub.database.db import Base

# JSONB on PostgreSQL, plain JSON (text) elsewhere
JSONList = JSON().with_variant(JSONB(), "postgresql")

# Partial-index predicates. Soft-deleted rows must not occupy unique keys.
ACTIVE_PG = text("is_active")
ACTIVE_SQLITE = text("is_active = 1")


class TokenSubject(str, enum.Enum):
    """What an invitation token lets its holder claim."""

    DELEGATE = "delegate"
    PROXY_CLUB_CLAIM = "proxy-club-claim"


class SyncStatus(str, enum.Enum):
    """Lifecycle of an ingest run."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class User(Base):
    """Portal accounts. A user is a delegate of at most one club."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True)  # stored lowercased
    display_name = Column(String(200), nullable=False)
    phone = Column(String(30), nullable=True)
    club_id = Column(Integer, ForeignKey("clubs.id"), nullable=True)
    club_joined_at = Column(DateTime(timezone=True), nullable=True)
    is_primary_delegate = Column(Boolean, default=False, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    password_hash = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    club = relationship("Club", foreign_keys=[club_id], back_populates="delegates")

    __table_args__ = (
        CheckConstraint(
            "NOT is_primary_delegate OR club_id IS NOT NULL",
            name="ck_users_primary_has_club",
        ),
        Index("idx_users_club_id", "club_id"),
        Index(
            "uq_users_primary_delegate_per_club",
            "club_id",
            unique=True,
            postgresql_where=text("is_primary_delegate"),
            sqlite_where=text("is_primary_delegate = 1"),
        ),
    )


class Club(Base):
    """Clubs fielding masters teams."""

    __tablename__ = "clubs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    club_name = Column(String(200), nullable=False)
    state = Column(String(3), nullable=False)
    location = Column(String(200), nullable=True)
    contact_email = Column(String(255), nullable=True)
    contact_phone = Column(String(30), nullable=True)
    contact_person = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)
    logo_path = Column(String(500), nullable=True)
    facebook_url = Column(String(500), nullable=True)
    instagram_url = Column(String(500), nullable=True)
    twitter_url = Column(String(500), nullable=True)
    website_url = Column(String(500), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_publicly_listed = Column(Boolean, default=True, nullable=False)
    created_by_user_id = Column(
        Integer,
        ForeignKey("users.id", use_alter=True, name="fk_clubs_created_by_user_id"),
        nullable=True,
    )
    created_by_proxy = Column(Boolean, default=False, nullable=False)
    invite_email = Column(String(255), nullable=True)  # present iff created_by_proxy
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    delegates = relationship("User", foreign_keys="User.club_id", back_populates="club")
    alternate_names = relationship(
        "ClubAlternateName", back_populates="club", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "NOT created_by_proxy OR invite_email IS NOT NULL",
            name="ck_clubs_proxy_has_invite_email",
        ),
        Index("idx_clubs_state", "state"),
        Index(
            "uq_clubs_active_name",
            func.lower(club_name),
            unique=True,
            postgresql_where=ACTIVE_PG,
            sqlite_where=ACTIVE_SQLITE,
        ),
    )


class ClubAlternateName(Base):
    """Searchable aliases for a club."""

    __tablename__ = "club_alternate_names"

    id = Column(Integer, primary_key=True, autoincrement=True)
    club_id = Column(Integer, ForeignKey("clubs.id", ondelete="CASCADE"), nullable=False)
    alternate_name = Column(String(100), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    club = relationship("Club", back_populates="alternate_names")

    __table_args__ = (
        Index(
            "uq_club_alternate_names_active",
            "club_id",
            "alternate_name",
            unique=True,
            postgresql_where=ACTIVE_PG,
            sqlite_where=ACTIVE_SQLITE,
        ),
    )


class Carnival(Base):
    """Carnivals, either entered by a delegate or imported from MySideline."""

    __tablename__ = "carnivals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(200), nullable=False)
    date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    state = Column(String(3), nullable=True)  # imported events may have no state
    location_address = Column(String(500), nullable=True)
    organiser_contact_name = Column(String(200), nullable=True)
    organiser_contact_email = Column(String(255), nullable=True)
    organiser_contact_phone = Column(String(30), nullable=True)
    original_organiser_email = Column(String(255), nullable=True)  # kept across a claim
    schedule_details = Column(Text, nullable=True)
    registration_link = Column(String(500), nullable=True)
    fees_description = Column(Text, nullable=True)
    facebook_url = Column(String(500), nullable=True)
    instagram_url = Column(String(500), nullable=True)
    twitter_url = Column(String(500), nullable=True)
    website_url = Column(String(500), nullable=True)
    logo_path = Column(String(500), nullable=True)
    promotional_images = Column(JSONList, nullable=False, default=list)  # list of relative paths
    draw_files = Column(JSONList, nullable=False, default=list)  # [{path, original_name, uploaded_at}]
    created_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)  # null iff ownerless
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    external_event_id = Column(String(100), nullable=True)  # present iff imported
    is_manually_entered = Column(Boolean, default=True, nullable=False)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    owner = relationship("User", foreign_keys=[created_by_user_id])
    registrations = relationship("CarnivalClub", back_populates="carnival")

    __table_args__ = (
        CheckConstraint(
            "(external_event_id IS NULL) = is_manually_entered",
            name="ck_carnivals_manual_iff_not_imported",
        ),
        CheckConstraint(
            "created_by_user_id IS NOT NULL OR external_event_id IS NOT NULL",
            name="ck_carnivals_ownerless_is_imported",
        ),
        Index("idx_carnivals_date", "date"),
        Index("idx_carnivals_state", "state"),
        Index(
            "uq_carnivals_active_external_event_id",
            "external_event_id",
            unique=True,
            postgresql_where=ACTIVE_PG,
            sqlite_where=ACTIVE_SQLITE,
        ),
    )


class CarnivalClub(Base):
    """A club's registration to attend a carnival."""

    __tablename__ = "carnival_clubs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    carnival_id = Column(Integer, ForeignKey("carnivals.id"), nullable=False)
    club_id = Column(Integer, ForeignKey("clubs.id"), nullable=False)
    player_count = Column(Integer, nullable=True)
    team_name = Column(String(100), nullable=True)
    contact_person = Column(String(200), nullable=True)
    contact_email = Column(String(255), nullable=True)
    contact_phone = Column(String(20), nullable=True)
    special_requirements = Column(Text, nullable=True)
    registration_notes = Column(Text, nullable=True)
    payment_amount = Column(Numeric(10, 2), nullable=True)
    is_paid = Column(Boolean, default=False, nullable=False)
    payment_date = Column(DateTime(timezone=True), nullable=True)  # present iff is_paid
    display_order = Column(Integer, nullable=False)
    registration_date = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    carnival = relationship("Carnival", back_populates="registrations")
    club = relationship("Club")

    __table_args__ = (
        CheckConstraint(
            "(is_paid AND payment_date IS NOT NULL) OR (NOT is_paid AND payment_date IS NULL)",
            name="ck_carnival_clubs_paid_iff_payment_date",
        ),
        CheckConstraint(
            "player_count IS NULL OR (player_count >= 0 AND player_count <= 100)",
            name="ck_carnival_clubs_player_count_range",
        ),
        CheckConstraint(
            "payment_amount IS NULL OR payment_amount >= 0",
            name="ck_carnival_clubs_payment_amount_non_negative",
        ),
        Index("idx_carnival_clubs_carnival_id", "carnival_id"),
        Index("idx_carnival_clubs_club_id", "club_id"),
        Index(
            "uq_carnival_clubs_active_pair",
            "carnival_id",
            "club_id",
            unique=True,
            postgresql_where=ACTIVE_PG,
            sqlite_where=ACTIVE_SQLITE,
        ),
    )


class EmailSubscription(Base):
    """Public state-filtered email notification subscriptions."""

    __tablename__ = "email_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True)  # stored lowercased
    states = Column(JSONList, nullable=False, default=list)
    notification_types = Column(JSONList, nullable=False, default=list)
    unsubscribe_token = Column(String(100), nullable=False, unique=True)
    source = Column(String(50), nullable=True, default="homepage")
    is_active = Column(Boolean, default=True, nullable=False)
    unsubscribed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class InvitationToken(Base):
    """Single-use claim capability sent by email."""

    __tablename__ = "invitation_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    value = Column(String(100), nullable=False, unique=True)
    subject_kind = Column(String(32), nullable=False)  # TokenSubject value
    subject_id = Column(Integer, nullable=False)  # club id for both subject kinds
    invite_email = Column(String(255), nullable=False)  # stored lowercased
    created_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    consumed_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_invitation_tokens_subject", "subject_kind", "subject_id"),
    )


class SyncLog(Base):
    """One row per external carnival ingest run."""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sync_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)  # SyncStatus value
    trigger_source = Column(String(50), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    events_processed = Column(Integer, default=0, nullable=False)
    carnivals_created = Column(Integer, default=0, nullable=False)
    carnivals_updated = Column(Integer, default=0, nullable=False)
    events_skipped = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_sync_logs_type_status", "sync_type", "status"),
    )
