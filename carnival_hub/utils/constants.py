"""
Constants shared across the carnival core.
"""

import enum


class AustralianState(str, enum.Enum):
    """The eight Australian jurisdictions clubs and carnivals belong to."""

    ACT = "ACT"
    NSW = "NSW"
    NT = "NT"
    QLD = "QLD"
    SA = "SA"
    TAS = "TAS"
    VIC = "VIC"
    WA = "WA"


AUSTRALIAN_STATES = [state.value for state in AustralianState]

AUSTRALIAN_STATE_NAMES = {
    "ACT": "Australian Capital Territory",
    "NSW": "New South Wales",
    "NT": "Northern Territory",
    "QLD": "Queensland",
    "SA": "South Australia",
    "TAS": "Tasmania",
    "VIC": "Victoria",
    "WA": "Western Australia",
}


class NotificationCategory(str, enum.Enum):
    """Email subscription notification types."""

    CARNIVAL_NOTIFICATIONS = "Carnival_Notifications"
    DELEGATE_ALERTS = "Delegate_Alerts"
    WEBSITE_UPDATES = "Website_Updates"
    PROGRAM_CHANGES = "Program_Changes"
    SPECIAL_OFFERS = "Special_Offers"
    COMMUNITY_NEWS = "Community_News"


NOTIFICATION_TYPES = [category.value for category in NotificationCategory]

# Registration field limits
MAX_PLAYER_COUNT = 100
MAX_TEAM_NAME_LENGTH = 100
MAX_CONTACT_PHONE_LENGTH = 20
MAX_SPECIAL_REQUIREMENTS_LENGTH = 500
MAX_REGISTRATION_NOTES_LENGTH = 1000

# Club alternate name limits
MIN_ALTERNATE_NAME_LENGTH = 2
MAX_ALTERNATE_NAME_LENGTH = 100

# Search terms shorter than this are ignored
MIN_SEARCH_LENGTH = 2

# Invitation token entropy (bytes fed to secrets.token_urlsafe; 32 bytes = 256 bits)
INVITATION_TOKEN_BYTES = 32
UNSUBSCRIBE_TOKEN_BYTES = 32

UNAVAILABLE_CONTACT = "Contact details not available"
