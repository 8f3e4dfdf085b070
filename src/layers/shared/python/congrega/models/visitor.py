"""Visitor model for church visitor follow-up.

Tracks a visitor from first attendance through follow-up contact attempts
and, optionally, conversion to a full member.

DynamoDB keys:
    PK: visitors
    SK: VISITOR#{id}
    GSI1PK: visitors
    GSI1SK: {created_at}#{id}
"""

from datetime import date
from enum import Enum
from typing import Annotated, Self

from pydantic import (
    AfterValidator,
    BaseModel as PydanticBaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_validator,
    model_validator,
)

from congrega.models.base import BaseModel, UTCDateTime, format_timestamp, generate_ulid, utc_now

VISITORS_COLLECTION = "visitors"


class VisitorStatus(str, Enum):
    """Visitor status enum."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    CONVERTED = "converted"  # Became a member
    NO_CONTACT = "no_contact"


class FollowUpStatus(str, Enum):
    """Follow-up workflow status, independent of membership."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    NO_RESPONSE = "no_response"


class Gender(str, Enum):
    """Gender enum."""

    MASCULINE = "masculine"
    FEMININE = "feminine"


class MaritalStatus(str, Enum):
    """Marital status enum."""

    SINGLE = "single"
    MARRIED = "married"
    DIVORCED = "divorced"
    WIDOWED = "widowed"


class ContactType(str, Enum):
    """Purpose of a contact attempt."""

    WELCOME = "welcome"
    FOLLOW_UP = "follow_up"
    INVITATION = "invitation"
    PRAYER_REQUEST = "prayer_request"
    OTHER = "other"


class ContactMethod(str, Enum):
    """Channel used for a contact attempt."""

    PHONE = "phone"
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    IN_PERSON = "in_person"
    LETTER = "letter"


class Address(PydanticBaseModel):
    """Postal address."""

    street: str
    city: str
    state: str
    zip_code: str


def _strip_required(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


def _dedupe(values: list[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        value = value.strip()
        if value and value not in seen:
            seen.append(value)
    return seen


NonBlankStr = Annotated[str, AfterValidator(_strip_required)]
InterestList = Annotated[list[str], AfterValidator(_dedupe)]


def _check_converted(status, is_member, follow_up_status) -> None:
    """A converted visitor must be a member with completed follow-up."""
    if status == VisitorStatus.CONVERTED:
        if is_member is not True or follow_up_status != FollowUpStatus.COMPLETED:
            raise ValueError(
                "status 'converted' requires is_member=true and follow_up_status='completed'"
            )


class ContactAttempt(PydanticBaseModel):
    """One logged outreach interaction, embedded in a Visitor."""

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=generate_ulid)
    date: UTCDateTime
    type: ContactType
    method: ContactMethod
    notes: NonBlankStr = Field(..., min_length=1)
    successful: bool
    next_contact_date: UTCDateTime | None = None
    contacted_by: str


class Visitor(BaseModel):
    """Visitor entity - a prospective member tracked from first attendance."""

    # Profile
    name: NonBlankStr = Field(..., min_length=1, max_length=200)
    email: str | None = None
    phone: str | None = None
    address: Address | None = None
    birth_date: date | None = None
    gender: Gender | None = None
    marital_status: MaritalStatus | None = None
    profession: str | None = None
    how_did_you_know: str | None = None
    interests: InterestList = Field(default_factory=list)
    observations: str | None = None

    # Visit tracking
    first_visit_date: UTCDateTime
    last_visit_date: UTCDateTime | None = None
    total_visits: int = Field(default=1, ge=1)

    # Follow-up
    contact_attempts: list[ContactAttempt] = Field(default_factory=list)
    follow_up_status: FollowUpStatus = FollowUpStatus.PENDING
    assigned_to: str | None = Field(None, description="User responsible for follow-up")

    # Membership
    is_member: bool = False
    member_id: str | None = None
    converted_to_member_at: UTCDateTime | None = None

    created_by: str
    status: VisitorStatus = VisitorStatus.ACTIVE

    def get_pk(self) -> str:
        """Get partition key: the visitors collection."""
        return VISITORS_COLLECTION

    def get_sk(self) -> str:
        """Get sort key: VISITOR#{id}."""
        return f"VISITOR#{self.id}"

    def get_gsi1_keys(self) -> dict[str, str]:
        """Get GSI1 keys for newest-first listing."""
        return {
            "GSI1PK": VISITORS_COLLECTION,
            "GSI1SK": f"{format_timestamp(self.created_at)}#{self.id}",
        }

    def matches_search(self, term: str) -> bool:
        """Case-insensitive substring match against name, email and phone."""
        term = term.strip().lower()
        if not term:
            return True
        for value in (self.name, self.email, self.phone):
            if value and term in value.lower():
                return True
        return False


class CreateVisitorRequest(PydanticBaseModel):
    """Request model for registering a visitor."""

    name: NonBlankStr = Field(..., min_length=1, max_length=200)
    email: EmailStr | None = None
    phone: str | None = Field(None, max_length=30)
    address: Address | None = None
    birth_date: date | None = None
    gender: Gender | None = None
    marital_status: MaritalStatus | None = None
    profession: str | None = None
    how_did_you_know: str | None = None
    interests: InterestList = Field(default_factory=list)
    observations: str | None = None
    first_visit_date: UTCDateTime
    last_visit_date: UTCDateTime | None = None
    follow_up_status: FollowUpStatus = FollowUpStatus.PENDING
    assigned_to: str | None = None
    is_member: bool = False
    member_id: str | None = None
    converted_to_member_at: UTCDateTime | None = None
    status: VisitorStatus = VisitorStatus.ACTIVE
    created_by: str

    @model_validator(mode="after")
    def check_conversion(self) -> Self:
        _check_converted(self.status, self.is_member, self.follow_up_status)
        return self


class UpdateVisitorRequest(PydanticBaseModel):
    """Request model for a partial visitor update.

    Only fields set on the request are written. Unknown fields are ignored.
    A field explicitly set to None is removed from the stored visitor.
    """

    name: NonBlankStr | None = Field(None, min_length=1, max_length=200)
    email: EmailStr | None = None
    phone: str | None = Field(None, max_length=30)
    address: Address | None = None
    gender: Gender | None = None
    marital_status: MaritalStatus | None = None
    profession: str | None = None
    how_did_you_know: str | None = None
    interests: InterestList | None = None
    observations: str | None = None
    status: VisitorStatus | None = None
    follow_up_status: FollowUpStatus | None = None
    is_member: bool | None = None
    member_id: str | None = None
    assigned_to: str | None = None
    total_visits: int | None = Field(None, ge=1)

    last_visit_date: UTCDateTime | None = None
    birth_date: date | None = None
    converted_to_member_at: UTCDateTime | None = None

    contact_attempts: list[ContactAttempt] | None = None

    @model_validator(mode="after")
    def check_conversion(self) -> Self:
        _check_converted(self.status, self.is_member, self.follow_up_status)
        return self


class CreateContactAttemptRequest(PydanticBaseModel):
    """Request model for logging a contact attempt. The id is assigned on add."""

    date: UTCDateTime = Field(default_factory=utc_now)
    type: ContactType
    method: ContactMethod
    notes: NonBlankStr = Field(..., min_length=1)
    successful: bool
    next_contact_date: UTCDateTime | None = None
    contacted_by: str

    def to_attempt(self) -> ContactAttempt:
        """Build the embedded attempt with a freshly generated id."""
        return ContactAttempt(**self.model_dump())


class ConvertVisitorRequest(PydanticBaseModel):
    """Request model for converting a visitor to a member."""

    member_id: str = Field(..., min_length=1)
    force: bool = Field(False, description="Convert even if the eligibility rules are not met")


class DateRange(PydanticBaseModel):
    """Inclusive first-visit date range."""

    start: UTCDateTime
    end: UTCDateTime

    @model_validator(mode="after")
    def check_order(self) -> Self:
        if self.start > self.end:
            raise ValueError("date range start must not be after end")
        return self


class VisitorFilters(PydanticBaseModel):
    """Conjunctive filters for visitor listing."""

    model_config = ConfigDict(use_enum_values=True)

    status: VisitorStatus | None = None
    follow_up_status: FollowUpStatus | None = None
    assigned_to: str | None = None
    date_range: DateRange | None = None
    search: str | None = None

    @field_validator("search")
    @classmethod
    def normalize_search(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return v.strip().lower() or None


class VisitorPage(PydanticBaseModel):
    """One page of visitors."""

    visitors: list[Visitor]
    has_more: bool = False
    cursor: str | None = Field(None, description="Opaque cursor for the next page")


class VisitorStats(PydanticBaseModel):
    """Derived statistics over the current visitor set. Not persisted."""

    total_visitors: int = 0
    new_this_month: int = 0
    active_visitors: int = 0
    converted_to_members: int = 0
    pending_follow_up: int = 0
    average_visits_per_visitor: float = 0.0
    retention_rate: float = 0.0
    conversion_rate: float = 0.0
