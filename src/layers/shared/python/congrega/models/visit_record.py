"""Visit record model - one attendance event of a visitor.

Stored separately from the visitor so the full attendance history is kept
while the visitor only carries the aggregate counter.

DynamoDB keys:
    PK: visitRecords
    SK: VISIT#{id}
    GSI2PK: VISITOR#{visitor_id}
    GSI2SK: {visit_date}#{id}
"""

from enum import Enum

from pydantic import BaseModel as PydanticBaseModel, Field

from congrega.models.base import BaseModel, UTCDateTime, format_timestamp

VISIT_RECORDS_COLLECTION = "visitRecords"


class ServiceType(str, Enum):
    """Service or event attended."""

    SUNDAY_MORNING = "sunday_morning"
    SUNDAY_EVENING = "sunday_evening"
    WEDNESDAY_PRAYER = "wednesday_prayer"
    BIBLE_STUDY = "bible_study"
    YOUTH_SERVICE = "youth_service"
    CHILDREN_SERVICE = "children_service"
    SPECIAL_EVENT = "special_event"
    OTHER = "other"


class VisitRecord(BaseModel):
    """Visit record entity."""

    visitor_id: str = Field(..., description="Visitor who attended")
    visit_date: UTCDateTime
    service: ServiceType
    registered_by: str
    notes: str | None = None
    brought_by: str | None = Field(None, description="Member who brought the visitor")

    def get_pk(self) -> str:
        """Get partition key: the visitRecords collection."""
        return VISIT_RECORDS_COLLECTION

    def get_sk(self) -> str:
        """Get sort key: VISIT#{id}."""
        return f"VISIT#{self.id}"

    def get_gsi2_keys(self) -> dict[str, str]:
        """Get GSI2 keys for per-visitor history ordered by visit date."""
        return {
            "GSI2PK": f"VISITOR#{self.visitor_id}",
            "GSI2SK": f"{format_timestamp(self.visit_date)}#{self.id}",
        }


class RecordVisitRequest(PydanticBaseModel):
    """Request model for recording a visit."""

    visitor_id: str = Field(..., min_length=1)
    visit_date: UTCDateTime
    service: ServiceType
    registered_by: str
    notes: str | None = None
    brought_by: str | None = None
