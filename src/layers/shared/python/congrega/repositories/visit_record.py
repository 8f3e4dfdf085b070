"""Visit record repository for DynamoDB operations."""

from typing import Any

import structlog
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from congrega.config import StoreConfig
from congrega.models.visit_record import VISIT_RECORDS_COLLECTION, VisitRecord
from congrega.repositories.base import BaseRepository, error_code, serialize_item

logger = structlog.get_logger()

# Codes DynamoDB (and local emulators) use when a GSI does not exist
_INDEX_ERROR_CODES = {"ValidationException", "ResourceNotFoundException"}


def is_missing_index_error(exc: ClientError) -> bool:
    """Check whether a query failed because the requested index is unavailable."""
    message = exc.response.get("Error", {}).get("Message", "")
    return error_code(exc) in _INDEX_ERROR_CODES and "index" in message.lower()


def newest_first(records: list[VisitRecord]) -> list[VisitRecord]:
    """Sort visit records by visit date descending, id breaking ties."""
    return sorted(records, key=lambda r: (r.visit_date, r.id), reverse=True)


class VisitRecordRepository(BaseRepository[VisitRecord]):
    """Repository for VisitRecord entities."""

    def __init__(self, config: StoreConfig | None = None, dynamodb: Any = None):
        """Initialize visit record repository."""
        super().__init__(VisitRecord, config, dynamodb)

    def get_by_id(self, record_id: str) -> VisitRecord | None:
        """Get a visit record by ID."""
        return self.get(pk=VISIT_RECORDS_COLLECTION, sk=f"VISIT#{record_id}")

    def list_for_visitor(self, visitor_id: str) -> list[VisitRecord]:
        """List every visit record of a visitor, in no particular order.

        Reads the collection partition directly, so it works without the
        history index.
        """
        return self.query_all(
            Key("PK").eq(VISIT_RECORDS_COLLECTION) & Key("SK").begins_with("VISIT#"),
            filter_condition=Attr("visitor_id").eq(visitor_id),
        )

    def get_history(self, visitor_id: str) -> list[VisitRecord]:
        """Get a visitor's visit records, newest first.

        Uses the history index. When the index is unavailable the records
        are read without ordering and sorted here instead. Any other store
        error propagates.

        Args:
            visitor_id: The visitor ID.

        Returns:
            Visit records ordered by visit date descending.
        """
        try:
            return self.query_all(
                Key("GSI2PK").eq(f"VISITOR#{visitor_id}"),
                index_name=self.config.visit_history_index,
                scan_forward=False,
            )
        except ClientError as e:
            if not is_missing_index_error(e):
                raise
            logger.warning(
                "Visit history index unavailable, sorting client-side",
                index=self.config.visit_history_index,
                visitor_id=visitor_id,
            )

        return newest_first(self.list_for_visitor(visitor_id))

    def put_action(self, record: VisitRecord) -> dict[str, Any]:
        """Transaction action inserting a new visit record."""
        return {
            "Put": {
                "TableName": self.table_name,
                "Item": serialize_item(self.build_item(record, record.get_gsi2_keys())),
                "ConditionExpression": "attribute_not_exists(PK)",
            }
        }

    def delete_action(self, record: VisitRecord) -> dict[str, Any]:
        """Transaction action deleting a visit record."""
        return {
            "Delete": {
                "TableName": self.table_name,
                "Key": serialize_item(record.get_keys()),
            }
        }
