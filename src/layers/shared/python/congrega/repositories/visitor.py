"""Visitor repository for DynamoDB operations.

Visitors live in the ``visitors`` partition and their attendance events in
the ``visitRecords`` partition. Writes that touch both (recording a visit,
deleting a visitor) go through a single transaction.
"""

import math
from datetime import datetime
from typing import Any

import structlog
from boto3.dynamodb.conditions import Attr, ConditionBase, Key
from botocore.exceptions import ClientError
from pydantic import ValidationError as PydanticValidationError

from congrega.config import StoreConfig
from congrega.models.base import format_timestamp, utc_now
from congrega.models.visit_record import RecordVisitRequest, VisitRecord
from congrega.models.visitor import (
    VISITORS_COLLECTION,
    ContactAttempt,
    CreateContactAttemptRequest,
    CreateVisitorRequest,
    FollowUpStatus,
    UpdateVisitorRequest,
    Visitor,
    VisitorFilters,
    VisitorPage,
    VisitorStats,
    VisitorStatus,
)
from congrega.repositories.base import (
    MAX_TRANSACTION_ITEMS,
    BaseRepository,
    decode_cursor,
    encode_cursor,
    error_code,
    serialize_item,
)
from congrega.repositories.visit_record import VisitRecordRepository
from congrega.services import visitor_lifecycle
from congrega.utils.exceptions import ConvertedVisitorError, NotFoundError, ValidationError

logger = structlog.get_logger()

DEFAULT_PAGE_SIZE = 20

# Query pages one listing call may read while filling a page
MAX_READS_PER_PAGE = 10

# Attributes of a GSI1 listing cursor
LISTING_KEY_NAMES = ("PK", "SK", "GSI1PK", "GSI1SK")

# Fields update_visitor writes. Anything else on an update is ignored.
UPDATABLE_FIELDS = (
    "name",
    "email",
    "phone",
    "address",
    "gender",
    "marital_status",
    "profession",
    "how_did_you_know",
    "interests",
    "observations",
    "status",
    "follow_up_status",
    "is_member",
    "member_id",
    "assigned_to",
    "total_visits",
    "last_visit_date",
    "birth_date",
    "converted_to_member_at",
    "contact_attempts",
)

# Optional fields; setting one to None removes it from the stored item
REMOVABLE_FIELDS = frozenset(
    {
        "email",
        "phone",
        "address",
        "gender",
        "marital_status",
        "profession",
        "how_did_you_know",
        "observations",
        "member_id",
        "assigned_to",
        "last_visit_date",
        "birth_date",
        "converted_to_member_at",
    }
)


def round_half_up(value: float, places: int = 2) -> float:
    """Round half up, e.g. 33.335 -> 33.34 and 33.3333 -> 33.33."""
    factor = 10**places
    return math.floor(value * factor + 0.5) / factor


def start_of_month(now: datetime) -> datetime:
    """First instant of the month containing ``now``."""
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def breaks_conversion(set_values: dict[str, Any]) -> bool:
    """Whether an update would break a converted visitor if applied as is.

    Converted visitors must stay members with completed follow-up. An update
    that also sets status is checked by the request model instead.
    """
    if "status" in set_values:
        return False
    if set_values.get("is_member") is False:
        return True
    follow_up = set_values.get("follow_up_status")
    return follow_up is not None and follow_up != FollowUpStatus.COMPLETED


class VisitorRepository(BaseRepository[Visitor]):
    """Repository for Visitor entities and their visit records."""

    def __init__(self, config: StoreConfig | None = None, dynamodb: Any = None):
        """Initialize visitor repository.

        Args:
            config: Store configuration. Defaults to StoreConfig.from_env().
            dynamodb: Optional boto3 DynamoDB resource to use.
        """
        super().__init__(Visitor, config, dynamodb)
        self.visits = VisitRecordRepository(self.config, dynamodb)

    def _visitor_key(self, visitor_id: str) -> dict[str, str]:
        return self._build_key(VISITORS_COLLECTION, f"VISITOR#{visitor_id}")

    # =========================================================================
    # Reads
    # =========================================================================

    def get_visitor(self, visitor_id: str) -> Visitor | None:
        """Get a visitor by ID.

        Args:
            visitor_id: The visitor ID.

        Returns:
            Visitor or None if not found.
        """
        return self.get(pk=VISITORS_COLLECTION, sk=f"VISITOR#{visitor_id}")

    def get_or_raise(self, visitor_id: str) -> Visitor:
        """Get a visitor or raise NotFoundError."""
        visitor = self.get_visitor(visitor_id)
        if not visitor:
            raise NotFoundError("Visitor", visitor_id)
        return visitor

    def get_visitors(
        self,
        filters: VisitorFilters | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        cursor: str | None = None,
    ) -> VisitorPage:
        """List visitors, newest first, one page at a time.

        Equality filters and the first-visit date range are evaluated by
        DynamoDB. The search term is matched here while reading, and reading
        continues until the page is full, so a search does not return a
        short page while more matches exist. A single call reads at most
        MAX_READS_PER_PAGE query pages; when a rare search term exhausts
        that budget the page comes back short, with has_more set and a
        cursor that resumes where reading stopped.

        Args:
            filters: Optional conjunctive filters.
            page_size: Maximum visitors on the page.
            cursor: Cursor returned with the previous page.

        Returns:
            VisitorPage with has_more and the cursor for the next page.

        Raises:
            ValidationError: If the cursor was not produced by this listing.
        """
        if page_size < 1:
            raise ValueError("page_size must be at least 1")

        filters = filters or VisitorFilters()
        filter_condition = self._build_filter(filters)
        last_key = decode_cursor(cursor, LISTING_KEY_NAMES) if cursor else None

        # Read one extra match to learn whether another page exists
        wanted = page_size + 1
        matched: list[Visitor] = []
        reads = 0
        while len(matched) < wanted:
            items, last_key = self.query(
                Key("GSI1PK").eq(VISITORS_COLLECTION),
                index_name="GSI1",
                limit=wanted - len(matched),
                scan_forward=False,
                filter_condition=filter_condition,
                last_key=last_key,
            )
            reads += 1
            for visitor in items:
                if filters.search and not visitor.matches_search(filters.search):
                    continue
                matched.append(visitor)
            if not last_key:
                break
            if reads >= MAX_READS_PER_PAGE and len(matched) < wanted:
                logger.info(
                    "Visitor listing read budget exhausted",
                    matched=len(matched),
                    page_size=page_size,
                )
                return VisitorPage(
                    visitors=matched,
                    has_more=True,
                    cursor=encode_cursor(last_key),
                )

        has_more = len(matched) > page_size
        visitors = matched[:page_size]
        next_cursor = None
        if has_more:
            last = visitors[-1]
            next_cursor = encode_cursor({**last.get_keys(), **last.get_gsi1_keys()})

        return VisitorPage(visitors=visitors, has_more=has_more, cursor=next_cursor)

    def _build_filter(self, filters: VisitorFilters) -> ConditionBase | None:
        """Combine the store-side filters with AND."""
        conditions: list[ConditionBase] = []
        if filters.status:
            conditions.append(Attr("status").eq(filters.status))
        if filters.follow_up_status:
            conditions.append(Attr("follow_up_status").eq(filters.follow_up_status))
        if filters.assigned_to:
            conditions.append(Attr("assigned_to").eq(filters.assigned_to))
        if filters.date_range:
            conditions.append(
                Attr("first_visit_date").between(
                    format_timestamp(filters.date_range.start),
                    format_timestamp(filters.date_range.end),
                )
            )

        combined = None
        for condition in conditions:
            combined = condition if combined is None else combined & condition
        return combined

    def get_visit_history(self, visitor_id: str) -> list[VisitRecord]:
        """Get a visitor's visits ordered newest first."""
        return self.visits.get_history(visitor_id)

    def get_visitor_stats(self, now: datetime | None = None) -> VisitorStats:
        """Compute statistics over the current visitor set.

        Nothing is aggregated ahead of time; every call reads the
        collection. Rates are percentages rounded half up to 2 places and
        are 0 when there are no visitors.
        """
        now = now or utc_now()
        partition = Key("PK").eq(VISITORS_COLLECTION) & Key("SK").begins_with("VISITOR#")

        visit_counts = self._all_visit_counts(partition)
        new_this_month = self.count(
            partition,
            Attr("first_visit_date").gte(format_timestamp(start_of_month(now))),
        )
        active = self.count(partition, Attr("status").eq(VisitorStatus.ACTIVE.value))
        converted = self.count(partition, Attr("status").eq(VisitorStatus.CONVERTED.value))
        pending = self.count(
            partition, Attr("follow_up_status").eq(FollowUpStatus.PENDING.value)
        )

        total = len(visit_counts)
        average = retention = conversion = 0.0
        if total:
            average = sum(visit_counts) / total
            retention = sum(1 for visits in visit_counts if visits > 1) / total * 100
            conversion = converted / total * 100

        return VisitorStats(
            total_visitors=total,
            new_this_month=new_this_month,
            active_visitors=active,
            converted_to_members=converted,
            pending_follow_up=pending,
            average_visits_per_visitor=round_half_up(average),
            retention_rate=round_half_up(retention),
            conversion_rate=round_half_up(conversion),
        )

    def _all_visit_counts(self, partition: ConditionBase) -> list[int]:
        """total_visits of every visitor (missing counts read as 0)."""
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": partition,
            "ProjectionExpression": "total_visits",
        }
        counts: list[int] = []
        try:
            while True:
                response = self.table.query(**kwargs)
                counts.extend(int(item.get("total_visits", 0)) for item in response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    return counts
                kwargs["ExclusiveStartKey"] = last_key
        except ClientError as e:
            logger.error("Failed to read visitor visit counts", error=str(e))
            raise

    # =========================================================================
    # Writes
    # =========================================================================

    def create_visitor(self, request: CreateVisitorRequest) -> str:
        """Register a new visitor.

        The visitor starts with one visit and no contact attempts, whatever
        the request says. Optional fields without a value are not stored.

        Args:
            request: The visitor data.

        Returns:
            The new visitor's ID.
        """
        visitor = Visitor(**request.model_dump(), total_visits=1, contact_attempts=[])
        self.create(visitor, gsi_keys=visitor.get_gsi1_keys())
        logger.info("Visitor created", visitor_id=visitor.id, created_by=visitor.created_by)
        return visitor.id

    def update_visitor(
        self,
        visitor_id: str,
        updates: UpdateVisitorRequest | dict[str, Any],
    ) -> None:
        """Apply a partial update.

        Always stamps updated_at. Only UPDATABLE_FIELDS set on the update are
        written; optional fields set to None are removed. An update that would
        take a converted visitor out of membership or completed follow-up
        without changing its status is refused.

        Raises:
            NotFoundError: If the visitor does not exist.
            ValidationError: If a dict update does not validate.
        """
        if isinstance(updates, dict):
            try:
                updates = UpdateVisitorRequest.model_validate(updates)
            except PydanticValidationError as e:
                raise ValidationError.from_pydantic(e)

        data = updates.model_dump(exclude_unset=True)
        set_values: dict[str, Any] = {"updated_at": utc_now()}
        remove_fields: list[str] = []
        for field in UPDATABLE_FIELDS:
            if field not in data:
                continue
            value = data[field]
            if value is None:
                if field in REMOVABLE_FIELDS:
                    remove_fields.append(field)
                continue
            set_values[field] = value

        names: dict[str, str] = {}
        values: dict[str, Any] = {}
        set_parts = []
        for i, (field, value) in enumerate(set_values.items()):
            names[f"#f{i}"] = field
            values[f":v{i}"] = Visitor._serialize_value(value)
            set_parts.append(f"#f{i} = :v{i}")
        remove_parts = []
        for i, field in enumerate(remove_fields):
            names[f"#r{i}"] = field
            remove_parts.append(f"#r{i}")

        expression = "SET " + ", ".join(set_parts)
        if remove_parts:
            expression += " REMOVE " + ", ".join(remove_parts)

        self._update_item(
            visitor_id,
            guard_converted=breaks_conversion(set_values),
            UpdateExpression=expression,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )
        logger.debug(
            "Visitor updated",
            visitor_id=visitor_id,
            fields=sorted(set_values),
            removed=remove_fields,
        )

    def _update_item(self, visitor_id: str, guard_converted: bool = False, **kwargs: Any) -> None:
        """update_item on an existing visitor.

        With ``guard_converted`` the update only applies to visitors whose
        status is not converted.

        Raises:
            NotFoundError: If the visitor does not exist.
            ConvertedVisitorError: If the guard rejects a converted visitor.
        """
        condition = "attribute_exists(PK)"
        if guard_converted:
            condition += " AND #status <> :converted"
            kwargs["ExpressionAttributeNames"] = {
                **kwargs.get("ExpressionAttributeNames", {}),
                "#status": "status",
            }
            kwargs["ExpressionAttributeValues"] = {
                **kwargs.get("ExpressionAttributeValues", {}),
                ":converted": VisitorStatus.CONVERTED.value,
            }

        try:
            self.table.update_item(
                Key=self._visitor_key(visitor_id),
                ConditionExpression=condition,
                **kwargs,
            )
        except ClientError as e:
            if error_code(e) == "ConditionalCheckFailedException":
                if guard_converted and self.get_visitor(visitor_id):
                    logger.warning("Update rejected for converted visitor", visitor_id=visitor_id)
                    raise ConvertedVisitorError(visitor_id)
                raise NotFoundError("Visitor", visitor_id)
            logger.error("DynamoDB update_item failed", error=str(e), visitor_id=visitor_id)
            raise

    def delete_visitor(self, visitor_id: str) -> None:
        """Delete a visitor together with all of its visit records.

        Up to 99 visit records are removed in the same transaction as the
        visitor, all or nothing. Larger histories do not fit one
        transaction and are removed in chunks of 100 actions, with the
        visitor itself in the last chunk. That case is not atomic: a failure
        between chunks leaves the visitor in place with part of its visit
        history already deleted, and the call raises. Retrying the delete
        finishes the job.
        """
        records = self.visits.list_for_visitor(visitor_id)
        actions = [self.visits.delete_action(record) for record in records]
        actions.append(
            {
                "Delete": {
                    "TableName": self.table_name,
                    "Key": serialize_item(self._visitor_key(visitor_id)),
                }
            }
        )

        for start in range(0, len(actions), MAX_TRANSACTION_ITEMS):
            self.transact_write(actions[start : start + MAX_TRANSACTION_ITEMS])

        logger.info("Visitor deleted", visitor_id=visitor_id, visit_records=len(records))

    def add_contact_attempt(
        self,
        visitor_id: str,
        request: CreateContactAttemptRequest,
    ) -> ContactAttempt:
        """Append a contact attempt and derive the follow-up status.

        The append is a single atomic list_append, so concurrent attempts
        on the same visitor are all kept. The follow-up status becomes
        completed for a successful attempt and in_progress otherwise,
        whatever it was before. Converted visitors only take successful
        attempts, since their follow-up must stay completed.

        Raises:
            NotFoundError: If the visitor does not exist.
            ConvertedVisitorError: For an unsuccessful attempt on a converted visitor.
        """
        attempt = request.to_attempt()
        follow_up = visitor_lifecycle.follow_up_status_after_attempt(attempt.successful)

        self._update_item(
            visitor_id,
            guard_converted=follow_up != FollowUpStatus.COMPLETED,
            UpdateExpression=(
                "SET contact_attempts = list_append(if_not_exists(contact_attempts, :empty), :attempt), "
                "follow_up_status = :follow_up, updated_at = :now"
            ),
            ExpressionAttributeValues={
                ":empty": [],
                ":attempt": [Visitor._serialize_value(attempt.model_dump())],
                ":follow_up": follow_up.value,
                ":now": format_timestamp(utc_now()),
            },
        )
        logger.info(
            "Contact attempt added",
            visitor_id=visitor_id,
            attempt_id=attempt.id,
            successful=attempt.successful,
        )
        return attempt

    def record_visit(self, request: RecordVisitRequest) -> str:
        """Record an attendance event.

        Inserts the visit record and bumps the visitor's total_visits by one
        (setting last_visit_date to the visit date) in one transaction.

        Returns:
            The new visit record's ID.

        Raises:
            NotFoundError: If the visitor does not exist. Nothing is written.
        """
        record = VisitRecord(**request.model_dump())
        now = format_timestamp(utc_now())

        visitor_update = {
            "Update": {
                "TableName": self.table_name,
                "Key": serialize_item(self._visitor_key(record.visitor_id)),
                "UpdateExpression": "ADD total_visits :one SET last_visit_date = :visit_date, updated_at = :now",
                "ConditionExpression": "attribute_exists(PK)",
                "ExpressionAttributeValues": serialize_item(
                    {
                        ":one": 1,
                        ":visit_date": format_timestamp(record.visit_date),
                        ":now": now,
                    }
                ),
            }
        }

        try:
            self.transact_write([self.visits.put_action(record), visitor_update])
        except ClientError as e:
            if error_code(e) == "TransactionCanceledException" and not self.get_visitor(
                record.visitor_id
            ):
                raise NotFoundError("Visitor", record.visitor_id)
            raise

        logger.info("Visit recorded", visitor_id=record.visitor_id, visit_id=record.id)
        return record.id

    def convert_to_member(self, visitor_id: str, member_id: str) -> None:
        """Mark a visitor as converted to the given member."""
        self.update_visitor(
            visitor_id,
            UpdateVisitorRequest(
                is_member=True,
                member_id=member_id,
                converted_to_member_at=utc_now(),
                status=VisitorStatus.CONVERTED,
                follow_up_status=FollowUpStatus.COMPLETED,
            ),
        )
        logger.info("Visitor converted to member", visitor_id=visitor_id, member_id=member_id)
