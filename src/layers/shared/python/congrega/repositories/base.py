"""Base repository class for DynamoDB operations."""

import base64
import binascii
import json
from typing import Any, Generic, Iterable, TypeVar

import boto3
import structlog
from boto3.dynamodb.conditions import ConditionBase
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from congrega.config import StoreConfig
from congrega.models.base import BaseModel
from congrega.utils.exceptions import ConflictError, ValidationError

logger = structlog.get_logger()

T = TypeVar("T", bound=BaseModel)

# DynamoDB caps a TransactWriteItems call at 100 actions
MAX_TRANSACTION_ITEMS = 100

_serializer = TypeSerializer()


def encode_cursor(key: dict[str, Any]) -> str:
    """Encode a DynamoDB key as an opaque pagination cursor."""
    return base64.urlsafe_b64encode(json.dumps(key, sort_keys=True).encode()).decode()


def decode_cursor(cursor: str, key_names: Iterable[str] | None = None) -> dict[str, Any]:
    """Decode a pagination cursor produced by encode_cursor.

    Args:
        cursor: The opaque cursor.
        key_names: Attribute names the decoded key must consist of exactly.

    Raises:
        ValidationError: If the cursor is malformed or holds other keys.
    """
    invalid = ValidationError(
        "Invalid pagination cursor",
        errors=[{"field": "cursor", "message": "Not a cursor returned by this listing"}],
    )
    try:
        key = json.loads(base64.urlsafe_b64decode(cursor.encode()).decode())
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise invalid
    if not isinstance(key, dict) or not all(isinstance(v, str) for v in key.values()):
        raise invalid
    if key_names is not None and set(key) != set(key_names):
        raise invalid
    return key


def serialize_item(item: dict[str, Any]) -> dict[str, Any]:
    """Serialize a plain item for the low-level DynamoDB client."""
    return {k: _serializer.serialize(v) for k, v in item.items()}


def error_code(exc: ClientError) -> str:
    """Get the DynamoDB error code from a ClientError."""
    return exc.response.get("Error", {}).get("Code", "")


class BaseRepository(Generic[T]):
    """Base repository for DynamoDB single-table design.

    The store configuration (or a ready DynamoDB resource) is injected by
    the caller; nothing is shared between repository instances.
    """

    def __init__(
        self,
        model_class: type[T],
        config: StoreConfig | None = None,
        dynamodb: Any = None,
    ):
        """Initialize repository.

        Args:
            model_class: The Pydantic model class for this repository.
            config: Store configuration. Defaults to StoreConfig.from_env().
            dynamodb: Optional boto3 DynamoDB resource to use.
        """
        self.model_class = model_class
        self.config = config or StoreConfig.from_env()
        self.table_name = self.config.table_name
        self._dynamodb = dynamodb
        self._table = None
        self._client = None

    @property
    def dynamodb(self):
        """Get DynamoDB resource (lazy initialization)."""
        if self._dynamodb is None:
            self._dynamodb = boto3.resource(
                "dynamodb",
                region_name=self.config.region_name,
                endpoint_url=self.config.endpoint_url,
            )
        return self._dynamodb

    @property
    def table(self):
        """Get DynamoDB table (lazy initialization)."""
        if self._table is None:
            self._table = self.dynamodb.Table(self.table_name)
        return self._table

    @property
    def client(self):
        """Low-level DynamoDB client (lazy initialization).

        Takes wire-format attribute values, see serialize_item. The
        resource's own meta.client would serialize them a second time.
        """
        if self._client is None:
            self._client = boto3.client(
                "dynamodb",
                region_name=self.config.region_name,
                endpoint_url=self.config.endpoint_url,
            )
        return self._client

    def _build_key(self, pk: str, sk: str) -> dict[str, str]:
        """Build key dictionary for DynamoDB operations."""
        return {"PK": pk, "SK": sk}

    def get(self, pk: str, sk: str) -> T | None:
        """Get an item by its primary key.

        Args:
            pk: Partition key value.
            sk: Sort key value.

        Returns:
            Model instance or None if not found.
        """
        try:
            response = self.table.get_item(Key=self._build_key(pk, sk))
        except ClientError as e:
            logger.error("DynamoDB get_item failed", error=str(e), pk=pk, sk=sk)
            raise

        item = response.get("Item")
        if not item:
            return None
        return self.model_class.from_dynamodb(item)

    def build_item(self, item: T, gsi_keys: dict[str, str] | None = None) -> dict[str, Any]:
        """Build the stored form of a model: attributes, keys and GSI keys."""
        db_item = item.to_dynamodb()
        db_item.update(item.get_keys())
        if gsi_keys:
            db_item.update(gsi_keys)
        return db_item

    def create(self, item: T, gsi_keys: dict[str, str] | None = None) -> T:
        """Create a new item (fails if it exists).

        Args:
            item: Model instance to create.
            gsi_keys: Optional GSI key values.

        Returns:
            The created model instance.

        Raises:
            ConflictError: If an item with the same key already exists.
        """
        db_item = self.build_item(item, gsi_keys)
        try:
            self.table.put_item(
                Item=db_item,
                ConditionExpression="attribute_not_exists(PK)",
            )
        except ClientError as e:
            if error_code(e) == "ConditionalCheckFailedException":
                raise ConflictError(item.id, f"{self.model_class.__name__} already exists")
            logger.error("DynamoDB put_item failed", error=str(e))
            raise

        logger.debug(
            "Item created",
            pk=db_item["PK"],
            sk=db_item["SK"],
            model=self.model_class.__name__,
        )
        return item

    def query(
        self,
        key_condition: ConditionBase,
        index_name: str | None = None,
        limit: int | None = None,
        scan_forward: bool = True,
        filter_condition: ConditionBase | None = None,
        last_key: dict | None = None,
    ) -> tuple[list[T], dict | None]:
        """Run a single query page.

        Args:
            key_condition: Key condition built with boto3 Key().
            index_name: Optional GSI name.
            limit: Maximum items to evaluate (applied before the filter).
            scan_forward: Sort direction (True = ascending).
            filter_condition: Optional filter built with boto3 Attr().
            last_key: Last evaluated key for pagination.

        Returns:
            Tuple of (items, last_evaluated_key).
        """
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": key_condition,
            "ScanIndexForward": scan_forward,
        }
        if index_name:
            kwargs["IndexName"] = index_name
        if limit:
            kwargs["Limit"] = limit
        if filter_condition is not None:
            kwargs["FilterExpression"] = filter_condition
        if last_key:
            kwargs["ExclusiveStartKey"] = last_key

        try:
            response = self.table.query(**kwargs)
        except ClientError as e:
            logger.error("DynamoDB query failed", error=str(e), index=index_name)
            raise

        items = [self.model_class.from_dynamodb(item) for item in response.get("Items", [])]
        return items, response.get("LastEvaluatedKey")

    def query_all(
        self,
        key_condition: ConditionBase,
        index_name: str | None = None,
        scan_forward: bool = True,
        filter_condition: ConditionBase | None = None,
    ) -> list[T]:
        """Run a query and follow LastEvaluatedKey until exhausted."""
        results: list[T] = []
        last_key = None
        while True:
            items, last_key = self.query(
                key_condition,
                index_name=index_name,
                scan_forward=scan_forward,
                filter_condition=filter_condition,
                last_key=last_key,
            )
            results.extend(items)
            if not last_key:
                return results

    def count(
        self,
        key_condition: ConditionBase,
        filter_condition: ConditionBase | None = None,
    ) -> int:
        """Count matching items without transferring them."""
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": key_condition,
            "Select": "COUNT",
        }
        if filter_condition is not None:
            kwargs["FilterExpression"] = filter_condition

        total = 0
        try:
            while True:
                response = self.table.query(**kwargs)
                total += response.get("Count", 0)
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    return total
                kwargs["ExclusiveStartKey"] = last_key
        except ClientError as e:
            logger.error("DynamoDB count query failed", error=str(e))
            raise

    def transact_write(self, actions: list[dict[str, Any]]) -> None:
        """Apply write actions atomically, all or nothing.

        Args:
            actions: TransactItems entries in low-level client format.
        """
        if not actions:
            return
        if len(actions) > MAX_TRANSACTION_ITEMS:
            raise ValueError(f"A transaction holds at most {MAX_TRANSACTION_ITEMS} actions")

        try:
            self.client.transact_write_items(TransactItems=actions)
        except ClientError as e:
            logger.error("DynamoDB transact_write_items failed", error=str(e), count=len(actions))
            raise

        logger.debug("Transaction committed", count=len(actions))
