"""Pytest configuration and fixtures."""

import json
import os
from datetime import datetime, timezone

import pytest

# Set environment variables before imports
os.environ["TABLE_NAME"] = "congrega-test"
os.environ["STAGE"] = "test"
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
os.environ.pop("DYNAMODB_ENDPOINT_URL", None)
os.environ.pop("VISITOR_HISTORY_INDEX", None)

TABLE_NAME = "congrega-test"


def _gsi(name: str) -> dict:
    return {
        "IndexName": name,
        "KeySchema": [
            {"AttributeName": f"{name}PK", "KeyType": "HASH"},
            {"AttributeName": f"{name}SK", "KeyType": "RANGE"},
        ],
        "Projection": {"ProjectionType": "ALL"},
    }


def _create_table(dynamodb, indexes: list[str]):
    attributes = [
        {"AttributeName": "PK", "AttributeType": "S"},
        {"AttributeName": "SK", "AttributeType": "S"},
    ]
    for name in indexes:
        attributes.append({"AttributeName": f"{name}PK", "AttributeType": "S"})
        attributes.append({"AttributeName": f"{name}SK", "AttributeType": "S"})

    table = dynamodb.create_table(
        TableName=TABLE_NAME,
        KeySchema=[
            {"AttributeName": "PK", "KeyType": "HASH"},
            {"AttributeName": "SK", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=attributes,
        GlobalSecondaryIndexes=[_gsi(name) for name in indexes],
        BillingMode="PAY_PER_REQUEST",
    )
    table.wait_until_exists()
    return table


@pytest.fixture
def aws_credentials():
    """Mock AWS credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"


@pytest.fixture
def dynamodb_table(aws_credentials):
    """Create mocked DynamoDB table with the listing and history indexes."""
    import boto3
    from moto import mock_aws

    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        yield _create_table(dynamodb, ["GSI1", "GSI2"])


@pytest.fixture
def table_without_history_index(aws_credentials):
    """Create mocked DynamoDB table lacking the visit history index."""
    import boto3
    from moto import mock_aws

    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        yield _create_table(dynamodb, ["GSI1"])


@pytest.fixture
def repo(dynamodb_table):
    """Visitor repository bound to the mocked table."""
    import boto3

    from congrega.config import StoreConfig
    from congrega.repositories.visitor import VisitorRepository

    return VisitorRepository(
        StoreConfig(table_name=TABLE_NAME),
        dynamodb=boto3.resource("dynamodb", region_name="us-east-1"),
    )


@pytest.fixture
def visitor_request():
    """Factory for visitor creation requests."""
    from congrega.models.visitor import CreateVisitorRequest

    def _create(**overrides):
        data = {
            "name": "Maria Santos",
            "email": "maria@example.com",
            "phone": "(11) 99999-9999",
            "first_visit_date": datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc),
            "created_by": "admin-1",
        }
        data.update(overrides)
        return CreateVisitorRequest(**data)

    return _create


@pytest.fixture
def sample_visitor():
    """Create a sample visitor value."""
    from congrega.models.visitor import Address, FollowUpStatus, Visitor, VisitorStatus

    return Visitor(
        id="visitor-1",
        name="Maria Santos",
        email="maria@example.com",
        phone="(11) 99999-9999",
        address=Address(
            street="Rua das Flores",
            city="Sao Paulo",
            state="SP",
            zip_code="01234567",
        ),
        birth_date=datetime(1990, 5, 15).date(),
        gender="feminine",
        marital_status="married",
        interests=["worship", "study groups"],
        first_visit_date=datetime(2024, 1, 15, tzinfo=timezone.utc),
        last_visit_date=datetime(2024, 2, 20, tzinfo=timezone.utc),
        total_visits=3,
        follow_up_status=FollowUpStatus.PENDING,
        assigned_to="leader-1",
        created_by="admin-1",
        status=VisitorStatus.ACTIVE,
    )


@pytest.fixture
def api_gateway_event():
    """Create a sample API Gateway event."""
    def _create_event(
        method: str = "GET",
        resource: str = "/visitors",
        path_params: dict = None,
        query_params: dict = None,
        body: dict = None,
        user_id: str = "test-user-123",
        is_admin: bool = False,
    ):
        return {
            "httpMethod": method,
            "resource": resource,
            "path": resource,
            "pathParameters": path_params or {},
            "queryStringParameters": query_params or {},
            "body": body if isinstance(body, str) else (json.dumps(body) if body else None),
            "headers": {
                "Authorization": "Bearer test-token",
                "Content-Type": "application/json",
            },
            "requestContext": {
                "authorizer": {
                    "userId": user_id,
                    "email": "test@example.com",
                    "isAdmin": "true" if is_admin else "false",
                },
            },
        }

    return _create_event
