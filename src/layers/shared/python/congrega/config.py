"""Runtime configuration read from the Lambda environment."""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class StoreConfig:
    """Where and how to reach the DynamoDB table.

    Built once per process and handed to repositories explicitly.
    """

    table_name: str = "congrega-dev"
    region_name: str | None = None
    endpoint_url: str | None = None
    visit_history_index: str = "GSI2"

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """Load configuration from environment variables."""
        return cls(
            table_name=os.environ.get("TABLE_NAME", "congrega-dev"),
            region_name=os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION"),
            endpoint_url=os.environ.get("DYNAMODB_ENDPOINT_URL") or None,
            visit_history_index=os.environ.get("VISITOR_HISTORY_INDEX", "GSI2"),
        )
