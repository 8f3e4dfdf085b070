"""Repository classes for DynamoDB data access."""
