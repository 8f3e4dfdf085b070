"""Business rules for visitor follow-up."""
