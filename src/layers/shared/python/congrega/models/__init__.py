"""Pydantic models for Congrega entities."""
