"""Pydantic schemas for records, message DTOs, ingestion entries and events."""
