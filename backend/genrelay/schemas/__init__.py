"""Pydantic v2 schemas for the generation gateway."""
