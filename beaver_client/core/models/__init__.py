"""Pydantic models shared by every layer of the client."""

from .base import BaseSchema, WireSchema

__all__ = ["BaseSchema", "WireSchema"]
