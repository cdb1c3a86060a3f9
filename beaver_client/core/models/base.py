"""Pydantic base schema utilities for client models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """
    Base Pydantic model for schemas built by the client itself.

    Configures common Pydantic behaviors:
    - ``populate_by_name=True``: Allow initialization by alias or field name.
    - ``extra="forbid"``: Prevent unknown fields from slipping into the model, ensuring strict validation.
    - ``protected_namespaces=()``: Fields such as ``model_id`` and ``model_name`` are part of the wire format.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="forbid",
        protected_namespaces=(),
    )


class WireSchema(BaseSchema):
    """
    Base model for payloads produced by the backend.

    The backend is free to add fields to any frame or stored record, so unknown
    keys are dropped instead of rejected.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )
