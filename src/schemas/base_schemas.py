# src/schemas/base_schemas.py
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator


class BaseSchema(BaseModel):
    """Common configuration for the treatment record schemas.

    Enumerations are stored by value so records dump straight to the JSON
    columns of the treatments table.
    """

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        use_enum_values=True,
    )


class TimestampMixin(BaseSchema):
    """Record timestamps, always timezone-aware UTC"""

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # SQLite hands back naive datetimes
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class IDMixin(BaseSchema):
    """Row identifier, unset until the record is first stored"""

    id: Optional[UUID] = None
