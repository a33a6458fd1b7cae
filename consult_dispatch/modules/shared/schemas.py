from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_serializer
from pydantic.alias_generators import to_camel

from consult_dispatch.core.utils.time import iso_utc


class DashboardModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_serializer("*", when_used="json")
    def serialize_datetime_as_utc(value, _info):
        # Timestamps are persisted UTC-naive (see `core/utils/time.py:utcnow`); emit them with a "Z".
        if isinstance(value, datetime):
            return iso_utc(value)
        return value


class ReportModel(BaseModel):
    """Snake-case payloads consumed by monitoring; field names are part of the contract."""

    @field_serializer("*", when_used="json")
    def serialize_datetime_as_utc(value, _info):
        if isinstance(value, datetime):
            return iso_utc(value)
        return value
