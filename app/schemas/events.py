"""
Rating stream events

Every entry on the rating stream carries one JSON document in its `data`
field. The document is a tagged union discriminated on `operation`, each
variant pinned to a schema version so consumers can reject payloads they
do not understand instead of probing fields.
"""
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

EVENT_SCHEMA_VERSION = 1


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _RatingEventBase(BaseModel):
    version: Literal[1] = EVENT_SCHEMA_VERSION
    movie_id: int = Field(..., gt=0)
    rating_id: int = Field(..., ge=0)
    timestamp: datetime = Field(default_factory=_now)


class RatingCreated(_RatingEventBase):
    operation: Literal["CREATE"] = "CREATE"
    stars: int = Field(..., ge=1, le=5)


class RatingUpdated(_RatingEventBase):
    operation: Literal["UPDATE"] = "UPDATE"
    stars: int = Field(..., ge=1, le=5)
    previous_stars: Optional[int] = Field(None, ge=1, le=5)


class RatingDeleted(_RatingEventBase):
    operation: Literal["DELETE"] = "DELETE"


RatingEvent = Annotated[
    Union[RatingCreated, RatingUpdated, RatingDeleted],
    Field(discriminator="operation"),
]

_event_adapter = TypeAdapter(RatingEvent)


def encode_event(event: RatingEvent) -> str:
    """Serialize an event for the stream `data` field"""
    return event.model_dump_json()


def decode_event(payload: str) -> RatingEvent:
    """
    Parse a stream `data` field into its event variant

    Raises:
        pydantic.ValidationError: unknown operation, unsupported version or
            missing fields
    """
    return _event_adapter.validate_json(payload)
