from __future__ import annotations

from datetime import UTC, datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, Field


T = TypeVar("T")


def _timestamp() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class ResponseMetadata(BaseModel):
    timestamp: str = Field(default_factory=_timestamp)


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: T
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)


def ok(data: T) -> Envelope[T]:
    return Envelope(data=data)
