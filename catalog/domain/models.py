from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class EntityMeta(BaseModel):
    """
    Metadata block of an entity envelope.

    uid, etag and generation are managed by the store. Any other key is kept
    as-is, since the metadata block is an open mapping.
    """
    model_config = ConfigDict(frozen=True, extra="allow")

    uid: Optional[str] = Field(None, description="Store-assigned identity, immutable once set")
    etag: Optional[str] = Field(None, description="Opaque token regenerated on every write")
    generation: Optional[int] = Field(None, ge=1, description="Version counter, starts at 1")
    name: Optional[str] = None
    namespace: Optional[str] = None
    labels: Optional[Dict[str, str]] = None
    annotations: Optional[Dict[str, str]] = None


class Entity(BaseModel):
    """
    Immutable domain model representing a catalog entity envelope.
    This is the core entity used throughout the application.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    api_version: str = Field(..., alias="apiVersion")
    kind: str
    metadata: Optional[EntityMeta] = None
    spec: Optional[Dict[str, Any]] = Field(None, description="Opaque payload, persisted verbatim")


class EntityRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    location_id: Optional[str] = None
    entity: Entity


class EntityResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    location_id: Optional[str] = None
    entity: Entity


class AddLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = Field(..., description="Selects the reader that handles this location")
    target: str = Field(..., description="Address or path passed to the reader")


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    target: str


class LocationUpdateStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAIL = "FAIL"


class LocationUpdateLogEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    status: LocationUpdateStatus
    location_id: str
    entity_name: Optional[str] = None
    message: Optional[str] = None
    created_at: Optional[datetime] = None


class ReadItem(BaseModel):
    """One item produced by a location reader: either raw data or an error."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: Literal["data", "error"]
    data: Optional[bytes] = None
    error: Optional[Exception] = None

    @classmethod
    def of_data(cls, data: bytes) -> "ReadItem":
        return cls(kind="data", data=data)

    @classmethod
    def of_error(cls, error: Exception) -> "ReadItem":
        return cls(kind="error", error=error)
