"""
Pydantic Schemas - Data Validation Models

Defines the schemas used throughout the relay:
- Upstream timeline pages (data + meta)
- Stored records
- Identity configuration
- Downstream messages
- Relay events published to Redis

Usage:
    from utils.schemas import TimelineResponse

    response = TimelineResponse.model_validate(orjson.loads(body))
    for record in response.records:
        ...
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Record(BaseModel):
    """A single timeline entry. Immutable once ingested."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1, description="Upstream record id")
    created_at: datetime = Field(..., description="Creation timestamp")
    text: str = Field(default="", description="Text payload")


class TimelineMeta(BaseModel):
    """Pagination metadata returned alongside each page."""

    model_config = ConfigDict(extra="ignore")

    oldest_id: Optional[str] = None
    newest_id: Optional[str] = None
    result_count: Optional[int] = None
    next_token: Optional[str] = None


class TimelineResponse(BaseModel):
    """Response body of the timeline endpoint.

    Example:
    {
        "data": [{"id": "3", "created_at": "2022-11-02T23:15:29.000Z", "text": "..."}],
        "meta": {"result_count": 1, "newest_id": "3", "oldest_id": "3", "next_token": "abc"}
    }
    """

    model_config = ConfigDict(extra="ignore")

    data: Optional[list[Record]] = None
    meta: TimelineMeta = Field(default_factory=TimelineMeta)

    @property
    def records(self) -> list[Record]:
        return self.data or []


class UserData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    username: str
    name: Optional[str] = None


class UserLookupResponse(BaseModel):
    """Response body of the users lookup endpoint."""

    model_config = ConfigDict(extra="ignore")

    data: Optional[list[UserData]] = None
    errors: Optional[list[dict]] = None


class IdentityConfig(BaseModel):
    """One upstream account mapped to one downstream channel.

    `name` identifies the identity in the store and defaults to the upstream
    username. An identity without a channel is polled but never delivered.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="", description="Identity name, defaults to username")
    username: str = Field(..., min_length=1, description="Upstream account username")
    user_id: Optional[str] = Field(default=None, description="Upstream account id")
    channel: Optional[str] = Field(default=None, description="Downstream chat id or @channel")
    included: bool = Field(default=True, description="Poll this identity")
    max_results: Optional[int] = Field(default=None, ge=5, le=100, description="Page size override")
    start_time: Optional[datetime] = Field(default=None, description="Seed lower time bound")
    end_time: Optional[datetime] = Field(default=None, description="Upper time bound")
    since_id: Optional[str] = Field(default=None, description="Seed record id marker")

    @model_validator(mode="before")
    @classmethod
    def default_name(cls, values):
        if isinstance(values, dict) and not values.get("name") and values.get("username"):
            values = {**values, "name": values["username"]}
        return values

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Names key partitions and cursors, where ":" separates the parts."""
        if ":" in v:
            raise ValueError(f"identity name must not contain ':': {v}")
        return v


class OutboundMessage(BaseModel):
    """Body of a downstream sendMessage request."""

    chat_id: str
    text: str


class RelayEvent(BaseModel):
    """Relay event payload published after each identity cycle.

    {
        "type": "identity_synced",
        "identity": "alice",
        "poll_outcome": "completed",
        "ingested": 3,
        "drain_status": "compacted",
        "delivered": 3,
        "ts": "2025-01-15T03:15:02Z"
    }
    """

    type: str = Field(default="identity_synced", description="Event type")
    identity: str = Field(..., description="Identity name")
    poll_outcome: Optional[str] = Field(default=None)
    ingested: int = Field(default=0)
    drain_status: Optional[str] = Field(default=None)
    delivered: int = Field(default=0)
    error: Optional[str] = Field(default=None)
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Timestamp")
