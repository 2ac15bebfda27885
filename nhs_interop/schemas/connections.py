from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ConnectionCreate(BaseModel):
    """Credential set for one connected organization."""

    connection_id: str = Field(..., min_length=1, max_length=64)
    organization_code: str = Field(..., min_length=1, max_length=20)
    client_id: str = Field(..., min_length=1, max_length=255)
    client_secret: str = Field(..., min_length=1)
    scope: str = Field(default="patient/*.read patient/*.write", max_length=500)
    token_url: str | None = Field(default=None, max_length=500)
    asid: str | None = Field(default=None, max_length=32)


class ConnectionReconnect(BaseModel):
    client_secret: str | None = Field(default=None, min_length=1)


class ConnectionResponse(BaseModel):
    """Connection state without secrets or tokens."""

    model_config = ConfigDict(from_attributes=True)

    connection_id: str
    organization_code: str
    status: str
    asid: str | None = None
    token_expires_at: datetime | None = None
    last_error: str | None = None
    last_refreshed_at: datetime | None = None
    refresh_count: int = 0
