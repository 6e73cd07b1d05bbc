"""
Pydantic schemas for request/response validation.

This module contains:
- The gateway webhook envelope
- Response models for API responses
- Request models for agent actions (reply, webhook configuration)
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Gateway Envelope
# =============================================================================

class GatewayEnvelope(BaseModel):
    """
    Top-level Evolution API webhook payload.

    Only `event` and `instance` drive routing; `data` is event specific and
    stays a loose structure. Unknown top-level keys are kept.
    """
    event: str = Field(default="", description="Event type, e.g. MESSAGES_UPSERT or messages.upsert")
    instance: str = Field(default="", description="Gateway instance (channel) name")
    data: Any = Field(default=None, description="Event specific payload")
    destination: Optional[str] = None
    date_time: Optional[str] = None
    sender: Optional[str] = None
    server_url: Optional[str] = None
    apikey: Optional[str] = None

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "examples": [
                {
                    "event": "MESSAGES_UPSERT",
                    "instance": "support1",
                    "data": {
                        "key": {"remoteJid": "5511988887766@s.whatsapp.net", "fromMe": False, "id": "m1"},
                        "message": {"conversation": "Hello"},
                        "messageTimestamp": 1700000000,
                        "pushName": "Ana",
                    },
                }
            ]
        },
    )

    @field_validator("event", mode="before")
    @classmethod
    def coerce_event(cls, v: Any) -> str:
        return v if isinstance(v, str) else ""

    @field_validator("instance", mode="before")
    @classmethod
    def coerce_instance(cls, v: Any) -> str:
        """Some gateway versions send the instance as an object."""
        if isinstance(v, dict):
            return v.get("instanceName") or v.get("name") or ""
        return v if isinstance(v, str) else ""


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Acknowledgement returned to the gateway; always sent with HTTP 200."""
    received: bool = True
    timestamp: str = Field(..., description="Server time (ISO-8601 UTC)")
    event: str = Field(..., description="Event type as received")
    instance: Optional[str] = None
    processed: bool = Field(..., description="Whether the event changed anything")
    message: str = Field(..., description="Human readable processing outcome")
    ticket_id: Optional[str] = Field(
        None,
        alias="ticketId",
        description="Ticket the message was routed to",
    )

    model_config = ConfigDict(populate_by_name=True)


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class TicketResponse(BaseModel):
    id: str
    title: str
    subject: Optional[str] = None
    status: str
    priority: str
    channel: str
    department_id: Optional[str] = None
    client_phone: Optional[str] = None
    instance_name: Optional[str] = None
    auto_created: bool
    unread: bool
    tags: list[str] = Field(default_factory=list)
    metadata: dict = Field(default_factory=dict, validation_alias="meta")
    last_message_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class TicketsListResponse(BaseModel):
    """
    Response model for GET /tickets with pagination.

    Contains:
    - data: list of tickets matching filters
    - total: total count of tickets matching filters (ignoring pagination)
    - limit / offset: the page that was returned
    """
    data: list[TicketResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class MessageResponse(BaseModel):
    id: str
    ticket_id: str
    content: str
    type: str
    sender_role: str
    sender_name: Optional[str] = None
    is_read: bool
    metadata: dict = Field(default_factory=dict, validation_alias="meta")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class MessagesListResponse(BaseModel):
    ticket_id: str
    data: list[MessageResponse] = Field(default_factory=list)


class InstanceCount(BaseModel):
    instance: str
    count: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    """
    Response model for GET /stats.

    - total_tickets / tickets_by_status
    - auto_created_tickets: tickets opened from inbound messages
    - total_messages
    - tickets_per_instance: top 10 gateway instances by ticket count
    """
    total_tickets: int = Field(..., ge=0)
    tickets_by_status: dict[str, int] = Field(default_factory=dict)
    auto_created_tickets: int = Field(..., ge=0)
    total_messages: int = Field(..., ge=0)
    tickets_per_instance: list[InstanceCount] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Agent Action Requests
# =============================================================================

class ReplyRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4096)
    sender_name: str = Field(default="Agent", min_length=1)
    sender_id: Optional[str] = None


class WebhookConfigRequest(BaseModel):
    url: Optional[str] = Field(None, description="Defaults to PUBLIC_WEBHOOK_URL")
    events: Optional[list[str]] = None


class GatewayResult(BaseModel):
    """Raw gateway response passed through to the agent UI."""
    instance: str
    data: Any = None
