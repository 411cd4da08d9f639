"""Pydantic schemas for the tenant messaging API."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from teamchat.models.message import MEDIA_TYPES, MessageType


class ErrorResponse(BaseModel):
    error: str
    message: str
    retry_after_seconds: int | None = None


class QueueMessageRequest(BaseModel):
    conversation_id: UUID | None = Field(None, description="Existing conversation to send into")
    phone_number: str | None = Field(None, description="Contact phone, any format; contact and conversation are created if needed")
    group_id: str | None = Field(None, description="Provider group id for group sends")
    message_type: MessageType = MessageType.TEXT
    content: str = Field("", description="Text body, or caption for media")
    media_url: str | None = Field(None, description="Served /media path or http(s) URL of the file to send")
    file_name: str | None = None
    mime_type: str | None = None
    latitude: float | None = Field(None, ge=-90, le=90)
    longitude: float | None = Field(None, ge=-180, le=180)
    location_name: str | None = None
    location_address: str | None = None
    contact_name: str | None = None
    contact_phone: str | None = None
    template_name: str | None = None
    template_parameters: dict[str, str] = Field(default_factory=dict)
    language_code: str = "en_US"
    reply_to_message_id: UUID | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> "QueueMessageRequest":
        targets = [t for t in (self.conversation_id, self.phone_number, self.group_id) if t]
        if len(targets) != 1:
            raise ValueError("exactly one of conversation_id, phone_number or group_id is required")
        kind = self.message_type
        if kind == MessageType.TEXT and not self.content.strip():
            raise ValueError("content is required for text messages")
        if kind in MEDIA_TYPES and not self.media_url:
            raise ValueError("media_url is required for media messages")
        if kind == MessageType.LOCATION and (self.latitude is None or self.longitude is None):
            raise ValueError("latitude and longitude are required for location messages")
        if kind == MessageType.CONTACT and not (self.contact_name and self.contact_phone):
            raise ValueError("contact_name and contact_phone are required for contact messages")
        if kind == MessageType.TEMPLATE and not self.template_name:
            raise ValueError("template_name is required for template messages")
        return self


class QueueMessageResponse(BaseModel):
    ok: bool = True
    message_id: UUID
    conversation_id: UUID
    status: str


class TemplateSendRequest(BaseModel):
    destination: str | None = Field(None, description="Recipient phone number, any format")
    conversation_id: UUID | None = None
    template_name: str = Field(..., min_length=1)
    parameters: dict[str, str] = Field(default_factory=dict, description="Body placeholders keyed by position")
    language_code: str = "en_US"

    @model_validator(mode="after")
    def _check_target(self) -> "TemplateSendRequest":
        if not (self.destination or self.conversation_id):
            raise ValueError("destination or conversation_id is required")
        return self


class TemplateSendResponse(BaseModel):
    ok: bool = True
    message_id: UUID
    provider_message_id: str
    status: str


class WindowStatusResponse(BaseModel):
    conversation_id: UUID
    can_send_freeform: bool
    status: str
    message: str
    remaining_seconds: int
    last_inbound_message_at: datetime | None = None
    expires_at: datetime | None = None
