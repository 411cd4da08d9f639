import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Enum, Float, ForeignKey, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from teamchat.models.team import Base


class Direction(str, enum.Enum):
    FROM_CONTACT = "from_contact"
    TO_CONTACT = "to_contact"


class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    LOCATION = "location"
    CONTACT = "contact"
    TEMPLATE = "template"


MEDIA_TYPES = frozenset({MessageType.IMAGE, MessageType.VIDEO, MessageType.AUDIO, MessageType.DOCUMENT})


class MessageStatus(str, enum.Enum):
    QUEUED = "queued"
    SENDING = "sending"  # claimed by a delivery worker
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


def _enum_column(enum_cls: type[enum.Enum], length: int) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
    )


class Message(Base):
    """Inbound and outbound messages with delivery status and retry state."""

    __tablename__ = "message"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("conversation.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    team_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("team.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    direction: Mapped[Direction] = mapped_column(_enum_column(Direction, 16), nullable=False)
    message_type: Mapped[MessageType] = mapped_column(
        _enum_column(MessageType, 16),
        nullable=False,
        default=MessageType.TEXT,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    provider_message_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    status: Mapped[MessageStatus] = mapped_column(
        _enum_column(MessageStatus, 16),
        nullable=False,
        default=MessageStatus.QUEUED,
        index=True,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    template_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    template_parameters: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    language_code: Mapped[str | None] = mapped_column(String(16), nullable=True)

    reply_to_message_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("message.id", ondelete="SET NULL"),
        nullable=True,
    )
    context_provider_id = mapped_column(String(128), nullable=True)  # provider id of the replied-to message

    media_url = mapped_column(String(2048), nullable=True)
    file_name = mapped_column(String(255), nullable=True)
    file_size = mapped_column(Integer, nullable=True)
    mime_type = mapped_column(String(128), nullable=True)

    latitude = mapped_column(Float, nullable=True)
    longitude = mapped_column(Float, nullable=True)
    location_name = mapped_column(String(255), nullable=True)
    location_address = mapped_column(String(512), nullable=True)

    contact_name = mapped_column(String(255), nullable=True)
    contact_phone = mapped_column(String(32), nullable=True)

    sender_phone = mapped_column(String(32), nullable=True)
    sender_name = mapped_column(String(255), nullable=True)
    is_group_message: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    sent_at = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at = mapped_column(DateTime(timezone=True), nullable=True)
    read_at = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
