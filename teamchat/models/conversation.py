import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from teamchat.models.team import Base


class Conversation(Base):
    """One open thread per (team, contact) or (team, group).

    last_inbound_message_at drives the 24-hour free-form window; only the
    webhook ingestor writes it, and never backwards.
    """

    __tablename__ = "conversation"
    __table_args__ = (
        UniqueConstraint("team_id", "contact_id", name="uq_conversation_team_contact"),
        UniqueConstraint("team_id", "group_id", name="uq_conversation_team_group"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    team_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("team.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    contact_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("contact.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    group_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("chat_group.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    is_group: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    topic: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_inbound_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
