"""
24-hour customer service window.

Free-form (non-template) messages to a contact are allowed only within 24 hours
of the contact's last inbound message. The window opens when the webhook
ingestor records an inbound message and closes by elapsed time alone; there is
no timer. Group conversations are never restricted.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from teamchat.models.conversation import Conversation

WINDOW = timedelta(hours=24)

NO_WINDOW = "NO_WINDOW"
WINDOW_OPEN = "WINDOW_OPEN"
WINDOW_CLOSED = "WINDOW_CLOSED"
GROUP = "GROUP"


@dataclass(frozen=True)
class WindowStatus:
    can_send_freeform: bool
    remaining: timedelta
    status: str
    message: str
    last_inbound_message_at: datetime | None = None
    expires_at: datetime | None = None

    @property
    def remaining_seconds(self) -> int:
        return int(self.remaining.total_seconds())


def as_utc(value: datetime | None) -> datetime | None:
    """Timestamps read back from SQLite are naive; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_status(conversation: Conversation, now: datetime | None = None) -> WindowStatus:
    now = as_utc(now) or utcnow()
    if conversation.is_group:
        return WindowStatus(
            can_send_freeform=True,
            remaining=timedelta(0),
            status=GROUP,
            message="Group conversation. Free messaging always available.",
        )

    last = as_utc(conversation.last_inbound_message_at)
    if last is None:
        return WindowStatus(
            can_send_freeform=False,
            remaining=timedelta(0),
            status=NO_WINDOW,
            message="No incoming message received. Use template messages to start conversation.",
        )

    expires_at = last + WINDOW
    if now - last < WINDOW:
        remaining = expires_at - now
        hours, rest = divmod(int(remaining.total_seconds()), 3600)
        return WindowStatus(
            can_send_freeform=True,
            remaining=remaining,
            status=WINDOW_OPEN,
            message=f"Free messaging available for {hours}h {rest // 60}m",
            last_inbound_message_at=last,
            expires_at=expires_at,
        )
    return WindowStatus(
        can_send_freeform=False,
        remaining=timedelta(0),
        status=WINDOW_CLOSED,
        message="24-hour window expired. Template messages only.",
        last_inbound_message_at=last,
        expires_at=expires_at,
    )


async def compute_window_status(
    session: AsyncSession,
    conversation_id: uuid.UUID,
    now: datetime | None = None,
) -> WindowStatus | None:
    conversation = await session.get(Conversation, conversation_id)
    if conversation is None:
        return None
    return compute_status(conversation, now)


def record_inbound(conversation: Conversation, at: datetime) -> None:
    """Advance the window anchor; never moves backwards."""
    at = as_utc(at)
    last = as_utc(conversation.last_inbound_message_at)
    if last is None or at > last:
        conversation.last_inbound_message_at = at
    last_message = as_utc(conversation.last_message_at)
    if last_message is None or at > last_message:
        conversation.last_message_at = at
