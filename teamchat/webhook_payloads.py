"""Pydantic models for Cloud API webhook notifications. Unknown fields are ignored."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class _Lenient(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(populate_by_name=True, extra="ignore")


def parse_timestamp(value: str | None) -> datetime | None:
    """Provider timestamps are unix seconds as strings."""
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


class Metadata(_Lenient):
    phone_number_id: str = ""
    display_phone_number: str | None = None


class Profile(_Lenient):
    name: str | None = None


class ContactInfo(_Lenient):
    wa_id: str = ""
    profile: Profile | None = None


class TextContent(_Lenient):
    body: str = ""


class MediaContent(_Lenient):
    id: str = ""
    mime_type: str | None = None
    caption: str | None = None
    filename: str | None = None
    sha256: str | None = None


class LocationContent(_Lenient):
    latitude: float | None = None
    longitude: float | None = None
    name: str | None = None
    address: str | None = None


class SharedName(_Lenient):
    formatted_name: str | None = None
    first_name: str | None = None


class SharedPhone(_Lenient):
    phone: str | None = None
    wa_id: str | None = None


class SharedContact(_Lenient):
    name: SharedName | None = None
    phones: list[SharedPhone] = Field(default_factory=list)


class MessageContext(_Lenient):
    id: str | None = None
    from_: str | None = Field(None, alias="from")


class ButtonContent(_Lenient):
    text: str | None = None
    payload: str | None = None


class InteractiveReply(_Lenient):
    id: str | None = None
    title: str | None = None


class InteractiveContent(_Lenient):
    type: str | None = None
    button_reply: InteractiveReply | None = None
    list_reply: InteractiveReply | None = None


class InboundMessage(_Lenient):
    from_: str = Field("", alias="from")
    id: str = ""
    timestamp: str | None = None
    type: str = "text"
    text: TextContent | None = None
    image: MediaContent | None = None
    video: MediaContent | None = None
    audio: MediaContent | None = None
    voice: MediaContent | None = None
    document: MediaContent | None = None
    sticker: MediaContent | None = None
    location: LocationContent | None = None
    contacts: list[SharedContact] = Field(default_factory=list)
    context: MessageContext | None = None
    button: ButtonContent | None = None
    interactive: InteractiveContent | None = None
    # Group chats: group_id identifies the group, participant the sender
    group_id: str | None = None
    participant: str | None = None

    @property
    def is_group(self) -> bool:
        return bool(self.group_id)

    @property
    def sent_at(self) -> datetime | None:
        return parse_timestamp(self.timestamp)


class StatusError(_Lenient):
    code: int | None = None
    title: str | None = None
    message: str | None = None
    error_data: dict[str, Any] | None = None

    def describe(self) -> str:
        details = (self.error_data or {}).get("details")
        text = self.message or self.title or "unknown error"
        if details:
            text = f"{text}: {details}"
        return f"{text} (code {self.code})" if self.code is not None else text


class StatusEvent(_Lenient):
    id: str = ""
    status: str = ""
    timestamp: str | None = None
    recipient_id: str | None = None
    errors: list[StatusError] = Field(default_factory=list)

    @property
    def at(self) -> datetime | None:
        return parse_timestamp(self.timestamp)

    def error_text(self) -> str | None:
        if not self.errors:
            return None
        return "; ".join(e.describe() for e in self.errors)


class ChangeValue(_Lenient):
    """One change. Sub-events stay raw so each is validated on its own."""

    messaging_product: str | None = None
    metadata: Metadata = Field(default_factory=Metadata)
    contacts: list[Any] = Field(default_factory=list)
    messages: list[Any] = Field(default_factory=list)
    statuses: list[Any] = Field(default_factory=list)

    def profile_name(self, wa_id: str) -> str | None:
        for raw in self.contacts:
            try:
                contact = ContactInfo.model_validate(raw)
            except ValidationError:
                continue
            if contact.wa_id == wa_id and contact.profile:
                return contact.profile.name
        return None


class Change(_Lenient):
    field: str = "messages"
    value: dict[str, Any] = Field(default_factory=dict)

    def parsed_value(self) -> ChangeValue | None:
        try:
            return ChangeValue.model_validate(self.value)
        except ValidationError:
            return None


class Entry(_Lenient):
    id: str = ""
    changes: list[Change] = Field(default_factory=list)


class WebhookNotification(_Lenient):
    object: str = ""
    entry: list[Entry] = Field(default_factory=list)

    def phone_number_ids(self) -> set[str]:
        ids = set()
        for entry in self.entry:
            for change in entry.changes:
                value = change.parsed_value()
                if value is not None and value.metadata.phone_number_id:
                    ids.add(value.metadata.phone_number_id)
        return ids
