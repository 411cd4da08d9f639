"""
Outbound message payloads for the Cloud API `/messages` endpoint.

One pydantic model per message shape, discriminated on `type`. Each model
renders only its own section; `build_message_body` adds the envelope.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, model_validator

DEFAULT_LANGUAGE_CODE = "en_US"


def _param_key(key: str) -> tuple[int, int, str]:
    return (0, int(key), "") if key.isdigit() else (1, 0, key)


def ordered_parameters(parameters: dict[str, Any] | None) -> list[str]:
    """Values ordered by key; numeric keys numerically ("2" before "10"), then the rest alphabetically."""
    if not parameters:
        return []
    return [str(parameters[k]) for k in sorted(parameters, key=_param_key)]


class TextPayload(BaseModel):
    type: Literal["text"] = "text"
    body: str = Field(..., min_length=1)
    preview_url: bool = False

    def section(self) -> dict[str, Any]:
        return {"text": {"preview_url": self.preview_url, "body": self.body}}


class TemplatePayload(BaseModel):
    type: Literal["template"] = "template"
    name: str = Field(..., min_length=1)
    language_code: str = DEFAULT_LANGUAGE_CODE
    parameters: dict[str, str] = Field(default_factory=dict)

    def section(self) -> dict[str, Any]:
        template: dict[str, Any] = {
            "name": self.name,
            "language": {"code": self.language_code or DEFAULT_LANGUAGE_CODE},
        }
        values = ordered_parameters(self.parameters)
        if values:
            template["components"] = [
                {
                    "type": "body",
                    "parameters": [{"type": "text", "text": v} for v in values],
                }
            ]
        return {"template": template}


class MediaPayload(BaseModel):
    type: Literal["image", "video", "audio", "document"]
    media_id: str | None = None
    link: str | None = None
    caption: str | None = None
    filename: str | None = None

    @model_validator(mode="after")
    def _needs_reference(self) -> "MediaPayload":
        if not (self.media_id or self.link):
            raise ValueError("media_id or link is required")
        return self

    def section(self) -> dict[str, Any]:
        media: dict[str, Any] = {"id": self.media_id} if self.media_id else {"link": self.link}
        if self.caption and self.type != "audio":
            media["caption"] = self.caption
        if self.type == "document" and self.filename:
            media["filename"] = self.filename
        return {self.type: media}


class LocationPayload(BaseModel):
    type: Literal["location"] = "location"
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    name: str | None = None
    address: str | None = None

    def section(self) -> dict[str, Any]:
        location: dict[str, Any] = {"latitude": self.latitude, "longitude": self.longitude}
        if self.name:
            location["name"] = self.name
        if self.address:
            location["address"] = self.address
        return {"location": location}


class ContactPayload(BaseModel):
    type: Literal["contacts"] = "contacts"
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)

    def section(self) -> dict[str, Any]:
        digits = "".join(ch for ch in self.phone if ch.isdigit())
        return {
            "contacts": [
                {
                    "name": {"formatted_name": self.name, "first_name": self.name},
                    "phones": [{"phone": f"+{digits}", "wa_id": digits, "type": "CELL"}],
                }
            ]
        }


OutboundPayload = Annotated[
    Union[TextPayload, TemplatePayload, MediaPayload, LocationPayload, ContactPayload],
    Field(discriminator="type"),
]


def build_message_body(
    recipient: str,
    payload: OutboundPayload,
    reply_to: str | None = None,
    recipient_type: str = "individual",
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "recipient_type": recipient_type,
        "to": recipient,
        "type": payload.type,
    }
    body.update(payload.section())
    if reply_to:
        body["context"] = {"message_id": reply_to}
    return body
