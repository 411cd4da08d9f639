"""Tests for outbound payload rendering."""

import pytest
from pydantic import TypeAdapter, ValidationError

from teamchat.payloads import (
    ContactPayload,
    LocationPayload,
    MediaPayload,
    OutboundPayload,
    TemplatePayload,
    TextPayload,
    build_message_body,
    ordered_parameters,
)


class TestTemplateParameters:
    def test_numeric_keys_in_numeric_order(self):
        assert ordered_parameters({"10": "j", "2": "b", "1": "a"}) == ["a", "b", "j"]

    def test_named_keys_sorted_after_numeric(self):
        assert ordered_parameters({"name": "Sam", "1": "first", "depot": "North"}) == ["first", "North", "Sam"]

    def test_body_component(self):
        body = build_message_body(
            "447911123456",
            TemplatePayload(name="shift_reminder", language_code="en_GB", parameters={"2": "09:00", "1": "Sam"}),
        )
        assert body == {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": "447911123456",
            "type": "template",
            "template": {
                "name": "shift_reminder",
                "language": {"code": "en_GB"},
                "components": [
                    {
                        "type": "body",
                        "parameters": [
                            {"type": "text", "text": "Sam"},
                            {"type": "text", "text": "09:00"},
                        ],
                    }
                ],
            },
        }

    def test_no_parameters_no_components(self):
        body = build_message_body("447911123456", TemplatePayload(name="hello_world"))
        assert body["template"] == {"name": "hello_world", "language": {"code": "en_US"}}


class TestVariants:
    def test_text(self):
        body = build_message_body("447911123456", TextPayload(body="On my way"))
        assert body["type"] == "text"
        assert body["text"] == {"preview_url": False, "body": "On my way"}

    def test_audio_never_has_caption(self):
        body = build_message_body("447911123456", MediaPayload(type="audio", media_id="m1", caption="ignored"))
        assert body["audio"] == {"id": "m1"}

    def test_image_caption_and_document_filename(self):
        image = build_message_body("447911123456", MediaPayload(type="image", media_id="m1", caption="Damage"))
        assert image["image"] == {"id": "m1", "caption": "Damage"}
        doc = build_message_body("447911123456", MediaPayload(type="document", media_id="m2", filename="pod.pdf"))
        assert doc["document"] == {"id": "m2", "filename": "pod.pdf"}

    def test_media_requires_reference(self):
        with pytest.raises(ValidationError):
            MediaPayload(type="image")

    def test_location(self):
        body = build_message_body(
            "447911123456",
            LocationPayload(latitude=51.5, longitude=-0.12, name="Depot", address="1 Yard Rd"),
        )
        assert body["location"] == {"latitude": 51.5, "longitude": -0.12, "name": "Depot", "address": "1 Yard Rd"}

    def test_contact_card(self):
        body = build_message_body("447911123456", ContactPayload(name="Dispatch", phone="+44 20 7946 0000"))
        card = body["contacts"][0]
        assert card["name"]["formatted_name"] == "Dispatch"
        assert card["phones"][0] == {"phone": "+442079460000", "wa_id": "442079460000", "type": "CELL"}

    def test_reply_context_and_group_recipient(self):
        body = build_message_body("120363-group", TextPayload(body="hi"), reply_to="wamid.orig", recipient_type="group")
        assert body["recipient_type"] == "group"
        assert body["context"] == {"message_id": "wamid.orig"}

    def test_discriminated_union_parses_by_type(self):
        adapter = TypeAdapter(OutboundPayload)
        assert isinstance(adapter.validate_python({"type": "video", "link": "https://x/y.mp4"}), MediaPayload)
        assert isinstance(adapter.validate_python({"type": "location", "latitude": 1, "longitude": 2}), LocationPayload)
