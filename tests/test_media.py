"""Tests for the media transfer pipeline."""

import os
import uuid

import httpx
import pytest

from teamchat.config import GatewayMode
from teamchat.errors import ErrorKind, Failure
from teamchat.media import MB, MediaPipeline, check_size, normalize_mime
from teamchat.models import MessageType
from teamchat.tenant_directory import TenantCredentials


@pytest.fixture
def credentials() -> TenantCredentials:
    return TenantCredentials(
        team_id=uuid.uuid4(),
        name="Depot North",
        phone_number_id="PNID-1",
        access_token="token-abc",
    )


class TestNormalizeMime:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("audio/ogg; codecs=opus", "audio/ogg"),
            ("audio/opus", "audio/ogg"),
            ("image/jpg", "image/jpeg"),
            ("IMAGE/JPEG", "image/jpeg"),
            ("audio/x-m4a", "audio/mp4"),
            ("application/pdf", "application/pdf"),
            ("", "application/octet-stream"),
            (None, "application/octet-stream"),
            ("garbage", "application/octet-stream"),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_mime(raw) == expected


class TestCheckSize:
    def test_eight_megabyte_image_rejected_with_size(self):
        size = 8 * MB
        failure = check_size(MessageType.IMAGE, size)
        assert failure is not None
        assert failure.kind == ErrorKind.MEDIA_TOO_LARGE
        assert str(size) in failure.detail
        assert not failure.retryable

    @pytest.mark.parametrize(
        "kind,size",
        [
            (MessageType.IMAGE, 5 * MB),
            (MessageType.VIDEO, 16 * MB),
            (MessageType.AUDIO, 16 * MB),
            (MessageType.DOCUMENT, 100 * MB),
        ],
    )
    def test_limits_are_inclusive(self, kind, size):
        assert check_size(kind, size) is None
        assert check_size(kind, size + 1) is not None

    def test_non_media_kinds_unlimited(self):
        assert check_size(MessageType.TEXT, 500 * MB) is None


class TestUploadOutbound:
    @pytest.mark.asyncio
    async def test_oversize_rejected_before_network(self, media, provider, credentials):
        data = b"\0" * (8 * MB)
        result = await media.upload_outbound(credentials, data, "photo.jpg", "image/jpeg", MessageType.IMAGE)

        assert not result.ok
        assert result.failure.kind == ErrorKind.MEDIA_TOO_LARGE
        assert str(len(data)) in result.failure.detail
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_multipart_upload_returns_media_id(self, media, provider, credentials):
        provider.responder = lambda request: httpx.Response(200, json={"id": "media-42"})
        result = await media.upload_outbound(credentials, b"jpegbytes", "photo.jpg", "image/jpg", MessageType.IMAGE)

        assert result.ok
        assert result.media_id == "media-42"
        request = provider.requests[0]
        assert str(request.url) == "https://graph.facebook.com/v18.0/PNID-1/media"
        assert request.headers["Authorization"] == "Bearer token-abc"
        assert request.headers["content-type"].startswith("multipart/form-data")
        assert b'name="messaging_product"' in request.content
        assert b"image/jpeg" in request.content
        assert b"jpegbytes" in request.content

    @pytest.mark.asyncio
    async def test_upload_error_is_retryable(self, media, provider, credentials):
        provider.responder = lambda request: httpx.Response(500, text="boom")
        result = await media.upload_outbound(credentials, b"x", "a.pdf", "application/pdf", MessageType.DOCUMENT)
        assert result.failure.kind == ErrorKind.MEDIA_UPLOAD_FAILED
        assert result.failure.retryable

    @pytest.mark.asyncio
    async def test_bypass_skips_network(self, media_root, provider, credentials):
        pipeline = MediaPipeline(GatewayMode(bypass_provider_calls=True), media_root=media_root, transport=provider.transport)
        result = await pipeline.upload_outbound(credentials, b"x", "a.jpg", "image/jpeg", MessageType.IMAGE)
        assert result.ok
        assert provider.calls == 0


class TestDownloadInbound:
    @pytest.mark.asyncio
    async def test_download_stores_file(self, media, media_root, provider, credentials):
        def responder(request: httpx.Request) -> httpx.Response:
            if request.url.host == "graph.facebook.com":
                return httpx.Response(
                    200,
                    json={"url": "https://lookaside.fbsbx.com/whatsapp_business/attachments/?mid=media-7", "mime_type": "audio/ogg; codecs=opus"},
                )
            return httpx.Response(200, content=b"OggS-voice-note", headers={"Content-Type": "audio/ogg"})

        provider.responder = responder
        stored = await media.download_inbound(credentials, "media-7")

        assert stored is not None
        assert stored.mime_type == "audio/ogg"
        assert stored.size == len(b"OggS-voice-note")
        assert stored.filename.endswith(".ogg")
        assert stored.url == f"/media/{stored.filename}"
        with open(os.path.join(media_root, stored.filename), "rb") as f:
            assert f.read() == b"OggS-voice-note"
        assert all(r.headers["Authorization"] == "Bearer token-abc" for r in provider.requests)

    @pytest.mark.asyncio
    async def test_metadata_failure_yields_none(self, media, provider, credentials):
        provider.responder = lambda request: httpx.Response(404, json={"error": {"message": "not found"}})
        assert await media.download_inbound(credentials, "media-7") is None

    @pytest.mark.asyncio
    async def test_network_error_yields_none(self, media, provider, credentials):
        def responder(request):
            raise httpx.ConnectError("refused", request=request)

        provider.responder = responder
        assert await media.download_inbound(credentials, "media-7") is None


class TestLoadSource:
    @pytest.mark.asyncio
    async def test_served_path_inside_media_root(self, media, media_root):
        with open(os.path.join(media_root, "abc.pdf"), "wb") as f:
            f.write(b"%PDF-1.4")
        loaded = await media.load_source("/media/abc.pdf")
        assert loaded is not None
        assert loaded.data == b"%PDF-1.4"
        assert loaded.mime_type == "application/pdf"
        assert loaded.filename == "abc.pdf"

    @pytest.mark.asyncio
    async def test_path_traversal_confined_to_media_root(self, media, tmp_path):
        secret = tmp_path / "secret.txt"
        secret.write_text("nope")
        result = await media.load_source("/media/../secret.txt")
        assert isinstance(result, Failure)
        assert result.kind == ErrorKind.MEDIA_DOWNLOAD_FAILED
        assert not result.retryable

    @pytest.mark.asyncio
    async def test_remote_url(self, media, provider):
        provider.responder = lambda request: httpx.Response(200, content=b"img", headers={"Content-Type": "image/png"})
        loaded = await media.load_source("https://cdn.example.com/pics/truck.png")
        assert loaded.filename == "truck.png"
        assert loaded.mime_type == "image/png"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_remote_outage_is_retryable(self, media, provider, status):
        provider.responder = lambda request: httpx.Response(status)
        result = await media.load_source("https://cdn.example.com/pics/truck.png")
        assert result.kind == ErrorKind.MEDIA_SOURCE_UNAVAILABLE
        assert result.retryable

    @pytest.mark.asyncio
    async def test_remote_network_error_is_retryable(self, media, provider):
        def responder(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        provider.responder = responder
        result = await media.load_source("https://cdn.example.com/pics/truck.png")
        assert result.kind == ErrorKind.MEDIA_SOURCE_UNAVAILABLE
        assert result.retryable

    @pytest.mark.asyncio
    async def test_remote_not_found_is_permanent(self, media, provider):
        provider.responder = lambda request: httpx.Response(404)
        result = await media.load_source("https://cdn.example.com/pics/truck.png")
        assert result.kind == ErrorKind.MEDIA_DOWNLOAD_FAILED
        assert not result.retryable
