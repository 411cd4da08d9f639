"""
Media transfer between the provider and local storage.

Inbound: provider media id -> metadata lookup -> byte download -> normalised
MIME -> file under MEDIA_ROOT, served at MEDIA_BASE_URL.

Outbound: bytes (loaded from a served path or an http(s) URL) -> per-type size
check -> multipart upload -> provider media id, which the send request then
references. Raw bytes are never embedded in a send.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import uuid
from dataclasses import dataclass
from urllib.parse import urlparse

import aiofiles
import httpx

from teamchat.config import (
    GRAPH_API_BASE,
    MEDIA_BASE_URL,
    MEDIA_ROOT,
    MEDIA_UPLOAD_TIMEOUT_SEC,
    PROVIDER_TIMEOUT_SEC,
    GatewayMode,
)
from teamchat.errors import ErrorKind, Failure, UploadResult
from teamchat.models.message import MessageType
from teamchat.tenant_directory import TenantCredentials

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# Provider-side ceilings per media kind
MAX_MEDIA_BYTES: dict[MessageType, int] = {
    MessageType.IMAGE: 5 * MB,
    MessageType.VIDEO: 16 * MB,
    MessageType.AUDIO: 16 * MB,
    MessageType.DOCUMENT: 100 * MB,
}

MIME_ALIASES = {
    "audio/opus": "audio/ogg",
    "audio/x-opus+ogg": "audio/ogg",
    "audio/x-m4a": "audio/mp4",
    "audio/m4a": "audio/mp4",
    "audio/mp3": "audio/mpeg",
    "audio/x-mp3": "audio/mpeg",
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "video/x-mp4": "video/mp4",
}

_EXTENSIONS = {
    "audio/ogg": ".ogg",
    "audio/mp4": ".m4a",
    "audio/mpeg": ".mp3",
    "audio/aac": ".aac",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "video/mp4": ".mp4",
    "video/3gpp": ".3gp",
    "application/pdf": ".pdf",
}


def normalize_mime(mime_type: str | None) -> str:
    """'Audio/OPUS; codecs=opus' -> 'audio/ogg'. Unknown or empty -> application/octet-stream."""
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    if not base or "/" not in base:
        return "application/octet-stream"
    return MIME_ALIASES.get(base, base)


def extension_for(mime_type: str) -> str:
    return _EXTENSIONS.get(mime_type) or mimetypes.guess_extension(mime_type) or ".bin"


def check_size(kind: MessageType, size: int) -> Failure | None:
    limit = MAX_MEDIA_BYTES.get(kind)
    if limit is None or size <= limit:
        return None
    return Failure(
        ErrorKind.MEDIA_TOO_LARGE,
        f"{kind.value} is {size} bytes ({size / MB:.1f} MB); limit is {limit} bytes ({limit // MB} MB).",
    )


@dataclass(frozen=True)
class StoredMedia:
    url: str
    filename: str
    size: int
    mime_type: str


@dataclass(frozen=True)
class LoadedMedia:
    data: bytes
    filename: str
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


class MediaPipeline:
    def __init__(
        self,
        mode: GatewayMode,
        media_root: str = MEDIA_ROOT,
        base_url: str = MEDIA_BASE_URL,
        graph_base: str = GRAPH_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.mode = mode
        self.media_root = media_root
        self.base_url = base_url.rstrip("/")
        self.graph_base = graph_base
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport, follow_redirects=True)

    # ---- storage ---------------------------------------------------------

    async def store(self, data: bytes, mime_type: str) -> StoredMedia:
        os.makedirs(self.media_root, exist_ok=True)
        filename = f"{uuid.uuid4().hex}{extension_for(mime_type)}"
        async with aiofiles.open(os.path.join(self.media_root, filename), "wb") as f:
            await f.write(data)
        return StoredMedia(
            url=f"{self.base_url}/{filename}",
            filename=filename,
            size=len(data),
            mime_type=mime_type,
        )

    def local_path(self, source: str) -> str | None:
        """Filesystem path for a served media URL/path, confined to media_root."""
        path = urlparse(source).path if "://" in source else source
        prefix = f"{self.base_url}/"
        if path.startswith(prefix):
            path = path[len(prefix):]
        name = os.path.basename(path)
        if not name or name in (".", ".."):
            return None
        candidate = os.path.join(self.media_root, name)
        return candidate if os.path.isfile(candidate) else None

    # ---- inbound ---------------------------------------------------------

    async def download_inbound(
        self,
        credentials: TenantCredentials,
        media_id: str,
        mime_hint: str | None = None,
    ) -> StoredMedia | None:
        if self.mode.bypass_provider_calls:
            logger.info("media download skipped (bypass) team_id=%s media_id=%s", credentials.team_id, media_id)
            return None
        if not media_id or not credentials.access_token:
            return None

        headers = {"Authorization": f"Bearer {credentials.access_token}"}
        try:
            async with self._client(PROVIDER_TIMEOUT_SEC) as client:
                meta = await client.get(credentials.media_lookup_url(media_id, self.graph_base), headers=headers)
                if meta.status_code != 200:
                    logger.warning(
                        "media metadata failed team_id=%s media_id=%s status=%s body=%s",
                        credentials.team_id,
                        media_id,
                        meta.status_code,
                        meta.text[:500],
                    )
                    return None
                info = meta.json()
                media_url = info.get("url")
                if not media_url:
                    logger.warning("media metadata without url team_id=%s media_id=%s", credentials.team_id, media_id)
                    return None
                r = await client.get(media_url, headers=headers)
                if r.status_code != 200:
                    logger.warning(
                        "media download failed team_id=%s media_id=%s status=%s",
                        credentials.team_id,
                        media_id,
                        r.status_code,
                    )
                    return None
            mime_type = normalize_mime(info.get("mime_type") or r.headers.get("Content-Type") or mime_hint)
            stored = await self.store(r.content, mime_type)
        except Exception:
            logger.exception("media download error team_id=%s media_id=%s", credentials.team_id, media_id)
            return None

        logger.info(
            "media stored team_id=%s media_id=%s file=%s size=%s mime=%s",
            credentials.team_id,
            media_id,
            stored.filename,
            stored.size,
            stored.mime_type,
        )
        return stored

    # ---- outbound --------------------------------------------------------

    async def load_source(
        self,
        source: str,
        filename: str | None = None,
        mime_type: str | None = None,
    ) -> LoadedMedia | Failure:
        """Bytes for a served local file or an http(s) URL.

        Network errors, 429 and 5xx from a remote source are
        media_source_unavailable (retryable); anything else that prevents
        loading is media_download_failed.
        """
        local = self.local_path(source)
        if local:
            try:
                async with aiofiles.open(local, "rb") as f:
                    data = await f.read()
            except OSError as e:
                logger.warning("media file unreadable path=%s error=%s", local, e)
                return Failure(ErrorKind.MEDIA_DOWNLOAD_FAILED, f"Could not read media file {source}.")
            guessed = mimetypes.guess_type(local)[0]
            return LoadedMedia(
                data=data,
                filename=filename or os.path.basename(local),
                mime_type=normalize_mime(mime_type or guessed),
            )

        if urlparse(source).scheme not in ("http", "https"):
            logger.warning("media source not found source=%s", source)
            return Failure(ErrorKind.MEDIA_DOWNLOAD_FAILED, f"Media source {source} not found.")
        try:
            async with self._client(PROVIDER_TIMEOUT_SEC) as client:
                r = await client.get(source)
        except httpx.HTTPError as e:
            logger.warning("media fetch error url=%s error=%s", source, e)
            return Failure(ErrorKind.MEDIA_SOURCE_UNAVAILABLE, f"Could not fetch {source}: {e!r}")
        if r.status_code != 200:
            logger.warning("media fetch failed url=%s status=%s", source, r.status_code)
            kind = ErrorKind.MEDIA_SOURCE_UNAVAILABLE if r.status_code == 429 or r.status_code >= 500 else ErrorKind.MEDIA_DOWNLOAD_FAILED
            return Failure(kind, f"Fetching {source} returned HTTP {r.status_code}.")
        return LoadedMedia(
            data=r.content,
            filename=filename or os.path.basename(urlparse(source).path) or "file",
            mime_type=normalize_mime(mime_type or r.headers.get("Content-Type")),
        )

    async def upload_outbound(
        self,
        credentials: TenantCredentials,
        data: bytes,
        filename: str,
        mime_type: str,
        kind: MessageType,
    ) -> UploadResult:
        too_large = check_size(kind, len(data))
        if too_large:
            return UploadResult(failure=too_large)
        if self.mode.bypass_provider_calls:
            return UploadResult.success(f"test_media_{uuid.uuid4().hex}")

        mime_type = normalize_mime(mime_type)
        files = {
            "file": (filename, data, mime_type),
            "messaging_product": (None, "whatsapp"),
            "type": (None, mime_type),
        }
        headers = {"Authorization": f"Bearer {credentials.access_token}"}
        try:
            async with self._client(MEDIA_UPLOAD_TIMEOUT_SEC) as client:
                r = await client.post(credentials.media_url(self.graph_base), files=files, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("media upload error team_id=%s file=%s error=%s", credentials.team_id, filename, e)
            return UploadResult.failed(ErrorKind.MEDIA_UPLOAD_FAILED, str(e) or type(e).__name__)

        if not 200 <= r.status_code < 300:
            logger.warning(
                "media upload rejected team_id=%s file=%s status=%s body=%s",
                credentials.team_id,
                filename,
                r.status_code,
                r.text[:500],
            )
            return UploadResult.failed(ErrorKind.MEDIA_UPLOAD_FAILED, f"HTTP {r.status_code}: {r.text[:500]}")
        try:
            media_id = r.json().get("id")
        except ValueError:
            media_id = None
        if not media_id:
            return UploadResult.failed(ErrorKind.MEDIA_UPLOAD_FAILED, "Upload response has no media id.")
        logger.info("media uploaded team_id=%s file=%s media_id=%s", credentials.team_id, filename, media_id)
        return UploadResult.success(media_id)
