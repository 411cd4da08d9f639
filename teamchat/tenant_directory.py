"""Resolve a team's provider credentials by internal id or by sending-number id."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from teamchat.config import DEFAULT_API_VERSION, DEFAULT_COUNTRY_CODE, GRAPH_API_BASE
from teamchat.credential_crypto import decrypt_secret
from teamchat.errors import ErrorKind, Failure
from teamchat.models.team import Team

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantCredentials:
    team_id: uuid.UUID
    name: str
    phone_number_id: str
    access_token: str = field(repr=False)
    business_account_id: str = ""
    api_version: str = DEFAULT_API_VERSION
    country_code: str = DEFAULT_COUNTRY_CODE
    app_secret: str = field(default="", repr=False)

    @property
    def is_configured(self) -> bool:
        return bool(self.phone_number_id and self.access_token)

    def _version_base(self, base: str) -> str:
        version = (self.api_version or DEFAULT_API_VERSION).lstrip("v")
        return f"{base.rstrip('/')}/v{version}"

    def messages_url(self, base: str = GRAPH_API_BASE) -> str:
        return f"{self._version_base(base)}/{self.phone_number_id}/messages"

    def media_url(self, base: str = GRAPH_API_BASE) -> str:
        return f"{self._version_base(base)}/{self.phone_number_id}/media"

    def media_lookup_url(self, media_id: str, base: str = GRAPH_API_BASE) -> str:
        return f"{self._version_base(base)}/{media_id}"


def credentials_from_team(team: Team) -> TenantCredentials:
    """Decrypt a Team row into credentials. Undecryptable secrets are treated as missing."""
    try:
        token = decrypt_secret(team.access_token)
    except ValueError:
        logger.warning("access token decrypt failed team_id=%s", team.id)
        token = ""
    try:
        secret = decrypt_secret(team.app_secret)
    except ValueError:
        logger.warning("app secret decrypt failed team_id=%s", team.id)
        secret = ""
    return TenantCredentials(
        team_id=team.id,
        name=team.name,
        phone_number_id=team.phone_number_id or "",
        access_token=token,
        business_account_id=team.business_account_id or "",
        api_version=team.api_version or DEFAULT_API_VERSION,
        country_code=team.country_code or DEFAULT_COUNTRY_CODE,
        app_secret=secret,
    )


async def resolve_by_id(session: AsyncSession, team_id: uuid.UUID) -> TenantCredentials | None:
    stmt = select(Team).where(Team.id == team_id, Team.is_active.is_(True))
    team = (await session.execute(stmt)).scalars().first()
    return credentials_from_team(team) if team else None


async def resolve_by_sending_number_id(session: AsyncSession, phone_number_id: str) -> TenantCredentials | None:
    if not phone_number_id:
        return None
    stmt = select(Team).where(Team.phone_number_id == phone_number_id, Team.is_active.is_(True))
    team = (await session.execute(stmt)).scalars().first()
    return credentials_from_team(team) if team else None


async def tenant_failure(session: AsyncSession, team_id: uuid.UUID) -> Failure:
    """Explain why resolve_by_id returned None."""
    team = await session.get(Team, team_id)
    if team is None:
        return Failure(ErrorKind.TENANT_NOT_FOUND, f"Team {team_id} not found.")
    return Failure(ErrorKind.TENANT_INACTIVE, f"Team {team_id} is inactive.")
