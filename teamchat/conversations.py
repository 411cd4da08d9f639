"""
Look-up-or-create helpers for contacts, groups and their conversations.

Rows are created with INSERT ... ON CONFLICT DO NOTHING and then re-read, so
concurrent creators converge on the winner's row and the caller's session is
never rolled back.
Each helper commits; call them before staging other changes on the session.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from teamchat.models.contact import Contact, Group
from teamchat.models.conversation import Conversation

logger = logging.getLogger(__name__)

T = TypeVar("T")

_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


async def _get_or_create(
    session: AsyncSession,
    lookup: Callable[[], Awaitable[T | None]],
    model: type[T],
    values: dict[str, Any],
    conflict_columns: list[str],
) -> T:
    row = await lookup()
    if row is not None:
        return row
    dialect = session.get_bind().dialect.name
    insert = _INSERTS.get(dialect)
    if insert is None:
        raise RuntimeError(f"unsupported database dialect {dialect!r}")
    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
    result = await session.execute(stmt)
    await session.commit()
    if result.rowcount == 0:
        logger.info("%s already created concurrently %s", model.__name__, values)
    row = await lookup()
    if row is None:
        raise RuntimeError(f"{model.__name__} could not be reloaded after insert {values}")
    return row


async def get_or_create_contact(
    session: AsyncSession,
    team_id: uuid.UUID,
    phone_number: str,
    name: str | None = None,
) -> Contact:
    """phone_number must already be canonical."""

    async def lookup() -> Contact | None:
        stmt = select(Contact).where(Contact.team_id == team_id, Contact.phone_number == phone_number)
        return (await session.execute(stmt)).scalars().first()

    return await _get_or_create(
        session,
        lookup,
        Contact,
        {"team_id": team_id, "phone_number": phone_number, "name": name or f"Driver {phone_number}"},
        ["team_id", "phone_number"],
    )


async def get_or_create_group(
    session: AsyncSession,
    team_id: uuid.UUID,
    provider_group_id: str,
    name: str | None = None,
) -> Group:
    async def lookup() -> Group | None:
        stmt = select(Group).where(Group.team_id == team_id, Group.provider_group_id == provider_group_id)
        return (await session.execute(stmt)).scalars().first()

    return await _get_or_create(
        session,
        lookup,
        Group,
        {"team_id": team_id, "provider_group_id": provider_group_id, "name": name or f"Group {provider_group_id}"},
        ["team_id", "provider_group_id"],
    )


async def get_or_create_contact_conversation(
    session: AsyncSession,
    team_id: uuid.UUID,
    contact: Contact,
) -> Conversation:
    contact_id = contact.id

    async def lookup() -> Conversation | None:
        stmt = select(Conversation).where(Conversation.team_id == team_id, Conversation.contact_id == contact_id)
        return (await session.execute(stmt)).scalars().first()

    return await _get_or_create(
        session,
        lookup,
        Conversation,
        {"team_id": team_id, "contact_id": contact_id, "is_group": False, "topic": contact.name},
        ["team_id", "contact_id"],
    )


async def get_or_create_group_conversation(
    session: AsyncSession,
    team_id: uuid.UUID,
    group: Group,
) -> Conversation:
    group_id = group.id

    async def lookup() -> Conversation | None:
        stmt = select(Conversation).where(Conversation.team_id == team_id, Conversation.group_id == group_id)
        return (await session.execute(stmt)).scalars().first()

    return await _get_or_create(
        session,
        lookup,
        Conversation,
        {"team_id": team_id, "group_id": group_id, "is_group": True, "topic": group.name},
        ["team_id", "group_id"],
    )
