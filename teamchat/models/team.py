import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text, Uuid, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Team(Base):
    """Tenant owning one WhatsApp sending number. Credentials are Fernet-encrypted."""

    __tablename__ = "team"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone_number_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True, index=True)
    access_token = mapped_column(Text, nullable=True)  # encrypted
    business_account_id = mapped_column(String(100), nullable=True)
    display_phone_number = mapped_column(String(32), nullable=True)
    api_version: Mapped[str] = mapped_column(String(10), nullable=False, default="18.0")
    country_code: Mapped[str] = mapped_column(String(4), nullable=False, default="44")
    app_secret = mapped_column(Text, nullable=True)  # encrypted; falls back to WHATSAPP_APP_SECRET
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
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
