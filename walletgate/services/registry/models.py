"""Client registry database model."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from walletgate.common.db import Base, JSONType


class Client(Base):
    """Registered OAuth client; the secret is only kept as a bcrypt hash."""

    __tablename__ = "clients"

    client_id: Mapped[str] = mapped_column(String, primary_key=True)
    secret_hash: Mapped[str] = mapped_column(String)
    grants: Mapped[list] = mapped_column(JSONType)
    redirect_uris: Mapped[list] = mapped_column(JSONType)
    access_token_lifetime: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refresh_token_lifetime: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
