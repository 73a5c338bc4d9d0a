from sqlalchemy import String, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional
from farmslot.app.core.base import Base
from farmslot.app.core.constants import utcnow


class User(Base):
    """Marketplace account; managed by the storefront, read-only for the engine."""
    __tablename__ = 'users'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default='CLIENT')  # CLIENT, PRODUCER, ADMIN
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('ix_users_role', 'role'),
    )
