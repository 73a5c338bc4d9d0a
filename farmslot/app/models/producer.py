from sqlalchemy import String, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from farmslot.app.core.base import Base


class Producer(Base):
    """Producer profile attached to a PRODUCER user; owns products."""
    __tablename__ = 'producers'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), unique=True)
    company_name: Mapped[str] = mapped_column(String(255))
