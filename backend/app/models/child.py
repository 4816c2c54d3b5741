import uuid
from datetime import date, datetime
from sqlalchemy import String, Integer, Date, DateTime, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base, utcnow


class Child(Base):
    __tablename__ = "children"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # Guardian account, owned by the upstream auth service
    parent_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    birthday: Mapped[date | None] = mapped_column(Date, nullable=True)
    age: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
