import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActionSession(Base):
    __tablename__ = "action_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=generate_uuid)
    prompt: Mapped[str] = mapped_column(Text, default="")
    project_root: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active")  # active | ended
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    actions: Mapped[list["ActionRecord"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="ActionRecord.seq",
    )


class ActionRecord(Base):
    __tablename__ = "action_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String, ForeignKey("action_sessions.id"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # ActionType value
    target: Mapped[str] = mapped_column(Text, nullable=False)
    result: Mapped[str] = mapped_column(String(10), nullable=False)  # success | error
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    tool: Mapped[str] = mapped_column(String(50), nullable=False)
    parameters: Mapped[str] = mapped_column(Text, default="{}")  # JSON-serialized

    # Pre-image of the target, used for undo
    previous_existed: Mapped[bool] = mapped_column(Boolean, default=False)
    previous_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    was_directory: Mapped[bool] = mapped_column(Boolean, default=False)
    undone: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    session: Mapped["ActionSession"] = relationship(back_populates="actions")
