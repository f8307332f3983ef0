from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

LOG_TYPE_UNKNOWN = 0
LOG_TYPE_TOPUP = 1
LOG_TYPE_CONSUME = 2
LOG_TYPE_MANAGE = 3
LOG_TYPE_SYSTEM = 4
LOG_TYPE_ERROR = 5
LOG_TYPES = frozenset(
    {
        LOG_TYPE_UNKNOWN,
        LOG_TYPE_TOPUP,
        LOG_TYPE_CONSUME,
        LOG_TYPE_MANAGE,
        LOG_TYPE_SYSTEM,
        LOG_TYPE_ERROR,
    }
)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    display_name: Mapped[str] = mapped_column(String(128), default="")
    role: Mapped[str] = mapped_column(String(16), default="user")
    group: Mapped[str] = mapped_column(String(64), default="default")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class UsageLog(Base):
    __tablename__ = "logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    # Unix seconds; minute and day buckets are computed from it in SQL.
    created_at: Mapped[int] = mapped_column(Integer, index=True)
    type: Mapped[int] = mapped_column(Integer, index=True, default=LOG_TYPE_UNKNOWN)
    content: Mapped[str] = mapped_column(Text, default="")
    username: Mapped[str] = mapped_column(String(128), index=True, default="")
    token_name: Mapped[str] = mapped_column(String(128), index=True, default="")
    model_name: Mapped[str] = mapped_column(String(256), index=True, default="")
    quota: Mapped[int] = mapped_column(Integer, default=0)
    prompt_tokens: Mapped[int] = mapped_column(Integer, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, default=0)
    channel_id: Mapped[int] = mapped_column(Integer, index=True, default=0)
    group: Mapped[str] = mapped_column(String(64), index=True, default="")
    ip: Mapped[str] = mapped_column(String(64), index=True, default="")


class Option(Base):
    __tablename__ = "options"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
