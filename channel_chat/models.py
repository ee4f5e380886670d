from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Text, ForeignKey, DateTime, Index
)
from sqlalchemy.orm import DeclarativeBase, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    user_id = Column(Integer, primary_key=True)
    username = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    messages = relationship("Message", back_populates="author")


class Channel(Base):
    __tablename__ = "channels"
    channel_id = Column(Integer, primary_key=True)
    name = Column(String(100), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    messages = relationship("Message", back_populates="channel")


class Message(Base):
    __tablename__ = "messages"
    # AUTOINCREMENT: идентификатор сообщения никогда не переиспользуется
    __table_args__ = (
        Index("ix_messages_channel_id_message_id", "channel_id", "message_id"),
        {"sqlite_autoincrement": True},
    )

    message_id = Column(Integer, primary_key=True)
    channel_id = Column(
        Integer, ForeignKey("channels.channel_id"), nullable=False
    )
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    author = relationship("User", back_populates="messages")
    channel = relationship("Channel", back_populates="messages")
