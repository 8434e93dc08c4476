"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic models handed to the rest of the app, see schemas.py.
"""

from sqlalchemy import Column, Integer, String, Text

from chat_relay.storage import Base


class Message(Base):
    """
    SQLAlchemy model for stored chat messages.

    Table: messages
    Primary Key: id (AUTOINCREMENT, so ids are never reused after a sweep)
    """
    __tablename__ = "messages"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    timestamp = Column(String, nullable=False, index=True)  # ISO-8601 UTC string
    ip_address = Column(String, nullable=True)
