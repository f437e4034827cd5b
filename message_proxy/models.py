"""
SQLAlchemy ORM mappings for the chat store tables.

The store is owned by the messaging client; these mappings only describe the
columns this service reads. Nothing here is ever written back.
For Pydantic view models, see schemas.py.
"""

from sqlalchemy import Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base

# Base class for the chat store mappings
Base = declarative_base()


class Handle(Base):
    """
    A participant address (phone number or email).

    Table: handle
    `id` in the store holds the identifier string, not the key.
    """
    __tablename__ = "handle"

    rowid = Column("ROWID", Integer, primary_key=True)
    identifier = Column("id", String, nullable=False)
    service = Column(String, nullable=True)


class Chat(Base):
    """Table: chat. `display_name` is empty for chats without a group name."""
    __tablename__ = "chat"

    rowid = Column("ROWID", Integer, primary_key=True)
    guid = Column(String, nullable=True)
    display_name = Column(String, nullable=True)
    service_name = Column(String, nullable=True)


class Message(Base):
    """
    A sent or received message.

    Table: message
    `date` is the store's own timestamp and is what the poll loop watermarks on.
    """
    __tablename__ = "message"

    rowid = Column("ROWID", Integer, primary_key=True)
    guid = Column(String, nullable=False)
    text = Column(Text, nullable=True)
    handle_id = Column(Integer, nullable=True, default=0)
    service = Column(String, nullable=True)
    error = Column(Integer, nullable=False, default=0)
    date = Column(Integer, nullable=False, index=True)
    date_read = Column(Integer, nullable=True)
    date_delivered = Column(Integer, nullable=True)
    is_from_me = Column(Integer, nullable=False, default=0)


class Attachment(Base):
    """Table: attachment. `filename` is the on-disk path, `transfer_name` the original name."""
    __tablename__ = "attachment"

    rowid = Column("ROWID", Integer, primary_key=True)
    guid = Column(String, nullable=False)
    filename = Column(String, nullable=True)
    uti = Column(String, nullable=True)
    mime_type = Column(String, nullable=True)
    transfer_name = Column(String, nullable=True)


class ChatHandleJoin(Base):
    """Chat membership. One row per participant per chat."""
    __tablename__ = "chat_handle_join"

    chat_id = Column(Integer, ForeignKey("chat.ROWID"), primary_key=True)
    handle_id = Column(Integer, ForeignKey("handle.ROWID"), primary_key=True)


class ChatMessageJoin(Base):
    __tablename__ = "chat_message_join"

    chat_id = Column(Integer, ForeignKey("chat.ROWID"), primary_key=True)
    message_id = Column(Integer, ForeignKey("message.ROWID"), primary_key=True)


class MessageAttachmentJoin(Base):
    __tablename__ = "message_attachment_join"

    message_id = Column(Integer, ForeignKey("message.ROWID"), primary_key=True)
    attachment_id = Column(Integer, ForeignKey("attachment.ROWID"), primary_key=True)
