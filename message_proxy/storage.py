import logging
import os
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from message_proxy.models import (
    Attachment,
    Chat,
    ChatHandleJoin,
    ChatMessageJoin,
    Handle,
    Message,
    MessageAttachmentJoin,
)

logger = logging.getLogger(__name__)


def create_store_engine(db_path: str, read_only: bool = True) -> Engine:
    """
    Create a SQLAlchemy engine for the chat store.

    The store belongs to the messaging client, so by default it is opened
    through a read-only SQLite URI. check_same_thread=False lets request
    handlers and background tasks share the pool.
    """
    path = os.path.expanduser(db_path)
    if read_only:
        url = f"sqlite:///file:{path}?mode=ro&uri=true"
    else:
        url = f"sqlite:///{path}"
    logger.debug(f"Opening chat store: {url}")
    return create_engine(
        url,
        connect_args={"check_same_thread": False},
        echo=False,
    )


def check_store_health(engine: Engine) -> bool:
    """
    Check if the chat store is reachable and looks like a message database.

    Returns:
        True if the store answers and has a message table, False otherwise.
    """
    logger.debug("Checking chat store health...")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            result = conn.execute(text(
                "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='message'"
            )).scalar()
            if result == 0:
                logger.error("Chat store has no 'message' table")
                return False
        logger.debug("Chat store health check passed")
        return True
    except SQLAlchemyError as e:
        logger.error(f"Chat store health check failed: {e}")
        return False


# =============================================================================
# Store Reader
# =============================================================================

class StoreReader:
    """
    Read-only queries against the chat store.

    Every query is fail-soft: an SQLAlchemyError is logged and an empty
    result is returned, so a flaky store never takes down the poll loop or
    the read API. fetch_messages_since returns None instead so the poll
    loop can tell a failed read from an idle one.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine, autoflush=False)

    def _query(self, statement, description: str) -> Optional[List[Dict[str, Any]]]:
        """Run a statement; None when the store read fails."""
        try:
            with self.SessionLocal() as db:
                rows = db.execute(statement).mappings().all()
                return [dict(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Store read failed ({description}): {e}")
            return None

    def _fetch(self, statement, description: str) -> List[Dict[str, Any]]:
        rows = self._query(statement, description)
        return rows if rows is not None else []

    def fetch_latest_dates(self) -> List[Dict[str, Any]]:
        """Date of the newest message, as a list of at most one row."""
        statement = select(Message.date).order_by(Message.date.desc()).limit(1)
        return self._fetch(statement, "latest date")

    def fetch_messages_since(self, watermark: int, limit: int) -> Optional[List[Dict[str, Any]]]:
        """
        Messages newer than the watermark, oldest first.

        Args:
            watermark: Last processed `date`; only strictly greater rows match
            limit: Batch cap

        Returns:
            Rows with message_id, guid, text, handle_id, date, is_from_me,
            or None if the store could not be read
        """
        statement = (
            select(
                Message.rowid.label("message_id"),
                Message.guid,
                Message.text,
                Message.handle_id,
                Message.date,
                Message.is_from_me,
            )
            .where(Message.date > watermark)
            .order_by(Message.date.asc())
            .limit(limit)
        )
        return self._query(statement, "messages since watermark")

    def fetch_chat_messages(self, chat_id: int, limit: int) -> List[Dict[str, Any]]:
        """
        Most recent messages of a chat, newest first, with optional attachment data.

        The attachment columns are NULL when the message has no attachment.
        """
        statement = (
            select(
                ChatMessageJoin.chat_id,
                Message.rowid.label("message_id"),
                Message.guid,
                Message.text,
                Message.handle_id,
                Message.error,
                Message.date,
                Message.date_read,
                Message.date_delivered,
                Message.is_from_me,
                MessageAttachmentJoin.attachment_id,
                Attachment.uti,
                Attachment.mime_type,
            )
            .select_from(ChatMessageJoin)
            .join(Message, Message.rowid == ChatMessageJoin.message_id)
            .outerjoin(
                MessageAttachmentJoin,
                MessageAttachmentJoin.message_id == ChatMessageJoin.message_id,
            )
            .outerjoin(Attachment, Attachment.rowid == MessageAttachmentJoin.attachment_id)
            .where(ChatMessageJoin.chat_id == chat_id)
            .order_by(Message.date.desc())
            .limit(limit)
        )
        return self._fetch(statement, f"messages for chat {chat_id}")

    def fetch_handles(self) -> Dict[int, str]:
        """Handle ROWID -> identifier table."""
        rows = self._fetch(select(Handle.rowid, Handle.identifier), "handles")
        return {row["rowid"]: row["identifier"] for row in rows}

    def fetch_memberships(self) -> List[Dict[str, Any]]:
        """
        Flat chat membership rows, one per participant per chat.

        Rows come grouped by chat, participants in insertion order.
        """
        statement = (
            select(
                ChatHandleJoin.chat_id,
                ChatHandleJoin.handle_id,
                Handle.identifier,
                Handle.service,
                Chat.display_name,
            )
            .select_from(ChatHandleJoin)
            .join(Handle, Handle.rowid == ChatHandleJoin.handle_id)
            .join(Chat, Chat.rowid == ChatHandleJoin.chat_id)
            .order_by(ChatHandleJoin.chat_id, text("chat_handle_join.ROWID"))
        )
        return self._fetch(statement, "chat memberships")

    def fetch_attachment(self, attachment_id: int) -> Optional[Dict[str, Any]]:
        """Attachment row by id, or None unless exactly one row matches."""
        statement = (
            select(
                Attachment.rowid.label("id"),
                Attachment.guid,
                MessageAttachmentJoin.message_id,
                Attachment.filename,
                Attachment.mime_type,
                Attachment.transfer_name,
            )
            .outerjoin(
                MessageAttachmentJoin,
                MessageAttachmentJoin.attachment_id == Attachment.rowid,
            )
            .where(Attachment.rowid == attachment_id)
        )
        rows = self._fetch(statement, f"attachment {attachment_id}")
        if len(rows) != 1:
            return None
        return rows[0]

    def fetch_recent_sent(self, window: int) -> List[Dict[str, Any]]:
        """
        The most recent self-authored, error-free iMessage rows.

        Used to confirm an outbound send after the fact.
        """
        statement = (
            select(
                Message.rowid.label("message_id"),
                Message.guid,
                Message.text,
                Message.date,
            )
            .where(
                Message.is_from_me == 1,
                Message.error == 0,
                Message.service == "iMessage",
            )
            .order_by(Message.date.desc())
            .limit(window)
        )
        return self._fetch(statement, "recent sent messages")
