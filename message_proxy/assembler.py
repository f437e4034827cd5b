"""
Conversation and message assembly.

Turns flat chat store rows into the MessageView / ConversationView models
served by the API and pushed to live subscribers. Names are resolved on every
call; nothing assembled here is cached or written back.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from message_proxy.contacts import normalize_identifier
from message_proxy.schemas import AttachmentMeta, ConversationView, LiveEvent, MessageView
from message_proxy.storage import StoreReader

logger = logging.getLogger(__name__)

# Inserted by the messaging client where an attachment sits inline in a body
OBJECT_REPLACEMENT_CHARACTER = "\ufffc"


def to_jsonable(payload: Any) -> Any:
    """Dump view models (or lists of them) to plain data, dropping absent fields."""
    if isinstance(payload, BaseModel):
        return payload.model_dump(exclude_none=True)
    if isinstance(payload, (list, tuple)):
        return [to_jsonable(item) for item in payload]
    if isinstance(payload, dict):
        return {key: to_jsonable(value) for key, value in payload.items()}
    return payload


def render_json(payload: Any) -> str:
    """
    Serialize a payload for clients.

    Attachment placeholders are removed from the emitted document only; the
    models themselves keep the original text.
    """
    document = json.dumps(to_jsonable(payload), indent=2, ensure_ascii=False)
    return document.replace(OBJECT_REPLACEMENT_CHARACTER, "")


def render_event(event_type: str, data: Any = None) -> str:
    """Serialize a live update envelope."""
    return render_json(LiveEvent(type=event_type, data=to_jsonable(data)))


class Assembler:
    """Builds view models from store rows plus the handle and contact tables."""

    def __init__(
        self,
        reader: StoreReader,
        contacts: Optional[Dict[str, str]] = None,
        country_code_prefix: str = "+1",
        default_limit: int = 100,
    ):
        self.reader = reader
        self.contacts = contacts or {}
        self.country_code_prefix = country_code_prefix
        self.default_limit = default_limit

    def human_name(self, handle_id: Optional[int], handles: Optional[Dict[int, str]] = None) -> str:
        """
        Best display name for a handle.

        Contact name if known, otherwise the raw identifier, otherwise a
        "Name failure" marker carrying the handle id.
        """
        if handles is None:
            handles = self.reader.fetch_handles()
        identifier = handles.get(handle_id) if handle_id is not None else None
        if identifier is None:
            return f"Name failure: {handle_id}"
        name = self.contacts.get(normalize_identifier(identifier, self.country_code_prefix))
        return name if name is not None else identifier

    def message_view(self, row: Dict[str, Any], handles: Dict[int, str]) -> MessageView:
        """Build a MessageView from a joined message row."""
        fields = {
            "message_id": row["message_id"],
            "guid": row["guid"],
            "text": row.get("text"),
            "error": row.get("error") or 0,
            "date": row["date"],
            "date_read": row.get("date_read"),
            "date_delivered": row.get("date_delivered"),
            "is_from_me": bool(row.get("is_from_me")),
        }

        identifier = handles.get(row.get("handle_id"))
        if identifier is not None:
            sender = normalize_identifier(identifier, self.country_code_prefix)
            fields["sender"] = sender
            fields["human_name"] = self.contacts.get(sender)

        attachment_id = row.get("attachment_id")
        if attachment_id is not None:
            fields["has_attachments"] = True
            fields["attachment_id"] = attachment_id
            fields["uti"] = row.get("uti")
            fields["mime_type"] = row.get("mime_type")

        return MessageView(**fields)

    def list_messages(
        self,
        chat_id: int,
        limit: Optional[int] = None,
        handles: Optional[Dict[int, str]] = None,
    ) -> List[MessageView]:
        """Last `limit` messages of a chat, oldest first."""
        if limit is None:
            limit = self.default_limit
        if handles is None:
            handles = self.reader.fetch_handles()
        rows = self.reader.fetch_chat_messages(chat_id, limit)
        views = [self.message_view(row, handles) for row in rows]
        # Store order is newest first
        views.reverse()
        return views

    def list_conversations(self) -> List[ConversationView]:
        """
        Fold membership rows into one conversation per chat.

        The first row of a chat seeds it; later rows append the participant
        identifier to IDs and, for synthesized names, the participant's name
        to display_name. Chats without any message are left out.
        """
        handles = self.reader.fetch_handles()
        folded: Dict[int, Dict[str, Any]] = {}

        for row in self.reader.fetch_memberships():
            chat_id = row["chat_id"]
            conversation = folded.get(chat_id)

            if conversation is None:
                conversation = {
                    "chat_id": chat_id,
                    "handle_id": row["handle_id"],
                    "IDs": row["identifier"],
                    "service": row.get("service"),
                }
                if row.get("display_name"):
                    # A real group name; clients must address the group by it
                    conversation["display_name"] = row["display_name"]
                    conversation["has_manual_display_name"] = False
                else:
                    conversation["display_name"] = self.human_name(row["handle_id"], handles)
                    conversation["has_manual_display_name"] = True
                folded[chat_id] = conversation
                continue

            conversation["IDs"] = f"{conversation['IDs']}, {row['identifier']}"
            if conversation["has_manual_display_name"]:
                name = self.human_name(row["handle_id"], handles)
                conversation["display_name"] = f"{conversation['display_name']}, {name}"

        conversations = []
        for chat_id, conversation in folded.items():
            last_messages = self.list_messages(chat_id, 1, handles)
            if not last_messages:
                logger.debug(f"Skipping chat {chat_id}: no messages")
                continue
            conversations.append(ConversationView(lastMessage=last_messages[0], **conversation))

        logger.debug(f"Assembled {len(conversations)} conversations")
        return conversations

    def get_attachment(self, attachment_id: int) -> Optional[AttachmentMeta]:
        row = self.reader.fetch_attachment(attachment_id)
        if row is None:
            return None
        return AttachmentMeta(
            id=row["id"],
            guid=row["guid"],
            message_id=row.get("message_id"),
            path_to_file=row.get("filename"),
            mime_type=row.get("mime_type"),
            file_name=row.get("transfer_name"),
        )
