"""
Pydantic schemas for view models and API responses.

This module contains:
- View models assembled from chat store rows
- Live update envelopes pushed to socket subscribers
- Small response models for the health and version routes
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# View Models
# =============================================================================

class MessageView(BaseModel):
    """
    A message as served to clients.

    `sender` and `human_name` are only present when the handle resolves;
    `attachment_id`, `uti` and `mime_type` only when an attachment is joined.
    Absent fields are dropped from the JSON output.
    """
    message_id: int = Field(..., description="Store ROWID of the message")
    guid: str = Field(..., description="Globally unique message id")
    text: Optional[str] = Field(None, description="Message body")
    sender: Optional[str] = Field(None, description="Sender identifier, country code stripped")
    human_name: Optional[str] = Field(None, description="Contact name of the sender")
    error: int = Field(0, description="Store error code, 0 when delivered fine")
    date: int = Field(..., description="Store timestamp of creation")
    date_read: Optional[int] = Field(None, description="Store timestamp of read receipt")
    date_delivered: Optional[int] = Field(None, description="Store timestamp of delivery")
    is_from_me: bool = Field(False, description="True for messages authored on this account")
    has_attachments: bool = Field(False, description="True when an attachment is joined")
    attachment_id: Optional[int] = Field(None, description="Attachment ROWID")
    uti: Optional[str] = Field(None, description="Attachment uniform type identifier")
    mime_type: Optional[str] = Field(None, description="Attachment MIME type")


class ConversationView(BaseModel):
    """
    A chat with its participants and most recent message.

    has_manual_display_name is True when display_name was synthesized from
    participant names rather than taken from the chat's group name.
    """
    chat_id: int = Field(..., description="Store ROWID of the chat")
    handle_id: int = Field(..., description="Handle of the first participant")
    IDs: str = Field(..., description="Comma-joined participant identifiers")
    service: Optional[str] = Field(None, description="Service of the first participant")
    display_name: str = Field(..., description="Group name or synthesized participant names")
    has_manual_display_name: bool = Field(..., description="True if display_name was synthesized")
    lastMessage: Optional[MessageView] = Field(None, description="Most recent message")


class AttachmentMeta(BaseModel):
    """Read-only projection of an attachment row."""
    id: int = Field(..., description="Attachment ROWID")
    guid: str = Field(..., description="Attachment guid")
    message_id: Optional[int] = Field(None, description="Owning message ROWID")
    path_to_file: Optional[str] = Field(None, description="Path of the file on disk")
    mime_type: Optional[str] = Field(None, description="MIME type")
    file_name: Optional[str] = Field(None, description="Original file name")


# =============================================================================
# Live Update Envelopes
# =============================================================================

class LiveEvent(BaseModel):
    """
    Server -> subscriber envelope.

    type: conversations.updated | message.sent | message.failed
    """
    type: str
    data: Any = None


# =============================================================================
# Response Models
# =============================================================================

class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class VersionResponse(BaseModel):
    """Response model for an authenticated /isUp probe."""
    version: str = Field(..., description="Server version")
