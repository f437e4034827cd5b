"""
Pytest configuration and shared fixtures.

Settings are read from the environment at import time, so the required
variables are set here before any message_proxy import.
"""

import os

os.environ.setdefault("CHAT_DB_PATH", "/tmp/message-proxy-test-chat.db")
os.environ.setdefault("API_TOKEN", "test-token")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest
from sqlalchemy.orm import Session

# Clear settings cache before any app imports to ensure test env vars are used
from message_proxy.config import get_settings
get_settings.cache_clear()

from message_proxy.models import (
    Attachment,
    Base,
    Chat,
    ChatHandleJoin,
    ChatMessageJoin,
    Handle,
    Message,
    MessageAttachmentJoin,
)
from message_proxy.storage import StoreReader, create_store_engine


TEST_API_TOKEN = os.environ["API_TOKEN"]


class ChatStoreBuilder:
    """Writes fixture rows into a chat store file the way the messaging client would."""

    def __init__(self, path: str):
        self.path = path
        self.engine = create_store_engine(path, read_only=False)
        Base.metadata.create_all(bind=self.engine)
        self._next_date = 1000
        self._next_guid = 1

    def _add(self, row):
        with Session(self.engine) as db:
            db.add(row)
            db.commit()
            db.refresh(row)
            return row

    def add_handle(self, identifier: str, service: str = "iMessage") -> int:
        return self._add(Handle(identifier=identifier, service=service)).rowid

    def add_chat(self, display_name: str = "") -> int:
        return self._add(Chat(guid=f"chat-{self._next_guid}", display_name=display_name)).rowid

    def add_member(self, chat_id: int, handle_id: int) -> None:
        self._add(ChatHandleJoin(chat_id=chat_id, handle_id=handle_id))

    def add_message(
        self,
        chat_id: int,
        text,
        handle_id: int = 0,
        is_from_me: bool = False,
        error: int = 0,
        service: str = "iMessage",
        date: int = None,
    ) -> int:
        if date is None:
            date = self._next_date
            self._next_date += 10
        guid = f"msg-{self._next_guid}"
        self._next_guid += 1
        message = self._add(Message(
            guid=guid,
            text=text,
            handle_id=handle_id,
            service=service,
            error=error,
            date=date,
            is_from_me=1 if is_from_me else 0,
        ))
        if chat_id is not None:
            self._add(ChatMessageJoin(chat_id=chat_id, message_id=message.rowid))
        return message.rowid

    def add_attachment(
        self,
        message_id: int,
        filename: str,
        mime_type: str = "image/jpeg",
        uti: str = "public.jpeg",
        transfer_name: str = "photo.jpg",
    ) -> int:
        attachment = self._add(Attachment(
            guid=f"att-{self._next_guid}",
            filename=filename,
            mime_type=mime_type,
            uti=uti,
            transfer_name=transfer_name,
        ))
        self._next_guid += 1
        self._add(MessageAttachmentJoin(message_id=message_id, attachment_id=attachment.rowid))
        return attachment.rowid


class FakeNotifier:
    """Records notify() calls instead of posting them."""

    def __init__(self):
        self.calls = []

    def notify(self, title: str, body: str, context: str) -> None:
        self.calls.append((title, body, context))


class FakeSender:
    """Records sends; optionally calls on_send to simulate the client storing the row."""

    def __init__(self, on_send=None):
        self.sends = []
        self.on_send = on_send

    async def send(self, body: str, recipients: str) -> None:
        self.sends.append((body, recipients))
        if self.on_send is not None:
            self.on_send(body, recipients)


class FakeSubscriber:
    """A live socket stand-in collecting every payload."""

    def __init__(self, fail: bool = False):
        self.payloads = []
        self.fail = fail
        self.close_code = None

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionResetError("socket closed")
        self.payloads.append(data)

    async def close(self, code: int = 1000) -> None:
        self.close_code = code


@pytest.fixture
def store(tmp_path):
    """Empty chat store file with the message schema applied."""
    builder = ChatStoreBuilder(str(tmp_path / "chat.db"))
    yield builder
    builder.engine.dispose()


@pytest.fixture
def reader(store):
    """Read-only reader over the fixture store."""
    engine = create_store_engine(store.path)
    yield StoreReader(engine)
    engine.dispose()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def subscriber():
    return FakeSubscriber()
