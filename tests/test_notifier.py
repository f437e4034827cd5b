"""
Tests for the IFTTT notifier, contacts loading and token checks.

The notifier is exercised against httpx.MockTransport, so nothing leaves
the process.
"""

import json

import httpx
import pytest

from message_proxy.contacts import load_contacts, normalize_identifier
from message_proxy.notifier import IftttNotifier
from message_proxy.utils import notification_context, verify_token


def recording_transport(requests, status_code=200):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, text="Congratulations!")
    return httpx.MockTransport(handler)


class TestNotifier:
    """Test webhook delivery."""

    @pytest.mark.asyncio
    async def test_deliver_posts_values(self):
        requests = []
        notifier = IftttNotifier(
            key="secret-key",
            event="imessageReceived",
            transport=recording_transport(requests),
        )

        assert await notifier.deliver("Jane Doe", "See you soon", "jane%40example.com") is True

        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://maker.ifttt.com/trigger/imessageReceived/with/key/secret-key"
        assert json.loads(request.content) == {
            "value1": "Jane Doe",
            "value2": "See you soon",
            "value3": "jane%40example.com",
        }
        assert request.headers["User-Agent"].startswith("MessageProxy/")

    @pytest.mark.asyncio
    async def test_http_error_swallowed(self):
        notifier = IftttNotifier(key="secret-key", transport=recording_transport([], status_code=500))

        assert await notifier.deliver("title", "body", "ctx") is False

    @pytest.mark.asyncio
    async def test_transport_error_swallowed(self):
        def handler(request):
            raise httpx.ConnectError("no route to host")

        notifier = IftttNotifier(key="secret-key", transport=httpx.MockTransport(handler))

        assert await notifier.deliver("title", "body", "ctx") is False

    @pytest.mark.asyncio
    async def test_notify_is_fire_and_forget(self):
        requests = []
        notifier = IftttNotifier(key="secret-key", transport=recording_transport(requests))

        assert notifier.notify("title", "body", "ctx") is None
        await notifier.drain()

        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_disabled_without_key(self):
        requests = []
        notifier = IftttNotifier(key=None, transport=recording_transport(requests))

        notifier.notify("title", "body", "ctx")
        await notifier.drain()

        assert notifier.enabled is False
        assert requests == []


class TestContacts:
    """Test contact table loading."""

    def test_load_normalizes_keys(self, tmp_path):
        path = tmp_path / "contacts.json"
        path.write_text(json.dumps({"+15551234567": "Jane Doe", "bob@example.com": "Bob Smith"}))

        contacts = load_contacts(str(path))

        assert contacts == {"5551234567": "Jane Doe", "bob@example.com": "Bob Smith"}

    def test_missing_file_is_empty(self, tmp_path):
        assert load_contacts(str(tmp_path / "nope.json")) == {}

    def test_not_an_object_is_empty(self, tmp_path):
        path = tmp_path / "contacts.json"
        path.write_text("[1, 2, 3]")

        assert load_contacts(str(path)) == {}

    def test_unconfigured_is_empty(self):
        assert load_contacts(None) == {}

    def test_normalize_without_prefix(self):
        assert normalize_identifier("+445551234", prefix="") == "+445551234"


class TestUtils:
    """Test token comparison and notification context escaping."""

    def test_verify_token(self):
        assert verify_token("abc", "abc") is True
        assert verify_token("abd", "abc") is False
        assert verify_token(None, "abc") is False
        assert verify_token("", "abc") is False

    def test_notification_context_escapes(self):
        assert notification_context("+1 555 123") == "+1%20555%20123"
        assert notification_context("+15551234567") == "+15551234567"
        assert notification_context("jane@example.com") == "jane@example.com"
        assert notification_context(None) == "Name Failure"
