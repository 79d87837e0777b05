"""
Tests for the Transport Client.

Tests cover:
- Fetching pages with and without a cursor
- Send, delete, read receipt and profile lookup
- Failure classification: 401/403 -> PermissionDeniedError, everything else -> TransientError
"""

from datetime import datetime, timezone

import httpx
import pytest

from chatsync.errors import PermissionDeniedError, TransientError
from chatsync.schemas import SendPayload
from chatsync.transport import TransportClient
from tests.conftest import CURRENT_USER, OTHER_USER


class TestFetchMessages:
    """Test GET /messages through the client."""

    @pytest.mark.asyncio
    async def test_fetch_newest_page(self, transport, backend, conversation):
        """Test a page without cursor returns records, has_more and the current user."""
        backend.add_message(OTHER_USER, "first")
        backend.add_message(CURRENT_USER, "second")

        page = await transport.fetch_messages(conversation)

        assert [r.message_text for r in page.records] == ["first", "second"]
        assert page.has_more is False
        assert page.current_user_id == CURRENT_USER
        assert backend.queries[-1] == {"cursor": None, "direction": None, "limit": 20}

    @pytest.mark.asyncio
    async def test_fetch_older_page_sends_cursor(self, transport, backend, conversation):
        """Test backward paging passes cursor and direction."""
        records = [backend.add_message(OTHER_USER, f"m{i}") for i in range(5)]
        cursor = datetime.fromisoformat(records[3]["created_at"].replace("Z", "+00:00"))

        page = await transport.fetch_messages(conversation, cursor=cursor, direction="older", limit=2)

        assert [r.message_text for r in page.records] == ["m1", "m2"]
        assert page.has_more is True
        assert backend.queries[-1]["cursor"] == records[3]["created_at"]
        assert backend.queries[-1]["direction"] == "older"

    @pytest.mark.asyncio
    async def test_deleted_records_have_no_text(self, transport, backend, conversation):
        """Test a soft-deleted record is kept with a null body."""
        record = backend.add_message(OTHER_USER, "secret")
        record["deleted_at"] = record["created_at"]

        page = await transport.fetch_messages(conversation)

        assert page.records[0].message_text is None
        assert page.records[0].is_deleted

    @pytest.mark.asyncio
    async def test_reference_list_as_json_string(self, transport, backend, conversation):
        """Test reference lists stored as JSON text are decoded."""
        record = backend.add_message(OTHER_USER, "see file")
        record["reference_list"] = '[{"id": "doc1", "type": "document", "name": "a.pdf", "url": "/f/a.pdf"}]'

        page = await transport.fetch_messages(conversation)

        assert page.records[0].reference_list[0].id == "doc1"


class TestMutations:
    """Test send, delete and read receipts."""

    @pytest.mark.asyncio
    async def test_send_returns_server_record(self, transport, backend):
        """Test POST /messages returns the authoritative record."""
        record = await transport.send_message(SendPayload(chat_group_id="g1", message_text="hi"))

        assert record.id in backend.messages
        assert record.sender_user_id == CURRENT_USER
        assert record.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, transport, backend):
        """Test deleting twice succeeds both times."""
        record = backend.add_message(CURRENT_USER, "oops")

        await transport.delete_message(record["id"])
        await transport.delete_message(record["id"])

        assert backend.messages[record["id"]]["deleted_at"] is not None

    @pytest.mark.asyncio
    async def test_mark_read_returns_server_timestamp(self, transport, backend):
        """Test PATCH /read returns read_at from the server."""
        record = backend.add_message(OTHER_USER, "ping")

        read_at = await transport.mark_read(record["id"])

        assert read_at == datetime.fromisoformat(
            backend.messages[record["id"]]["read_at"].replace("Z", "+00:00")
        )

    @pytest.mark.asyncio
    async def test_fetch_profiles_omits_unknown(self, transport):
        """Test unresolvable ids are missing from the result, not an error."""
        profiles = await transport.fetch_profiles([CURRENT_USER, "ghost"])

        assert [p.id for p in profiles] == [CURRENT_USER]

    @pytest.mark.asyncio
    async def test_fetch_profiles_empty_issues_no_request(self, transport, backend):
        """Test an empty id list short-circuits."""
        assert await transport.fetch_profiles([]) == []
        assert "profiles" not in backend.calls


class TestErrorClassification:
    """Test mapping of failures to the error taxonomy."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [401, 403])
    async def test_permission_statuses(self, transport, backend, conversation, code):
        """Test 401 and 403 raise PermissionDeniedError."""
        backend.fail["list"] = code

        with pytest.raises(PermissionDeniedError) as exc_info:
            await transport.fetch_messages(conversation)

        assert exc_info.value.status_code == code

    @pytest.mark.asyncio
    async def test_permission_code_from_body(self, transport, backend, conversation):
        """Test the machine-readable code is taken from the body."""
        backend.fail["list"] = 403

        with pytest.raises(PermissionDeniedError) as exc_info:
            await transport.fetch_messages(conversation)

        assert exc_info.value.code == "not_a_member"

    @pytest.mark.asyncio
    async def test_missing_identity_is_unauthorized(self, settings, backend, conversation):
        """Test a request without identity yields code 'unauthorized'."""
        from tests.fake_api import create_app

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=create_app(backend)),
            base_url="http://testserver",
        ) as anonymous:
            client = TransportClient(settings, client=anonymous)
            with pytest.raises(PermissionDeniedError) as exc_info:
                await client.fetch_messages(conversation)

        assert exc_info.value.code == "unauthorized"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [400, 404, 429, 500, 503])
    async def test_other_statuses_are_transient(self, transport, backend, conversation, code):
        """Test any other non-2xx status raises TransientError."""
        backend.fail["list"] = code

        with pytest.raises(TransientError) as exc_info:
            await transport.fetch_messages(conversation)

        assert exc_info.value.status_code == code
        assert exc_info.value.operation == "fetch_messages"

    @pytest.mark.asyncio
    async def test_network_failure_is_transient(self, settings, conversation):
        """Test a connection error raises TransientError."""
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://x") as client:
            with pytest.raises(TransientError):
                await TransportClient(settings, client=client).fetch_messages(conversation)

    @pytest.mark.asyncio
    async def test_invalid_json_is_transient(self, settings, conversation):
        """Test a non-JSON body raises TransientError."""
        handler = lambda request: httpx.Response(200, text="<html>maintenance</html>")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://x") as client:
            with pytest.raises(TransientError):
                await TransportClient(settings, client=client).fetch_messages(conversation)

    @pytest.mark.asyncio
    async def test_unsuccessful_envelope_is_transient(self, settings, conversation):
        """Test success=false raises TransientError."""
        handler = lambda request: httpx.Response(200, json={"success": False, "error": "db down"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://x") as client:
            with pytest.raises(TransientError, match="db down"):
                await TransportClient(settings, client=client).fetch_messages(conversation)

    @pytest.mark.asyncio
    async def test_optimistic_id_from_server_is_rejected(self, settings, conversation):
        """Test a record using the optimistic namespace is treated as malformed."""
        record = {
            "id": "optimistic-1-abc",
            "chat_group_id": "g1",
            "sender_user_id": OTHER_USER,
            "message_text": "bad",
            "created_at": datetime(2025, 1, 15, tzinfo=timezone.utc).isoformat(),
        }
        handler = lambda request: httpx.Response(200, json={"success": True, "messages": [record]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://x") as client:
            with pytest.raises(TransientError):
                await TransportClient(settings, client=client).fetch_messages(conversation)
